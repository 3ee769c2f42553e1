"""Pipeline coordinator: wires reader, guard and writer for one request.

Data flows reader -> guard -> relay -> writer -> store. Failures flow
back: the guard aborts the relay, the writer aborts its upload, and the
coordinator is the only place that resolves the request's outcome.
"""

import asyncio
import logging

from filerelay.core.logging import object_key_context, request_id_context
from filerelay.pipeline.exceptions import (
    FileTooLarge,
    MalformedRequest,
    NoFileProvided,
    SigningFailed,
    UnsupportedType,
    UploadError,
    UploadTimedOut,
)
from filerelay.pipeline.guard import GuardedStream, UploadPolicy, ValidationGuard
from filerelay.pipeline.keys import build_metadata, generate_object_key
from filerelay.pipeline.models import UploadRequest, UploadResult
from filerelay.pipeline.multipart import FileEvent, MultipartReader
from filerelay.pipeline.relay import RelayAborted
from filerelay.pipeline.state import PipelineState, UploadStateMachine
from filerelay.pipeline.writer import MB, StoreWriter
from filerelay.storage.base import ObjectStore
from filerelay.storage.signing import UrlSigner

logger = logging.getLogger(__name__)

REJECTIONS = (MalformedRequest, NoFileProvided, UnsupportedType)


class UploadPipeline:
    """Streams one multipart file per request into an object store.

    One instance serves every request; per-request state lives in the
    reader, guard stream, relay, writer upload and state machine created
    inside ``run``. Only the policy and the store are shared.
    """

    def __init__(
        self,
        store: ObjectStore,
        policy: UploadPolicy,
        signer: UrlSigner | None = None,
        part_size: int = 8 * MB,
        queue_size: int = 8,
        relay_capacity: int = 4,
        timeout_seconds: float | None = 300.0,
        url_expiry_seconds: int = 3600,
    ):
        self.store = store
        self.policy = policy
        self.signer = signer
        self.guard = ValidationGuard(policy, relay_capacity=relay_capacity)
        self.writer = StoreWriter(store, part_size=part_size, queue_size=queue_size)
        self.timeout_seconds = timeout_seconds
        self.url_expiry_seconds = url_expiry_seconds

    async def run(
        self, request: UploadRequest, state: UploadStateMachine | None = None
    ) -> UploadResult:
        """Run the pipeline for one request.

        Args:
            request: Inbound upload
            state: Optional state machine to track the run (one is created
                otherwise)

        Returns:
            UploadResult for the stored object

        Raises:
            UploadError: Typed failure carrying status and user message
        """
        machine = state or UploadStateMachine(request_id=request_id_context.get())
        logger.info(
            "request_start",
            extra={
                "method": request.method,
                "content_type": request.content_type,
                "content_length": request.content_length,
            },
        )

        try:
            return await asyncio.wait_for(self._run(request, machine), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            self._resolve(machine, PipelineState.FAILED)
            logger.error(
                "upload_failed",
                extra={"reason": "timeout", "timeout_seconds": self.timeout_seconds, "state": machine.state.value},
            )
            raise UploadTimedOut() from e

    async def _run(self, request: UploadRequest, machine: UploadStateMachine) -> UploadResult:
        machine.transition(PipelineState.RECEIVING)
        try:
            reader = MultipartReader(request.stream, request.content_type)
            event = await self._first_file(reader)

            machine.transition(PipelineState.VALIDATING)
            guarded = await self._admit(event)

            machine.transition(PipelineState.STREAMING)
            key = generate_object_key(event.filename)
            object_key_context.set(key)
            metadata = build_metadata(request.client_hint, event.filename)
            byte_count = await self._stream(reader, guarded, key, event.content_type, metadata)
        except REJECTIONS as e:
            self._resolve(machine, PipelineState.REJECTED)
            logger.warning("upload_rejected", extra={"reason": e.message, "state": machine.state.value})
            raise
        except FileTooLarge as e:
            self._resolve(machine, PipelineState.ABORTED)
            logger.warning("upload_aborted", extra={"reason": e.message, "max_bytes": e.max_bytes})
            raise
        except UploadError as e:
            self._resolve(machine, PipelineState.FAILED)
            logger.error("upload_failed", extra={"reason": e.message, "error": repr(e.__cause__ or e)})
            raise
        except Exception:
            self._resolve(machine, PipelineState.FAILED)
            logger.error("upload_failed", extra={"reason": "unexpected error"}, exc_info=True)
            raise

        machine.resolve(PipelineState.COMPLETED)
        url = await self._retrieval_url(key)
        return UploadResult(
            object_key=key,
            retrieval_url=url,
            byte_count=byte_count,
            mime_type=event.content_type,
            metadata=metadata,
        )

    @staticmethod
    def _resolve(machine: UploadStateMachine, target: PipelineState) -> None:
        # Failures the diagram has no edge for (e.g. a truncated body while streaming) end in FAILED
        if not machine.is_terminal and not machine.can_transition(target):
            target = PipelineState.FAILED
        machine.resolve(target)

    async def _first_file(self, reader: MultipartReader) -> FileEvent:
        while True:
            # next_event raises NoFileProvided itself when the body holds no file
            event = await reader.next_event()
            if isinstance(event, FileEvent):
                return event
            logger.debug("Form field skipped", extra={"field_name": event.name})

    async def _admit(self, event: FileEvent) -> GuardedStream:
        try:
            return self.guard.admit(event)
        except UnsupportedType:
            try:
                skipped = await self.guard.reject(event)
            except UploadError as e:
                logger.warning("Could not drain rejected file", extra={"error": e.message})
            else:
                logger.info(
                    "Rejected file drained",
                    extra={"declared_type": event.content_type, "bytes_skipped": skipped},
                )
            raise

    async def _produce(self, reader: MultipartReader, guarded: GuardedStream) -> int:
        forwarded = await guarded.pump()
        # Read the rest of the body so additional fields are dropped cleanly
        try:
            while await reader.next_event() is not None:
                pass
        except UploadError as e:
            logger.warning("Trailing multipart content ignored", extra={"error": e.message})
        return forwarded

    async def _stream(
        self,
        reader: MultipartReader,
        guarded: GuardedStream,
        key: str,
        content_type: str,
        metadata: dict[str, str],
    ) -> int:
        producer = asyncio.create_task(self._produce(reader, guarded), name="upload-producer")
        consumer = asyncio.create_task(
            self.writer.write(guarded.relay, key, content_type, metadata),
            name="upload-writer",
        )
        try:
            pending = {producer, consumer}
            while pending:
                _, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                error = _first_error(producer, consumer)
                if error is not None:
                    raise error
            return consumer.result()
        finally:
            if not producer.done():
                producer.cancel()
            if not consumer.done():
                if guarded.relay.closed:
                    consumer.cancel()
                else:
                    # The writer sees the aborted relay and abandons its own upload
                    guarded.relay.abort(asyncio.CancelledError())
            await asyncio.gather(producer, consumer, return_exceptions=True)

    async def _retrieval_url(self, key: str) -> str:
        if self.signer is not None:
            try:
                return await self.signer.generate_url(key, "GET", self.url_expiry_seconds)
            except SigningFailed as e:
                logger.warning("signing_failed", extra={"error": str(e)})
        return self.store.public_url(key)


def _first_error(producer: asyncio.Task, consumer: asyncio.Task) -> BaseException | None:
    """Pick the authoritative failure; the producer's error is the root cause."""
    for task in (producer, consumer):
        if task.done() and not task.cancelled() and task.exception() is not None:
            error = task.exception()
            if isinstance(error, RelayAborted) and isinstance(error.cause, Exception):
                return error.cause
            return error
    return None
