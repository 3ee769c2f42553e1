"""Store writer: relays a byte stream into a chunked object store upload."""

import asyncio
import logging
from typing import AsyncIterable, Mapping

from filerelay.pipeline.exceptions import StorageError, StoreUploadFailed
from filerelay.storage.base import ObjectStore, UploadedPart

logger = logging.getLogger(__name__)

MB = 1024 * 1024
S3_MIN_PART_SIZE = 5 * MB


class StoreWriter:
    """Splits a stream into parts and uploads up to ``queue_size`` at once.

    A stream shorter than one part is stored with a single ``put_object``.
    Otherwise a multipart upload is opened when the first full part is
    ready and completed only after the source ends cleanly. If the source
    fails, the task is cancelled, or any part fails, in-flight parts are
    cancelled and the multipart upload is aborted, so no object appears.
    """

    def __init__(self, store: ObjectStore, part_size: int = 8 * MB, queue_size: int = 8):
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.store = store
        self.part_size = part_size
        self.queue_size = queue_size

    async def write(
        self,
        source: AsyncIterable[bytes],
        key: str,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> int:
        """Upload ``source`` to ``key``.

        Returns:
            Number of bytes stored

        Raises:
            StoreUploadFailed: If the store rejects any request
            RelayAborted: If the source relay was aborted upstream
        """
        upload = _PartedUpload(self.store, key, content_type, metadata, self.queue_size)
        buffer = bytearray()
        total = 0

        try:
            async for chunk in source:
                total += len(chunk)
                buffer.extend(chunk)
                while len(buffer) >= self.part_size:
                    part = bytes(buffer[: self.part_size])
                    del buffer[: self.part_size]
                    await upload.submit(part)

            if upload.upload_id is None:
                await self.store.put_object(key, bytes(buffer), content_type, metadata)
                logger.info(
                    "Upload stored with a single request",
                    extra={"object_key": key, "size_bytes": total},
                )
                return total

            if buffer:
                await upload.submit(bytes(buffer))
            await upload.complete()
        except StorageError as e:
            await upload.abandon()
            raise StoreUploadFailed(e) from e
        except BaseException:
            await upload.abandon()
            raise

        logger.info(
            "Multipart upload stored",
            extra={"object_key": key, "size_bytes": total, "parts": upload.part_count},
        )
        return total


class _PartedUpload:
    """Bookkeeping for one multipart upload with bounded part concurrency."""

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        content_type: str,
        metadata: Mapping[str, str],
        queue_size: int,
    ):
        self.store = store
        self.key = key
        self.content_type = content_type
        self.metadata = metadata
        self.upload_id: str | None = None
        self.part_count = 0
        self._slots = asyncio.Semaphore(queue_size)
        self._tasks: list[asyncio.Task] = []

    async def submit(self, data: bytes) -> None:
        """Start uploading the next part, waiting for a free slot first."""
        if self.upload_id is None:
            self.upload_id = await self.store.create_multipart_upload(
                self.key, self.content_type, self.metadata
            )

        await self._slots.acquire()
        try:
            self._raise_failed()
        except BaseException:
            self._slots.release()
            raise

        self.part_count += 1
        task = asyncio.create_task(
            self._upload(self.part_count, data),
            name=f"upload-part-{self.part_count}",
        )
        self._tasks.append(task)

    async def _upload(self, part_number: int, data: bytes) -> UploadedPart:
        try:
            etag = await self.store.upload_part(self.key, self.upload_id, part_number, data)
            logger.debug(
                f"Uploaded part {part_number} of {self.key}",
                extra={"object_key": self.key, "part_number": part_number, "size_bytes": len(data)},
            )
            return UploadedPart(part_number=part_number, etag=etag)
        finally:
            self._slots.release()

    def _raise_failed(self) -> None:
        for task in self._tasks:
            if task.done() and not task.cancelled() and task.exception() is not None:
                raise task.exception()

    async def complete(self) -> None:
        parts = await asyncio.gather(*self._tasks)
        await self.store.complete_multipart_upload(self.key, self.upload_id, list(parts))

    async def abandon(self) -> None:
        """Cancel in-flight parts and abort the multipart upload, if one was opened."""
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.upload_id is None:
            return
        try:
            await self.store.abort_multipart_upload(self.key, self.upload_id)
        except StorageError as e:
            logger.error(
                f"Failed to abort multipart upload for {self.key}: {e}",
                extra={"object_key": self.key, "upload_id": self.upload_id, "error": str(e)},
            )
        else:
            logger.warning(
                "Multipart upload aborted",
                extra={"object_key": self.key, "upload_id": self.upload_id, "parts": self.part_count},
            )
