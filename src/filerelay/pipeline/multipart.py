"""Incremental multipart/form-data reader.

Wraps the ``python-multipart`` push parser in a pull interface: the socket
is only read when the consumer asks for the next event or the next chunk of
a file body, so buffering stays bounded by one network chunk no matter how
large the file is.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header

from filerelay.pipeline.exceptions import MalformedRequest, NoFileProvided

logger = logging.getLogger(__name__)

MULTIPART_FORM_DATA = b"multipart/form-data"
DEFAULT_FILE_CONTENT_TYPE = "text/plain"  # RFC 7578 section 4.4
READ_CHUNK_SIZE = 64 * 1024
MAX_FIELD_SIZE = 1024 * 1024

# Parser messages queued by the callbacks
_PART = "part"
_DATA = "data"
_PART_END = "part_end"
_END = "end"


@dataclass
class FieldEvent:
    """A plain (non-file) form field."""

    name: str
    value: str


@dataclass
class FileEvent:
    """A file field whose body is still on the wire."""

    field_name: str
    filename: str
    content_type: str
    body: "PartStream" = field(repr=False)


def parse_content_type(content_type: str | None) -> bytes:
    """Validate a request content type and return its multipart boundary.

    Raises:
        MalformedRequest: If the header is missing, not multipart/form-data
            or has no boundary
    """
    if not content_type:
        raise MalformedRequest()
    try:
        ctype, options = parse_options_header(content_type)
    except (ValueError, UnicodeError) as e:
        raise MalformedRequest() from e
    if ctype.strip().lower() != MULTIPART_FORM_DATA:
        raise MalformedRequest()
    boundary = options.get(b"boundary")
    if not boundary:
        raise MalformedRequest("Invalid content-type; missing multipart boundary")
    return boundary


def _decode(value: bytes) -> str:
    return value.decode("utf-8", errors="replace")


class PartStream:
    """Readable byte stream over the body of one multipart part."""

    def __init__(self, reader: "MultipartReader"):
        self._reader = reader
        self.exhausted = False
        self.bytes_read = 0

    async def read(self) -> bytes:
        """Return the next body chunk, or ``b""`` at the end of the part."""
        if self.exhausted:
            return b""
        message = await self._reader._next_message(inside_part=True)
        kind, payload = message
        if kind == _DATA:
            self.bytes_read += len(payload)
            return payload
        # _PART_END is the only other message a part body can see
        self.exhausted = True
        return b""

    async def drain(self) -> int:
        """Discard the rest of the body; returns the number of bytes skipped."""
        skipped = 0
        while chunk := await self.read():
            skipped += len(chunk)
        return skipped

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while chunk := await self.read():
            yield chunk


class MultipartReader:
    """Pull-based multipart/form-data event reader.

    Yields ``FieldEvent`` and ``FileEvent`` objects in body order. At most
    ``max_files`` file fields are emitted; later ones are drained and
    dropped. ``next_event`` raises ``NoFileProvided`` when the body ends
    without a single file field.
    """

    def __init__(
        self,
        stream: AsyncIterator[bytes],
        content_type: str | None,
        max_files: int = 1,
        chunk_size: int = READ_CHUNK_SIZE,
        max_field_size: int = MAX_FIELD_SIZE,
    ):
        boundary = parse_content_type(content_type)
        self._stream = stream.__aiter__()
        self._chunk_size = chunk_size
        self._max_field_size = max_field_size
        self.max_files = max_files

        self._messages: deque[tuple[str, object]] = deque()
        self._header_field = b""
        self._header_value = b""
        self._headers: dict[bytes, bytes] = {}
        self._in_part = False
        self._exhausted = False
        self._current_body: PartStream | None = None

        self.bytes_received = 0
        self.files_seen = 0
        self.files_emitted = 0

        self._parser = MultipartParser(
            boundary,
            callbacks={
                "on_part_begin": self._on_part_begin,
                "on_header_field": self._on_header_field,
                "on_header_value": self._on_header_value,
                "on_header_end": self._on_header_end,
                "on_headers_finished": self._on_headers_finished,
                "on_part_data": self._on_part_data,
                "on_part_end": self._on_part_end,
                "on_end": self._on_end,
            },
        )

    # Parser callbacks run synchronously inside ``parser.write``

    def _on_part_begin(self) -> None:
        self._in_part = True
        self._headers = {}

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._header_field.strip().lower()] = self._header_value.strip()
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        self._messages.append((_PART, self._headers))

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        for offset in range(start, end, self._chunk_size):
            self._messages.append((_DATA, bytes(data[offset:min(offset + self._chunk_size, end)])))

    def _on_part_end(self) -> None:
        self._in_part = False
        self._messages.append((_PART_END, None))

    def _on_end(self) -> None:
        self._messages.append((_END, None))

    async def _feed(self) -> None:
        """Read one chunk from the source and push it through the parser."""
        try:
            chunk = await self._stream.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            self._parser.finalize()
            return

        self.bytes_received += len(chunk)
        try:
            self._parser.write(chunk)
        except MultipartParseError as e:
            raise MalformedRequest(f"Malformed multipart body: {e}") from e

    async def _next_message(self, inside_part: bool = False) -> tuple[str, object]:
        while not self._messages:
            if self._exhausted:
                if inside_part or self._in_part:
                    raise MalformedRequest("Unexpected end of multipart body")
                return (_END, None)
            await self._feed()
        return self._messages.popleft()

    async def next_event(self) -> FieldEvent | FileEvent | None:
        """Return the next form event, or None at the end of the body.

        Any unread remainder of the previously returned file body is
        drained first.

        Raises:
            MalformedRequest: On a parse error or a truncated body
            NoFileProvided: If the body ended without a file field
        """
        if self._current_body is not None and not self._current_body.exhausted:
            await self._current_body.drain()
        self._current_body = None

        while True:
            kind, payload = await self._next_message()
            if kind == _END:
                if self.files_seen == 0:
                    logger.info(
                        "Multipart body finished without a file",
                        extra={"bytes_received": self.bytes_received},
                    )
                    raise NoFileProvided()
                return None
            if kind != _PART:
                continue

            name, filename, content_type = self._describe_part(payload)
            body = PartStream(self)

            if filename is None:
                return FieldEvent(name=name, value=await self._read_field(name, body))

            self.files_seen += 1
            if self.files_emitted >= self.max_files:
                skipped = await body.drain()
                logger.warning(
                    "ignored_file_field",
                    extra={
                        "field_name": name,
                        "original_name": filename,
                        "files_seen": self.files_seen,
                        "bytes_skipped": skipped,
                    },
                )
                continue

            self.files_emitted += 1
            self._current_body = body
            logger.info(
                "file_event",
                extra={"field_name": name, "original_name": filename, "declared_type": content_type},
            )
            return FileEvent(field_name=name, filename=filename, content_type=content_type, body=body)

    def _describe_part(self, headers: dict[bytes, bytes]) -> tuple[str, str | None, str]:
        """Return (field name, filename or None, declared content type) for a part."""
        disposition = headers.get(b"content-disposition")
        if not disposition:
            raise MalformedRequest("Malformed multipart body: missing Content-Disposition")
        try:
            _, options = parse_options_header(disposition)
            ctype, _ = parse_options_header(headers.get(b"content-type", b""))
        except (ValueError, UnicodeError) as e:
            raise MalformedRequest("Malformed multipart body: bad part headers") from e

        name = _decode(options.get(b"name", b""))
        filename = _decode(options[b"filename"]) if b"filename" in options else None
        content_type = _decode(ctype).strip().lower() or DEFAULT_FILE_CONTENT_TYPE
        return name, filename, content_type

    async def _read_field(self, name: str, body: PartStream) -> str:
        value = bytearray()
        async for chunk in body:
            value.extend(chunk)
            if len(value) > self._max_field_size:
                raise MalformedRequest(
                    f"Malformed multipart body: field '{name}' exceeds {self._max_field_size} bytes"
                )
        return _decode(bytes(value))

    async def __aiter__(self):
        while (event := await self.next_event()) is not None:
            yield event
