"""Pytest configuration and shared fixtures."""

import asyncio
from typing import Mapping

import pytest

from filerelay.pipeline.exceptions import StorageError
from filerelay.storage.base import ObjectStore, UploadedPart

BOUNDARY = "----filerelayTestBoundary7MA4YWxkTrZu0gW"


class MemoryObjectStore(ObjectStore):
    """In-memory object store that records every call.

    ``fail_on`` names an operation that raises ``StorageError``;
    ``fail_part`` limits an ``upload_part`` failure to one part number.
    """

    def __init__(self, fail_on: str | None = None, fail_part: int | None = None, part_delay: float = 0):
        self.objects: dict[str, bytes] = {}
        self.object_info: dict[str, dict] = {}
        self.uploads: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_on = fail_on
        self.fail_part = fail_part
        self.part_delay = part_delay
        self._next_id = 0

    def _maybe_fail(self, operation: str, part_number: int | None = None) -> None:
        if self.fail_on != operation:
            return
        if self.fail_part is not None and part_number != self.fail_part:
            return
        raise StorageError(f"{operation} failed")

    async def put_object(self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]) -> None:
        self.calls.append(("put_object", key, len(data)))
        self._maybe_fail("put_object")
        self.objects[key] = data
        self.object_info[key] = {"content_type": content_type, "metadata": dict(metadata)}

    async def create_multipart_upload(self, key: str, content_type: str, metadata: Mapping[str, str]) -> str:
        self.calls.append(("create_multipart_upload", key))
        self._maybe_fail("create_multipart_upload")
        self._next_id += 1
        upload_id = f"upload-{self._next_id}"
        self.uploads[upload_id] = {
            "key": key,
            "content_type": content_type,
            "metadata": dict(metadata),
            "parts": {},
        }
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        self.calls.append(("upload_part", key, part_number, len(data)))
        if self.part_delay:
            await asyncio.sleep(self.part_delay)
        self._maybe_fail("upload_part", part_number)
        self.uploads[upload_id]["parts"][part_number] = data
        return f'"etag-{part_number}"'

    async def complete_multipart_upload(self, key: str, upload_id: str, parts: list[UploadedPart]) -> None:
        self.calls.append(("complete_multipart_upload", key, [p.part_number for p in parts]))
        self._maybe_fail("complete_multipart_upload")
        upload = self.uploads.pop(upload_id)
        ordered = sorted(parts, key=lambda p: p.part_number)
        self.objects[key] = b"".join(upload["parts"][p.part_number] for p in ordered)
        self.object_info[key] = {"content_type": upload["content_type"], "metadata": upload["metadata"]}

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self.calls.append(("abort_multipart_upload", key))
        self._maybe_fail("abort_multipart_upload")
        self.uploads.pop(upload_id, None)

    def public_url(self, key: str) -> str:
        return f"memory://bucket/{key}"

    def get_backend_name(self) -> str:
        return "memory"

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


def multipart_body(
    files: list[tuple[str, str, bytes, str | None]] = (),
    fields: list[tuple[str, str]] = (),
    boundary: str = BOUNDARY,
    fields_first: bool = True,
) -> tuple[bytes, str]:
    """Build a multipart/form-data body.

    Args:
        files: (field name, filename, content, content type or None) tuples
        fields: (name, value) tuples
        fields_first: Place plain fields before file fields

    Returns:
        (body, content type header)
    """
    field_parts = []
    for name, value in fields:
        field_parts.append(
            f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n'.encode()
            + value.encode()
            + b"\r\n"
        )

    file_parts = []
    for name, filename, content, content_type in files:
        headers = f'--{boundary}\r\nContent-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
        if content_type:
            headers += f"Content-Type: {content_type}\r\n"
        file_parts.append(headers.encode() + b"\r\n" + content + b"\r\n")

    parts = field_parts + file_parts if fields_first else file_parts + field_parts
    body = b"".join(parts) + f"--{boundary}--\r\n".encode()
    return body, f"multipart/form-data; boundary={boundary}"


async def chunked(data: bytes, size: int = 1024):
    """Yield ``data`` in chunks of ``size`` bytes, like a socket would."""
    for offset in range(0, len(data), size):
        yield data[offset:offset + size]
        await asyncio.sleep(0)


@pytest.fixture
def memory_store():
    return MemoryObjectStore()
