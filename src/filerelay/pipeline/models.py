"""Pipeline request and result types."""

from dataclasses import dataclass, field
from typing import AsyncIterator


@dataclass
class UploadRequest:
    """One inbound upload, consumed once by the pipeline."""

    stream: AsyncIterator[bytes]
    content_type: str | None
    client_hint: str | None = None
    method: str = "POST"
    content_length: str | None = None


@dataclass
class UploadResult:
    """Successful pipeline outcome."""

    object_key: str
    retrieval_url: str
    byte_count: int
    mime_type: str
    metadata: dict[str, str] = field(default_factory=dict)
