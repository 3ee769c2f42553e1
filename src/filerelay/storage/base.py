"""Abstract object store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class UploadedPart:
    """A committed part of a multipart upload."""

    part_number: int
    etag: str


class ObjectStore(ABC):
    """Abstract base class for object stores.

    Implementations must be safe for concurrent use by independent uploads.
    A multipart upload that is never completed must leave no addressable
    object behind.
    """

    @abstractmethod
    async def put_object(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None:
        """Store a small object in a single request."""
        pass

    @abstractmethod
    async def create_multipart_upload(
        self, key: str, content_type: str, metadata: Mapping[str, str]
    ) -> str:
        """Open a multipart upload.

        Returns:
            Store-issued upload id
        """
        pass

    @abstractmethod
    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        """Upload one part (numbers start at 1).

        Returns:
            ETag of the stored part
        """
        pass

    @abstractmethod
    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[UploadedPart]
    ) -> None:
        """Commit the parts, in part-number order, as one object."""
        pass

    @abstractmethod
    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Discard an open multipart upload and every part stored for it."""
        pass

    @abstractmethod
    def public_url(self, key: str) -> str:
        """Deterministic, non-expiring reference to a stored object."""
        pass

    @abstractmethod
    def get_backend_name(self) -> str:
        """Return backend identifier."""
        pass
