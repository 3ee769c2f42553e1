"""Time-limited URL signing for direct client/store transfers."""

import asyncio
import logging
from typing import Literal, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from filerelay.pipeline.exceptions import SigningFailed
from filerelay.storage.s3 import S3ObjectStore

logger = logging.getLogger(__name__)

Operation = Literal["GET", "PUT"]

_CLIENT_METHODS = {
    "GET": "get_object",
    "PUT": "put_object",
}


class UrlSigner(Protocol):
    bucket: str
    region: str

    async def generate_url(
        self, key: str, operation: Operation, expires_in: int, content_type: str | None = None
    ) -> str:
        ...


class S3UrlSigner:
    """Presigns S3 object URLs with the store's shared client."""

    def __init__(self, store: S3ObjectStore):
        self._store = store
        self.bucket = store.bucket
        self.region = store.region

    async def generate_url(
        self, key: str, operation: Operation, expires_in: int, content_type: str | None = None
    ) -> str:
        """Generate a presigned URL.

        Args:
            key: Object key
            operation: ``GET`` to download or ``PUT`` to upload directly
            expires_in: URL lifetime in seconds
            content_type: Content type a ``PUT`` must be sent with

        Returns:
            Presigned URL

        Raises:
            SigningFailed: If the URL cannot be generated
        """
        if operation not in _CLIENT_METHODS:
            raise SigningFailed(f"Unsupported operation: {operation}")

        params = {"Bucket": self.bucket, "Key": key}
        if operation == "PUT":
            params["ContentType"] = content_type or "application/octet-stream"

        try:
            return await asyncio.to_thread(
                self._store.client.generate_presigned_url,
                _CLIENT_METHODS[operation],
                Params=params,
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError, ValueError) as e:
            logger.warning(
                f"Failed to sign {operation} URL for {key}: {e}",
                extra={"bucket": self.bucket, "object_key": key, "operation": operation, "error": str(e)},
            )
            raise SigningFailed(str(e)) from e
