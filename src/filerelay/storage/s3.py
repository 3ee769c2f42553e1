"""S3-compatible object store backend."""

import asyncio
import logging
import threading
from typing import Mapping
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from filerelay.pipeline.exceptions import StorageError
from filerelay.storage.base import ObjectStore, UploadedPart

logger = logging.getLogger(__name__)

DEFAULT_PUBLIC_URL_TEMPLATE = "https://{bucket}.s3.{region}.amazonaws.com/{key}"

TRANSIENT_ERRORS = (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)

transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True,
)


@transient_retry
def _retrying(method, **kwargs):
    return method(**kwargs)


class S3ObjectStore(ObjectStore):
    """Object store backed by S3 (or MinIO and other S3-compatible stores)."""

    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        max_pool_connections: int = 50,
        public_url_template: str = DEFAULT_PUBLIC_URL_TEMPLATE,
        client=None,
    ):
        if not bucket or not region:
            raise ValueError("S3 bucket and region are required")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url or None
        self.public_url_template = public_url_template
        self._access_key_id = access_key_id or None
        self._secret_access_key = secret_access_key or None
        self._max_pool_connections = max_pool_connections
        self._client = client
        self._client_lock = threading.Lock()

    @property
    def client(self):
        """Lazy-load and cache the boto3 client (thread-safe, shared by all uploads)."""
        if self._client is None:
            # boto3.client() on the default session is not thread-safe
            with self._client_lock:
                if self._client is None:
                    credentials = {}
                    if self._access_key_id and self._secret_access_key:
                        credentials = {
                            "aws_access_key_id": self._access_key_id,
                            "aws_secret_access_key": self._secret_access_key,
                        }
                    self._client = boto3.client(
                        "s3",
                        region_name=self.region,
                        endpoint_url=self.endpoint_url,
                        config=Config(
                            signature_version="s3v4",
                            max_pool_connections=self._max_pool_connections,
                        ),
                        **credentials,
                    )
        return self._client

    async def _call(self, operation: str, method, key: str, retry_transient: bool = False, **kwargs):
        """Run a bound client method in a worker thread, wrapping SDK failures.

        ``method`` is resolved on the event loop, so worker threads never
        build the client themselves.
        """
        try:
            if retry_transient:
                return await asyncio.to_thread(_retrying, method, **kwargs)
            return await asyncio.to_thread(method, **kwargs)
        except (ClientError, BotoCoreError) as e:
            logger.error(
                f"S3 {operation} failed for {key}: {e}",
                extra={"bucket": self.bucket, "object_key": key, "operation": operation, "error": str(e)},
            )
            raise StorageError(f"S3 {operation} failed: {e}") from e

    async def put_object(
        self, key: str, data: bytes, content_type: str, metadata: Mapping[str, str]
    ) -> None:
        await self._call(
            "put_object",
            self.client.put_object,
            key,
            retry_transient=True,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata=dict(metadata),
        )
        logger.info(
            f"Stored {key} in a single request",
            extra={"bucket": self.bucket, "object_key": key, "size_bytes": len(data)},
        )

    async def create_multipart_upload(
        self, key: str, content_type: str, metadata: Mapping[str, str]
    ) -> str:
        response = await self._call(
            "create_multipart_upload",
            self.client.create_multipart_upload,
            key,
            Bucket=self.bucket,
            Key=key,
            ContentType=content_type,
            Metadata=dict(metadata),
        )
        upload_id = response["UploadId"]
        logger.info(
            f"Opened multipart upload for {key}",
            extra={"bucket": self.bucket, "object_key": key, "upload_id": upload_id},
        )
        return upload_id

    async def upload_part(self, key: str, upload_id: str, part_number: int, data: bytes) -> str:
        response = await self._call(
            "upload_part",
            self.client.upload_part,
            key,
            retry_transient=True,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=data,
        )
        return response["ETag"]

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[UploadedPart]
    ) -> None:
        ordered = sorted(parts, key=lambda part: part.part_number)
        await self._call(
            "complete_multipart_upload",
            self.client.complete_multipart_upload,
            key,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": part.part_number, "ETag": part.etag} for part in ordered]
            },
        )
        logger.info(
            f"Completed multipart upload for {key}",
            extra={"bucket": self.bucket, "object_key": key, "upload_id": upload_id, "parts": len(ordered)},
        )

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        await self._call(
            "abort_multipart_upload",
            self.client.abort_multipart_upload,
            key,
            Bucket=self.bucket,
            Key=key,
            UploadId=upload_id,
        )
        logger.info(
            f"Aborted multipart upload for {key}",
            extra={"bucket": self.bucket, "object_key": key, "upload_id": upload_id},
        )

    def public_url(self, key: str) -> str:
        return self.public_url_template.format(
            bucket=self.bucket, region=self.region, key=quote(key, safe="/")
        )

    def get_backend_name(self) -> str:
        return "s3"
