"""Builds the process-wide store, signer and upload pipeline from settings."""

import logging
from functools import lru_cache

from filerelay.core.config import settings
from filerelay.pipeline.coordinator import UploadPipeline
from filerelay.pipeline.exceptions import StorageConfigurationError
from filerelay.pipeline.guard import UploadPolicy
from filerelay.pipeline.writer import S3_MIN_PART_SIZE
from filerelay.storage.base import ObjectStore
from filerelay.storage.local import LocalObjectStore
from filerelay.storage.s3 import S3ObjectStore
from filerelay.storage.signing import S3UrlSigner, UrlSigner

logger = logging.getLogger(__name__)


@lru_cache
def get_object_store() -> ObjectStore:
    """Return the configured object store, shared by all requests.

    Raises:
        StorageConfigurationError: If the S3 backend lacks bucket or region
    """
    if settings.STORAGE_BACKEND == "s3":
        if not settings.S3_BUCKET or not settings.AWS_REGION:
            logger.error(
                "S3 backend selected without bucket or region",
                extra={"bucket": settings.S3_BUCKET, "region": settings.AWS_REGION},
            )
            raise StorageConfigurationError()
        if settings.part_size_bytes < S3_MIN_PART_SIZE:
            raise StorageConfigurationError("Server not configured: UPLOAD_PART_SIZE_MB must be at least 5")
        return S3ObjectStore(
            bucket=settings.S3_BUCKET,
            region=settings.AWS_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key_id=settings.AWS_ACCESS_KEY_ID,
            secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            max_pool_connections=settings.S3_MAX_POOL_CONNECTIONS,
            public_url_template=settings.PUBLIC_URL_TEMPLATE,
        )
    return LocalObjectStore(settings.LOCAL_STORAGE_PATH)


@lru_cache
def get_url_signer() -> UrlSigner | None:
    """Return a URL signer for the configured store, or None if it cannot sign."""
    store = get_object_store()
    if isinstance(store, S3ObjectStore):
        return S3UrlSigner(store)
    return None


@lru_cache
def get_upload_pipeline() -> UploadPipeline:
    return UploadPipeline(
        store=get_object_store(),
        policy=UploadPolicy.from_settings(settings),
        signer=get_url_signer(),
        part_size=settings.part_size_bytes,
        queue_size=settings.UPLOAD_QUEUE_SIZE,
        relay_capacity=settings.RELAY_CAPACITY,
        timeout_seconds=settings.UPLOAD_TIMEOUT_SECONDS,
        url_expiry_seconds=settings.SIGNED_URL_EXPIRY_SECONDS,
    )
