"""Upload API routes."""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.requests import ClientDisconnect

from filerelay.core.config import settings
from filerelay.models.upload import (
    ErrorResponse,
    PresignRequest,
    PresignResponse,
    UploadResponse,
)
from filerelay.pipeline.coordinator import UploadPipeline
from filerelay.pipeline.exceptions import InvalidRequest, NetworkError, SigningFailed, UploadError
from filerelay.pipeline.keys import generate_object_key
from filerelay.pipeline.models import UploadRequest
from filerelay.storage.factory import get_upload_pipeline, get_url_signer
from filerelay.storage.signing import UrlSigner

router = APIRouter(prefix="/api/v1", tags=["upload"])
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    415: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


async def _body_stream(request: Request) -> AsyncIterator[bytes]:
    """Yield raw body chunks as they arrive, without buffering the body."""
    try:
        async for chunk in request.stream():
            if chunk:
                yield chunk
    except ClientDisconnect as e:
        raise NetworkError() from e


@router.post("/upload", response_model=UploadResponse, responses=ERROR_RESPONSES)
async def upload_file(
    request: Request,
    x_upload_client: Optional[str] = Header(None),
    pipeline: UploadPipeline = Depends(get_upload_pipeline),
) -> UploadResponse:
    """Stream a single multipart file into the object store."""
    upload_request = UploadRequest(
        stream=_body_stream(request),
        content_type=request.headers.get("content-type"),
        client_hint=x_upload_client,
        method=request.method,
        content_length=request.headers.get("content-length"),
    )

    try:
        result = await pipeline.run(upload_request)
    except UploadError as e:
        log = logger.warning if e.status_code < 500 else logger.error
        log(
            f"Upload failed: {e.message}",
            extra={"http_status": e.status_code, "error_type": type(e).__name__},
        )
        raise

    logger.info(
        "upload_success",
        extra={
            "object_key": result.object_key,
            "backend": pipeline.store.get_backend_name(),
            "size_bytes": result.byte_count,
            "mime_type": result.mime_type,
            "upload_metadata": result.metadata,
        },
    )
    return UploadResponse(url=result.retrieval_url, key=result.object_key)


@router.post("/presign", response_model=PresignResponse, responses=ERROR_RESPONSES)
async def presign_upload(
    payload: PresignRequest,
    signer: Optional[UrlSigner] = Depends(get_url_signer),
) -> PresignResponse:
    """Issue presigned PUT and GET URLs for a direct client-to-store upload."""
    if not payload.filename or not payload.filename.strip():
        raise InvalidRequest("filename is required")

    if signer is None:
        raise InvalidRequest(
            f"Presigned URLs require the s3 storage backend. Current backend: {settings.STORAGE_BACKEND}"
        )

    key = generate_object_key(payload.filename)
    content_type = payload.content_type or "application/octet-stream"
    try:
        put_url = await signer.generate_url(
            key, "PUT", settings.PRESIGN_PUT_EXPIRY_SECONDS, content_type=content_type
        )
        get_url = await signer.generate_url(key, "GET", settings.SIGNED_URL_EXPIRY_SECONDS)
    except SigningFailed as e:
        logger.error(f"Failed to presign URL: {e}", extra={"object_key": key}, exc_info=True)
        raise UploadError("Failed to presign URL") from e

    logger.info("Presigned upload issued", extra={"object_key": key, "content_type": content_type})
    return PresignResponse(
        bucket=signer.bucket,
        region=signer.region,
        key=key,
        put_url=put_url,
        get_url=get_url,
    )
