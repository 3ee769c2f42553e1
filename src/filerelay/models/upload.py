"""Upload API models."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadResponse(BaseModel):
    """Response model for a streamed upload."""

    url: str = Field(..., description="Retrieval URL, presigned when the store supports it")
    key: str = Field(..., description="Generated object key")


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    error: str


class PresignRequest(BaseModel):
    """Request model for direct-to-store upload URLs."""

    model_config = ConfigDict(populate_by_name=True)

    filename: Optional[str] = None
    content_type: Optional[str] = Field(None, alias="contentType")


class PresignResponse(BaseModel):
    """Presigned PUT/GET URLs for a freshly generated key."""

    model_config = ConfigDict(populate_by_name=True)

    bucket: str
    region: str
    key: str
    put_url: str = Field(..., alias="putUrl")
    get_url: str = Field(..., alias="getUrl")
