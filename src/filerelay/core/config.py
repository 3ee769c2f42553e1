"""Configuration management for filerelay."""

import string

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_MIME = ("image/*", "text/plain", "application/pdf")
PUBLIC_URL_FIELDS = {"bucket", "region", "key"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    ENV: str = "local"
    SERVICE_NAME: str = "filerelay"
    SERVICE_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Storage Configuration
    STORAGE_BACKEND: str = "local"  # "s3" or "local"
    S3_BUCKET: str = Field("", validation_alias=AliasChoices("S3_BUCKET", "AWS_S3_BUCKET"))
    AWS_REGION: str = Field("", validation_alias=AliasChoices("AWS_REGION", "AWS_S3_REGION"))
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    S3_ENDPOINT_URL: str = ""  # MinIO or other S3-compatible endpoint
    S3_MAX_POOL_CONNECTIONS: int = 50
    LOCAL_STORAGE_PATH: str = "data/uploads"

    # Upload Constraints
    MAX_FILE_SIZE_MB: int = 5
    ALLOWED_MIME: str = ""  # Comma-separated rules, "type/*" wildcards allowed

    # Streaming and multipart upload tuning
    UPLOAD_PART_SIZE_MB: int = 8
    UPLOAD_QUEUE_SIZE: int = 8  # Concurrent part uploads per file
    RELAY_CAPACITY: int = 4  # Chunks buffered between guard and writer
    UPLOAD_TIMEOUT_SECONDS: float = 300.0

    # Retrieval URLs
    SIGNED_URL_EXPIRY_SECONDS: int = 3600
    PRESIGN_PUT_EXPIRY_SECONDS: int = 900
    PUBLIC_URL_TEMPLATE: str = "https://{bucket}.s3.{region}.amazonaws.com/{key}"

    CORS_ALLOW_ORIGINS: str = "*"

    @field_validator("STORAGE_BACKEND")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("s3", "local"):
            raise ValueError("STORAGE_BACKEND must be 's3' or 'local'")
        return value

    @field_validator("PUBLIC_URL_TEMPLATE")
    @classmethod
    def _check_public_url_template(cls, value: str) -> str:
        fields = {name for _, name, _, _ in string.Formatter().parse(value) if name is not None}
        if "key" not in fields:
            raise ValueError("PUBLIC_URL_TEMPLATE must contain {key}")
        unknown = fields - PUBLIC_URL_FIELDS
        if unknown:
            raise ValueError(f"PUBLIC_URL_TEMPLATE has unknown placeholders: {sorted(unknown)}")
        return value

    @field_validator("MAX_FILE_SIZE_MB", "UPLOAD_PART_SIZE_MB", "UPLOAD_QUEUE_SIZE", "RELAY_CAPACITY")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def allowed_mime_rules(self) -> list[str]:
        """Parse ALLOWED_MIME into a list, falling back to the defaults."""
        rules = [rule.strip().lower() for rule in self.ALLOWED_MIME.split(",") if rule.strip()]
        return rules or list(DEFAULT_ALLOWED_MIME)

    @property
    def max_upload_bytes(self) -> int:
        """Convert MAX_FILE_SIZE_MB to bytes."""
        return self.MAX_FILE_SIZE_MB * 1024 * 1024

    @property
    def part_size_bytes(self) -> int:
        """Convert UPLOAD_PART_SIZE_MB to bytes."""
        return self.UPLOAD_PART_SIZE_MB * 1024 * 1024

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ALLOW_ORIGINS.split(",") if origin.strip()]


# Singleton settings instance
settings = Settings()
