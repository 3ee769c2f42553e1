"""Exceptions raised by the upload pipeline.

Every ``UploadError`` carries the HTTP status and the single message shown
to the caller. Internal causes (SDK errors, tracebacks) are chained and
logged, never rendered.
"""


class UploadError(Exception):
    """Base exception for the upload pipeline."""

    status_code = 500
    default_message = "Upload failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MalformedRequest(UploadError):
    """Missing or non-multipart content type, or an unparseable body."""

    status_code = 400
    default_message = "Invalid content-type; expected multipart/form-data"


class NoFileProvided(UploadError):
    """The multipart body ended without a file field."""

    status_code = 400
    default_message = "No file uploaded. Field name: file"


class UnsupportedType(UploadError):
    """Declared MIME type matches no allow-list rule."""

    status_code = 415

    def __init__(self, mime_type: str):
        self.mime_type = mime_type
        super().__init__(f"Unsupported file type: {mime_type}")


class FileTooLarge(UploadError):
    """Streamed byte count went past the configured maximum."""

    status_code = 413
    default_message = "File too large"

    def __init__(self, max_bytes: int | None = None):
        self.max_bytes = max_bytes
        super().__init__()


class NetworkError(UploadError):
    """Client went away while the body was being read."""

    status_code = 400
    default_message = "Client disconnected during upload"


class StoreUploadFailed(UploadError):
    """Object store rejected or failed the upload."""

    status_code = 500
    default_message = "Failed to store file"

    def __init__(self, cause: BaseException | None = None):
        self.cause = cause
        super().__init__()


class InvalidRequest(UploadError):
    """Request body is well-formed but missing or carrying invalid values."""

    status_code = 400
    default_message = "Invalid request"


class UploadTimedOut(UploadError):
    """Pipeline ran past its wall-clock timeout."""

    status_code = 504
    default_message = "Upload timed out"


class StorageConfigurationError(UploadError):
    """Storage backend is not configured."""

    status_code = 500
    default_message = "Server not configured: missing S3_BUCKET or AWS_REGION"


class SigningFailed(Exception):
    """Signing service could not produce a URL."""
    pass


class StorageError(Exception):
    """Exception raised when an object store operation fails."""
    pass
