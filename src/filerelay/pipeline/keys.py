"""Object key generation and upload metadata assembly."""

import re
import secrets
import string
from datetime import datetime, timezone

KEY_PREFIX = "uploads"
MAX_NAME_LENGTH = 120
TOKEN_LENGTH = 8
# uploads/YYYY/MM/DD/<13-digit ms>-<token>-<name>
MAX_KEY_LENGTH = len(KEY_PREFIX) + 12 + 14 + TOKEN_LENGTH + 1 + MAX_NAME_LENGTH

OBJECT_KEY_PATTERN = re.compile(
    r"^uploads/\d{4}/\d{2}/\d{2}/\d+-[a-z0-9]{%d}-[A-Za-z0-9._-]{1,%d}$"
    % (TOKEN_LENGTH, MAX_NAME_LENGTH)
)

METADATA_LIMITS = {
    "uploaded-by": 64,
    "original-name": 128,
}

_TOKEN_ALPHABET = string.ascii_lowercase + string.digits
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_NON_PRINTABLE = re.compile(r"[^\x20-\x7e]")


def sanitize_filename(filename: str | None) -> str:
    """Reduce an untrusted filename to ``[A-Za-z0-9._-]`` and cap its length."""
    safe = _UNSAFE_NAME_CHARS.sub("_", filename or "file")
    return safe[:MAX_NAME_LENGTH]


def random_token(length: int = TOKEN_LENGTH) -> str:
    return "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(length))


def generate_object_key(
    original_filename: str | None,
    now: datetime | None = None,
    token: str | None = None,
) -> str:
    """Build a collision-resistant storage key for an uploaded file.

    The key is date-partitioned (UTC), prefixed with a millisecond timestamp
    and a random token, and ends with the sanitized filename, e.g.
    ``uploads/2024/05/17/1715904000000-k3j9x0ab-report.pdf``.

    Args:
        original_filename: Client-supplied filename, untrusted
        now: Timestamp override, defaults to the current UTC time
        token: Random token override

    Returns:
        Object key safe for any S3-compatible store
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    millis = int(now.timestamp() * 1000)
    token = token or random_token()
    safe_name = sanitize_filename(original_filename)
    return f"{KEY_PREFIX}/{now:%Y}/{now:%m}/{now:%d}/{millis}-{token}-{safe_name}"


def _header_safe(value: str, limit: int) -> str:
    return _NON_PRINTABLE.sub("_", value)[:limit]


def build_metadata(client_hint: str | None, original_filename: str | None) -> dict[str, str]:
    """Assemble the user metadata stored alongside the object.

    Values travel as HTTP headers, so they are reduced to printable ASCII
    and capped per key.
    """
    return {
        "uploaded-by": _header_safe(client_hint or "unknown", METADATA_LIMITS["uploaded-by"]),
        "original-name": _header_safe(original_filename or "file", METADATA_LIMITS["original-name"]),
    }
