"""Validation guard: MIME allow-list and streaming size cap."""

import logging
from dataclasses import dataclass
from typing import AsyncIterable

from filerelay.pipeline.exceptions import FileTooLarge, UnsupportedType
from filerelay.pipeline.multipart import FileEvent
from filerelay.pipeline.relay import ByteRelay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadPolicy:
    """Process-wide size/type policy, shared read-only by every upload."""

    max_bytes: int
    allowed_mime_rules: tuple[str, ...]

    def __post_init__(self):
        if self.max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        object.__setattr__(
            self,
            "allowed_mime_rules",
            tuple(rule.strip().lower() for rule in self.allowed_mime_rules if rule.strip()),
        )

    @classmethod
    def from_settings(cls, settings) -> "UploadPolicy":
        return cls(
            max_bytes=settings.max_upload_bytes,
            allowed_mime_rules=tuple(settings.allowed_mime_rules),
        )


def mime_allowed(mime_type: str | None, rules: tuple[str, ...] | list[str]) -> bool:
    """Check a MIME type against allow-list rules.

    ``type/*`` rules match any MIME type starting with ``type/``; any other
    rule matches only the identical string.
    """
    if not mime_type:
        return False
    for rule in rules:
        if rule.endswith("/*"):
            prefix = rule[: rule.index("/")]
            if mime_type.startswith(prefix + "/"):
                return True
        elif mime_type == rule:
            return True
    return False


class GuardedStream:
    """Counts bytes of one file body and forwards them into a bounded relay.

    ``bytes_seen`` is the running total read from the client. The moment it
    passes ``max_bytes`` the relay is aborted with ``FileTooLarge`` so the
    store writer cancels its upload, and the same error is raised to the
    caller of ``pump``.
    """

    def __init__(self, source: AsyncIterable[bytes], max_bytes: int, relay: ByteRelay):
        self._source = source
        self.max_bytes = max_bytes
        self.relay = relay
        self.bytes_seen = 0

    async def pump(self) -> int:
        """Forward the whole source into the relay.

        Returns:
            Total bytes forwarded

        Raises:
            FileTooLarge: As soon as the size cap is exceeded
        """
        try:
            async for chunk in self._source:
                self.bytes_seen += len(chunk)
                if self.bytes_seen > self.max_bytes:
                    error = FileTooLarge(self.max_bytes)
                    self.relay.abort(error)
                    logger.warning(
                        "File exceeded size limit while streaming",
                        extra={"bytes_seen": self.bytes_seen, "max_bytes": self.max_bytes},
                    )
                    raise error
                await self.relay.send(chunk)
        except BaseException as e:
            self.relay.abort(e)
            raise

        self.relay.close()
        return self.bytes_seen


class ValidationGuard:
    """Gatekeeper between the multipart reader and the store writer."""

    def __init__(self, policy: UploadPolicy, relay_capacity: int = 4):
        self.policy = policy
        self.relay_capacity = relay_capacity

    def check_type(self, mime_type: str | None) -> None:
        if not mime_allowed(mime_type, self.policy.allowed_mime_rules):
            raise UnsupportedType(mime_type or "")

    async def reject(self, event: FileEvent) -> int:
        """Discard a rejected file body so the reader can still reach end-of-stream."""
        return await event.body.drain()

    def admit(self, event: FileEvent) -> GuardedStream:
        """Check the declared type and open a size-guarded relay for the body.

        Raises:
            UnsupportedType: If the declared type matches no rule
        """
        self.check_type(event.content_type)
        return GuardedStream(event.body, self.policy.max_bytes, ByteRelay(self.relay_capacity))
