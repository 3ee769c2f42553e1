"""Bounded byte relay between the validation guard and the store writer."""

import asyncio
from collections import deque


class RelayAborted(Exception):
    """Raised on either side of a relay after ``abort``."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Relay aborted: {cause!r}")


class ByteRelay:
    """Single-producer, single-consumer byte channel with a fixed window.

    ``send`` suspends while ``capacity`` chunks are buffered, so a slow
    consumer throttles the producer. ``receive`` returns ``b""`` once the
    producer has closed the relay and every buffered chunk was consumed.
    ``abort`` drops buffered chunks and wakes both sides; from then on every
    ``send`` and ``receive`` raises ``RelayAborted``.
    """

    def __init__(self, capacity: int = 4):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._chunks: deque[bytes] = deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()
        self._closed = False
        self._error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def aborted(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> BaseException | None:
        return self._error

    def buffered(self) -> int:
        return len(self._chunks)

    async def send(self, chunk: bytes) -> None:
        while True:
            if self._error is not None:
                raise RelayAborted(self._error) from self._error
            if self._closed:
                raise RuntimeError("send() on a closed relay")
            if len(self._chunks) < self.capacity:
                break
            self._writable.clear()
            await self._writable.wait()

        self._chunks.append(chunk)
        self._readable.set()

    async def receive(self) -> bytes:
        while True:
            if self._error is not None:
                raise RelayAborted(self._error) from self._error
            if self._chunks:
                chunk = self._chunks.popleft()
                self._writable.set()
                return chunk
            if self._closed:
                return b""
            self._readable.clear()
            await self._readable.wait()

    def close(self) -> None:
        """Mark end-of-stream. Buffered chunks stay readable."""
        self._closed = True
        self._readable.set()

    def abort(self, exc: BaseException) -> None:
        """Cancel the relay in both directions. The first cause wins."""
        if self._error is None:
            self._error = exc
        self._chunks.clear()
        self._readable.set()
        self._writable.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            chunk = await self.receive()
            if not chunk:
                return
            yield chunk
