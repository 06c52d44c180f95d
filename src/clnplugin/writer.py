"""Serialized, backpressure-aware writer for the protocol output stream."""

import asyncio
import logging
from collections import deque
from typing import Any, Protocol

from clnplugin.exceptions import TransportError
from clnplugin.protocol import RPCRequest, RPCResponse, encode_record

logger = logging.getLogger(__name__)

# Records queued by synchronous callers before new ones are dropped
DEFAULT_MAX_QUEUED = 1000


class OutputStream(Protocol):
    """The subset of ``asyncio.StreamWriter`` the writer relies on."""

    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


class OutputWriter:
    """Write records to the host, waiting for the stream to drain.

    Awaited writes suspend the caller until the stream drains. Synchronous
    callers (the logging handler) use ``write_nowait``, which queues the
    record for a background flusher going through the same draining path.
    That queue is bounded: while the host is not reading, records beyond
    ``max_queued`` are dropped and counted.

    Records written before a stream is attached are queued and flushed once
    one is, so logging during setup is not lost.
    """

    def __init__(
        self,
        stream: OutputStream | None = None,
        max_queued: int = DEFAULT_MAX_QUEUED,
    ):
        self._stream: OutputStream | None = None
        self._queue: deque[bytes] = deque()
        self._max_queued = max_queued
        self._dropped = 0
        self._overflowing = False
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._flusher: asyncio.Task[None] | None = None
        self._failure: TransportError | None = None
        if stream is not None:
            self.attach(stream)

    @property
    def attached(self) -> bool:
        return self._stream is not None

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def dropped(self) -> int:
        """Records discarded because the queue was full."""
        return self._dropped

    def attach(self, stream: OutputStream) -> None:
        self._stream = stream
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._wake_flusher()

    def detach(self) -> None:
        self._stream = None
        if self._flusher is not None and not self._flusher.done():
            self._flusher.cancel()
        self._flusher = None

    async def write(self, text: str) -> None:
        """Write one record and wait until the stream accepts more data.

        Raises:
            TransportError: If the stream fails, now or in an earlier
                background flush.
        """
        if self._failure is not None:
            raise self._failure
        data = text.encode("utf-8")
        if self._stream is None:
            self._queue.append(data)
            return
        await self._write_and_drain(data)

    def write_nowait(self, text: str) -> bool:
        """Queue one record for the background flusher.

        Safe to call from other threads. Returns False when the record was
        dropped because the queue is full.
        """
        if len(self._queue) >= self._max_queued:
            self._dropped += 1
            if not self._overflowing:
                self._overflowing = True
                logger.warning(
                    "host_output_queue_full", extra={"queue.max": self._max_queued}
                )
            return False
        self._queue.append(text.encode("utf-8"))
        self._wake_flusher()
        return True

    async def flush(self) -> None:
        """Wait until every queued record has been written and drained."""
        while self._stream is not None and (self._queue or self._flushing):
            if self._loop is None:
                self._loop = asyncio.get_running_loop()
            self._start_flusher()
            assert self._flusher is not None
            await asyncio.shield(self._flusher)
        if self._failure is not None:
            raise self._failure

    async def send(self, envelope: RPCRequest | RPCResponse | dict[str, Any]) -> None:
        await self.write(encode_record(envelope))

    async def send_notification(self, method: str, params: Any) -> None:
        await self.send(RPCRequest(method=method, params=params))

    def send_notification_nowait(self, method: str, params: Any) -> bool:
        record = encode_record(RPCRequest(method=method, params=params))
        return self.write_nowait(record)

    @property
    def _flushing(self) -> bool:
        return self._flusher is not None and not self._flusher.done()

    def _wake_flusher(self) -> None:
        if self._stream is None or self._loop is None or not self._queue:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._start_flusher()
        else:
            self._loop.call_soon_threadsafe(self._start_flusher)

    def _start_flusher(self) -> None:
        if not self._flushing and self._queue and self._stream is not None:
            self._flusher = asyncio.get_running_loop().create_task(
                self._flush_queue(), name="output-flusher"
            )

    async def _flush_queue(self) -> None:
        while self._queue and self._stream is not None:
            data = self._queue.popleft()
            try:
                await self._write_and_drain(data)
            except TransportError as e:
                self._failure = e
                self._queue.clear()
                logger.error(
                    f"Dropping queued output: {e}", extra={"host_logged": True}
                )
                return
        self._overflowing = False

    async def _write_and_drain(self, data: bytes) -> None:
        async with self._lock:
            if self._stream is None:
                self._queue.append(data)
                return
            try:
                self._stream.write(data)
                await self._stream.drain()
            except (ConnectionError, OSError) as e:
                raise TransportError(f"Output stream failed while draining: {e}") from e
