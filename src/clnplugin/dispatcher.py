"""Message dispatch engine: the plugin's read loop and routing state machine."""

import asyncio
import logging
from collections.abc import Awaitable, Coroutine
from typing import Any, Protocol

from clnplugin.exceptions import ProtocolViolation, RpcError, TransportError
from clnplugin.handshake import (
    GETMANIFEST,
    INIT,
    Connection,
    ConnectionState,
    HandshakeHandler,
)
from clnplugin.logging import split_log_lines
from clnplugin.protocol import (
    MAX_RECORD_SIZE,
    ErrorCode,
    RecordDecoder,
    RPCRequest,
    RPCResponse,
    parse_message,
)
from clnplugin.registry import CapabilityRegistry, Hook, Method
from clnplugin.writer import OutputWriter

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

# Marks records already sent to the host, so HostLogHandler skips them.
HOST_LOGGED = {"host_logged": True}


class InputStream(Protocol):
    """The subset of ``asyncio.StreamReader`` the read loop relies on."""

    async def read(self, n: int = -1) -> bytes: ...


class Dispatcher:
    """Classify inbound messages and route them to the right handler.

    Handshake calls are answered before the next record is looked at.
    Method and hook handlers run as background tasks so a slow handler never
    blocks the read loop; their responses may therefore be written out of
    order, each carrying the id of its request.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        handshake: HandshakeHandler,
        connection: Connection,
        writer: OutputWriter,
    ):
        self._registry = registry
        self._handshake = handshake
        self._connection = connection
        self._writer = writer
        self._tasks: set[asyncio.Task[Any]] = set()
        self._failure: asyncio.Future[None] | None = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def serve(
        self,
        reader: InputStream,
        chunk_size: int = READ_CHUNK_SIZE,
        max_record_size: int = MAX_RECORD_SIZE,
    ) -> None:
        """Run the read loop until the host closes our input.

        Raises:
            ProtocolViolation: On malformed input. Reported to the host first.
            TransportError: If the output stream breaks.
        """
        self._failure = asyncio.get_running_loop().create_future()
        decoder = RecordDecoder(max_record_size)
        try:
            while True:
                chunk = await self._read(reader, chunk_size)
                records = decoder.feed(chunk) if chunk else decoder.close()
                for record in records:
                    await self.dispatch(parse_message(record))
                if not chunk:
                    break
            logger.info("host_closed_input", extra={"rpc.in_flight": self.in_flight})
            await self._wait_for_tasks()
        except ProtocolViolation as e:
            await self._report_fatal(str(e))
            raise
        except TransportError as e:
            logger.error(f"Output to host is broken: {e}")
            raise
        finally:
            self._cancel_tasks()

    async def dispatch(self, request: RPCRequest) -> None:
        """Route one validated message."""
        method = request.method

        if request.is_notification:
            subscription = self._registry.get_subscription(method)
            if subscription is None:
                logger.debug("unhandled_notification", extra={"rpc.method": method})
                return
            if self._connection.state is not ConnectionState.READY:
                logger.debug("notification_before_init", extra={"rpc.method": method})
                return
            for pending in subscription.emit(request.params):
                self._spawn(self._await_listener(method, pending), f"notify:{method}")
            return

        if method == GETMANIFEST:
            manifest = self._handshake.getmanifest(request.params)
            await self._writer.send(RPCResponse.success(request.id, manifest))
            if self._connection.state is ConnectionState.AWAITING_MANIFEST:
                self._connection.state = ConnectionState.AWAITING_INIT
            return

        if method == INIT:
            await self._handle_init(request)
            return

        target: Hook | Method | None = self._registry.get_hook(method)
        if target is None:
            target = self._registry.get_method(method)
        if target is None:
            # The host only calls what we put in the manifest.
            logger.warning("unknown_method", extra={"rpc.method": method})
            return

        if self._connection.state is not ConnectionState.READY:
            await self._send_error(
                request.id,
                ErrorCode.INVALID_REQUEST,
                f"Plugin is not initialized, cannot handle {method}",
            )
            return

        self._spawn(self._invoke(target, request), f"rpc:{method}")

    async def _handle_init(self, request: RPCRequest) -> None:
        state = self._connection.state
        if state is ConnectionState.AWAITING_MANIFEST:
            await self._send_error(
                request.id,
                ErrorCode.INVALID_REQUEST,
                "init received before getmanifest",
            )
            return
        if state is ConnectionState.READY:
            logger.warning("init_replayed")
            await self._send_error(
                request.id, ErrorCode.INVALID_REQUEST, "Plugin is already initialized"
            )
            return

        try:
            result = await self._handshake.init(request.params)
        except RpcError as e:
            await self._send_error(request.id, e.code, e.message, e.data)
            return
        except Exception as e:
            logger.exception("startup_callback_failed")
            await self._send_error(request.id, ErrorCode.INTERNAL_ERROR, str(e))
            return

        self._connection.state = ConnectionState.READY
        await self._writer.send(RPCResponse.success(request.id, result))

    async def _invoke(self, target: Hook | Method, request: RPCRequest) -> None:
        try:
            result = await target.invoke(request.params)
        except RpcError as e:
            response = RPCResponse.error_response(request.id, e.code, e.message, e.data)
        except Exception as e:
            logger.error(
                f"Handler for {request.method} failed: {e}",
                exc_info=True,
                extra={"rpc.method": request.method},
            )
            response = RPCResponse.error_response(
                request.id, ErrorCode.INTERNAL_ERROR, str(e)
            )
        else:
            response = RPCResponse.success(request.id, result)
        await self._writer.send(response)

    async def _await_listener(self, topic: str, pending: Awaitable[Any]) -> None:
        try:
            await pending
        except Exception:
            logger.exception("subscription_listener_failed", extra={"topic": topic})

    async def _send_error(
        self, request_id: int | str | None, code: int, message: str, data: Any = None
    ) -> None:
        await self._writer.send(
            RPCResponse.error_response(request_id, code, message, data)
        )

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        # Handler errors are turned into responses, so anything left is fatal.
        if self._failure is not None and not self._failure.done():
            self._failure.set_exception(exc)
        else:
            logger.error(f"Background task {task.get_name()} failed: {exc}")

    def _raise_failure(self) -> None:
        if self._failure is not None and self._failure.done():
            exc = self._failure.exception()
            if exc is not None:
                raise exc

    async def _read(self, reader: InputStream, chunk_size: int) -> bytes:
        assert self._failure is not None
        # Wake up on input or on a fatal error from a background handler.
        read = asyncio.ensure_future(reader.read(chunk_size))
        try:
            await asyncio.wait(
                {read, self._failure}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not read.done():
                read.cancel()
        self._raise_failure()
        return read.result()

    async def _wait_for_tasks(self) -> None:
        while self._tasks:
            await asyncio.wait(set(self._tasks))
            self._raise_failure()
        self._raise_failure()

    def _cancel_tasks(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def _report_fatal(self, message: str) -> None:
        logger.error(message, extra=HOST_LOGGED)
        try:
            for line in split_log_lines(message):
                await self._writer.send_notification(
                    "log", {"level": "broken", "message": line}
                )
        except TransportError as e:
            logger.error(f"Could not report fatal error to host: {e}")
