"""The plugin context object.

One ``Plugin`` is built at startup, receives every registration, and is then
handed the process's stdin/stdout for the rest of its life::

    plugin = Plugin()

    @plugin.method("hello")
    def hello(params):
        return {"greeting": f"hello {params.get('name', 'world')}"}

    @plugin.hook("peer_connected")
    async def on_peer(params):
        return {"result": "continue"}

    plugin.run()
"""

import asyncio
import inspect
import logging
import sys
from collections.abc import Callable, Mapping
from typing import Any

from clnplugin.config import PluginConfig
from clnplugin.dispatcher import Dispatcher
from clnplugin.exceptions import PluginError, ProtocolViolation, TransportError
from clnplugin.handshake import (
    Connection,
    ConnectionState,
    HandshakeHandler,
    StartupCallback,
    require_rpc,
)
from clnplugin.logging import (
    DEFAULT_HOST_LOG_LEVEL,
    HOST_LOG_LEVELS,
    HostLogHandler,
    configure_logging,
    split_log_lines,
)
from clnplugin.registry import (
    CapabilityRegistry,
    Handler,
    Hook,
    Listener,
    Method,
    Option,
    Subscription,
)
from clnplugin.rpc import LightningRpc
from clnplugin.writer import OutputStream, OutputWriter

logger = logging.getLogger(__name__)


async def open_stdio() -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Wrap the process's stdin and stdout in asyncio streams."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    transport, write_protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, sys.stdout
    )
    writer = asyncio.StreamWriter(transport, write_protocol, reader, loop)
    return reader, writer


def _doc_parts(fn: Callable[..., Any]) -> tuple[str, str]:
    doc = inspect.getdoc(fn) or ""
    summary = doc.split("\n", 1)[0].strip()
    return summary, doc


class Plugin:
    """A host daemon plugin speaking JSON-RPC 2.0 over stdio."""

    def __init__(
        self,
        config: PluginConfig | Mapping[str, Any] | bool | None = None,
        *,
        dynamic: bool | None = None,
    ):
        """Initialize the plugin.

        Args:
            config: A PluginConfig, a mapping of its fields, or (legacy) a bare
                bool meaning ``dynamic``.
            dynamic: Legacy flag. Ignored when the config sets ``dynamic``.
        """
        self.config = PluginConfig.resolve(config, dynamic)
        self.registry = CapabilityRegistry(dynamic=self.config.dynamic)
        self.connection = Connection()
        self.writer = OutputWriter(max_queued=self.config.max_queued_logs)
        self.handshake = HandshakeHandler(self.registry, self.connection)
        self.dispatcher = Dispatcher(
            self.registry, self.handshake, self.connection, self.writer
        )

    # -- registration -----------------------------------------------------

    def add_method(
        self,
        name: str,
        handler: Handler,
        usage: str = "",
        description: str = "",
        long_description: str = "",
    ) -> Method:
        """Expose a JSON-RPC method through the host."""
        return self.registry.register_method(
            name, handler, usage, description, long_description
        )

    def add_hook(self, name: str, handler: Handler) -> Hook:
        """Register the handler answering a host hook."""
        return self.registry.register_hook(name, handler)

    def add_option(
        self, name: str, default: Any, description: str, type: str = "string"
    ) -> Option:
        """Declare a startup option the host passes through to us."""
        return self.registry.register_option(name, default, description, type)

    def subscribe(self, topic: str, listener: Listener | None = None) -> Subscription:
        """Subscribe to a host notification topic."""
        subscription = self.registry.subscribe(topic)
        if listener is not None:
            subscription.add_listener(listener)
        return subscription

    def method(
        self,
        name: str | None = None,
        *,
        usage: str = "",
        description: str = "",
        long_description: str = "",
    ) -> Callable[[Handler], Handler]:
        """Decorator form of ``add_method``; descriptions default to the docstring."""

        def decorator(fn: Handler) -> Handler:
            summary, doc = _doc_parts(fn)
            self.add_method(
                name or fn.__name__,
                fn,
                usage=usage,
                description=description or summary,
                long_description=long_description or doc,
            )
            return fn

        return decorator

    def hook(self, name: str | None = None) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.add_hook(name or fn.__name__, fn)
            return fn

        return decorator

    def subscription(self, topic: str | None = None) -> Callable[[Listener], Listener]:
        def decorator(fn: Listener) -> Listener:
            self.subscribe(topic or fn.__name__, fn)
            return fn

        return decorator

    def on_init(self, callback: StartupCallback) -> StartupCallback:
        """Set the callback run once the host sends ``init``.

        Usable as a decorator. The callback gets the raw init params.
        """
        self.handshake.startup_callback = callback
        return callback

    # -- runtime state ----------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def rpc(self) -> LightningRpc:
        """Client for calls back into the host. Available after init."""
        return require_rpc(self.connection)

    @property
    def startup(self) -> bool:
        """Whether the plugin was started together with the host."""
        return self.connection.startup

    @property
    def options(self) -> dict[str, Any]:
        return {name: opt.value for name, opt in self.registry.options.items()}

    def get_option(self, name: str) -> Any:
        option = self.registry.get_option(name)
        if option is None:
            raise PluginError(f"Unknown option: {name}")
        return option.value

    def manifest(self) -> dict[str, Any]:
        return self.registry.build_manifest()

    # -- output to the host -----------------------------------------------

    async def log(self, message: str, level: str = DEFAULT_HOST_LOG_LEVEL) -> None:
        """Write to the host's log, one notification per non-empty line.

        Waits for the output to drain after each line. Synchronous code should
        use the ``logging`` module instead; ``HostLogHandler`` forwards its
        records through a bounded queue.
        """
        if not isinstance(message, str):
            raise TypeError("You need to pass a string to write to the host's log")
        if not message:
            raise ValueError("You need to pass a message to write to the host's log")
        level = level or DEFAULT_HOST_LOG_LEVEL
        if level not in HOST_LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        for line in split_log_lines(message):
            await self.writer.send_notification(
                "log", {"level": level, "message": line}
            )

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification to the host and wait for the output to drain."""
        await self.writer.send_notification(method, {} if params is None else params)

    # -- lifecycle --------------------------------------------------------

    async def start(
        self,
        reader: Any = None,
        stream: OutputStream | None = None,
    ) -> None:
        """Serve the host until it closes our input.

        Uses the process's stdio unless a reader and an output stream are
        given.
        """
        if reader is None or stream is None:
            reader, stream = await open_stdio()
        self.writer.attach(stream)
        logger.debug("plugin_started", extra={"dynamic": self.config.dynamic})
        try:
            await self.dispatcher.serve(
                reader, self.config.read_chunk_size, self.config.max_record_size
            )
            await self.writer.flush()
        finally:
            self.writer.detach()

    def run(self, use_rich: bool = False) -> None:
        """Configure logging and serve stdio; exits with status 1 on fatal errors."""
        host_handler = HostLogHandler(self.writer) if self.config.forward_logs else None
        configure_logging(
            level=self.config.resolved_log_level(),
            use_rich=use_rich,
            host_handler=host_handler,
        )
        try:
            asyncio.run(self.start())
        except (ProtocolViolation, TransportError) as e:
            logger.error(f"Plugin stopped: {e}", extra={"host_logged": True})
            raise SystemExit(1) from e
