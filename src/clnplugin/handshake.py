"""Built-in handshake calls: ``getmanifest`` and ``init``."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from clnplugin.exceptions import PluginError, RpcError
from clnplugin.protocol import ErrorCode
from clnplugin.registry import CapabilityRegistry, call_handler
from clnplugin.rpc import LightningRpc

logger = logging.getLogger(__name__)

GETMANIFEST = "getmanifest"
INIT = "init"

StartupCallback = Callable[[dict[str, Any]], Any]


class ConnectionState(Enum):
    """Lifecycle of the single host connection."""

    AWAITING_MANIFEST = "awaiting_manifest"
    AWAITING_INIT = "awaiting_init"
    READY = "ready"


@dataclass
class Connection:
    """Process-wide connection state, created once per plugin."""

    state: ConnectionState = ConnectionState.AWAITING_MANIFEST
    rpc: LightningRpc | None = None
    startup: bool = True
    configuration: dict[str, Any] = field(default_factory=dict)


class HandshakeHandler:
    """Answers the handshake and configures the plugin from ``init``."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        connection: Connection,
        startup_callback: StartupCallback | None = None,
        rpc_factory: Callable[[Path], LightningRpc] = LightningRpc,
    ):
        self._registry = registry
        self._connection = connection
        self._rpc_factory = rpc_factory
        self.startup_callback = startup_callback

    def getmanifest(self, params: Any) -> dict[str, Any]:
        return self._registry.build_manifest()

    async def init(self, params: Any) -> dict[str, Any]:
        """Apply the host's configuration and run the startup callback.

        Raises:
            RpcError: If the init params are not shaped as expected.
        """
        configuration, options = _parse_init_params(params)

        self._registry.apply_option_values(options)
        socket_path = Path(configuration["lightning-dir"]) / configuration["rpc-file"]
        self._connection.rpc = self._rpc_factory(socket_path)
        self._connection.startup = bool(configuration.get("startup", True))
        self._connection.configuration = dict(configuration)
        logger.info("plugin_init", extra={"rpc.socket": str(socket_path)})

        if self.startup_callback is not None:
            await call_handler(self.startup_callback, params)

        # The host does not interpret the init result.
        return {}


def _parse_init_params(params: Any) -> tuple[dict[str, Any], dict[str, Any]]:
    if not isinstance(params, dict):
        raise RpcError(ErrorCode.INVALID_PARAMS, "init params must be an object")
    configuration = params.get("configuration")
    if not isinstance(configuration, dict):
        raise RpcError(ErrorCode.INVALID_PARAMS, "init params lack a configuration")
    for key in ("lightning-dir", "rpc-file"):
        if not isinstance(configuration.get(key), str) or not configuration[key]:
            raise RpcError(
                ErrorCode.INVALID_PARAMS, f"init configuration lacks '{key}'"
            )
    options = params.get("options") or {}
    if not isinstance(options, dict):
        raise RpcError(ErrorCode.INVALID_PARAMS, "init options must be an object")
    return configuration, options


def require_rpc(connection: Connection) -> LightningRpc:
    if connection.rpc is None:
        raise PluginError("RPC connection is only available after init")
    return connection.rpc
