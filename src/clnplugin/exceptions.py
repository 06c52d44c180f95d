"""Error types raised by the plugin framework."""

from typing import Any


class PluginError(Exception):
    """Base class for plugin framework errors."""

    pass


class ConfigurationError(PluginError):
    """Invalid registration or plugin configuration.

    Raised synchronously while the plugin is being set up. Never sent
    over the wire.
    """

    pass


class ProtocolViolation(PluginError):
    """Inbound record that is not valid JSON or not valid JSON-RPC 2.0.

    Fatal: framing can no longer be trusted once this is raised.
    """

    pass


class TransportError(PluginError):
    """Writing to (or draining) the protocol channel failed."""

    pass


class RpcError(PluginError):
    """JSON-RPC error with an explicit code.

    Handlers may raise this to control the error code of their response.
    Outbound calls to the host raise it when the host answers with an error.
    """

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data
