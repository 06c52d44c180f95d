"""Framework for host daemon plugins speaking JSON-RPC 2.0 over stdio.

The host starts the plugin as a child process and talks to it over the
inherited stdin/stdout: ``getmanifest`` first, then ``init``, then method
calls, hooks and notifications.

Public API:
- Plugin: the plugin context object (registration, logging, run loop)
- PluginConfig: runtime configuration
- LightningRpc: client for calls back into the host

Protocol:
- RPCRequest, RPCResponse, RPCError, ErrorCode: JSON-RPC 2.0 envelopes
- RecordDecoder, encode_record, parse_message: record framing
"""

from clnplugin.config import PluginConfig
from clnplugin.exceptions import (
    ConfigurationError,
    PluginError,
    ProtocolViolation,
    RpcError,
    TransportError,
)
from clnplugin.handshake import ConnectionState
from clnplugin.plugin import Plugin
from clnplugin.protocol import (
    ErrorCode,
    RecordDecoder,
    RPCError,
    RPCRequest,
    RPCResponse,
    encode_record,
    parse_message,
)
from clnplugin.rpc import LightningRpc

__all__ = [
    # Plugin
    "Plugin",
    "PluginConfig",
    "ConnectionState",
    "LightningRpc",
    # Errors
    "PluginError",
    "ConfigurationError",
    "ProtocolViolation",
    "RpcError",
    "TransportError",
    # Protocol
    "RPCRequest",
    "RPCResponse",
    "RPCError",
    "ErrorCode",
    "RecordDecoder",
    "encode_record",
    "parse_message",
]
