"""JSON-RPC 2.0 envelopes and record framing for the plugin channel.

Records are compact JSON documents separated by a blank line. The decoder is
lenient: a single newline also ends a record as soon as the text seen so far
is a complete JSON document.
"""

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from clnplugin.exceptions import ProtocolViolation, RpcError

RECORD_SEPARATOR = "\n\n"

# Largest record accepted from the host before framing is considered lost
MAX_RECORD_SIZE = 10 * 1024 * 1024


class ErrorCode:
    """JSON-RPC 2.0 codes the framework itself answers with.

    Handlers choose their own codes by raising ``RpcError``.
    """

    INVALID_REQUEST = -32600
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


@dataclass
class RPCRequest:
    """JSON-RPC 2.0 request, or a notification when ``id`` is None."""

    method: str
    params: Any = field(default_factory=dict)
    id: int | str | None = None
    jsonrpc: str = "2.0"

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.id is not None:
            d["id"] = self.id
        d["method"] = self.method
        d["params"] = self.params
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RPCRequest":
        params = data.get("params")
        return cls(
            method=data.get("method", ""),
            params={} if params is None else params,
            id=data.get("id"),
            jsonrpc=data.get("jsonrpc", ""),
        )


@dataclass(frozen=True, slots=True)
class RPCError:
    """The ``error`` member of a failed response."""

    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    def to_exception(self) -> RpcError:
        return RpcError(self.code, self.message, self.data)

    @classmethod
    def from_dict(cls, data: Any) -> "RPCError":
        if not isinstance(data, dict):
            raise ProtocolViolation("Bad JSON-RPC 2.0: error member is not an object")
        code = data.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            raise ProtocolViolation("Bad JSON-RPC 2.0: error code is not an integer")
        return cls(
            code=code, message=str(data.get("message", "")), data=data.get("data")
        )


@dataclass(slots=True)
class RPCResponse:
    """Reply to a request, carrying either ``result`` or ``error``."""

    id: int | str | None
    result: Any = None
    error: RPCError | None = None
    jsonrpc: str = "2.0"

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.error is None:
            payload["result"] = self.result
        else:
            payload["error"] = self.error.to_dict()
        return payload

    @classmethod
    def success(cls, id: int | str | None, result: Any) -> "RPCResponse":
        return cls(id=id, result=result)

    @classmethod
    def error_response(
        cls, id: int | str | None, code: int, message: str, data: Any = None
    ) -> "RPCResponse":
        return cls(id=id, error=RPCError(code, message, data))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RPCResponse":
        """Read a reply received on the host's RPC socket."""
        jsonrpc = data.get("jsonrpc", "2.0")
        if data.get("error") is not None:
            error = RPCError.from_dict(data["error"])
            return cls(id=data.get("id"), error=error, jsonrpc=jsonrpc)
        return cls(id=data.get("id"), result=data.get("result"), jsonrpc=jsonrpc)


def encode_record(envelope: RPCRequest | RPCResponse | dict[str, Any]) -> str:
    """Serialize an envelope to one wire record, separator included."""
    payload = envelope if isinstance(envelope, dict) else envelope.to_dict()
    return json.dumps(payload, separators=(",", ":")) + RECORD_SEPARATOR


def _is_complete(text: str) -> bool:
    """Tell a complete document from one cut short at the end of ``text``.

    Lines are joined with a newline and JSON tokens cannot span one, so an
    error before the end of the text can never be fixed by more input.

    Raises:
        ProtocolViolation: If the text is malformed rather than incomplete.
    """
    try:
        json.loads(text)
    except json.JSONDecodeError as e:
        if e.pos < len(text):
            raise ProtocolViolation(f"Malformed JSON record: {e}") from e
        return False
    return True


class RecordDecoder:
    """Incremental splitter turning raw input bytes into JSON text records.

    Bytes that do not yet form a complete line are kept until the next
    ``feed()``. Lines are accumulated into the pending record until it parses
    or a blank line closes it.
    """

    def __init__(self, max_record_size: int = MAX_RECORD_SIZE) -> None:
        self._buffer = b""
        self._pending: list[str] = []
        self._pending_size = 0
        self._max_record_size = max_record_size

    @property
    def has_pending(self) -> bool:
        return bool(self._buffer.strip()) or bool(self._pending)

    def feed(self, data: bytes) -> Iterator[str]:
        """Consume a chunk and lazily yield every record it completes, in order.

        A malformed record raises ``ProtocolViolation`` only when iteration
        reaches it, after the records preceding it have been yielded.
        """
        self._buffer += data
        return self._records()

    def _records(self) -> Iterator[str]:
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                self._check_size(len(self._buffer))
                return
            raw_line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            try:
                line = raw_line.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolViolation(f"Invalid UTF-8 in input: {e}") from e

            if not line.strip():
                # Blank line: whatever is pending must be a full document.
                if self._pending:
                    yield self._take_pending()
                continue

            self._pending.append(line)
            self._pending_size += len(raw_line) + 1
            self._check_size(0)
            # Past the first line, only a line closing a container can end it.
            if len(self._pending) > 1 and not line.rstrip().endswith(("}", "]")):
                continue
            text = "\n".join(self._pending)
            if _is_complete(text):
                self._clear_pending()
                yield text

    def close(self) -> list[str]:
        """Flush at end of input; leftover text must be a complete record."""
        if self._buffer.strip():
            try:
                self._pending.append(self._buffer.decode("utf-8"))
            except UnicodeDecodeError as e:
                raise ProtocolViolation(f"Invalid UTF-8 in input: {e}") from e
        self._buffer = b""
        if not self._pending:
            return []
        return [self._take_pending()]

    def _check_size(self, unterminated: int) -> None:
        if self._pending_size + unterminated > self._max_record_size:
            raise ProtocolViolation(
                f"Record exceeds the {self._max_record_size} byte limit"
            )

    def _clear_pending(self) -> None:
        self._pending.clear()
        self._pending_size = 0

    def _take_pending(self) -> str:
        text = "\n".join(self._pending)
        self._clear_pending()
        try:
            json.loads(text)
        except json.JSONDecodeError as e:
            raise ProtocolViolation(f"Malformed JSON record: {e}") from e
        return text


def parse_message(record: str) -> RPCRequest:
    """Decode one record and validate its JSON-RPC 2.0 request shape."""
    try:
        payload = json.loads(record)
    except json.JSONDecodeError as e:
        raise ProtocolViolation(f"Malformed JSON record: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolViolation("Bad JSON-RPC 2.0: record is not an object")
    if payload.get("jsonrpc") != "2.0":
        raise ProtocolViolation("Bad JSON-RPC 2.0: invalid jsonrpc version")
    method = payload.get("method")
    if not method or not isinstance(method, str):
        raise ProtocolViolation("Bad JSON-RPC 2.0: missing method")

    return RPCRequest.from_dict(payload)
