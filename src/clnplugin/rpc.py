"""Client for the host's JSON-RPC unix socket.

The plugin's own calls into ``lightningd`` go over ``<lightning-dir>/<rpc-file>``,
never over stdout. One connection is opened per call.
"""

import asyncio
import itertools
import json
import logging
from pathlib import Path
from typing import Any

from clnplugin.exceptions import ProtocolViolation, TransportError
from clnplugin.protocol import (
    RecordDecoder,
    RPCRequest,
    RPCResponse,
    encode_record,
)

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class LightningRpc:
    """JSON-RPC 2.0 client bound to the host's RPC socket."""

    def __init__(self, socket_path: Path | str):
        """Initialize the client.

        Args:
            socket_path: Path to the host's unix domain socket.
        """
        self._socket_path = Path(socket_path)
        self._ids = itertools.count(1)

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    async def call(self, method: str, params: Any = None) -> Any:
        """Call a host RPC method and return its result.

        Raises:
            RpcError: If the host answers with an error.
            TransportError: If the socket cannot be used or returns garbage.
        """
        request = RPCRequest(
            method=method,
            params={} if params is None else params,
            id=next(self._ids),
        )
        logger.debug("host_rpc_call", extra={"rpc.method": method})

        try:
            reader, writer = await asyncio.open_unix_connection(str(self._socket_path))
        except OSError as e:
            raise TransportError(
                f"Cannot connect to RPC socket {self._socket_path}: {e}"
            ) from e

        try:
            writer.write(encode_record(request).encode("utf-8"))
            await writer.drain()
            response = await self._read_response(reader, request.id)
        except OSError as e:
            raise TransportError(f"RPC call {method} failed: {e}") from e
        except ProtocolViolation as e:
            raise TransportError(f"RPC call {method} got a bad reply: {e}") from e
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if response.error is not None:
            raise response.error.to_exception()
        return response.result

    async def _read_response(
        self, reader: asyncio.StreamReader, request_id: int | str | None
    ) -> RPCResponse:
        decoder = RecordDecoder()
        while True:
            chunk = await reader.read(READ_CHUNK_SIZE)
            records = decoder.feed(chunk) if chunk else decoder.close()
            for record in records:
                payload = json.loads(record)
                if not isinstance(payload, dict):
                    raise ProtocolViolation("RPC socket returned a non-object record")
                response = RPCResponse.from_dict(payload)
                if response.id == request_id:
                    return response
                # The host may interleave notifications on this socket.
                logger.debug("host_rpc_skipped_record", extra={"rpc.id": response.id})
            if not chunk:
                raise TransportError("RPC socket closed before a response arrived")
