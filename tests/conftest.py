"""Shared test fixtures and factories."""

import asyncio
import json
from typing import Any

import pytest

from clnplugin.plugin import Plugin

# =============================================================================
# Stream Fakes
# =============================================================================


class FakeStream:
    """In-memory stand-in for ``asyncio.StreamWriter``.

    ``gate`` holds ``drain()`` until set, mimicking a full pipe buffer.
    ``fail_with`` makes ``drain()`` raise, mimicking a closed pipe.
    """

    def __init__(self) -> None:
        self.data = bytearray()
        self.drain_calls = 0
        self.gate: asyncio.Event | None = None
        self.fail_with: BaseException | None = None

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        self.drain_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    def records(self) -> list[dict[str, Any]]:
        text = self.data.decode("utf-8")
        return [json.loads(chunk) for chunk in text.split("\n\n") if chunk.strip()]

    def responses(self) -> list[dict[str, Any]]:
        return [r for r in self.records() if "method" not in r]

    def response_for(self, request_id: int | str) -> dict[str, Any]:
        matches = [r for r in self.responses() if r.get("id") == request_id]
        assert len(matches) == 1, f"expected one response for {request_id}: {matches}"
        return matches[0]

    def notifications(self, method: str | None = None) -> list[dict[str, Any]]:
        return [
            r
            for r in self.records()
            if "method" in r and (method is None or r["method"] == method)
        ]


def make_reader(*chunks: bytes, eof: bool = True) -> asyncio.StreamReader:
    """Build a StreamReader preloaded with input. Call inside a running loop."""
    reader = asyncio.StreamReader()
    for chunk in chunks:
        reader.feed_data(chunk)
    if eof:
        reader.feed_eof()
    return reader


# =============================================================================
# Message Factories
# =============================================================================


def request(method: str, params: Any = None, id: int | str | None = None) -> bytes:
    payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if id is not None:
        payload["id"] = id
    payload["params"] = {} if params is None else params
    return (json.dumps(payload) + "\n\n").encode()


def getmanifest(id: int = 1) -> bytes:
    return request("getmanifest", {"allow-deprecated-apis": False}, id=id)


def init(
    id: int = 2,
    options: dict[str, Any] | None = None,
    lightning_dir: str = "/tmp/lightning",
    rpc_file: str = "lightning-rpc",
    startup: bool = True,
) -> bytes:
    return request(
        "init",
        {
            "options": options or {},
            "configuration": {
                "lightning-dir": lightning_dir,
                "rpc-file": rpc_file,
                "startup": startup,
            },
        },
        id=id,
    )


def handshake() -> bytes:
    return getmanifest() + init()


async def serve(plugin: Plugin, *chunks: bytes) -> FakeStream:
    """Run a plugin over preloaded input until EOF and return its output."""
    stream = FakeStream()
    await plugin.start(make_reader(*chunks), stream)
    return stream


# =============================================================================
# Plugin Fixtures
# =============================================================================


@pytest.fixture
def plugin() -> Plugin:
    """Plugin with nothing registered."""
    return Plugin()


@pytest.fixture
def stream() -> FakeStream:
    return FakeStream()


# =============================================================================
# CLI Fixtures
# =============================================================================


@pytest.fixture
def cli_runner():
    """Create a Typer CLI test runner with colors disabled."""
    from typer.testing import CliRunner

    return CliRunner(env={"NO_COLOR": "1"})
