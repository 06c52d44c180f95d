"""Tests for the Plugin context object."""

import asyncio
import logging
from typing import Any

import pytest

from clnplugin.config import PluginConfig
from clnplugin.exceptions import ConfigurationError, PluginError, ProtocolViolation
from clnplugin.logging import HostLogHandler
from clnplugin.plugin import Plugin
from tests.conftest import FakeStream, handshake, request, serve


class TestConstruction:
    def test_dynamic_by_default(self):
        assert Plugin().manifest()["dynamic"] is True

    def test_legacy_bool_argument(self):
        assert Plugin(False).manifest()["dynamic"] is False

    def test_legacy_keyword(self):
        assert Plugin(dynamic=False).manifest()["dynamic"] is False

    def test_config_mapping(self):
        assert Plugin({"dynamic": False}).manifest()["dynamic"] is False

    def test_config_field_wins_over_legacy_flag(self):
        plugin = Plugin(PluginConfig(dynamic=True), dynamic=False)
        assert plugin.manifest()["dynamic"] is True

    def test_legacy_flag_applies_when_config_leaves_dynamic_unset(self):
        plugin = Plugin(PluginConfig(forward_logs=False), dynamic=False)
        assert plugin.manifest()["dynamic"] is False
        assert plugin.config.forward_logs is False

    def test_invalid_config_mapping(self):
        with pytest.raises(ConfigurationError):
            Plugin({"read_chunk_size": 0})


class TestDecorators:
    def test_method_decorator_uses_docstring(self):
        plugin = Plugin()

        @plugin.method("summary", usage="[verbose]")
        def summary(params):
            """Summarize channels.

            Lists every channel with its balance.
            """
            return {}

        (entry,) = plugin.manifest()["rpcmethods"]
        assert entry["name"] == "summary"
        assert entry["usage"] == "[verbose]"
        assert entry["description"] == "Summarize channels."
        assert "Lists every channel" in entry["long_description"]
        assert summary({}) == {}

    def test_hook_and_subscription_default_to_function_name(self):
        plugin = Plugin()

        @plugin.hook()
        def peer_connected(params):
            return {"result": "continue"}

        @plugin.subscription()
        def connect(params):
            pass

        manifest = plugin.manifest()
        assert manifest["hooks"] == ["peer_connected"]
        assert manifest["subscriptions"] == ["connect"]

    def test_duplicate_method_decorator_fails(self):
        plugin = Plugin()
        plugin.add_method("dup", lambda params: None)
        with pytest.raises(ConfigurationError):

            @plugin.method("dup")
            def dup(params):
                return None


class TestOptions:
    def test_get_option_returns_default_before_init(self):
        plugin = Plugin()
        plugin.add_option("fee-base", 1000, "Base fee in msat", "int")
        assert plugin.get_option("fee-base") == 1000

    def test_unknown_option(self):
        with pytest.raises(PluginError, match="Unknown option"):
            Plugin().get_option("missing")


class TestLog:
    @pytest.mark.asyncio
    async def test_multiline_message_becomes_one_notification_per_line(
        self, stream: FakeStream
    ):
        plugin = Plugin()
        plugin.writer.attach(stream)

        await plugin.log("first line\n\nsecond line\n", level="unusual")

        assert [n["params"] for n in stream.notifications("log")] == [
            {"level": "unusual", "message": "first line"},
            {"level": "unusual", "message": "second line"},
        ]

    @pytest.mark.asyncio
    async def test_level_defaults_to_info(self, stream: FakeStream):
        plugin = Plugin()
        plugin.writer.attach(stream)
        await plugin.log("hello")
        assert stream.notifications("log")[0]["params"]["level"] == "info"

    @pytest.mark.asyncio
    async def test_log_waits_while_host_is_not_reading(self, stream: FakeStream):
        plugin = Plugin()
        stream.gate = asyncio.Event()
        plugin.writer.attach(stream)

        task = asyncio.create_task(plugin.log("one\ntwo"))
        await asyncio.sleep(0.01)

        assert not task.done()
        assert [n["params"]["message"] for n in stream.notifications("log")] == [
            "one"
        ]

        stream.gate.set()
        await asyncio.wait_for(task, timeout=1)
        assert len(stream.notifications("log")) == 2

    @pytest.mark.asyncio
    async def test_log_before_start_is_flushed_on_attach(self, stream: FakeStream):
        plugin = Plugin()
        await plugin.log("starting up")
        plugin.writer.attach(stream)
        await plugin.writer.flush()
        assert stream.notifications("log")[0]["params"]["message"] == "starting up"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message,error", [(None, TypeError), ("", ValueError)])
    async def test_message_must_be_a_string(
        self, message: Any, error: type[Exception]
    ):
        with pytest.raises(error):
            await Plugin().log(message)

    @pytest.mark.asyncio
    async def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            await Plugin().log("x", level="loud")


class TestNotify:
    @pytest.mark.asyncio
    async def test_notify_from_handler(self):
        plugin = Plugin()

        async def progress(params):
            await plugin.notify("message", {"id": 1, "message": "half way"})
            return "done"

        plugin.add_method("work", progress)

        stream = await serve(plugin, handshake(), request("work", {}, id=9))

        (note,) = stream.notifications("message")
        assert note == {
            "jsonrpc": "2.0",
            "method": "message",
            "params": {"id": 1, "message": "half way"},
        }
        assert stream.response_for(9)["result"] == "done"


class TestHostLogHandler:
    @pytest.mark.asyncio
    async def test_forwards_records_with_mapped_levels(self, stream: FakeStream):
        plugin = Plugin()
        plugin.writer.attach(stream)
        handler = HostLogHandler(plugin.writer)
        logger = logging.getLogger("tests.host_log")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        try:
            logger.info("all good")
            logger.warning("odd\nthing")
            logger.error("broke")
            logger.error("sent already", extra={"host_logged": True})
        finally:
            logger.removeHandler(handler)
        await plugin.writer.flush()

        assert [n["params"] for n in stream.notifications("log")] == [
            {"level": "info", "message": "all good"},
            {"level": "unusual", "message": "odd"},
            {"level": "unusual", "message": "thing"},
            {"level": "broken", "message": "broke"},
        ]

    def test_queue_size_comes_from_config(self):
        plugin = Plugin({"max_queued_logs": 2})
        handler = HostLogHandler(plugin.writer)
        record = logging.LogRecord(
            "tests.host_log", logging.INFO, __file__, 1, "line", None, None
        )
        for _ in range(5):
            handler.emit(record)

        assert plugin.writer.queued == 2
        assert plugin.writer.dropped == 3


class TestRun:
    def test_fatal_error_exits_with_status_1(self, monkeypatch: pytest.MonkeyPatch):
        plugin = Plugin({"log_level": "debug"})
        configured: list[dict[str, Any]] = []

        def fake_configure_logging(**kwargs: Any) -> None:
            configured.append(kwargs)

        async def fake_start() -> None:
            raise ProtocolViolation("bad record")

        monkeypatch.setattr(
            "clnplugin.plugin.configure_logging", fake_configure_logging
        )
        monkeypatch.setattr(plugin, "start", fake_start)

        with pytest.raises(SystemExit) as exc_info:
            plugin.run()

        assert exc_info.value.code == 1
        assert configured[0]["level"] == "DEBUG"
        assert isinstance(configured[0]["host_handler"], HostLogHandler)
