"""Tests for logging configuration and host log forwarding."""

import asyncio
import logging

import pytest

from clnplugin.logging import (
    ComponentFormatter,
    HostLogHandler,
    configure_logging,
    host_level_for,
    split_log_lines,
)
from clnplugin.writer import OutputWriter
from tests.conftest import FakeStream


class TestHostLevels:
    @pytest.mark.parametrize(
        "levelno,expected",
        [
            (logging.CRITICAL, "broken"),
            (logging.ERROR, "broken"),
            (logging.WARNING, "unusual"),
            (logging.INFO, "info"),
            (logging.DEBUG, "debug"),
            (5, "debug"),
        ],
    )
    def test_mapping(self, levelno, expected):
        assert host_level_for(levelno) == expected


class TestSplitLogLines:
    def test_drops_empty_lines(self):
        assert split_log_lines("a\n\nb\n") == ["a", "b"]

    def test_single_line(self):
        assert split_log_lines("only") == ["only"]


class TestComponentFormatter:
    def test_short_component_for_package_loggers(self):
        formatter = ComponentFormatter("%(component)s: %(message)s")
        record = logging.LogRecord(
            "clnplugin.dispatcher", logging.INFO, __file__, 1, "hi", None, None
        )
        assert formatter.format(record) == "dispatcher: hi"

    def test_foreign_logger_keeps_first_part(self):
        formatter = ComponentFormatter("%(component)s: %(message)s")
        record = logging.LogRecord(
            "myplugin.fees", logging.INFO, __file__, 1, "hi", None, None
        )
        assert formatter.format(record) == "myplugin: hi"


class TestHostLogHandler:
    def _logger(self, handler: logging.Handler) -> logging.Logger:
        logger = logging.getLogger("tests.forwarding")
        logger.handlers = [handler]
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        return logger

    @pytest.mark.asyncio
    async def test_records_are_queued_until_attach(self):
        writer = OutputWriter()
        logger = self._logger(HostLogHandler(writer))

        logger.info("early")
        stream = FakeStream()
        writer.attach(stream)
        await writer.flush()

        assert stream.notifications("log") == [
            {
                "jsonrpc": "2.0",
                "method": "log",
                "params": {"level": "info", "message": "early"},
            }
        ]

    @pytest.mark.asyncio
    async def test_handler_level_filters(self):
        stream = FakeStream()
        writer = OutputWriter(stream)
        logger = self._logger(HostLogHandler(writer, level=logging.WARNING))

        logger.info("quiet")
        logger.warning("loud")
        await writer.flush()

        assert [n["params"]["message"] for n in stream.notifications("log")] == [
            "loud"
        ]

    @pytest.mark.asyncio
    async def test_logging_in_a_loop_does_not_outrun_the_host(self):
        stream = FakeStream()
        stream.gate = asyncio.Event()
        writer = OutputWriter(stream, max_queued=10)
        logger = self._logger(HostLogHandler(writer))

        for i in range(10_000):
            logger.info(f"line {i}")
        await asyncio.sleep(0)

        assert len(stream.notifications("log")) == 1
        assert writer.queued <= 10
        assert writer.dropped == 10_000 - 10

        stream.gate.set()
        await asyncio.wait_for(writer.flush(), timeout=1)
        assert len(stream.notifications("log")) == 10

    def test_emit_from_another_thread(self):
        async def scenario() -> FakeStream:
            stream = FakeStream()
            writer = OutputWriter(stream)
            logger = self._logger(HostLogHandler(writer))
            await asyncio.to_thread(logger.warning, "from a worker")
            await asyncio.sleep(0)
            await writer.flush()
            return stream

        stream = asyncio.run(scenario())
        assert stream.notifications("log")[0]["params"] == {
            "level": "unusual",
            "message": "from a worker",
        }


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_installs_stderr_and_host_handlers(self):
        host_handler = HostLogHandler(OutputWriter())
        configure_logging(level="warning", host_handler=host_handler)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert host_handler in root.handlers
        assert host_handler.level == logging.WARNING
        assert any(
            isinstance(h, logging.StreamHandler) and h is not host_handler
            for h in root.handlers
        )
        assert logging.getLogger("asyncio").level == logging.WARNING

    def test_rich_handler(self):
        from rich.logging import RichHandler

        configure_logging(level="DEBUG", use_rich=True)

        assert any(isinstance(h, RichHandler) for h in logging.getLogger().handlers)
