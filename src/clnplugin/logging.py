"""Centralized logging configuration for plugins.

stdout carries the protocol, so local logs always go to stderr (the host
captures a plugin's stderr into its own log). Records can additionally be
forwarded to the host as "log" notifications through HostLogHandler.

Logging Levels:
- DEBUG: Per-record protocol details, handler dispatch
- INFO: Handshake progress, startup and shutdown
- WARNING: Recoverable oddities (unknown options, unmatched methods)
- ERROR: Handler failures, protocol violations, broken output
"""

import logging
import sys
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from clnplugin.writer import OutputWriter

# Levels accepted in a "log" notification
HOST_LOG_LEVELS = ("io", "debug", "info", "unusual", "broken", "warn", "error")
DEFAULT_HOST_LOG_LEVEL = "info"

# Python logging level -> host log level
_LEVEL_MAP: list[tuple[int, str]] = [
    (logging.CRITICAL, "broken"),
    (logging.ERROR, "broken"),
    (logging.WARNING, "unusual"),
    (logging.INFO, "info"),
]


def host_level_for(levelno: int) -> str:
    """Map a Python logging level to the closest host log level."""
    for threshold, name in _LEVEL_MAP:
        if levelno >= threshold:
            return name
    return "debug"


def split_log_lines(message: str) -> list[str]:
    """Split a message into the non-empty lines sent as separate notifications."""
    return [line for line in message.split("\n") if line]


class HostLogHandler(logging.Handler):
    """Handler that forwards log records to the host as "log" notifications.

    Records emitted while a forward is already in progress (e.g. from the
    writer itself) are dropped to avoid feedback loops, as are records
    flagged with ``host_logged``.

    Forwarded lines go through the writer's bounded queue and are dropped
    while it is full.
    """

    def __init__(self, writer: "OutputWriter", level: int = logging.NOTSET):
        super().__init__(level)
        self._writer = writer
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(self._local, "active", False):
            return
        # Already reported to the host directly
        if getattr(record, "host_logged", False):
            return
        self._local.active = True
        try:
            message = self.format(record)
            level = host_level_for(record.levelno)
            for line in split_log_lines(message):
                self._writer.send_notification_nowait(
                    "log", {"level": level, "message": line}
                )
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False


class ComponentFormatter(logging.Formatter):
    """Formatter that extracts component name from logger path.

    Converts full module paths to short component names:
    - clnplugin.dispatcher -> dispatcher
    - clnplugin.rpc -> rpc
    """

    def format(self, record: logging.LogRecord) -> str:
        parts = record.name.split(".")
        if len(parts) >= 2 and parts[0] == "clnplugin":
            record.component = parts[1]
        else:
            record.component = parts[0]
        return super().format(record)


# Third-party loggers that are too noisy at INFO level
NOISY_LOGGERS = [
    "asyncio",
]


def configure_logging(
    level: str = "INFO",
    use_rich: bool = False,
    host_handler: HostLogHandler | None = None,
) -> None:
    """Configure logging for a plugin process.

    Call this once at startup, before the read loop.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        use_rich: Use Rich handler on stderr for colorful output.
        host_handler: Optional handler forwarding records to the host.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []

    if use_rich:
        from rich.console import Console
        from rich.logging import RichHandler

        console_handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=False,
            show_path=False,
            show_time=True,
            markup=False,
        )
        console_handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    handlers.append(console_handler)

    if host_handler is not None:
        host_handler.setLevel(log_level)
        host_handler.setFormatter(ComponentFormatter("%(component)s: %(message)s"))
        handlers.append(host_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
