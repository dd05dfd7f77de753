"""Process-level plumbing: logging setup and signal-aware execution."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any, TypeVar

from .manifest import ArtifactRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_RECORD_ATTRS}


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        log_data.update(_extra_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Readable one-line format for operators; extras only when verbose."""

    def __init__(self, show_extra: bool = False) -> None:
        super().__init__()
        self._show_extra = show_extra

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"[{timestamp}] {record.levelname:<7} {record.getMessage()}"

        if self._show_extra:
            extras = " ".join(f"{k}={v}" for k, v in _extra_fields(record).items())
            if extras:
                line = f"{line} {extras}"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    level: int = logging.INFO, json_output: bool = False, verbose: bool = False
) -> None:
    """Configure root logging to stderr.

    Args:
        level: Root log level.
        json_output: Emit JSON lines instead of text.
        verbose: Include structured context in text output.
    """
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(TextFormatter(show_extra=verbose or level <= logging.DEBUG))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_with_signals(operation: Coroutine[Any, Any, T], artifacts: ArtifactRegistry) -> T:
    """Run an operation, cancelling it on SIGTERM/SIGINT.

    Temporary manifests are swept whether the operation finishes, fails
    or is cancelled.

    Raises:
        asyncio.CancelledError: If a signal interrupted the operation.
    """
    loop = asyncio.get_running_loop()
    task = loop.create_task(operation)

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning("Received signal, cancelling", extra={"signal": sig.name})
        task.cancel()

    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
        except (NotImplementedError, RuntimeError):
            # Not available off the main thread or on Windows
            continue
        installed.append(sig)

    try:
        return await task
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        artifacts.cleanup()
