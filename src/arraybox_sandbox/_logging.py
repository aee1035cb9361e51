"""Logging for arraybox-sandbox.

Importing the package only attaches a NullHandler to the ``arraybox_sandbox``
logger. Output is opt-in through configure_logging(), which the ``abx`` CLI
calls.

Level control:
    ARRAYBOX_SANDBOX_LOG_LEVEL=DEBUG|INFO|WARNING|ERROR

CLI line format (structured ``extra`` fields appended as key=value):
    WARNING 10:02:54 arraybox_sandbox.pool: Recycling j session  language=j request_count=500

Records are handed to a QueueListener thread so the event loop never blocks
on a slow stderr; when the queue is full, records are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "arraybox_sandbox"

_QUEUE_CAPACITY = 4096

_LEVEL_COLORS = {
    logging.DEBUG: "bright_black",
    logging.INFO: "cyan",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "red",
}

# Attributes every LogRecord has; anything else arrived through ``extra``
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

_env_level = logging.getLevelNamesMapping().get(os.environ.get("ARRAYBOX_SANDBOX_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)


def extra_fields(record: logging.LogRecord) -> dict[str, object]:
    """Structured fields attached to ``record`` via ``extra=``."""
    return {key: value for key, value in vars(record).items() if key not in _RECORD_FIELDS}


class _ContextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt="%(levelname)s %(asctime)s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = extra_fields(record)
        if fields:
            line += "  " + " ".join(f"{key}={value}" for key, value in fields.items())
        return line


class _ClickHandler(logging.Handler):
    """Echo records to stderr through click (listener thread only)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            color = _LEVEL_COLORS.get(record.levelno, "white")
            click.echo(click.style(self.format(record), fg=color, dim=record.levelno < logging.WARNING), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _ClickHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep args and extra fields intact for the formatter
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger; ``name`` is the module's ``__name__``."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr. Safe to call more than once.

    Args:
        level: Threshold such as "DEBUG"; overrides ARRAYBOX_SANDBOX_LOG_LEVEL
        quiet: Only errors (wins over ``level``)
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    if not any(isinstance(handler, _NonBlockingHandler) for handler in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
