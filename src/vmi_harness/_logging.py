"""Logging for vmi-harness.

The library only attaches a NullHandler to its root logger. Output handlers
are installed by entry points (the CLI) through configure_logging().

CLI output format:
    INFO [2026-02-25 10:02:54] vmi_harness.session - Resetting VM

Records are handed to a bounded queue and written to stderr by a
QueueListener thread, so a slow terminal never stalls a lifecycle step
(setup, teardown or an event wait) running on the event loop.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vmi_harness"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# VMI_HARNESS_LOG_LEVEL=DEBUG shows every session state transition
_env_level = os.environ.get("VMI_HARNESS_LOG_LEVEL", "").strip().upper()
_env_level_value = logging.getLevelNamesMapping().get(_env_level)
if _env_level_value:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level_value)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

_QUEUE_CAPACITY = 1024


class _StderrHandler(logging.Handler):
    """Writes formatted records to stderr with click (dimmed on a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = logging.Formatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            click.echo(click.style(msg, dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedHandler(logging.handlers.QueueHandler):
    """Queue-backed handler; drops records when the queue is full."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _StderrHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a vmi_harness module."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Install the stderr handler on the library logger (idempotent).

    Args:
        level: Log level name or number. Overrides VMI_HARNESS_LOG_LEVEL.
        quiet: Only report errors. Takes precedence over level.
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _QueuedHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_QueuedHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
