"""Structured logging with loguru for the retrieval engine and its host.

Every record is patched with the active log context (request id, session id
and operation) so file and console output can be filtered per session.
"""

from __future__ import annotations

import sys
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from loguru import logger as _loguru_logger

if TYPE_CHECKING:
    from loguru import Logger

CONTEXT_FIELDS = ("request_id", "session_id", "operation")

_log_context: ContextVar[dict[str, str]] = ContextVar("log_context", default={})

LOG_DIR = Path("logs")
ROTATION = "10 MB"
RETENTION = "7 days"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[module]}</cyan> | <magenta>{extra[session_id]}</magenta> | {message}"
)


def current_context() -> dict[str, str]:
    """Copy of the context fields set for the running task."""
    return dict(_log_context.get())


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Add context fields to every log record emitted inside the block.

    Fields left as None are not set; nested blocks inherit and may override
    the outer fields. The previous context is restored on exit.
    """
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown log context fields: {sorted(unknown)}")
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def _patch_record(record: dict) -> None:
    extra = record["extra"]
    extra.update(_log_context.get())
    extra.setdefault("module", record["name"])
    extra.setdefault("session_id", "-")


def setup_logging(
    log_level: str = "INFO",
    log_dir: Path | str | None = None,
) -> None:
    """Configure a JSON file sink (logs/app.log, rotated) and a console sink.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir: Directory for app.log; defaults to ./logs.
    """
    _loguru_logger.remove()
    _loguru_logger.configure(patcher=_patch_record)

    log_path = Path(log_dir) if log_dir else LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    _loguru_logger.add(
        log_path / "app.log",
        format="{message}",
        rotation=ROTATION,
        retention=RETENTION,
        level=log_level,
        serialize=True,
    )
    _loguru_logger.add(sys.stderr, format=CONSOLE_FORMAT, level=log_level)


def get_logger(module_name: str) -> Logger:
    """Return a logger bound to the given module name."""
    return _loguru_logger.bind(module=module_name)
