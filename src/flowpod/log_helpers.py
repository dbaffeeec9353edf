"""Logging helpers shared by the pipeline, the API and the CLI."""

import asyncio
import inspect
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_file_logging(log_dir: Optional[str] = None, filename: str = "flowpod.log") -> Optional[Path]:
    """Attach a file handler to the ``flowpod`` logger.

    The directory comes from ``log_dir`` or ``FLOWPOD_LOG_DIR``; nothing is
    configured when neither is set. Calling it twice does not add a second
    handler for the same file.
    """
    raw = log_dir or os.environ.get("FLOWPOD_LOG_DIR")
    if not raw:
        return None
    directory = Path(raw)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / filename

    logger = logging.getLogger("flowpod")
    logger.setLevel(logging.DEBUG)
    if not any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_path)
        for h in logger.handlers
    ):
        handler = logging.FileHandler(log_path)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return log_path


def _ui_log_level() -> int:
    raw = str(os.environ.get("FLOWPOD_UI_LOG_LEVEL", "INFO") or "INFO").strip().upper()
    if raw == "DEBUG":
        return logging.DEBUG
    if raw in ("WARNING", "WARN"):
        return logging.WARNING
    if raw == "ERROR":
        return logging.ERROR
    return logging.INFO


def _should_emit_to_ui(level: str) -> bool:
    lvl = logging.getLevelName(str(level).upper())
    if not isinstance(lvl, int):
        lvl = logging.INFO
    return lvl >= _ui_log_level()


def _call_on_log(on_log: Optional[Callable[..., None]], msg: str, level: str = "INFO") -> None:
    """Forward a message to a UI callback taking ``(msg)`` or ``(msg, level)``."""
    if not on_log or not _should_emit_to_ui(level):
        return
    try:
        params = list(inspect.signature(on_log).parameters.values())
        accepts = any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params) or len(params) >= 2
    except (TypeError, ValueError):
        accepts = False
    if accepts:
        on_log(msg, level)
    else:
        on_log(msg)


def _beat_every_s(*, default: int = 10) -> int:
    try:
        return max(1, int(os.environ.get("FLOWPOD_HEARTBEAT_S", str(default))))
    except ValueError:
        return default


async def _heartbeat(
    *,
    on_log: Optional[Callable[..., None]],
    message: str,
    interval_s: float,
) -> None:
    """Emit a progress line every ``interval_s`` until cancelled."""
    if not on_log:
        return
    started = time.monotonic()
    while True:
        await asyncio.sleep(interval_s)
        elapsed = int(time.monotonic() - started)
        _call_on_log(on_log, f"{message} (elapsed={elapsed}s)", "INFO")
