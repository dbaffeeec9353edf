import asyncio
import logging

import pytest

from flowpod.log_helpers import _call_on_log, _heartbeat, configure_file_logging


def test_on_log_with_one_or_two_args():
    one = []
    two = []
    _call_on_log(lambda msg: one.append(msg), "hello")
    _call_on_log(lambda msg, level: two.append((level, msg)), "careful", "WARNING")
    assert one == ["hello"]
    assert two == [("WARNING", "careful")]


def test_ui_level_filters_messages(monkeypatch):
    monkeypatch.setenv("FLOWPOD_UI_LOG_LEVEL", "WARNING")
    seen = []
    _call_on_log(seen.append, "info line", "INFO")
    _call_on_log(seen.append, "warn line", "WARNING")
    assert seen == ["warn line"]


def test_file_logging_is_configured_once(tmp_path):
    path = configure_file_logging(str(tmp_path))
    again = configure_file_logging(str(tmp_path))
    assert path == again == tmp_path / "flowpod.log"
    logger = logging.getLogger("flowpod")
    handlers = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
    try:
        assert len(handlers) == 1
    finally:
        for h in handlers:
            logger.removeHandler(h)
            h.close()


def test_file_logging_disabled_without_dir():
    assert configure_file_logging() is None


@pytest.mark.asyncio
async def test_heartbeat_reports_until_cancelled():
    seen = []
    task = asyncio.create_task(_heartbeat(on_log=seen.append, message="still working", interval_s=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert seen
    assert seen[0].startswith("still working (elapsed=")
