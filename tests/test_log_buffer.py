"""Tests for output capture."""

import asyncio
from types import SimpleNamespace

import pytest

from flowpod.log_buffer import LogBuffer, LogBufferRegistry, OutputPump


def test_buffer_keeps_most_recent_lines():
    buf = LogBuffer(capacity=5)
    for i in range(8):
        buf.append("stdout", f"line {i}")
    snap = buf.snapshot()
    assert len(snap) == 5
    assert snap[0] == "[stdout] line 3"
    assert snap[-1] == "[stdout] line 7"


def test_extend_raw_splits_and_skips_blank_lines():
    buf = LogBuffer(capacity=10)
    buf.extend_raw("stderr", "first\n\n  \nsecond\n")
    assert buf.snapshot() == ["[stderr] first", "[stderr] second"]


def test_reset_and_invalid_capacity():
    buf = LogBuffer(capacity=3)
    buf.append("stdout", "x")
    buf.reset()
    assert len(buf) == 0
    with pytest.raises(ValueError):
        LogBuffer(capacity=0)


def test_registry_isolates_projects():
    reg = LogBufferRegistry(capacity=4)
    reg.append("a", "stdout", "from a")
    reg.append("b", "stdout", "from b")
    assert reg.snapshot("a") == ["[stdout] from a"]
    assert reg.snapshot("missing") == []
    reg.append("b", "stderr", "again")
    assert reg.snapshot("a") == ["[stdout] from a"]


@pytest.mark.asyncio
async def test_pump_delivers_in_order_and_flushes_on_close():
    buf = LogBuffer(capacity=100)
    pump = OutputPump(buf, name="p").start()
    for i in range(20):
        pump.on_stdout(f"out {i}")
    pump.on_stderr(SimpleNamespace(line="boom"))
    await pump.close()
    snap = buf.snapshot()
    assert snap[:3] == ["[stdout] out 0", "[stdout] out 1", "[stdout] out 2"]
    assert snap[-1] == "[stderr] boom"
    assert len(snap) == 21


@pytest.mark.asyncio
async def test_pump_ignores_output_after_close():
    buf = LogBuffer(capacity=10)
    pump = OutputPump(buf).start()
    await pump.close()
    pump.on_stdout("late")
    await asyncio.sleep(0)
    assert buf.snapshot() == []


@pytest.mark.asyncio
async def test_unstarted_pump_drains_on_close():
    buf = LogBuffer(capacity=10)
    pump = OutputPump(buf)
    pump.on_stdout("queued")
    await pump.close()
    assert buf.snapshot() == ["[stdout] queued"]
