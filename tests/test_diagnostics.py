"""Tests for crash output extraction."""

from flowpod.diagnostics import (
    NO_LOGS_MESSAGE,
    extract_crash_lines,
    render_crash_report_md,
)


def test_error_lines_are_preferred_and_capped():
    lines = [f"[stdout] ok {i}" for i in range(5)]
    lines += [f"[stderr] TypeError: bad {i}" for i in range(20)]
    diag = extract_crash_lines(lines)
    assert diag.matched
    assert len(diag.lines) == 15
    assert diag.lines[0] == "[stderr] TypeError: bad 0"


def test_stack_frames_count_as_crash_lines():
    lines = [
        "[stdout] Server running on port 3000",
        "[stderr]     at Object.<anonymous> (/home/user/run.ts:42:7)",
    ]
    diag = extract_crash_lines(lines)
    assert diag.lines == [lines[1]]
    assert diag.locations == ["/home/user/run.ts:42"]


def test_without_errors_falls_back_to_tail():
    lines = [f"[stdout] line {i}" for i in range(30)]
    diag = extract_crash_lines(lines)
    assert not diag.matched
    assert diag.lines == lines[-10:]


def test_empty_log_message():
    diag = extract_crash_lines([])
    assert diag.text == NO_LOGS_MESSAGE


def test_report_mentions_location_and_recovery():
    diag = extract_crash_lines(["[stderr] Error: x at /home/user/run.ts:3:1"])
    md = render_crash_report_md("p1", diag, recovered=True)
    assert "## Crash report: p1" in md
    assert "redeployed" in md
    assert "`/home/user/run.ts:3`" in md
