"""Pick the lines of captured server output that explain a crash."""

import re
from dataclasses import dataclass, field
from typing import Iterable, List


CRASH_KEYWORDS = ("error", "exception", "typeerror", "referenceerror", "syntaxerror")

NO_LOGS_MESSAGE = "Server crashed - no detailed logs available"

_STREAM_TAG_PATTERN = re.compile(r"^\[(?:stdout|stderr)\]\s?")
_TRACE_LINE_PATTERN = re.compile(r"^\s+at\s")
_TS_LOCATION_PATTERN = re.compile(r"(/[^\s:()]+\.(?:ts|tsx|js|mjs|cjs)):(\d+)(?::\d+)?")


@dataclass
class CrashDiagnostic:
    lines: List[str] = field(default_factory=list)
    matched: bool = False
    locations: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        if not self.lines:
            return NO_LOGS_MESSAGE
        return "\n".join(self.lines)


def _body(line: str) -> str:
    return _STREAM_TAG_PATTERN.sub("", line, count=1)


def is_crash_line(line: str) -> bool:
    body = _body(line)
    lowered = body.lower()
    if any(k in lowered for k in CRASH_KEYWORDS):
        return True
    return bool(_TRACE_LINE_PATTERN.match(body))


def extract_locations(lines: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for line in lines:
        for m in _TS_LOCATION_PATTERN.finditer(line):
            loc = f"{m.group(1)}:{m.group(2)}"
            if loc in seen:
                continue
            seen.add(loc)
            out.append(loc)
    return out


def extract_crash_lines(lines: Iterable[str], *, max_matches: int = 15, tail: int = 10) -> CrashDiagnostic:
    """Pick the log lines that explain a crash.

    Error-like lines (keywords or indented ``at ...`` stack frames) win, capped
    at ``max_matches``. Without any, the last ``tail`` lines are returned.
    """
    all_lines = [str(x) for x in (lines or [])]
    matched = [line for line in all_lines if is_crash_line(line)]
    if matched:
        picked = matched[:max_matches]
        return CrashDiagnostic(lines=picked, matched=True, locations=extract_locations(picked))
    picked = all_lines[-tail:] if tail > 0 else []
    return CrashDiagnostic(lines=picked, matched=False, locations=extract_locations(picked))


def render_crash_report_md(project_id: str, diagnostic: CrashDiagnostic, *, recovered: bool = False) -> str:
    parts = [f"## Crash report: {project_id}", ""]
    parts.append(f"- Recovery: {'redeployed' if recovered else 'not redeployed'}")
    if diagnostic.locations:
        parts.append(f"- Probable location: `{diagnostic.locations[0]}`")
    parts.extend(["", "```text", diagnostic.text, "```"])
    return "\n".join(parts) + "\n"
