"""Concurrent status checks across many projects."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Optional

from .models import SandboxState, StatusResult

logger = logging.getLogger("flowpod.bulk")


@dataclass
class BulkEntry:
    """Status of one project in a bulk check."""
    project_id: str
    result: StatusResult
    duration: float
    error: Optional[str] = None


async def run_status_checks(
    project_ids: Iterable[str],
    check: Callable[[str], Awaitable[StatusResult]],
    max_concurrent: int = 16,
) -> dict[str, BulkEntry]:
    """
    Run ``check`` for every project with a semaphore for concurrency control.

    A check that raises is reported as stopped for that project only.
    Duplicate ids are checked once.
    """
    ids = list(dict.fromkeys(p for p in project_ids if p))
    semaphore = asyncio.Semaphore(max(1, max_concurrent))

    async def run_one(project_id: str) -> BulkEntry:
        async with semaphore:
            start = time.time()
            try:
                result = await check(project_id)
                return BulkEntry(project_id, result, time.time() - start)
            except Exception as e:
                logger.warning(f"[{project_id}] Status check failed: {type(e).__name__}: {e}")
                return BulkEntry(
                    project_id,
                    StatusResult(SandboxState.STOPPED),
                    time.time() - start,
                    error=str(e) or type(e).__name__,
                )

    entries = await asyncio.gather(*(run_one(pid) for pid in ids))
    return {entry.project_id: entry for entry in entries}
