"""Readiness and port probes run inside a sandbox."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from .errors import ProviderError
from .providers.base import SandboxHandle

logger = logging.getLogger("flowpod.probe")

UP_CODES = ("200", "404")


def probe_command(port: int, path: str = "/health", max_time: float = 2) -> str:
    return (
        f"curl -s -o /dev/null -w '%{{http_code}}' --max-time {max_time:g} "
        f"http://localhost:{int(port)}{path} || echo 'not ready'"
    )


@dataclass
class ProbeResult:
    ready: bool
    attempts: int
    elapsed: float
    last_output: str = ""


async def probe_port(handle: SandboxHandle, port: int, *, timeout: float = 5.0) -> bool:
    """True when the server on ``port`` answers HTTP 200 or 404.

    404 still means something is listening. Refused connections, timeouts and
    provider errors all count as down.
    """
    try:
        res = await asyncio.wait_for(handle.run(probe_command(port), timeout=timeout), timeout + 1)
    except (ProviderError, asyncio.TimeoutError) as e:
        logger.debug("Port probe on %s:%s failed: %s", handle.external_id, port, e)
        return False
    out = (res.stdout or "").strip()
    return any(code in out for code in UP_CODES)


async def wait_until_ready(
    handle: SandboxHandle,
    port: int,
    *,
    attempts: int = 15,
    interval: float = 1.0,
    timeout: float = 5.0,
) -> ProbeResult:
    """Poll the health route until it answers or ``attempts`` run out."""
    started = time.monotonic()
    for i in range(1, max(1, attempts) + 1):
        if interval:
            await asyncio.sleep(interval)
        if await probe_port(handle, port, timeout=timeout):
            return ProbeResult(ready=True, attempts=i, elapsed=time.monotonic() - started)
    return ProbeResult(ready=False, attempts=max(1, attempts), elapsed=time.monotonic() - started)


def ready_message(result: ProbeResult, interval: Optional[float] = 1.0) -> str:
    if result.ready:
        seconds = result.attempts * interval if interval else result.elapsed
        return f"Server ready after {seconds:g} seconds"
    return "Warning: Server may still be starting. Check status in a few seconds."
