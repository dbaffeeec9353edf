"""Sandbox health checks and crash recovery guard."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from .config import OrchestratorConfig
from .errors import ProviderError
from .models import SandboxState, StatusResult
from .pipeline import webhook_url
from .probe import probe_port
from .registry import LIVENESS_COMMAND, SandboxRegistry

logger = logging.getLogger("flowpod.health")


class HealthMonitor:
    """Classifies a project's sandbox as running, stopped, error or port_down."""

    def __init__(self, registry: SandboxRegistry, config: Optional[OrchestratorConfig] = None):
        self.registry = registry
        self.config = config or OrchestratorConfig()

    async def status(self, project_id: str, external_id_hint: Optional[str] = None) -> StatusResult:
        cfg = self.config
        handle = await self.registry.resolve(project_id, external_id_hint)
        if handle is None:
            return StatusResult(SandboxState.STOPPED)

        try:
            res = await asyncio.wait_for(
                handle.run(LIVENESS_COMMAND, timeout=cfg.command_timeout_s),
                cfg.command_timeout_s + 1,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.info(f"[{project_id}] Sandbox {handle.external_id} unreachable, treating as stopped: {e}")
            self.registry.evict(project_id, forget_id=True)
            return StatusResult(SandboxState.STOPPED)
        if not res.ok:
            logger.warning(f"[{project_id}] Liveness command exited {res.exit_code}")
            return StatusResult(SandboxState.ERROR)

        if await probe_port(handle, cfg.port, timeout=cfg.command_timeout_s):
            return StatusResult(SandboxState.RUNNING, endpoint=webhook_url(handle, cfg.port))

        logger.info(f"[{project_id}] Sandbox {handle.external_id} port {cfg.port} is down (server crashed)")
        return StatusResult(SandboxState.PORT_DOWN)


class RecoveryGuard:
    """At most one recovery in flight per project."""

    def __init__(self):
        self._active: set[str] = set()

    @asynccontextmanager
    async def hold(self, project_id: str) -> AsyncIterator[bool]:
        """Yield True if this caller owns the recovery, False if one is running."""
        if project_id in self._active:
            yield False
            return
        self._active.add(project_id)
        try:
            yield True
        finally:
            self._active.discard(project_id)
