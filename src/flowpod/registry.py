"""Live sandbox handles per project, with reconnection by external id.

Handles only live as long as this process. The remote sandbox outlives
them, so when a handle is missing the registry reattaches using the external
id from the caller, its own cache, or the project store.
"""

import asyncio
import logging
from typing import Optional

from .errors import ProviderError
from .providers.base import SandboxHandle, SandboxProvider
from .store import ProjectStore

logger = logging.getLogger("flowpod.registry")

LIVENESS_COMMAND = "echo ok"


class SandboxRegistry:
    """Maps project ids to live sandbox handles."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: Optional[ProjectStore] = None,
        *,
        liveness_timeout: float = 5.0,
    ):
        self.provider = provider
        self.store = store
        self.liveness_timeout = liveness_timeout
        self._handles: dict[str, SandboxHandle] = {}
        self._external_ids: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks.setdefault(project_id, asyncio.Lock())
        return lock

    def get_cached(self, project_id: str) -> Optional[SandboxHandle]:
        return self._handles.get(project_id)

    def external_id(self, project_id: str) -> Optional[str]:
        """External id from the cache, falling back to the project store."""
        cached = self._external_ids.get(project_id)
        if cached:
            return cached
        if self.store is not None:
            rec = self.store.get(project_id)
            if rec and rec.external_sandbox_id:
                return rec.external_sandbox_id
        return None

    def install(self, project_id: str, handle: SandboxHandle) -> None:
        self._handles[project_id] = handle
        self._external_ids[project_id] = handle.external_id

    def evict(self, project_id: str, *, forget_id: bool = False) -> Optional[SandboxHandle]:
        handle = self._handles.pop(project_id, None)
        if forget_id:
            self._external_ids.pop(project_id, None)
        return handle

    def project_ids(self) -> list[str]:
        return sorted(set(self._handles) | set(self._external_ids))

    async def _is_alive(self, project_id: str, handle: SandboxHandle) -> bool:
        try:
            res = await asyncio.wait_for(
                handle.run(LIVENESS_COMMAND, timeout=self.liveness_timeout),
                self.liveness_timeout + 1,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.info("[%s] Cached sandbox %s is no longer reachable: %s", project_id, handle.external_id, e)
            return False
        return res.ok

    async def _attach(self, project_id: str, external_id: str) -> Optional[SandboxHandle]:
        logger.info("[%s] Attempting to connect to sandbox %s", project_id, external_id)
        try:
            handle = await self.provider.connect(external_id)
            running = await handle.is_running()
        except ProviderError as e:
            logger.warning("[%s] Failed to reconnect to sandbox %s: %s", project_id, external_id, e)
            return None
        if not running:
            logger.info("[%s] Sandbox %s is not running", project_id, external_id)
            return None
        logger.info("[%s] Reconnected to sandbox %s", project_id, external_id)
        return handle

    async def resolve(self, project_id: str, hint_external_id: Optional[str] = None) -> Optional[SandboxHandle]:
        """Return a live handle for the project, reconnecting if needed, or None."""
        async with self.lock_for(project_id):
            handle = self._handles.get(project_id)
            if handle is not None:
                if await self._is_alive(project_id, handle):
                    return handle
                self.evict(project_id)

            external_id = hint_external_id or self.external_id(project_id)
            if not external_id:
                return None

            handle = await self._attach(project_id, external_id)
            if handle is None:
                if self._external_ids.get(project_id) == external_id:
                    self._external_ids.pop(project_id, None)
                return None
            self.install(project_id, handle)
            return handle
