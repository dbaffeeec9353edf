"""Orchestrator: per-project sandboxes for generated voice agents."""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from .bulk import run_status_checks
from .config import OrchestratorConfig
from .diagnostics import extract_crash_lines, render_crash_report_md
from .errors import ProviderError, SandboxNotFoundError
from .health import HealthMonitor, RecoveryGuard
from .log_buffer import LogBufferRegistry
from .models import DeployResult, LogsResult, RecoveryResult, SandboxInfo, SandboxState, StatusResult
from .pipeline import DeploymentPipeline, webhook_url
from .providers import SandboxProvider, get_provider
from .registry import SandboxRegistry
from .store import InMemoryProjectStore, ProjectStore

logger = logging.getLogger("flowpod.orchestrator")

NOT_FOUND_MESSAGE = "Sandbox not found. Please restart the sandbox."


class Orchestrator:
    """
    Owns every piece of per-process state: live handles, cached external ids
    and output buffers. The project store and the provider stay the source of
    truth; the in-memory maps are only a cache in front of them.
    """

    def __init__(
        self,
        provider: SandboxProvider,
        store: Optional[ProjectStore] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.provider = provider
        self.store = store if store is not None else InMemoryProjectStore()
        self.buffers = LogBufferRegistry(self.config.log_capacity)
        self.registry = SandboxRegistry(provider, self.store, liveness_timeout=self.config.command_timeout_s)
        self.pipeline = DeploymentPipeline(self.registry, self.buffers, self.config)
        self.monitor = HealthMonitor(self.registry, self.config)
        self.recovery = RecoveryGuard()

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        store: Optional[ProjectStore] = None,
        provider_name: str = "e2b",
    ) -> "Orchestrator":
        return cls(get_provider(provider_name, api_key=config.api_key), store=store, config=config)

    async def _run_quiet(self, handle, command: str) -> Optional[str]:
        timeout = self.config.command_timeout_s
        try:
            res = await asyncio.wait_for(handle.run(command, timeout=timeout), timeout + 1)
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.debug(f"Command {command!r} failed: {e}")
            return None
        return res.stdout

    async def create_sandbox(self, project_id: str) -> SandboxInfo:
        """Provision a fresh sandbox for the project, replacing any existing one."""
        cfg = self.config
        async with self.pipeline.lock_for(project_id):
            old = await self.registry.resolve(project_id)
            if old is not None:
                logger.info(f"[{project_id}] Killing existing sandbox {old.external_id}")
                try:
                    await old.kill()
                except ProviderError as e:
                    logger.warning(f"[{project_id}] Could not kill sandbox {old.external_id}: {e}")
            self.registry.evict(project_id, forget_id=True)
            await self.pipeline.release(project_id)

            logger.info(f"[{project_id}] Creating sandbox from template {cfg.template}")
            handle = await self.provider.create(
                template=cfg.template,
                timeout_s=cfg.sandbox_timeout_s,
                metadata={"project_id": project_id},
            )
            version = await self._run_quiet(handle, "node --version")
            if version:
                logger.info(f"[{project_id}] Node version: {version.strip()}")
            endpoint = webhook_url(handle, cfg.port)
            self.registry.install(project_id, handle)

        self.store.update(project_id, external_sandbox_id=handle.external_id, public_endpoint=endpoint)
        logger.info(f"[{project_id}] Sandbox {handle.external_id} ready at {endpoint}")
        return SandboxInfo(project_id=project_id, external_id=handle.external_id, endpoint=endpoint)

    async def deploy(
        self,
        project_id: str,
        source: str,
        on_log: Optional[Callable[..., None]] = None,
    ) -> DeployResult:
        """Deploy program text; raises SandboxNotFoundError if there is no sandbox."""
        hint = self.registry.external_id(project_id)
        result = await self.pipeline.deploy(project_id, source, hint, on_log=on_log)
        self._persist_deploy(project_id, source, result)
        return result

    def _persist_deploy(self, project_id: str, source: str, result: DeployResult) -> None:
        if not result.success:
            return
        self.store.update(
            project_id,
            current_source=source,
            external_sandbox_id=self.registry.external_id(project_id),
            public_endpoint=result.endpoint,
        )

    async def status(self, project_id: str) -> StatusResult:
        rec = self.store.get(project_id)
        hint = rec.external_sandbox_id if rec else None
        result = await self.monitor.status(project_id, hint)
        if result.state == SandboxState.STOPPED:
            self.registry.evict(project_id, forget_id=True)
            if rec and (rec.external_sandbox_id or rec.public_endpoint):
                logger.info(f"[{project_id}] Sandbox gone, clearing stored sandbox id")
                self.store.clear_sandbox(project_id)
        return result

    async def status_bulk(self, project_ids: Iterable[str]) -> dict[str, StatusResult]:
        """Status for many projects at once. Never fails as a whole."""

        async def check(project_id: str) -> StatusResult:
            if self.registry.get_cached(project_id) is None and not self.registry.external_id(project_id):
                return StatusResult(SandboxState.STOPPED)
            return await self.status(project_id)

        entries = await run_status_checks(project_ids, check, self.config.bulk_concurrency)
        for pid, entry in entries.items():
            if entry.error:
                logger.info(f"[{pid}] Reported as stopped after failed check ({entry.duration:.2f}s): {entry.error}")
            else:
                logger.debug(f"[{pid}] {entry.result.state.value} in {entry.duration:.2f}s")
        return {pid: entry.result for pid, entry in entries.items()}

    async def logs(self, project_id: str) -> LogsResult:
        """Captured output plus what can be read from the sandbox itself."""
        captured = self.buffers.snapshot(project_id)
        parts: list[str] = []
        if captured:
            parts.extend(["=== Captured Output ===", "\n".join(captured)])

        handle = await self.registry.resolve(project_id)
        if handle is None:
            if parts:
                return LogsResult(logs="\n".join(parts))
            return LogsResult(logs="", error=NOT_FOUND_MESSAGE)

        cfg = self.config
        recent = await self._run_quiet(handle, f"tail -100 {cfg.output_log_path} 2>/dev/null || echo ''")
        if recent and recent.strip():
            parts.extend(["=== Server Output Log ===", recent])
        procs = await self._run_quiet(handle, "ps aux | grep -E 'node|tsx' | grep -v grep")
        if procs and procs.strip():
            parts.extend(["=== Running Processes ===", procs])
        port = await self._run_quiet(
            handle,
            f"netstat -tlnp 2>/dev/null | grep {cfg.port} || ss -tlnp | grep {cfg.port} "
            f"|| echo 'Port {cfg.port} not listening'",
        )
        if port is not None:
            parts.extend(["=== Port Status ===", port])
        return LogsResult(logs="\n".join(parts))

    async def terminate(self, project_id: str) -> bool:
        """Kill the project's sandbox and forget it. Returns True if one was killed."""
        killed = False
        async with self.pipeline.lock_for(project_id):
            handle = await self.registry.resolve(project_id)
            if handle is not None:
                try:
                    await handle.kill()
                    killed = True
                except ProviderError as e:
                    logger.warning(f"[{project_id}] Kill failed for {handle.external_id}: {e}")
            self.registry.evict(project_id, forget_id=True)
            await self.pipeline.release(project_id)
        self.store.clear_sandbox(project_id)
        logger.info(f"[{project_id}] Sandbox terminated")
        return killed

    async def check_and_recover(self, project_id: str) -> RecoveryResult:
        """Check the project and redeploy its last source if the server died.

        Skipped while a deploy of the project is in flight. The re-check, the
        source read and the redeploy run under the project's deploy lock.
        """
        status = await self.status(project_id)
        if status.state != SandboxState.PORT_DOWN:
            return RecoveryResult(project_id, status.state, message="No recovery needed")

        async with self.recovery.hold(project_id) as owner:
            if not owner:
                return RecoveryResult(project_id, status.state, skipped=True, message="Recovery already in progress")

            lock = self.pipeline.lock_for(project_id)
            if lock.locked():
                return RecoveryResult(project_id, status.state, skipped=True, message="Deploy in progress")

            async with lock:
                # another caller may have finished recovering while we waited
                status = await self.status(project_id)
                if status.state != SandboxState.PORT_DOWN:
                    return RecoveryResult(project_id, status.state, message="No recovery needed")
                return await self._recover_locked(project_id, status)

    async def _recover_locked(self, project_id: str, status: StatusResult) -> RecoveryResult:
        diagnostic = extract_crash_lines(self.buffers.snapshot(project_id))
        logger.warning(f"[{project_id}] Server crashed, last output:\n{diagnostic.text}")

        rec = self.store.get(project_id)
        source = rec.current_source if rec else None
        if not source:
            return RecoveryResult(
                project_id,
                status.state,
                diagnostic=diagnostic.text,
                message="No deployed source to restore",
                report=render_crash_report_md(project_id, diagnostic),
            )

        try:
            hint = self.registry.external_id(project_id)
            result = await self.pipeline.deploy_locked(project_id, source, hint)
        except SandboxNotFoundError as e:
            return RecoveryResult(
                project_id,
                SandboxState.STOPPED,
                attempted=True,
                diagnostic=diagnostic.text,
                message=str(e),
                report=render_crash_report_md(project_id, diagnostic),
            )
        self._persist_deploy(project_id, source, result)
        message = "Redeployed after crash" if result.success else "Redeploy failed"
        logger.info(f"[{project_id}] {message}")
        return RecoveryResult(
            project_id,
            status.state,
            attempted=True,
            diagnostic=diagnostic.text,
            deploy=result,
            message=message,
            report=render_crash_report_md(project_id, diagnostic, recovered=result.success),
        )

    def active_project_ids(self) -> list[str]:
        ids = set(self.registry.project_ids())
        ids.update(r.project_id for r in self.store.list_projects() if r.external_sandbox_id)
        return sorted(ids)

    async def watch(
        self,
        project_ids: Optional[Iterable[str]] = None,
        *,
        interval: float = 30.0,
        stop: Optional[asyncio.Event] = None,
        rounds: Optional[int] = None,
        on_result: Optional[Callable[[RecoveryResult], None]] = None,
    ) -> None:
        """Periodically check projects and recover crashed servers until stopped."""
        stop = stop or asyncio.Event()
        fixed = list(project_ids) if project_ids is not None else None
        done = 0
        while not stop.is_set():
            ids = fixed if fixed is not None else self.active_project_ids()
            results = await asyncio.gather(*(self.check_and_recover(pid) for pid in ids), return_exceptions=True)
            for pid, res in zip(ids, results):
                if isinstance(res, BaseException):
                    logger.error(f"[{pid}] Health check failed: {type(res).__name__}: {res}")
                elif on_result is not None:
                    on_result(res)
            done += 1
            if rounds is not None and done >= rounds:
                return
            try:
                await asyncio.wait_for(stop.wait(), interval)
            except asyncio.TimeoutError:
                pass
