"""Deployment pipeline: ship program text into a sandbox and start it."""

import asyncio
import json
import logging
from typing import Callable, Optional

from .config import OrchestratorConfig
from .deps import build_manifest, detect_dependencies
from .errors import ProviderError, SandboxNotFoundError
from .log_buffer import LogBufferRegistry, OutputPump
from .log_helpers import _beat_every_s, _call_on_log, _heartbeat
from .models import DeployResult, ErrorCategory
from .probe import ready_message, wait_until_ready
from .providers.base import CommandResult, SandboxHandle
from .registry import SandboxRegistry
from .wrapper import wrap_source

logger = logging.getLogger("flowpod.pipeline")

KILL_COMMAND = "pkill -f 'node' 2>/dev/null; exit 0"


def webhook_url(handle: SandboxHandle, port: int) -> str:
    return f"https://{handle.get_host(port)}/webhook"


def launch_command(cfg: OrchestratorConfig) -> str:
    return f"cd {cfg.work_dir} && npx tsx run.ts 2>&1 | tee {cfg.output_log_path}"


def install_command(cfg: OrchestratorConfig) -> str:
    return f"cd {cfg.work_dir} && npm install --no-audit --no-fund --loglevel=error"


def _tail(text: str, lines: int = 5) -> str:
    return "\n".join((text or "").strip().splitlines()[-lines:])


class DeploymentPipeline:
    """Stop, install, write, launch and probe, one project at a time."""

    def __init__(
        self,
        registry: SandboxRegistry,
        buffers: LogBufferRegistry,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.registry = registry
        self.buffers = buffers
        self.config = config or OrchestratorConfig()
        self._pumps: dict[str, OutputPump] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, project_id: str) -> asyncio.Lock:
        return self._locks.setdefault(project_id, asyncio.Lock())

    async def _run(self, handle: SandboxHandle, command: str, timeout: float) -> CommandResult:
        return await asyncio.wait_for(handle.run(command, timeout=timeout), timeout + 1)

    async def _write(self, handle: SandboxHandle, path: str, content: str) -> None:
        timeout = self.config.command_timeout_s * 6
        await asyncio.wait_for(handle.write_file(path, content), timeout)

    async def release(self, project_id: str) -> None:
        """Stop collecting output for the project, flushing queued lines."""
        pump = self._pumps.pop(project_id, None)
        if pump is not None:
            await pump.close()

    async def deploy(
        self,
        project_id: str,
        source: str,
        external_id_hint: Optional[str] = None,
        on_log: Optional[Callable[..., None]] = None,
    ) -> DeployResult:
        """Deploy ``source`` into the project's sandbox.

        Raises SandboxNotFoundError when no sandbox can be resolved. Every
        other failure is reported through the returned logs. ``success`` is
        True once the source was written and the server launched, whether or
        not it answered the readiness probe.
        """
        async with self.lock_for(project_id):
            return await self._deploy(project_id, source, external_id_hint, on_log)

    async def deploy_locked(
        self,
        project_id: str,
        source: str,
        external_id_hint: Optional[str] = None,
        on_log: Optional[Callable[..., None]] = None,
    ) -> DeployResult:
        """Same as :meth:`deploy` for a caller already holding ``lock_for(project_id)``."""
        if not self.lock_for(project_id).locked():
            raise RuntimeError(f"deploy lock for {project_id} is not held")
        return await self._deploy(project_id, source, external_id_hint, on_log)

    async def _deploy(
        self,
        project_id: str,
        source: str,
        external_id_hint: Optional[str],
        on_log: Optional[Callable[..., None]],
    ) -> DeployResult:
        cfg = self.config
        result = DeployResult(success=False)
        logs = result.logs

        def log(msg: str, level: str = "INFO") -> None:
            logs.append(msg)
            logger.log(getattr(logging, level), f"[{project_id}] {msg}")
            _call_on_log(on_log, msg, level)

        handle = await self.registry.resolve(project_id, external_id_hint)
        if handle is None:
            logger.warning(f"[{project_id}] Deploy requested but no sandbox could be resolved")
            raise SandboxNotFoundError(project_id)
        logger.info(f"[{project_id}] Deploying {len(source or '')} chars to sandbox {handle.external_id}")

        # Stop the previous server and let the port free up
        try:
            await self._run(handle, KILL_COMMAND, cfg.command_timeout_s)
            log("Killed existing processes")
        except (ProviderError, asyncio.TimeoutError) as e:
            log(f"Could not stop existing processes: {e}", "WARNING")
        if cfg.settle_delay_s > 0:
            await asyncio.sleep(cfg.settle_delay_s)

        # Manifest and dependencies
        detected = detect_dependencies(source, preinstalled=cfg.framework_dependencies)
        result.detected_dependencies = detected
        manifest = build_manifest(detected, cfg.framework_dependencies)
        try:
            await self._write(handle, cfg.manifest_path, json.dumps(manifest, indent=2) + "\n")
            log(f"Wrote package.json ({len(manifest['dependencies'])} dependencies)")
        except (ProviderError, asyncio.TimeoutError) as e:
            log(f"Could not write package.json: {e}", "WARNING")

        if detected:
            await self._install(handle, detected, result, log, on_log)
        else:
            log("No extra dependencies detected")

        # Wrapped source
        wrapped = wrap_source(project_id, source or "", app_url=cfg.app_url, port=cfg.port)
        try:
            await self._write(handle, cfg.source_path, wrapped)
        except (ProviderError, asyncio.TimeoutError) as e:
            log(f"Deploy failed: could not write {cfg.source_path}: {e or type(e).__name__}", "ERROR")
            result.error_category = ErrorCategory.WRITE
            return result
        log("Code written to sandbox (with runtime wrapper)")

        # Fresh output capture, then launch
        await self.release(project_id)
        buffer = self.buffers.get(project_id)
        buffer.reset()
        pump = OutputPump(buffer, name=project_id).start()
        self._pumps[project_id] = pump
        try:
            proc = await asyncio.wait_for(
                handle.run_background(
                    launch_command(cfg),
                    on_stdout=pump.on_stdout,
                    on_stderr=pump.on_stderr,
                ),
                cfg.launch_timeout_s,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            await self.release(project_id)
            log(f"Deploy failed: could not start server: {e or type(e).__name__}", "ERROR")
            result.error_category = ErrorCategory.LAUNCH
            return result
        result.pid = proc.pid
        log(f"Started server with PID: {proc.pid}")

        if cfg.startup_grace_s > 0:
            await asyncio.sleep(cfg.startup_grace_s)
        await self._startup_checks(handle, log)
        log("Server starting...")

        probe = await wait_until_ready(
            handle,
            cfg.port,
            attempts=cfg.probe_attempts,
            interval=cfg.probe_interval_s,
            timeout=cfg.command_timeout_s,
        )
        result.ready = probe.ready
        log(ready_message(probe, cfg.probe_interval_s), "INFO" if probe.ready else "WARNING")
        if not probe.ready and result.error_category == ErrorCategory.NONE:
            result.error_category = ErrorCategory.STARTUP_TIMEOUT

        result.endpoint = webhook_url(handle, cfg.port)
        result.success = True
        return result

    async def _install(self, handle, detected, result, log, on_log) -> None:
        cfg = self.config
        log(f"Installing dependencies: {', '.join(detected)}")
        beat = asyncio.create_task(
            _heartbeat(on_log=on_log, message="npm install still running", interval_s=_beat_every_s())
        )
        try:
            res = await self._run(handle, install_command(cfg), cfg.install_timeout_s)
        except asyncio.TimeoutError:
            log(f"Dependency install timed out after {cfg.install_timeout_s:g}s, continuing", "WARNING")
            result.error_category = ErrorCategory.DEPENDENCY
            return
        except ProviderError as e:
            log(f"Dependency install failed: {e}, continuing", "WARNING")
            result.error_category = ErrorCategory.DEPENDENCY
            return
        finally:
            beat.cancel()

        if res.ok:
            log("Dependencies installed")
        else:
            detail = _tail(res.stderr or res.stdout)
            log(f"Dependency install failed (exit {res.exit_code}), continuing: {detail}", "WARNING")
            result.error_category = ErrorCategory.DEPENDENCY

    async def _startup_checks(self, handle: SandboxHandle, log) -> None:
        cfg = self.config
        try:
            ps = await self._run(
                handle,
                "ps aux | grep -E 'tsx|node' | grep -v grep || echo 'No tsx/node process found'",
                cfg.command_timeout_s,
            )
            log(f"Process check: {ps.stdout.strip()}", "DEBUG")
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.debug(f"Process check failed: {e}")

        try:
            early = await self._run(
                handle,
                f"cat {cfg.output_log_path} 2>/dev/null || echo 'No log yet'",
                cfg.command_timeout_s,
            )
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.debug(f"Early log check failed: {e}")
            return
        if "error" in early.stdout.lower():
            log(f"Startup errors: {early.stdout.strip()}", "WARNING")
