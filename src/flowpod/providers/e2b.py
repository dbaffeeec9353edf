"""Sandbox provider backed by the E2B cloud sandboxes."""

from __future__ import annotations

import logging
from typing import Optional

from e2b import (
    AsyncSandbox,
    CommandExitException,
    NotFoundException,
    SandboxException,
    TimeoutException,
)

from ..errors import ProviderError, ProviderTimeoutError, SandboxGoneError
from .base import BackgroundProcess, CommandResult, OutputCallback, SandboxHandle, SandboxProvider

logger = logging.getLogger("flowpod.providers.e2b")


def _translate(e: Exception, what: str) -> ProviderError:
    if isinstance(e, NotFoundException):
        return SandboxGoneError(f"{what}: {e}")
    if isinstance(e, TimeoutException):
        return ProviderTimeoutError(f"{what}: {e}")
    return ProviderError(f"{what}: {type(e).__name__}: {e}")


class E2BSandboxHandle(SandboxHandle):
    def __init__(self, sandbox: AsyncSandbox):
        self._sandbox = sandbox

    @property
    def external_id(self) -> str:
        return self._sandbox.sandbox_id

    async def is_running(self) -> bool:
        try:
            return bool(await self._sandbox.is_running())
        except SandboxException as e:
            raise _translate(e, "is_running") from e

    async def run(self, command: str, *, timeout: float = 60.0) -> CommandResult:
        try:
            res = await self._sandbox.commands.run(command, timeout=timeout)
        except CommandExitException as e:
            return CommandResult(exit_code=e.exit_code, stdout=e.stdout or "", stderr=e.stderr or "")
        except SandboxException as e:
            raise _translate(e, f"run {command!r}") from e
        return CommandResult(exit_code=res.exit_code, stdout=res.stdout or "", stderr=res.stderr or "")

    async def run_background(
        self,
        command: str,
        *,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> BackgroundProcess:
        # timeout=0 keeps the stream open for the lifetime of the process
        try:
            handle = await self._sandbox.commands.run(
                command,
                background=True,
                timeout=0,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
        except SandboxException as e:
            raise _translate(e, "background launch") from e
        return BackgroundProcess(pid=getattr(handle, "pid", None), handle=handle)

    async def write_file(self, path: str, content: str) -> None:
        try:
            await self._sandbox.files.write(path, content)
        except SandboxException as e:
            raise _translate(e, f"write {path}") from e

    def get_host(self, port: int) -> str:
        return self._sandbox.get_host(port)

    async def kill(self) -> None:
        try:
            await self._sandbox.kill()
        except NotFoundException:
            logger.debug("Sandbox %s already gone", self.external_id)
        except SandboxException as e:
            raise _translate(e, "kill") from e


class E2BProvider(SandboxProvider):
    name = "e2b"

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key

    async def create(
        self,
        *,
        template: str,
        timeout_s: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> SandboxHandle:
        try:
            sandbox = await AsyncSandbox.create(
                template=template,
                timeout=timeout_s,
                metadata=metadata or None,
                api_key=self.api_key,
            )
        except SandboxException as e:
            raise _translate(e, f"create from template {template}") from e
        logger.info("Created E2B sandbox %s from %s", sandbox.sandbox_id, template)
        return E2BSandboxHandle(sandbox)

    async def connect(self, external_id: str) -> SandboxHandle:
        try:
            sandbox = await AsyncSandbox.connect(external_id, api_key=self.api_key)
        except SandboxException as e:
            raise _translate(e, f"connect {external_id}") from e
        return E2BSandboxHandle(sandbox)
