"""In-process sandbox provider.

Simulates just enough of a sandbox (a Node server on the configured port, the
output log file and a handful of shell commands) to drive the orchestrator
without a provisioning service. Used for local dry runs and the test suite.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from ..errors import SandboxGoneError
from .base import BackgroundProcess, CommandResult, OutputCallback, SandboxHandle, SandboxProvider


Responder = Union[CommandResult, Exception, Callable[[str], CommandResult]]


@dataclass
class MemorySandbox:
    """State of one simulated sandbox, shared by every handle attached to it."""
    external_id: str
    template: str = ""
    alive: bool = True
    server_up: bool = False
    crash_on_launch: bool = False
    launch_output: list[str] = field(default_factory=lambda: ["Server running on port 3000"])
    files: dict[str, str] = field(default_factory=dict)
    commands: list[str] = field(default_factory=list)
    output: list[str] = field(default_factory=list)
    responders: list[tuple[str, Responder]] = field(default_factory=list)
    pids: itertools.count = field(default_factory=lambda: itertools.count(100))

    def respond(self, pattern: str, response: Responder) -> None:
        """Answer commands containing ``pattern`` with ``response`` (first match wins)."""
        self.responders.insert(0, (pattern, response))


class MemorySandboxHandle(SandboxHandle):
    def __init__(self, sandbox: MemorySandbox):
        self.sandbox = sandbox

    @property
    def external_id(self) -> str:
        return self.sandbox.external_id

    def _check_alive(self) -> None:
        if not self.sandbox.alive:
            raise SandboxGoneError(f"sandbox {self.sandbox.external_id} not found")

    async def is_running(self) -> bool:
        return self.sandbox.alive

    async def run(self, command: str, *, timeout: float = 60.0) -> CommandResult:
        self._check_alive()
        sbx = self.sandbox
        sbx.commands.append(command)

        for pattern, response in sbx.responders:
            if pattern in command:
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(command)
                return response

        if command.startswith("echo "):
            return CommandResult(0, command[5:].strip() + "\n")
        if "pkill" in command:
            sbx.server_up = False
            return CommandResult(0)
        if "curl" in command:
            return CommandResult(0, "200" if sbx.server_up else "000")
        if "ps aux" in command:
            return CommandResult(0, "user  101  node /usr/bin/tsx run.ts\n" if sbx.server_up else "")
        if "server-output.log" in command:
            return CommandResult(0, "\n".join(sbx.output) + ("\n" if sbx.output else ""))
        if "netstat" in command or " ss " in command:
            if sbx.server_up:
                return CommandResult(0, "tcp  0  0 0.0.0.0:3000  0.0.0.0:*  LISTEN\n")
            return CommandResult(0, "Port 3000 not listening\n")
        if command.startswith("node --version"):
            return CommandResult(0, "v22.11.0\n")
        return CommandResult(0)

    async def run_background(
        self,
        command: str,
        *,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> BackgroundProcess:
        self._check_alive()
        sbx = self.sandbox
        sbx.commands.append(command)
        for pattern, response in sbx.responders:
            if pattern in command and isinstance(response, Exception):
                raise response

        sbx.server_up = not sbx.crash_on_launch
        for line in sbx.launch_output:
            sbx.output.append(line)
            if on_stdout is not None:
                res = on_stdout(line)
                if inspect.isawaitable(res):
                    await res
        return BackgroundProcess(pid=next(sbx.pids))

    async def write_file(self, path: str, content: str) -> None:
        self._check_alive()
        for pattern, response in self.sandbox.responders:
            if pattern == f"write:{path}" and isinstance(response, Exception):
                raise response
        self.sandbox.files[path] = content

    def get_host(self, port: int) -> str:
        return f"{port}-{self.sandbox.external_id}.sandbox.local"

    async def kill(self) -> None:
        self.sandbox.alive = False
        self.sandbox.server_up = False


class MemoryProvider(SandboxProvider):
    name = "memory"

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s
        self.sandboxes: dict[str, MemorySandbox] = {}
        self.create_calls = 0
        self.connect_calls = 0
        self._ids = itertools.count(1)

    @property
    def calls(self) -> int:
        return self.create_calls + self.connect_calls

    async def _delay(self) -> None:
        if self.latency_s:
            await asyncio.sleep(self.latency_s)

    async def create(
        self,
        *,
        template: str,
        timeout_s: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> SandboxHandle:
        self.create_calls += 1
        await self._delay()
        sandbox = MemorySandbox(external_id=f"mem-{next(self._ids)}", template=template)
        self.sandboxes[sandbox.external_id] = sandbox
        return MemorySandboxHandle(sandbox)

    async def connect(self, external_id: str) -> SandboxHandle:
        self.connect_calls += 1
        await self._delay()
        sandbox = self.sandboxes.get(external_id)
        if sandbox is None:
            raise SandboxGoneError(f"sandbox {external_id} not found")
        return MemorySandboxHandle(sandbox)

    def add(self, sandbox: MemorySandbox) -> MemorySandbox:
        self.sandboxes[sandbox.external_id] = sandbox
        return sandbox


__all__ = [
    "MemoryProvider",
    "MemorySandbox",
    "MemorySandboxHandle",
]
