"""Base classes for sandbox providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional


OutputCallback = Callable[[str], Any]


@dataclass
class CommandResult:
    """Result of a foreground command. A non-zero exit code is not an error."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class BackgroundProcess:
    """Opaque reference to a detached process inside a sandbox."""
    pid: Optional[int] = None
    handle: Any = None


class SandboxHandle(ABC):
    """Live, in-process connection to one remote sandbox.

    Methods raise ProviderError (or a subclass) when the provider cannot be
    reached or the sandbox is gone.
    """

    @property
    @abstractmethod
    def external_id(self) -> str:
        """Provider issued identifier of the sandbox."""
        pass

    @abstractmethod
    async def is_running(self) -> bool:
        """Ask the provider whether the sandbox still exists."""
        pass

    @abstractmethod
    async def run(self, command: str, *, timeout: float = 60.0) -> CommandResult:
        """Run a shell command and wait for it to finish."""
        pass

    @abstractmethod
    async def run_background(
        self,
        command: str,
        *,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> BackgroundProcess:
        """Start a detached command with no connection time limit."""
        pass

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        pass

    @abstractmethod
    def get_host(self, port: int) -> str:
        """Public hostname routed to ``port`` inside the sandbox."""
        pass

    @abstractmethod
    async def kill(self) -> None:
        pass


class SandboxProvider(ABC):
    """Provisioning service that creates and attaches to sandboxes."""

    name: str = "base"

    @abstractmethod
    async def create(
        self,
        *,
        template: str,
        timeout_s: int,
        metadata: Optional[dict[str, str]] = None,
    ) -> SandboxHandle:
        pass

    @abstractmethod
    async def connect(self, external_id: str) -> SandboxHandle:
        """Attach to an existing sandbox. Raises SandboxGoneError if unknown."""
        pass
