"""Result types shared by the orchestrator, the API and the CLI."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class SandboxState(str, Enum):
    """Coarse state of a project's sandbox."""
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    PORT_DOWN = "port_down"  # container alive, user process dead


class ErrorCategory(str, Enum):
    """Categorized deploy failures for diagnostics."""
    NONE = "none"
    NOT_FOUND = "not_found"  # no reachable sandbox
    WRITE = "write"  # source file could not be written
    LAUNCH = "launch"  # background process did not start
    DEPENDENCY = "dependency"  # npm install failed (non-fatal)
    STARTUP_TIMEOUT = "startup_timeout"  # readiness probe exhausted (non-fatal)
    UNKNOWN = "unknown"


@dataclass
class SandboxInfo:
    """A freshly provisioned sandbox."""
    project_id: str
    external_id: str
    endpoint: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DeployResult:
    """Outcome of one deployment attempt."""
    success: bool
    logs: List[str] = field(default_factory=list)
    ready: bool = False
    endpoint: Optional[str] = None
    pid: Optional[int] = None
    detected_dependencies: List[str] = field(default_factory=list)
    error_category: ErrorCategory = ErrorCategory.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "ready": self.ready,
            "logs": list(self.logs),
            "endpoint": self.endpoint,
            "pid": self.pid,
            "detected_dependencies": list(self.detected_dependencies),
            "error_category": self.error_category.value,
        }


@dataclass
class StatusResult:
    """Health check outcome for a single project."""
    state: SandboxState
    endpoint: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == SandboxState.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.state.value, "endpoint": self.endpoint}


@dataclass
class LogsResult:
    """Aggregated log text for a project."""
    logs: str
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"logs": self.logs}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class RecoveryResult:
    """What a health check plus recovery attempt did."""
    project_id: str
    state: SandboxState
    attempted: bool = False
    skipped: bool = False
    diagnostic: Optional[str] = None
    deploy: Optional[DeployResult] = None
    message: str = ""
    report: Optional[str] = None

    @property
    def recovered(self) -> bool:
        return bool(self.deploy and self.deploy.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.state.value,
            "attempted": self.attempted,
            "skipped": self.skipped,
            "recovered": self.recovered,
            "diagnostic": self.diagnostic,
            "deploy": self.deploy.to_dict() if self.deploy else None,
            "message": self.message,
            "report": self.report,
        }
