"""flowpod – sandboxes for generated voice agents"""

__version__ = "0.1.0"

from .config import OrchestratorConfig, load_config
from .deps import build_manifest, detect_dependencies
from .errors import (
    ConfigError,
    FlowpodError,
    GenerationError,
    ProviderError,
    ProviderTimeoutError,
    SandboxGoneError,
    SandboxNotFoundError,
)
from .log_buffer import LogBuffer, LogBufferRegistry, OutputPump
from .models import (
    DeployResult,
    ErrorCategory,
    LogsResult,
    RecoveryResult,
    SandboxInfo,
    SandboxState,
    StatusResult,
)
from .orchestrator import Orchestrator
from .providers import MemoryProvider, SandboxHandle, SandboxProvider, get_provider
from .store import InMemoryProjectStore, JsonFileProjectStore, ProjectRecord, ProjectStore
from .wrapper import wrap_source

__all__ = [
    "ConfigError",
    "DeployResult",
    "ErrorCategory",
    "FlowpodError",
    "GenerationError",
    "InMemoryProjectStore",
    "JsonFileProjectStore",
    "LogBuffer",
    "LogBufferRegistry",
    "LogsResult",
    "MemoryProvider",
    "Orchestrator",
    "OrchestratorConfig",
    "OutputPump",
    "ProjectRecord",
    "ProjectStore",
    "ProviderError",
    "ProviderTimeoutError",
    "RecoveryResult",
    "SandboxGoneError",
    "SandboxHandle",
    "SandboxInfo",
    "SandboxNotFoundError",
    "SandboxProvider",
    "SandboxState",
    "StatusResult",
    "build_manifest",
    "detect_dependencies",
    "get_provider",
    "load_config",
    "wrap_source",
]
