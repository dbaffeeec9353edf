"""Configuration for the flowpod orchestrator."""

import os

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigError


DEFAULT_TEMPLATE = "flowcommander-node22"

# Packages baked into the sandbox template. Always part of the manifest and
# never reported by the dependency detector.
FRAMEWORK_DEPENDENCIES: dict[str, str] = {
    "@sipgate/ai-flow-sdk": "latest",
    "express": "^4.21.0",
    "typescript": "^5.6.0",
    "tsx": "^4.19.0",
    "@types/express": "^5.0.0",
    "@types/node": "^22.0.0",
}


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


@dataclass
class OrchestratorConfig:
    """Settings shared by every component of the orchestrator."""
    template: str = DEFAULT_TEMPLATE
    api_key: Optional[str] = None
    sandbox_timeout_s: int = 3600
    port: int = 3000
    app_url: str = "http://localhost:3000"
    work_dir: str = "/home/user"
    output_log_path: str = "/tmp/server-output.log"
    log_capacity: int = 200
    install_timeout_s: float = 120.0
    command_timeout_s: float = 5.0
    settle_delay_s: float = 2.0
    launch_timeout_s: float = 30.0
    startup_grace_s: float = 3.0
    probe_attempts: int = 15
    probe_interval_s: float = 1.0
    bulk_concurrency: int = 16
    framework_dependencies: dict[str, str] = field(default_factory=lambda: dict(FRAMEWORK_DEPENDENCIES))

    @property
    def source_path(self) -> str:
        return f"{self.work_dir.rstrip('/')}/run.ts"

    @property
    def manifest_path(self) -> str:
        return f"{self.work_dir.rstrip('/')}/package.json"

    @classmethod
    def from_dict(cls, data: dict) -> "OrchestratorConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        cfg = cls(**{k: v for k, v in data.items() if k != "framework_dependencies"})
        if "framework_dependencies" in data:
            deps = data["framework_dependencies"] or {}
            if isinstance(deps, list):
                deps = {name: "latest" for name in deps}
            cfg.framework_dependencies = dict(deps)
        return cfg

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None, base: Optional["OrchestratorConfig"] = None) -> "OrchestratorConfig":
        src = env if env is not None else os.environ
        cfg = base or cls()

        def number(key: str, current: Any, cast: type) -> Any:
            raw = _clean(src.get(key))
            if raw is None:
                return current
            try:
                return cast(raw)
            except ValueError as e:
                raise ConfigError(f"{key} must be a number, got {raw!r}") from e

        cfg.template = _clean(src.get("FLOWPOD_TEMPLATE")) or cfg.template
        cfg.api_key = _clean(src.get("FLOWPOD_E2B_API_KEY") or src.get("E2B_API_KEY")) or cfg.api_key
        cfg.app_url = (
            _clean(src.get("FLOWPOD_APP_URL") or src.get("NEXT_PUBLIC_APP_URL")) or cfg.app_url
        )
        cfg.work_dir = _clean(src.get("FLOWPOD_WORK_DIR")) or cfg.work_dir
        cfg.sandbox_timeout_s = number("FLOWPOD_SANDBOX_TIMEOUT_S", cfg.sandbox_timeout_s, int)
        cfg.port = number("FLOWPOD_PORT", cfg.port, int)
        cfg.log_capacity = number("FLOWPOD_LOG_CAPACITY", cfg.log_capacity, int)
        cfg.install_timeout_s = number("FLOWPOD_INSTALL_TIMEOUT_S", cfg.install_timeout_s, float)
        cfg.settle_delay_s = number("FLOWPOD_SETTLE_DELAY_S", cfg.settle_delay_s, float)
        cfg.startup_grace_s = number("FLOWPOD_STARTUP_GRACE_S", cfg.startup_grace_s, float)
        cfg.probe_attempts = number("FLOWPOD_PROBE_ATTEMPTS", cfg.probe_attempts, int)
        cfg.probe_interval_s = number("FLOWPOD_PROBE_INTERVAL_S", cfg.probe_interval_s, float)
        cfg.bulk_concurrency = number("FLOWPOD_BULK_CONCURRENCY", cfg.bulk_concurrency, int)
        return cfg


def load_config(path: str | Path, env: Optional[dict[str, str]] = None) -> OrchestratorConfig:
    """Load orchestrator settings from a YAML file, then apply env overrides."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")
    section = data.get("orchestrator", data)
    return OrchestratorConfig.from_env(env, base=OrchestratorConfig.from_dict(section))
