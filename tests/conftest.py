from __future__ import annotations

import sys
from pathlib import Path

import pytest
from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_SRC = (_PROJECT_ROOT / "src").resolve()
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

# Load .env from project root so FLOWPOD_* overrides apply to local runs
load_dotenv(_PROJECT_ROOT / ".env", override=False)

from flowpod.config import OrchestratorConfig  # noqa: E402
from flowpod.orchestrator import Orchestrator  # noqa: E402
from flowpod.providers.memory import MemoryProvider  # noqa: E402
from flowpod.store import InMemoryProjectStore  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for key in (
        "FLOWPOD_LOG_DIR",
        "FLOWPOD_UI_LOG_LEVEL",
        "FLOWPOD_HEARTBEAT_S",
        "FLOWPOD_REQUIRE_TOKEN",
        "FLOWPOD_API_TOKEN",
        "FLOWPOD_CONFIG",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    return OrchestratorConfig(
        app_url="https://builder.test",
        settle_delay_s=0,
        startup_grace_s=0,
        probe_interval_s=0,
        probe_attempts=3,
        command_timeout_s=1,
        launch_timeout_s=2,
        install_timeout_s=2,
        log_capacity=50,
    )


@pytest.fixture
def provider() -> MemoryProvider:
    return MemoryProvider()


@pytest.fixture
def store() -> InMemoryProjectStore:
    return InMemoryProjectStore()


@pytest.fixture
def orchestrator(provider, store, fast_config) -> Orchestrator:
    return Orchestrator(provider, store=store, config=fast_config)
