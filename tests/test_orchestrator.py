"""End-to-end tests of the orchestrator against the in-memory provider."""

import asyncio
import dataclasses
import logging

import pytest

from flowpod.errors import SandboxNotFoundError
from flowpod.models import SandboxState
from flowpod.orchestrator import NOT_FOUND_MESSAGE, Orchestrator


PROGRAM = """import { AiFlowAssistant } from "@sipgate/ai-flow-sdk";

const assistant = AiFlowAssistant.create({
  onUserSpeak: async () => ({ type: "speak", text: "hello" }),
});
"""


async def _deployed(orchestrator, project_id="p1"):
    info = await orchestrator.create_sandbox(project_id)
    result = await orchestrator.deploy(project_id, PROGRAM)
    assert result.success
    return info, result


@pytest.mark.asyncio
async def test_create_persists_sandbox(orchestrator, provider, store):
    info = await orchestrator.create_sandbox("p1")
    rec = store.get("p1")
    assert rec.external_sandbox_id == info.external_id
    assert rec.public_endpoint == info.endpoint
    assert info.endpoint.endswith("/webhook")
    assert provider.sandboxes[info.external_id].template == orchestrator.config.template


@pytest.mark.asyncio
async def test_create_replaces_existing_sandbox(orchestrator, provider):
    first = await orchestrator.create_sandbox("p1")
    second = await orchestrator.create_sandbox("p1")
    assert first.external_id != second.external_id
    assert not provider.sandboxes[first.external_id].alive
    assert provider.sandboxes[second.external_id].alive


@pytest.mark.asyncio
async def test_create_kills_sandbox_known_only_from_store(provider, store, fast_config):
    before = Orchestrator(provider, store=store, config=fast_config)
    old = await before.create_sandbox("p1")

    after_restart = Orchestrator(provider, store=store, config=fast_config)
    new = await after_restart.create_sandbox("p1")
    assert not provider.sandboxes[old.external_id].alive
    assert store.get("p1").external_sandbox_id == new.external_id


@pytest.mark.asyncio
async def test_deploy_persists_source_and_reports_running(orchestrator, store):
    _, result = await _deployed(orchestrator)
    rec = store.get("p1")
    assert rec.current_source == PROGRAM
    assert rec.public_endpoint == result.endpoint

    status = await orchestrator.status("p1")
    assert status.state == SandboxState.RUNNING
    assert status.endpoint == result.endpoint


@pytest.mark.asyncio
async def test_deploy_without_sandbox(orchestrator, provider):
    with pytest.raises(SandboxNotFoundError) as exc:
        await orchestrator.deploy("p1", PROGRAM)
    assert str(exc.value) == NOT_FOUND_MESSAGE
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_deploy_reconnects_after_restart(provider, store, fast_config):
    first = Orchestrator(provider, store=store, config=fast_config)
    info = await first.create_sandbox("p1")

    second = Orchestrator(provider, store=store, config=fast_config)
    result = await second.deploy("p1", PROGRAM)
    assert result.success
    assert provider.connect_calls == 1
    assert second.registry.get_cached("p1").external_id == info.external_id


@pytest.mark.asyncio
async def test_status_clears_store_when_sandbox_is_gone(orchestrator, provider, store):
    info, _ = await _deployed(orchestrator)
    provider.sandboxes[info.external_id].alive = False

    assert (await orchestrator.status("p1")).state == SandboxState.STOPPED
    rec = store.get("p1")
    assert rec.external_sandbox_id is None
    assert rec.current_source == PROGRAM


@pytest.mark.asyncio
async def test_status_bulk_mixed(orchestrator, provider, monkeypatch, caplog):
    await _deployed(orchestrator, "up")
    crashed, _ = await _deployed(orchestrator, "crashed")
    provider.sandboxes[crashed.external_id].server_up = False
    await orchestrator.create_sandbox("broken")

    real_resolve = orchestrator.registry.resolve

    async def flaky_resolve(project_id, hint=None):
        if project_id == "broken":
            raise RuntimeError("provider exploded")
        return await real_resolve(project_id, hint)

    monkeypatch.setattr(orchestrator.registry, "resolve", flaky_resolve)
    calls_before = provider.calls

    with caplog.at_level(logging.DEBUG, logger="flowpod.orchestrator"):
        results = await orchestrator.status_bulk(["up", "crashed", "broken", "never-created"])
    assert results["up"].state == SandboxState.RUNNING
    assert results["crashed"].state == SandboxState.PORT_DOWN
    assert results["broken"].state == SandboxState.STOPPED
    assert results["never-created"].state == SandboxState.STOPPED
    assert provider.calls == calls_before
    assert "[broken] Reported as stopped after failed check" in caplog.text
    assert "provider exploded" in caplog.text
    assert "[up] running in" in caplog.text


@pytest.mark.asyncio
async def test_logs_without_sandbox(orchestrator):
    result = await orchestrator.logs("p1")
    assert result.logs == ""
    assert result.error == NOT_FOUND_MESSAGE


@pytest.mark.asyncio
async def test_logs_include_captured_output_and_diagnostics(orchestrator):
    await _deployed(orchestrator)
    await orchestrator.pipeline.release("p1")
    result = await orchestrator.logs("p1")
    assert result.error is None
    assert "=== Captured Output ===" in result.logs
    assert "[stdout] Server running on port 3000" in result.logs
    assert "=== Server Output Log ===" in result.logs
    assert "=== Port Status ===" in result.logs


@pytest.mark.asyncio
async def test_terminate(orchestrator, provider, store):
    info, _ = await _deployed(orchestrator)
    assert await orchestrator.terminate("p1") is True
    assert not provider.sandboxes[info.external_id].alive
    assert store.get("p1").external_sandbox_id is None

    calls = provider.calls
    assert (await orchestrator.status("p1")).state == SandboxState.STOPPED
    assert provider.calls == calls
    assert await orchestrator.terminate("p1") is False


@pytest.mark.asyncio
async def test_recover_redeploys_crashed_server(orchestrator, provider):
    info, _ = await _deployed(orchestrator)
    provider.sandboxes[info.external_id].server_up = False
    orchestrator.buffers.append("p1", "stderr", "TypeError: assistant.foo is not a function")

    result = await orchestrator.check_and_recover("p1")
    assert result.attempted
    assert result.recovered
    assert "TypeError" in result.diagnostic
    assert result.report.startswith("## Crash report: p1")
    assert "- Recovery: redeployed" in result.report
    assert (await orchestrator.status("p1")).state == SandboxState.RUNNING


@pytest.mark.asyncio
async def test_recover_noop_when_running(orchestrator):
    await _deployed(orchestrator)
    result = await orchestrator.check_and_recover("p1")
    assert not result.attempted
    assert result.state == SandboxState.RUNNING


@pytest.mark.asyncio
async def test_recover_without_stored_source(orchestrator, provider):
    await orchestrator.create_sandbox("p1")
    result = await orchestrator.check_and_recover("p1")
    assert result.state == SandboxState.PORT_DOWN
    assert not result.attempted
    assert result.message == "No deployed source to restore"
    assert "not redeployed" in result.report


@pytest.mark.asyncio
async def test_concurrent_recovery_redeploys_once(orchestrator, provider):
    info, _ = await _deployed(orchestrator)
    provider.sandboxes[info.external_id].server_up = False

    results = await asyncio.gather(
        orchestrator.check_and_recover("p1"),
        orchestrator.check_and_recover("p1"),
    )
    assert sum(1 for r in results if r.attempted) == 1
    launches = [c for c in provider.sandboxes[info.external_id].commands if "npx tsx run.ts" in c]
    assert len(launches) == 2


@pytest.mark.asyncio
async def test_watch_runs_rounds(orchestrator, provider):
    info, _ = await _deployed(orchestrator)
    provider.sandboxes[info.external_id].server_up = False
    seen = []
    await orchestrator.watch(interval=0, rounds=1, on_result=seen.append)
    assert [r.project_id for r in seen] == ["p1"]
    assert seen[0].recovered


@pytest.mark.asyncio
async def test_recover_skips_while_deploy_in_flight(provider, store, fast_config):
    slow = Orchestrator(provider, store=store, config=dataclasses.replace(fast_config, settle_delay_s=0.2))
    info = await slow.create_sandbox("p1")
    old = PROGRAM.replace("hello", "old greeting")
    new = PROGRAM.replace("hello", "new greeting")
    assert (await slow.deploy("p1", old)).success

    task = asyncio.create_task(slow.deploy("p1", new))
    await asyncio.sleep(0.05)
    # the previous server is already stopped, the new one not yet launched
    assert not provider.sandboxes[info.external_id].server_up
    result = await slow.check_and_recover("p1")
    deployed = await task

    assert result.skipped
    assert not result.attempted
    assert result.message == "Deploy in progress"
    assert deployed.success
    assert store.get("p1").current_source == new
    run_ts = provider.sandboxes[info.external_id].files[fast_config.source_path]
    assert "new greeting" in run_ts
    assert "old greeting" not in run_ts


@pytest.mark.asyncio
async def test_status_after_restart_reattaches_from_store(provider, store, fast_config):
    before = Orchestrator(provider, store=store, config=fast_config)
    info = await before.create_sandbox("p1")
    assert (await before.deploy("p1", PROGRAM)).success
    assert provider.connect_calls == 0

    after_restart = Orchestrator(provider, store=store, config=fast_config)
    status = await after_restart.status("p1")
    assert status.state == SandboxState.RUNNING
    assert status.endpoint == info.endpoint
    assert provider.connect_calls == 1
    assert after_restart.registry.external_id("p1") == info.external_id


@pytest.mark.asyncio
async def test_pipeline_deploy_locked_requires_lock(orchestrator):
    await orchestrator.create_sandbox("p1")
    with pytest.raises(RuntimeError):
        await orchestrator.pipeline.deploy_locked("p1", PROGRAM)
