import json

import httpx
import pytest

from flowpod.api import (
    FALLBACK_INACTIVE,
    FALLBACK_UNKNOWN_NUMBER,
    FALLBACK_UNREACHABLE,
    FALLBACK_UPSTREAM_ERROR,
    ApiSettings,
    create_api,
)
from flowpod.generation import CodeGenerator


PROGRAM = """import axios from "axios";
import { AiFlowAssistant } from "@sipgate/ai-flow-sdk";

const assistant = AiFlowAssistant.create({});
"""


def _settings(**overrides) -> ApiSettings:
    settings = ApiSettings()
    settings.require_token = False
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_sandbox_lifecycle(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.post("/sandbox/create", json={"project_id": "p1"})
        assert resp.status_code == 200
        endpoint = resp.json()["endpoint"]

        resp = await client.post("/sandbox/deploy", json={"project_id": "p1", "source": PROGRAM})
        assert resp.status_code == 200
        payload = resp.json()
        assert payload["success"] is True
        assert payload["detected_dependencies"] == ["axios"]
        assert payload["endpoint"] == endpoint

        resp = await client.get("/sandbox/status/p1")
        assert resp.json() == {"status": "running", "endpoint": endpoint}

        resp = await client.post("/sandbox/status-bulk", json={"project_ids": ["p1", "other", "../bad"]})
        assert resp.json()["statuses"] == {"p1": "running", "other": "stopped", "../bad": "stopped"}

        resp = await client.get("/sandbox/logs/p1")
        assert "=== Port Status ===" in resp.json()["logs"]

        resp = await client.post("/sandbox/terminate", json={"project_id": "p1"})
        assert resp.json() == {"ok": True, "killed": True}

        resp = await client.get("/sandbox/status/p1")
        assert resp.json() == {"status": "stopped", "endpoint": None}


@pytest.mark.asyncio
async def test_deploy_without_sandbox_is_404(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.post("/sandbox/deploy", json={"project_id": "p1", "source": PROGRAM})
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Sandbox not found. Please restart the sandbox."


@pytest.mark.asyncio
async def test_deploy_reuses_stored_source(orchestrator, store):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.post("/sandbox/deploy", json={"project_id": "p1"})
        assert resp.status_code == 400

        await client.post("/sandbox/create", json={"project_id": "p1"})
        store.update("p1", current_source=PROGRAM)
        resp = await client.post("/sandbox/deploy", json={"project_id": "p1"})
        assert resp.status_code == 200
        assert resp.json()["success"] is True


@pytest.mark.asyncio
async def test_deploy_stream_emits_logs_then_result(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        await client.post("/sandbox/create", json={"project_id": "p1"})
        events = []
        async with client.stream("POST", "/sandbox/deploy/stream", json={"project_id": "p1", "source": PROGRAM}) as resp:
            assert resp.status_code == 200
            async for line in resp.aiter_lines():
                if line.strip():
                    events.append(json.loads(line))

    assert events[-1]["type"] == "result"
    assert events[-1]["result"]["success"] is True
    assert any(e["type"] == "log" and e["message"] == "Server starting..." for e in events)


@pytest.mark.asyncio
async def test_invalid_project_id_rejected(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.post("/sandbox/create", json={"project_id": "../etc"})
        assert resp.status_code == 400


@pytest.mark.asyncio
async def test_token_required(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings(require_token=True, token="secret"))
    async with _client(app) as client:
        resp = await client.get("/sandbox/status/p1")
        assert resp.status_code == 401
        resp = await client.get("/sandbox/status/p1", headers={"X-Flowpod-Token": "secret"})
        assert resp.status_code == 200
        resp = await client.get("/health")
        assert resp.status_code == 200


@pytest.mark.asyncio
async def test_webhook_without_sandbox_speaks_fallback(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.post("/webhook/p1", json={"type": "session_start"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "speak"
    assert body["text"] == FALLBACK_INACTIVE
    assert body["end_of_conversation"] is True


@pytest.mark.asyncio
async def test_webhook_forwards_to_sandbox(orchestrator, store):
    store.update("p1", public_endpoint="https://3000-sbx.sandbox.local/webhook")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"type": "speak", "text": "Hello from the agent"})

    app = create_api(
        orchestrator=orchestrator,
        settings=_settings(),
        webhook_transport=httpx.MockTransport(handler),
    )
    async with _client(app) as client:
        resp = await client.post("/webhook/p1", json={"type": "user_speak", "text": "hi"})
        assert resp.json() == {"type": "speak", "text": "Hello from the agent"}

        events = (await client.get("/sandbox/events/p1")).json()["events"]
    assert seen == [("https://3000-sbx.sandbox.local/webhook", {"type": "user_speak", "text": "hi"})]
    assert events[0]["type"] == "user_speak"


@pytest.mark.asyncio
async def test_webhook_upstream_error_and_unreachable(orchestrator, store):
    store.update("p1", public_endpoint="https://3000-sbx.sandbox.local/webhook")

    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    app = create_api(orchestrator=orchestrator, settings=_settings(), webhook_transport=httpx.MockTransport(failing))
    async with _client(app) as client:
        resp = await client.post("/webhook/p1", json={"type": "user_speak"})
    assert resp.json()["text"] == FALLBACK_UPSTREAM_ERROR

    app = create_api(orchestrator=orchestrator, settings=_settings(), webhook_transport=httpx.MockTransport(unreachable))
    async with _client(app) as client:
        resp = await client.post("/webhook/p1", json={"type": "user_speak"})
    assert resp.json()["text"] == FALLBACK_UNREACHABLE


@pytest.mark.asyncio
async def test_central_webhook_routes_by_phone_number(orchestrator, store):
    store.update("p1", phone_number="+49 211 555", public_endpoint="https://3000-sbx.sandbox.local/webhook")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"type": "hangup"})

    app = create_api(orchestrator=orchestrator, settings=_settings(), webhook_transport=httpx.MockTransport(handler))
    async with _client(app) as client:
        resp = await client.post("/webhook", json={"type": "session_start", "session": {"to_phone_number": "0049211555"}})
        assert resp.json() == {"type": "hangup"}

        resp = await client.post("/webhook", json={"type": "session_start", "to_phone_number": "+1 999"})
        assert resp.json()["text"] == FALLBACK_UNKNOWN_NUMBER


@pytest.mark.asyncio
async def test_webhook_info_route(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.get("/webhook/p1")
    assert resp.json()["status"] == "ok"


class _StaticGenerator(CodeGenerator):
    async def generate(self, prompt: str) -> str:
        return f"// {prompt}"

    async def refine(self, code: str, instruction: str) -> str:
        return f"{code}\n// {instruction}"


@pytest.mark.asyncio
async def test_generate_route(orchestrator):
    app = create_api(orchestrator=orchestrator, settings=_settings())
    async with _client(app) as client:
        resp = await client.post("/generate", json={"prompt": "greet"})
        assert resp.status_code == 503

    app = create_api(orchestrator=orchestrator, settings=_settings(), generator=_StaticGenerator())
    async with _client(app) as client:
        resp = await client.post("/generate", json={"prompt": "greet"})
        assert resp.json() == {"code": "// greet"}
        resp = await client.post("/generate", json={"code": "a", "instruction": "b"})
        assert resp.json() == {"code": "a\n// b"}
        resp = await client.post("/generate", json={})
        assert resp.status_code == 400
