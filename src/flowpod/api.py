from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.responses import Response, StreamingResponse

from .config import OrchestratorConfig, load_config
from .errors import GenerationError, ProviderError, SandboxNotFoundError
from .generation import CodeGenerator, HttpCodeGenerator
from .models import SandboxState
from .orchestrator import Orchestrator
from .store import JsonFileProjectStore

logger = logging.getLogger("flowpod.api")

FALLBACK_INACTIVE = "This service is not active right now. Please try again later."
FALLBACK_UPSTREAM_ERROR = "I'm sorry, a technical problem occurred. Please try again later."
FALLBACK_UNREACHABLE = "I'm sorry, the service is currently unreachable. Please try again later."
FALLBACK_UNEXPECTED = "An unexpected error occurred. Please try again later."
FALLBACK_UNKNOWN_NUMBER = "This phone number is not connected to an assistant."

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


def fallback_action(text: str) -> Dict[str, Any]:
    """Structured action telling the caller to speak ``text`` and hang up."""
    return {
        "type": "speak",
        "text": text,
        "barge_in": {"strategy": "none"},
        "end_of_conversation": True,
    }


def _validate_project_id(project_id: str) -> str:
    if not project_id:
        raise HTTPException(status_code=400, detail="project_id required")
    if ".." in project_id or not _PROJECT_ID_RE.match(project_id):
        raise HTTPException(status_code=400, detail="invalid project_id")
    return project_id


class ProjectRequest(BaseModel):
    project_id: str


class DeployRequest(BaseModel):
    project_id: str
    source: Optional[str] = None


class StatusBulkRequest(BaseModel):
    project_ids: List[str]


class GenerateRequest(BaseModel):
    prompt: Optional[str] = None
    code: Optional[str] = None
    instruction: Optional[str] = None


class ApiSettings:
    def __init__(self):
        default_store = tempfile.gettempdir() + "/flowpod/projects.json"
        self.host = os.environ.get("FLOWPOD_API_HOST", "0.0.0.0")
        self.port = int(os.environ.get("FLOWPOD_API_PORT", "8800"))
        self.require_token = os.environ.get("FLOWPOD_REQUIRE_TOKEN", "").lower() in {"1", "true", "yes"}
        self.token = os.environ.get("FLOWPOD_API_TOKEN") or ""
        self.store_path = Path(os.environ.get("FLOWPOD_STORE_PATH", default_store))
        self.provider = os.environ.get("FLOWPOD_PROVIDER", "e2b")
        self.config_path = os.environ.get("FLOWPOD_CONFIG") or None
        self.generation_url = os.environ.get("FLOWPOD_GENERATION_URL") or None
        self.generation_token = os.environ.get("FLOWPOD_GENERATION_TOKEN") or None
        self.webhook_timeout_s = float(os.environ.get("FLOWPOD_WEBHOOK_TIMEOUT_S", "10"))


def create_api(
    *,
    orchestrator: Orchestrator,
    settings: ApiSettings,
    generator: Optional[CodeGenerator] = None,
    webhook_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    app = FastAPI(title="flowpod-api")
    store = orchestrator.store

    def require_token(x_flowpod_token: Optional[str] = Header(default=None)) -> None:
        if not settings.require_token:
            return
        if not settings.token:
            raise HTTPException(status_code=500, detail="api token not configured")
        if not x_flowpod_token or x_flowpod_token != settings.token:
            raise HTTPException(status_code=401, detail="unauthorized")

    @app.exception_handler(SandboxNotFoundError)
    async def sandbox_not_found(_request: Request, exc: SandboxNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ProviderError)
    async def provider_error(_request: Request, exc: ProviderError) -> JSONResponse:
        logger.error(f"Provider error: {exc}")
        return JSONResponse(status_code=502, content={"detail": f"sandbox provider error: {exc}"})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True}

    @app.post("/sandbox/create", dependencies=[Depends(require_token)])
    async def create_sandbox(req: ProjectRequest) -> Dict[str, Any]:
        project_id = _validate_project_id(req.project_id)
        info = await orchestrator.create_sandbox(project_id)
        return {"external_id": info.external_id, "endpoint": info.endpoint, "project_id": project_id}

    def _source_for(req: DeployRequest) -> str:
        if req.source and req.source.strip():
            return req.source
        rec = store.get(req.project_id)
        if rec and rec.current_source:
            return rec.current_source
        raise HTTPException(status_code=400, detail="source required")

    @app.post("/sandbox/deploy", dependencies=[Depends(require_token)])
    async def deploy(req: DeployRequest) -> Dict[str, Any]:
        project_id = _validate_project_id(req.project_id)
        result = await orchestrator.deploy(project_id, _source_for(req))
        return {**result.to_dict(), "project_id": project_id}

    @app.post("/sandbox/deploy/stream", dependencies=[Depends(require_token)])
    async def deploy_stream(req: DeployRequest) -> StreamingResponse:
        project_id = _validate_project_id(req.project_id)
        source = _source_for(req)

        q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue()

        def on_log(msg: str, level: str = "INFO") -> None:
            q.put_nowait({"type": "log", "level": level, "message": msg})

        async def run_job() -> None:
            try:
                result = await orchestrator.deploy(project_id, source, on_log=on_log)
                await q.put({"type": "result", "result": {**result.to_dict(), "project_id": project_id}})
            except SandboxNotFoundError as e:
                await q.put({"type": "error", "status": 404, "message": str(e)})
            except ProviderError as e:
                await q.put({"type": "error", "status": 502, "message": f"sandbox provider error: {e}"})
            finally:
                await q.put({"type": "eof"})

        task = asyncio.create_task(run_job())

        async def stream():
            try:
                while True:
                    item = await q.get()
                    if item.get("type") == "eof":
                        break
                    yield (json.dumps(item, ensure_ascii=False) + "\n").encode("utf-8")
            finally:
                if not task.done():
                    task.cancel()

        return StreamingResponse(
            stream(),
            media_type="application/x-ndjson",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/sandbox/status/{project_id}", dependencies=[Depends(require_token)])
    async def status(project_id: str) -> Dict[str, Any]:
        project_id = _validate_project_id(project_id)
        return (await orchestrator.status(project_id)).to_dict()

    @app.post("/sandbox/status-bulk", dependencies=[Depends(require_token)])
    async def status_bulk(req: StatusBulkRequest) -> Dict[str, Any]:
        valid = [pid for pid in req.project_ids if pid and _PROJECT_ID_RE.match(pid) and ".." not in pid]
        results = await orchestrator.status_bulk(valid)
        statuses = {pid: SandboxState.STOPPED.value for pid in req.project_ids}
        statuses.update({pid: res.state.value for pid, res in results.items()})
        return {"statuses": statuses}

    @app.get("/sandbox/logs/{project_id}", dependencies=[Depends(require_token)])
    async def logs(project_id: str) -> Dict[str, Any]:
        project_id = _validate_project_id(project_id)
        return (await orchestrator.logs(project_id)).to_dict()

    @app.post("/sandbox/terminate", dependencies=[Depends(require_token)])
    async def terminate(req: ProjectRequest) -> Dict[str, Any]:
        project_id = _validate_project_id(req.project_id)
        killed = await orchestrator.terminate(project_id)
        return {"ok": True, "killed": killed}

    @app.post("/sandbox/recover/{project_id}", dependencies=[Depends(require_token)])
    async def recover(project_id: str) -> Dict[str, Any]:
        project_id = _validate_project_id(project_id)
        return (await orchestrator.check_and_recover(project_id)).to_dict()

    @app.get("/sandbox/events/{project_id}", dependencies=[Depends(require_token)])
    async def events(project_id: str, limit: int = 50) -> Dict[str, Any]:
        project_id = _validate_project_id(project_id)
        items = store.events(project_id, limit=max(1, min(limit, 500)))
        return {"events": [{"type": e.event_type, "data": e.data, "created_at": e.created_at} for e in items]}

    async def forward_to_sandbox(project_id: str, body: Dict[str, Any]) -> Response:
        rec = store.get(project_id)
        endpoint = rec.public_endpoint if rec else None
        if not endpoint:
            logger.info(f"[{project_id}] Webhook received but no sandbox is running")
            return JSONResponse(fallback_action(FALLBACK_INACTIVE))
        try:
            async with httpx.AsyncClient(timeout=settings.webhook_timeout_s, transport=webhook_transport) as client:
                resp = await client.post(endpoint, json=body)
        except httpx.HTTPError as e:
            logger.warning(f"[{project_id}] Failed to forward webhook to sandbox: {type(e).__name__}: {e}")
            return JSONResponse(fallback_action(FALLBACK_UNREACHABLE))
        if resp.status_code >= 400:
            logger.warning(f"[{project_id}] Sandbox returned {resp.status_code}: {resp.text[:500]}")
            return JSONResponse(fallback_action(FALLBACK_UPSTREAM_ERROR))
        return Response(content=resp.content, status_code=resp.status_code, media_type="application/json")

    def _record(project_id: str, body: Dict[str, Any]) -> None:
        try:
            store.record_event(project_id, str(body.get("type") or "unknown"), body)
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"[{project_id}] Could not record webhook event: {e}")

    async def _read_event(request: Request) -> Optional[Dict[str, Any]]:
        try:
            body = await request.json()
        except ValueError:
            return None
        return body if isinstance(body, dict) else None

    @app.post("/webhook/{project_id}")
    async def webhook(project_id: str, request: Request) -> Response:
        body = await _read_event(request)
        if body is None or not _PROJECT_ID_RE.match(project_id or ""):
            return JSONResponse(fallback_action(FALLBACK_UNEXPECTED))
        _record(project_id, body)
        return await forward_to_sandbox(project_id, body)

    @app.get("/webhook/{project_id}")
    async def webhook_info(project_id: str) -> Dict[str, Any]:
        return {
            "status": "ok",
            "project_id": project_id,
            "message": "Webhook endpoint is active. Send POST requests with call events.",
        }

    @app.post("/webhook")
    async def central_webhook(request: Request) -> Response:
        body = await _read_event(request)
        if body is None:
            return JSONResponse(fallback_action(FALLBACK_UNEXPECTED))
        session = body.get("session") if isinstance(body.get("session"), dict) else {}
        number = body.get("to_phone_number") or session.get("to_phone_number") or body.get("to")
        rec = store.find_by_phone_number(str(number or ""))
        if rec is None:
            logger.info(f"Webhook for unknown number {number!r}")
            return JSONResponse(fallback_action(FALLBACK_UNKNOWN_NUMBER))
        _record(rec.project_id, body)
        return await forward_to_sandbox(rec.project_id, body)

    @app.post("/generate", dependencies=[Depends(require_token)])
    async def generate(req: GenerateRequest) -> Dict[str, Any]:
        if generator is None:
            raise HTTPException(status_code=503, detail="code generation not configured")
        try:
            if req.code and req.instruction:
                code = await generator.refine(req.code, req.instruction)
            elif req.prompt:
                code = await generator.generate(req.prompt)
            else:
                raise HTTPException(status_code=400, detail="prompt or code+instruction required")
        except GenerationError as e:
            raise HTTPException(status_code=502, detail=str(e))
        return {"code": code}

    return app


def create_app() -> FastAPI:
    settings = ApiSettings()
    config = load_config(settings.config_path) if settings.config_path else OrchestratorConfig.from_env()
    store = JsonFileProjectStore(settings.store_path)
    orchestrator = Orchestrator.from_config(config, store=store, provider_name=settings.provider)
    generator = None
    if settings.generation_url:
        generator = HttpCodeGenerator(settings.generation_url, token=settings.generation_token)
    return create_api(orchestrator=orchestrator, settings=settings, generator=generator)


def main() -> None:
    import uvicorn

    settings = ApiSettings()
    uvicorn.run(create_app(), host=settings.host, port=settings.port)
