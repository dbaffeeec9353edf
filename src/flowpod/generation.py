"""
Client side of the code generation service.

The service turns a natural-language description into assistant program
text, or applies an instruction to existing text. flowpod only consumes it.
"""

import re
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

import httpx

from .errors import GenerationError

_FENCE_RE = re.compile(r"```(?:ts|typescript|js|javascript|tsx)?[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_code_block(text: str) -> str:
    """Return the first fenced code block in ``text``, or the stripped text."""
    m = _FENCE_RE.search(text or "")
    if m:
        return m.group(1).strip("\n")
    return (text or "").strip()


class CodeGenerator(ABC):
    @abstractmethod
    async def generate(self, prompt: str) -> str:
        pass

    @abstractmethod
    async def refine(self, code: str, instruction: str) -> str:
        pass

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        yield await self.generate(prompt)


class HttpCodeGenerator(CodeGenerator):
    """Talks to a generation service over HTTP.

    ``POST {base_url}/generate`` with ``{"prompt"}`` and ``POST
    {base_url}/refine`` with ``{"code", "instruction"}`` both answer
    ``{"code": "..."}``. ``POST {base_url}/generate/stream`` answers with
    plain text chunks.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _post_code(self, path: str, payload: dict) -> str:
        try:
            async with self._client() as client:
                resp = await client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise GenerationError(f"generation service unreachable: {type(e).__name__}: {e}") from e
        if resp.status_code >= 400:
            raise GenerationError(f"generation service returned {resp.status_code}: {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationError("generation service returned invalid JSON") from e
        code = extract_code_block(str(data.get("code") or data.get("response") or ""))
        if not code:
            raise GenerationError("generation service returned no code")
        return code

    async def generate(self, prompt: str) -> str:
        if not (prompt or "").strip():
            raise GenerationError("prompt is empty")
        return await self._post_code("/generate", {"prompt": prompt})

    async def refine(self, code: str, instruction: str) -> str:
        if not (instruction or "").strip():
            raise GenerationError("instruction is empty")
        return await self._post_code("/refine", {"code": code, "instruction": instruction})

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        try:
            async with self._client() as client:
                async with client.stream("POST", "/generate/stream", json={"prompt": prompt}) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise GenerationError(f"generation service returned {resp.status_code}: {body[:200]}")
                    async for chunk in resp.aiter_text():
                        if chunk:
                            yield chunk
        except httpx.HTTPError as e:
            raise GenerationError(f"generation stream failed: {type(e).__name__}: {e}") from e
