"""Wrap generated assistant code into a runnable sandbox program.

The user program only declares the assistant (``AiFlowAssistant.create({...})``).
At deploy time it is combined with a fixed runtime header (imports plus the
``callLLM`` helper) and a fixed server suffix (express app with ``/health``
and ``/webhook``). Wrapping already wrapped text yields the same text.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional


HEADER_START = "// ===== FLOWPOD RUNTIME (auto-injected) ====="
HEADER_END = "// ===== END FLOWPOD RUNTIME HEADER ====="
SERVER_START = "// ===== FLOWPOD SERVER (auto-injected) ====="
SERVER_END = "// ===== END FLOWPOD SERVER ====="

SDK_MODULE = "@sipgate/ai-flow-sdk"

DEFAULT_ASSISTANT_NAME = "assistant"

_MAX_IMPORT_LINES = 50

_IMPORT_RE = re.compile(
    r"""^import\s+(?P<type>type\s+)?(?P<clause>.+?)\s*from\s*['"](?P<module>[^'"]+)['"]\s*;?\s*$""",
    re.DOTALL,
)
_SIDE_EFFECT_RE = re.compile(r"""^import\s*['"](?P<module>[^'"]+)['"]\s*;?\s*$""")
_STATEMENT_END_RE = re.compile(r"""(?:\bfrom\s*['"][^'"]+['"]|^\s*import\s*['"][^'"]+['"])\s*;?\s*$""")
_TRAILING_COMMENT_RE = re.compile(r"""\s*(?://[^'"]*|/\*.*?\*/)\s*$""")
_ASSISTANT_RE = re.compile(
    r"""(?:export\s+)?(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*(?::[^=]+)?=\s*AiFlowAssistant\s*\.\s*create\s*\("""
)
_DEFAULT_EXPORT_RE = re.compile(r"""^(\s*)export\s+default\s+(AiFlowAssistant\s*\.\s*create\s*\()""", re.MULTILINE)


@dataclass
class ImportStatement:
    """One parsed ES import statement."""
    module: str
    default: Optional[str] = None
    namespace: Optional[str] = None
    named: list[str] = field(default_factory=list)
    type_only: bool = False

    @property
    def side_effect(self) -> bool:
        return not (self.default or self.namespace or self.named)


def _split_named(inner: str) -> list[str]:
    names = []
    for part in inner.split(","):
        part = " ".join(part.split())
        if part:
            names.append(part)
    return names


def parse_import(statement: str) -> Optional[ImportStatement]:
    """Parse a (possibly multi-line) import statement. Returns None if it isn't one."""
    text = statement.strip()
    m = _SIDE_EFFECT_RE.match(text)
    if m:
        return ImportStatement(module=m.group("module"))
    m = _IMPORT_RE.match(text)
    if not m:
        return None

    stmt = ImportStatement(module=m.group("module"), type_only=bool(m.group("type")))
    clause = m.group("clause").strip()

    if "{" in clause:
        head, _, rest = clause.partition("{")
        inner, _, _ = rest.partition("}")
        stmt.named = _split_named(inner)
        clause = head.strip().rstrip(",").strip()

    for part in [p.strip() for p in clause.split(",") if p.strip()]:
        ns = re.match(r"^\*\s*as\s+([A-Za-z_$][\w$]*)$", part)
        if ns:
            stmt.namespace = ns.group(1)
        elif re.match(r"^[A-Za-z_$][\w$]*$", part):
            stmt.default = part
        else:
            return None
    return stmt


def _code(line: str) -> str:
    """The line without a trailing // or /* */ comment."""
    return _TRAILING_COMMENT_RE.sub("", line)


def split_imports(source: str) -> tuple[list[ImportStatement], str]:
    """Separate top-level import statements from the rest of ``source``."""
    lines = source.splitlines()
    imports: list[ImportStatement] = []
    body: list[str] = []

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = _code(line).strip()
        if re.match(r"^import\b(?!\s*\()", stripped):
            chunk = [_code(line)]
            j = i
            while not _STATEMENT_END_RE.search(" ".join(chunk)) and j + 1 < len(lines) and len(chunk) < _MAX_IMPORT_LINES:
                j += 1
                chunk.append(_code(lines[j]))
            parsed = parse_import("\n".join(chunk)) if _STATEMENT_END_RE.search(" ".join(chunk)) else None
            if parsed is not None:
                imports.append(parsed)
                i = j + 1
                continue
        body.append(line)
        i += 1
    return imports, "\n".join(body)


class _ImportBlock:
    def __init__(self) -> None:
        self._order: list[tuple[str, bool]] = []
        self._merged: dict[tuple[str, bool], ImportStatement] = {}
        self._extra: list[ImportStatement] = []

    def add(self, stmt: ImportStatement) -> None:
        key = (stmt.module, stmt.type_only)
        cur = self._merged.get(key)
        if cur is None:
            self._order.append(key)
            self._merged[key] = ImportStatement(
                module=stmt.module,
                default=stmt.default,
                namespace=stmt.namespace,
                named=list(dict.fromkeys(stmt.named)),
                type_only=stmt.type_only,
            )
            return

        if stmt.default and cur.default and stmt.default != cur.default:
            self._extra.append(ImportStatement(module=stmt.module, default=stmt.default, type_only=stmt.type_only))
        elif stmt.default:
            cur.default = stmt.default

        if stmt.namespace and cur.namespace and stmt.namespace != cur.namespace:
            self._extra.append(ImportStatement(module=stmt.module, namespace=stmt.namespace, type_only=stmt.type_only))
        elif stmt.namespace:
            cur.namespace = stmt.namespace

        for name in stmt.named:
            if name not in cur.named:
                cur.named.append(name)

    def render(self) -> str:
        out: list[str] = []
        for stmt in [self._merged[k] for k in self._order] + self._extra:
            out.extend(_render(stmt))
        return "\n".join(out)


def _render(stmt: ImportStatement) -> list[str]:
    kw = "import type" if stmt.type_only else "import"
    module = json.dumps(stmt.module)
    if stmt.side_effect:
        return [f"import {module};"]

    lines = []
    parts = []
    if stmt.default:
        parts.append(stmt.default)
    if stmt.named:
        parts.append("{ " + ", ".join(stmt.named) + " }")
    if parts:
        lines.append(f"{kw} {', '.join(parts)} from {module};")
    if stmt.namespace:
        lines.append(f"{kw} * as {stmt.namespace} from {module};")
    return lines


def framework_imports() -> list[ImportStatement]:
    return [
        ImportStatement(module=SDK_MODULE, named=["AiFlowAssistant", "BargeInStrategy", "TtsProvider"]),
        ImportStatement(module="express", default="express"),
    ]


def merge_imports(*groups: Iterable[ImportStatement]) -> str:
    """Render one import block, combining bindings imported from the same module."""
    block = _ImportBlock()
    for group in groups:
        for stmt in group:
            block.add(stmt)
    return block.render()


def strip_runtime(source: str) -> str:
    """Remove injected runtime sections, keeping the imports from the header."""
    text = source
    start = text.find(HEADER_START)
    end = text.find(HEADER_END)
    if start != -1 and end > start:
        header = text[start + len(HEADER_START):end]
        header_imports, _ = split_imports(header)
        kept = "\n".join(line for stmt in header_imports for line in _render(stmt))
        text = text[:start] + kept + "\n" + text[end + len(HEADER_END):]

    start = text.find(SERVER_START)
    end = text.find(SERVER_END)
    if start != -1 and end > start:
        text = text[:start] + text[end + len(SERVER_END):]
    return text


def assistant_name(body: str) -> str:
    m = _ASSISTANT_RE.search(body)
    return m.group(1) if m else DEFAULT_ASSISTANT_NAME


def _header(project_id: str, app_url: str, imports: str) -> str:
    return f"""{HEADER_START}
{imports}

const __FLOWPOD_URL__ = {json.dumps(app_url)};
const __PROJECT_ID__ = {json.dumps(project_id)};

interface LLMMessage {{
  role: "system" | "user" | "assistant";
  content: string;
}}

/**
 * Call the LLM to generate a response.
 * @param messages - Array of messages in the conversation
 * @returns The LLM's response text
 */
async function callLLM(messages: LLMMessage[]): Promise<string> {{
  const res = await fetch(`${{__FLOWPOD_URL__}}/api/llm/${{__PROJECT_ID__}}`, {{
    method: "POST",
    headers: {{ "Content-Type": "application/json" }},
    body: JSON.stringify({{ messages }}),
  }});

  if (!res.ok) {{
    const errorData = await res.json().catch(() => ({{}}));
    throw new Error(`LLM call failed: ${{res.status}} - ${{errorData.error || "Unknown error"}}`);
  }}

  const data = await res.json();
  return data.response;
}}
{HEADER_END}"""


def _server(assistant: str, port: int) -> str:
    return f"""{SERVER_START}
const app = express();
app.use(express.json());

app.get("/health", (req, res) => res.json({{ status: "ok" }}));
app.post("/webhook", {assistant}.express());

app.listen({int(port)}, "0.0.0.0", () => {{
  console.log("Server running on port {int(port)}");
}});
{SERVER_END}"""


def wrap_source(project_id: str, user_source: str, *, app_url: str = "http://localhost:3000", port: int = 3000) -> str:
    """Build the final program deployed into the sandbox."""
    text = strip_runtime(user_source or "")
    text = _DEFAULT_EXPORT_RE.sub(rf"\1const {DEFAULT_ASSISTANT_NAME} = \2", text)
    user_imports, body = split_imports(text)
    body = body.strip("\n")

    imports = merge_imports(framework_imports(), user_imports)
    return "\n\n".join([
        _header(project_id, app_url, imports),
        body,
        _server(assistant_name(body), port),
    ]) + "\n"
