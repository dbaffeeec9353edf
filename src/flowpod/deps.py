"""Static detection of npm packages required by generated program text."""

import re
from typing import Iterable, Optional

from .config import FRAMEWORK_DEPENDENCIES


NODE_BUILTINS = frozenset({
    "assert", "async_hooks", "buffer", "child_process", "cluster", "console",
    "constants", "crypto", "dgram", "diagnostics_channel", "dns", "domain",
    "events", "fs", "http", "http2", "https", "inspector", "module", "net",
    "os", "path", "perf_hooks", "process", "punycode", "querystring",
    "readline", "repl", "stream", "string_decoder", "sys", "timers", "tls",
    "trace_events", "tty", "url", "util", "v8", "vm", "wasi", "worker_threads",
    "zlib",
})

PREINSTALLED_PACKAGES = frozenset(FRAMEWORK_DEPENDENCIES)

_SPECIFIER_PATTERNS = [
    # import x from "m" / import { a } from "m" / export * from "m"
    re.compile(r"""^\s*(?:import|export)\b[^'"`]*?\bfrom\s*['"]([^'"]+)['"]"""),
    # closing line of a multi-line import: } from "m";
    re.compile(r"""^\s*}\s*from\s*['"]([^'"]+)['"]"""),
    # side-effect import "m"
    re.compile(r"""^\s*import\s*['"]([^'"]+)['"]"""),
    # dynamic import("m")
    re.compile(r"""\bimport\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
    # require("m")
    re.compile(r"""\brequire\s*\(\s*['"]([^'"]+)['"]\s*\)"""),
]


def is_local_specifier(spec: str) -> bool:
    return spec.startswith((".", "/", "~", "#")) or "://" in spec


def is_builtin(spec: str) -> bool:
    if spec.startswith(("node:", "bun:")):
        return True
    return spec.split("/", 1)[0] in NODE_BUILTINS


def package_name(spec: str) -> Optional[str]:
    """Reduce a module specifier to the name of the package that provides it.

    ``@org/pkg/deep/path`` becomes ``@org/pkg``; ``lodash/fp`` becomes ``lodash``.
    Returns None for specifiers that cannot name a package.
    """
    spec = spec.strip()
    if not spec:
        return None
    parts = spec.split("/")
    if spec.startswith("@"):
        if len(parts) < 2 or not parts[0][1:] or not parts[1]:
            return None
        return f"{parts[0]}/{parts[1]}"
    return parts[0]


def iter_specifiers(source: str) -> Iterable[str]:
    for line in source.splitlines():
        for pattern in _SPECIFIER_PATTERNS:
            for match in pattern.finditer(line):
                yield match.group(1)


def detect_dependencies(source: str, preinstalled: Optional[Iterable[str]] = None) -> list[str]:
    """Return the sorted external packages ``source`` imports or requires.

    Relative paths, Node builtins and preinstalled framework packages are left out.
    """
    if not isinstance(source, str) or not source:
        return []
    skip = PREINSTALLED_PACKAGES if preinstalled is None else frozenset(preinstalled)

    found: set[str] = set()
    for spec in iter_specifiers(source):
        if is_local_specifier(spec) or is_builtin(spec):
            continue
        name = package_name(spec)
        if not name or name in skip:
            continue
        found.add(name)
    return sorted(found)


def build_manifest(
    detected: Iterable[str],
    framework_dependencies: Optional[dict[str, str]] = None,
    name: str = "flowpod-agent",
) -> dict:
    """Compose package.json content: framework set plus detected packages."""
    deps = dict(framework_dependencies if framework_dependencies is not None else FRAMEWORK_DEPENDENCIES)
    for pkg in detected:
        deps.setdefault(pkg, "latest")
    return {
        "name": name,
        "version": "1.0.0",
        "private": True,
        "dependencies": dict(sorted(deps.items())),
    }
