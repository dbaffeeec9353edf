"""Sandbox providers for flowpod."""

from .base import BackgroundProcess, CommandResult, SandboxHandle, SandboxProvider
from .memory import MemoryProvider, MemorySandbox


def get_provider(name: str, api_key: str | None = None) -> SandboxProvider:
    """Provider factory by name ("e2b" or "memory")."""
    name = (name or "e2b").strip().lower()
    if name == "memory":
        return MemoryProvider()
    if name == "e2b":
        from .e2b import E2BProvider

        return E2BProvider(api_key=api_key)
    raise ValueError(f"Unknown sandbox provider: {name}")


__all__ = [
    "BackgroundProcess",
    "CommandResult",
    "MemoryProvider",
    "MemorySandbox",
    "SandboxHandle",
    "SandboxProvider",
    "get_provider",
]
