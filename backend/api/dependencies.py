"""
Dependency injection for the API service.
Provides the sync runtime to route handlers.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from scheduler.runtime import SyncRuntime

# Module-level singleton, initialized at startup
_runtime: "SyncRuntime | None" = None


def init_dependencies(runtime: "SyncRuntime") -> None:
    """Initialize the module-level runtime. Called once at startup."""
    global _runtime
    _runtime = runtime


def reset_dependencies() -> None:
    global _runtime
    _runtime = None


def get_runtime() -> "SyncRuntime":
    """FastAPI dependency: returns the shared SyncRuntime."""
    if _runtime is None:
        raise RuntimeError("SyncRuntime not initialized; call init_dependencies first")
    return _runtime
