"""Abstract base classes for tool-calling backends.

A backend turns one instruction into a stream of raw JSON events.  The
execution primitive only ever talks to this interface, so the Claude Code
CLI (or a scripted stand-in during tests) can be swapped freely.
"""

from __future__ import annotations

import abc
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Any


class BackendRun(abc.ABC):
    """One in-flight backend call.

    Iterating yields raw event dicts exactly once.  After iteration ends the
    status attributes describe how the call finished.
    """

    exit_code: int = -1
    timed_out: bool = False
    cancelled: bool = False
    stderr_text: str = ""

    @abc.abstractmethod
    def __iter__(self) -> Iterator[dict[str, Any]]:
        """Yield raw backend events as they arrive."""

    def close(self) -> None:  # noqa: B027 - optional hook
        """Release process resources early (e.g. when the consumer bails out)."""


class AgentBackend(abc.ABC):
    """Common interface for tool-calling backends."""

    #: Human-readable name used in logs (e.g. "Claude Code").
    name: str = "base"

    @abc.abstractmethod
    def start(
        self,
        work_dir: str | Path,
        instruction: str,
        *,
        timeout_seconds: float,
        cancel_event: threading.Event | None = None,
    ) -> BackendRun:
        """Begin executing *instruction* inside *work_dir*.

        Parameters
        ----------
        work_dir:
            Working directory the backend operates in.
        instruction:
            Natural-language directive.
        timeout_seconds:
            Wall-clock ceiling for the whole call.  ``0`` disables it.
        cancel_event:
            When set, the call is abandoned as soon as possible.
        """


# ── Registry ──────────────────────────────────────────────────────

_REGISTRY: dict[str, type[AgentBackend]] = {}


def register_backend(key: str, cls: type[AgentBackend]) -> None:
    """Register a backend class under a lookup key."""
    normalized_key = (key or "").strip()
    if not normalized_key:
        raise ValueError("Backend key must be a non-empty string")
    if not isinstance(cls, type) or not issubclass(cls, AgentBackend):
        raise TypeError("Registered backend must be an AgentBackend subclass")

    existing = _REGISTRY.get(normalized_key)
    if existing is not None and existing is not cls:
        raise ValueError(
            f"Backend '{normalized_key}' is already registered with {existing.__name__}"
        )

    _REGISTRY[normalized_key] = cls


def get_backend_class(key: str) -> type[AgentBackend]:
    """Look up a registered backend class by key."""
    normalized_key = (key or "").strip()
    if normalized_key not in _REGISTRY:
        available = ", ".join(sorted(_REGISTRY)) or "(none)"
        raise KeyError(f"Unknown backend '{normalized_key}'. Available: {available}")
    return _REGISTRY[normalized_key]


def list_backends() -> list[str]:
    """Return all registered backend keys."""
    return sorted(_REGISTRY)
