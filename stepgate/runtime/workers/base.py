"""
base.py - Abstract base class for worker engines.

Workers are opaque: the orchestrator sends a prompt with a schema and tool
permissions, and consumes only the textual or structured reply.

Workers do NOT own:
- Step resolution or transitions (that's the orchestrator's job)
- Output validation (that's the output validator's job)
- Work-item mutations (that's the boundary hook's job)
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import WorkerRequest, WorkerResult


class WorkerEngine(ABC):
    """Abstract base class for worker engines."""

    @property
    @abstractmethod
    def engine_id(self) -> str:
        """Unique identifier for this engine (e.g., 'claude-cli', 'stub')."""
        ...

    @abstractmethod
    def run(self, request: WorkerRequest) -> WorkerResult:
        """Invoke the worker once and block until it replies or times out.

        Implementations report failures through WorkerResult.status rather
        than raising.
        """
        ...
