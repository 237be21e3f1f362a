"""Base class for completion handlers.

A completion handler decides, after each accepted iteration, whether the
session is done. Handlers are total and side-effect free: they only read
the session and (for external-state handlers) a snapshot the orchestrator
fetched beforehand.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot, ReasonCode


class CompletionHandler(ABC):
    """Decides when a session is complete.

    Attributes:
        type_name: Config tag selecting this handler.
        needs_snapshot: Whether evaluate() reads external state.
    """

    type_name: str = "base"
    needs_snapshot: bool = False

    @abstractmethod
    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        """Return the verdict for the session's current state."""

    def reason(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> ReasonCode:
        """Reason code reported when evaluate() returns COMPLETED."""
        return ReasonCode.COMPLETED

    def describe(self) -> str:
        """One-line description of the completion criteria, for prompts."""
        return self.type_name
