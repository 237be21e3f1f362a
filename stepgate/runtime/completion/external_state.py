"""Completion when the external work-item reaches a target state."""

from __future__ import annotations

from typing import Optional

from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot

# States accepted for a "closed" target
_CLOSED_EQUIVALENTS = frozenset({"CLOSED", "MERGED"})


class ExternalStateHandler(CompletionHandler):
    """Completed once the snapshot shows the target state.

    A missing or unknown snapshot means Continue, never Completed.
    """

    type_name = "externalState"
    needs_snapshot = True

    def __init__(self, target_state: str = "closed"):
        self.target_state = target_state.upper()

    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        if snapshot is None or not snapshot.known:
            return CompletionVerdict.CONTINUE
        state = snapshot.state.upper()
        if state == self.target_state:
            return CompletionVerdict.COMPLETED
        if self.target_state == "CLOSED" and state in _CLOSED_EQUIVALENTS:
            return CompletionVerdict.COMPLETED
        return CompletionVerdict.CONTINUE

    def describe(self) -> str:
        return f"the work-item is {self.target_state.lower()}"
