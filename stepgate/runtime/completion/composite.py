"""Completion combining several handlers."""

from __future__ import annotations

from typing import List, Optional

from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot, ReasonCode

OPERATORS = ("and", "or", "first")


class CompositeHandler(CompletionHandler):
    """Combines child handlers.

    Operators:
        and:   Completed when every child is Completed
        or:    Completed when any child is Completed
        first: the verdict of the first child that is not Continue

    A Blocked child blocks the composite under every operator.
    """

    type_name = "composite"

    def __init__(self, operator: str, handlers: List[CompletionHandler]):
        if operator not in OPERATORS:
            raise ValueError(f"Unknown operator '{operator}' (valid: {', '.join(OPERATORS)})")
        if not handlers:
            raise ValueError("composite handler needs at least one condition")
        self.operator = operator
        self.handlers = list(handlers)
        self.needs_snapshot = any(h.needs_snapshot for h in self.handlers)

    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        verdicts = [h.evaluate(session, snapshot) for h in self.handlers]
        if CompletionVerdict.BLOCKED in verdicts:
            return CompletionVerdict.BLOCKED
        if self.operator == "and":
            done = all(v == CompletionVerdict.COMPLETED for v in verdicts)
            return CompletionVerdict.COMPLETED if done else CompletionVerdict.CONTINUE
        # "or" and "first" agree on the verdict; they differ in which child's reason is reported
        done = any(v == CompletionVerdict.COMPLETED for v in verdicts)
        return CompletionVerdict.COMPLETED if done else CompletionVerdict.CONTINUE

    def reason(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> ReasonCode:
        completed = [h for h in self.handlers if h.evaluate(session, snapshot) == CompletionVerdict.COMPLETED]
        if not completed:
            return ReasonCode.COMPLETED
        if self.operator == "and":
            reasons = {h.reason(session, snapshot) for h in completed}
            return ReasonCode.COMPLETED if ReasonCode.COMPLETED in reasons else reasons.pop()
        return completed[0].reason(session, snapshot)

    def describe(self) -> str:
        joiner = " and " if self.operator == "and" else " or "
        return joiner.join(h.describe() for h in self.handlers)
