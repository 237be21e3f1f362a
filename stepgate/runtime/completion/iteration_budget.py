"""Completion after a fixed number of iterations."""

from __future__ import annotations

from typing import Optional

from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot, ReasonCode


class IterationBudgetHandler(CompletionHandler):
    """Stops the session once ``max_iterations`` iterations were accepted.

    Reaching the budget ends the run, but the run is reported as
    BudgetExhausted rather than Completed: running out of iterations says
    nothing about whether the work got done.
    """

    type_name = "iterationBudget"

    def __init__(self, max_iterations: int):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.max_iterations = max_iterations

    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        if session.iteration_count >= self.max_iterations:
            return CompletionVerdict.COMPLETED
        return CompletionVerdict.CONTINUE

    def reason(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> ReasonCode:
        return ReasonCode.BUDGET_EXHAUSTED

    def describe(self) -> str:
        return f"{self.max_iterations} iterations have run"
