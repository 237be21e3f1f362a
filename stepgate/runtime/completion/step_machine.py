"""Completion when the step flow reaches a terminal node."""

from __future__ import annotations

from typing import Optional

from stepgate.config.step_registry import StepRegistry
from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot


class StepMachineHandler(CompletionHandler):
    """Completed when a terminal transition was taken on a terminal step."""

    type_name = "stepMachine"

    def __init__(self, registry: StepRegistry):
        self._registry = registry

    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        if session.terminal and self._registry.has(session.step_id) and self._registry.is_terminal(session.step_id):
            return CompletionVerdict.COMPLETED
        return CompletionVerdict.CONTINUE

    def describe(self) -> str:
        return "the closure step reports closing"
