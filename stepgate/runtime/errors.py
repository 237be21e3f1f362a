"""Error taxonomy for the orchestration engine.

Errors fall into two groups:

Fatal (abort the run with a descriptive message):
    - DefinitionError: malformed agent or step registry configuration
    - StepNotFoundError: an unregistered step id was requested
    - WorkerError: the worker process failed or timed out
    - WorktreeError: the isolated git worktree could not be set up

Recoverable (folded into the next prompt as feedback, or surfaced as a
Blocked session):
    - ValidationError: worker output failed schema validation
    - IllegalIntentError: intent not permitted in the current phase
    - ExternalOperationError: tracker read or mutation failed
    - BudgetExhausted: iteration budget reached without completion

Usage:
    from stepgate.runtime.errors import DefinitionError, IllegalIntentError

    try:
        registry = load_step_registry(path)
    except DefinitionError as e:
        print(e.format())
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class StepgateError(Exception):
    """Base class for all engine errors."""

    fatal: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "fatal": self.fatal,
        }


class DefinitionError(StepgateError):
    """Raised when an agent or step definition is malformed.

    Attributes:
        location: File path or "<step_id>.<field>" pointing at the problem.
        fix_action: Short instruction for fixing the definition.
    """

    def __init__(
        self,
        message: str,
        location: Optional[str] = None,
        fix_action: Optional[str] = None,
    ):
        super().__init__(message)
        self.location = location
        self.fix_action = fix_action

    def format(self) -> str:
        lines = [f"{self.location}: {self.message}" if self.location else self.message]
        if self.fix_action:
            lines.append(f"  Fix: {self.fix_action}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["location"] = self.location
        result["fix_action"] = self.fix_action
        return result


class StepNotFoundError(DefinitionError):
    """Raised when a step id is not present in the registry."""

    def __init__(self, step_id: str, available: Optional[List[str]] = None):
        available = sorted(available or [])
        message = f"Step '{step_id}' not found in registry"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(message, location=step_id)
        self.step_id = step_id
        self.available = available


class ValidationError(StepgateError):
    """Worker output did not satisfy the step's schema."""

    fatal = False

    def __init__(self, message: str, errors: Optional[List[str]] = None, raw: str = ""):
        super().__init__(message)
        self.errors = list(errors or [])
        self.raw = raw

    def feedback(self) -> str:
        """Render the error as corrective context for the worker."""
        if not self.errors:
            return self.message
        return self.message + "\n" + "\n".join(f"- {e}" for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["errors"] = self.errors
        return result


class IllegalIntentError(StepgateError):
    """The worker emitted an intent that the current phase does not permit."""

    fatal = False

    def __init__(
        self,
        step_id: str,
        phase: str,
        intent: Optional[str],
        allowed: List[str],
        message: Optional[str] = None,
    ):
        if message is None:
            message = (
                f"Intent '{intent}' is not allowed in {phase} step '{step_id}'. "
                f"Allowed intents: {', '.join(allowed)}"
            )
        super().__init__(message)
        self.step_id = step_id
        self.phase = phase
        self.intent = intent
        self.allowed = list(allowed)

    def feedback(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update(
            {
                "step_id": self.step_id,
                "phase": self.phase,
                "intent": self.intent,
                "allowed": self.allowed,
            }
        )
        return result


class ExternalOperationError(StepgateError):
    """A tracker read or mutation failed."""

    fatal = False

    def __init__(self, operation: str, message: str, work_item: Optional[str] = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.work_item = work_item

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["operation"] = self.operation
        result["work_item"] = self.work_item
        return result


class BudgetExhausted(StepgateError):
    """The session iteration budget was reached without completion."""

    fatal = False

    def __init__(self, iterations: int, budget: int):
        super().__init__(f"Iteration budget exhausted ({iterations}/{budget})")
        self.iterations = iterations
        self.budget = budget


class WorkerError(StepgateError):
    """The worker invocation failed or timed out."""

    def __init__(self, message: str, exit_code: Optional[int] = None, timed_out: bool = False):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class WorktreeError(StepgateError):
    """Creating or removing a session worktree failed."""
