"""Phase, intent and verdict enumerations.

The phase set and the intent set are fixed. Workers emit intents as plain
strings; ``normalize_intent`` maps the aliases they commonly produce onto
the canonical four.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional


class Phase(str, Enum):
    """Phase of a step, encoded as the first segment of its step id."""

    INITIAL = "initial"
    CONTINUATION = "continuation"
    VERIFICATION = "verification"
    CLOSURE = "closure"


class StepKind(str, Enum):
    """Coarse step classification used for tool policy and intent rules."""

    WORK = "work"
    VERIFICATION = "verification"
    CLOSURE = "closure"


class Intent(str, Enum):
    """Transition directive emitted by a worker in its structured output."""

    NEXT = "next"
    REPEAT = "repeat"
    HANDOFF = "handoff"
    CLOSING = "closing"


class CompletionVerdict(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class SessionStatus(str, Enum):
    """Lifecycle status of an execution session."""

    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class ReasonCode(str, Enum):
    """Why a run ended. Only COMPLETED maps to a zero exit code."""

    COMPLETED = "Completed"
    BUDGET_EXHAUSTED = "BudgetExhausted"
    FORMAT_EXHAUSTED = "FormatExhausted"
    EXTERNAL_OPERATION_ERROR = "ExternalOperationError"
    CANCELLED = "Cancelled"
    ERROR = "Error"


class WorkItemKind(str, Enum):
    ISSUE = "issue"
    PROJECT = "project"
    PULL_REQUEST = "pr"
    NONE = "none"


class BoundaryActionType(str, Enum):
    """Side effect the closure step may request from the boundary hook."""

    CLOSE = "close"
    LABEL_ONLY = "label-only"
    LABEL_AND_CLOSE = "label-and-close"
    MERGE = "merge"


PHASES = tuple(p.value for p in Phase)

PHASE_STEP_KIND: Dict[Phase, StepKind] = {
    Phase.INITIAL: StepKind.WORK,
    Phase.CONTINUATION: StepKind.WORK,
    Phase.VERIFICATION: StepKind.VERIFICATION,
    Phase.CLOSURE: StepKind.CLOSURE,
}

# Intents a phase may emit. Anything else is an IllegalIntentError.
PHASE_ALLOWED_INTENTS: Dict[Phase, FrozenSet[Intent]] = {
    Phase.INITIAL: frozenset({Intent.NEXT, Intent.REPEAT, Intent.HANDOFF}),
    Phase.CONTINUATION: frozenset({Intent.NEXT, Intent.REPEAT, Intent.HANDOFF}),
    Phase.VERIFICATION: frozenset({Intent.NEXT, Intent.REPEAT, Intent.HANDOFF}),
    Phase.CLOSURE: frozenset({Intent.REPEAT, Intent.CLOSING}),
}

INTENT_ALIASES: Dict[str, Intent] = {
    "continue": Intent.NEXT,
    "pass": Intent.NEXT,
    "retry": Intent.REPEAT,
    "wait": Intent.REPEAT,
    "fail": Intent.REPEAT,
    "done": Intent.CLOSING,
    "finished": Intent.CLOSING,
}


def step_kind_for_phase(phase: Phase) -> StepKind:
    return PHASE_STEP_KIND[phase]


def normalize_intent(raw: Optional[str]) -> Optional[Intent]:
    """Map a worker-supplied intent string onto an Intent.

    Args:
        raw: Value of the step's intent field, e.g. "next" or "done".

    Returns:
        The canonical Intent, or None if the value is missing or unknown.

    Examples:
        >>> normalize_intent("Continue")
        <Intent.NEXT: 'next'>
        >>> normalize_intent("explode") is None
        True
    """
    if raw is None:
        return None
    value = str(raw).strip().lower()
    try:
        return Intent(value)
    except ValueError:
        return INTENT_ALIASES.get(value)
