"""
types - Core type definitions for the orchestration runtime.

All types are dataclasses or ``str`` enums with explicit serdes helpers so
sessions and events can be persisted as JSON and resumed.

Usage:
    from stepgate.runtime.types import (
        Phase, StepKind, Intent, CompletionVerdict, SessionStatus, ReasonCode,
        WorkItemKind, BoundaryActionType,
        WorkItemRef, ExecutionSession, HistoryEntry, RunResult, SessionEvent,
        StructuredOutput, ExternalSnapshot, BoundaryAction, BoundaryRecord,
        normalize_intent, step_kind_for_phase, generate_session_id,
        session_to_dict, session_from_dict,
    )
"""

from __future__ import annotations

from ._ids import SessionId, StepId, generate_session_id
from .outputs import (
    DEFAULT_INTENT_FIELD,
    BoundaryAction,
    BoundaryRecord,
    ExternalSnapshot,
    StructuredOutput,
    boundary_record_from_dict,
    boundary_record_to_dict,
    get_path,
)
from .phases import (
    INTENT_ALIASES,
    PHASE_ALLOWED_INTENTS,
    PHASE_STEP_KIND,
    PHASES,
    BoundaryActionType,
    CompletionVerdict,
    Intent,
    Phase,
    ReasonCode,
    SessionStatus,
    StepKind,
    WorkItemKind,
    normalize_intent,
    step_kind_for_phase,
)
from .session import (
    ExecutionSession,
    HistoryEntry,
    RunResult,
    SessionEvent,
    WorkItemRef,
    history_entry_from_dict,
    history_entry_to_dict,
    run_result_to_dict,
    session_event_from_dict,
    session_event_to_dict,
    session_from_dict,
    session_to_dict,
    work_item_from_dict,
    work_item_to_dict,
)

__all__ = [
    "SessionId",
    "StepId",
    "generate_session_id",
    "DEFAULT_INTENT_FIELD",
    "BoundaryAction",
    "BoundaryRecord",
    "ExternalSnapshot",
    "StructuredOutput",
    "boundary_record_from_dict",
    "boundary_record_to_dict",
    "get_path",
    "INTENT_ALIASES",
    "PHASE_ALLOWED_INTENTS",
    "PHASE_STEP_KIND",
    "PHASES",
    "BoundaryActionType",
    "CompletionVerdict",
    "Intent",
    "Phase",
    "ReasonCode",
    "SessionStatus",
    "StepKind",
    "WorkItemKind",
    "normalize_intent",
    "step_kind_for_phase",
    "ExecutionSession",
    "HistoryEntry",
    "RunResult",
    "SessionEvent",
    "WorkItemRef",
    "history_entry_from_dict",
    "history_entry_to_dict",
    "run_result_to_dict",
    "session_event_from_dict",
    "session_event_to_dict",
    "session_from_dict",
    "session_to_dict",
    "work_item_from_dict",
    "work_item_to_dict",
]
