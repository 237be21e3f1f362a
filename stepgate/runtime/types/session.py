"""Session types: the resumable execution cursor and its history.

An ExecutionSession is a plain serializable value. The orchestrator owns
the only mutable copy while a run is in progress; storage persists it
after every iteration so a later run can resume from the same cursor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ._ids import SessionId, StepId, _generate_event_id
from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .outputs import BoundaryRecord, boundary_record_from_dict, boundary_record_to_dict
from .phases import Phase, ReasonCode, SessionStatus, WorkItemKind


@dataclass(frozen=True)
class WorkItemRef:
    """Reference to the external work-item a session targets.

    Attributes:
        kind: issue, project, pr, or none for budget-only sessions.
        id: Tracker identifier (issue number, project number).
        repo: Optional "owner/name" qualifier passed to the tracker.
    """

    kind: WorkItemKind = WorkItemKind.NONE
    id: Optional[str] = None
    repo: Optional[str] = None

    @property
    def key(self) -> str:
        """Stable key used for worktree names and session lookup."""
        if self.kind == WorkItemKind.NONE or self.id is None:
            return "none"
        return f"{self.kind.value}-{self.id}"

    def __str__(self) -> str:
        if self.kind == WorkItemKind.NONE:
            return "(no work-item)"
        if self.repo:
            return f"{self.kind.value} {self.repo}#{self.id}"
        return f"{self.kind.value} #{self.id}"


@dataclass
class HistoryEntry:
    """One accepted iteration."""

    iteration: int
    step_id: StepId
    phase: Phase
    intent: str
    next_step_id: Optional[StepId] = None
    summary: str = ""
    status: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class ExecutionSession:
    """Resumable state of one orchestration loop.

    Attributes:
        session_id: Unique session identifier.
        agent_name: Agent definition this session runs.
        work_item: The external work-item being driven.
        step_id: The single active step.
        phase: Phase of the active step.
        iteration_count: Accepted iterations so far. Never decreases.
        iteration_budget: Hard cap on iterations for this session.
        retry_count: Consecutive format/intent retries since the last
            accepted output. Independent of iteration_count.
        history: Append-only record of accepted iterations.
        feedback: Corrective messages for the next prompt.
        format_error: Last validation error, when the next prompt must be
            the step's format-error variant.
        last_output: Data of the latest accepted structured output.
        boundary_applied: Set once the boundary hook has run.
        boundary: Record returned by the boundary hook.
        terminal: True once a terminal transition was taken.
        status: Lifecycle status.
        reason: Reason code once the session stops.
        message: Human-readable explanation of the stop.
        params: Agent parameters supplied at start.
        branch: Git branch the worker operates on.
        worktree_path: Isolated worktree directory, when enabled.
    """

    session_id: SessionId
    agent_name: str
    work_item: WorkItemRef
    step_id: StepId
    phase: Phase
    iteration_count: int = 0
    iteration_budget: int = 20
    retry_count: int = 0
    history: List[HistoryEntry] = field(default_factory=list)
    feedback: List[str] = field(default_factory=list)
    format_error: Optional[str] = None
    last_output: Optional[Dict[str, Any]] = None
    boundary_applied: bool = False
    boundary: Optional[BoundaryRecord] = None
    terminal: bool = False
    status: SessionStatus = SessionStatus.RUNNING
    reason: Optional[ReasonCode] = None
    message: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    branch: Optional[str] = None
    worktree_path: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def cursor(self) -> Tuple[StepId, int]:
        return (self.step_id, self.iteration_count)

    @property
    def remaining(self) -> int:
        return max(0, self.iteration_budget - self.iteration_count)

    @property
    def is_finished(self) -> bool:
        return self.status != SessionStatus.RUNNING

    def touch(self) -> None:
        self.updated_at = _utcnow()


@dataclass
class RunResult:
    """Outcome of driving a session until it stopped."""

    session_id: SessionId
    status: SessionStatus
    reason: ReasonCode
    iterations: int
    message: Optional[str] = None
    boundary: Optional[BoundaryRecord] = None

    @property
    def completed(self) -> bool:
        return self.reason == ReasonCode.COMPLETED

    @property
    def exit_code(self) -> int:
        if self.reason == ReasonCode.COMPLETED:
            return 0
        if self.reason == ReasonCode.ERROR:
            return 1
        return 2


@dataclass
class SessionEvent:
    """A single entry in a session's event log.

    Attributes:
        session_id: The session this event belongs to.
        kind: Event type ("session_start", "step_start", "output_accepted",
            "format_error", "illegal_intent", "not_ready", "transition", "boundary",
            "completion", "session_end").
        seq: Monotonic sequence number, assigned by storage.
    """

    session_id: SessionId
    kind: str
    ts: datetime = field(default_factory=_utcnow)
    event_id: str = field(default_factory=_generate_event_id)
    seq: int = 0
    step_id: Optional[StepId] = None
    payload: Dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Serdes
# -----------------------------------------------------------------------------


def work_item_to_dict(ref: WorkItemRef) -> Dict[str, Any]:
    return {"kind": ref.kind.value, "id": ref.id, "repo": ref.repo}


def work_item_from_dict(data: Optional[Dict[str, Any]]) -> WorkItemRef:
    data = data or {}
    item_id = data.get("id")
    return WorkItemRef(
        kind=WorkItemKind(data.get("kind", WorkItemKind.NONE.value)),
        id=None if item_id is None else str(item_id),
        repo=data.get("repo"),
    )


def history_entry_to_dict(entry: HistoryEntry) -> Dict[str, Any]:
    return {
        "iteration": entry.iteration,
        "step_id": entry.step_id,
        "phase": entry.phase.value,
        "intent": entry.intent,
        "next_step_id": entry.next_step_id,
        "summary": entry.summary,
        "status": entry.status,
        "timestamp": _datetime_to_iso(entry.timestamp),
    }


def history_entry_from_dict(data: Dict[str, Any]) -> HistoryEntry:
    return HistoryEntry(
        iteration=int(data.get("iteration", 0)),
        step_id=data.get("step_id", ""),
        phase=Phase(data.get("phase", Phase.INITIAL.value)),
        intent=data.get("intent", ""),
        next_step_id=data.get("next_step_id"),
        summary=data.get("summary", ""),
        status=data.get("status"),
        timestamp=_iso_to_datetime(data.get("timestamp")) or _utcnow(),
    )


def session_to_dict(session: ExecutionSession) -> Dict[str, Any]:
    """Convert ExecutionSession to a dictionary for serialization.

    Args:
        session: The session to convert.

    Returns:
        Dictionary representation suitable for JSON serialization.
    """
    return {
        "session_id": session.session_id,
        "agent_name": session.agent_name,
        "work_item": work_item_to_dict(session.work_item),
        "step_id": session.step_id,
        "phase": session.phase.value,
        "iteration_count": session.iteration_count,
        "iteration_budget": session.iteration_budget,
        "retry_count": session.retry_count,
        "history": [history_entry_to_dict(h) for h in session.history],
        "feedback": list(session.feedback),
        "format_error": session.format_error,
        "last_output": session.last_output,
        "boundary_applied": session.boundary_applied,
        "boundary": boundary_record_to_dict(session.boundary) if session.boundary else None,
        "terminal": session.terminal,
        "status": session.status.value,
        "reason": session.reason.value if session.reason else None,
        "message": session.message,
        "params": dict(session.params),
        "branch": session.branch,
        "worktree_path": session.worktree_path,
        "created_at": _datetime_to_iso(session.created_at),
        "updated_at": _datetime_to_iso(session.updated_at),
    }


def session_from_dict(data: Dict[str, Any]) -> ExecutionSession:
    """Parse ExecutionSession from a dictionary.

    Args:
        data: Dictionary with ExecutionSession fields.

    Returns:
        Parsed ExecutionSession instance.
    """
    boundary = data.get("boundary")
    reason = data.get("reason")
    return ExecutionSession(
        session_id=data["session_id"],
        agent_name=data.get("agent_name", ""),
        work_item=work_item_from_dict(data.get("work_item")),
        step_id=data["step_id"],
        phase=Phase(data.get("phase", Phase.INITIAL.value)),
        iteration_count=int(data.get("iteration_count", 0)),
        iteration_budget=int(data.get("iteration_budget", 20)),
        retry_count=int(data.get("retry_count", 0)),
        history=[history_entry_from_dict(h) for h in data.get("history", [])],
        feedback=list(data.get("feedback", [])),
        format_error=data.get("format_error"),
        last_output=data.get("last_output"),
        boundary_applied=bool(data.get("boundary_applied", False)),
        boundary=boundary_record_from_dict(boundary) if boundary else None,
        terminal=bool(data.get("terminal", False)),
        status=SessionStatus(data.get("status", SessionStatus.RUNNING.value)),
        reason=ReasonCode(reason) if reason else None,
        message=data.get("message"),
        params=dict(data.get("params", {})),
        branch=data.get("branch"),
        worktree_path=data.get("worktree_path"),
        created_at=_iso_to_datetime(data.get("created_at")) or _utcnow(),
        updated_at=_iso_to_datetime(data.get("updated_at")) or _utcnow(),
    )


def run_result_to_dict(result: RunResult) -> Dict[str, Any]:
    return {
        "session_id": result.session_id,
        "status": result.status.value,
        "reason": result.reason.value,
        "iterations": result.iterations,
        "completed": result.completed,
        "message": result.message,
        "boundary": boundary_record_to_dict(result.boundary) if result.boundary else None,
    }


def session_event_to_dict(event: SessionEvent) -> Dict[str, Any]:
    return {
        "session_id": event.session_id,
        "kind": event.kind,
        "ts": _datetime_to_iso(event.ts),
        "event_id": event.event_id,
        "seq": event.seq,
        "step_id": event.step_id,
        "payload": dict(event.payload),
    }


def session_event_from_dict(data: Dict[str, Any]) -> SessionEvent:
    return SessionEvent(
        session_id=data.get("session_id", ""),
        kind=data.get("kind", ""),
        ts=_iso_to_datetime(data.get("ts")) or _utcnow(),
        event_id=data.get("event_id") or _generate_event_id(),
        seq=int(data.get("seq", 0)),
        step_id=data.get("step_id"),
        payload=dict(data.get("payload", {})),
    )
