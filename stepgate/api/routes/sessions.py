"""
Session endpoints.

Sessions are read straight from disk (session.json and events.jsonl), so
the API can run alongside the CLI without sharing any process state.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from stepgate.runtime.storage import list_sessions, read_events, read_session
from stepgate.runtime.types import (
    ExecutionSession,
    boundary_record_to_dict,
    history_entry_to_dict,
    session_event_to_dict,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


# =============================================================================
# Pydantic Models
# =============================================================================


class SessionSummary(BaseModel):
    """Session summary for the list endpoint."""

    session_id: str
    agent_name: str
    work_item: str
    step_id: str
    phase: str
    status: str
    reason: Optional[str] = None
    iteration_count: int = 0
    iteration_budget: int = 0
    updated_at: Optional[str] = None


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary]


class SessionDetail(SessionSummary):
    """Full session state."""

    retry_count: int = 0
    message: Optional[str] = None
    branch: Optional[str] = None
    worktree_path: Optional[str] = None
    boundary_applied: bool = False
    boundary: Optional[Dict[str, Any]] = None
    feedback: List[str] = Field(default_factory=list)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    params: Dict[str, Any] = Field(default_factory=dict)


class SessionEventsResponse(BaseModel):
    session_id: str
    events: List[Dict[str, Any]]


# =============================================================================
# Helpers
# =============================================================================


def _sessions_dir(request: Request) -> Optional[Path]:
    return getattr(request.app.state, "sessions_dir", None)


def _summary_fields(session: ExecutionSession) -> Dict[str, Any]:
    return {
        "session_id": session.session_id,
        "agent_name": session.agent_name,
        "work_item": session.work_item.key,
        "step_id": session.step_id,
        "phase": session.phase.value,
        "status": session.status.value,
        "reason": session.reason.value if session.reason else None,
        "iteration_count": session.iteration_count,
        "iteration_budget": session.iteration_budget,
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
    }


def _load_or_404(session_id: str, sessions_dir: Optional[Path]) -> ExecutionSession:
    session = read_session(session_id, sessions_dir)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
    return session


# =============================================================================
# Endpoints
# =============================================================================


@router.get("", response_model=SessionListResponse)
async def get_sessions(request: Request, agent: Optional[str] = None, limit: int = 50):
    """List sessions, newest first.

    Args:
        agent: Only sessions of this agent.
        limit: Maximum number of sessions to return.
    """
    sessions_dir = _sessions_dir(request)
    summaries: List[SessionSummary] = []
    for session_id in reversed(list_sessions(sessions_dir)):
        session = read_session(session_id, sessions_dir)
        if session is None or (agent and session.agent_name != agent):
            continue
        summaries.append(SessionSummary(**_summary_fields(session)))
        if len(summaries) >= limit:
            break
    return SessionListResponse(sessions=summaries)


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(session_id: str, request: Request):
    """Get the full state of a session.

    Raises:
        404: Session not found.
    """
    session = _load_or_404(session_id, _sessions_dir(request))
    return SessionDetail(
        **_summary_fields(session),
        retry_count=session.retry_count,
        message=session.message,
        branch=session.branch,
        worktree_path=session.worktree_path,
        boundary_applied=session.boundary_applied,
        boundary=boundary_record_to_dict(session.boundary) if session.boundary else None,
        feedback=list(session.feedback),
        history=[history_entry_to_dict(entry) for entry in session.history],
        params=dict(session.params),
    )


@router.get("/{session_id}/events", response_model=SessionEventsResponse)
async def get_session_events(session_id: str, request: Request, since_seq: int = 0):
    """Get a session's events, optionally only those after ``since_seq``.

    Raises:
        404: Session not found.
    """
    sessions_dir = _sessions_dir(request)
    _load_or_404(session_id, sessions_dir)
    events = [session_event_to_dict(e) for e in read_events(session_id, sessions_dir) if e.seq > since_seq]
    return SessionEventsResponse(session_id=session_id, events=events)
