"""Tests for the read-only session API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from stepgate import __version__
from stepgate.api import create_app
from stepgate.runtime.storage import append_event, write_session
from stepgate.runtime.types import (
    BoundaryActionType,
    BoundaryRecord,
    ExecutionSession,
    HistoryEntry,
    Phase,
    ReasonCode,
    SessionEvent,
    SessionStatus,
    WorkItemKind,
    WorkItemRef,
)


def store(sessions_dir, session_id, agent="iterator", issue="42", **fields) -> ExecutionSession:
    session = ExecutionSession(
        session_id=session_id,
        agent_name=agent,
        work_item=WorkItemRef(WorkItemKind.ISSUE, issue),
        step_id="closure.issue",
        phase=Phase.CLOSURE,
        iteration_count=4,
        iteration_budget=10,
    )
    for name, value in fields.items():
        setattr(session, name, value)
    write_session(session, sessions_dir)
    return session


@pytest.fixture
def client(sessions_dir):
    return TestClient(create_app(sessions_dir=sessions_dir))


class TestHealth:
    def test_health(self, client, sessions_dir):
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__, "sessions_dir": str(sessions_dir)}


class TestSessionList:
    def test_newest_first_with_agent_filter(self, client, sessions_dir):
        store(sessions_dir, "sess-20260101-000000-aaaaaa")
        store(sessions_dir, "sess-20260102-000000-bbbbbb", agent="reviewer")
        store(sessions_dir, "sess-20260103-000000-cccccc", issue="7")

        all_ids = [s["session_id"] for s in client.get("/api/sessions").json()["sessions"]]
        iterator_ids = [s["session_id"] for s in client.get("/api/sessions?agent=iterator").json()["sessions"]]

        assert all_ids == [
            "sess-20260103-000000-cccccc",
            "sess-20260102-000000-bbbbbb",
            "sess-20260101-000000-aaaaaa",
        ]
        assert iterator_ids == ["sess-20260103-000000-cccccc", "sess-20260101-000000-aaaaaa"]

    def test_limit(self, client, sessions_dir):
        for n in range(3):
            store(sessions_dir, f"sess-2026010{n + 1}-000000-aaaaaa")

        assert len(client.get("/api/sessions?limit=2").json()["sessions"]) == 2

    def test_empty(self, client):
        assert client.get("/api/sessions").json() == {"sessions": []}


class TestSessionDetail:
    def test_full_state(self, client, sessions_dir):
        store(
            sessions_dir,
            "sess-20260101-000000-aaaaaa",
            status=SessionStatus.COMPLETED,
            reason=ReasonCode.COMPLETED,
            boundary_applied=True,
            boundary=BoundaryRecord(action=BoundaryActionType.CLOSE, work_item="issue-42", operations=["close"]),
            history=[HistoryEntry(iteration=4, step_id="closure.issue", phase=Phase.CLOSURE, intent="closing")],
        )

        body = client.get("/api/sessions/sess-20260101-000000-aaaaaa").json()

        assert body["work_item"] == "issue-42"
        assert body["status"] == "completed"
        assert body["reason"] == "Completed"
        assert body["boundary_applied"] is True
        assert body["boundary"]["operations"] == ["close"]
        assert body["history"][0]["intent"] == "closing"

    def test_unknown_session(self, client):
        response = client.get("/api/sessions/sess-nope")

        assert response.status_code == 404
        assert "sess-nope" in response.json()["detail"]


class TestSessionEvents:
    def test_events_since_seq(self, client, sessions_dir):
        session_id = "sess-20260101-000000-eeeeee"
        store(sessions_dir, session_id)
        for kind in ("session_start", "step_start", "transition"):
            append_event(SessionEvent(session_id=session_id, kind=kind), sessions_dir)

        all_events = client.get(f"/api/sessions/{session_id}/events").json()["events"]
        later = client.get(f"/api/sessions/{session_id}/events?since_seq=1").json()["events"]

        assert [e["kind"] for e in all_events] == ["session_start", "step_start", "transition"]
        assert [e["seq"] for e in later] == [2, 3]

    def test_events_for_unknown_session(self, client):
        assert client.get("/api/sessions/sess-nope/events").status_code == 404
