"""
Tests for session persistence.

Sessions are written atomically after every iteration and must round-trip
through session.json well enough to resume from the same cursor.
"""

from __future__ import annotations

import json

from stepgate.runtime import storage
from stepgate.runtime.storage import (
    EVENTS_FILE,
    SESSION_FILE,
    append_event,
    find_latest_session,
    get_session_path,
    list_sessions,
    read_events,
    read_session,
    release_session,
    session_exists,
    write_session,
)
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
    generate_session_id,
)

ISSUE = WorkItemRef(WorkItemKind.ISSUE, "42", repo="acme/app")


def make_session(session_id: str, agent: str = "iterator", work_item: WorkItemRef = ISSUE) -> ExecutionSession:
    return ExecutionSession(
        session_id=session_id,
        agent_name=agent,
        work_item=work_item,
        step_id="continuation.issue",
        phase=Phase.CONTINUATION,
        iteration_count=3,
        iteration_budget=10,
    )


class TestSessionFiles:
    def test_resumable_fields_survive_a_write(self, sessions_dir):
        session = make_session("sess-20260101-000000-aaaaaa")
        session.retry_count = 1
        session.format_error = "Validation error at $: 'status' is a required property"
        session.history.append(
            HistoryEntry(iteration=3, step_id="initial.issue", phase=Phase.INITIAL, intent="next", summary="planned")
        )
        session.boundary = BoundaryRecord(action=BoundaryActionType.CLOSE, work_item="issue-42", operations=["close"])
        session.boundary_applied = True
        session.params = {"target": "main"}

        write_session(session, sessions_dir)
        loaded = read_session(session.session_id, sessions_dir)

        assert loaded.cursor == ("continuation.issue", 3)
        assert loaded.work_item == ISSUE
        assert loaded.retry_count == 1
        assert loaded.format_error == session.format_error
        assert loaded.history[0].summary == "planned"
        assert loaded.boundary_applied is True
        assert loaded.boundary.operations == ["close"]
        assert loaded.params == {"target": "main"}

    def test_write_is_plain_json(self, sessions_dir):
        session = make_session("sess-20260101-000000-bbbbbb")
        session.status = SessionStatus.BLOCKED
        session.reason = ReasonCode.FORMAT_EXHAUSTED

        path = write_session(session, sessions_dir)

        data = json.loads(path.read_text())
        assert path.name == SESSION_FILE
        assert data["status"] == "blocked"
        assert data["reason"] == "FormatExhausted"
        assert not list(path.parent.glob("*.tmp"))

    def test_missing_and_corrupt_sessions(self, sessions_dir):
        assert read_session("sess-missing", sessions_dir) is None

        path = get_session_path("sess-corrupt", sessions_dir)
        path.mkdir(parents=True)
        (path / SESSION_FILE).write_text("{not json")

        assert read_session("sess-corrupt", sessions_dir) is None

    def test_session_exists(self, sessions_dir):
        session = make_session("sess-20260101-000000-cccccc")

        assert not session_exists(session.session_id, sessions_dir)
        write_session(session, sessions_dir)
        assert session_exists(session.session_id, sessions_dir)

    def test_defaults_to_configured_dir(self, sessions_dir):
        session = make_session(generate_session_id())

        write_session(session)

        assert (sessions_dir / session.session_id / SESSION_FILE).exists()


class TestListing:
    def test_list_sorted_and_only_with_session_file(self, sessions_dir):
        for session_id in ("sess-20260102-000000-bbbbbb", "sess-20260101-000000-aaaaaa"):
            write_session(make_session(session_id), sessions_dir)
        (sessions_dir / "not-a-session").mkdir()

        assert list_sessions(sessions_dir) == ["sess-20260101-000000-aaaaaa", "sess-20260102-000000-bbbbbb"]

    def test_list_empty_dir(self, tmp_path):
        assert list_sessions(tmp_path / "nothing") == []

    def test_find_latest_matches_agent_and_work_item(self, sessions_dir):
        write_session(make_session("sess-20260101-000000-aaaaaa"), sessions_dir)
        write_session(make_session("sess-20260102-000000-bbbbbb"), sessions_dir)
        write_session(make_session("sess-20260103-000000-cccccc", agent="other"), sessions_dir)
        write_session(
            make_session("sess-20260104-000000-dddddd", work_item=WorkItemRef(WorkItemKind.ISSUE, "7")),
            sessions_dir,
        )

        latest = find_latest_session("iterator", WorkItemRef(WorkItemKind.ISSUE, "42"), sessions_dir)

        assert latest.session_id == "sess-20260102-000000-bbbbbb"
        assert find_latest_session("iterator", WorkItemRef(WorkItemKind.PROJECT, "42"), sessions_dir) is None


class TestEvents:
    def test_sequence_numbers_are_monotonic(self, sessions_dir):
        session_id = "sess-20260101-000000-eeeeee"
        for kind in ("session_start", "step_start", "transition"):
            append_event(SessionEvent(session_id=session_id, kind=kind, payload={"k": kind}), sessions_dir)

        events = read_events(session_id, sessions_dir)

        assert [e.kind for e in events] == ["session_start", "step_start", "transition"]
        assert [e.seq for e in events] == [1, 2, 3]
        assert events[2].payload == {"k": "transition"}

    def test_sequence_continues_from_disk(self, sessions_dir):
        session_id = "sess-20260101-000000-ffffff"
        events_path = get_session_path(session_id, sessions_dir) / EVENTS_FILE
        events_path.parent.mkdir(parents=True)
        events_path.write_text(json.dumps({"session_id": session_id, "kind": "session_start", "seq": 41}) + "\n")

        append_event(SessionEvent(session_id=session_id, kind="session_resume"), sessions_dir)

        assert [e.seq for e in read_events(session_id, sessions_dir)] == [41, 42]

    def test_release_drops_in_process_state(self, sessions_dir):
        session_id = "sess-20260101-000000-hhhhhh"
        for kind in ("session_start", "step_start", "transition"):
            append_event(SessionEvent(session_id=session_id, kind=kind), sessions_dir)
        write_session(make_session(session_id), sessions_dir)

        release_session(session_id)

        assert session_id not in storage._SESSION_LOCKS
        assert session_id not in storage._session_sequences

    def test_sequence_survives_release(self, sessions_dir):
        """An append after release picks up where the file left off."""
        session_id = "sess-20260101-000000-iiiiii"
        for kind in ("session_start", "step_start", "transition"):
            append_event(SessionEvent(session_id=session_id, kind=kind), sessions_dir)
        release_session(session_id)

        append_event(SessionEvent(session_id=session_id, kind="session_resume"), sessions_dir)

        assert [e.seq for e in read_events(session_id, sessions_dir)] == [1, 2, 3, 4]

    def test_release_of_unknown_session_is_harmless(self):
        release_session("sess-unknown")

    def test_malformed_lines_are_skipped(self, sessions_dir):
        session_id = "sess-20260101-000000-gggggg"
        events_path = get_session_path(session_id, sessions_dir) / EVENTS_FILE
        events_path.parent.mkdir(parents=True)
        events_path.write_text('{"session_id": "x", "kind": "a", "seq": 1}\nnot json\n\n')

        events = read_events(session_id, sessions_dir)

        assert [e.kind for e in events] == ["a"]

    def test_no_events(self, sessions_dir):
        assert read_events("sess-none", sessions_dir) == []
