"""End-to-end tests for the stepgate command line."""

from __future__ import annotations

import json

import pytest
import yaml

from stepgate.cli import _parse_params, build_parser, main
from stepgate.runtime.errors import DefinitionError
from stepgate.runtime.storage import list_sessions, read_session
from stepgate.runtime.types import ReasonCode, SessionStatus


@pytest.fixture
def agents_dir(tmp_path):
    root = tmp_path / "agents"
    agent_dir = root / "iterator"
    agent_dir.mkdir(parents=True)
    definition = {
        "name": "iterator",
        "behavior": {"completionType": "externalState", "completionConfig": {"targetState": "closed"}},
    }
    (agent_dir / "agent.yaml").write_text(yaml.safe_dump(definition))
    return root


@pytest.fixture
def run_cli(agents_dir, sessions_dir):
    """Invoke ``stepgate run`` offline with the stub worker and memory tracker."""

    def _run(*extra: str) -> int:
        argv = [
            "--sessions-dir",
            str(sessions_dir),
            "run",
            "--agent",
            "iterator",
            "--agents-dir",
            str(agents_dir),
            "--worker",
            "stub",
            "--tracker",
            "memory",
        ]
        return main(argv + list(extra))

    return _run


class TestRun:
    def test_completed_run_exits_zero(self, run_cli, sessions_dir, capsys):
        code = run_cli("--issue", "42")

        assert code == 0
        (session_id,) = list_sessions(sessions_dir)
        session = read_session(session_id, sessions_dir)
        assert session.status == SessionStatus.COMPLETED
        assert session.iteration_count == 3
        assert "completed (Completed) after 3 iteration(s)" in capsys.readouterr().out

    def test_budget_exhaustion_then_resume(self, run_cli, sessions_dir):
        assert run_cli("--issue", "42", "--iterate-max", "1") == 2

        (session_id,) = list_sessions(sessions_dir)
        blocked = read_session(session_id, sessions_dir)
        assert blocked.reason == ReasonCode.BUDGET_EXHAUSTED
        assert blocked.step_id == "verification.issue"

        assert run_cli("--issue", "42", "--resume", "--iterate-max", "5") == 0

        assert list_sessions(sessions_dir) == [session_id]
        resumed = read_session(session_id, sessions_dir)
        assert resumed.status == SessionStatus.COMPLETED
        assert resumed.iteration_count == 3

    def test_resume_without_session_starts_fresh(self, run_cli, sessions_dir):
        assert run_cli("--issue", "9", "--resume") == 0
        assert len(list_sessions(sessions_dir)) == 1

    def test_json_output(self, run_cli, capsys):
        run_cli("--issue", "42", "--json")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        result = json.loads(line)
        assert result["status"] == "completed"
        assert result["reason"] == "Completed"
        assert result["completed"] is True
        assert result["boundary"]["action"] == "close"

    def test_several_issues_run_in_parallel(self, run_cli, sessions_dir, capsys):
        code = run_cli("--issue", "1", "--issue", "2", "--max-parallel", "2", "--json")

        lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
        assert code == 0
        assert [line["reason"] for line in lines] == ["Completed", "Completed"]
        items = sorted(read_session(s, sessions_dir).work_item.key for s in list_sessions(sessions_dir))
        assert items == ["issue-1", "issue-2"]

    def test_missing_agent(self, run_cli, agents_dir, sessions_dir, capsys):
        code = main(
            [
                "--sessions-dir",
                str(sessions_dir),
                "run",
                "--agent",
                "ghost",
                "--agents-dir",
                str(agents_dir),
                "--worker",
                "stub",
                "--tracker",
                "memory",
            ]
        )

        assert code == 1
        assert "ghost" in capsys.readouterr().err

    def test_issue_and_project_are_exclusive(self, run_cli, capsys):
        assert run_cli("--issue", "1", "--project", "2") == 1
        assert "only one of" in capsys.readouterr().err

    def test_zero_iteration_budget(self, run_cli, sessions_dir, capsys):
        assert run_cli("--issue", "1", "--iterate-max", "0") == 1
        assert "--iterate-max" in capsys.readouterr().err
        assert list_sessions(sessions_dir) == []

    def test_bad_param(self, run_cli, capsys):
        assert run_cli("--issue", "1", "--param", "novalue") == 1
        assert "key=value" in capsys.readouterr().err


class TestSessionsCommand:
    def test_lists_sessions_as_json(self, run_cli, sessions_dir, capsys):
        run_cli("--issue", "42")
        capsys.readouterr()

        assert main(["--sessions-dir", str(sessions_dir), "sessions", "--json"]) == 0

        rows = json.loads(capsys.readouterr().out)
        assert len(rows) == 1
        assert rows[0]["agent"] == "iterator"
        assert rows[0]["work_item"] == "issue-42"
        assert rows[0]["status"] == "completed"
        assert rows[0]["iterations"] == 3

    def test_agent_filter(self, run_cli, sessions_dir, capsys):
        run_cli("--issue", "42")
        capsys.readouterr()

        main(["--sessions-dir", str(sessions_dir), "sessions", "--agent", "reviewer"])

        assert "No sessions found" in capsys.readouterr().out

    def test_table_output(self, run_cli, sessions_dir, capsys):
        run_cli("--issue", "42")
        capsys.readouterr()

        main(["--sessions-dir", str(sessions_dir), "sessions"])

        out = capsys.readouterr().out
        assert "iterator" in out
        assert "issue-42" in out
        assert "3/" in out


class TestParser:
    def test_parse_params(self):
        assert _parse_params(["labels=bug,p1", " mode = fast"]) == {"labels": "bug,p1", "mode": " fast"}
        assert _parse_params(None) == {}

    def test_parse_params_rejects_missing_separator(self):
        with pytest.raises(DefinitionError, match="Invalid --param"):
            _parse_params(["=value"])

    def test_run_requires_agent(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--issue", "1"])

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()
