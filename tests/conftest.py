"""
Shared fixtures for stepgate tests.

Every test runs against a private sessions directory and freshly loaded
runtime config, so nothing leaks between tests or into the working tree.
"""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Iterable, List, Optional

import pytest

from stepgate.config.agent_registry import (
    AgentDefinition,
    BoundaryConfig,
    CompletionConfig,
    LoadedAgent,
    ParameterDefinition,
)
from stepgate.config.runtime_config import reset_config
from stepgate.config.step_registry import StepRegistry, build_default_registry, parse_step_registry
from stepgate.config.tool_profiles import reset_profiles
from stepgate.runtime import storage as _storage
from stepgate.runtime.orchestrator import Orchestrator, OrchestratorSettings
from stepgate.runtime.tracker.memory import InMemoryTracker
from stepgate.runtime.workers.stubs import ScriptedWorker

_ENV_VARS = (
    "STEPGATE_WORKER_MODE",
    "STEPGATE_WORKER_COMMAND",
    "STEPGATE_WORKER_MODEL",
    "STEPGATE_WORKER_TIMEOUT",
    "STEPGATE_MAX_FORMAT_RETRIES",
    "STEPGATE_AGENTS_DIR",
    "STEPGATE_WORKTREE_ROOT",
)


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch):
    """Point storage at tmp_path and clear config caches around each test."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("STEPGATE_SESSIONS_DIR", str(tmp_path / "sessions"))
    reset_config()
    reset_profiles()
    _reset_storage_state()
    yield
    reset_config()
    reset_profiles()
    _reset_storage_state()


def _reset_storage_state() -> None:
    """Forget in-process per-session sequence counters and locks."""
    with _storage._SESSION_LOCKS_LOCK:
        _storage._SESSION_LOCKS.clear()
    with _storage._seq_lock:
        _storage._session_sequences.clear()


@pytest.fixture
def sessions_dir(tmp_path) -> Path:
    return tmp_path / "sessions"


# ============================================================================
# Registries and agents
# ============================================================================


def iterator_registry_data() -> Dict[str, Any]:
    """Three-phase issue flow without a verification step.

    Steps carry no schema reference, so any JSON object is accepted and the
    intent alone drives the flow.
    """
    return {
        "agentId": "iterator",
        "version": "1.0",
        "entryStepMapping": {"issue": "initial.issue"},
        "steps": {
            "initial.issue": {"name": "Start issue", "c2": "initial", "c3": "issue", "fallbackKey": "initial"},
            "continuation.issue": {"name": "Continue issue", "c2": "continuation", "c3": "issue"},
            "closure.issue": {"name": "Close issue", "c2": "closure", "c3": "issue"},
        },
    }


@pytest.fixture
def iterator_registry() -> StepRegistry:
    return parse_step_registry(iterator_registry_data(), source="<iterator>")


@pytest.fixture
def default_registry() -> StepRegistry:
    return build_default_registry("tester")


def make_agent(
    registry: StepRegistry,
    name: str = "tester",
    completion: Optional[CompletionConfig] = None,
    boundary: Optional[BoundaryConfig] = None,
    parameters: Optional[Dict[str, ParameterDefinition]] = None,
    allowed_tools: Iterable[str] = (),
) -> LoadedAgent:
    definition = AgentDefinition(
        name=name,
        completion=completion or CompletionConfig(type="externalState", options={"targetState": "closed"}),
        boundary=boundary or BoundaryConfig(),
        parameters=parameters or {},
        allowed_tools=tuple(allowed_tools),
    )
    return LoadedAgent(definition=definition, registry=registry)


@pytest.fixture
def make_orchestrator(sessions_dir):
    """Factory building an Orchestrator around a ScriptedWorker.

    Returns (orchestrator, worker, tracker).
    """

    def _make(
        replies: List[Any],
        agent: LoadedAgent,
        tracker: Optional[InMemoryTracker] = None,
        max_format_retries: int = 3,
        **orchestrator_kwargs: Any,
    ):
        worker = ScriptedWorker(replies)
        tracker = tracker if tracker is not None else InMemoryTracker()
        settings = OrchestratorSettings(
            max_format_retries=max_format_retries,
            history_window=5,
            default_iteration_budget=20,
            worker_timeout=60,
            tracker_settings={"retries": 2, "base_delay": 0.0, "max_delay": 0.0},
            sessions_dir=sessions_dir,
        )
        orchestrator = Orchestrator(
            agent,
            worker=worker,
            tracker=tracker,
            settings=settings,
            sleep_func=lambda seconds: None,
            **orchestrator_kwargs,
        )
        return orchestrator, worker, tracker

    return _make


# ============================================================================
# Worker replies matching the built-in schemas
# ============================================================================


def work_reply(action: str = "next", status: str = "in_progress", summary: str = "made progress") -> Dict[str, Any]:
    return {"status": status, "summary": summary, "next_action": {"action": action}}


def verification_reply(passed: bool = True, action: str = "next") -> Dict[str, Any]:
    return {
        "status": "approved" if passed else "rejected",
        "summary": "checks passed" if passed else "tests fail",
        "next_action": {"action": action},
        "verification": {"passed": passed, "checks": ["pytest"]},
    }


def closure_reply(
    action: str = "close",
    intent: str = "closing",
    labels_add: Optional[List[str]] = None,
    labels_remove: Optional[List[str]] = None,
) -> Dict[str, Any]:
    return {
        "status": "completed",
        "summary": "all done",
        "next_action": {"action": intent},
        "action": action,
        "issue": {"labels": {"add": labels_add or [], "remove": labels_remove or []}},
    }


@pytest.fixture
def replies() -> SimpleNamespace:
    return SimpleNamespace(work=work_reply, verification=verification_reply, closure=closure_reply)


@pytest.fixture
def agent_factory():
    return make_agent
