"""
stubs.py - Zero-cost worker engines for tests and dry runs.

ScriptedWorker replays a fixed list of replies, one per invocation.
StubWorker produces a well-formed reply for each phase so a full
initial -> continuation -> verification -> closure cycle runs offline.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .base import WorkerEngine
from .models import WorkerRequest, WorkerResult

logger = logging.getLogger(__name__)

Reply = Union[str, Dict[str, Any], WorkerResult, Callable[[WorkerRequest], WorkerResult]]


def fenced(data: Dict[str, Any], preamble: str = "") -> str:
    """Render a reply the way workers usually do: prose then a json fence."""
    body = json.dumps(data, indent=2)
    return f"{preamble}\n```json\n{body}\n```\n" if preamble else f"```json\n{body}\n```\n"


class ScriptedWorker(WorkerEngine):
    """Returns pre-recorded replies in order.

    Each reply may be a string (reply text), a dict (rendered as a fenced
    JSON block), a WorkerResult, or a callable taking the request. All
    requests are kept in ``requests`` for assertions.

    Raises:
        AssertionError: When invoked more times than there are replies.
    """

    def __init__(self, replies: Iterable[Reply]):
        self._replies: List[Reply] = list(replies)
        self._lock = threading.Lock()
        self.requests: List[WorkerRequest] = []

    @property
    def engine_id(self) -> str:
        return "scripted"

    @property
    def remaining(self) -> int:
        return len(self._replies)

    def run(self, request: WorkerRequest) -> WorkerResult:
        with self._lock:
            self.requests.append(request)
            if not self._replies:
                raise AssertionError(f"ScriptedWorker has no reply left for {request.step_id}")
            reply = self._replies.pop(0)
        if callable(reply) and not isinstance(reply, WorkerResult):
            return reply(request)
        if isinstance(reply, WorkerResult):
            return reply
        if isinstance(reply, dict):
            return WorkerResult(status="succeeded", text=fenced(reply))
        return WorkerResult(status="succeeded", text=str(reply))


class StubWorker(WorkerEngine):
    """Walks every phase once with canned, schema-valid replies.

    Work steps hand off after ``work_iterations`` replies; verification
    approves; closure closes the work-item.
    """

    def __init__(self, work_iterations: int = 1, closure_action: str = "close"):
        self._work_iterations = max(1, work_iterations)
        self._closure_action = closure_action
        self._work_counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def engine_id(self) -> str:
        return "stub"

    def _reply_for(self, request: WorkerRequest) -> Dict[str, Any]:
        phase = request.step_id.split(".", 1)[0]
        if phase == "verification":
            return {
                "status": "approved",
                "summary": "Stub verification passed",
                "next_action": {"action": "next", "reason": "stub checks passed"},
                "verification": {"passed": True, "checks": ["stub"]},
            }
        if phase == "closure":
            return {
                "status": "completed",
                "summary": "Stub closure",
                "next_action": {"action": "closing"},
                "action": self._closure_action,
                "issue": {"labels": {"add": [], "remove": []}},
                "validation": {"git_clean": True, "type_check_passed": True, "tests_passed": True},
            }
        with self._lock:
            count = self._work_counts.get(request.session_id, 0) + 1
            self._work_counts[request.session_id] = count
        done = count >= self._work_iterations
        return {
            "status": "ready_for_review" if done else "in_progress",
            "summary": f"Stub work iteration {count}",
            "next_action": {"action": "handoff" if done else "next"},
        }

    def run(self, request: WorkerRequest) -> WorkerResult:
        reply = self._reply_for(request)
        logger.debug("Stub worker replying to %s with %s", request.step_id, reply["next_action"]["action"])
        return WorkerResult(status="succeeded", text=fenced(reply, "Stub worker reply."))
