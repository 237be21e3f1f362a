"""Data types exchanged with worker engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stepgate.runtime.tool_policy import ToolPermissions


@dataclass
class WorkerRequest:
    """Everything a worker needs for one invocation.

    Attributes:
        session_id: Session the invocation belongs to.
        step_id: Active step.
        prompt: Rendered prompt text.
        schema: JSON Schema the reply must satisfy.
        permissions: Tool permissions for the step kind.
        cwd: Working directory (the session's worktree, when enabled).
        system_prompt: Optional system prompt appended to the worker's own.
        timeout: Seconds before the invocation is abandoned.
        model: Optional model override.
    """

    session_id: str
    step_id: str
    prompt: str
    schema: Dict[str, Any]
    permissions: Optional[ToolPermissions] = None
    cwd: Optional[str] = None
    system_prompt: Optional[str] = None
    timeout: int = 1800
    model: Optional[str] = None


@dataclass
class WorkerResult:
    """Outcome of one worker invocation.

    Attributes:
        status: "succeeded" | "failed" | "timeout"
        text: The worker's final textual reply.
        structured_output: Structured payload, when the worker returned one.
        error: Error description for failed invocations.
        duration_ms: Wall-clock duration.
        events: Raw events reported by the worker, for diagnostics.
    """

    status: str
    text: str = ""
    structured_output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: int = 0
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"
