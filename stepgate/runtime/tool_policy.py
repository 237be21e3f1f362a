"""
tool_policy.py - Per-step-kind tool permissions.

The policy is computed before the worker acts and does not depend on what
the worker claims it will do. Boundary tools (issue close/update, PR merge,
release publish) and boundary shell commands (``gh issue close``,
``gh pr merge``, ``gh api``...) are denied in every step kind: the boundary
hook is the only code path allowed to mutate the work-item.

Usage:
    from stepgate.runtime.tool_policy import ToolPolicy

    policy = ToolPolicy(agent_tools=("Read", "Bash"), permission_mode="plan")
    permissions = policy.for_step(StepKind.WORK)
    permissions.is_bash_command_allowed("gh issue close 12")  # False
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from stepgate.config.tool_profiles import (
    get_boundary_bash_patterns,
    get_boundary_tools,
    get_profile,
)
from stepgate.runtime.types import BoundaryActionType, StepKind, StructuredOutput

logger = logging.getLogger(__name__)


def _normalize_command(command: str) -> str:
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = command.split()
    return " ".join(parts)


def _segments(command: str) -> List[str]:
    """Split a shell line on ; && || | so chained commands are checked too."""
    normalized = command
    for separator in ("&&", "||", ";", "|", "\n"):
        normalized = normalized.replace(separator, "\x00")
    return [seg.strip() for seg in normalized.split("\x00") if seg.strip()]


@dataclass(frozen=True)
class ToolPermissions:
    """Effective permissions for one step.

    Attributes:
        step_kind: The step kind these permissions apply to.
        allowed: Tools the worker may call.
        denied: Tools explicitly removed.
        blocked_bash: Command prefixes the worker may not run.
        permission_mode: Worker permission mode.
    """

    step_kind: StepKind
    allowed: Tuple[str, ...]
    denied: Tuple[str, ...]
    blocked_bash: Tuple[str, ...]
    permission_mode: str = "plan"

    def is_tool_allowed(self, tool: str) -> bool:
        return tool in self.allowed and tool not in self.denied

    def is_bash_command_allowed(self, command: str) -> bool:
        """Check a shell command line against the blocked prefixes.

        Examples:
            >>> permissions.is_bash_command_allowed("gh issue view 12")
            True
            >>> permissions.is_bash_command_allowed("git status && gh pr merge 3")
            False
        """
        if not self.is_tool_allowed("Bash"):
            return False
        for segment in _segments(command):
            normalized = _normalize_command(segment)
            for pattern in self.blocked_bash:
                if normalized == pattern or normalized.startswith(pattern + " "):
                    return False
        return True

    def to_cli_disallowed(self) -> List[str]:
        """Render denied tools and bash patterns as worker CLI deny rules."""
        rules = list(self.denied)
        rules.extend(f"Bash({pattern}:*)" for pattern in self.blocked_bash)
        return rules


class ToolPolicy:
    """Computes ToolPermissions per step kind for one agent."""

    def __init__(self, agent_tools: Iterable[str] = (), permission_mode: str = "plan"):
        self._agent_tools = tuple(agent_tools)
        self._permission_mode = permission_mode

    def for_step(self, step_kind: StepKind) -> ToolPermissions:
        """Permissions for a step of the given kind.

        The profile's allowed list is intersected with the agent's configured
        tools (when it configures any); boundary tools are always removed.
        """
        profile = get_profile(step_kind.value)
        allowed = list(profile.allowed)
        if self._agent_tools:
            allowed = [t for t in allowed if t in self._agent_tools]

        denied: Tuple[str, ...] = ()
        blocked: Tuple[str, ...] = ()
        if profile.deny_boundary:
            denied = get_boundary_tools()
            blocked = get_boundary_bash_patterns()
            allowed = [t for t in allowed if t not in denied]
            requested = [t for t in self._agent_tools if t in denied]
            if requested:
                logger.warning(
                    "Agent tools %s are reserved to the boundary hook and removed from %s steps",
                    requested,
                    step_kind.value,
                )

        return ToolPermissions(
            step_kind=step_kind,
            allowed=tuple(allowed),
            denied=denied,
            blocked_bash=blocked,
            permission_mode=self._permission_mode,
        )

    def is_tool_allowed(self, tool: str, step_kind: StepKind) -> bool:
        return self.for_step(step_kind).is_tool_allowed(tool)

    def is_bash_command_allowed(self, command: str, step_kind: StepKind) -> bool:
        return self.for_step(step_kind).is_bash_command_allowed(command)

    def filter_allowed_tools(self, tools: Iterable[str], step_kind: StepKind) -> List[str]:
        permissions = self.for_step(step_kind)
        return [t for t in tools if permissions.is_tool_allowed(t)]

    def blocked_output_actions(self, step_kind: StepKind, output: StructuredOutput) -> Dict[str, Any]:
        """Side-effect requests a non-closure output carried.

        Work and verification outputs may not request closure actions; such
        fields are reported (and ignored by the orchestrator) rather than
        acted on.

        Returns:
            Mapping of field -> requested value. Empty for closure steps.
        """
        if step_kind == StepKind.CLOSURE:
            return {}
        blocked: Dict[str, Any] = {}
        action = output.action
        if action is not None and action in {a.value for a in BoundaryActionType}:
            blocked["action"] = action
        if output.labels_add or output.labels_remove:
            blocked["issue.labels"] = {"add": output.labels_add, "remove": output.labels_remove}
        if output.comment:
            blocked["issue.comment"] = output.comment
        if blocked:
            logger.warning(
                "Ignoring side-effect request from %s step: %s",
                step_kind.value,
                sorted(blocked),
            )
        return blocked


def permissions_summary(permissions: Optional[ToolPermissions]) -> Dict[str, Any]:
    if permissions is None:
        return {}
    return {
        "step_kind": permissions.step_kind.value,
        "allowed": list(permissions.allowed),
        "denied": list(permissions.denied),
        "blocked_bash": list(permissions.blocked_bash),
        "permission_mode": permissions.permission_mode,
    }
