"""
boundary.py - The single checkpoint for work-item mutations.

The boundary hook runs when a closure step emits ``closing``. It reads the
closure report, checks the requested action against the agent's boundary
configuration, and applies the difference between the target state and the
observed state:

    1. fetch a snapshot (retried with backoff)
    2. add labels not yet present, remove labels still present
    3. close (or merge) only if the item is still open

Project work-items have no close or label operation: closing a project is
confirmed, not performed, and is refused while items are still open.

Mutations are attempted once. A failure raises ExternalOperationError and
the orchestrator marks the session Blocked. Because every operation is
computed against a fresh snapshot, re-running the hook after a crash or a
resume is a no-op for anything already applied.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from stepgate.config.agent_registry import BoundaryConfig
from stepgate.config.step_registry import StepDefinition
from stepgate.runtime.errors import IllegalIntentError
from stepgate.runtime.tracker.base import WorkItemTracker, fetch_snapshot_with_retry
from stepgate.runtime.types import (
    BoundaryAction,
    BoundaryActionType,
    BoundaryRecord,
    ExecutionSession,
    ExternalSnapshot,
    Phase,
    StructuredOutput,
    WorkItemKind,
)

logger = logging.getLogger(__name__)

CLOSED_STATES = frozenset({"CLOSED", "MERGED"})

_CHECK_HINTS = {
    "git_clean": "commit or stash changes before closing",
    "type_check_passed": "fix type errors",
    "tests_passed": "fix failing tests",
    "lint_passed": "fix lint errors",
    "format_check_passed": "run the formatter",
}


class BoundaryHook:
    """Applies a closure report's side effects exactly once per session.

    Args:
        tracker: Tracker used for the snapshot and the mutations.
        config: The agent's boundary configuration.
        tracker_settings: Retry settings for snapshot reads.
        sleep_func: Injectable sleep for retry backoff in tests.
    """

    def __init__(
        self,
        tracker: WorkItemTracker,
        config: Optional[BoundaryConfig] = None,
        tracker_settings: Optional[Dict[str, Any]] = None,
        sleep_func: Optional[Callable[[float], None]] = None,
    ):
        self._tracker = tracker
        self._config = config or BoundaryConfig()
        self._tracker_settings = tracker_settings or {}
        self._sleep_func = sleep_func

    def extract_action(self, step: StepDefinition, output: StructuredOutput, kind: WorkItemKind) -> BoundaryAction:
        """Read the BoundaryAction from a closure report.

        Falls back to the agent's default action when the report has none.

        Raises:
            IllegalIntentError: If the action is unknown, not allowed for this
                agent, or does not apply to the work-item kind. The closure
                step stays active so the worker can correct its report.
        """
        allowed = [a.value for a in self._config.allowed_actions]
        raw = output.action or self._config.default_action.value
        try:
            action = BoundaryActionType(raw)
        except ValueError:
            action = None
        if action is None or action not in self._config.allowed_actions:
            raise IllegalIntentError(
                step.step_id,
                step.phase.value,
                raw,
                allowed,
                message=f"Closure action '{raw}' is not allowed. Allowed actions: {', '.join(allowed)}",
            )
        if action == BoundaryActionType.MERGE and kind != WorkItemKind.PULL_REQUEST:
            raise IllegalIntentError(
                step.step_id,
                step.phase.value,
                raw,
                allowed,
                message=f"Closure action 'merge' only applies to pull requests, not {kind.value} work-items",
            )

        labels_add = list(self._config.labels_add)
        labels_add.extend(label for label in output.labels_add if label not in labels_add)
        labels_remove = list(self._config.labels_remove)
        labels_remove.extend(label for label in output.labels_remove if label not in labels_remove)
        return BoundaryAction(
            action=action,
            labels_add=labels_add,
            labels_remove=[label for label in labels_remove if label not in labels_add],
            comment=output.comment or (output.summary or None),
        )

    def readiness_failures(self, output: StructuredOutput) -> List[str]:
        """Checks in the closure report's ``validation`` block that forbid closing.

        Checks in ``must_pass`` have to be reported as true. Checks in
        ``must_not_fail`` only fail when explicitly reported as false. A report
        without a ``validation`` block passes unless the agent requires one.
        """
        validation = output.validation
        if validation is None:
            if self._config.require_validation:
                return ["validation is missing: report git_clean, type_check_passed and test results"]
            return []
        failures = [
            f"{check} is not true: {_CHECK_HINTS.get(check, 'fix it before closing')}"
            for check in self._config.must_pass
            if validation.get(check) is not True
        ]
        failures.extend(
            f"{check} is false: {_CHECK_HINTS.get(check, 'fix it before closing')}"
            for check in self._config.must_not_fail
            if validation.get(check) is False
        )
        return failures

    def invoke(
        self,
        session: ExecutionSession,
        step: StepDefinition,
        output: StructuredOutput,
    ) -> BoundaryRecord:
        """Apply the closure report to the session's work-item.

        Returns:
            BoundaryRecord listing the operations performed. ``noop`` is
            True when the item already matched the target state.

        Raises:
            IllegalIntentError: If called outside a closure step, with a
                disallowed action, or for a project with open items.
            ExternalOperationError: If the snapshot or a mutation fails.
        """
        if session.boundary_applied and session.boundary is not None:
            logger.info("Boundary hook already applied for session %s; skipping", session.session_id)
            return session.boundary

        if step.phase != Phase.CLOSURE:
            raise IllegalIntentError(
                step.step_id,
                step.phase.value,
                "closing",
                [],
                message=f"Boundary hook can only run from a closure step, not {step.step_id}",
            )

        ref = session.work_item
        action = self.extract_action(step, output, ref.kind)

        if ref.kind == WorkItemKind.NONE or not self._config.enabled:
            logger.info("Session %s has no external work-item; boundary hook is a no-op", session.session_id)
            return BoundaryRecord(action=action.action, work_item=ref.key, noop=True)

        snapshot = fetch_snapshot_with_retry(
            self._tracker, ref, self._tracker_settings, sleep_func=self._sleep_func
        )
        if ref.kind == WorkItemKind.PROJECT:
            return self._confirm_project(step, action, snapshot, ref.key)
        operations: List[str] = []

        to_add = [label for label in action.labels_add if label not in snapshot.labels]
        to_remove = [label for label in action.labels_remove if label in snapshot.labels]
        if to_add:
            self._tracker.add_labels(ref, to_add)
            operations.append("add_labels:" + ",".join(to_add))
        if to_remove:
            self._tracker.remove_labels(ref, to_remove)
            operations.append("remove_labels:" + ",".join(to_remove))

        if snapshot.state not in CLOSED_STATES:
            if action.merges:
                self._tracker.merge(ref)
                operations.append("merge")
            elif action.closes:
                self._tracker.close(ref, action.comment)
                operations.append("close")

        record = BoundaryRecord(
            action=action.action,
            work_item=ref.key,
            operations=operations,
            noop=not operations,
        )
        if record.noop:
            logger.info("%s already in target state for '%s'; nothing to apply", ref, action.action.value)
        else:
            logger.info("Boundary hook applied to %s: %s", ref, ", ".join(operations))
        return record

    def _confirm_project(
        self,
        step: StepDefinition,
        action: BoundaryAction,
        snapshot: ExternalSnapshot,
        key: str,
    ) -> BoundaryRecord:
        """Projects have no close or label operation; they close when their items are done.

        Raises:
            IllegalIntentError: If items are still open. The closure step stays
                active and nothing is mutated.
        """
        if snapshot.state not in CLOSED_STATES:
            remaining = f"{snapshot.open_items} open item(s)" if snapshot.open_items is not None else "open items"
            raise IllegalIntentError(
                step.step_id,
                step.phase.value,
                "closing",
                ["repeat"],
                message=(
                    f"Project {key} still has {remaining}. A project closes when all of its items are done; "
                    "reply with next_action.action \"repeat\" until they are."
                ),
            )
        if action.labels_add or action.labels_remove:
            logger.warning("Labels are not supported for project work-items; ignoring them for %s", key)
        logger.info("Project %s has no open items; nothing to apply", key)
        return BoundaryRecord(action=action.action, work_item=key, noop=True)
