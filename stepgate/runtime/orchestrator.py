"""
orchestrator.py - The per-session step loop.

One iteration:

    1. stop if the iteration budget is spent
    2. resolve the step's prompt (or its format-error variant)
    3. compute tool permissions for the step kind
    4. invoke the worker and wait for its reply
    5. extract and validate the structured output
    6. apply the intent to get the next step
    7. on a terminal ``closing``, check the readiness evidence, then run
       the boundary hook
    8. accept: count the iteration, move the cursor, record history
    9. evaluate the completion handler
   10. persist the session

Format errors and illegal intents do not count as iterations. They share a
bounded retry counter; exceeding it blocks the session with FormatExhausted.

Usage:
    from stepgate.runtime.orchestrator import Orchestrator

    orchestrator = Orchestrator(agent, worker=create_worker(), tracker=create_tracker())
    session = orchestrator.start(WorkItemRef(WorkItemKind.ISSUE, "42"))
    result = orchestrator.run(session)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from stepgate.config import runtime_config
from stepgate.config.agent_registry import LoadedAgent, validate_parameters
from stepgate.config.step_registry import StepDefinition
from stepgate.runtime.boundary import BoundaryHook
from stepgate.runtime.completion import CompletionHandler, create_completion_handler
from stepgate.runtime.errors import (
    BudgetExhausted,
    DefinitionError,
    ExternalOperationError,
    IllegalIntentError,
    StepgateError,
    ValidationError,
    WorkerError,
)
from stepgate.runtime.intent_machine import IntentStateMachine, Transition
from stepgate.runtime.output_validator import OutputValidator
from stepgate.runtime.step_resolver import StepResolver
from stepgate.runtime.storage import append_event, read_session, release_session, write_session
from stepgate.runtime.tool_policy import ToolPolicy, permissions_summary
from stepgate.runtime.tracker.base import WorkItemTracker, fetch_snapshot_with_retry
from stepgate.runtime.types import (
    CompletionVerdict,
    ExecutionSession,
    ExternalSnapshot,
    HistoryEntry,
    ReasonCode,
    RunResult,
    SessionEvent,
    SessionStatus,
    StructuredOutput,
    WorkItemKind,
    WorkItemRef,
    generate_session_id,
)
from stepgate.runtime.workers.base import WorkerEngine
from stepgate.runtime.workers.models import WorkerRequest
from stepgate.runtime.worktree import setup_worktree

logger = logging.getLogger(__name__)

# Registry lookup key for sessions without an external work-item
_ENTRY_KEYS: Dict[WorkItemKind, str] = {
    WorkItemKind.ISSUE: "issue",
    WorkItemKind.PROJECT: "project",
    WorkItemKind.PULL_REQUEST: "pr",
    WorkItemKind.NONE: "iterate",
}


@dataclass
class OrchestratorSettings:
    """Loop settings, usually read from runtime config.

    Attributes:
        max_format_retries: Consecutive format/intent failures tolerated
            before the session is blocked with FormatExhausted.
        history_window: Accepted iterations summarized in each prompt.
        default_iteration_budget: Budget when neither the CLI nor an
            iterationBudget completion config sets one.
        worker_timeout: Seconds per worker invocation.
        tracker_settings: Retry settings for tracker reads.
        sessions_dir: Where sessions are persisted.
        worktree_root: Root directory for session worktrees.
        persist: Write session.json and events.jsonl.
    """

    max_format_retries: int = 3
    history_window: int = 5
    default_iteration_budget: int = 20
    worker_timeout: int = 1800
    tracker_settings: Dict[str, Any] = field(default_factory=dict)
    sessions_dir: Optional[Path] = None
    worktree_root: Optional[Path] = None
    persist: bool = True

    @classmethod
    def from_config(cls) -> "OrchestratorSettings":
        return cls(
            max_format_retries=runtime_config.get_max_format_retries(),
            history_window=runtime_config.get_history_window(),
            default_iteration_budget=runtime_config.get_max_iterations(),
            worker_timeout=runtime_config.get_worker_timeout(),
            tracker_settings=runtime_config.get_tracker_settings(),
            sessions_dir=runtime_config.get_sessions_dir(),
            worktree_root=runtime_config.get_worktree_root(),
        )


class Orchestrator:
    """Drives sessions of one agent through its step flow.

    The registry is shared read-only; each session is owned by exactly one
    run() call at a time, so one Orchestrator may serve several sessions
    concurrently as long as they are different sessions.

    Args:
        agent: Loaded agent definition and registry.
        worker: Worker engine invoked once per iteration.
        tracker: External tracker for snapshots and the boundary hook.
        settings: Loop settings. Defaults to runtime config.
        completion: Completion handler override.
        sleep_func: Injectable sleep for tracker retry backoff.
        cancel_event: When set, sessions stop at the next iteration boundary.
        worktree_factory: Replaces setup_worktree (for tests).
    """

    def __init__(
        self,
        agent: LoadedAgent,
        worker: WorkerEngine,
        tracker: WorkItemTracker,
        settings: Optional[OrchestratorSettings] = None,
        completion: Optional[CompletionHandler] = None,
        sleep_func: Optional[Callable[[float], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        worktree_factory: Optional[Callable[..., Any]] = None,
    ):
        self.agent = agent
        self.definition = agent.definition
        self.registry = agent.registry
        self.worker = worker
        self.tracker = tracker
        self.settings = settings or OrchestratorSettings.from_config()
        self.resolver = StepResolver(self.registry, self.definition.name)
        self.intents = IntentStateMachine(self.registry)
        self.validator = OutputValidator()
        self.policy = ToolPolicy(self.definition.allowed_tools, self.definition.permission_mode)
        self.boundary = BoundaryHook(
            tracker,
            self.definition.boundary,
            self.settings.tracker_settings,
            sleep_func=sleep_func,
        )
        self.completion = completion or create_completion_handler(self.definition.completion, self.registry)
        self._sleep_func = sleep_func
        self._cancel_event = cancel_event
        self._worktree_factory = worktree_factory or setup_worktree
        self._system_prompt = self._load_system_prompt()

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def _load_system_prompt(self) -> Optional[str]:
        path_value = self.definition.system_prompt_path
        if not path_value or self.definition.agent_dir is None:
            return None
        path = self.definition.agent_dir / path_value
        if not path.is_file():
            logger.warning("System prompt %s not found for agent %s", path, self.definition.name)
            return None
        return path.read_text(encoding="utf-8")

    def default_budget(self) -> int:
        if self.definition.completion.type == "iterationBudget":
            return int(self.definition.completion.options.get("maxIterations", self.settings.default_iteration_budget))
        return self.settings.default_iteration_budget

    @staticmethod
    def _work_item_params(work_item: WorkItemRef) -> Dict[str, Any]:
        if work_item.id is None:
            return {}
        if work_item.kind == WorkItemKind.ISSUE:
            return {"issue": work_item.id, "issue_number": work_item.id}
        if work_item.kind == WorkItemKind.PROJECT:
            return {"project": work_item.id, "project_number": work_item.id}
        if work_item.kind == WorkItemKind.PULL_REQUEST:
            return {"pr": work_item.id, "pr_number": work_item.id}
        return {}

    def start(
        self,
        work_item: WorkItemRef,
        iteration_budget: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
        branch: Optional[str] = None,
    ) -> ExecutionSession:
        """Create and persist a new session at the entry step.

        Raises:
            DefinitionError: If a required parameter is missing or the entry
                step cannot be determined.
            WorktreeError: If the agent enables worktrees and setup fails.
        """
        item_params = self._work_item_params(work_item)
        supplied = dict(item_params)
        supplied.update(params or {})
        final_params = validate_parameters(self.definition, supplied, provided_elsewhere=item_params)

        entry = self.registry.entry_for(_ENTRY_KEYS[work_item.kind])
        step = self.registry.get(entry)
        budget = iteration_budget if iteration_budget is not None else self.default_budget()
        if budget < 1:
            raise DefinitionError(f"Iteration budget must be >= 1, got {budget}", location="--iterate-max")

        session = ExecutionSession(
            session_id=generate_session_id(),
            agent_name=self.definition.name,
            work_item=work_item,
            step_id=entry,
            phase=step.phase,
            iteration_budget=budget,
            params=final_params,
            branch=branch,
        )

        if self.definition.worktree.enabled:
            root = Path(self.definition.worktree.root) if self.definition.worktree.root else self.settings.worktree_root
            setup = self._worktree_factory(
                root or Path("../worktree"),
                branch=branch,
                branch_base_name=f"{self.definition.name}/{work_item.key}",
            )
            session.branch = setup.branch
            session.worktree_path = str(setup.path)

        logger.info(
            "Started session %s for agent %s on %s at %s (budget %d)",
            session.session_id,
            session.agent_name,
            work_item,
            entry,
            budget,
        )
        self._persist(session)
        self._emit(session, "session_start", {"work_item": work_item.key, "budget": budget, "entry_step": entry})
        return session

    def resume(self, session_id: str, iteration_budget: Optional[int] = None) -> ExecutionSession:
        """Reload a persisted session so run() can continue it.

        A Blocked session is reopened with a fresh retry counter; a new
        iteration budget replaces the stored one when given. Without one, a
        session stopped by a failed boundary mutation on its last budgeted
        iteration gets one extra iteration to retry the closure.

        Raises:
            DefinitionError: If the session does not exist, belongs to another
                agent, or its cursor is not in the registry.
        """
        session = read_session(session_id, self.settings.sessions_dir)
        if session is None:
            raise DefinitionError(f"Session '{session_id}' not found", location=str(self.settings.sessions_dir))
        if session.agent_name != self.definition.name:
            raise DefinitionError(
                f"Session '{session_id}' belongs to agent '{session.agent_name}', not '{self.definition.name}'"
            )
        self.registry.get(session.step_id)

        if iteration_budget is not None:
            session.iteration_budget = iteration_budget
        elif (
            session.reason == ReasonCode.EXTERNAL_OPERATION_ERROR
            and session.iteration_count >= session.iteration_budget
        ):
            # the closure turn that hit the tracker failure gets one more try
            session.iteration_budget = session.iteration_count + 1
            logger.info(
                "Session %s stopped on a failed boundary mutation; extending budget to %d",
                session_id,
                session.iteration_budget,
            )
        if session.status in (SessionStatus.BLOCKED, SessionStatus.FAILED):
            logger.info("Reopening %s session %s at %s", session.status.value, session_id, session.step_id)
            session.status = SessionStatus.RUNNING
            session.reason = None
            session.message = None
            session.retry_count = 0
        self._emit(session, "session_resume", {"step_id": session.step_id, "iteration": session.iteration_count})
        return session

    def execute(
        self,
        work_item: WorkItemRef,
        iteration_budget: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
        branch: Optional[str] = None,
    ) -> RunResult:
        """Start a session and run it to a stop.

        Definition and worktree errors are reported as a failed RunResult
        rather than raised.
        """
        try:
            session = self.start(work_item, iteration_budget, params, branch)
        except StepgateError as e:
            logger.error("Could not start session for %s: %s", work_item, e.message)
            return RunResult(session_id="", status=SessionStatus.FAILED, reason=ReasonCode.ERROR, iterations=0, message=e.message)
        return self.run(session)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run(self, session: ExecutionSession) -> RunResult:
        """Run the loop until the session stops.

        Returns:
            RunResult with the reason code and total iterations.
        """
        if session.is_finished:
            return self._result(session)

        try:
            self._drive(session)
        finally:
            release_session(session.session_id)
        return self._result(session)

    def _drive(self, session: ExecutionSession) -> None:
        try:
            if session.iteration_count == 0 and self._already_complete(session):
                self._persist(session)
                return

            while not session.is_finished:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    self._finish(session, SessionStatus.BLOCKED, ReasonCode.CANCELLED, "Cancelled between iterations")
                    break
                if session.iteration_count >= session.iteration_budget:
                    exhausted = BudgetExhausted(session.iteration_count, session.iteration_budget)
                    self._finish(session, SessionStatus.BLOCKED, ReasonCode.BUDGET_EXHAUSTED, exhausted.message)
                    break
                self._iterate(session)
                self._persist(session)
        except StepgateError as e:
            if not e.fatal:
                raise
            logger.error("Session %s failed: %s", session.session_id, e.message)
            self._finish(session, SessionStatus.FAILED, ReasonCode.ERROR, e.message)

        self._persist(session)

    def _iterate(self, session: ExecutionSession) -> None:
        step = self.registry.get(session.step_id)
        variables = self._variables(session)
        if session.format_error:
            resolved = self.resolver.resolve_format_error(step.step_id, session.format_error, variables)
        else:
            resolved = self.resolver.resolve(step.step_id, variables)
        permissions = self.policy.for_step(step.step_kind)

        self._emit(
            session,
            "step_start",
            {
                "iteration": session.iteration_count + 1,
                "retry": session.retry_count,
                "prompt_source": resolved.source,
                "permissions": permissions_summary(permissions),
            },
            step_id=step.step_id,
        )
        result = self.worker.run(
            WorkerRequest(
                session_id=session.session_id,
                step_id=step.step_id,
                prompt=resolved.prompt,
                schema=resolved.schema,
                permissions=permissions,
                cwd=session.worktree_path,
                system_prompt=self._system_prompt,
                timeout=self.settings.worker_timeout,
            )
        )
        if not result.succeeded:
            raise WorkerError(
                f"Worker {result.status} at {step.step_id}: {result.error or 'no error message'}",
                timed_out=result.status == "timeout",
            )

        try:
            output = self.validator.parse(result.text, resolved.schema, result.structured_output, step.intent_field)
        except ValidationError as e:
            self._reject(session, step, e.feedback(), "format_error", format_error=True)
            return

        blocked = self.policy.blocked_output_actions(step.step_kind, output)
        if blocked:
            self._emit(session, "side_effect_blocked", {"requested": blocked}, step_id=step.step_id)

        try:
            transition = self.intents.transition(step.step_id, output)
        except IllegalIntentError as e:
            self._reject(session, step, e.feedback(), "illegal_intent")
            return

        record = None
        boundary_error: Optional[ExternalOperationError] = None
        if transition.terminal:
            failures = [] if session.boundary_applied else self.boundary.readiness_failures(output)
            if failures:
                message = "Closure is not ready:\n" + "\n".join(f"- {failure}" for failure in failures)
                self._reject(session, step, message, "not_ready")
                return
            try:
                record = self.boundary.invoke(session, step, output)
            except IllegalIntentError as e:
                self._reject(session, step, e.feedback(), "illegal_intent")
                return
            except ExternalOperationError as e:
                boundary_error = e

        self._accept(session, step, output, transition)

        if boundary_error is not None:
            self._emit(session, "boundary", {"error": boundary_error.to_dict()}, step_id=step.step_id)
            self._finish(session, SessionStatus.BLOCKED, ReasonCode.EXTERNAL_OPERATION_ERROR, boundary_error.message)
            return
        if record is not None:
            session.terminal = True
            session.boundary_applied = True
            session.boundary = record
            self._emit(
                session,
                "boundary",
                {"action": record.action.value, "operations": record.operations, "noop": record.noop},
                step_id=step.step_id,
            )

        self._evaluate_completion(session, transition)

    def _accept(
        self,
        session: ExecutionSession,
        step: StepDefinition,
        output: StructuredOutput,
        transition: Transition,
    ) -> None:
        session.iteration_count += 1
        session.retry_count = 0
        session.feedback = []
        session.format_error = None
        session.last_output = output.data
        session.history.append(
            HistoryEntry(
                iteration=session.iteration_count,
                step_id=step.step_id,
                phase=step.phase,
                intent=transition.intent.value,
                next_step_id=transition.to_step,
                summary=output.summary,
                status=output.status,
            )
        )
        if transition.to_step is not None:
            next_step = self.registry.get(transition.to_step)
            if next_step.phase != step.phase:
                logger.info(
                    "Session %s: %s --%s--> %s",
                    session.session_id,
                    step.step_id,
                    transition.intent.value,
                    next_step.step_id,
                )
            session.step_id = next_step.step_id
            session.phase = next_step.phase
        self._emit(
            session,
            "transition",
            {
                "iteration": session.iteration_count,
                "intent": transition.intent.value,
                "to_step": transition.to_step,
                "terminal": transition.terminal,
                "source": transition.source,
            },
            step_id=step.step_id,
        )

    def _reject(
        self,
        session: ExecutionSession,
        step: StepDefinition,
        message: str,
        kind: str,
        format_error: bool = False,
    ) -> None:
        """Record a recoverable failure without advancing the cursor."""
        session.retry_count += 1
        if format_error:
            session.format_error = message
        else:
            session.format_error = None
            session.feedback = [message]
        logger.warning(
            "Session %s: %s at %s (retry %d/%d): %s",
            session.session_id,
            kind,
            step.step_id,
            session.retry_count,
            self.settings.max_format_retries,
            message.splitlines()[0] if message else "",
        )
        self._emit(session, kind, {"message": message, "retry": session.retry_count}, step_id=step.step_id)
        if session.retry_count > self.settings.max_format_retries:
            self._finish(
                session,
                SessionStatus.BLOCKED,
                ReasonCode.FORMAT_EXHAUSTED,
                f"Gave up at {step.step_id} after {session.retry_count} invalid replies: {message.splitlines()[0]}",
            )

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def _snapshot(self, session: ExecutionSession) -> Optional[ExternalSnapshot]:
        if not self.completion.needs_snapshot or session.work_item.kind == WorkItemKind.NONE:
            return None
        try:
            return fetch_snapshot_with_retry(
                self.tracker,
                session.work_item,
                self.settings.tracker_settings,
                sleep_func=self._sleep_func,
            )
        except ExternalOperationError as e:
            logger.warning("Could not read %s; treating completion as not met: %s", session.work_item, e.message)
            return None

    def _already_complete(self, session: ExecutionSession) -> bool:
        """Stop before the first iteration if the work-item is already done."""
        if not self.completion.needs_snapshot:
            return False
        snapshot = self._snapshot(session)
        if self.completion.evaluate(session, snapshot) != CompletionVerdict.COMPLETED:
            return False
        logger.info("%s already satisfies completion; nothing to do", session.work_item)
        self._finish(session, SessionStatus.COMPLETED, ReasonCode.COMPLETED, "Work-item already complete")
        return True

    def _evaluate_completion(self, session: ExecutionSession, transition: Transition) -> None:
        if session.is_finished:
            return
        snapshot = self._snapshot(session)
        verdict = self.completion.evaluate(session, snapshot)
        self._emit(
            session,
            "completion",
            {"verdict": verdict.value, "handler": self.completion.type_name},
            step_id=session.step_id,
        )

        if verdict == CompletionVerdict.BLOCKED:
            self._finish(session, SessionStatus.BLOCKED, ReasonCode.ERROR, "Completion handler reported blocked")
        elif transition.terminal:
            if verdict != CompletionVerdict.COMPLETED:
                logger.info(
                    "Session %s closed via %s; %s handler not yet satisfied",
                    session.session_id,
                    session.boundary.action.value if session.boundary else "closing",
                    self.completion.type_name,
                )
            self._finish(session, SessionStatus.COMPLETED, ReasonCode.COMPLETED, "Closure step completed")
        elif verdict == CompletionVerdict.COMPLETED:
            reason = self.completion.reason(session, snapshot)
            status = SessionStatus.COMPLETED if reason == ReasonCode.COMPLETED else SessionStatus.BLOCKED
            self._finish(session, status, reason, f"Completion criteria met: {self.completion.describe()}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _variables(self, session: ExecutionSession) -> Dict[str, Any]:
        ref = session.work_item
        window = session.history[-self.settings.history_window:] if self.settings.history_window > 0 else []
        history = "\n".join(f"- [{h.iteration}] {h.step_id} -> {h.intent}: {h.summary}" for h in window)
        feedback = ""
        if session.feedback:
            feedback = "\n## Feedback on your previous reply\n\n" + "\n".join(session.feedback) + "\n"

        variables: Dict[str, Any] = dict(session.params)
        variables.update(self._work_item_params(ref))
        variables.update(
            {
                "work_item": str(ref),
                "repository": ref.repo,
                "branch": session.branch,
                "iteration": session.iteration_count + 1,
                "max_iterations": session.iteration_budget,
                "remaining": session.remaining,
                "previous_summary": session.history[-1].summary if session.history else "(none yet)",
                "history": history or "(none yet)",
                "feedback": feedback,
                "completion_criteria": self.completion.describe(),
            }
        )
        return variables

    def _finish(self, session: ExecutionSession, status: SessionStatus, reason: ReasonCode, message: str) -> None:
        session.status = status
        session.reason = reason
        session.message = message
        log = logger.info if reason == ReasonCode.COMPLETED else logger.warning
        log(
            "Session %s ended: %s (%s) after %d iteration(s): %s",
            session.session_id,
            status.value,
            reason.value,
            session.iteration_count,
            message,
        )
        self._emit(
            session,
            "session_end",
            {"status": status.value, "reason": reason.value, "iterations": session.iteration_count, "message": message},
            step_id=session.step_id,
        )

    def _persist(self, session: ExecutionSession) -> None:
        if self.settings.persist:
            write_session(session, self.settings.sessions_dir)

    def _emit(
        self,
        session: ExecutionSession,
        kind: str,
        payload: Dict[str, Any],
        step_id: Optional[str] = None,
    ) -> None:
        if self.settings.persist:
            append_event(
                SessionEvent(session_id=session.session_id, kind=kind, step_id=step_id, payload=payload),
                self.settings.sessions_dir,
            )

    @staticmethod
    def _result(session: ExecutionSession) -> RunResult:
        return RunResult(
            session_id=session.session_id,
            status=session.status,
            reason=session.reason or ReasonCode.ERROR,
            iterations=session.iteration_count,
            message=session.message,
            boundary=session.boundary,
        )
