"""
parallel.py - Run independent sessions concurrently.

Each job is one work-item driven through its own session. Sessions never
share mutable state: each gets its own ExecutionSession, its own
session directory and, when the agent enables worktrees, its own branch
and working copy. The step registry is shared read-only.

Usage:
    from stepgate.runtime.parallel import SessionJob, run_sessions

    jobs = [SessionJob(work_item=WorkItemRef(WorkItemKind.ISSUE, n)) for n in ("1", "2")]
    results = run_sessions(orchestrator, jobs, max_workers=4)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stepgate.runtime.orchestrator import Orchestrator
from stepgate.runtime.types import ReasonCode, RunResult, SessionStatus, WorkItemRef

logger = logging.getLogger(__name__)


@dataclass
class SessionJob:
    """One session to run.

    Attributes:
        work_item: The work-item the session drives.
        iteration_budget: Budget override (--iterate-max).
        params: Agent parameters.
        branch: Exact branch name for the session worktree.
        resume_session_id: Continue this persisted session instead of
            starting a new one.
    """

    work_item: WorkItemRef
    iteration_budget: Optional[int] = None
    params: Dict[str, Any] = field(default_factory=dict)
    branch: Optional[str] = None
    resume_session_id: Optional[str] = None


def branch_for_job(branch: Optional[str], work_item: WorkItemRef, job_count: int) -> Optional[str]:
    """Derive a per-session branch so parallel sessions never collide.

    Examples:
        >>> branch_for_job("fix/docs", WorkItemRef(WorkItemKind.ISSUE, "7"), 2)
        'fix/docs-issue-7'
    """
    if branch is None or job_count <= 1:
        return branch
    return f"{branch}-{work_item.key}"


def run_job(orchestrator: Orchestrator, job: SessionJob) -> RunResult:
    """Run a single job to completion, resuming when asked."""
    if job.resume_session_id:
        session = orchestrator.resume(job.resume_session_id, iteration_budget=job.iteration_budget)
        return orchestrator.run(session)
    return orchestrator.execute(job.work_item, job.iteration_budget, job.params, job.branch)


def run_sessions(
    orchestrator: Orchestrator,
    jobs: List[SessionJob],
    max_workers: int = 4,
) -> List[RunResult]:
    """Run jobs concurrently and return their results in job order.

    A job that raises is reported as a failed RunResult; the other jobs
    keep running.
    """
    if not jobs:
        return []
    if len(jobs) == 1:
        return [run_job(orchestrator, jobs[0])]

    results: List[Optional[RunResult]] = [None] * len(jobs)
    workers = max(1, min(max_workers, len(jobs)))
    logger.info("Running %d sessions with %d workers", len(jobs), workers)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stepgate-session") as executor:
        futures = {executor.submit(run_job, orchestrator, job): index for index, job in enumerate(jobs)}
        for future in as_completed(futures):
            index = futures[future]
            job = jobs[index]
            try:
                results[index] = future.result()
            except Exception as e:
                logger.error("Session for %s crashed: %s", job.work_item, e)
                results[index] = RunResult(
                    session_id=job.resume_session_id or "",
                    status=SessionStatus.FAILED,
                    reason=ReasonCode.ERROR,
                    iterations=0,
                    message=str(e),
                )
            else:
                logger.info(
                    "Session for %s finished: %s (%s)",
                    job.work_item,
                    results[index].status.value,
                    results[index].reason.value,
                )

    return [result for result in results if result is not None]


def aggregate_exit_code(results: List[RunResult]) -> int:
    """0 only if every session completed; otherwise the worst exit code."""
    if not results:
        return 1
    return max(result.exit_code for result in results)
