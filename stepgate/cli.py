"""
cli.py - Command line entry point.

Usage:
    stepgate run --agent iterator --issue 42
    stepgate run --agent iterator --issue 1 --issue 2 --max-parallel 2
    stepgate run --agent iterator --project 7 --iterate-max 30 --branch fix/docs
    stepgate run --agent iterator --issue 42 --resume
    stepgate sessions [--agent iterator]
    stepgate serve --port 5002

Exit codes:
    0  every session Completed
    1  definition, worker or worktree error
    2  a session ended Blocked (budget, format or external operation)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from stepgate.config import runtime_config
from stepgate.config.agent_registry import load_agent
from stepgate.runtime.errors import DefinitionError, StepgateError
from stepgate.runtime.orchestrator import Orchestrator, OrchestratorSettings
from stepgate.runtime.parallel import SessionJob, aggregate_exit_code, branch_for_job, run_sessions
from stepgate.runtime.storage import find_latest_session, list_sessions, read_session
from stepgate.runtime.tracker import create_tracker
from stepgate.runtime.types import RunResult, WorkItemKind, WorkItemRef, run_result_to_dict
from stepgate.runtime.workers import create_worker

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1


def _parse_params(values: Optional[List[str]]) -> Dict[str, Any]:
    """Parse repeated ``--param key=value`` options."""
    params: Dict[str, Any] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise DefinitionError(f"Invalid --param '{item}'", fix_action="Use --param key=value")
        params[key.strip()] = value
    return params


def _work_items(args: argparse.Namespace) -> List[WorkItemRef]:
    issues = args.issue or []
    chosen = sum(1 for present in (issues, args.project, args.pr) if present)
    if chosen > 1:
        raise DefinitionError("Use only one of --issue, --project or --pr")
    if issues:
        return [WorkItemRef(WorkItemKind.ISSUE, str(issue), args.repo) for issue in issues]
    if args.project:
        return [WorkItemRef(WorkItemKind.PROJECT, str(args.project), args.repo)]
    if args.pr:
        return [WorkItemRef(WorkItemKind.PULL_REQUEST, str(args.pr), args.repo)]
    return [WorkItemRef(WorkItemKind.NONE)]


def _print_result(result: RunResult, as_json: bool) -> None:
    if as_json:
        print(json.dumps(run_result_to_dict(result)))
        return
    line = f"{result.session_id or '-'}: {result.status.value} ({result.reason.value}) after {result.iterations} iteration(s)"
    if result.message:
        line += f" - {result.message}"
    print(line)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> int:
    settings = OrchestratorSettings.from_config()
    if args.sessions_dir is not None:
        settings.sessions_dir = args.sessions_dir
    if args.iterate_max is not None and args.iterate_max < 1:
        print("--iterate-max must be >= 1", file=sys.stderr)
        return EXIT_ERROR

    try:
        agent = load_agent(args.agent, args.agents_dir)
        work_items = _work_items(args)
        params = _parse_params(args.param)
        tracker = create_tracker(args.tracker)
    except DefinitionError as e:
        print(e.format(), file=sys.stderr)
        return EXIT_ERROR
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return EXIT_ERROR

    cancel_event = threading.Event()
    orchestrator = Orchestrator(
        agent,
        worker=create_worker(args.worker),
        tracker=tracker,
        settings=settings,
        cancel_event=cancel_event,
    )

    jobs: List[SessionJob] = []
    for work_item in work_items:
        job = SessionJob(
            work_item=work_item,
            iteration_budget=args.iterate_max,
            params=params,
            branch=branch_for_job(args.branch, work_item, len(work_items)),
        )
        if args.resume:
            latest = find_latest_session(agent.definition.name, work_item, settings.sessions_dir)
            if latest is None:
                logger.warning("No session to resume for %s; starting a new one", work_item)
            else:
                logger.info("Resuming session %s for %s", latest.session_id, work_item)
                job.resume_session_id = latest.session_id
        jobs.append(job)

    max_workers = args.max_parallel or runtime_config.get_max_parallel_sessions()
    try:
        results = run_sessions(orchestrator, jobs, max_workers=max_workers)
    except KeyboardInterrupt:
        cancel_event.set()
        print("Interrupted; sessions can be continued with --resume", file=sys.stderr)
        return EXIT_ERROR
    except StepgateError as e:
        print(e.message, file=sys.stderr)
        return EXIT_ERROR

    for result in results:
        _print_result(result, args.json)
    return aggregate_exit_code(results)


def cmd_sessions(args: argparse.Namespace) -> int:
    sessions_dir = args.sessions_dir or runtime_config.get_sessions_dir()
    rows = []
    for session_id in list_sessions(sessions_dir):
        session = read_session(session_id, sessions_dir)
        if session is None or (args.agent and session.agent_name != args.agent):
            continue
        rows.append(session)

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "session_id": s.session_id,
                        "agent": s.agent_name,
                        "work_item": s.work_item.key,
                        "step_id": s.step_id,
                        "status": s.status.value,
                        "reason": s.reason.value if s.reason else None,
                        "iterations": s.iteration_count,
                    }
                    for s in rows
                ],
                indent=2,
            )
        )
        return EXIT_OK

    if not rows:
        print("No sessions found")
        return EXIT_OK
    for s in rows:
        reason = s.reason.value if s.reason else "-"
        print(
            f"{s.session_id}  {s.agent_name:<16} {s.work_item.key:<14} {s.status.value:<10} "
            f"{reason:<22} {s.iteration_count}/{s.iteration_budget}  {s.step_id}"
        )
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from stepgate.api.server import create_app

    app = create_app(sessions_dir=args.sessions_dir)
    print(f"Starting stepgate API at http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port)
    return EXIT_OK


# -----------------------------------------------------------------------------
# Parser
# -----------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepgate",
        description="Drive LLM workers through declarative step flows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--sessions-dir",
        type=Path,
        default=None,
        help="Session storage directory (default: runtime config)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run an agent against a work-item")
    run_parser.add_argument("--agent", required=True, help="Agent name under the agents directory")
    run_parser.add_argument(
        "--issue",
        action="append",
        help="Issue number (repeat to run several sessions in parallel)",
    )
    run_parser.add_argument("--project", help="Project number")
    run_parser.add_argument("--pr", help="Pull request number")
    run_parser.add_argument("--repo", default=None, help="Repository (owner/name) for tracker commands")
    run_parser.add_argument("--iterate-max", type=int, default=None, help="Iteration budget per session")
    run_parser.add_argument(
        "--resume",
        action="store_true",
        help="Continue the latest session for the same agent and work-item",
    )
    run_parser.add_argument("--branch", default=None, help="Branch name for the session worktree")
    run_parser.add_argument("--param", action="append", help="Agent parameter as key=value (repeatable)")
    run_parser.add_argument("--max-parallel", type=int, default=None, help="Concurrent sessions")
    run_parser.add_argument("--agents-dir", type=Path, default=None, help="Agents directory")
    run_parser.add_argument("--worker", choices=["cli", "stub"], default=None, help="Worker engine")
    run_parser.add_argument("--tracker", choices=["gh", "memory"], default="gh", help="Work-item tracker")
    run_parser.add_argument("--json", action="store_true", help="Print results as JSON lines")
    run_parser.add_argument("--verbose", "-v", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging")

    sessions_parser = subparsers.add_parser("sessions", help="List persisted sessions")
    sessions_parser.add_argument("--agent", default=None, help="Only sessions of this agent")
    sessions_parser.add_argument("--json", action="store_true", help="Print as JSON")

    serve_parser = subparsers.add_parser("serve", help="Serve the read-only session API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=5002, help="Port to bind to")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "run":
        return cmd_run(args)
    if args.command == "sessions":
        return cmd_sessions(args)
    if args.command == "serve":
        return cmd_serve(args)
    parser.print_help()
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
