"""Worker engines.

Usage:
    from stepgate.runtime.workers import create_worker

    worker = create_worker()          # mode from runtime config
    result = worker.run(request)
"""

from __future__ import annotations

from typing import Optional

from stepgate.config.runtime_config import (
    get_worker_command,
    get_worker_mode,
    get_worker_model,
    get_worker_timeout,
)

from .base import WorkerEngine
from .claude_cli import ClaudeCliWorker, build_cli_args, parse_cli_output
from .models import WorkerRequest, WorkerResult
from .stubs import ScriptedWorker, StubWorker, fenced

__all__ = [
    "WorkerEngine",
    "WorkerRequest",
    "WorkerResult",
    "ClaudeCliWorker",
    "ScriptedWorker",
    "StubWorker",
    "build_cli_args",
    "parse_cli_output",
    "fenced",
    "create_worker",
]


def create_worker(mode: Optional[str] = None) -> WorkerEngine:
    """Create the worker selected by ``mode`` or the runtime config."""
    mode = mode or get_worker_mode()
    if mode == "stub":
        return StubWorker()
    return ClaudeCliWorker(
        command=get_worker_command(),
        default_timeout=get_worker_timeout(),
        model=get_worker_model(),
    )
