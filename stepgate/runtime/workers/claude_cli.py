"""
claude_cli.py - Worker engine backed by the Claude CLI.

Runs ``claude -p --output-format json`` with the prompt on stdin, in the
session's worktree. Tool permissions are passed as CLI flags so the
restrictions hold no matter what the model decides to do:

    --permission-mode <mode>
    --allowedTools <comma list>
    --disallowedTools <tool> ... "Bash(gh issue close:*)" ...
    --json-schema <schema>
"""

from __future__ import annotations

import json
import logging
import subprocess
import time
from typing import Any, Dict, List, Optional

from .base import WorkerEngine
from .models import WorkerRequest, WorkerResult

logger = logging.getLogger(__name__)


def build_cli_args(command: str, request: WorkerRequest) -> List[str]:
    """Assemble the Claude CLI argument list for a request."""
    args = [command, "-p", "--output-format", "json"]
    permissions = request.permissions
    if permissions is not None:
        args += ["--permission-mode", permissions.permission_mode]
        if permissions.allowed:
            args += ["--allowedTools", ",".join(permissions.allowed)]
        disallowed = permissions.to_cli_disallowed()
        if disallowed:
            args += ["--disallowedTools"] + disallowed
    if request.schema:
        args += ["--json-schema", json.dumps(request.schema)]
    if request.model:
        args += ["--model", request.model]
    if request.system_prompt:
        args += ["--append-system-prompt", request.system_prompt]
    return args


def parse_cli_output(stdout: str) -> Dict[str, Any]:
    """Parse ``--output-format json`` output.

    The CLI prints one JSON result object. Some versions print a JSON array
    of events instead; the last ``result`` event is used then.
    """
    stdout = (stdout or "").strip()
    if not stdout:
        return {}
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError:
        # Not JSON at all: treat the whole output as the reply text
        return {"result": stdout}
    if isinstance(data, list):
        results = [e for e in data if isinstance(e, dict) and e.get("type") == "result"]
        return results[-1] if results else {}
    return data if isinstance(data, dict) else {"result": stdout}


class ClaudeCliWorker(WorkerEngine):
    """Invokes the Claude CLI once per iteration."""

    def __init__(self, command: str = "claude", default_timeout: int = 1800, model: Optional[str] = None):
        self._command = command
        self._default_timeout = default_timeout
        self._model = model

    @property
    def engine_id(self) -> str:
        return "claude-cli"

    def run(self, request: WorkerRequest) -> WorkerResult:
        if request.model is None and self._model:
            request.model = self._model
        args = build_cli_args(self._command, request)
        timeout = request.timeout or self._default_timeout
        logger.debug("Invoking worker for %s in %s", request.step_id, request.cwd or ".")
        start = time.monotonic()

        try:
            process = subprocess.Popen(
                args,
                cwd=request.cwd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError:
            return WorkerResult(status="failed", error=f"Worker command '{self._command}' not found")

        try:
            stdout_data, stderr_data = process.communicate(input=request.prompt, timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            return WorkerResult(
                status="timeout",
                error=f"Worker timed out after {timeout}s",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        duration_ms = int((time.monotonic() - start) * 1000)
        if process.returncode != 0:
            error = stderr_data[:500] if stderr_data else f"Exit code {process.returncode}"
            return WorkerResult(status="failed", error=error, duration_ms=duration_ms)

        data = parse_cli_output(stdout_data)
        if data.get("is_error"):
            return WorkerResult(
                status="failed",
                text=str(data.get("result") or ""),
                error=str(data.get("result") or data.get("subtype") or "worker reported an error"),
                duration_ms=duration_ms,
            )
        structured = data.get("structured_output")
        return WorkerResult(
            status="succeeded",
            text=str(data.get("result") or ""),
            structured_output=structured if isinstance(structured, dict) else None,
            duration_ms=duration_ms,
            events=[data] if data else [],
        )
