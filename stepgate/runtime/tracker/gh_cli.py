"""
gh_cli.py - GitHub tracker backed by the ``gh`` CLI.

Reads:
    gh issue view <n> --json state,labels
    gh pr view <n> --json state,labels
    gh project item-list <n> --owner <owner> --format json

Mutations (boundary hook only):
    gh issue edit <n> --add-label a,b / --remove-label a,b
    gh issue close <n> [--comment <body>]
    gh pr merge <n> --merge
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any, Dict, Iterable, List, Optional

from stepgate.runtime.errors import ExternalOperationError
from stepgate.runtime.tracker.base import WorkItemTracker
from stepgate.runtime.types import ExternalSnapshot, WorkItemKind, WorkItemRef

logger = logging.getLogger(__name__)

# Project item statuses that count as finished
DONE_STATUSES = frozenset({"done", "closed", "completed", "merged"})


class GitHubCliTracker(WorkItemTracker):
    """Tracker that shells out to the GitHub CLI."""

    name = "gh"

    def __init__(self, command: str = "gh", timeout: int = 60, cwd: Optional[str] = None):
        self._command = command
        self._timeout = timeout
        self._cwd = cwd

    def _run(self, args: List[str], operation: str, ref: WorkItemRef) -> str:
        cmd = [self._command] + args
        if ref.repo and ref.kind != WorkItemKind.PROJECT:
            cmd += ["--repo", ref.repo]
        logger.debug("Running %s", " ".join(cmd))
        try:
            completed = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                cwd=self._cwd,
            )
        except FileNotFoundError as e:
            raise ExternalOperationError(operation, f"'{self._command}' not found", work_item=ref.key) from e
        except subprocess.TimeoutExpired as e:
            raise ExternalOperationError(
                operation, f"timed out after {self._timeout}s", work_item=ref.key
            ) from e
        if completed.returncode != 0:
            error = (completed.stderr or "").strip()[:500] or f"exit code {completed.returncode}"
            raise ExternalOperationError(operation, error, work_item=ref.key)
        return completed.stdout

    def _require_id(self, ref: WorkItemRef, operation: str) -> str:
        if ref.id is None or ref.kind == WorkItemKind.NONE:
            raise ExternalOperationError(operation, "session has no work-item", work_item=ref.key)
        return ref.id

    def _parse_json(self, text: str, operation: str, ref: WorkItemRef) -> Any:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise ExternalOperationError(operation, f"unparsable gh output: {e}", work_item=ref.key) from e

    def fetch_snapshot(self, ref: WorkItemRef) -> ExternalSnapshot:
        item_id = self._require_id(ref, "fetch")
        if ref.kind == WorkItemKind.PROJECT:
            return self._fetch_project(ref, item_id)

        noun = "pr" if ref.kind == WorkItemKind.PULL_REQUEST else "issue"
        data = self._parse_json(
            self._run([noun, "view", item_id, "--json", "state,labels"], "fetch", ref),
            "fetch",
            ref,
        )
        labels = [label.get("name", "") for label in data.get("labels") or [] if isinstance(label, dict)]
        return ExternalSnapshot(state=str(data.get("state", "UNKNOWN")).upper(), labels=labels)

    def _fetch_project(self, ref: WorkItemRef, project_id: str) -> ExternalSnapshot:
        owner = ref.repo or "@me"
        data: Dict[str, Any] = self._parse_json(
            self._run(
                ["project", "item-list", project_id, "--owner", owner, "--format", "json", "--limit", "500"],
                "fetch",
                ref,
            ),
            "fetch",
            ref,
        )
        items = data.get("items") or []
        open_items = sum(1 for item in items if str(item.get("status", "")).lower() not in DONE_STATUSES)
        return ExternalSnapshot(state="CLOSED" if open_items == 0 else "OPEN", open_items=open_items)

    def _noun(self, ref: WorkItemRef, operation: str) -> str:
        if ref.kind == WorkItemKind.ISSUE:
            return "issue"
        if ref.kind == WorkItemKind.PULL_REQUEST:
            return "pr"
        raise ExternalOperationError(operation, f"not supported for {ref.kind.value} work-items", work_item=ref.key)

    def add_labels(self, ref: WorkItemRef, labels: Iterable[str]) -> None:
        labels = list(labels)
        if not labels:
            return
        item_id = self._require_id(ref, "add_labels")
        self._run([self._noun(ref, "add_labels"), "edit", item_id, "--add-label", ",".join(labels)], "add_labels", ref)

    def remove_labels(self, ref: WorkItemRef, labels: Iterable[str]) -> None:
        labels = list(labels)
        if not labels:
            return
        item_id = self._require_id(ref, "remove_labels")
        self._run(
            [self._noun(ref, "remove_labels"), "edit", item_id, "--remove-label", ",".join(labels)],
            "remove_labels",
            ref,
        )

    def close(self, ref: WorkItemRef, comment: Optional[str] = None) -> None:
        item_id = self._require_id(ref, "close")
        args = [self._noun(ref, "close"), "close", item_id]
        if comment:
            args += ["--comment", comment]
        self._run(args, "close", ref)

    def merge(self, ref: WorkItemRef) -> None:
        item_id = self._require_id(ref, "merge")
        if ref.kind != WorkItemKind.PULL_REQUEST:
            raise ExternalOperationError("merge", "only pull requests can be merged", work_item=ref.key)
        self._run(["pr", "merge", item_id, "--merge"], "merge", ref)
