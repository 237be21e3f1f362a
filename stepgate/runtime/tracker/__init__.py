"""External work-item trackers.

Usage:
    from stepgate.runtime.tracker import create_tracker

    tracker = create_tracker("gh")
    snapshot = tracker.fetch_snapshot(WorkItemRef(WorkItemKind.ISSUE, "42"))
"""

from __future__ import annotations

from typing import Optional

from stepgate.config.runtime_config import get_tracker_settings
from stepgate.runtime.tracker.base import WorkItemTracker, fetch_snapshot_with_retry
from stepgate.runtime.tracker.gh_cli import GitHubCliTracker
from stepgate.runtime.tracker.memory import InMemoryTracker
from stepgate.runtime.tracker.retry import compute_delay, retry_with_backoff

__all__ = [
    "WorkItemTracker",
    "GitHubCliTracker",
    "InMemoryTracker",
    "create_tracker",
    "fetch_snapshot_with_retry",
    "retry_with_backoff",
    "compute_delay",
]


def create_tracker(kind: str = "gh", cwd: Optional[str] = None) -> WorkItemTracker:
    """Create a tracker by name ("gh" or "memory")."""
    if kind == "memory":
        return InMemoryTracker()
    if kind == "gh":
        settings = get_tracker_settings()
        return GitHubCliTracker(
            command=str(settings.get("command", "gh")),
            timeout=int(settings.get("timeout_seconds", 60)),
            cwd=cwd,
        )
    raise ValueError(f"Unknown tracker '{kind}' (valid: gh, memory)")
