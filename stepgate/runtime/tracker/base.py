"""Abstract interface for external work-item trackers.

A tracker reads the state of a work-item and performs the few mutations the
boundary hook may request. Implementations raise ExternalOperationError for
every failure so callers handle one exception type.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

from stepgate.runtime.errors import ExternalOperationError
from stepgate.runtime.tracker.retry import retry_with_backoff
from stepgate.runtime.types import ExternalSnapshot, WorkItemRef

logger = logging.getLogger(__name__)


class WorkItemTracker(ABC):
    """Reads and mutates work-items in an external system."""

    name: str = "base"

    @abstractmethod
    def fetch_snapshot(self, ref: WorkItemRef) -> ExternalSnapshot:
        """Read the current state of a work-item."""

    @abstractmethod
    def add_labels(self, ref: WorkItemRef, labels: Iterable[str]) -> None:
        ...

    @abstractmethod
    def remove_labels(self, ref: WorkItemRef, labels: Iterable[str]) -> None:
        ...

    @abstractmethod
    def close(self, ref: WorkItemRef, comment: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def merge(self, ref: WorkItemRef) -> None:
        ...


def fetch_snapshot_with_retry(
    tracker: WorkItemTracker,
    ref: WorkItemRef,
    settings: Optional[Dict[str, Any]] = None,
    sleep_func=None,
) -> ExternalSnapshot:
    """Read a snapshot, retrying transient failures with backoff.

    Args:
        tracker: The tracker to read from.
        ref: Work-item to read.
        settings: Tracker settings (retries, base_delay, max_delay).
        sleep_func: Injectable sleep for tests.

    Raises:
        ExternalOperationError: Once retries are exhausted.
    """
    settings = settings or {}
    return retry_with_backoff(
        lambda: tracker.fetch_snapshot(ref),
        max_retries=int(settings.get("retries", 3)),
        base_delay=float(settings.get("base_delay", 1.0)),
        max_delay=float(settings.get("max_delay", 30.0)),
        retryable_exceptions=[ExternalOperationError],
        sleep_func=sleep_func,
        description=f"fetch {ref}",
    )
