"""In-memory tracker for tests and offline runs."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from stepgate.runtime.errors import ExternalOperationError
from stepgate.runtime.tracker.base import WorkItemTracker
from stepgate.runtime.types import ExternalSnapshot, WorkItemRef


class InMemoryTracker(WorkItemTracker):
    """Tracker backed by a dict.

    Every mutation is appended to ``mutations`` as (operation, key, detail)
    so tests can assert exactly what the boundary hook did.

    Args:
        items: Initial state, key -> (state, labels). Keys are
            ``WorkItemRef.key`` values such as "issue-42".
        fail_operations: Operations that always raise
            ("fetch", "add_labels", "remove_labels", "close", "merge").
        transient_read_failures: Number of initial fetches that raise
            before reads start succeeding.
    """

    name = "memory"

    def __init__(
        self,
        items: Optional[Dict[str, Tuple[str, Iterable[str]]]] = None,
        fail_operations: Iterable[str] = (),
        transient_read_failures: int = 0,
    ):
        self._lock = threading.Lock()
        self._items: Dict[str, Dict[str, object]] = {}
        for key, (state, labels) in (items or {}).items():
            self._items[key] = {"state": state.upper(), "labels": list(labels)}
        self.fail_operations: Set[str] = set(fail_operations)
        self._transient_read_failures = transient_read_failures
        self.mutations: List[Tuple[str, str, object]] = []
        self.fetch_count = 0

    def _item(self, ref: WorkItemRef) -> Dict[str, object]:
        return self._items.setdefault(ref.key, {"state": "OPEN", "labels": []})

    def _check(self, operation: str, ref: WorkItemRef) -> None:
        if operation in self.fail_operations:
            raise ExternalOperationError(operation, "simulated failure", work_item=ref.key)

    def state_of(self, ref: WorkItemRef) -> str:
        with self._lock:
            return str(self._item(ref)["state"])

    def labels_of(self, ref: WorkItemRef) -> List[str]:
        with self._lock:
            return list(self._item(ref)["labels"])  # type: ignore[arg-type]

    def fetch_snapshot(self, ref: WorkItemRef) -> ExternalSnapshot:
        with self._lock:
            self.fetch_count += 1
            if self._transient_read_failures > 0:
                self._transient_read_failures -= 1
                raise ExternalOperationError("fetch", "transient failure", work_item=ref.key)
            self._check("fetch", ref)
            item = self._item(ref)
            return ExternalSnapshot(state=str(item["state"]), labels=list(item["labels"]))  # type: ignore[arg-type]

    def add_labels(self, ref: WorkItemRef, labels: Iterable[str]) -> None:
        labels = list(labels)
        with self._lock:
            self._check("add_labels", ref)
            current: List[str] = self._item(ref)["labels"]  # type: ignore[assignment]
            current.extend(label for label in labels if label not in current)
            self.mutations.append(("add_labels", ref.key, labels))

    def remove_labels(self, ref: WorkItemRef, labels: Iterable[str]) -> None:
        labels = list(labels)
        with self._lock:
            self._check("remove_labels", ref)
            item = self._item(ref)
            item["labels"] = [label for label in item["labels"] if label not in labels]  # type: ignore[union-attr]
            self.mutations.append(("remove_labels", ref.key, labels))

    def close(self, ref: WorkItemRef, comment: Optional[str] = None) -> None:
        with self._lock:
            self._check("close", ref)
            self._item(ref)["state"] = "CLOSED"
            self.mutations.append(("close", ref.key, comment))

    def merge(self, ref: WorkItemRef) -> None:
        with self._lock:
            self._check("merge", ref)
            self._item(ref)["state"] = "MERGED"
            self.mutations.append(("merge", ref.key, None))
