"""Worker output, external snapshot and boundary types.

StructuredOutput wraps the validated JSON block of one worker reply.
BoundaryAction and BoundaryRecord describe the single external mutation a
closure step may request and the confirmation the boundary hook returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ._time import _datetime_to_iso, _iso_to_datetime, _utcnow
from .phases import BoundaryActionType

DEFAULT_INTENT_FIELD = "next_action.action"


def get_path(data: Any, dotted: str) -> Any:
    """Read a dotted path (``"next_action.action"``) from nested dicts.

    Returns None if any segment is missing or not a mapping.
    """
    current = data
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None]
    return []


@dataclass
class StructuredOutput:
    """A schema-valid structured reply from the worker.

    Attributes:
        data: The parsed JSON object.
        intent_field: Dotted path of the intent inside ``data``.
    """

    data: Dict[str, Any]
    intent_field: str = DEFAULT_INTENT_FIELD

    @property
    def raw_intent(self) -> Optional[str]:
        value = get_path(self.data, self.intent_field)
        return None if value is None else str(value)

    @property
    def status(self) -> Optional[str]:
        value = self.data.get("status")
        return None if value is None else str(value)

    @property
    def summary(self) -> str:
        return str(self.data.get("summary") or "")

    @property
    def reason(self) -> Optional[str]:
        for path in ("next_action.reason", "reason", "message"):
            value = get_path(self.data, path)
            if value:
                return str(value)
        return None

    @property
    def action(self) -> Optional[str]:
        value = self.data.get("action")
        return None if value is None else str(value)

    @property
    def labels_add(self) -> List[str]:
        return _as_str_list(get_path(self.data, "issue.labels.add"))

    @property
    def labels_remove(self) -> List[str]:
        return _as_str_list(get_path(self.data, "issue.labels.remove"))

    @property
    def comment(self) -> Optional[str]:
        value = get_path(self.data, "issue.comment")
        return None if value is None else str(value)

    @property
    def validation(self) -> Optional[Dict[str, Any]]:
        value = self.data.get("validation")
        return value if isinstance(value, dict) else None

    @property
    def verification_passed(self) -> Optional[bool]:
        """Verification verdict, if the output carries one.

        ``status: "rejected"`` counts as failed even without a
        ``verification`` block.
        """
        passed = get_path(self.data, "verification.passed")
        if isinstance(passed, bool):
            return passed
        if self.status in ("rejected", "failed"):
            return False
        if self.status in ("approved", "passed", "verified"):
            return True
        return None


@dataclass
class ExternalSnapshot:
    """Observed state of a work-item at one point in time.

    Attributes:
        state: Upper-case tracker state ("OPEN", "CLOSED", "MERGED", "UNKNOWN").
        labels: Current labels on the item.
        open_items: Open item count, for project work-items.
    """

    state: str
    labels: List[str] = field(default_factory=list)
    open_items: Optional[int] = None
    fetched_at: datetime = field(default_factory=_utcnow)

    @property
    def known(self) -> bool:
        return self.state != "UNKNOWN"


@dataclass
class BoundaryAction:
    """The side effect a closure report asks for."""

    action: BoundaryActionType
    labels_add: List[str] = field(default_factory=list)
    labels_remove: List[str] = field(default_factory=list)
    comment: Optional[str] = None

    @property
    def closes(self) -> bool:
        return self.action in (BoundaryActionType.CLOSE, BoundaryActionType.LABEL_AND_CLOSE)

    @property
    def merges(self) -> bool:
        return self.action == BoundaryActionType.MERGE


@dataclass
class BoundaryRecord:
    """Confirmation returned by the boundary hook.

    Attributes:
        action: The action that was requested.
        work_item: Key of the work-item it targeted.
        operations: Mutations actually performed, in order.
        noop: True when the item was already in the target state.
    """

    action: BoundaryActionType
    work_item: str
    operations: List[str] = field(default_factory=list)
    noop: bool = False
    applied_at: datetime = field(default_factory=_utcnow)


def boundary_record_to_dict(record: BoundaryRecord) -> Dict[str, Any]:
    return {
        "action": record.action.value,
        "work_item": record.work_item,
        "operations": list(record.operations),
        "noop": record.noop,
        "applied_at": _datetime_to_iso(record.applied_at),
    }


def boundary_record_from_dict(data: Dict[str, Any]) -> BoundaryRecord:
    return BoundaryRecord(
        action=BoundaryActionType(data.get("action", BoundaryActionType.CLOSE.value)),
        work_item=data.get("work_item", ""),
        operations=list(data.get("operations", [])),
        noop=bool(data.get("noop", False)),
        applied_at=_iso_to_datetime(data.get("applied_at")) or _utcnow(),
    )
