"""Completion when the worker emits a typed structured signal."""

from __future__ import annotations

from typing import Any, Mapping, Optional, Sequence, Union

from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot, get_path

_MISSING = object()


class StructuredSignalHandler(CompletionHandler):
    """Completed when the latest output carries a matching signal.

    The signal is read from ``signal.type`` (or a top-level ``type``).
    ``required_fields`` is either a list of dotted paths that must be
    present, or a mapping of dotted path -> expected value.

    Example config:
        completionConfig:
          signalType: review-complete
          requiredFields: {"result.approved": true}
    """

    type_name = "structuredSignal"

    def __init__(self, signal_type: str, required_fields: Union[Sequence[str], Mapping[str, Any], None] = None):
        self.signal_type = signal_type
        self.required_fields = required_fields or {}

    def _field_ok(self, output: dict, path: str, expected: Any = _MISSING) -> bool:
        value = get_path(output, path)
        if expected is _MISSING:
            return value is not None
        return value == expected

    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        output = session.last_output
        if not output:
            return CompletionVerdict.CONTINUE
        signal = get_path(output, "signal.type") or output.get("type")
        if signal != self.signal_type:
            return CompletionVerdict.CONTINUE
        if isinstance(self.required_fields, Mapping):
            ok = all(self._field_ok(output, path, expected) for path, expected in self.required_fields.items())
        else:
            ok = all(self._field_ok(output, path) for path in self.required_fields)
        return CompletionVerdict.COMPLETED if ok else CompletionVerdict.CONTINUE

    def describe(self) -> str:
        return f"you emit a '{self.signal_type}' signal"
