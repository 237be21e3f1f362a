"""Completion when the worker's output contains a keyword."""

from __future__ import annotations

import json
from typing import Optional

from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.types import CompletionVerdict, ExecutionSession, ExternalSnapshot


class KeywordSignalHandler(CompletionHandler):
    """Completed when the latest accepted output mentions ``keyword``.

    The summary is checked first, then the whole serialized output.
    """

    type_name = "keywordSignal"

    def __init__(self, keyword: str):
        if not keyword:
            raise ValueError("keyword must be non-empty")
        self.keyword = keyword

    def evaluate(self, session: ExecutionSession, snapshot: Optional[ExternalSnapshot] = None) -> CompletionVerdict:
        output = session.last_output
        if not output:
            return CompletionVerdict.CONTINUE
        summary = str(output.get("summary") or "")
        if self.keyword in summary or self.keyword in json.dumps(output):
            return CompletionVerdict.COMPLETED
        return CompletionVerdict.CONTINUE

    def describe(self) -> str:
        return f"you output the keyword {self.keyword}"
