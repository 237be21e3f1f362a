"""Completion handlers and the factory that selects one per agent.

Usage:
    from stepgate.runtime.completion import create_completion_handler

    handler = create_completion_handler(agent.definition.completion, agent.registry)
    verdict = handler.evaluate(session, snapshot)
"""

from __future__ import annotations

from typing import Any, Mapping

from stepgate.config.agent_registry import CompletionConfig
from stepgate.config.step_registry import StepRegistry
from stepgate.runtime.completion.base import CompletionHandler
from stepgate.runtime.completion.composite import CompositeHandler
from stepgate.runtime.completion.external_state import ExternalStateHandler
from stepgate.runtime.completion.iteration_budget import IterationBudgetHandler
from stepgate.runtime.completion.keyword_signal import KeywordSignalHandler
from stepgate.runtime.completion.step_machine import StepMachineHandler
from stepgate.runtime.completion.structured_signal import StructuredSignalHandler
from stepgate.runtime.errors import DefinitionError

__all__ = [
    "CompletionHandler",
    "CompositeHandler",
    "ExternalStateHandler",
    "IterationBudgetHandler",
    "KeywordSignalHandler",
    "StepMachineHandler",
    "StructuredSignalHandler",
    "create_completion_handler",
]


def _build(ctype: str, options: Mapping[str, Any], registry: StepRegistry) -> CompletionHandler:
    if ctype == "externalState":
        return ExternalStateHandler(str(options.get("targetState", "closed")))
    if ctype == "iterationBudget":
        return IterationBudgetHandler(int(options.get("maxIterations", 10)))
    if ctype == "keywordSignal":
        return KeywordSignalHandler(str(options.get("completionKeyword", "")))
    if ctype == "stepMachine":
        return StepMachineHandler(registry)
    if ctype == "structuredSignal":
        return StructuredSignalHandler(str(options.get("signalType", "")), options.get("requiredFields"))
    if ctype == "composite":
        children = []
        for condition in options.get("conditions") or []:
            condition = dict(condition)
            child_type = condition.pop("type", None)
            if child_type is None:
                raise DefinitionError("composite condition is missing 'type'", location="completionConfig.conditions")
            child_options = condition.pop("config", None) or condition
            children.append(_build(str(child_type), child_options, registry))
        return CompositeHandler(str(options.get("operator", "and")), children)
    raise DefinitionError(f"Unknown completion type '{ctype}'", location="behavior.completionType")


def create_completion_handler(config: CompletionConfig, registry: StepRegistry) -> CompletionHandler:
    """Create the completion handler an agent's configuration selects.

    Raises:
        DefinitionError: For unknown types or invalid options.
    """
    try:
        return _build(config.type, config.options, registry)
    except ValueError as e:
        raise DefinitionError(str(e), location="behavior.completionConfig") from e
