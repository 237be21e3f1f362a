"""
intent_machine.py - Phase transitions driven by worker intents.

The machine is pure: given the current step and a validated output, it
returns the Transition to take or raises IllegalIntentError. It never
mutates the session; the orchestrator applies the result.

Phase table:

    phase           allowed intents            defaults
    -------------   -------------------------  ---------------------------------
    initial         next, repeat, handoff      next -> continuation.X
    continuation    next, repeat, handoff      next -> (stay), handoff -> verification.X
    verification    next, repeat, handoff      next/handoff -> closure.X,
                                               rejected -> continuation.X
    closure         repeat, closing            closing -> terminal

Explicit ``transitions`` on a step override the defaults for that intent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import FrozenSet, Optional

from stepgate.config.step_registry import StepDefinition, StepRegistry
from stepgate.runtime.errors import IllegalIntentError, StepNotFoundError
from stepgate.runtime.types import (
    PHASE_ALLOWED_INTENTS,
    Intent,
    Phase,
    StructuredOutput,
    normalize_intent,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    """Result of applying an intent to a step.

    Attributes:
        from_step: Step the intent was emitted from.
        intent: Normalized intent.
        to_step: Next active step, or None when terminal.
        terminal: True only for ``closing`` from a closure step.
        source: "explicit", "default" or "rejected".
    """

    from_step: str
    intent: Intent
    to_step: Optional[str]
    terminal: bool = False
    source: str = "default"


def _sibling(step: StepDefinition, phase: Phase) -> str:
    """Same step id suffix in another phase: initial.project.x -> continuation.project.x"""
    suffix = step.step_id.split(".", 1)[1]
    return f"{phase.value}.{suffix}"


class IntentStateMachine:
    """Validates intents and computes transitions for one registry."""

    def __init__(self, registry: StepRegistry):
        self._registry = registry

    def allowed_intents(self, step_id: str) -> FrozenSet[Intent]:
        return PHASE_ALLOWED_INTENTS[self._registry.get(step_id).phase]

    def _find(self, step: StepDefinition, *phases: Phase) -> Optional[str]:
        """First registered sibling among phases, trying the full suffix then the sub kind."""
        for phase in phases:
            for candidate in (_sibling(step, phase), f"{phase.value}.{step.sub_kind}"):
                if self._registry.has(candidate):
                    return candidate
        return None

    def _require(self, step: StepDefinition, intent: Intent, *phases: Phase) -> str:
        target = self._find(step, *phases)
        if target is None:
            wanted = " or ".join(_sibling(step, p) for p in phases)
            raise StepNotFoundError(wanted, list(self._registry.steps))
        logger.debug("%s --%s--> %s (default)", step.step_id, intent.value, target)
        return target

    def transition(self, step_id: str, output: StructuredOutput) -> Transition:
        """Apply the output's intent to the current step.

        Args:
            step_id: The active step.
            output: Schema-valid output of that step.

        Returns:
            The Transition to apply.

        Raises:
            IllegalIntentError: If the intent is missing, unknown, or not
                permitted in the step's phase. The caller keeps the session
                on the same step.
            StepNotFoundError: If the default target for a legal intent is
                not registered.
        """
        step = self._registry.get(step_id)
        allowed = PHASE_ALLOWED_INTENTS[step.phase]
        allowed_names = sorted(i.value for i in allowed)

        raw = output.raw_intent
        intent = normalize_intent(raw)
        if intent is None:
            raise IllegalIntentError(
                step_id,
                step.phase.value,
                raw,
                allowed_names,
                message=(
                    f"Could not read a valid intent from '{step.intent_field}' "
                    f"(got {raw!r}). Allowed intents: {', '.join(allowed_names)}"
                ),
            )
        if intent not in allowed:
            raise IllegalIntentError(step_id, step.phase.value, intent.value, allowed_names)

        if intent == Intent.CLOSING:
            source = "explicit" if Intent.CLOSING.value in step.transitions else "default"
            return Transition(step_id, intent, None, terminal=True, source=source)

        rule = step.transitions.get(intent.value)
        if rule is not None and rule.is_conditional:
            matched, target = rule.resolve(output.data)
            if matched:
                return Transition(step_id, intent, target, source="explicit")

        if (
            step.phase == Phase.VERIFICATION
            and intent in (Intent.NEXT, Intent.HANDOFF)
            and output.verification_passed is False
        ):
            target = self._require(step, intent, Phase.CONTINUATION, Phase.INITIAL)
            logger.info("Verification rejected at %s; returning to %s", step_id, target)
            return Transition(step_id, intent, target, source="rejected")

        if rule is not None and not rule.is_conditional:
            return Transition(step_id, intent, rule.target, source="explicit")

        return Transition(step_id, intent, self._default_target(step, intent), source="default")

    def _default_target(self, step: StepDefinition, intent: Intent) -> str:
        if intent == Intent.REPEAT:
            return step.step_id

        if step.phase == Phase.INITIAL:
            if intent == Intent.NEXT:
                return self._find(step, Phase.CONTINUATION) or step.step_id
            logger.warning("Handoff from initial step %s skips the continuation phase", step.step_id)
            return self._require(step, intent, Phase.VERIFICATION, Phase.CLOSURE)

        if step.phase == Phase.CONTINUATION:
            if intent == Intent.NEXT:
                return step.step_id
            return self._require(step, intent, Phase.VERIFICATION, Phase.CLOSURE)

        # verification: next and handoff both move to closure
        return self._require(step, intent, Phase.CLOSURE)
