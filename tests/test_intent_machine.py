"""
Tests for intent validation and phase transitions.

The machine is pure, so every case builds a StructuredOutput directly and
checks the Transition it produces (or the IllegalIntentError it raises).
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import pytest

from stepgate.config.step_registry import parse_step_registry
from stepgate.runtime.errors import IllegalIntentError, StepNotFoundError
from stepgate.runtime.intent_machine import IntentStateMachine
from stepgate.runtime.types import Intent, StructuredOutput


def output(intent: Optional[str], **extra: Any) -> StructuredOutput:
    data: Dict[str, Any] = {"next_action": {"action": intent}} if intent is not None else {}
    data.update(extra)
    return StructuredOutput(data=data)


@pytest.fixture
def machine(default_registry):
    return IntentStateMachine(default_registry)


class TestDefaultFlow:
    """Default routing for the four-phase registry."""

    @pytest.mark.parametrize(
        "step_id, intent, expected",
        [
            ("initial.issue", "next", "continuation.issue"),
            ("initial.issue", "repeat", "initial.issue"),
            ("initial.issue", "handoff", "verification.issue"),
            ("continuation.issue", "next", "continuation.issue"),
            ("continuation.issue", "repeat", "continuation.issue"),
            ("continuation.issue", "handoff", "verification.issue"),
            ("verification.issue", "next", "closure.issue"),
            ("verification.issue", "handoff", "closure.issue"),
            ("verification.issue", "repeat", "verification.issue"),
            ("closure.issue", "repeat", "closure.issue"),
            ("initial.project", "next", "continuation.project"),
        ],
    )
    def test_default_targets(self, machine, step_id, intent, expected):
        transition = machine.transition(step_id, output(intent))

        assert transition.to_step == expected
        assert transition.terminal is False
        assert transition.source == "default"

    def test_closing_from_closure_is_terminal(self, machine):
        transition = machine.transition("closure.issue", output("closing"))

        assert transition.intent == Intent.CLOSING
        assert transition.terminal is True
        assert transition.to_step is None

    def test_rejected_verification_returns_to_continuation(self, machine):
        transition = machine.transition("verification.issue", output("next", verification={"passed": False}))

        assert transition.to_step == "continuation.issue"
        assert transition.source == "rejected"

    def test_rejected_status_without_verification_block(self, machine):
        transition = machine.transition("verification.issue", output("handoff", status="rejected"))

        assert transition.to_step == "continuation.issue"

    def test_handoff_skips_verification_when_not_registered(self, iterator_registry):
        machine = IntentStateMachine(iterator_registry)

        transition = machine.transition("continuation.issue", output("handoff"))

        assert transition.to_step == "closure.issue"


class TestIllegalIntents:
    @pytest.mark.parametrize("step_id", ["initial.issue", "continuation.issue", "verification.issue"])
    def test_closing_outside_closure_is_rejected(self, machine, step_id):
        with pytest.raises(IllegalIntentError) as exc_info:
            machine.transition(step_id, output("closing"))

        error = exc_info.value
        assert error.intent == "closing"
        assert error.step_id == step_id
        assert "closing" not in error.allowed
        assert error.fatal is False

    @pytest.mark.parametrize("intent", ["next", "handoff"])
    def test_closure_only_repeats_or_closes(self, machine, intent):
        with pytest.raises(IllegalIntentError) as exc_info:
            machine.transition("closure.issue", output(intent))

        assert exc_info.value.allowed == ["closing", "repeat"]

    def test_unknown_intent(self, machine):
        with pytest.raises(IllegalIntentError) as exc_info:
            machine.transition("initial.issue", output("explode"))

        assert exc_info.value.intent == "explode"
        assert "Could not read a valid intent from 'next_action.action'" in exc_info.value.message

    def test_missing_intent(self, machine):
        with pytest.raises(IllegalIntentError) as exc_info:
            machine.transition("initial.issue", output(None))

        assert exc_info.value.intent is None

    def test_message_lists_allowed_intents(self, machine):
        with pytest.raises(IllegalIntentError) as exc_info:
            machine.transition("continuation.issue", output("closing"))

        assert exc_info.value.message == (
            "Intent 'closing' is not allowed in continuation step 'continuation.issue'. "
            "Allowed intents: handoff, next, repeat"
        )


class TestAliases:
    def test_aliases_are_normalized(self, machine):
        assert machine.transition("closure.issue", output("Done")).terminal is True
        assert machine.transition("initial.issue", output("continue")).to_step == "continuation.issue"
        assert machine.transition("continuation.issue", output("retry")).intent == Intent.REPEAT

    def test_custom_intent_field(self):
        registry = parse_step_registry(
            {
                "agentId": "custom",
                "steps": {
                    "initial.issue": {"intentField": "decision"},
                    "closure.issue": {"intentField": "decision"},
                },
            }
        )
        machine = IntentStateMachine(registry)

        transition = machine.transition(
            "initial.issue", StructuredOutput(data={"decision": "handoff"}, intent_field="decision")
        )

        assert transition.to_step == "closure.issue"


class TestExplicitTransitions:
    def _registry(self, transitions):
        return parse_step_registry(
            {
                "agentId": "explicit",
                "steps": {
                    "initial.issue": {"transitions": transitions},
                    "continuation.issue": {},
                    "verification.issue": {},
                    "closure.issue": {},
                },
            }
        )

    def test_explicit_target_overrides_default(self):
        machine = IntentStateMachine(self._registry({"next": {"target": "verification.issue"}}))

        transition = machine.transition("initial.issue", output("next"))

        assert transition.to_step == "verification.issue"
        assert transition.source == "explicit"

    def test_conditional_target(self):
        machine = IntentStateMachine(
            self._registry(
                {"handoff": {"condition": "status", "targets": {"blocked": "continuation.issue", "ready": "closure.issue"}}}
            )
        )

        assert machine.transition("initial.issue", output("handoff", status="ready")).to_step == "closure.issue"
        assert machine.transition("initial.issue", output("handoff", status="blocked")).to_step == "continuation.issue"
        # unmatched value falls back to the phase default
        assert machine.transition("initial.issue", output("handoff", status="other")).to_step == "verification.issue"

    def test_explicit_rules_cannot_make_closing_legal(self):
        machine = IntentStateMachine(self._registry({"next": {"target": "closure.issue"}}))

        with pytest.raises(IllegalIntentError):
            machine.transition("initial.issue", output("closing"))


class TestMissingTargets:
    def test_initial_next_stays_without_continuation(self):
        registry = parse_step_registry({"agentId": "solo", "steps": {"initial.issue": {}, "closure.issue": {}}})
        machine = IntentStateMachine(registry)

        assert machine.transition("initial.issue", output("next")).to_step == "initial.issue"
        assert machine.transition("initial.issue", output("handoff")).to_step == "closure.issue"

    def test_handoff_without_any_target_step(self):
        registry = parse_step_registry({"agentId": "solo", "steps": {"initial.issue": {}}})
        machine = IntentStateMachine(registry)

        with pytest.raises(StepNotFoundError):
            machine.transition("initial.issue", output("handoff"))

    def test_allowed_intents(self, machine):
        assert machine.allowed_intents("closure.issue") == frozenset({Intent.REPEAT, Intent.CLOSING})
