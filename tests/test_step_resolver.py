"""Tests for prompt and schema resolution."""

from __future__ import annotations

import json

import pytest

from stepgate.config.step_registry import parse_step_registry
from stepgate.runtime.errors import StepNotFoundError
from stepgate.runtime.step_resolver import PERMISSIVE_SCHEMA, StepResolver, render_template
from stepgate.runtime.types import Phase


@pytest.fixture
def prompts_dir(tmp_path):
    path = tmp_path / "prompts"
    (path / "initial" / "issue").mkdir(parents=True)
    return path


class TestRenderTemplate:
    def test_substitutes_known_variables(self):
        assert render_template("Issue {{ issue_number }} of {{repo}}", {"issue_number": 7, "repo": "a/b"}) == (
            "Issue 7 of a/b"
        )

    def test_unbound_markers_are_kept(self):
        assert render_template("{{missing}} and {{empty}}", {"empty": None}) == "{{missing}} and {{empty}}"

    def test_structured_values_render_as_json(self):
        rendered = render_template("{{labels}}", {"labels": ["bug", "p1"]})

        assert json.loads(rendered) == ["bug", "p1"]


class TestPromptResolution:
    def test_fallback_when_no_user_template(self, default_registry):
        resolver = StepResolver(default_registry)

        resolved = resolver.resolve(
            "initial.issue", {"work_item": "issue #42", "iteration": 1, "max_iterations": 5, "feedback": ""}
        )

        assert resolved.source == "fallback"
        assert resolved.template_path is None
        assert "You are working on issue #42 (iteration 1 of 5)" in resolved.prompt
        assert resolved.prompt.startswith("# tester: start work")

    def test_user_template_takes_precedence(self, prompts_dir):
        (prompts_dir / "initial" / "issue" / "f_default.md").write_text("Custom prompt for {{issue_number}}")
        registry = parse_step_registry(
            {"agentId": "custom", "steps": {"initial.issue": {}, "closure.issue": {}}},
            prompts_dir=prompts_dir,
        )

        resolved = StepResolver(registry).resolve("initial.issue", {"issue_number": 9})

        assert resolved.source == "user"
        assert resolved.prompt == "Custom prompt for 9"
        assert resolved.template_path == prompts_dir / "initial" / "issue" / "f_default.md"

    def test_fallback_key_overrides_phase(self):
        registry = parse_step_registry(
            {"agentId": "x", "steps": {"continuation.issue": {"fallbackKey": "verification"}}}
        )

        resolved = StepResolver(registry).resolve("continuation.issue")

        assert "verify work" in resolved.prompt

    def test_schema_is_embedded_in_prompt(self, default_registry):
        resolved = StepResolver(default_registry).resolve("closure.issue")

        assert '"label-and-close"' in resolved.prompt

    def test_resolve_phase(self, default_registry):
        resolved = StepResolver(default_registry).resolve_phase(Phase.VERIFICATION, "project")

        assert resolved.step.step_id == "verification.project"

    def test_unknown_step(self, default_registry):
        with pytest.raises(StepNotFoundError):
            StepResolver(default_registry).resolve("closure.release")


class TestSchemaBinding:
    def test_each_step_gets_its_own_schema(self, default_registry):
        resolver = StepResolver(default_registry)

        work = resolver.schema_for("continuation.issue")
        closure = resolver.schema_for("closure.issue")

        assert "merge" in closure["properties"]["action"]["enum"]
        assert work["properties"]["status"]["enum"][0] == "in_progress"
        assert work != closure
        assert "definitions" in closure

    def test_steps_without_schema_are_permissive(self, iterator_registry):
        assert StepResolver(iterator_registry).schema_for("initial.issue") == PERMISSIVE_SCHEMA

    def test_inline_schema(self):
        schema = {"type": "object", "required": ["decision"]}
        registry = parse_step_registry({"agentId": "x", "steps": {"initial.issue": {"schema": schema}}})

        assert StepResolver(registry).schema_for("initial.issue") == schema

    def test_agent_schema_file(self, tmp_path):
        (tmp_path / "schemas").mkdir()
        (tmp_path / "schemas" / "triage.json").write_text(
            json.dumps(
                {
                    "definitions": {
                        "label": {"type": "string"},
                        "triage": {"type": "object", "properties": {"label": {"$ref": "#/definitions/label"}}},
                    }
                }
            )
        )
        registry = parse_step_registry(
            {"agentId": "x", "steps": {"initial.issue": {"outputSchemaRef": {"file": "triage.json", "schema": "triage"}}}},
            schemas_dir=tmp_path / "schemas",
        )

        schema = StepResolver(registry).schema_for("initial.issue")

        assert schema["properties"]["label"] == {"$ref": "#/definitions/label"}
        assert schema["definitions"]["label"] == {"type": "string"}


class TestFormatErrorVariant:
    def test_builtin_format_error_prompt(self, default_registry):
        resolved = StepResolver(default_registry).resolve_format_error(
            "continuation.issue", "Validation error at $.status: 'x' is not one of [...]"
        )

        assert resolved.prompt.startswith("# Output format error")
        assert "step continuation.issue" in resolved.prompt
        assert "Validation error at $.status" in resolved.prompt
        assert resolved.schema == StepResolver(default_registry).schema_for("continuation.issue")

    def test_user_format_error_template(self, prompts_dir):
        (prompts_dir / "initial" / "issue" / "f_default_format-error.md").write_text("Fix: {{validation_error}}")
        registry = parse_step_registry(
            {"agentId": "x", "steps": {"initial.issue": {}}},
            prompts_dir=prompts_dir,
        )

        resolved = StepResolver(registry).resolve_format_error("initial.issue", "bad json")

        assert resolved.source == "user"
        assert resolved.prompt == "Fix: bad json"
