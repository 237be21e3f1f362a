"""Tests for agent definition loading and parameter validation."""

from __future__ import annotations

import json

import pytest
import yaml

from stepgate.config.agent_registry import (
    load_agent,
    load_agent_definition,
    parse_agent_definition,
    validate_parameters,
)
from stepgate.runtime.errors import DefinitionError
from stepgate.runtime.types import BoundaryActionType

ITERATOR = {
    "name": "iterator",
    "displayName": "Iterator",
    "version": "1.2.0",
    "parameters": {
        "issue": {"type": "number", "required": True, "cli": "--issue"},
        "labels": {"type": "array"},
        "dry_run": {"type": "boolean", "default": False},
    },
    "behavior": {
        "completionType": "externalState",
        "completionConfig": {"targetState": "closed"},
        "permissionMode": "acceptEdits",
        "allowedTools": ["Read", "Edit", "Bash"],
    },
    "boundary": {
        "allowedActions": ["close", "label-only"],
        "defaultClosureAction": "label-only",
        "labels": {"add": ["done"], "remove": ["in-progress"]},
    },
}


def write_agent(root, name="iterator", data=None, registry=None, file_name="agent.yaml"):
    agent_dir = root / name
    agent_dir.mkdir(parents=True)
    content = data if data is not None else dict(ITERATOR, name=name)
    if file_name.endswith(".json"):
        (agent_dir / file_name).write_text(json.dumps(content))
    else:
        (agent_dir / file_name).write_text(yaml.safe_dump(content))
    if registry is not None:
        (agent_dir / "steps_registry.json").write_text(json.dumps(registry))
    return agent_dir


class TestParseDefinition:
    def test_full_definition(self):
        definition = parse_agent_definition(ITERATOR)

        assert definition.display_name == "Iterator"
        assert definition.permission_mode == "acceptEdits"
        assert definition.allowed_tools == ("Read", "Edit", "Bash")
        assert definition.completion.type == "externalState"
        assert definition.parameters["issue"].required is True
        assert definition.boundary.default_action == BoundaryActionType.LABEL_ONLY
        assert definition.boundary.labels_add == ("done",)

    def test_defaults(self):
        definition = parse_agent_definition({"name": "minimal"})

        assert definition.permission_mode == "plan"
        assert definition.completion.type == "iterationBudget"
        assert definition.completion.options["maxIterations"] == 10
        assert definition.registry_file == "steps_registry.json"
        assert definition.boundary.default_action == BoundaryActionType.CLOSE
        assert definition.worktree.enabled is False

    @pytest.mark.parametrize(
        "alias, expected",
        [("issue", "externalState"), ("iterate", "iterationBudget"), ("flow", "stepMachine")],
    )
    def test_completion_type_aliases(self, alias, expected):
        definition = parse_agent_definition({"name": "a", "behavior": {"completionType": alias}})

        assert definition.completion.type == expected

    @pytest.mark.parametrize(
        "data, fragment",
        [
            ({}, "missing 'name'"),
            ({"name": "a", "behavior": {"completionType": "vibes"}}, "Unknown completion type"),
            ({"name": "a", "behavior": {"permissionMode": "yolo"}}, "Unknown permission mode"),
            ({"name": "a", "behavior": {"completionConfig": {"maxIterations": 0}}}, "maxIterations"),
            ({"name": "a", "behavior": {"completionType": "keywordSignal"}}, "completionKeyword"),
            ({"name": "a", "behavior": {"completionType": "structuredSignal"}}, "signalType"),
            ({"name": "a", "behavior": {"completionType": "composite"}}, "conditions"),
            ({"name": "a", "parameters": {"x": {"type": "date"}}}, "unknown type 'date'"),
            ({"name": "a", "boundary": {"defaultClosureAction": "explode"}}, "Unknown closure action"),
            (
                {"name": "a", "boundary": {"allowedActions": ["label-only"], "defaultClosureAction": "close"}},
                "not in allowedActions",
            ),
        ],
    )
    def test_invalid_definitions(self, data, fragment):
        with pytest.raises(DefinitionError, match=fragment):
            parse_agent_definition(data)

    def test_boundary_validation_checks(self):
        data = {
            "name": "a",
            "boundary": {
                "validation": {"required": True, "mustPass": ["git_clean"], "mustNotFail": ["tests_passed"]}
            },
        }

        boundary = parse_agent_definition(data).boundary

        assert boundary.require_validation is True
        assert boundary.must_pass == ("git_clean",)
        assert boundary.must_not_fail == ("tests_passed",)

    def test_boundary_validation_defaults(self):
        boundary = parse_agent_definition({"name": "a"}).boundary

        assert boundary.require_validation is False
        assert boundary.must_pass == ("git_clean", "type_check_passed")
        assert "tests_passed" in boundary.must_not_fail

    def test_boundary_validation_must_be_a_mapping(self):
        with pytest.raises(DefinitionError, match="boundary.validation must be a mapping"):
            parse_agent_definition({"name": "a", "boundary": {"validation": ["git_clean"]}})

    def test_error_location_points_at_field(self):
        with pytest.raises(DefinitionError) as exc_info:
            parse_agent_definition({"name": "a", "behavior": {"permissionMode": "yolo"}}, source="agent.yaml")

        assert exc_info.value.location == "agent.yaml:behavior.permissionMode"
        assert "Fix: Use one of" in exc_info.value.format()


class TestLoadAgent:
    def test_default_registry_when_none_shipped(self, tmp_path):
        write_agent(tmp_path)

        agent = load_agent("iterator", tmp_path)

        assert agent.definition.agent_dir == tmp_path / "iterator"
        assert agent.registry.entry_for("issue") == "initial.issue"
        assert agent.registry.prompts_dir == tmp_path / "iterator" / "prompts"

    def test_custom_registry(self, tmp_path):
        registry = {
            "agentId": "iterator",
            "steps": {"initial.issue": {"uvVariables": ["labels"]}, "closure.issue": {}},
        }
        write_agent(tmp_path, registry=registry)

        agent = load_agent("iterator", tmp_path)

        assert sorted(agent.registry.steps) == ["closure.issue", "initial.issue"]

    def test_registry_variables_must_be_parameters(self, tmp_path):
        registry = {"agentId": "iterator", "steps": {"initial.issue": {"uvVariables": ["customer"]}}}
        write_agent(tmp_path, registry=registry)

        with pytest.raises(DefinitionError, match="customer"):
            load_agent("iterator", tmp_path)

    def test_json_definition(self, tmp_path):
        write_agent(tmp_path, name="jsonic", file_name="agent.json")

        assert load_agent("jsonic", tmp_path).definition.name == "jsonic"

    def test_missing_agent(self, tmp_path):
        with pytest.raises(DefinitionError, match="Agent 'ghost' not found"):
            load_agent("ghost", tmp_path)

    def test_missing_definition_file(self, tmp_path):
        (tmp_path / "empty").mkdir()

        with pytest.raises(DefinitionError, match="No agent definition"):
            load_agent_definition(tmp_path / "empty")

    def test_step_machine_needs_terminal_step(self, tmp_path):
        registry = {
            "agentId": "flow",
            "terminalSteps": [],
            "steps": {"initial.issue": {}, "continuation.issue": {}},
        }
        data = {"name": "flow", "behavior": {"completionType": "stepMachine"}}
        write_agent(tmp_path, name="flow", data=data, registry=registry)

        with pytest.raises(DefinitionError, match="at least one terminal step"):
            load_agent("flow", tmp_path)


class TestValidateParameters:
    def test_coercion_and_defaults(self):
        definition = parse_agent_definition(ITERATOR)

        params = validate_parameters(definition, {"issue": "42", "labels": "bug, p1", "extra": "kept"})

        assert params == {"issue": 42, "labels": ["bug", "p1"], "dry_run": False, "extra": "kept"}

    def test_boolean_coercion(self):
        definition = parse_agent_definition(ITERATOR)

        assert validate_parameters(definition, {"issue": 1, "dry_run": "yes"})["dry_run"] is True

    def test_missing_required(self):
        definition = parse_agent_definition(ITERATOR)

        with pytest.raises(DefinitionError, match="Missing required parameter.*issue"):
            validate_parameters(definition, {})

    def test_required_satisfied_by_other_flag(self):
        definition = parse_agent_definition(ITERATOR)

        assert "issue" not in validate_parameters(definition, {}, provided_elsewhere=["issue"])

    def test_number_parsing_error(self):
        definition = parse_agent_definition(ITERATOR)

        with pytest.raises(DefinitionError, match="expects a number"):
            validate_parameters(definition, {"issue": "forty-two"})
