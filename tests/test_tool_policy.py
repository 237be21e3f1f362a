"""
Tests for per-step-kind tool permissions.

Boundary tools and boundary shell commands must be denied in every step
kind, whatever the agent configures.
"""

from __future__ import annotations

import pytest

from stepgate.config import tool_profiles
from stepgate.runtime.tool_policy import ToolPolicy, permissions_summary
from stepgate.runtime.types import StepKind, StructuredOutput

ALL_KINDS = [StepKind.WORK, StepKind.VERIFICATION, StepKind.CLOSURE]


class TestProfiles:
    def test_work_steps_can_edit(self):
        permissions = ToolPolicy().for_step(StepKind.WORK)

        assert permissions.is_tool_allowed("Edit")
        assert permissions.is_tool_allowed("Write")

    @pytest.mark.parametrize("kind", [StepKind.VERIFICATION, StepKind.CLOSURE])
    def test_review_steps_are_read_only(self, kind):
        permissions = ToolPolicy().for_step(kind)

        assert permissions.is_tool_allowed("Read")
        assert not permissions.is_tool_allowed("Edit")
        assert not permissions.is_tool_allowed("Write")

    def test_agent_tools_narrow_the_profile(self):
        permissions = ToolPolicy(agent_tools=("Read", "Grep", "Edit")).for_step(StepKind.CLOSURE)

        assert permissions.allowed == ("Read", "Grep")

    def test_permission_mode_is_carried(self):
        assert ToolPolicy(permission_mode="acceptEdits").for_step(StepKind.WORK).permission_mode == "acceptEdits"


class TestBoundaryDenial:
    @pytest.mark.parametrize("kind", ALL_KINDS)
    def test_boundary_tools_denied_in_every_kind(self, kind):
        policy = ToolPolicy(agent_tools=("Read", "githubIssueClose", "githubPrMerge"))
        permissions = policy.for_step(kind)

        assert not permissions.is_tool_allowed("githubIssueClose")
        assert not permissions.is_tool_allowed("githubPrMerge")
        assert "githubIssueClose" in permissions.to_cli_disallowed()

    @pytest.mark.parametrize("kind", ALL_KINDS)
    @pytest.mark.parametrize(
        "command",
        [
            "gh issue close 12",
            "gh  issue   close 12 --comment done",
            "gh pr merge 3 --squash",
            "git status && gh pr merge 3",
            "echo hi; gh api repos/o/r/issues/1 -X PATCH",
            "gh issue edit 4 --add-label done",
        ],
    )
    def test_boundary_commands_blocked(self, kind, command):
        assert not ToolPolicy().is_bash_command_allowed(command, kind)

    @pytest.mark.parametrize(
        "command",
        ["gh issue view 12", "git status", "pytest -q", "gh pr view 3 --json state", "gh issues close"],
    )
    def test_read_only_commands_allowed(self, command):
        assert ToolPolicy().is_bash_command_allowed(command, StepKind.WORK)

    def test_bash_denied_when_agent_omits_it(self):
        assert not ToolPolicy(agent_tools=("Read",)).is_bash_command_allowed("ls", StepKind.WORK)

    def test_cli_rules_include_bash_patterns(self):
        rules = ToolPolicy().for_step(StepKind.WORK).to_cli_disallowed()

        assert "Bash(gh issue close:*)" in rules
        assert "Bash(gh api:*)" in rules

    def test_filter_allowed_tools(self):
        tools = ["Read", "githubIssueClose", "Edit"]

        assert ToolPolicy().filter_allowed_tools(tools, StepKind.VERIFICATION) == ["Read"]


class TestOutputSideEffects:
    def test_work_output_side_effects_are_reported(self):
        output = StructuredOutput(
            data={
                "next_action": {"action": "next"},
                "action": "close",
                "issue": {"labels": {"add": ["done"]}, "comment": "closing now"},
            }
        )

        blocked = ToolPolicy().blocked_output_actions(StepKind.WORK, output)

        assert blocked == {
            "action": "close",
            "issue.labels": {"add": ["done"], "remove": []},
            "issue.comment": "closing now",
        }

    def test_closure_output_is_not_blocked(self):
        output = StructuredOutput(data={"action": "close"})

        assert ToolPolicy().blocked_output_actions(StepKind.CLOSURE, output) == {}

    def test_unrelated_action_values_pass(self):
        output = StructuredOutput(data={"action": "refactor"})

        assert ToolPolicy().blocked_output_actions(StepKind.WORK, output) == {}


class TestProfileLoading:
    def test_fallbacks_when_yaml_missing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(tool_profiles, "_get_config_path", lambda: tmp_path / "missing.yaml")
        tool_profiles.reset_profiles()

        profile = tool_profiles.get_profile("verification")

        assert profile.allowed == tool_profiles.FALLBACK_PROFILES["verification"]
        assert tool_profiles.get_boundary_tools() == tool_profiles.FALLBACK_BOUNDARY_TOOLS

    def test_unknown_kind_gets_base_tools(self):
        profile = tool_profiles.get_profile("triage")

        assert profile.allowed == tool_profiles.get_base_tools()
        assert "Edit" in profile.allowed
        assert profile.deny_boundary is True

    def test_summary(self):
        summary = permissions_summary(ToolPolicy().for_step(StepKind.CLOSURE))

        assert summary["step_kind"] == "closure"
        assert "gh pr merge" in summary["blocked_bash"]
        assert permissions_summary(None) == {}
