"""
agent_registry.py - Load agent definitions from .agent/<name>/.

An agent directory holds:

    .agent/<name>/
      agent.yaml            # or agent.json - AgentDefinition
      steps_registry.yaml   # or .json - StepRegistry (optional)
      prompts/              # user prompt templates (optional)
      schemas/              # user output schemas (optional)

Definitions are validated on load and returned as immutable values.
Defaults follow the conventions of existing agent configs: completion type
``iterationBudget`` with ``maxIterations: 10``, permission mode ``plan``,
registry file ``steps_registry.json``.

Usage:
    from stepgate.config.agent_registry import load_agent, validate_parameters

    agent = load_agent("iterator")
    params = validate_parameters(agent.definition, {"issue": "123"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import yaml

from stepgate.config.runtime_config import get_agents_dir
from stepgate.config.step_registry import (
    StepRegistry,
    build_default_registry,
    load_step_registry,
)
from stepgate.runtime.errors import DefinitionError
from stepgate.runtime.types import BoundaryActionType

logger = logging.getLogger(__name__)

AGENT_FILES = ("agent.yaml", "agent.yml", "agent.json")

COMPLETION_TYPES = (
    "externalState",
    "iterationBudget",
    "keywordSignal",
    "stepMachine",
    "structuredSignal",
    "composite",
)

# Older agent configs name completion types after their work-item
COMPLETION_TYPE_ALIASES: Dict[str, str] = {
    "issue": "externalState",
    "project": "externalState",
    "iterate": "iterationBudget",
    "manual": "keywordSignal",
    "flow": "stepMachine",
}

PERMISSION_MODES = ("default", "plan", "acceptEdits", "bypassPermissions")
PARAMETER_TYPES = ("string", "number", "boolean", "array")

DEFAULT_MAX_ITERATIONS = 10


# -----------------------------------------------------------------------------
# Data types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ParameterDefinition:
    """A CLI-supplied agent parameter."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = False
    default: Any = None
    cli: Optional[str] = None


@dataclass(frozen=True)
class CompletionConfig:
    """Completion handler selection.

    Attributes:
        type: One of COMPLETION_TYPES.
        options: Variant-specific settings (maxIterations, targetState,
            completionKeyword, signalType, requiredFields, operator,
            conditions).
    """

    type: str = "iterationBudget"
    options: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BoundaryConfig:
    """Which side effects the boundary hook may perform for this agent."""

    allowed_actions: Tuple[BoundaryActionType, ...] = (
        BoundaryActionType.CLOSE,
        BoundaryActionType.LABEL_ONLY,
        BoundaryActionType.LABEL_AND_CLOSE,
    )
    default_action: BoundaryActionType = BoundaryActionType.CLOSE
    labels_add: Tuple[str, ...] = ()
    labels_remove: Tuple[str, ...] = ()
    enabled: bool = True
    # closure report `validation` checks gating the mutation
    require_validation: bool = False
    must_pass: Tuple[str, ...] = ("git_clean", "type_check_passed")
    must_not_fail: Tuple[str, ...] = ("tests_passed", "lint_passed", "format_check_passed")


@dataclass(frozen=True)
class WorktreeConfig:
    enabled: bool = False
    root: Optional[str] = None


@dataclass(frozen=True)
class AgentDefinition:
    """Immutable agent configuration.

    Attributes:
        name: Agent identifier, matching its directory name.
        completion: Completion handler selection.
        permission_mode: Worker permission mode.
        allowed_tools: Agent-level tool allowlist, intersected with the
            step-kind profile. Empty means "profile default".
        registry_file: Step registry file name inside agent_dir.
        prompts_dir: Prompt template directory name inside agent_dir.
        agent_dir: Directory the definition was loaded from.
    """

    name: str
    display_name: str = ""
    description: str = ""
    version: str = "1.0.0"
    parameters: Mapping[str, ParameterDefinition] = field(default_factory=dict)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    permission_mode: str = "plan"
    allowed_tools: Tuple[str, ...] = ()
    system_prompt_path: Optional[str] = None
    registry_file: str = "steps_registry.json"
    prompts_dir: str = "prompts"
    boundary: BoundaryConfig = field(default_factory=BoundaryConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    agent_dir: Optional[Path] = None


@dataclass(frozen=True)
class LoadedAgent:
    """An agent definition together with its validated step registry."""

    definition: AgentDefinition
    registry: StepRegistry


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------


def _parse_action(value: Any, location: str) -> BoundaryActionType:
    try:
        return BoundaryActionType(str(value))
    except ValueError:
        raise DefinitionError(
            f"Unknown closure action '{value}'",
            location=location,
            fix_action=f"Use one of: {', '.join(a.value for a in BoundaryActionType)}",
        ) from None


def _parse_parameters(raw: Any, source: str) -> Dict[str, ParameterDefinition]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise DefinitionError("parameters must be a mapping", location=f"{source}:parameters")
    params: Dict[str, ParameterDefinition] = {}
    for name, spec in raw.items():
        spec = spec or {}
        ptype = spec.get("type", "string")
        if ptype not in PARAMETER_TYPES:
            raise DefinitionError(
                f"Parameter '{name}' has unknown type '{ptype}'",
                location=f"{source}:parameters.{name}",
                fix_action=f"Use one of: {', '.join(PARAMETER_TYPES)}",
            )
        params[name] = ParameterDefinition(
            name=name,
            type=ptype,
            description=spec.get("description", ""),
            required=bool(spec.get("required", False)),
            default=spec.get("default"),
            cli=spec.get("cli"),
        )
    return params


def _parse_completion(behavior: Dict[str, Any], source: str) -> CompletionConfig:
    ctype = behavior.get("completionType") or behavior.get("completion_type") or "iterationBudget"
    ctype = COMPLETION_TYPE_ALIASES.get(ctype, ctype)
    if ctype not in COMPLETION_TYPES:
        raise DefinitionError(
            f"Unknown completion type '{ctype}'",
            location=f"{source}:behavior.completionType",
            fix_action=f"Use one of: {', '.join(COMPLETION_TYPES)}",
        )
    options = dict(behavior.get("completionConfig") or behavior.get("completion_config") or {})
    if ctype == "iterationBudget":
        options.setdefault("maxIterations", DEFAULT_MAX_ITERATIONS)
        if not isinstance(options["maxIterations"], int) or options["maxIterations"] < 1:
            raise DefinitionError(
                "maxIterations must be a positive integer",
                location=f"{source}:behavior.completionConfig.maxIterations",
            )
    elif ctype == "keywordSignal" and not options.get("completionKeyword"):
        raise DefinitionError(
            "keywordSignal completion requires completionKeyword",
            location=f"{source}:behavior.completionConfig",
        )
    elif ctype == "structuredSignal" and not options.get("signalType"):
        raise DefinitionError(
            "structuredSignal completion requires signalType",
            location=f"{source}:behavior.completionConfig",
        )
    elif ctype == "composite":
        conditions = options.get("conditions")
        if not isinstance(conditions, list) or not conditions:
            raise DefinitionError(
                "composite completion requires a non-empty conditions list",
                location=f"{source}:behavior.completionConfig.conditions",
            )
        if options.get("operator", "and") not in ("and", "or", "first"):
            raise DefinitionError(
                f"Unknown composite operator '{options.get('operator')}'",
                location=f"{source}:behavior.completionConfig.operator",
            )
    return CompletionConfig(type=ctype, options=MappingProxyType(options))


def _parse_boundary(data: Dict[str, Any], source: str) -> BoundaryConfig:
    github = data.get("github") or {}
    raw = data.get("boundary") or {}
    default_raw = raw.get("defaultClosureAction") or github.get("defaultClosureAction") or "close"
    default_action = _parse_action(default_raw, f"{source}:boundary.defaultClosureAction")

    allowed_raw = raw.get("allowedActions")
    if allowed_raw is None:
        allowed = BoundaryConfig().allowed_actions
    else:
        allowed = tuple(_parse_action(a, f"{source}:boundary.allowedActions") for a in allowed_raw)
    if default_action not in allowed:
        raise DefinitionError(
            f"defaultClosureAction '{default_action.value}' is not in allowedActions",
            location=f"{source}:boundary",
        )

    labels = raw.get("labels") or {}
    validation = raw.get("validation") or {}
    if not isinstance(validation, dict):
        raise DefinitionError(
            "boundary.validation must be a mapping",
            location=f"{source}:boundary.validation",
            fix_action="Use keys required, mustPass and mustNotFail",
        )
    defaults = BoundaryConfig()
    must_pass = validation.get("mustPass")
    must_not_fail = validation.get("mustNotFail")
    return BoundaryConfig(
        allowed_actions=allowed,
        default_action=default_action,
        labels_add=tuple(labels.get("add") or ()),
        labels_remove=tuple(labels.get("remove") or ()),
        enabled=bool(raw.get("enabled", github.get("enabled", True))),
        require_validation=bool(validation.get("required", False)),
        must_pass=defaults.must_pass if must_pass is None else tuple(must_pass),
        must_not_fail=defaults.must_not_fail if must_not_fail is None else tuple(must_not_fail),
    )


def parse_agent_definition(
    data: Dict[str, Any],
    agent_dir: Optional[Path] = None,
    source: str = "<agent>",
) -> AgentDefinition:
    """Validate raw agent data and apply defaults.

    Raises:
        DefinitionError: On missing name, unknown completion type, bad
            permission mode, or malformed parameters.
    """
    if not isinstance(data, dict):
        raise DefinitionError("Agent definition must be a mapping", location=source)
    name = data.get("name")
    if not name:
        raise DefinitionError("Agent definition is missing 'name'", location=source)

    behavior = data.get("behavior") or {}
    permission_mode = behavior.get("permissionMode") or behavior.get("permission_mode") or "plan"
    if permission_mode not in PERMISSION_MODES:
        raise DefinitionError(
            f"Unknown permission mode '{permission_mode}'",
            location=f"{source}:behavior.permissionMode",
            fix_action=f"Use one of: {', '.join(PERMISSION_MODES)}",
        )

    prompts = data.get("prompts") or {}
    worktree = data.get("worktree") or {}
    return AgentDefinition(
        name=str(name),
        display_name=str(data.get("displayName") or data.get("display_name") or name),
        description=str(data.get("description") or ""),
        version=str(data.get("version") or "1.0.0"),
        parameters=MappingProxyType(_parse_parameters(data.get("parameters"), source)),
        completion=_parse_completion(behavior, source),
        permission_mode=permission_mode,
        allowed_tools=tuple(behavior.get("allowedTools") or behavior.get("allowed_tools") or ()),
        system_prompt_path=behavior.get("systemPromptPath") or behavior.get("system_prompt_path"),
        registry_file=str(prompts.get("registry") or "steps_registry.json"),
        prompts_dir=str(prompts.get("fallbackDir") or prompts.get("dir") or "prompts"),
        boundary=_parse_boundary(data, source),
        worktree=WorktreeConfig(
            enabled=bool(worktree.get("enabled", False)),
            root=worktree.get("root") or worktree.get("worktreeRoot"),
        ),
        agent_dir=agent_dir,
    )


def load_agent_definition(agent_dir: Path) -> AgentDefinition:
    """Load agent.yaml / agent.json from an agent directory."""
    agent_dir = Path(agent_dir)
    for file_name in AGENT_FILES:
        path = agent_dir / file_name
        if path.is_file():
            try:
                with path.open(encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise DefinitionError(f"Cannot parse agent definition: {e}", location=str(path)) from e
            return parse_agent_definition(data, agent_dir=agent_dir, source=str(path))
    raise DefinitionError(
        f"No agent definition in {agent_dir}",
        location=str(agent_dir),
        fix_action=f"Create one of: {', '.join(AGENT_FILES)}",
    )


def _registry_path(definition: AgentDefinition) -> Optional[Path]:
    if definition.agent_dir is None:
        return None
    primary = definition.agent_dir / definition.registry_file
    if primary.is_file():
        return primary
    stem = Path(definition.registry_file).stem
    for suffix in (".yaml", ".yml", ".json"):
        candidate = definition.agent_dir / f"{stem}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def load_agent(name: str, agents_dir: Optional[Path] = None) -> LoadedAgent:
    """Load an agent definition and its step registry.

    When the agent ships no registry file, the default four-phase registry
    is built for the issue, project and iterate sub kinds.

    Args:
        name: Agent name (directory under agents_dir).
        agents_dir: Root of agent directories. Defaults to runtime config.

    Raises:
        DefinitionError: If the agent or its registry is invalid.
    """
    root = Path(agents_dir) if agents_dir is not None else get_agents_dir()
    agent_dir = root / name
    if not agent_dir.is_dir():
        raise DefinitionError(f"Agent '{name}' not found under {root}", location=str(agent_dir))

    definition = load_agent_definition(agent_dir)
    if definition.name != name:
        logger.warning("Agent directory '%s' declares name '%s'", name, definition.name)

    parameter_names = list(definition.parameters)
    prompts_dir = agent_dir / definition.prompts_dir
    registry_path = _registry_path(definition)
    if registry_path is not None:
        registry = load_step_registry(registry_path, parameters=parameter_names, prompts_dir=prompts_dir)
    else:
        logger.info("Agent '%s' has no step registry; using the default four-phase registry", name)
        registry = build_default_registry(definition.name, prompts_dir=prompts_dir, parameters=parameter_names)

    if definition.completion.type == "stepMachine" and not any(
        registry.is_terminal(step_id) for step_id in registry.steps
    ):
        raise DefinitionError(
            "stepMachine completion requires at least one terminal step",
            location=str(registry_path or agent_dir),
        )
    return LoadedAgent(definition=definition, registry=registry)


# -----------------------------------------------------------------------------
# Parameters
# -----------------------------------------------------------------------------


def _coerce(param: ParameterDefinition, value: Any) -> Any:
    if param.type == "number" and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                raise DefinitionError(
                    f"Parameter '{param.name}' expects a number, got '{value}'",
                    location=f"parameters.{param.name}",
                ) from None
    if param.type == "boolean" and isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if param.type == "array" and isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def validate_parameters(
    definition: AgentDefinition,
    supplied: Mapping[str, Any],
    provided_elsewhere: Iterable[str] = (),
) -> Dict[str, Any]:
    """Apply defaults and check required parameters.

    Args:
        definition: The agent definition.
        supplied: Parameters given on the command line.
        provided_elsewhere: Names satisfied by other CLI flags (for example
            "issue" when --issue was passed).

    Returns:
        Final parameter mapping, with values coerced to their declared types.

    Raises:
        DefinitionError: If a required parameter is missing.
    """
    satisfied = set(provided_elsewhere)
    result: Dict[str, Any] = {}
    missing = []
    for name, param in definition.parameters.items():
        if name in supplied and supplied[name] is not None:
            result[name] = _coerce(param, supplied[name])
        elif param.default is not None:
            result[name] = param.default
        elif param.required and name not in satisfied:
            missing.append(name)
    if missing:
        raise DefinitionError(
            f"Missing required parameter(s) for agent '{definition.name}': {', '.join(missing)}",
            location=f"{definition.name}:parameters",
            fix_action="Pass them with --param name=value",
        )
    for name, value in supplied.items():
        if name not in result:
            result[name] = value
    return result
