"""
step_registry.py - Load and validate an agent's step registry.

A step registry maps step ids (``<phase>.<sub_kind>[.<more>]``) to their
prompt reference, output schema and intent transitions. It is loaded once
per agent, validated eagerly, and then shared read-only by every session
running that agent.

Registry files are YAML or JSON. Both snake_case and camelCase keys are
accepted, so registries written for other tooling load unchanged:

    agentId: iterator
    version: "1.0"
    entryStepMapping: {issue: initial.issue}
    steps:
      initial.issue:
        name: Start issue
        c3: issue
        edition: default
        outputSchemaRef: {file: step_outputs.schema.json, schema: work}
        transitions:
          next: {target: continuation.issue}

Usage:
    from stepgate.config.step_registry import load_step_registry

    registry = load_step_registry(agent_dir / "steps_registry.yaml",
                                  parameters=["issue"])
    step = registry.get("initial.issue")
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import yaml

from stepgate.runtime.errors import DefinitionError, StepNotFoundError
from stepgate.runtime.types import (
    DEFAULT_INTENT_FIELD,
    PHASES,
    Intent,
    Phase,
    StepKind,
    get_path,
    step_kind_for_phase,
)

logger = logging.getLogger(__name__)

BUILTIN_SCHEMAS_DIR = Path(__file__).parent / "schemas"
DEFAULT_SCHEMA_FILE = "step_outputs.schema.json"

# Variables the runtime binds for every prompt. Anything else a template
# references must be declared as an agent parameter.
BUILTIN_VARIABLES: FrozenSet[str] = frozenset(
    {
        "agent_name",
        "step_id",
        "phase",
        "work_item",
        "issue_number",
        "project_number",
        "pr_number",
        "repository",
        "branch",
        "iteration",
        "max_iterations",
        "remaining",
        "previous_summary",
        "history",
        "feedback",
        "schema",
        "validation_error",
        "completion_criteria",
    }
)

_TEMPLATE_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_STEP_ID_RE = re.compile(r"^[a-z]+(\.[A-Za-z0-9_-]+)+$")


# -----------------------------------------------------------------------------
# Data types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class SchemaRef:
    """Reference to a named schema inside a schema file."""

    file: str
    schema: str


@dataclass(frozen=True)
class TransitionRule:
    """Where an intent leads from a given step.

    Either a fixed ``target`` (None meaning terminal) or a conditional rule
    that reads ``condition`` from the structured output and picks a target
    from ``targets`` (with an optional "default" key).
    """

    target: Optional[str] = None
    condition: Optional[str] = None
    targets: Tuple[Tuple[str, Optional[str]], ...] = ()

    @property
    def is_conditional(self) -> bool:
        return self.condition is not None

    def referenced_steps(self) -> List[str]:
        if self.is_conditional:
            return [t for _, t in self.targets if t is not None]
        return [self.target] if self.target is not None else []

    def resolve(self, data: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """Pick the target for this rule.

        Returns:
            (matched, target). ``matched`` is False when a conditional rule
            has no entry for the observed value and no default, in which case
            the caller falls back to the phase default.
        """
        if not self.is_conditional:
            return True, self.target
        value = get_path(data, self.condition or "")
        table = dict(self.targets)
        key = str(value).lower() if isinstance(value, bool) else str(value)
        if key in table:
            return True, table[key]
        if "default" in table:
            return True, table["default"]
        return False, None


@dataclass(frozen=True)
class StepDefinition:
    """A single step in an agent's registry.

    Attributes:
        step_id: "<phase>.<sub_kind>[.<more>]" identifier.
        name: Human-readable name for logs.
        phase: Phase, from the first step id segment.
        sub_kind: Second step id segment ("issue", "project", ...).
        step_kind: work, verification or closure.
        edition: Prompt edition (template file "f_<edition>.md").
        adaptation: Optional prompt variant suffix.
        fallback_key: Key of the built-in fallback template.
        variables: Template variables the step declares.
        schema_ref: External schema reference.
        schema: Inline schema, used when schema_ref is not set.
        transitions: Explicit intent -> rule overrides.
        terminal: Whether this step is a declared terminal node.
        intent_field: Dotted path of the intent in the output.
    """

    step_id: str
    name: str
    phase: Phase
    sub_kind: str
    step_kind: StepKind
    edition: str = "default"
    adaptation: Optional[str] = None
    fallback_key: Optional[str] = None
    variables: Tuple[str, ...] = ()
    schema_ref: Optional[SchemaRef] = None
    schema: Optional[Mapping[str, Any]] = None
    transitions: Mapping[str, TransitionRule] = field(default_factory=dict)
    terminal: bool = False
    intent_field: str = DEFAULT_INTENT_FIELD
    description: str = ""


@dataclass(frozen=True)
class StepRegistry:
    """All step definitions for one agent.

    Attributes:
        agent_id: Agent this registry belongs to.
        steps: Read-only mapping of step id -> StepDefinition.
        entry_step: Default entry step.
        entry_step_mapping: Work-item kind -> entry step.
        terminal_steps: Explicitly declared terminal steps.
        prompts_dir: Directory of user prompt templates.
        schemas_dir: Directory of user schema files.
    """

    agent_id: str
    version: str
    steps: Mapping[str, StepDefinition]
    entry_step: Optional[str] = None
    entry_step_mapping: Mapping[str, str] = field(default_factory=dict)
    terminal_steps: FrozenSet[str] = frozenset()
    prompts_dir: Optional[Path] = None
    schemas_dir: Optional[Path] = None

    def has(self, step_id: str) -> bool:
        return step_id in self.steps

    def get(self, step_id: str) -> StepDefinition:
        """Look up a step, raising StepNotFoundError if absent."""
        step = self.steps.get(step_id)
        if step is None:
            raise StepNotFoundError(step_id, list(self.steps))
        return step

    def entry_for(self, work_item_kind: Optional[str] = None) -> str:
        """Choose the entry step for a work-item kind.

        Resolution order: entry_step_mapping[kind], entry_step,
        "initial.<kind>", then the first registered initial step.
        """
        if work_item_kind and work_item_kind in self.entry_step_mapping:
            return self.entry_step_mapping[work_item_kind]
        if self.entry_step:
            return self.entry_step
        if work_item_kind and f"initial.{work_item_kind}" in self.steps:
            return f"initial.{work_item_kind}"
        for step_id, step in self.steps.items():
            if step.phase == Phase.INITIAL:
                return step_id
        raise DefinitionError(
            f"Registry for agent '{self.agent_id}' has no entry step",
            location=self.agent_id,
            fix_action="Declare entryStep or an initial.* step",
        )

    def is_terminal(self, step_id: str) -> bool:
        """Whether reaching this step can end a step-machine session.

        When the registry declares no terminal steps at all, every closure
        step is terminal.
        """
        step = self.get(step_id)
        if step.terminal or step_id in self.terminal_steps:
            return True
        declared = self.terminal_steps or any(s.terminal for s in self.steps.values())
        return not declared and step.phase == Phase.CLOSURE


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def template_variables(text: str) -> List[str]:
    """Return the ``{{name}}`` markers in a template, in order of appearance."""
    seen: List[str] = []
    for match in _TEMPLATE_VAR_RE.finditer(text):
        name = match.group(1)
        if name not in seen:
            seen.append(name)
    return seen


def _parse_transition(step_id: str, intent: str, raw: Any) -> TransitionRule:
    location = f"{step_id}.transitions.{intent}"
    if raw is None or isinstance(raw, str):
        return TransitionRule(target=raw)
    if not isinstance(raw, dict):
        raise DefinitionError(
            f"Transition must be a mapping, got {type(raw).__name__}",
            location=location,
        )
    if "condition" in raw:
        targets = raw.get("targets")
        if not isinstance(targets, dict) or not targets:
            raise DefinitionError(
                "Conditional transition needs a non-empty 'targets' mapping",
                location=location,
            )
        return TransitionRule(
            condition=str(raw["condition"]),
            targets=tuple((str(k), v) for k, v in targets.items()),
        )
    if "target" not in raw:
        raise DefinitionError(
            "Transition needs 'target' (use null for terminal) or 'condition'",
            location=location,
        )
    return TransitionRule(target=raw["target"])


def _parse_step(step_id: str, raw: Dict[str, Any]) -> StepDefinition:
    if not _STEP_ID_RE.match(step_id):
        raise DefinitionError(
            f"Invalid step id '{step_id}'",
            location=step_id,
            fix_action="Use '<phase>.<sub_kind>' such as 'initial.issue'",
        )
    declared_id = _pick(raw, "step_id", "stepId", default=step_id)
    if declared_id != step_id:
        raise DefinitionError(
            f"Step key '{step_id}' does not match its stepId '{declared_id}'",
            location=step_id,
        )

    phase_name, sub_kind = step_id.split(".")[0], step_id.split(".")[1]
    if phase_name not in PHASES:
        raise DefinitionError(
            f"Unknown phase '{phase_name}'",
            location=step_id,
            fix_action=f"Use one of: {', '.join(PHASES)}",
        )
    declared_phase = _pick(raw, "phase", "c2", default=phase_name)
    if declared_phase != phase_name:
        raise DefinitionError(
            f"Declared phase '{declared_phase}' disagrees with step id",
            location=step_id,
        )
    phase = Phase(phase_name)

    step_kind = step_kind_for_phase(phase)
    declared_kind = _pick(raw, "step_kind", "stepKind")
    if declared_kind is not None and declared_kind != step_kind.value:
        raise DefinitionError(
            f"stepKind '{declared_kind}' is not valid for phase '{phase_name}' "
            f"(expected '{step_kind.value}')",
            location=step_id,
        )

    transitions: Dict[str, TransitionRule] = {}
    for intent, rule in (raw.get("transitions") or {}).items():
        if intent not in {i.value for i in Intent}:
            raise DefinitionError(
                f"Unknown intent '{intent}' in transitions",
                location=f"{step_id}.transitions",
                fix_action=f"Use one of: {', '.join(i.value for i in Intent)}",
            )
        transitions[intent] = _parse_transition(step_id, intent, rule)

    schema_ref = None
    raw_ref = _pick(raw, "schema_ref", "outputSchemaRef")
    if raw_ref is not None:
        if not isinstance(raw_ref, dict) or "file" not in raw_ref or "schema" not in raw_ref:
            raise DefinitionError(
                "outputSchemaRef needs 'file' and 'schema'",
                location=f"{step_id}.outputSchemaRef",
            )
        schema_ref = SchemaRef(file=str(raw_ref["file"]), schema=str(raw_ref["schema"]))

    inline_schema = raw.get("schema")
    if inline_schema is not None and not isinstance(inline_schema, dict):
        raise DefinitionError("Inline schema must be a mapping", location=f"{step_id}.schema")

    gate = _pick(raw, "structured_gate", "structuredGate", default={}) or {}
    intent_field = _pick(raw, "intent_field", "intentField") or gate.get("intentField") or DEFAULT_INTENT_FIELD

    return StepDefinition(
        step_id=step_id,
        name=str(raw.get("name") or step_id),
        phase=phase,
        sub_kind=str(_pick(raw, "sub_kind", "c3", default=sub_kind)),
        step_kind=step_kind,
        edition=str(raw.get("edition") or "default"),
        adaptation=raw.get("adaptation"),
        fallback_key=_pick(raw, "fallback_key", "fallbackKey"),
        variables=tuple(_pick(raw, "variables", "uvVariables", default=[]) or []),
        schema_ref=schema_ref,
        schema=MappingProxyType(inline_schema) if inline_schema is not None else None,
        transitions=MappingProxyType(transitions),
        terminal=bool(raw.get("terminal", False)),
        intent_field=str(intent_field),
        description=str(raw.get("description") or ""),
    )


def find_schema_file(file_name: str, schemas_dir: Optional[Path]) -> Optional[Path]:
    """Locate a schema file in the agent's schemas dir, then the built-ins."""
    candidates = []
    if schemas_dir is not None:
        candidates.append(schemas_dir / file_name)
    candidates.append(BUILTIN_SCHEMAS_DIR / file_name)
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def prompt_template_path(step: StepDefinition, prompts_dir: Path, adaptation: Optional[str] = None) -> Path:
    """Path of the user template for a step.

    Layout: ``<prompts_dir>/<phase>/<sub_kind>/f_<edition>[_<adaptation>].md``
    """
    suffix = adaptation if adaptation is not None else step.adaptation
    name = f"f_{step.edition}_{suffix}.md" if suffix else f"f_{step.edition}.md"
    return prompts_dir / step.phase.value / step.sub_kind / name


def _validate_references(registry: StepRegistry, source: str) -> None:
    steps = registry.steps

    def _require(step_id: Optional[str], location: str) -> None:
        if step_id is not None and step_id not in steps:
            raise DefinitionError(
                f"Referenced step '{step_id}' is not registered",
                location=location,
                fix_action="Add the step to the registry or fix the reference",
            )

    _require(registry.entry_step, f"{source}:entryStep")
    for kind, step_id in registry.entry_step_mapping.items():
        _require(step_id, f"{source}:entryStepMapping.{kind}")
    for step_id in registry.terminal_steps:
        _require(step_id, f"{source}:terminalSteps")

    for step in steps.values():
        for intent, rule in step.transitions.items():
            location = f"{step.step_id}.transitions.{intent}"
            for target in rule.referenced_steps():
                _require(target, location)
            if intent == Intent.CLOSING.value:
                if step.phase != Phase.CLOSURE:
                    raise DefinitionError(
                        "Only closure steps may define a 'closing' transition",
                        location=location,
                    )
                if rule.referenced_steps():
                    raise DefinitionError(
                        "A 'closing' transition is terminal; its target must be null",
                        location=location,
                    )
                continue
            terminal_targets = (
                [t for _, t in rule.targets if t is None] if rule.is_conditional else [rule.target]
            )
            if any(t is None for t in terminal_targets):
                raise DefinitionError(
                    f"Only 'closing' may end the flow; '{intent}' needs a target step",
                    location=location,
                    fix_action="Route to a closure step and emit 'closing' from there",
                )


def _validate_schemas(registry: StepRegistry) -> None:
    for step in registry.steps.values():
        if step.schema_ref is None:
            continue
        path = find_schema_file(step.schema_ref.file, registry.schemas_dir)
        if path is None:
            raise DefinitionError(
                f"Schema file '{step.schema_ref.file}' not found",
                location=f"{step.step_id}.outputSchemaRef",
                fix_action=f"Create it under {registry.schemas_dir}",
            )
        with path.open(encoding="utf-8") as f:
            doc = json.load(f)
        definitions = doc.get("definitions") or {}
        if step.schema_ref.schema not in doc and step.schema_ref.schema not in definitions:
            raise DefinitionError(
                f"Schema '{step.schema_ref.schema}' not defined in {path.name}",
                location=f"{step.step_id}.outputSchemaRef",
            )


def _validate_variables(registry: StepRegistry, parameters: FrozenSet[str]) -> None:
    allowed = BUILTIN_VARIABLES | parameters

    def _check(names: Iterable[str], location: str) -> None:
        unknown = sorted(set(names) - allowed)
        if unknown:
            raise DefinitionError(
                f"Undeclared template variable(s): {', '.join(unknown)}",
                location=location,
                fix_action="Declare them as agent parameters",
            )

    for step in registry.steps.values():
        _check(step.variables, f"{step.step_id}.variables")
        if registry.prompts_dir is None:
            continue
        template = prompt_template_path(step, registry.prompts_dir)
        if template.is_file():
            _check(template_variables(template.read_text(encoding="utf-8")), str(template))


def parse_step_registry(
    data: Dict[str, Any],
    source: str = "<registry>",
    parameters: Iterable[str] = (),
    prompts_dir: Optional[Path] = None,
    schemas_dir: Optional[Path] = None,
) -> StepRegistry:
    """Build and validate a StepRegistry from already-parsed data.

    Args:
        data: Registry mapping (agentId, steps, entryStep, ...).
        source: Label used in error locations.
        parameters: Agent parameter names templates may reference.
        prompts_dir: Directory of user prompt templates.
        schemas_dir: Directory of user schema files.

    Returns:
        The validated, immutable registry.

    Raises:
        DefinitionError: On any structural or reference problem.
    """
    if not isinstance(data, dict):
        raise DefinitionError("Registry must be a mapping", location=source)
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, dict) or not raw_steps:
        raise DefinitionError("Registry has no steps", location=source)

    steps: Dict[str, StepDefinition] = {}
    for step_id, raw in raw_steps.items():
        if not isinstance(raw, dict):
            raise DefinitionError("Step definition must be a mapping", location=str(step_id))
        steps[str(step_id)] = _parse_step(str(step_id), raw)

    registry = StepRegistry(
        agent_id=str(_pick(data, "agent_id", "agentId", default="")),
        version=str(data.get("version", "1.0")),
        steps=MappingProxyType(steps),
        entry_step=_pick(data, "entry_step", "entryStep"),
        entry_step_mapping=MappingProxyType(dict(_pick(data, "entry_step_mapping", "entryStepMapping", default={}))),
        terminal_steps=frozenset(_pick(data, "terminal_steps", "terminalSteps", default=[]) or []),
        prompts_dir=prompts_dir,
        schemas_dir=schemas_dir,
    )

    _validate_references(registry, source)
    _validate_schemas(registry)
    _validate_variables(registry, frozenset(parameters))
    logger.debug("Loaded registry for %s with %d steps from %s", registry.agent_id, len(steps), source)
    return registry


def load_step_registry(
    path: Path,
    parameters: Iterable[str] = (),
    prompts_dir: Optional[Path] = None,
    schemas_dir: Optional[Path] = None,
) -> StepRegistry:
    """Load a step registry file (YAML or JSON).

    ``prompts_dir`` and ``schemas_dir`` default to the registry's
    ``userPromptsBase``/``schemasBase`` keys, resolved relative to the file,
    then to ``prompts/`` and ``schemas/`` beside it.

    Raises:
        DefinitionError: If the file is missing, unparsable or invalid.
    """
    path = Path(path)
    if not path.is_file():
        raise DefinitionError(f"Step registry not found: {path}", location=str(path))
    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Cannot parse step registry: {e}", location=str(path)) from e

    base = path.parent
    if isinstance(data, dict):
        if prompts_dir is None:
            prompts_dir = base / _pick(data, "prompts_dir", "userPromptsBase", default="prompts")
        if schemas_dir is None:
            schemas_dir = base / _pick(data, "schemas_dir", "schemasBase", default="schemas")
    return parse_step_registry(
        data,
        source=str(path),
        parameters=parameters,
        prompts_dir=prompts_dir,
        schemas_dir=schemas_dir,
    )


def build_default_registry(
    agent_id: str,
    sub_kinds: Iterable[str] = ("issue", "project", "iterate"),
    prompts_dir: Optional[Path] = None,
    parameters: Iterable[str] = (),
) -> StepRegistry:
    """Registry used when an agent ships no steps_registry file.

    Each sub kind gets the four phases wired
    initial -> continuation -> verification -> closure, with the built-in
    schemas and fallback prompts.
    """
    steps: Dict[str, Any] = {}
    mapping: Dict[str, str] = {}
    for sub in sub_kinds:
        mapping[sub] = f"initial.{sub}"
        for phase, schema in (
            ("initial", "work"),
            ("continuation", "work"),
            ("verification", "verification"),
            ("closure", "closure"),
        ):
            steps[f"{phase}.{sub}"] = {
                "name": f"{phase.title()} {sub}",
                "fallbackKey": phase,
                "outputSchemaRef": {"file": DEFAULT_SCHEMA_FILE, "schema": schema},
            }
    return parse_step_registry(
        {"agentId": agent_id, "version": "1.0", "steps": steps, "entryStepMapping": mapping},
        source=f"<default registry for {agent_id}>",
        parameters=parameters,
        prompts_dir=prompts_dir,
    )
