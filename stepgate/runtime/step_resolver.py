"""
step_resolver.py - Map a step id to its prompt and output schema.

Resolution order for the prompt:
    1. User template: <prompts_dir>/<phase>/<sub_kind>/f_<edition>[_<adaptation>].md
    2. Built-in fallback keyed by the step's fallback_key, then its phase

The schema is always the step's own: the inline ``schema`` if present,
otherwise the definition named by ``outputSchemaRef`` (looked up in the
agent's schemas dir, then in the package's built-in schemas).

Usage:
    from stepgate.runtime.step_resolver import StepResolver

    resolver = StepResolver(registry, agent_name="iterator")
    resolved = resolver.resolve("initial.issue", {"issue_number": 42})
    worker_prompt = resolved.prompt
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from stepgate.config.step_registry import (
    StepDefinition,
    StepRegistry,
    find_schema_file,
    prompt_template_path,
)
from stepgate.runtime.errors import DefinitionError
from stepgate.runtime.fallback_prompts import get_fallback_template
from stepgate.runtime.types import Phase

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

FORMAT_ERROR_ADAPTATION = "format-error"

# Schema used when a step declares none: any object with an intent
PERMISSIVE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["next_action"],
    "properties": {
        "next_action": {
            "type": "object",
            "required": ["action"],
            "properties": {"action": {"type": "string"}},
        }
    },
}


@dataclass(frozen=True)
class ResolvedStep:
    """A step ready for worker invocation.

    Attributes:
        step: The step definition.
        prompt: Rendered prompt text.
        schema: JSON Schema the worker's output must satisfy.
        source: "user" or "fallback".
        template_path: User template used, if any.
    """

    step: StepDefinition
    prompt: str
    schema: Dict[str, Any]
    source: str
    template_path: Optional[Path] = None


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` markers with variable values.

    Unknown markers are left in place so a missing variable is visible in
    the prompt instead of silently becoming an empty string.

    Examples:
        >>> render_template("Issue {{issue_number}}", {"issue_number": 7})
        'Issue 7'
        >>> render_template("{{missing}}", {})
        '{{missing}}'
    """

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name not in variables or variables[name] is None:
            logger.debug("Template variable '%s' not bound; leaving marker", name)
            return match.group(0)
        value = variables[name]
        if isinstance(value, (dict, list)):
            return json.dumps(value, indent=2)
        return str(value)

    return VARIABLE_PATTERN.sub(_replace, template)


class StepResolver:
    """Resolves step ids against one agent's registry.

    Schemas are cached per step; template files are re-read on every
    resolution so edits take effect on the next iteration.
    """

    def __init__(self, registry: StepRegistry, agent_name: Optional[str] = None):
        self._registry = registry
        self._agent_name = agent_name or registry.agent_id
        self._schema_cache: Dict[str, Dict[str, Any]] = {}

    @property
    def registry(self) -> StepRegistry:
        return self._registry

    def schema_for(self, step_id: str) -> Dict[str, Any]:
        """Return the output schema bound to a step.

        Raises:
            StepNotFoundError: If the step id is unregistered.
            DefinitionError: If the referenced schema cannot be loaded.
        """
        if step_id in self._schema_cache:
            return self._schema_cache[step_id]
        step = self._registry.get(step_id)
        schema = self._load_schema(step)
        self._schema_cache[step_id] = schema
        return schema

    def _load_schema(self, step: StepDefinition) -> Dict[str, Any]:
        if step.schema is not None:
            return json.loads(json.dumps(dict(step.schema)))
        if step.schema_ref is None:
            return dict(PERMISSIVE_SCHEMA)

        path = find_schema_file(step.schema_ref.file, self._registry.schemas_dir)
        if path is None:
            raise DefinitionError(
                f"Schema file '{step.schema_ref.file}' not found",
                location=f"{step.step_id}.outputSchemaRef",
            )
        with path.open(encoding="utf-8") as f:
            doc = json.load(f)
        definitions = doc.get("definitions") or {}
        name = step.schema_ref.schema
        if name in definitions:
            schema = dict(definitions[name])
        elif name in doc:
            schema = dict(doc[name])
        else:
            raise DefinitionError(
                f"Schema '{name}' not defined in {path.name}",
                location=f"{step.step_id}.outputSchemaRef",
            )
        # Keep sibling definitions so internal "#/definitions/..." refs resolve
        if definitions and "definitions" not in schema:
            schema["definitions"] = definitions
        return schema

    def _base_variables(self, step: StepDefinition, schema: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "agent_name": self._agent_name,
            "step_id": step.step_id,
            "phase": step.phase.value,
            "schema": json.dumps(schema, indent=2),
        }

    def _read_user_template(self, step: StepDefinition, adaptation: Optional[str] = None) -> Optional[Path]:
        if self._registry.prompts_dir is None:
            return None
        path = prompt_template_path(step, self._registry.prompts_dir, adaptation)
        return path if path.is_file() else None

    def resolve(self, step_id: str, variables: Optional[Mapping[str, Any]] = None) -> ResolvedStep:
        """Resolve a step id to its rendered prompt and schema.

        Args:
            step_id: Registered step id.
            variables: Runtime and parameter variables for the template.

        Returns:
            ResolvedStep with source "user" or "fallback".

        Raises:
            StepNotFoundError: If the step id is unregistered.
        """
        step = self._registry.get(step_id)
        schema = self.schema_for(step_id)
        bound = self._base_variables(step, schema)
        bound.update(variables or {})

        template_path = self._read_user_template(step)
        if template_path is not None:
            template = template_path.read_text(encoding="utf-8")
            source = "user"
        else:
            template = get_fallback_template(step.fallback_key or step.phase.value)
            source = "fallback"
        logger.debug("Resolved %s from %s template", step_id, source)
        return ResolvedStep(
            step=step,
            prompt=render_template(template, bound),
            schema=schema,
            source=source,
            template_path=template_path,
        )

    def resolve_phase(
        self,
        phase: Phase,
        sub_kind: str,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ResolvedStep:
        """Resolve by (phase, sub kind), e.g. (Phase.CLOSURE, "issue")."""
        return self.resolve(f"{phase.value}.{sub_kind}", variables)

    def resolve_format_error(
        self,
        step_id: str,
        error: str,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> ResolvedStep:
        """Resolve the format-error variant of a step.

        The prompt embeds the validation error and the step's schema. A user
        template ``f_<edition>_format-error.md`` overrides the built-in one.
        """
        step = self._registry.get(step_id)
        schema = self.schema_for(step_id)
        bound = self._base_variables(step, schema)
        bound.update(variables or {})
        bound["validation_error"] = error

        template_path = self._read_user_template(step, FORMAT_ERROR_ADAPTATION)
        if template_path is not None:
            template = template_path.read_text(encoding="utf-8")
            source = "user"
        else:
            template = get_fallback_template(FORMAT_ERROR_ADAPTATION)
            source = "fallback"
        return ResolvedStep(
            step=step,
            prompt=render_template(template, bound),
            schema=schema,
            source=source,
            template_path=template_path,
        )
