"""
output_validator.py - Extract and validate a worker's structured output.

Workers may return a structured payload directly (when the CLI enforces a
JSON schema) or embed a JSON object in free text. Extraction tries, in order:

    1. The structured payload, if the worker supplied one
    2. The whole reply parsed as JSON
    3. The last ```json (or ```<block_type>) fenced block
    4. The first balanced {...} span in the text

The extracted object is validated with jsonschema (Draft 7). Any failure
raises ValidationError carrying every schema message, so the next prompt
can show the worker exactly what was wrong.

Usage:
    from stepgate.runtime.output_validator import OutputValidator

    validator = OutputValidator()
    output = validator.parse(reply_text, structured=None, schema=schema)
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

import jsonschema

from stepgate.runtime.errors import DefinitionError, ValidationError
from stepgate.runtime.types import DEFAULT_INTENT_FIELD, StructuredOutput

logger = logging.getLogger(__name__)

FENCED_BLOCK_PATTERN = re.compile(r"```([A-Za-z0-9_-]*)[ \t]*\n(.*?)```", re.DOTALL)

# Cap on how many schema errors are echoed back to the worker
MAX_REPORTED_ERRORS = 10


def _try_json(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def _first_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced {...} span, respecting JSON strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_object(text: str, block_types: tuple = ("json",)) -> Optional[Dict[str, Any]]:
    """Find a JSON object in free-form worker text.

    Args:
        text: Raw reply text.
        block_types: Fence languages to consider, besides unlabelled fences.

    Returns:
        The parsed object, or None if no object could be found.

    Examples:
        >>> extract_json_object('done\\n```json\\n{"a": 1}\\n```')
        {'a': 1}
        >>> extract_json_object('result: {"a": {"b": 2}} trailing')
        {'a': {'b': 2}}
    """
    if not text:
        return None

    whole = _try_json(text.strip())
    if isinstance(whole, dict):
        return whole

    # Prefer the last fenced block; workers restate corrected output at the end
    for lang, body in reversed(FENCED_BLOCK_PATTERN.findall(text)):
        if lang and lang not in block_types:
            continue
        parsed = _try_json(body.strip())
        if isinstance(parsed, dict):
            return parsed

    span = _first_balanced_object(text)
    if span is not None:
        parsed = _try_json(span)
        if isinstance(parsed, dict):
            return parsed
    return None


class OutputValidator:
    """Parses worker replies into StructuredOutput, validating against a schema."""

    def __init__(self, block_types: tuple = ("json",)):
        self._block_types = block_types
        self._validators: Dict[str, jsonschema.Draft7Validator] = {}

    def _validator_for(self, schema: Dict[str, Any]) -> jsonschema.Draft7Validator:
        key = json.dumps(schema, sort_keys=True)
        validator = self._validators.get(key)
        if validator is None:
            try:
                jsonschema.Draft7Validator.check_schema(schema)
            except jsonschema.SchemaError as e:
                raise DefinitionError(f"Invalid output schema: {e.message}") from e
            validator = jsonschema.Draft7Validator(schema)
            self._validators[key] = validator
        return validator

    def validate(self, data: Dict[str, Any], schema: Dict[str, Any]) -> List[str]:
        """Return schema violations for data (empty if valid)."""
        errors: List[str] = []
        for error in sorted(self._validator_for(schema).iter_errors(data), key=lambda e: list(e.absolute_path)):
            json_path = error.json_path if hasattr(error, "json_path") else str(list(error.absolute_path))
            errors.append(f"Validation error at {json_path}: {error.message}")
        return errors

    def parse(
        self,
        text: str,
        schema: Dict[str, Any],
        structured: Optional[Dict[str, Any]] = None,
        intent_field: str = DEFAULT_INTENT_FIELD,
    ) -> StructuredOutput:
        """Extract and validate one worker reply.

        Args:
            text: The worker's textual reply.
            schema: JSON Schema for the current step.
            structured: Payload the worker returned out of band, if any.
            intent_field: Dotted path of the intent within the object.

        Returns:
            StructuredOutput wrapping the validated object.

        Raises:
            ValidationError: If no object is found or it violates the schema.
        """
        data = structured if isinstance(structured, dict) else extract_json_object(text, self._block_types)
        if data is None:
            raise ValidationError(
                "No JSON object found in the reply",
                errors=["Expected a JSON object in a ```json fenced block"],
                raw=text or "",
            )

        errors = self.validate(data, schema)
        if errors:
            logger.debug("Output failed schema validation: %s", errors)
            reported = errors[:MAX_REPORTED_ERRORS]
            if len(errors) > MAX_REPORTED_ERRORS:
                reported.append(f"... and {len(errors) - MAX_REPORTED_ERRORS} more")
            raise ValidationError(
                "Reply does not match the step's output schema",
                errors=reported,
                raw=text or "",
            )
        return StructuredOutput(data=data, intent_field=intent_field)
