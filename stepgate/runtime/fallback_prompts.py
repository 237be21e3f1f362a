"""Built-in prompt templates used when an agent has no user template.

Templates use ``{{name}}`` markers, rendered by the step resolver. Keys
match a step's ``fallback_key`` or, failing that, its phase.
"""

from __future__ import annotations

from typing import Dict

_OUTPUT_CONTRACT = """
## Output

End your reply with a single JSON object in a ```json fenced block that
conforms to this schema:

```json
{{schema}}
```
"""

FALLBACK_TEMPLATES: Dict[str, str] = {
    "initial": """# {{agent_name}}: start work

You are working on {{work_item}} (iteration {{iteration}} of {{max_iterations}}).

Study the work-item, plan the change and begin implementing it. Do not close,
merge or relabel the work-item yourself; that happens after review.

Set `next_action.action` to:
- `next` to keep working in the continuation phase
- `repeat` to run this step again
- `handoff` when the work is ready for verification
{{feedback}}
""" + _OUTPUT_CONTRACT,
    "continuation": """# {{agent_name}}: continue work

Continue working on {{work_item}} (iteration {{iteration}} of {{max_iterations}},
{{remaining}} remaining).

Previous summary:
{{previous_summary}}

Recent history:
{{history}}

Set `next_action.action` to `next` or `repeat` to keep working, or `handoff`
when the work is complete and ready for verification.
{{feedback}}
""" + _OUTPUT_CONTRACT,
    "verification": """# {{agent_name}}: verify work

Verify the work done on {{work_item}}. Run the checks that prove it is
complete: tests, type checks, a clean git tree.

Previous summary:
{{previous_summary}}

Report `status: "approved"` with `next_action.action: "next"` when every check
passes. Report `status: "rejected"` with the problems found to send the work
back to the continuation phase.
{{feedback}}
""" + _OUTPUT_CONTRACT,
    "closure": """# {{agent_name}}: close out

The work on {{work_item}} has been verified. Confirm the final state and
report how the work-item should be closed.

Previous summary:
{{previous_summary}}

Set `action` to `close`, `label-only` or `label-and-close`, list labels to
add or remove under `issue.labels`, and set `next_action.action` to `closing`.
Report the repository state under `validation`: `git_clean`,
`type_check_passed`, `tests_passed`, `lint_passed`, `format_check_passed`.
If something is still missing, set it to `repeat` instead. Do not run any
command that changes the work-item; the runtime applies your report.
{{feedback}}
""" + _OUTPUT_CONTRACT,
    "format-error": """# Output format error

Your previous reply for step {{step_id}} could not be accepted:

{{validation_error}}

Reply again with only the corrected JSON object in a ```json fenced block.
It must conform to this schema:

```json
{{schema}}
```
""",
}


def get_fallback_template(key: str) -> str:
    """Return the built-in template for a key, defaulting to the work prompt."""
    return FALLBACK_TEMPLATES.get(key, FALLBACK_TEMPLATES["continuation"])
