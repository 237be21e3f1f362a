"""Tool profile registry for per-step-kind tool access.

Provides:
1. Tool profile definitions (allowed tools per step kind)
2. The boundary tool and boundary bash command lists
3. Fallbacks used when tool_profiles.yaml cannot be read
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

# Cache for loaded profiles
_profiles_cache: Optional[Dict] = None
_config_path: Optional[Path] = None


def _get_config_path() -> Path:
    """Get the path to tool_profiles.yaml."""
    return Path(__file__).parent / "tool_profiles.yaml"


def _load_profiles() -> Dict:
    """Load and cache tool profiles from YAML."""
    global _profiles_cache, _config_path

    config_path = _get_config_path()

    # Return cached if unchanged
    if _profiles_cache is not None and _config_path == config_path:
        return _profiles_cache

    with config_path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    _profiles_cache = data
    _config_path = config_path
    return data


def reset_profiles() -> None:
    """Reset cached profiles (for testing)."""
    global _profiles_cache, _config_path
    _profiles_cache = None
    _config_path = None


# Fallbacks (used if YAML loading fails)
FALLBACK_BASE_TOOLS: Tuple[str, ...] = (
    "Bash", "Read", "Write", "Edit", "Glob", "Grep", "WebFetch", "WebSearch", "Task", "TodoWrite",
)

FALLBACK_BOUNDARY_TOOLS: Tuple[str, ...] = (
    "githubIssueClose",
    "githubIssueUpdate",
    "githubIssueComment",
    "githubPrClose",
    "githubPrMerge",
    "githubPrUpdate",
    "githubReleaseCreate",
    "githubReleasePublish",
)

FALLBACK_BOUNDARY_BASH: Tuple[str, ...] = (
    "gh issue close",
    "gh issue delete",
    "gh issue transfer",
    "gh issue edit",
    "gh issue reopen",
    "gh pr close",
    "gh pr merge",
    "gh pr ready",
    "gh pr edit",
    "gh release create",
    "gh release edit",
    "gh api",
)

FALLBACK_PROFILES: Dict[str, Tuple[str, ...]] = {
    "work": FALLBACK_BASE_TOOLS,
    "verification": ("Bash", "Read", "Glob", "Grep", "WebFetch", "WebSearch", "TodoWrite"),
    "closure": ("Bash", "Read", "Glob", "Grep", "TodoWrite"),
}


@dataclass(frozen=True)
class ToolProfile:
    """Resolved tool profile for one step kind."""

    name: str
    allowed: Tuple[str, ...]
    deny_boundary: bool = True


def _safe_load() -> Dict:
    try:
        return _load_profiles()
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not load tool profiles, using fallbacks: %s", e)
        return {}


def get_base_tools() -> Tuple[str, ...]:
    tools = _safe_load().get("base_tools")
    return tuple(tools) if tools else FALLBACK_BASE_TOOLS


def get_boundary_tools() -> Tuple[str, ...]:
    """Tool names that perform work-item mutations.

    Examples:
        >>> "githubIssueClose" in get_boundary_tools()
        True
    """
    tools = _safe_load().get("boundary_tools")
    return tuple(tools) if tools else FALLBACK_BOUNDARY_TOOLS


def get_boundary_bash_patterns() -> Tuple[str, ...]:
    """Shell command prefixes that mutate the work-item."""
    patterns = _safe_load().get("boundary_bash")
    return tuple(patterns) if patterns else FALLBACK_BOUNDARY_BASH


def get_profile(step_kind: str) -> ToolProfile:
    """Resolve the tool profile for a step kind.

    Args:
        step_kind: "work", "verification" or "closure".

    Returns:
        ToolProfile, from YAML when present, else from FALLBACK_PROFILES.

    Examples:
        >>> get_profile("closure").deny_boundary
        True
    """
    kind = step_kind.lower()
    profile = (_safe_load().get("profiles") or {}).get(kind) or {}
    allowed = profile.get("allowed")
    return ToolProfile(
        name=kind,
        allowed=tuple(allowed) if allowed else FALLBACK_PROFILES.get(kind) or get_base_tools(),
        deny_boundary=bool(profile.get("deny_boundary", True)),
    )
