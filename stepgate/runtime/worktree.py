"""
worktree.py - Isolated git worktrees for sessions.

Each session that enables worktrees gets its own branch checked out under
``<worktree_root>/<branch>`` so concurrent sessions never share a working
copy:

    git worktree add -b <branch> <path> <base>

Branch names default to ``<agent>/<work-item>-<yyyymmdd-hhmmss>``.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from stepgate.runtime.errors import WorktreeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorktreeSetup:
    path: Path
    branch: str
    base_branch: str
    created: bool


def generate_branch_name(base_name: str, now: Optional[datetime] = None) -> str:
    """Append a timestamp to a branch base name.

    Examples:
        >>> generate_branch_name("feature/docs", datetime(2026, 1, 5, 14, 30, 22))
        'feature/docs-20260105-143022'
    """
    now = now or datetime.now(timezone.utc)
    return f"{base_name}-{now.strftime('%Y%m%d-%H%M%S')}"


def _run_git(args: List[str], cwd: Optional[Path] = None) -> str:
    cmd = ["git"] + args
    try:
        completed = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=120)
    except FileNotFoundError as e:
        raise WorktreeError("git executable not found") from e
    except subprocess.TimeoutExpired as e:
        raise WorktreeError(f"'{' '.join(cmd)}' timed out") from e
    if completed.returncode != 0:
        raise WorktreeError(f"'{' '.join(cmd)}' failed: {(completed.stderr or '').strip()[:500]}")
    return completed.stdout.strip()


def get_current_branch(cwd: Optional[Path] = None) -> str:
    return _run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)


def get_repo_root(cwd: Optional[Path] = None) -> Path:
    return Path(_run_git(["rev-parse", "--show-toplevel"], cwd))


def setup_worktree(
    worktree_root: Path,
    branch: Optional[str] = None,
    branch_base_name: Optional[str] = None,
    base_branch: Optional[str] = None,
    cwd: Optional[Path] = None,
) -> WorktreeSetup:
    """Create (or reuse) a worktree for a session.

    Args:
        worktree_root: Directory holding worktrees, relative to the repo root.
        branch: Exact branch name to use (--branch).
        branch_base_name: Base for a generated timestamped branch name.
        base_branch: Branch to fork from. Defaults to the current branch.
        cwd: Directory inside the repository.

    Returns:
        WorktreeSetup; ``created`` is False when the directory already existed,
        which is the case on resume.

    Raises:
        WorktreeError: If a git command fails.
    """
    base = base_branch or get_current_branch(cwd)
    branch_name = branch or generate_branch_name(branch_base_name or base)
    repo_root = get_repo_root(cwd)
    path = (repo_root / worktree_root / branch_name.replace("/", "-")).resolve()

    if path.is_dir():
        logger.info("Reusing worktree %s on branch %s", path, branch_name)
        return WorktreeSetup(path=path, branch=branch_name, base_branch=base, created=False)

    path.parent.mkdir(parents=True, exist_ok=True)
    _run_git(["worktree", "add", "-b", branch_name, str(path), base], cwd)
    logger.info("Created worktree %s on branch %s (from %s)", path, branch_name, base)
    return WorktreeSetup(path=path, branch=branch_name, base_branch=base, created=True)
