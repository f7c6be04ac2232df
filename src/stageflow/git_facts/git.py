# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


class GitError(RuntimeError):
    """Git is missing, or the command failed (not a repo, unknown ref, ...)."""


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        GitError: git is not installed or exited non-zero.
    """
    try:
        out = subprocess.check_output(
            ["git", *args],
            cwd=cwd,
            text=True,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise GitError("git command not found") from e
    except subprocess.CalledProcessError as e:
        raise GitError(f"git {' '.join(args)} failed: {(e.stderr or '').strip()}") from e

    # Strip trailing newlines so callers can do clean string comparisons
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Full SHA of the current HEAD commit.

    Exposed to steps as ``Build.SourceVersion``.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """Name of the checked-out branch, or None on a detached HEAD."""
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def is_dirty(cwd: Optional[str] = None) -> bool:
    """True if the working tree has modified, staged or untracked files."""
    # Any porcelain output at all means the tree is not clean.
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """Files (relative to repo root) changed between two refs."""
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    return out.splitlines() if out else []


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """Commit where HEAD diverged from *with_ref*."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files_since(compare_ref: str = "origin/main", cwd: Optional[str] = None) -> List[str]:
    """
    Files to feed trigger path filters.

    Dirty tree: staged, unstaged and untracked files.
    Clean tree: HEAD against its merge-base with *compare_ref*, falling back
    to HEAD~1, then to every tracked file (first commit).
    """
    if is_dirty(cwd=cwd):
        files = set()
        for args in (
            ["diff", "--name-only"],
            ["diff", "--name-only", "--cached"],
            ["ls-files", "--others", "--exclude-standard"],
        ):
            out = _git(args, cwd=cwd)
            if out:
                files.update(out.splitlines())
        return sorted(files)

    try:
        base = merge_base(compare_ref, cwd=cwd)
    except GitError:
        # e.g. no remote configured
        base = "HEAD~1"

    try:
        return changed_files(base, "HEAD", cwd=cwd)
    except GitError:
        tracked = _git(["ls-files"], cwd=cwd)
        return tracked.splitlines() if tracked else []
