# trigger.py
from __future__ import annotations

from fnmatch import fnmatch
from typing import Iterable, List, Optional

from .model import Trigger


def branch_short_name(branch: str) -> str:
    """``refs/heads/feature/x`` -> ``feature/x``."""
    for prefix in ("refs/heads/", "refs/tags/"):
        if branch.startswith(prefix):
            return branch[len(prefix):]
    return branch


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def branch_matches(trigger: Trigger, branch: str) -> bool:
    short = branch_short_name(branch)
    candidates = (short, branch)
    included = any(_matches_any(c, trigger.include) for c in candidates)
    excluded = any(_matches_any(c, trigger.exclude) for c in candidates)
    return included and not excluded


def paths_match(trigger: Trigger, changed_files: List[str]) -> bool:
    """True if at least one changed file is included and not excluded."""
    for f in changed_files:
        if trigger.paths_include and not _matches_any(f, trigger.paths_include):
            continue
        if _matches_any(f, trigger.paths_exclude):
            continue
        return True
    return False


def trigger_matches(
    trigger: Trigger,
    branch: Optional[str],
    changed_files: Optional[List[str]] = None,
) -> bool:
    """
    Decide whether a source event starts a run.

    ``branch=None`` means a manual run with no source branch: it matches any
    enabled trigger. Path filters only apply when *changed_files* is known.
    """
    if not trigger.enabled:
        return False
    if branch is not None and not branch_matches(trigger, branch):
        return False
    has_path_filter = bool(trigger.paths_include or trigger.paths_exclude)
    if has_path_filter and changed_files is not None:
        return paths_match(trigger, changed_files)
    return True
