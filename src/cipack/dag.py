# dag.py
from __future__ import annotations

from typing import Dict, List, Mapping

from .errors import CycleError, UnknownDependencyError
from .model import Job

_IN_PROGRESS = -1


def _needs_of(job: Job) -> List[str]:
    return list(getattr(job, "needs", None) or [])


def compute_depths(jobs: Mapping[str, Job]) -> Dict[str, int]:
    """
    depth(j) = 0 if j needs nothing, else 1 + max(depth(d) for d in needs(j)).

    Memoized recursion; a job met again while still in progress closes a
    cycle and raises CycleError naming it. Unknown `needs` targets raise
    UnknownDependencyError.
    """
    depths: Dict[str, int] = {}

    def visit(name: str, path: List[str]) -> int:
        state = depths.get(name)
        if state == _IN_PROGRESS:
            start = path.index(name)
            raise CycleError(name, path[start:] + [name])
        if state is not None:
            return state

        depths[name] = _IN_PROGRESS
        path.append(name)
        depth = 0
        for dep in _needs_of(jobs[name]):
            if dep not in jobs:
                raise UnknownDependencyError(name, dep, list(jobs))
            depth = max(depth, 1 + visit(dep, path))
        path.pop()
        depths[name] = depth
        return depth

    for name in sorted(jobs):
        visit(name, [])
    return depths


def compute_levels(jobs: Mapping[str, Job]) -> List[List[str]]:
    """
    Group jobs into execution levels.

    Level i holds every job of depth i (sorted by name); levels run strictly
    in ascending order and jobs inside one level are independent.
    """
    depths = compute_depths(jobs)
    if not depths:
        return []
    levels: List[List[str]] = [[] for _ in range(max(depths.values()) + 1)]
    for name in sorted(depths):
        levels[depths[name]].append(name)
    return levels


def ancestors(jobs: Mapping[str, Job], name: str) -> set[str]:
    """All jobs `name` depends on, directly or transitively."""
    seen: set[str] = set()
    stack = list(_needs_of(jobs[name]))
    while stack:
        d = stack.pop()
        if d in seen:
            continue
        seen.add(d)
        stack.extend(_needs_of(jobs[d]))
    return seen
