# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .errors import CyclicDependency, DuplicateName, UnknownDependency


@dataclass(frozen=True)
class Dag:
    """
    Validated dependency graph.

    ``deps[n]`` holds what *n* waits on; ``dependents[n]`` the reverse.
    Node order is declaration order, which callers rely on for tie-breaks.
    """
    nodes: Tuple[str, ...]
    deps: Mapping[str, Tuple[str, ...]]
    dependents: Mapping[str, Tuple[str, ...]]

    @property
    def roots(self) -> List[str]:
        return [n for n in self.nodes if not self.deps[n]]

    def levels(self) -> List[List[str]]:
        """
        Group nodes into topological levels; each level could run in parallel.

        Only used for plan display. Real dispatch order also depends on
        runtime outcomes, so the scheduler never consults this.
        """
        indeg = {n: len(self.deps[n]) for n in self.nodes}
        order = {n: i for i, n in enumerate(self.nodes)}
        q = deque(self.roots)

        levels: List[List[str]] = []
        while q:
            level = list(q)
            q.clear()
            levels.append(level)
            for node in level:
                for child in sorted(self.dependents[node], key=order.__getitem__):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
        return levels


def _find_cycle(nodes: Sequence[str], deps: Mapping[str, Sequence[str]]) -> List[str]:
    """Return one cycle as a path ``[a, b, ..., a]`` following dependency edges."""
    WHITE, GREY, BLACK = 0, 1, 2
    color: Dict[str, int] = {n: WHITE for n in nodes}

    for start in nodes:
        if color[start] != WHITE:
            continue
        # iterative DFS keeping the current path
        path: List[str] = [start]
        iters = [iter(deps[start])]
        color[start] = GREY
        while iters:
            nxt = next(iters[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                iters.pop()
                continue
            state = color.get(nxt, BLACK)
            if state == GREY:
                return path[path.index(nxt):] + [nxt]
            if state == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                iters.append(iter(deps[nxt]))
    return []


def build_dag(
    nodes: Sequence[str],
    edges: Mapping[str, Iterable[str]],
    *,
    scope: str = "pipeline",
) -> Dag:
    """
    Build a DAG from declared node names and their dependency lists.

    Requires:
      - names unique within *scope*
      - every dependency names a known node
      - no node (transitively) depends on itself

    Raises DuplicateName, UnknownDependency or CyclicDependency.
    """
    names = list(nodes)
    seen: Set[str] = set()
    for n in names:
        if n in seen:
            raise DuplicateName(scope, n)
        seen.add(n)

    deps: Dict[str, Tuple[str, ...]] = {}
    dependents: Dict[str, List[str]] = {n: [] for n in names}
    for n in names:
        unique: List[str] = []
        for d in edges.get(n, ()) or ():
            if d not in seen:
                raise UnknownDependency(n, d, names)
            # Edge d -> n (d must finish before n)
            if d not in unique:
                unique.append(d)
                dependents[d].append(n)
        deps[n] = tuple(unique)

    # Kahn's algorithm as the feasibility check
    indeg = {n: len(deps[n]) for n in names}
    q = deque(n for n in names if indeg[n] == 0)
    processed = 0
    while q:
        node = q.popleft()
        processed += 1
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                q.append(child)

    if processed != len(names):
        stuck = [n for n in names if indeg[n] > 0]
        raise CyclicDependency(_find_cycle(stuck, deps) or stuck)

    return Dag(
        nodes=tuple(names),
        deps=deps,
        dependents={n: tuple(v) for n, v in dependents.items()},
    )
