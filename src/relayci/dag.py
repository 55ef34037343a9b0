# dag.py
from __future__ import annotations

from typing import Dict, List, Set, Tuple

from .model import Job, Pipeline


class CycleError(ValueError):
    """The job graph has a dependency cycle; nothing may run."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Returns (adj, indeg) where adj maps a job to its dependents and indeg is
    the number of unmet dependencies per job.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate job names found: {dupes}")

    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs:
            if need not in adj:
                raise ValueError(
                    f"Job '{job.name}' needs missing job '{need}'. "
                    f"Known jobs: {sorted(adj)}"
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def _find_cycle(jobs: List[Job], stuck: Set[str]) -> List[str]:
    needs = {j.name: [n for n in j.needs if n in stuck] for j in jobs if j.name in stuck}
    # every stuck node still has a stuck dependency, so walking needs must revisit a node
    start = next(j.name for j in jobs if j.name in stuck)
    path: List[str] = []
    seen: Dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = needs[node][0]
    cycle = path[seen[node]:]
    return cycle + [cycle[0]]


def resolve(pipeline: Pipeline | List[Job]) -> List[Job]:
    """
    Topologically order the jobs; every job comes after all of its needs.

    Ties are broken by declaration order so the plan is deterministic.
    Raises CycleError if the graph is not acyclic.
    """
    jobs = list(pipeline.jobs if isinstance(pipeline, Pipeline) else pipeline)
    adj, indeg = build_dag(jobs)
    position = {j.name: i for i, j in enumerate(jobs)}
    by_name = {j.name: j for j in jobs}
    indeg = dict(indeg)

    ready = sorted((n for n, d in indeg.items() if d == 0), key=position.__getitem__)
    ordered: List[Job] = []

    while ready:
        name = ready.pop(0)
        ordered.append(by_name[name])
        for child in adj[name]:
            indeg[child] -= 1
            if indeg[child] == 0:
                ready.append(child)
        ready.sort(key=position.__getitem__)

    if len(ordered) != len(jobs):
        stuck = {n for n, d in indeg.items() if d > 0}
        raise CycleError(_find_cycle(jobs, stuck))

    return ordered


def topo_levels(pipeline: Pipeline | List[Job]) -> List[List[str]]:
    """
    Group the resolved order into stages; each stage only needs earlier ones,
    so jobs inside a stage can run in parallel.
    """
    level: Dict[str, int] = {}
    for job in resolve(pipeline):
        level[job.name] = 1 + max((level[n] for n in job.needs), default=-1)

    levels: List[List[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
    for name, idx in level.items():
        levels[idx].append(name)
    return levels


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All jobs that directly or transitively depend on `name`."""
    out: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        n = stack.pop()
        if n in out:
            continue
        out.add(n)
        stack.extend(adj.get(n, ()))
    return out
