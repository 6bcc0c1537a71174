"""
Topological sort using Kahn's algorithm.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Dict, Iterable, List, Mapping


def resolve_dependencies(graph: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """
    Parameters
    ----------
    graph : mapping of slug → slugs it depends on.  Dependencies that are
        not keys of ``graph`` are ignored, so any sub-graph can be ordered.

    Returns
    -------
    List of stages.  Every dependency of a stage-N slug appears in a stage
    < N.  Within a stage, slugs keep the mapping's iteration order.
    """
    if not graph:
        return []

    dependants: Dict[str, List[str]] = defaultdict(list)
    in_degree: Dict[str, int] = {}

    for slug, deps in graph.items():
        local = [d for d in deps if d in graph]
        in_degree[slug] = len(local)
        for dep in local:
            dependants[dep].append(slug)

    queue: deque[str] = deque(slug for slug, deg in in_degree.items() if deg == 0)

    stages: List[List[str]] = []

    while queue:
        current_stage: List[str] = []
        for _ in range(len(queue)):
            slug = queue.popleft()
            current_stage.append(slug)
            for dependant in dependants[slug]:
                in_degree[dependant] -= 1
                if in_degree[dependant] == 0:
                    queue.append(dependant)
        stages.append(current_stage)

    remaining = {k: v for k, v in in_degree.items() if v > 0}
    if remaining:
        raise ValueError(f"Circular dependency detected among: {remaining}")

    return stages


def flatten(stages: List[List[str]]) -> List[str]:
    return [slug for stage in stages for slug in stage]
