# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Elimination orderings.

The order in which variables are eliminated does not change the solution,
only the amount of fill-in (and therefore the cost) of elimination. The
heuristic used here is greedy minimum degree on the symbolic variable
adjacency graph: repeatedly eliminate the variable with the fewest
neighbours and connect its neighbours into a clique.

Constraint groups restrict the choice: every variable in group ``g`` is
eliminated before any variable in group ``g + 1``. The smoother uses this to
force the root (filter-shared) variables to the end of the ordering, so they
end up at the top of the elimination tree.

Ties are broken by first appearance in the factor key lists, which keeps
the ordering deterministic for a given graph.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from cfs_jit.core.types import Key


def min_degree_ordering(
    factor_keys: Iterable[Sequence[Key]],
    constraints: Optional[Mapping[Key, int]] = None,
) -> List[Key]:
    """
    Greedy minimum-degree ordering of all keys touched by ``factor_keys``.

    Args:
        factor_keys: one key sequence per factor.
        constraints: optional ``key -> group``; unlisted keys are group 0.

    Returns:
        Every involved key exactly once, lower groups first.
    """
    constraints = constraints or {}
    adjacency: Dict[Key, Set[Key]] = {}
    first_seen: Dict[Key, int] = {}
    for keys in factor_keys:
        for key in keys:
            if key not in adjacency:
                adjacency[key] = set()
                first_seen[key] = len(first_seen)
        for key in keys:
            adjacency[key].update(k for k in keys if k != key)

    ordering: List[Key] = []
    remaining = set(adjacency)
    while remaining:
        group = min(constraints.get(k, 0) for k in remaining)
        candidates = [k for k in remaining if constraints.get(k, 0) == group]
        pick = min(candidates, key=lambda k: (len(adjacency[k]), first_seen[k]))

        neighbours = adjacency.pop(pick)
        for n in neighbours:
            adjacency[n].discard(pick)
            adjacency[n].update(neighbours - {n})
        remaining.discard(pick)
        ordering.append(pick)
    return ordering


def constrained_ordering(
    factor_keys: Iterable[Sequence[Key]],
    last_keys: Iterable[Key],
) -> List[Key]:
    """Minimum-degree ordering with ``last_keys`` forced after all other keys."""
    return min_degree_ordering(factor_keys, {k: 1 for k in last_keys})


def positions(ordering: Sequence[Key]) -> Dict[Key, int]:
    return {key: i for i, key in enumerate(ordering)}
