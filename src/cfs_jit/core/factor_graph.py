# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Nonlinear factor graph for CFS-JIT.

A :class:`NonlinearFactorGraph` is an ordered collection of
:class:`~cfs_jit.core.factors.NonlinearFactor` objects. It is the unit that
flows through the system:

    • the front-end hands new measurements to the smoother as a graph
    • the smoother's factor store exposes its occupied slots as a graph
    • summaries exchanged with the filter are graphs of linearized factors

Primary Methods
---------------
error(values)
    Total objective ``Σ_f error_f(values)``.

linearize(values)
    One linear factor per nonlinear factor, collected into a
    :class:`~cfs_jit.linear.elimination.GaussianFactorGraph`.

keys()
    Every key touched by any factor, in order of first appearance.

Notes
-----
The graph holds references: factors are immutable once built, so the same
factor object may appear in several graphs (e.g. the outgoing summary and
the copy returned by ``get_summarized_factors``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List

from cfs_jit.core.factors import NonlinearFactor
from cfs_jit.core.types import Key, Values
from cfs_jit.linear.elimination import GaussianFactorGraph


@dataclass
class NonlinearFactorGraph:
    """Ordered list of nonlinear factors."""
    factors: List[NonlinearFactor] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.factors = list(self.factors)

    def push_back(self, factor: NonlinearFactor) -> None:
        self.factors.append(factor)

    def __iter__(self) -> Iterator[NonlinearFactor]:
        return iter(self.factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __getitem__(self, i: int) -> NonlinearFactor:
        return self.factors[i]

    def keys(self) -> List[Key]:
        seen: Dict[Key, None] = {}
        for factor in self.factors:
            for key in factor.keys:
                seen.setdefault(key, None)
        return list(seen)

    # --- Objective ---

    def error(self, values: Values) -> float:
        return sum(factor.error(values) for factor in self.factors)

    def linearize(self, values: Values) -> GaussianFactorGraph:
        return GaussianFactorGraph(factor.linearize(values) for factor in self.factors)

    def equals(self, other: "NonlinearFactorGraph", tol: float = 1e-9) -> bool:
        if len(self) != len(other):
            return False
        return all(a.equals(b, tol) for a, b in zip(self.factors, other.factors))

    def __str__(self) -> str:
        lines = [f"NonlinearFactorGraph with {len(self)} factors:"]
        for i, factor in enumerate(self.factors):
            lines.append(f"  [{i}] {factor}")
        return "\n".join(lines)
