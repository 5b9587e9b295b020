# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Batch smoother half of a concurrent filtering and smoothing system.

The smoother owns the long-horizon part of the estimation problem and runs
alongside a fast filter. The two exchange information only through a
synchronization step, invoked by an external coordinator once per cycle:

    presync()       nothing staged yet
    synchronize()   receive the filter's summary, new smoother factors and
                    values, and the root values (the variables on the
                    boundary between filter and smoother)
    postsync()      nothing to release

``update`` adds factors and values, optimizes the full graph with
Levenberg–Marquardt while holding the root variables at the values the
filter sent, and then prepares the outgoing summary: the information the
smoother's own factors carry about the root variables, as linearized
factors. ``get_summarized_factors`` hands that summary to the filter.

Summary extraction
------------------
1. Linearization point: smoother values, overridden by root values.
2. Minimum-degree ordering with the root keys eliminated last.
3. Eliminate the linearized graph into a :class:`BayesTree`.
4. Smoother branches: children of root-key cliques that are not themselves
   root-key cliques.
5. Collect the cached factor of every branch.
6. Eliminate any non-root key those factors still mention.
7. Wrap the rest as linearized factors anchored at the linearization point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from cfs_jit.core.factor_graph import NonlinearFactorGraph
from cfs_jit.core.factors import NonlinearFactor
from cfs_jit.core.linearized import linearized_factor
from cfs_jit.core.types import Key, Values
from cfs_jit.inference.bayes_tree import BayesTree
from cfs_jit.inference.ordering import constrained_ordering, positions
from cfs_jit.linear.elimination import get_elimination_function
from cfs_jit.optimization.solvers import LevenbergMarquardt, LMConfig
from cfs_jit.smoother.factor_store import FactorStore
from cfs_jit.smoother.marginalization import marginalize_keys_from_factor, summarize_cached_factors

logger = logging.getLogger("cfs_jit.smoother")


@dataclass
class SmootherParams:
    lm: LMConfig = field(default_factory=LMConfig)


@dataclass
class SmootherResult:
    iterations: int = 0
    error: float = 0.0
    nonlinear_variables: int = 0
    linear_variables: int = 0


class ConcurrentBatchSmoother:
    """
    Batch smoother with a filter synchronization interface.

    Usage:
        smoother = ConcurrentBatchSmoother()
        smoother.update(new_factors, new_values)
        smoother.presync()
        smoother.synchronize(smoother_factors, smoother_values, filter_summary, root_values)
        smoother.postsync()
        summary = smoother.get_summarized_factors()
    """

    def __init__(self, params: Optional[SmootherParams] = None) -> None:
        self._params = params or SmootherParams()
        self._store = FactorStore()
        self._theta = Values()
        self._root_values = Values()
        self._filter_summarization_slots: List[int] = []
        self._smoother_summarization: List[NonlinearFactor] = []

    # --- Accessors ---

    @property
    def params(self) -> SmootherParams:
        return self._params

    @property
    def factor_store(self) -> FactorStore:
        return self._store

    @property
    def factors(self) -> NonlinearFactorGraph:
        return self._store.graph()

    @property
    def values(self) -> Values:
        return self._theta

    @property
    def root_values(self) -> Values:
        return self._root_values

    @property
    def filter_summarization_slots(self) -> List[int]:
        return list(self._filter_summarization_slots)

    # --- Optimization ---

    def update(
        self,
        new_factors: Optional[Iterable[NonlinearFactor]] = None,
        new_values: Optional[Values] = None,
    ) -> SmootherResult:
        """
        Add factors and values, re-optimize, and recompute the outgoing summary.

        Raises:
            PreconditionError: ``new_values`` repeats a key the smoother
                already holds. Nothing is inserted.
            IndeterminantLinearSystemError: a damped or summary elimination
                was singular. The new factors and values stay inserted, but
                the estimate and the summary are left as they were before
                the optimization.
        """
        result = SmootherResult()

        if new_values is not None:
            self._theta.check_disjoint(new_values)
        for factor in new_factors or ():
            self._store.insert(factor)
        if new_values is not None:
            self._theta.insert_values(new_values)

        theta = self._theta
        if len(self._store) > 0:
            optimizer = LevenbergMarquardt(
                self._store.graph(), self._linearization_point(theta), self._params.lm,
                pinned=self._root_values,
            )
            state = optimizer.optimize()

            theta = state.values
            for key in self._root_values:
                theta.erase(key)

            result.iterations = state.iterations
            result.error = state.error
            result.nonlinear_variables = len(theta)
            result.linear_variables = len(self._root_values)
            logger.debug(
                "update: %d iterations, error %.6g, %d nonlinear / %d linear variables",
                result.iterations, result.error, result.nonlinear_variables, result.linear_variables,
            )

        summarization = self._summarize(theta)
        self._theta = theta
        self._smoother_summarization = summarization
        return result

    def _linearization_point(self, theta: Values) -> Values:
        linpoint = theta.copy()
        linpoint.insert_or_assign(self._root_values)
        return linpoint

    def _summarize(self, theta: Values) -> List[NonlinearFactor]:
        if len(self._root_values) == 0:
            return []

        root_keys = list(self._root_values)
        linpoint = self._linearization_point(theta)
        graph = self._store.graph()
        eliminate_fn = get_elimination_function(self._params.lm.factorization)

        ordering = constrained_ordering([f.keys for f in graph], root_keys)
        tree = BayesTree.eliminate(graph.linearize(linpoint), ordering, eliminate_fn)
        logger.debug("Root keys: %s", " ".join(str(k) for k in root_keys))
        logger.debug("Bayes tree:\n%s", tree.format_symbolic())

        root_cliques: Set[int] = set()
        branches: Set[int] = set()
        for key in root_keys:
            handle = tree.clique_for(key)
            if handle is not None:
                root_cliques.add(handle)
                branches.update(tree[handle].children)
        branches -= root_cliques

        cached = [
            tree[h].cached_factor for h in sorted(branches)
            if tree[h].cached_factor is not None
        ]
        logger.debug("Cached factors before: %s", [f.keys for f in cached])
        cached = summarize_cached_factors(cached, root_keys, positions(ordering), eliminate_fn)
        logger.debug("Cached factors after: %s", [f.keys for f in cached])

        summarization = [linearized_factor(f, linpoint) for f in cached]
        logger.debug("Smoother summarization: %s", [str(f) for f in summarization])
        return summarization

    # --- Synchronization ---

    def presync(self) -> None:
        pass

    def get_summarized_factors(self) -> NonlinearFactorGraph:
        return NonlinearFactorGraph(list(self._smoother_summarization))

    def synchronize(
        self,
        smoother_factors: Iterable[NonlinearFactor],
        smoother_values: Values,
        summarized_factors: Iterable[NonlinearFactor],
        root_values: Values,
    ) -> None:
        self._theta.check_disjoint(smoother_values)

        for slot in self._filter_summarization_slots:
            self._store.remove(slot)
        self._filter_summarization_slots = [
            self._store.insert(factor) for factor in summarized_factors
        ]

        for factor in smoother_factors:
            self._store.insert(factor)
        self._theta.insert_values(smoother_values)

        self._root_values = root_values.copy()

    def postsync(self) -> None:
        pass

    # --- Factor store passthroughs ---

    def insert_factor(self, factor: NonlinearFactor) -> int:
        return self._store.insert(factor)

    def remove_factor(self, slot: int) -> NonlinearFactor:
        return self._store.remove(slot)

    def find_factors_with_any(self, keys: Iterable[Key]) -> Set[int]:
        return self._store.factors_touching_any(keys)

    def find_factors_with_only(self, keys: Iterable[Key]) -> Set[int]:
        return self._store.factors_touching_only(keys)

    def marginalize_keys_from_factor(
        self,
        factor: NonlinearFactor,
        keys_to_keep: Iterable[Key],
        linearization_point: Values,
    ) -> Optional[NonlinearFactor]:
        return marginalize_keys_from_factor(factor, keys_to_keep, linearization_point)

    # --- Diagnostics ---

    def __str__(self) -> str:
        lines = ["ConcurrentBatchSmoother:"]
        for slot, factor in self._store.items():
            lines.append(f"  [{slot}] {factor}")
        lines.append(str(self._theta))
        if len(self._root_values) > 0:
            lines.append("Root " + str(self._root_values))
        return "\n".join(lines)

    def print(self, title: str = "") -> None:
        if title:
            print(title)
        print(self)
