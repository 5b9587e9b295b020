# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Nonlinear optimization for CFS-JIT.

This module implements the batch Levenberg–Marquardt driver used by the
smoother on every ``update``. It operates on a
:class:`~cfs_jit.core.factor_graph.NonlinearFactorGraph` and a
:class:`~cfs_jit.core.types.Values` estimate, and solves each damped linear
system with the elimination engine in :mod:`cfs_jit.linear.elimination`.

Key Concepts
------------
LMConfig
    Dataclass holding the optimizer configuration:
    - max_iters, relative_error_tol, absolute_error_tol, error_tol
    - lambda_initial / lambda_factor / lambda_upper_bound / lambda_lower_bound
    - factorization: "QR" or "CHOLESKY"
    - iteration_hook: optional ``hook(iteration, error, values)``

LevenbergMarquardt(graph, initial, cfg, pinned=None)
    One iteration linearizes the graph at the current estimate, appends an
    isotropic prior ``sqrt(λ) I δ_k ≈ 0`` on every key, solves for δ and
    retracts. A step that lowers the error is accepted and λ shrinks;
    otherwise λ grows and the damped system is solved again, until λ
    reaches its upper bound.

    ``pinned`` holds values that must stay fixed: after every iteration
    those keys are overwritten with the pinned values exactly and the error
    is recomputed at the corrected point.

check_convergence(rel, abs, err_tol, current, new)
    Stops when the error is at or below ``err_tol``, or when the absolute
    or relative decrease is at or below its tolerance.

Notes
-----
Failing to converge within ``max_iters`` is not an error: ``optimize``
returns the state reached. A singular damped system is, and the
:class:`~cfs_jit.core.errors.IndeterminantLinearSystemError` raised by the
elimination kernel propagates to the caller.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional

import jax.numpy as jnp

from cfs_jit.core.factor_graph import NonlinearFactorGraph
from cfs_jit.core.types import Values
from cfs_jit.inference.ordering import min_degree_ordering
from cfs_jit.linear.elimination import GaussianFactorGraph, get_elimination_function
from cfs_jit.linear.factors import JacobianFactor

logger = logging.getLogger("cfs_jit.optimization")

IterationHook = Callable[[int, float, Values], None]


@dataclass
class LMConfig:
    max_iters: int = 100
    relative_error_tol: float = 1e-5
    absolute_error_tol: float = 1e-5
    error_tol: float = 0.0
    lambda_initial: float = 1e-5
    lambda_factor: float = 10.0
    lambda_upper_bound: float = 1e5
    lambda_lower_bound: float = 0.0
    factorization: str = "QR"
    iteration_hook: Optional[IterationHook] = None

    def __post_init__(self) -> None:
        if self.max_iters < 0:
            raise ValueError(f"max_iters must be non-negative, got {self.max_iters}")
        if self.lambda_factor <= 1.0:
            raise ValueError(f"lambda_factor must exceed 1, got {self.lambda_factor}")
        if not 0.0 <= self.lambda_lower_bound <= self.lambda_initial <= self.lambda_upper_bound:
            raise ValueError(
                "Expected 0 <= lambda_lower_bound <= lambda_initial <= lambda_upper_bound"
            )
        self.factorization = self.factorization.upper()
        if self.factorization not in ("QR", "CHOLESKY"):
            raise ValueError(f"Unknown factorization {self.factorization!r}")


@dataclass
class LMState:
    values: Values
    error: float
    lam: float
    iterations: int = 0


def check_convergence(
    relative_error_tol: float,
    absolute_error_tol: float,
    error_tol: float,
    current_error: float,
    new_error: float,
) -> bool:
    if new_error <= error_tol:
        return True

    absolute_decrease = current_error - new_error
    if current_error != 0.0:
        relative_decrease = absolute_decrease / current_error
    else:
        relative_decrease = -math.inf

    converged = (
        (relative_error_tol > 0.0 and relative_decrease <= relative_error_tol)
        or absolute_decrease <= absolute_error_tol
    )
    if converged and absolute_decrease < 0.0:
        logger.warning("Stopping nonlinear iterations because the error increased")
    return converged


class LevenbergMarquardt:
    """
    Batch Levenberg–Marquardt over a nonlinear factor graph.

    Usage:
        lm = LevenbergMarquardt(graph, initial, LMConfig(), pinned=roots)
        state = lm.optimize()
    """

    def __init__(
        self,
        graph: NonlinearFactorGraph,
        initial: Values,
        cfg: Optional[LMConfig] = None,
        pinned: Optional[Values] = None,
    ) -> None:
        self.graph = graph
        self.cfg = cfg or LMConfig()
        self.pinned = pinned if pinned is not None else Values()
        self._eliminate = get_elimination_function(self.cfg.factorization)
        self.state = LMState(
            values=initial.copy(),
            error=graph.error(initial),
            lam=self.cfg.lambda_initial,
        )

    @property
    def values(self) -> Values:
        return self.state.values

    @property
    def error(self) -> float:
        return self.state.error

    @property
    def iterations(self) -> int:
        return self.state.iterations

    def _damped(self, linear: GaussianFactorGraph, lam: float) -> GaussianFactorGraph:
        damped = GaussianFactorGraph(linear)
        sqrt_lam = math.sqrt(lam)
        for key in self.state.values:
            dim = self.state.values.dim(key)
            damped.push_back(JacobianFactor([(key, sqrt_lam * jnp.eye(dim))], jnp.zeros(dim)))
        return damped

    def iterate(self) -> LMState:
        """One outer iteration: search over λ until a step is accepted or λ saturates."""
        state = self.state
        linear = self.graph.linearize(state.values)
        ordering = min_degree_ordering(
            [f.keys for f in linear] + [(k,) for k in state.values]
        )

        while True:
            delta = self._damped(linear, state.lam).optimize(ordering, self._eliminate)
            candidate = state.values.retract(delta)
            new_error = self.graph.error(candidate)
            logger.debug("lambda=%.3g trial error=%.6g (current %.6g)", state.lam, new_error, state.error)

            if new_error < state.error:
                state.values = candidate
                state.error = new_error
                state.lam = max(state.lam / self.cfg.lambda_factor, self.cfg.lambda_lower_bound)
                break
            if state.lam >= self.cfg.lambda_upper_bound:
                logger.warning(
                    "Levenberg-Marquardt: lambda reached its upper bound (%.3g) without reducing the error",
                    self.cfg.lambda_upper_bound,
                )
                break
            state.lam *= self.cfg.lambda_factor

        state.iterations += 1
        return state

    def _enforce_pinned(self) -> None:
        if len(self.pinned) == 0:
            return
        self.state.values.update_values(self.pinned)
        self.state.error = self.graph.error(self.state.values)

    def optimize(self) -> LMState:
        """Iterate until ``max_iters`` or convergence; pinned keys stay fixed throughout."""
        cfg = self.cfg
        state = self.state
        logger.debug("Initial error: %.6g", state.error)
        if state.error <= cfg.error_tol or cfg.max_iters == 0:
            return state

        while True:
            previous_error = state.error
            self.iterate()
            self._enforce_pinned()
            logger.debug("Iteration %d: error=%.6g lambda=%.3g", state.iterations, state.error, state.lam)
            if cfg.iteration_hook is not None:
                cfg.iteration_hook(state.iterations, state.error, state.values)
            if state.iterations >= cfg.max_iters:
                break
            if check_convergence(
                cfg.relative_error_tol,
                cfg.absolute_error_tol,
                cfg.error_tol,
                previous_error,
                state.error,
            ):
                break
        return state
