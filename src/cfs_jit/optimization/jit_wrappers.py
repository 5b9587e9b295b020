# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
JIT-compiled linearization of residual functions.

Every :class:`~cfs_jit.core.factors.ResidualFactor` is defined by a
residual function ``r(x_stacked, params)`` written in JAX. Linearizing it
at an estimate means evaluating the whitened residual and its Jacobian with
respect to a tangent-space increment of each variable:

    e(δ) = r(x ⊕ δ, params) / sigmas,      J = ∂e/∂δ |_{δ=0}

This module builds that computation once per (residual function, manifold
layout) and caches the jitted result, so that repeated linearizations of
the same factor type inside the optimizer only pay for compilation once.

Notes
-----
``params`` and ``sigmas`` are traced arguments, not part of the cache key:
factors of the same type with different measurements share one compiled
executable. Parameters must therefore be array-like (no strings).
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp

from cfs_jit.slam.manifold import retract

ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]


@dataclass(frozen=True)
class JittedLinearizer:
    """
    Holds the jitted residual and (Jacobian, residual) functions for one
    residual function and one manifold layout.

    Usage:
        lin = JittedLinearizer.from_residual(fn, ("se3", "se3"), (6, 6))
        J, e = lin.linearize(blocks, params, sigmas)
    """
    residual: Callable[[Tuple[jnp.ndarray, ...], Dict[str, Any], Optional[jnp.ndarray]], jnp.ndarray]
    linearize: Callable[
        [Tuple[jnp.ndarray, ...], Dict[str, Any], Optional[jnp.ndarray]],
        Tuple[jnp.ndarray, jnp.ndarray],
    ]

    @staticmethod
    def from_residual(
        residual_fn: ResidualFn,
        manifolds: Sequence[str],
        dims: Sequence[int],
    ) -> "JittedLinearizer":
        return _build(residual_fn, tuple(manifolds), tuple(dims))


@lru_cache(maxsize=None)
def _build(
    residual_fn: ResidualFn,
    manifolds: Tuple[str, ...],
    dims: Tuple[int, ...],
) -> JittedLinearizer:
    total = sum(dims)

    def whitened(x: jnp.ndarray, params, sigmas) -> jnp.ndarray:
        r = jnp.atleast_1d(residual_fn(x, params))
        if sigmas is None:
            return r
        return r / sigmas

    def residual(blocks, params, sigmas) -> jnp.ndarray:
        return whitened(jnp.concatenate(blocks), params, sigmas)

    def linearize(blocks, params, sigmas) -> Tuple[jnp.ndarray, jnp.ndarray]:
        def local(delta: jnp.ndarray) -> jnp.ndarray:
            moved = []
            offset = 0
            for block, manifold, dim in zip(blocks, manifolds, dims):
                moved.append(retract(block, delta[offset:offset + dim], manifold))
                offset += dim
            return whitened(jnp.concatenate(moved), params, sigmas)

        zero = jnp.zeros(total)
        return jax.jacfwd(local)(zero), local(zero)

    return JittedLinearizer(residual=jax.jit(residual), linearize=jax.jit(linearize))
