# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Re-linearizable wrappers around linear factors.

Summaries exchanged between filter and smoother are linear factors computed
at a fixed linearization point. To put them back into a nonlinear factor
graph they are wrapped so that they can be evaluated, and linearized again,
at any other estimate:

    δ = x ⊖ x̄                   (local coordinates about the anchor x̄)

LinearizedJacobianFactor
    error(x)      = ½ ||A δ − b||²
    linearize(x)  = JacobianFactor(A, b − A δ)

LinearizedHessianFactor
    error(x)      = ½ (f − 2 δᵀ g + δᵀ G δ)
    linearize(x)  = HessianFactor(G, g − G δ, f − 2 δᵀ g + δᵀ G δ)

``linearized_factor(factor, linearization_point)`` picks the wrapper for a
given linear factor. The set of linear factor forms is closed, so anything
that is neither a Jacobian nor a Hessian factor is a structural error.
"""

from __future__ import annotations

from functools import singledispatch
from typing import Dict, Tuple

import jax.numpy as jnp

from cfs_jit.core.errors import StructuralMismatchError
from cfs_jit.core.factors import NonlinearFactor
from cfs_jit.core.types import Key, Values
from cfs_jit.linear.factors import GaussianFactor, HessianFactor, JacobianFactor


class LinearizedJacobianFactor(NonlinearFactor):
    """A whitened Jacobian factor anchored at ``linearization_point``."""

    def __init__(self, jacobian: JacobianFactor, linearization_point: Values) -> None:
        whitened = jacobian.whitened()
        self._keys = whitened.keys
        self._A: Dict[Key, jnp.ndarray] = dict(whitened.terms)
        self._b = whitened.b
        self._lin_point = linearization_point.subset(self._keys)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    @property
    def linearization_point(self) -> Values:
        return self._lin_point

    @property
    def b(self) -> jnp.ndarray:
        return self._b

    def get_A(self, key: Key) -> jnp.ndarray:
        return self._A[key]

    def dim(self) -> int:
        return int(self._b.shape[0])

    def _A_dx(self, values: Values) -> jnp.ndarray:
        dx = self._lin_point.local_coordinates(values)
        out = jnp.zeros_like(self._b)
        for key in self._keys:
            out = out + self._A[key] @ dx[key]
        return out

    def error(self, values: Values) -> float:
        e = self._A_dx(values) - self._b
        return 0.5 * float(e @ e)

    def linearize(self, values: Values) -> JacobianFactor:
        return JacobianFactor(
            [(k, self._A[k]) for k in self._keys], self._b - self._A_dx(values)
        )

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        if not isinstance(other, LinearizedJacobianFactor) or self._keys != other._keys:
            return False
        if not self._lin_point.equals(other._lin_point, tol):
            return False
        return self.linearize(self._lin_point).equals(other.linearize(other._lin_point), tol)

    def __str__(self) -> str:
        return f"LinearizedJacobianFactor({', '.join(str(k) for k in self._keys)})"


class LinearizedHessianFactor(NonlinearFactor):
    """An information-form factor anchored at ``linearization_point``."""

    def __init__(self, hessian: HessianFactor, linearization_point: Values) -> None:
        self._keys = hessian.keys
        self._dims = tuple(hessian.dims[k] for k in self._keys)
        self._G = hessian.info
        self._g = hessian.linear_term
        self._f = hessian.constant_term
        self._lin_point = linearization_point.subset(self._keys)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    @property
    def linearization_point(self) -> Values:
        return self._lin_point

    def dim(self) -> int:
        return sum(self._dims)

    def _dx(self, values: Values) -> jnp.ndarray:
        dx = self._lin_point.local_coordinates(values)
        return jnp.concatenate([dx[k] for k in self._keys])

    def error(self, values: Values) -> float:
        dx = self._dx(values)
        return 0.5 * float(self._f - 2.0 * dx @ self._g + dx @ self._G @ dx)

    def linearize(self, values: Values) -> HessianFactor:
        dx = self._dx(values)
        return HessianFactor(
            self._keys,
            self._dims,
            self._G,
            self._g - self._G @ dx,
            float(self._f - 2.0 * dx @ self._g + dx @ self._G @ dx),
        )

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        if not isinstance(other, LinearizedHessianFactor) or self._keys != other._keys:
            return False
        if not self._lin_point.equals(other._lin_point, tol):
            return False
        return self.linearize(self._lin_point).equals(other.linearize(other._lin_point), tol)

    def __str__(self) -> str:
        return f"LinearizedHessianFactor({', '.join(str(k) for k in self._keys)})"


@singledispatch
def linearized_factor(factor: GaussianFactor, linearization_point: Values) -> NonlinearFactor:
    raise StructuralMismatchError(
        f"Cached factor of type {type(factor).__name__} is neither a JacobianFactor nor a HessianFactor"
    )


@linearized_factor.register(JacobianFactor)
def _(factor: JacobianFactor, linearization_point: Values) -> NonlinearFactor:
    return LinearizedJacobianFactor(factor, linearization_point)


@linearized_factor.register(HessianFactor)
def _(factor: HessianFactor, linearization_point: Values) -> NonlinearFactor:
    return LinearizedHessianFactor(factor, linearization_point)
