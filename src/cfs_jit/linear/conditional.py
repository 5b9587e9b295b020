# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Gaussian conditional densities.

A :class:`GaussianConditional` is the atomic output of eliminating one
variable from a set of linear factors. It represents

    P(f | p_1, ..., p_n)   with   R · f = d − Σ A_i · p_i + noise

where ``R`` is upper triangular with a nonzero diagonal, ``A_i`` are the
parent coefficient matrices, ``d`` is the offset and ``sigmas`` holds one
noise scale per frontal dimension (all ones after QR elimination of
whitened factors).

Conditionals are immutable. They are built by the elimination routines in
``linear.elimination`` and live inside a ``GaussianBayesNet`` or a
``BayesTree`` clique until that structure is discarded.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular

from cfs_jit.core.errors import PreconditionError
from cfs_jit.core.types import Key


def equal_with_abs_tol(a: jnp.ndarray, b: jnp.ndarray, tol: float) -> bool:
    """Element-wise ``|a - b| <= tol`` with matching shapes."""
    a = jnp.asarray(a)
    b = jnp.asarray(b)
    if a.shape != b.shape:
        return False
    return bool(jnp.all(jnp.abs(a - b) <= tol))


class GaussianConditional:
    """P(frontal | parents) in square-root information form."""

    def __init__(
        self,
        key: Key,
        d: jnp.ndarray,
        R: jnp.ndarray,
        parents: Optional[Mapping[Key, jnp.ndarray]] = None,
        sigmas: Optional[jnp.ndarray] = None,
    ) -> None:
        R = jnp.atleast_2d(jnp.asarray(R, dtype=float))
        d = jnp.atleast_1d(jnp.asarray(d, dtype=float))
        if R.shape[0] != R.shape[1]:
            raise PreconditionError(f"R must be square, got shape {R.shape}")
        if d.shape[0] != R.shape[0]:
            raise PreconditionError(f"d has {d.shape[0]} entries but R has {R.shape[0]} rows")
        if sigmas is None:
            sigmas = jnp.ones(d.shape[0])
        sigmas = jnp.atleast_1d(jnp.asarray(sigmas, dtype=float))
        if sigmas.shape[0] != d.shape[0]:
            raise PreconditionError(f"sigmas has {sigmas.shape[0]} entries but d has {d.shape[0]}")

        frozen = {}
        for parent, S in (parents or {}).items():
            S = jnp.atleast_2d(jnp.asarray(S, dtype=float))
            if S.shape[0] != R.shape[0]:
                raise PreconditionError(
                    f"Parent matrix for {parent!r} has {S.shape[0]} rows, expected {R.shape[0]}"
                )
            if parent == key:
                raise PreconditionError(f"Frontal key {key!r} cannot be its own parent")
            frozen[parent] = S

        self._key = key
        self._R = R
        self._d = d
        self._sigmas = sigmas
        self._parents = MappingProxyType(frozen)

    # --- Arity conveniences ---

    @classmethod
    def unary(cls, key: Key, d, R, sigmas=None) -> "GaussianConditional":
        return cls(key, d, R, None, sigmas)

    @classmethod
    def with_parent(cls, key: Key, d, R, name1: Key, S, sigmas=None) -> "GaussianConditional":
        return cls(key, d, R, {name1: S}, sigmas)

    @classmethod
    def with_parents(
        cls, key: Key, d, R, name1: Key, S, name2: Key, T, sigmas=None
    ) -> "GaussianConditional":
        if name1 == name2:
            raise PreconditionError(f"Duplicate parent key {name1!r}")
        return cls(key, d, R, {name1: S, name2: T}, sigmas)

    # --- Accessors ---

    @property
    def frontal(self) -> Key:
        return self._key

    @property
    def R(self) -> jnp.ndarray:
        return self._R

    @property
    def d(self) -> jnp.ndarray:
        return self._d

    @property
    def sigmas(self) -> jnp.ndarray:
        return self._sigmas

    @property
    def dim(self) -> int:
        return int(self._d.shape[0])

    def parents(self) -> frozenset:
        return frozenset(self._parents)

    def get_parent(self, key: Key) -> jnp.ndarray:
        return self._parents[key]

    @property
    def nr_parents(self) -> int:
        return len(self._parents)

    # --- Algebra ---

    def solve(self, assignment: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        """
        Back-substitute for the frontal value given every parent value.

            rhs     = d − Σ A_i · assignment[p_i]
            frontal = R⁻¹ · rhs      (upper-triangular solve)
        """
        missing = [p for p in self._parents if p not in assignment]
        if missing:
            raise PreconditionError(
                f"Cannot solve for {self._key!r}: missing parent values {missing!r}"
            )
        rhs = self._d
        for parent, S in self._parents.items():
            rhs = rhs - S @ jnp.asarray(assignment[parent])
        return solve_triangular(self._R, rhs, lower=False)

    def equals(self, other: "GaussianConditional", tol: float = 1e-9) -> bool:
        if not isinstance(other, GaussianConditional):
            return False
        if self._key != other._key:
            return False
        if set(self._parents) != set(other._parents):
            return False
        if not equal_with_abs_tol(self._R, other._R, tol):
            return False
        if not equal_with_abs_tol(self._d, other._d, tol):
            return False
        if not equal_with_abs_tol(self._sigmas, other._sigmas, tol):
            return False
        return all(
            equal_with_abs_tol(S, other._parents[parent], tol)
            for parent, S in self._parents.items()
        )

    def __str__(self) -> str:
        lines = [f"GaussianConditional: density on {self._key!s}", f"R = {self._R}"]
        for parent, S in self._parents.items():
            lines.append(f"A[{parent!s}] = {S}")
        lines.append(f"d = {self._d}")
        lines.append(f"sigmas = {self._sigmas}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"GaussianConditional(frontal={self._key!r}, parents={sorted(map(str, self._parents))})"
