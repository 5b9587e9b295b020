# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Nonlinear factors.

A nonlinear factor is a probabilistic constraint over an ordered tuple of
variable keys. The optimizer only needs two things from it: its error at an
estimate, and a linear (Gaussian) approximation at an estimate.

NonlinearFactor
    Abstract interface (``keys``, ``dim``, ``error``, ``linearize``).

ResidualFactor
    The workhorse: a factor defined by a JAX residual function
    ``r(x_stacked, params)`` and per-row noise ``sigmas``. Its error is
    ``½ ||r / sigmas||²`` and its Jacobian is computed with forward-mode
    autodiff in the local coordinates of each variable.

The re-linearizable summary factors exchanged between filter and smoother
(``LinearizedJacobianFactor`` / ``LinearizedHessianFactor``) live in
``core.linearized``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

import jax.numpy as jnp

from cfs_jit.core.errors import PreconditionError
from cfs_jit.core.types import Key, Values
from cfs_jit.linear.factors import GaussianFactor, JacobianFactor
from cfs_jit.optimization.jit_wrappers import JittedLinearizer, ResidualFn
from cfs_jit.slam.manifold import get_manifold_for_var_type


class NonlinearFactor(ABC):
    """Constraint over ``keys`` contributing an error term to the objective."""

    @property
    @abstractmethod
    def keys(self) -> Tuple[Key, ...]:
        ...

    @abstractmethod
    def dim(self) -> int:
        """Number of residual rows."""

    @abstractmethod
    def error(self, values: Values) -> float:
        ...

    @abstractmethod
    def linearize(self, values: Values) -> GaussianFactor:
        ...

    def equals(self, other: "NonlinearFactor", tol: float = 1e-9) -> bool:
        return self is other

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __contains__(self, key: object) -> bool:
        return key in self.keys


class ResidualFactor(NonlinearFactor):
    """Factor defined by a residual function ``r(x_stacked, params)``."""

    def __init__(
        self,
        factor_type: str,
        keys: Sequence[Key],
        residual_fn: ResidualFn,
        params: Optional[Dict[str, Any]] = None,
        sigmas: Optional[jnp.ndarray] = None,
    ) -> None:
        keys = tuple(keys)
        if not keys:
            raise PreconditionError("A factor needs at least one key")
        if len(set(keys)) != len(keys):
            raise PreconditionError(f"Duplicate keys in factor: {keys!r}")
        self.type = factor_type
        self._keys = keys
        self.residual_fn = residual_fn
        self.params = {k: jnp.asarray(v) for k, v in (params or {}).items()}
        self.sigmas = None if sigmas is None else jnp.atleast_1d(jnp.asarray(sigmas, dtype=float))

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    def _linearizer(self, values: Values) -> Tuple[JittedLinearizer, Tuple[jnp.ndarray, ...]]:
        blocks = tuple(values[k] for k in self._keys)
        manifolds = tuple(get_manifold_for_var_type(values.var_type(k)) for k in self._keys)
        dims = tuple(int(b.shape[0]) for b in blocks)
        return JittedLinearizer.from_residual(self.residual_fn, manifolds, dims), blocks

    def whitened_error(self, values: Values) -> jnp.ndarray:
        linearizer, blocks = self._linearizer(values)
        return linearizer.residual(blocks, self.params, self.sigmas)

    def dim(self) -> int:
        if self.sigmas is None:
            raise PreconditionError("Residual dimension unknown until sigmas are given or the factor is evaluated")
        return int(self.sigmas.shape[0])

    def error(self, values: Values) -> float:
        e = self.whitened_error(values)
        return 0.5 * float(e @ e)

    def linearize(self, values: Values) -> JacobianFactor:
        """``J δ ≈ −e``: returns the whitened Jacobian factor at ``values``."""
        linearizer, blocks = self._linearizer(values)
        J, e = linearizer.linearize(blocks, self.params, self.sigmas)
        terms = []
        offset = 0
        for key, block in zip(self._keys, blocks):
            dim = int(block.shape[0])
            terms.append((key, J[:, offset:offset + dim]))
            offset += dim
        return JacobianFactor(terms, -e)

    def equals(self, other: NonlinearFactor, tol: float = 1e-9) -> bool:
        if not isinstance(other, ResidualFactor):
            return False
        if (self.type, self._keys, self.residual_fn) != (other.type, other._keys, other.residual_fn):
            return False
        if set(self.params) != set(other.params):
            return False
        for name, value in self.params.items():
            theirs = other.params[name]
            if value.shape != theirs.shape or not bool(jnp.all(jnp.abs(value - theirs) <= tol)):
                return False
        if (self.sigmas is None) != (other.sigmas is None):
            return False
        return self.sigmas is None or bool(jnp.all(jnp.abs(self.sigmas - other.sigmas) <= tol))

    def __str__(self) -> str:
        return f"{self.type}({', '.join(str(k) for k in self._keys)})"

    def __repr__(self) -> str:
        return f"ResidualFactor(type={self.type!r}, keys={self._keys!r})"
