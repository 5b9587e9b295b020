# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Linear (Gaussian) factors.

Linearizing a nonlinear factor, or eliminating variables from a set of
linear factors, produces factors in one of two closed forms:

JacobianFactor
    Plain residual form ``½ ||W (A x − b)||²`` with ``W = diag(1/sigmas)``.
    QR elimination consumes and produces these.

HessianFactor
    Information form ``½ (xᵀ G x − 2 xᵀ g + f)``. Cholesky elimination
    consumes and produces these.

Either form converts into the other (``to_hessian`` / ``to_jacobian``), so
the elimination routines accept mixed inputs. ``LinearCost`` is a
restricted single-row Jacobian whose error is the signed value of that row.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp

from cfs_jit.core.errors import PreconditionError
from cfs_jit.core.types import Key
from cfs_jit.linear.conditional import equal_with_abs_tol


class GaussianFactor(ABC):
    """Common interface of the linear factor variants."""

    @property
    @abstractmethod
    def keys(self) -> Tuple[Key, ...]:
        ...

    @property
    @abstractmethod
    def dims(self) -> Dict[Key, int]:
        ...

    @abstractmethod
    def error(self, x: Mapping[Key, jnp.ndarray]) -> float:
        ...

    @abstractmethod
    def to_jacobian(self) -> "JacobianFactor":
        ...

    @abstractmethod
    def to_hessian(self) -> "HessianFactor":
        ...

    @abstractmethod
    def equals(self, other: "GaussianFactor", tol: float = 1e-9) -> bool:
        ...

    def __contains__(self, key: object) -> bool:
        return key in self.keys

    def __len__(self) -> int:
        return len(self.keys)

    def _stack(self, x: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        return jnp.concatenate([jnp.asarray(x[k]) for k in self.keys])


class JacobianFactor(GaussianFactor):
    """Linear factor ``½ ||(Σ A_k x_k − b) / sigmas||²``."""

    def __init__(
        self,
        terms: Sequence[Tuple[Key, jnp.ndarray]],
        b: jnp.ndarray,
        sigmas: Optional[jnp.ndarray] = None,
    ) -> None:
        b = jnp.atleast_1d(jnp.asarray(b, dtype=float))
        rows = b.shape[0]
        keys = []
        blocks = []
        for key, A in terms:
            A = jnp.atleast_2d(jnp.asarray(A, dtype=float))
            if A.shape[0] != rows:
                raise PreconditionError(
                    f"Block for key {key!r} has {A.shape[0]} rows, expected {rows}"
                )
            if key in keys:
                raise PreconditionError(f"Duplicate key {key!r} in JacobianFactor")
            keys.append(key)
            blocks.append(A)
        if sigmas is not None:
            sigmas = jnp.atleast_1d(jnp.asarray(sigmas, dtype=float))
            if sigmas.shape[0] != rows:
                raise PreconditionError(f"sigmas has {sigmas.shape[0]} entries, expected {rows}")
        self._keys = tuple(keys)
        self._blocks = tuple(blocks)
        self._b = b
        self._sigmas = sigmas

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    @property
    def dims(self) -> Dict[Key, int]:
        return {k: int(A.shape[1]) for k, A in zip(self._keys, self._blocks)}

    @property
    def terms(self) -> Tuple[Tuple[Key, jnp.ndarray], ...]:
        return tuple(zip(self._keys, self._blocks))

    @property
    def b(self) -> jnp.ndarray:
        return self._b

    @property
    def sigmas(self) -> Optional[jnp.ndarray]:
        return self._sigmas

    @property
    def rows(self) -> int:
        return int(self._b.shape[0])

    def get_A(self, key: Key) -> jnp.ndarray:
        return self._blocks[self._keys.index(key)]

    @property
    def A(self) -> jnp.ndarray:
        """All blocks concatenated column-wise in key order."""
        if not self._blocks:
            return jnp.zeros((self.rows, 0))
        return jnp.concatenate(self._blocks, axis=1)

    def is_constrained(self) -> bool:
        return self._sigmas is not None and bool(jnp.any(self._sigmas == 0.0))

    def whitened(self) -> "JacobianFactor":
        """Same factor with the noise model folded into ``A`` and ``b``."""
        if self._sigmas is None:
            return self
        if self.is_constrained():
            raise PreconditionError("Cannot whiten a constrained (zero-sigma) JacobianFactor")
        inv = 1.0 / self._sigmas
        return JacobianFactor(
            [(k, A * inv[:, None]) for k, A in self.terms], self._b * inv
        )

    def unweighted_error(self, x: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        return self.A @ self._stack(x) - self._b

    def error_vector(self, x: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        e = self.unweighted_error(x)
        if self._sigmas is None:
            return e
        return e / self._sigmas

    def error(self, x: Mapping[Key, jnp.ndarray]) -> float:
        e = self.error_vector(x)
        return 0.5 * float(e @ e)

    def to_jacobian(self) -> "JacobianFactor":
        return self

    def to_hessian(self) -> "HessianFactor":
        w = self.whitened()
        A = w.A
        return HessianFactor(
            self._keys,
            [self.dims[k] for k in self._keys],
            A.T @ A,
            A.T @ w.b,
            float(w.b @ w.b),
        )

    def equals(self, other: GaussianFactor, tol: float = 1e-9) -> bool:
        if not isinstance(other, JacobianFactor):
            return False
        if self._keys != other._keys:
            return False
        if not equal_with_abs_tol(self._b, other._b, tol):
            return False
        if (self._sigmas is None) != (other._sigmas is None):
            return False
        if self._sigmas is not None and not equal_with_abs_tol(self._sigmas, other._sigmas, tol):
            return False
        return all(
            equal_with_abs_tol(A, B, tol) for A, B in zip(self._blocks, other._blocks)
        )

    def __str__(self) -> str:
        lines = [f"JacobianFactor on {[str(k) for k in self._keys]}"]
        for key, A in self.terms:
            lines.append(f"A[{key!s}] = {A}")
        lines.append(f"b = {self._b}")
        if self._sigmas is not None:
            lines.append(f"sigmas = {self._sigmas}")
        return "\n".join(lines)


class HessianFactor(GaussianFactor):
    """Linear factor in information form ``½ (xᵀ G x − 2 xᵀ g + f)``."""

    def __init__(
        self,
        keys: Sequence[Key],
        dims: Sequence[int],
        info: jnp.ndarray,
        linear_term: jnp.ndarray,
        constant_term: float,
    ) -> None:
        keys = tuple(keys)
        dims = tuple(int(d) for d in dims)
        if len(keys) != len(dims):
            raise PreconditionError("HessianFactor needs one dimension per key")
        if len(set(keys)) != len(keys):
            raise PreconditionError(f"Duplicate keys in HessianFactor: {keys!r}")
        n = sum(dims)
        info = jnp.asarray(info, dtype=float).reshape(n, n)
        linear_term = jnp.asarray(linear_term, dtype=float).reshape(n)
        self._keys = keys
        self._dims = dims
        self._info = 0.5 * (info + info.T)
        self._g = linear_term
        self._f = float(constant_term)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self._keys

    @property
    def dims(self) -> Dict[Key, int]:
        return dict(zip(self._keys, self._dims))

    @property
    def info(self) -> jnp.ndarray:
        return self._info

    @property
    def linear_term(self) -> jnp.ndarray:
        return self._g

    @property
    def constant_term(self) -> float:
        return self._f

    def error(self, x: Mapping[Key, jnp.ndarray]) -> float:
        v = self._stack(x)
        return 0.5 * float(v @ self._info @ v - 2.0 * v @ self._g + self._f)

    def to_hessian(self) -> "HessianFactor":
        return self

    def to_jacobian(self) -> JacobianFactor:
        """
        Square-root form of the augmented information matrix

            M = [[G, g], [gᵀ, f]] = Vᵀ Λ V,   [A | b] = √Λ Vᵀ

        so that ``||A x − b||² = xᵀ G x − 2 xᵀ g + f``. Eigenvalues at round-off
        level are dropped, which keeps rank-deficient summaries representable.
        """
        n = self._g.shape[0]
        M = jnp.zeros((n + 1, n + 1))
        M = M.at[:n, :n].set(self._info)
        M = M.at[:n, n].set(self._g)
        M = M.at[n, :n].set(self._g)
        M = M.at[n, n].set(self._f)
        eigvals, eigvecs = jnp.linalg.eigh(M)
        cutoff = 1e-12 * max(1.0, float(jnp.max(jnp.abs(eigvals))))
        keep = eigvals > cutoff
        rows = jnp.sqrt(eigvals[keep])[:, None] * eigvecs[:, keep].T
        if rows.shape[0] == 0:
            rows = jnp.zeros((1, n + 1))
        terms = []
        offset = 0
        for key, dim in zip(self._keys, self._dims):
            terms.append((key, rows[:, offset:offset + dim]))
            offset += dim
        return JacobianFactor(terms, rows[:, n])

    def equals(self, other: GaussianFactor, tol: float = 1e-9) -> bool:
        if not isinstance(other, HessianFactor):
            return False
        return (
            self._keys == other._keys
            and self._dims == other._dims
            and equal_with_abs_tol(self._info, other._info, tol)
            and equal_with_abs_tol(self._g, other._g, tol)
            and abs(self._f - other._f) <= tol
        )

    def __str__(self) -> str:
        return "\n".join([
            f"HessianFactor on {[str(k) for k in self._keys]} dims {list(self._dims)}",
            f"G = {self._info}",
            f"g = {self._g}",
            f"f = {self._f}",
        ])


class LinearCost(JacobianFactor):
    """
    Single-row linear cost ``c(x) = A x − b``.

    Unlike a regular Jacobian factor the error is the signed value of the
    row, not half its square.
    """

    def __init__(
        self,
        terms: Sequence[Tuple[Key, jnp.ndarray]],
        b: float = 0.0,
        sigmas: Optional[jnp.ndarray] = None,
    ) -> None:
        super().__init__(terms, jnp.atleast_1d(jnp.asarray(b, dtype=float)), sigmas)
        if self.rows != 1:
            raise PreconditionError("Only single-valued linear cost factors are supported")

    @classmethod
    def from_factor(cls, factor: GaussianFactor) -> "LinearCost":
        if isinstance(factor, HessianFactor):
            raise PreconditionError("Cannot convert HessianFactor to LinearCost")
        if not isinstance(factor, JacobianFactor):
            raise PreconditionError(f"Cannot convert {type(factor).__name__} to LinearCost")
        if factor.is_constrained():
            raise PreconditionError("Cannot convert a constrained JacobianFactor to LinearCost")
        if factor.rows != 1:
            raise PreconditionError("Only single-valued linear cost factors are supported")
        # The noise model is carried along but never weights the cost.
        return cls(factor.terms, factor.b[0], factor.sigmas)

    def error_vector(self, x: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        return self.unweighted_error(x)

    def error(self, x: Mapping[Key, jnp.ndarray]) -> float:
        return float(self.error_vector(x)[0])

    def __str__(self) -> str:
        return " LinearCost: " + super().__str__()
