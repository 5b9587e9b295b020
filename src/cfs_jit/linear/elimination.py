# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Variable elimination on linear factor graphs.

Eliminating a variable ``j`` from the factors that touch it splits their
joint density into

    P(j | separator) · f(separator)

i.e. one :class:`GaussianConditional` and one residual factor on the
remaining (separator) variables. Two dense kernels are provided:

eliminate_qr
    Whitens and stacks all factors into ``[A_j | A_s | b]`` and takes a
    Householder QR. The top block gives the conditional, the rows below it
    the residual ``JacobianFactor``. This is the default: measurement
    Jacobians are generally ill-conditioned and QR never forms ``AᵀA``.

eliminate_cholesky
    Accumulates the information matrix of the factors, Cholesky-factors the
    frontal block and returns the Schur complement as a ``HessianFactor``.

Both kernels share the signature ``fn(factors, key, position=None)``.
``position`` maps keys to their place in an elimination ordering and fixes
the column order of the separator. A rank-deficient frontal block raises
:class:`IndeterminantLinearSystemError`.

On top of the kernels, :class:`GaussianFactorGraph` offers partial and
sequential elimination, and :class:`GaussianBayesNet` back-substitution.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular

from cfs_jit.core.errors import IndeterminantLinearSystemError, PreconditionError
from cfs_jit.core.types import Key, VectorValues
from cfs_jit.linear.conditional import GaussianConditional
from cfs_jit.linear.factors import GaussianFactor, HessianFactor, JacobianFactor

logger = logging.getLogger("cfs_jit.linear")

EliminateFn = Callable[
    [Sequence[GaussianFactor], Key, Optional[Mapping[Key, int]]],
    Tuple[GaussianConditional, Optional[GaussianFactor]],
]

# Relative threshold on |R_ii| below which a frontal pivot counts as zero.
RANK_TOL = 1e-9


def _frontal_and_separator(
    factors: Sequence[GaussianFactor],
    key: Key,
    position: Optional[Mapping[Key, int]],
) -> Tuple[List[Key], Dict[Key, int]]:
    dims: Dict[Key, int] = {}
    separator: List[Key] = []
    for factor in factors:
        if key not in factor:
            raise PreconditionError(f"Factor on {list(factor.keys)!r} does not involve key {key!r}")
        for k, dim in factor.dims.items():
            if k in dims and dims[k] != dim:
                raise PreconditionError(f"Inconsistent dimensions for key {k!r}: {dims[k]} vs {dim}")
            dims[k] = dim
            if k != key and k not in separator:
                separator.append(k)
    if key not in dims:
        raise IndeterminantLinearSystemError(key, f"No factor involves key {key!r}")
    if position is not None:
        separator.sort(key=lambda k: position[k])
    return separator, dims


def _split_parents(
    block: jnp.ndarray, separator: Sequence[Key], dims: Mapping[Key, int], offset: int
) -> Dict[Key, jnp.ndarray]:
    parents = {}
    for k in separator:
        parents[k] = block[:, offset:offset + dims[k]]
        offset += dims[k]
    return parents


def eliminate_qr(
    factors: Sequence[GaussianFactor],
    key: Key,
    position: Optional[Mapping[Key, int]] = None,
) -> Tuple[GaussianConditional, Optional[JacobianFactor]]:
    """Eliminate ``key`` from ``factors`` with a dense Householder QR."""
    separator, dims = _frontal_and_separator(factors, key, position)
    columns = [key] + separator
    nf = dims[key]

    row_blocks = []
    for factor in factors:
        jf = factor.to_jacobian().whitened()
        blocks = []
        for k in columns:
            if k in jf:
                blocks.append(jf.get_A(k))
            else:
                blocks.append(jnp.zeros((jf.rows, dims[k])))
        blocks.append(jf.b[:, None])
        row_blocks.append(jnp.concatenate(blocks, axis=1))
    Ab = jnp.concatenate(row_blocks, axis=0)

    if Ab.shape[0] < nf:
        raise IndeterminantLinearSystemError(key)

    R = jnp.linalg.qr(Ab, mode="r")
    # Positive diagonal makes the factorization unique.
    signs = jnp.where(jnp.diagonal(R) < 0.0, -1.0, 1.0)
    R = R * signs[:, None]

    scale = max(1.0, float(jnp.max(jnp.abs(Ab))))
    if bool(jnp.any(jnp.abs(jnp.diagonal(R)[:nf]) <= RANK_TOL * scale)):
        raise IndeterminantLinearSystemError(key)

    conditional = GaussianConditional(
        key,
        R[:nf, -1],
        R[:nf, :nf],
        _split_parents(R[:nf], separator, dims, nf),
        jnp.ones(nf),
    )

    lower = R[nf:]
    if not separator or lower.shape[0] == 0:
        return conditional, None
    residual = JacobianFactor(
        list(_split_parents(lower, separator, dims, nf).items()),
        lower[:, -1],
    )
    return conditional, residual


def eliminate_cholesky(
    factors: Sequence[GaussianFactor],
    key: Key,
    position: Optional[Mapping[Key, int]] = None,
) -> Tuple[GaussianConditional, Optional[HessianFactor]]:
    """Eliminate ``key`` in information form; the residual is the Schur complement."""
    separator, dims = _frontal_and_separator(factors, key, position)
    columns = [key] + separator
    offsets = {}
    n = 0
    for k in columns:
        offsets[k] = n
        n += dims[k]
    nf = dims[key]

    G = jnp.zeros((n, n))
    g = jnp.zeros(n)
    f = 0.0
    for factor in factors:
        hf = factor.to_hessian()
        idx = jnp.concatenate(
            [jnp.arange(offsets[k], offsets[k] + dims[k]) for k in hf.keys]
        )
        G = G.at[jnp.ix_(idx, idx)].add(hf.info)
        g = g.at[idx].add(hf.linear_term)
        f += hf.constant_term

    L = jnp.linalg.cholesky(G[:nf, :nf])
    diag = jnp.diagonal(L)
    scale = max(1.0, float(jnp.sqrt(jnp.max(jnp.abs(jnp.diagonal(G))))))
    if not bool(jnp.all(jnp.isfinite(L))) or bool(jnp.any(diag <= RANK_TOL * scale)):
        raise IndeterminantLinearSystemError(key)

    S = solve_triangular(L, G[:nf, nf:], lower=True)
    d = solve_triangular(L, g[:nf], lower=True)
    conditional = GaussianConditional(
        key, d, L.T, _split_parents(S, separator, dims, 0), jnp.ones(nf)
    )

    if not separator:
        return conditional, None
    residual = HessianFactor(
        separator,
        [dims[k] for k in separator],
        G[nf:, nf:] - S.T @ S,
        g[nf:] - S.T @ d,
        f - float(d @ d),
    )
    return conditional, residual


ELIMINATION_FUNCTIONS: Dict[str, EliminateFn] = {
    "QR": eliminate_qr,
    "CHOLESKY": eliminate_cholesky,
}


def get_elimination_function(name: str) -> EliminateFn:
    try:
        return ELIMINATION_FUNCTIONS[name.upper()]
    except KeyError:
        raise ValueError(
            f"Unknown factorization '{name}', expected one of {sorted(ELIMINATION_FUNCTIONS)}"
        ) from None


class GaussianBayesNet:
    """Conditionals in elimination order."""

    def __init__(self, conditionals: Optional[Iterable[GaussianConditional]] = None) -> None:
        self.conditionals: List[GaussianConditional] = list(conditionals or [])

    def __iter__(self) -> Iterator[GaussianConditional]:
        return iter(self.conditionals)

    def __len__(self) -> int:
        return len(self.conditionals)

    def __getitem__(self, i: int) -> GaussianConditional:
        return self.conditionals[i]

    def append(self, conditional: GaussianConditional) -> None:
        self.conditionals.append(conditional)

    def optimize(self, given: Optional[Mapping[Key, jnp.ndarray]] = None) -> VectorValues:
        """Back-substitute in reverse elimination order."""
        solution: VectorValues = dict(given or {})
        for conditional in reversed(self.conditionals):
            solution[conditional.frontal] = conditional.solve(solution)
        return solution

    def __str__(self) -> str:
        return "\n".join(str(c) for c in self.conditionals)


class GaussianFactorGraph:
    """A flat collection of linear factors."""

    def __init__(self, factors: Optional[Iterable[GaussianFactor]] = None) -> None:
        self.factors: List[GaussianFactor] = [f for f in (factors or []) if f is not None]

    def push_back(self, factor: GaussianFactor) -> None:
        self.factors.append(factor)

    def __iter__(self) -> Iterator[GaussianFactor]:
        return iter(self.factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __getitem__(self, i: int) -> GaussianFactor:
        return self.factors[i]

    def keys(self) -> List[Key]:
        """Involved keys in order of first appearance."""
        seen: Dict[Key, None] = {}
        for factor in self.factors:
            for key in factor.keys:
                seen.setdefault(key, None)
        return list(seen)

    def dims(self) -> Dict[Key, int]:
        out: Dict[Key, int] = {}
        for factor in self.factors:
            out.update(factor.dims)
        return out

    def error(self, x: Mapping[Key, jnp.ndarray]) -> float:
        return sum(f.error(x) for f in self.factors)

    def eliminate_partial(
        self,
        keys: Sequence[Key],
        eliminate_fn: EliminateFn = eliminate_qr,
        position: Optional[Mapping[Key, int]] = None,
    ) -> Tuple[GaussianBayesNet, "GaussianFactorGraph"]:
        """
        Eliminate ``keys`` one at a time in the given order.

        Returns the conditionals on the eliminated keys and the factors left
        on the remaining keys (untouched factors plus new residuals).
        """
        remaining = list(self.factors)
        bayes_net = GaussianBayesNet()
        for key in keys:
            involved = [f for f in remaining if key in f]
            remaining = [f for f in remaining if key not in f]
            conditional, residual = eliminate_fn(involved, key, position)
            bayes_net.append(conditional)
            if residual is not None:
                remaining.append(residual)
        return bayes_net, GaussianFactorGraph(remaining)

    def eliminate_sequential(
        self,
        ordering: Sequence[Key],
        eliminate_fn: EliminateFn = eliminate_qr,
    ) -> GaussianBayesNet:
        position = {k: i for i, k in enumerate(ordering)}
        missing = [k for k in self.keys() if k not in position]
        if missing:
            raise PreconditionError(f"Ordering does not cover keys {missing!r}")
        bayes_net, _ = self.eliminate_partial(ordering, eliminate_fn, position)
        return bayes_net

    def optimize(
        self,
        ordering: Sequence[Key],
        eliminate_fn: EliminateFn = eliminate_qr,
    ) -> VectorValues:
        return self.eliminate_sequential(ordering, eliminate_fn).optimize()

    def __str__(self) -> str:
        return "\n".join(str(f) for f in self.factors)
