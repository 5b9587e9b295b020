from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from cfs_jit.core.factors import ResidualFactor
from cfs_jit.core.linearized import LinearizedJacobianFactor
from cfs_jit.core.types import Values
from cfs_jit.linear.factors import JacobianFactor
from cfs_jit.optimization.solvers import LMConfig
from cfs_jit.slam.measurements import between_factor
from cfs_jit.smoother.concurrent_batch_smoother import ConcurrentBatchSmoother, SmootherParams
from cfs_jit.smoother.marginalization import marginalize_keys_from_factor, summarize_cached_factors


def _coupled_residual(x, params):
    # r = [a - b, 2 b - c, a + c - 1]
    a, b, c = x[0], x[1], x[2]
    return jnp.array([a - b, 2.0 * b - c, a + c - 1.0])


def _factor() -> ResidualFactor:
    return ResidualFactor("coupled", ("a", "b", "c"), _coupled_residual, sigmas=jnp.ones(3))


def _point() -> Values:
    return Values({"a": [0.5], "b": [0.2], "c": [-0.1]})


def _dense(factor, values):
    j = factor.linearize(values)
    return np.asarray(j.A), np.asarray(j.b)


def test_nothing_discarded_returns_input():
    f = _factor()
    assert marginalize_keys_from_factor(f, ["a", "b", "c", "z"], _point()) is f


def test_everything_discarded_returns_none():
    assert marginalize_keys_from_factor(_factor(), ["z"], _point()) is None
    assert marginalize_keys_from_factor(_factor(), [], _point()) is None


def test_discarding_one_key_gives_schur_complement():
    """Marginal information on (b, c) equals the Schur complement of the joint one."""
    f = _factor()
    lin = _point()
    marginal = marginalize_keys_from_factor(f, ["b", "c"], lin)
    assert isinstance(marginal, LinearizedJacobianFactor)
    assert marginal.keys == ("b", "c")

    A, b = _dense(f, lin)
    H = A.T @ A
    g = A.T @ b
    schur_H = H[1:, 1:] - np.outer(H[1:, 0], H[0, 1:]) / H[0, 0]
    schur_g = g[1:] - H[1:, 0] * g[0] / H[0, 0]

    linear = marginal.linearize(lin)
    Am = np.asarray(linear.A)
    np.testing.assert_allclose(Am.T @ Am, schur_H, atol=1e-9)
    np.testing.assert_allclose(Am.T @ np.asarray(linear.b), schur_g, atol=1e-9)


def test_marginal_is_jacobian_under_cholesky_smoother():
    """The smoother passthrough eliminates with QR even when LM uses Cholesky."""
    smoother = ConcurrentBatchSmoother(SmootherParams(lm=LMConfig(factorization="CHOLESKY")))
    f = _factor()
    lin = _point()
    marginal = smoother.marginalize_keys_from_factor(f, ["b", "c"], lin)
    assert isinstance(marginal, LinearizedJacobianFactor)
    direct = marginalize_keys_from_factor(f, ["b", "c"], lin)
    moved = Values({"a": [0.0], "b": [1.0], "c": [0.4]})
    assert marginal.error(moved) == pytest.approx(direct.error(moved), rel=1e-12)


def test_fully_determined_discard_leaves_nothing():
    """A single between factor says nothing about either end once the other is marginalized."""
    f = between_factor("a", "b", [1.0], 0.1)
    assert marginalize_keys_from_factor(f, ["b"], Values({"a": [0.0], "b": [1.0]})) is None


def test_summarize_cached_factors_keeps_root_only_factors():
    root_only = JacobianFactor([("r", jnp.eye(1))], jnp.array([1.0]))
    out = summarize_cached_factors([root_only], ["r"], {"r": 0})
    assert out == [root_only]


def test_summarize_cached_factors_eliminates_extra_keys():
    f1 = JacobianFactor([("x", jnp.eye(1)), ("r", -jnp.eye(1))], jnp.array([0.5]))
    f2 = JacobianFactor([("x", 2.0 * jnp.eye(1))], jnp.array([1.0]))
    out = summarize_cached_factors([f1, f2], ["r"], {"x": 0, "r": 1})
    assert len(out) == 1
    assert out[0].keys == ("r",)
