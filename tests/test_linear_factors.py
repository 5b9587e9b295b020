from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from cfs_jit.core.errors import PreconditionError
from cfs_jit.linear.factors import HessianFactor, JacobianFactor, LinearCost


def _jacobian() -> JacobianFactor:
    return JacobianFactor(
        [
            ("x", jnp.array([[1.0, 2.0], [0.0, 1.0], [3.0, -1.0]])),
            ("y", jnp.array([[0.5], [-2.0], [1.0]])),
        ],
        jnp.array([1.0, 0.0, -2.0]),
        sigmas=jnp.array([0.5, 1.0, 2.0]),
    )


X = {"x": jnp.array([0.3, -0.7]), "y": jnp.array([1.2])}


def test_jacobian_error_is_half_whitened_squared_norm():
    f = _jacobian()
    A = f.A
    e = (A @ jnp.concatenate([X["x"], X["y"]]) - f.b) / f.sigmas
    assert f.error(X) == pytest.approx(0.5 * float(e @ e))
    np.testing.assert_allclose(f.whitened().error_vector(X), e, atol=1e-12)


def test_jacobian_accessors():
    f = _jacobian()
    assert f.keys == ("x", "y")
    assert f.dims == {"x": 2, "y": 1}
    assert f.rows == 3
    assert "x" in f and "z" not in f
    assert not f.is_constrained()
    assert JacobianFactor([("x", jnp.eye(1))], jnp.zeros(1), sigmas=jnp.zeros(1)).is_constrained()


def test_jacobian_rejects_mismatched_rows():
    with pytest.raises(PreconditionError):
        JacobianFactor([("x", jnp.eye(2))], jnp.zeros(3))


def test_jacobian_to_hessian_preserves_error():
    f = _jacobian()
    h = f.to_hessian()
    assert isinstance(h, HessianFactor)
    assert h.error(X) == pytest.approx(f.error(X), rel=1e-10)


def test_hessian_to_jacobian_preserves_error():
    """The square-root form reproduces the information-form error."""
    h = _jacobian().to_hessian()
    j = h.to_jacobian()
    assert j.keys == h.keys
    for point in (X, {"x": jnp.zeros(2), "y": jnp.zeros(1)}, {"x": jnp.array([-1.0, 2.0]), "y": jnp.array([0.1])}):
        assert j.error(point) == pytest.approx(h.error(point), rel=1e-8, abs=1e-10)


def test_hessian_equals():
    h = _jacobian().to_hessian()
    assert h.equals(h)
    other = HessianFactor(h.keys, [2, 1], h.info, h.linear_term, h.constant_term + 1.0)
    assert not h.equals(other)


def test_linear_cost_error_is_signed():
    cost = LinearCost([("x", jnp.array([[1.0, -1.0]]))], b=2.0)
    assert cost.error({"x": jnp.array([1.0, 3.0])}) == pytest.approx(-4.0)
    assert cost.error({"x": jnp.array([5.0, 0.0])}) == pytest.approx(3.0)


def test_linear_cost_from_single_row_jacobian():
    j = JacobianFactor([("x", jnp.array([[2.0]]))], jnp.array([4.0]), sigmas=jnp.array([2.0]))
    cost = LinearCost.from_factor(j)
    # unweighted: 2·3 − 4
    assert cost.error({"x": jnp.array([3.0])}) == pytest.approx(2.0)
    np.testing.assert_allclose(cost.get_A("x"), [[2.0]])
    np.testing.assert_allclose(cost.sigmas, [2.0])


def test_linear_cost_ignores_noise_model():
    j = JacobianFactor([("x", jnp.array([[1.0]]))], jnp.array([0.0]), sigmas=jnp.array([2.0]))
    cost = LinearCost.from_factor(j)
    assert cost.error({"x": jnp.array([4.0])}) == pytest.approx(4.0)
    assert j.error({"x": jnp.array([4.0])}) == pytest.approx(2.0)


def test_linear_cost_conversion_preconditions():
    with pytest.raises(PreconditionError):
        LinearCost.from_factor(_jacobian())
    with pytest.raises(PreconditionError):
        LinearCost.from_factor(_jacobian().to_hessian())
    constrained = JacobianFactor([("x", jnp.eye(1))], jnp.zeros(1), sigmas=jnp.zeros(1))
    with pytest.raises(PreconditionError):
        LinearCost.from_factor(constrained)
    with pytest.raises(PreconditionError):
        LinearCost([("x", jnp.eye(2))], b=0.0)
