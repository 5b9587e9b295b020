import jax
import jax.numpy as jnp
from cfs_jit.core.math3d import so3_exp, so3_log


def test_so3_log_exp_roundtrip_small_angle():
    w = jnp.array([0.1, -0.05, 0.02])
    R = so3_exp(w)
    w_est = so3_log(R)
    assert jnp.all(jnp.isfinite(w_est))
    assert jnp.allclose(w_est, w, atol=1e-4)


def test_so3_log_no_nan_for_identity():
    R = jnp.eye(3)
    w = so3_log(R)
    assert jnp.all(jnp.isfinite(w))
    assert jnp.linalg.norm(w) < 1e-6


def test_so3_exp_is_orthonormal():
    R = so3_exp(jnp.array([0.7, -1.1, 0.4]))
    assert jnp.allclose(R @ R.T, jnp.eye(3), atol=1e-9)
    assert jnp.allclose(jnp.linalg.det(R), 1.0, atol=1e-9)


def test_so3_exp_jacobian_at_zero_is_finite():
    # Linearizing pose factors differentiates the exponential at zero.
    J = jax.jacfwd(lambda w: so3_exp(w).ravel())(jnp.zeros(3))
    assert jnp.all(jnp.isfinite(J))
