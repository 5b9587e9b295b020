# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Residual models (measurement factors) for CFS-JIT.

This module defines the *measurement-level* building blocks handed to the
smoother by a front-end:

    • Each ``*_residual`` function implements
          r(x; params) ∈ ℝᵏ
      on the stacked values ``x`` of the factor's keys, compatible with
      JAX differentiation and JIT compilation.

    • Each ``*_factor`` builder wraps a residual in a
      :class:`~cfs_jit.core.factors.ResidualFactor` with its keys,
      measurement parameters and per-row noise ``sigmas``.

Families
--------
1. Euclidean priors and relative constraints
    • ``prior_residual``:     r = x − target
    • ``between_residual``:   r = (x_j − x_i) − measurement

2. SE(3) motion factors on 6D pose vectors ``[tx, ty, tz, wx, wy, wz]``
    • ``prior_se3_residual``:   r = rel(target, x)
    • ``between_se3_residual``: r = rel(x_i, x_j) − measurement

   where ``rel(a, b)`` is the relative pose ``T_a⁻¹ T_b`` in 6D form.

3. Range factors
    • ``range_residual``:     r = ||p_j − p_i|| − range

Notes
-----
Noise is not applied inside the residuals: the factor divides by its
``sigmas`` when it is evaluated, so every residual here is unweighted.
Binary residuals split the stacked state in half, so both keys of a
binary factor must have the same dimension.
"""

from __future__ import annotations
from typing import Dict

import jax.numpy as jnp

from cfs_jit.core.factors import ResidualFactor
from cfs_jit.core.math3d import relative_pose_se3
from cfs_jit.core.types import Key


def _split(x: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    dim = x.shape[0] // 2
    return x[:dim], x[dim:]


def _as_sigmas(sigmas, dim: int) -> jnp.ndarray:
    s = jnp.asarray(sigmas, dtype=float)
    if s.ndim == 0:
        s = jnp.full((dim,), s)
    return s


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Simple prior on a single variable:
        residual = x - target
    Works for any vector dimension.
    """
    return x - params["target"]


def between_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Relative constraint between two vector variables:

        x = [x_i, x_j]
        residual = (x_j - x_i) - measurement
    """
    xi, xj = _split(x)
    return (xj - xi) - params["measurement"]


def prior_se3_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """Pose prior: the relative pose from ``target`` to ``x`` should vanish."""
    return relative_pose_se3(params["target"], x)


def between_se3_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    SE(3) odometry / loop-closure residual:

        pose_i, pose_j in R^6: [tx, ty, tz, wx, wy, wz]
        measurement in R^6: relative pose from i -> j

        residual = relative_pose_se3(pose_i, pose_j) - measurement
    """
    pose_i, pose_j = _split(x)
    return relative_pose_se3(pose_i, pose_j) - params["measurement"]


def range_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Distance between two points:

        residual = ||p_j - p_i|| - range

    Returns shape (1,).
    """
    pi, pj = _split(x)
    return jnp.atleast_1d(jnp.linalg.norm(pj - pi) - params["range"])


# --- Factor builders ---

def prior_factor(key: Key, target, sigmas) -> ResidualFactor:
    target = jnp.atleast_1d(jnp.asarray(target, dtype=float))
    return ResidualFactor(
        "prior", (key,), prior_residual,
        params={"target": target},
        sigmas=_as_sigmas(sigmas, target.shape[0]),
    )


def between_factor(key_i: Key, key_j: Key, measurement, sigmas) -> ResidualFactor:
    meas = jnp.atleast_1d(jnp.asarray(measurement, dtype=float))
    return ResidualFactor(
        "between", (key_i, key_j), between_residual,
        params={"measurement": meas},
        sigmas=_as_sigmas(sigmas, meas.shape[0]),
    )


def prior_se3_factor(key: Key, target, sigmas) -> ResidualFactor:
    return ResidualFactor(
        "prior_se3", (key,), prior_se3_residual,
        params={"target": jnp.asarray(target, dtype=float).reshape(6)},
        sigmas=_as_sigmas(sigmas, 6),
    )


def between_se3_factor(key_i: Key, key_j: Key, measurement, sigmas) -> ResidualFactor:
    return ResidualFactor(
        "between_se3", (key_i, key_j), between_se3_residual,
        params={"measurement": jnp.asarray(measurement, dtype=float).reshape(6)},
        sigmas=_as_sigmas(sigmas, 6),
    )


def range_factor(key_i: Key, key_j: Key, measured_range: float, sigma: float) -> ResidualFactor:
    return ResidualFactor(
        "range", (key_i, key_j), range_residual,
        params={"range": jnp.asarray(measured_range, dtype=float)},
        sigmas=_as_sigmas(sigma, 1),
    )
