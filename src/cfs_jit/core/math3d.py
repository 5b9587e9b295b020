# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
SE3 and SO3 manifold operations for CFS-JIT.

This module implements the minimal 3D Lie-group mathematics needed by pose
variables in the smoother:

    • SO(3) exponential & logarithm maps
    • Composition and relative poses in 6D vector form
    • Left retraction and its inverse (local coordinates)

Poses are stored as 6-vectors ``[tx, ty, tz, wx, wy, wz]`` (translation plus
axis-angle rotation). All functions are written in JAX and support JIT
compilation and forward-mode differentiation, which is how residual
Jacobians are obtained during linearization.

Key Functions
-------------
so3_exp(w)
    Maps a 3-vector (axis-angle) to a 3×3 rotation matrix.

so3_log(R)
    Maps a rotation matrix back to its axis-angle representation.

se3_retract_left(pose, delta)
    Applies a twist on the left: T_new = Exp(delta) ∘ T.

se3_local_left(pose0, pose1)
    Inverse of the retraction: the delta that takes pose0 to pose1.

Notes
-----
Small-angle branches are selected with ``jax.lax.cond`` so that the
derivative at the identity rotation (where every linearization in local
coordinates is taken) stays finite.
"""

from __future__ import annotations

import jax
import jax.numpy as jnp


def pose_vec_to_rt(v: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Split a 6D pose vector into translation and rotation-vector (axis-angle).
    v: [tx, ty, tz, wx, wy, wz]
    """
    v = jnp.asarray(v)
    t = v[0:3]
    w = v[3:6]
    return t, w


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(R: jnp.ndarray) -> jnp.ndarray:
    """
    vee: so(3) -> R^3, inverse of hat.
    Assumes R is a 3x3 skew-symmetric-like matrix.
    """
    return jnp.array([
        R[2, 1] - R[1, 2],
        R[0, 2] - R[2, 0],
        R[1, 0] - R[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to SO(3).

    Uses Rodrigues' formula with a small-angle fallback.
    """
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3)

    def small_angle() -> jnp.ndarray:
        # First-order approximation for small angles
        return I + hat(w)

    def normal_angle() -> jnp.ndarray:
        k = w / theta
        K = hat(k)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < 1e-5, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """
    Numerically stable logarithm map for SO(3).

    Handles:
      - small angles via first-order approximation
      - trace slightly outside [-1, 3] via clamping

    Returns w in R^3 such that Exp(w) ~ R.
    """
    R = jnp.asarray(R)
    trace = jnp.trace(R)
    cos_theta = jnp.clip((trace - 1.0) / 2.0, -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small_angle_case(_) -> jnp.ndarray:
        # R ~ I + hat(w)  =>  w ~ vee(R - I)
        return vee(R - jnp.eye(3, dtype=R.dtype))

    def general_case(_) -> jnp.ndarray:
        #   w^ = (theta / (2 sin(theta))) * (R - R^T)
        factor = theta / (2.0 * jnp.sin(theta) + 1e-12)
        return factor * vee(R - R.T)

    return jax.lax.cond(theta < 1e-5, small_angle_case, general_case, operand=None)


def compose_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compose two SE(3) poses in 6D vector form.

    a, b: [tx, ty, tz, wx, wy, wz]
    Returns: 6D vector for a ∘ b
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    R = Ra @ Rb
    t = Ra @ tb + ta
    return jnp.concatenate([t, so3_log(R)])


def relative_pose_se3(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """
    Compute relative pose from a to b in 6D vector form.

      T_rel = T_a^{-1} T_b
      t_rel = R_a^T (t_b - t_a)
      w_rel = log(R_a^T R_b)
    """
    ta, wa = pose_vec_to_rt(a)
    tb, wb = pose_vec_to_rt(b)

    Ra = so3_exp(wa)
    Rb = so3_exp(wb)

    w_rel = so3_log(Ra.T @ Rb)
    t_rel = Ra.T @ (tb - ta)
    return jnp.concatenate([t_rel, w_rel])


def se3_retract_left(pose: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Left-multiplicative SE(3) retraction:

        T_new = Exp(delta) * T_old

    with ``R_new = R_d R`` and ``t_new = R_d t + t_d``. The translation part
    of ``delta`` is applied directly, matching the 6D pose parameterization.
    """
    pose = jnp.asarray(pose)
    delta = jnp.asarray(delta)

    t, w = pose_vec_to_rt(pose)
    dt, dw = pose_vec_to_rt(delta)

    R = so3_exp(w)
    R_d = so3_exp(dw)

    R_new = R_d @ R
    t_new = R_d @ t + dt
    return jnp.concatenate([t_new, so3_log(R_new)])


def se3_local_left(pose0: jnp.ndarray, pose1: jnp.ndarray) -> jnp.ndarray:
    """
    Inverse of :func:`se3_retract_left`: returns ``delta`` such that
    ``se3_retract_left(pose0, delta) == pose1``.
    """
    t0, w0 = pose_vec_to_rt(pose0)
    t1, w1 = pose_vec_to_rt(pose1)

    R0 = so3_exp(w0)
    R1 = so3_exp(w1)

    R_d = R1 @ R0.T
    t_d = t1 - R_d @ t0
    return jnp.concatenate([t_d, so3_log(R_d)])


def se3_identity() -> jnp.ndarray:
    """
    Convenience: return the identity SE(3) pose in 6D vector form.
    """
    return jnp.zeros(6)
