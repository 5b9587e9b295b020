# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Manifold utilities for SE(3) and Euclidean variables in CFS-JIT.

Every variable stored in :class:`cfs_jit.core.types.Values` carries a
variable type (``"vector"``, ``"pose_se3"``, ...). This module maps those
types to a manifold model and implements the two operations the optimizer
and the linearized factors need:

    • ``retract(value, delta, manifold)``            (x ⊕ δ)
    • ``local_coordinates(value0, value1, manifold)`` (x1 ⊖ x0)

The optimizer works in the tangent space: linear systems are solved for
increments δ, which are then applied with ``retract``. Summaries exchanged
with the filter are anchored at a linearization point and evaluate new
estimates through ``local_coordinates`` about that anchor.

Notes
-----
To add a manifold, add its variable types to ``TYPE_TO_MANIFOLD`` and a
branch to both ``retract`` and ``local_coordinates``.
"""

from __future__ import annotations

from typing import Dict

import jax
import jax.numpy as jnp

from cfs_jit.core.math3d import se3_local_left, se3_retract_left

TYPE_TO_MANIFOLD: Dict[str, str] = {
    "pose_se3": "se3",
    "vector": "euclidean",
    "point2": "euclidean",
    "point3": "euclidean",
    "landmark3d": "euclidean",
    "velocity3": "euclidean",
    "bias": "euclidean",
}

# Compiled once; Values.retract and local_coordinates call these eagerly.
_se3_retract = jax.jit(se3_retract_left)
_se3_local = jax.jit(se3_local_left)


def get_manifold_for_var_type(var_type: str) -> str:
    return TYPE_TO_MANIFOLD.get(var_type, "euclidean")


def retract(value: jnp.ndarray, delta: jnp.ndarray, manifold: str) -> jnp.ndarray:
    """Apply a tangent-space increment ``delta`` to ``value``."""
    if manifold == "se3":
        return _se3_retract(value, delta)
    return value + delta


def local_coordinates(value0: jnp.ndarray, value1: jnp.ndarray, manifold: str) -> jnp.ndarray:
    """Tangent-space increment taking ``value0`` to ``value1``."""
    if manifold == "se3":
        return _se3_local(value0, value1)
    return value1 - value0
