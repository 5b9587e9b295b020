from __future__ import annotations

import time

import jax.numpy as jnp
import numpy as np
import pytest

from cfs_jit.core.errors import PreconditionError
from cfs_jit.core.math3d import se3_local_left, se3_retract_left
from cfs_jit.core.types import Values
from cfs_jit.slam.manifold import get_manifold_for_var_type


def test_manifold_tags():
    assert get_manifold_for_var_type("pose_se3") == "se3"
    assert get_manifold_for_var_type("vector") == "euclidean"
    assert get_manifold_for_var_type("point3") == "euclidean"


def test_insert_and_lookup():
    v = Values({"a": [1.0, 2.0]})
    v.insert("p", jnp.zeros(6), "pose_se3")
    assert len(v) == 2
    assert "a" in v and "z" not in v
    assert v.var_type("p") == "pose_se3"
    assert v.dim("a") == 2
    with pytest.raises(KeyError):
        v["z"]


def test_duplicate_insert_raises():
    v = Values({"a": [1.0]})
    with pytest.raises(PreconditionError):
        v.insert("a", [2.0])
    with pytest.raises(PreconditionError):
        v.insert_values(Values({"b": [0.0], "a": [3.0]}))
    # nothing was inserted by the failed bulk insert
    assert set(v) == {"a"}


def test_update_erase_and_insert_or_assign():
    v = Values({"a": [1.0]})
    v.update("a", [5.0])
    np.testing.assert_allclose(v["a"], [5.0])
    with pytest.raises(PreconditionError):
        v.update("b", [0.0])
    v.insert_or_assign(Values({"a": [7.0], "b": [8.0]}))
    np.testing.assert_allclose(v["a"], [7.0])
    v.erase("b")
    assert "b" not in v
    with pytest.raises(PreconditionError):
        v.erase("b")


def test_retract_and_local_coordinates_roundtrip():
    v = Values({"x": [1.0, 2.0]})
    v.insert("p", jnp.array([0.5, 0.0, -1.0, 0.1, 0.2, -0.3]), "pose_se3")
    delta = {"x": jnp.array([0.5, -0.5]), "p": jnp.array([0.1, 0.0, 0.2, 0.0, -0.05, 0.02])}
    moved = v.retract(delta)
    np.testing.assert_allclose(moved["x"], [1.5, 1.5])
    back = v.local_coordinates(moved)
    for key in delta:
        np.testing.assert_allclose(back[key], delta[key], atol=1e-9)
    # the original is untouched
    np.testing.assert_allclose(v["x"], [1.0, 2.0])


def test_subset_copy_and_equals():
    v = Values({"a": [1.0], "b": [2.0]})
    c = v.copy()
    assert c.equals(v)
    c.update("a", [1.0 + 1e-12])
    assert c.equals(v, 1e-9)
    assert not c.equals(v, 0.0)
    s = v.subset(["b"])
    assert list(s) == ["b"]
    assert not s.equals(v)


def _pose_chain(n: int) -> Values:
    v = Values(var_type="pose_se3")
    for i in range(n):
        v.insert(f"x{i}", jnp.array([float(i), 0.1 * i, 0.0, 0.0, 0.01 * i, 0.2]), "pose_se3")
    return v


def test_se3_values_maps_match_math3d():
    v = _pose_chain(3)
    delta = {k: jnp.array([0.1, -0.2, 0.05, 0.02, -0.03, 0.04]) for k in v}
    moved = v.retract(delta)
    for key in v:
        np.testing.assert_allclose(moved[key], se3_retract_left(v[key], delta[key]), atol=1e-12)
        np.testing.assert_allclose(
            v.local_coordinates(moved)[key], se3_local_left(v[key], moved[key]), atol=1e-12
        )


def test_se3_retract_over_many_poses_is_fast():
    """Retracting a long pose chain reuses one compiled map per manifold."""
    v = _pose_chain(200)
    delta = {k: jnp.full(6, 1e-3) for k in v}
    v.retract(delta)  # warm up compilation

    start = time.perf_counter()
    moved = v.retract(delta)
    v.local_coordinates(moved)
    assert time.perf_counter() - start < 10.0
