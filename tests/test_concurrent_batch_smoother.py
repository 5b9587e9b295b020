from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from cfs_jit.core.errors import IndeterminantLinearSystemError, PreconditionError
from cfs_jit.core.linearized import LinearizedJacobianFactor
from cfs_jit.core.types import Values
from cfs_jit.optimization.solvers import LMConfig
from cfs_jit.slam.measurements import between_factor, between_se3_factor, prior_factor, prior_se3_factor
from cfs_jit.smoother.concurrent_batch_smoother import (
    ConcurrentBatchSmoother,
    SmootherParams,
    SmootherResult,
)


def _pinned_smoother(root_values: Values, params: SmootherParams = None) -> ConcurrentBatchSmoother:
    smoother = ConcurrentBatchSmoother(params)
    smoother.presync()
    smoother.synchronize([], Values(), [], root_values)
    smoother.postsync()
    return smoother


def test_update_on_empty_smoother():
    smoother = ConcurrentBatchSmoother()
    result = smoother.update()
    assert result == SmootherResult()
    assert len(smoother.get_summarized_factors()) == 0


def test_consistent_binary_factor_needs_no_iterations():
    smoother = ConcurrentBatchSmoother()
    result = smoother.update(
        [between_factor("A", "B", [1.0], 0.1)],
        Values({"A": [0.0], "B": [1.0]}),
    )
    assert result.iterations == 0
    assert result.error == 0.0
    assert result.nonlinear_variables == 2
    assert result.linear_variables == 0
    assert set(smoother.values) == {"A", "B"}


def test_root_values_are_excluded_from_exported_estimate():
    smoother = _pinned_smoother(Values({"B": [1.0]}))
    result = smoother.update(
        [prior_factor("A", [0.0], 0.1), between_factor("A", "B", [2.0], 0.1)],
        Values({"A": [0.0]}),
    )
    assert "A" in smoother.values
    assert "B" not in smoother.values
    assert result.nonlinear_variables == 1
    assert result.linear_variables == 1
    np.testing.assert_allclose(smoother.root_values["B"], [1.0])
    assert result.iterations >= 1
    assert bool(jnp.all(jnp.isfinite(smoother.values["A"])))


def test_root_values_hold_exactly_during_optimization():
    seen = []

    def hook(iteration, error, values):
        seen.append(float(values["B"][0]))

    params = SmootherParams(lm=LMConfig(iteration_hook=hook))
    smoother = _pinned_smoother(Values({"B": [1.0]}), params)
    smoother.update(
        [prior_factor("A", [0.5], 0.1), between_factor("A", "B", [2.0], 0.1), prior_factor("B", [1.0], 0.01)],
        Values({"A": [0.0]}),
    )
    assert seen
    assert all(b == 1.0 for b in seen)


def test_summary_is_marginal_on_root():
    """
    Chain x0 -- x1 -- r with unit-variance-0.01 links: the marginal on r has
    variance 0.03, so the summary's information is 1 / 0.03.
    """
    smoother = _pinned_smoother(Values({"r": [2.0]}))
    smoother.update(
        [
            prior_factor("x0", [0.0], 0.1),
            between_factor("x0", "x1", [1.0], 0.1),
            between_factor("x1", "r", [1.0], 0.1),
        ],
        Values({"x0": [0.0], "x1": [1.0]}),
    )
    summary = smoother.get_summarized_factors()
    assert len(summary) == 1
    factor = summary[0]
    assert isinstance(factor, LinearizedJacobianFactor)
    assert factor.keys == ("r",)
    np.testing.assert_allclose(factor.linearization_point["r"], [2.0])

    A = factor.linearize(factor.linearization_point).A
    np.testing.assert_allclose(A.T @ A, [[1.0 / 0.03]], rtol=1e-8)
    assert factor.error(Values({"r": [2.0]})) == pytest.approx(0.0, abs=1e-12)


def test_summary_with_cholesky_is_hessian_form():
    params = SmootherParams(lm=LMConfig(factorization="CHOLESKY"))
    smoother = _pinned_smoother(Values({"r": [2.0]}), params)
    smoother.update(
        [prior_factor("x0", [0.0], 0.1), between_factor("x0", "r", [2.0], 0.1)],
        Values({"x0": [0.0]}),
    )
    summary = smoother.get_summarized_factors()
    assert len(summary) == 1
    assert summary[0].keys == ("r",)
    assert summary[0].error(Values({"r": [2.1]})) == pytest.approx(0.5 * 0.1 ** 2 / 0.02, rel=1e-8)


def test_get_summarized_factors_is_idempotent():
    smoother = _pinned_smoother(Values({"r": [2.0]}))
    smoother.update(
        [prior_factor("x0", [0.0], 0.1), between_factor("x0", "r", [2.0], 0.1)],
        Values({"x0": [0.0]}),
    )
    first = smoother.get_summarized_factors()
    second = smoother.get_summarized_factors()
    assert first is not second
    assert first.equals(second)
    assert len(first) == 1


def test_no_root_keys_means_empty_summary():
    smoother = _pinned_smoother(Values({"r": [2.0]}))
    smoother.update(
        [prior_factor("x0", [0.0], 0.1), between_factor("x0", "r", [2.0], 0.1)],
        Values({"x0": [0.0]}),
    )
    assert len(smoother.get_summarized_factors()) == 1

    smoother.synchronize([], Values({"r": [2.0]}), [], Values())
    smoother.update()
    assert len(smoother.get_summarized_factors()) == 0


def test_synchronize_replaces_previous_filter_summary():
    smoother = ConcurrentBatchSmoother()
    smoother.synchronize([], Values(), [prior_factor("f1", [0.0], 1.0), prior_factor("f1b", [0.0], 1.0)], Values())
    first_slots = smoother.filter_summarization_slots
    assert len(first_slots) == 2

    smoother.synchronize([], Values(), [prior_factor("f2", [0.0], 1.0)], Values())
    assert smoother.find_factors_with_any({"f1", "f1b"}) == set()
    assert smoother.factor_store.slots_for("f1") == set()
    assert smoother.factor_store.slots_for("f1b") == set()
    assert smoother.filter_summarization_slots == [first_slots[0]]
    assert smoother.find_factors_with_only({"f2"}) == set(smoother.filter_summarization_slots)
    assert len(smoother.factors) == 1


def test_synchronize_adds_smoother_factors_and_values():
    smoother = ConcurrentBatchSmoother()
    smoother.synchronize(
        [between_factor("x1", "x2", [1.0], 0.1)],
        Values({"x1": [0.0], "x2": [1.0]}),
        [prior_factor("x1", [0.0], 0.1)],
        Values({"x2": [1.0]}),
    )
    assert len(smoother.factors) == 2
    assert set(smoother.values) == {"x1", "x2"}
    assert set(smoother.root_values) == {"x2"}
    # smoother factors are not part of the filter summary
    assert len(smoother.filter_summarization_slots) == 1


def test_duplicate_values_are_rejected():
    smoother = ConcurrentBatchSmoother()
    smoother.update([prior_factor("a", [0.0], 1.0)], Values({"a": [0.0]}))
    with pytest.raises(PreconditionError):
        smoother.update([], Values({"a": [1.0]}))


def test_rejected_update_inserts_nothing():
    smoother = ConcurrentBatchSmoother()
    smoother.update([prior_factor("a", [0.0], 1.0)], Values({"a": [0.0]}))
    with pytest.raises(PreconditionError):
        smoother.update([prior_factor("b", [0.0], 1.0)], Values({"a": [1.0], "b": [0.0]}))
    assert len(smoother.factors) == 1
    assert set(smoother.values) == {"a"}
    assert smoother.find_factors_with_any({"b"}) == set()

    # the smoother is still usable
    result = smoother.update()
    assert result.nonlinear_variables == 1


def test_rejected_synchronize_changes_nothing():
    smoother = ConcurrentBatchSmoother()
    smoother.update([prior_factor("a", [0.0], 1.0)], Values({"a": [0.0]}))
    smoother.synchronize([], Values(), [prior_factor("f", [0.0], 1.0)], Values())
    slots = smoother.filter_summarization_slots
    assert len(smoother.factors) == 2

    with pytest.raises(PreconditionError):
        smoother.synchronize(
            [prior_factor("c", [0.0], 1.0)],
            Values({"a": [1.0], "c": [0.0]}),
            [prior_factor("r", [0.0], 1.0)],
            Values({"r": [0.0]}),
        )
    assert len(smoother.factors) == 2
    assert smoother.filter_summarization_slots == slots
    assert len(smoother.root_values) == 0
    assert set(smoother.values) == {"a"}


def test_singular_summary_keeps_previous_estimate_and_summary():
    smoother = _pinned_smoother(Values({"r": [2.0]}))
    smoother.update(
        [prior_factor("x0", [0.0], 0.1), between_factor("x0", "r", [2.0], 0.1)],
        Values({"x0": [0.0]}),
    )
    x0 = smoother.values["x0"]
    summary = smoother.get_summarized_factors()

    # x and y are only tied to each other, so the undamped summary elimination is singular
    with pytest.raises(IndeterminantLinearSystemError):
        smoother.update([between_factor("x", "y", [1.0], 0.1)], Values({"x": [0.0], "y": [1.0]}))
    np.testing.assert_allclose(smoother.values["x0"], x0)
    assert {"x", "y"} <= set(smoother.values)
    assert smoother.get_summarized_factors().equals(summary)


def test_summary_over_se3_root():
    root = Values(var_type="pose_se3")
    root.insert("p1", jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.3]), "pose_se3")
    smoother = _pinned_smoother(root)
    initial = Values(var_type="pose_se3")
    initial.insert("p0", jnp.zeros(6), "pose_se3")
    smoother.update(
        [
            prior_se3_factor("p0", jnp.zeros(6), 0.1),
            between_se3_factor("p0", "p1", jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.3]), 0.1),
        ],
        initial,
    )
    summary = smoother.get_summarized_factors()
    assert len(summary) == 1
    factor = summary[0]
    assert isinstance(factor, LinearizedJacobianFactor)
    assert factor.keys == ("p1",)
    assert factor.linearization_point.var_type("p1") == "pose_se3"
    assert factor.error(root) == pytest.approx(0.0, abs=1e-12)

    A = np.asarray(factor.get_A("p1"))
    assert A.shape == (6, 6)
    assert np.all(np.linalg.eigvalsh(A.T @ A) > 0.0)

    # error away from the anchor goes through the SE(3) local coordinates
    delta = jnp.array([0.02, -0.01, 0.03, 0.01, -0.02, 0.015])
    moved = root.retract({"p1": delta})
    e = A @ np.asarray(delta) - np.asarray(factor.b)
    assert factor.error(moved) == pytest.approx(0.5 * float(e @ e), rel=1e-6)


def test_summary_over_two_roots_is_schur_complement():
    """
    x is tied to both roots, so its clique hangs below the root cliques and
    the summary is one factor on (r1, r2): the Schur complement of x.
    """
    smoother = _pinned_smoother(Values({"r1": [1.0], "r2": [2.0]}))
    smoother.update(
        [
            prior_factor("x", [0.0], 0.1),
            between_factor("x", "r1", [1.0], 0.1),
            between_factor("x", "r2", [2.0], 0.1),
        ],
        Values({"x": [0.0]}),
    )
    summary = smoother.get_summarized_factors()
    assert len(summary) == 1
    factor = summary[0]
    assert set(factor.keys) == {"r1", "r2"}

    A = np.hstack([np.asarray(factor.get_A("r1")), np.asarray(factor.get_A("r2"))])
    expected = np.array([[200.0, -100.0], [-100.0, 200.0]]) / 3.0
    np.testing.assert_allclose(A.T @ A, expected, rtol=1e-8)


def test_store_passthroughs():
    smoother = ConcurrentBatchSmoother()
    slot = smoother.insert_factor(between_factor("a", "b", [1.0], 1.0))
    assert smoother.find_factors_with_any({"b"}) == {slot}
    assert smoother.find_factors_with_only({"a"}) == set()
    smoother.remove_factor(slot)
    assert smoother.find_factors_with_any({"a", "b"}) == set()


def test_marginalize_passthrough():
    smoother = ConcurrentBatchSmoother()
    factor = between_factor("a", "b", [1.0], 1.0)
    lin = Values({"a": [0.0], "b": [1.0]})
    assert smoother.marginalize_keys_from_factor(factor, ["a", "b"], lin) is factor
    assert smoother.marginalize_keys_from_factor(factor, [], lin) is None


def test_print(capsys):
    smoother = ConcurrentBatchSmoother()
    smoother.update([prior_factor("a", [0.0], 1.0)], Values({"a": [0.5]}))
    smoother.print("Smoother state")
    out = capsys.readouterr().out
    assert out.startswith("Smoother state")
    assert "prior(a)" in out
    assert "Values with 1 values" in out
