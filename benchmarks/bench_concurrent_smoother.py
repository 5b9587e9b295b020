# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.

import time
import jax.numpy as jnp

from cfs_jit.core.types import Values
from cfs_jit.optimization.solvers import LMConfig
from cfs_jit.slam.measurements import between_se3_factor, prior_se3_factor
from cfs_jit.smoother.concurrent_batch_smoother import ConcurrentBatchSmoother, SmootherParams


def build_se3_chain(first: int, num_poses: int):
    """
    SE3 pose chain segment:
        x{first} --odom--> x{first+1} --odom--> ... --odom--> x{first+num_poses-1}
    Odom edges of +1m in x, no rotation; initial guesses slightly perturbed.
    """
    factors = []
    values = Values(var_type="pose_se3")
    meas = jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])
    for i in range(first, first + num_poses):
        init_val = jnp.array(
            [
                i + 0.1 * jnp.sin(0.3 * i),  # tx
                0.05 * jnp.cos(0.2 * i),     # ty
                0.0,                         # tz
                0.0,
                0.0,
                0.01 * jnp.sin(0.5 * i),     # rotation (axis-angle)
            ]
        )
        values.insert(f"x{i}", init_val, "pose_se3")
        if i > 0:
            factors.append(between_se3_factor(f"x{i - 1}", f"x{i}", meas, 0.1))
    return factors, values


def run_benchmark(num_cycles: int = 5, poses_per_cycle: int = 10, max_iters: int = 20):
    print("=== Concurrent Batch Smoother Benchmark ===")
    print(f"num_cycles = {num_cycles}, poses_per_cycle = {poses_per_cycle}, max_iters = {max_iters}")

    smoother = ConcurrentBatchSmoother(SmootherParams(lm=LMConfig(max_iters=max_iters)))

    # First segment is anchored by a prior on x0
    factors, values = build_se3_chain(0, poses_per_cycle)
    factors.insert(0, prior_se3_factor("x0", jnp.zeros(6), 0.01))

    previous_root = Values(var_type="pose_se3")
    for cycle in range(num_cycles):
        t0 = time.time()
        result = smoother.update(factors, values)
        t1 = time.time()
        print(
            f"cycle {cycle}: {result.iterations} iterations, error {result.error:.3e}, "
            f"{result.nonlinear_variables} nonlinear / {result.linear_variables} linear variables, "
            f"{(t1 - t0) * 1000:.3f} ms"
        )

        # Hand the last pose to the filter as the new root and receive the next segment
        last = (cycle + 1) * poses_per_cycle - 1
        root_values = Values(var_type="pose_se3")
        root_values.insert(f"x{last}", smoother.values[f"x{last}"], "pose_se3")
        # A filter would return its marginal on the root; a tight prior stands in for it
        filter_summary = [prior_se3_factor(f"x{last}", smoother.values[f"x{last}"], 0.05)]

        smoother.presync()
        # The filter hands the previous root back to the smoother as an ordinary state
        smoother.synchronize([], previous_root, filter_summary, root_values)
        smoother.postsync()
        previous_root = root_values

        factors, values = build_se3_chain(last + 1, poses_per_cycle)

    print(f"summary factors: {len(smoother.get_summarized_factors())}")


if __name__ == "__main__":
    run_benchmark()
