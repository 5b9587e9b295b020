# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
CFS-JIT: concurrent batch smoothing over JAX factor graphs.

Importing the package enables 64-bit JAX arrays; elimination rank checks
and the Levenberg–Marquardt convergence tolerances assume double precision.
"""

import jax

jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"
