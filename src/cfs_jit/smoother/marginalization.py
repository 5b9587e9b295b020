# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Marginalizing variables out of factors.

marginalize_keys_from_factor
    Removes the keys of one nonlinear factor that are not in
    ``keys_to_keep``: the factor is linearized, the discarded keys are
    eliminated, and the residual on the kept keys is wrapped as a
    re-linearizable factor anchored at the same linearization point.

summarize_cached_factors
    Reduces a set of linear factors to factors over the root keys only, by
    eliminating any other key they still mention.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Mapping, Optional, Sequence

from cfs_jit.core.factors import NonlinearFactor
from cfs_jit.core.linearized import linearized_factor
from cfs_jit.core.types import Key, Values
from cfs_jit.linear.elimination import EliminateFn, GaussianFactorGraph, eliminate_qr
from cfs_jit.linear.factors import GaussianFactor

logger = logging.getLogger("cfs_jit.smoother")


def marginalize_keys_from_factor(
    factor: NonlinearFactor,
    keys_to_keep: Iterable[Key],
    linearization_point: Values,
) -> Optional[NonlinearFactor]:
    """
    The discarded keys are always eliminated with QR, so the marginal is a
    Jacobian factor whatever factorization the optimizer uses.

    Returns:
        ``factor`` itself when nothing is discarded, ``None`` when every key
        is discarded (or elimination leaves nothing on the kept keys),
        otherwise a linearized factor over the kept keys.
    """
    keep = set(keys_to_keep)
    discard = [k for k in factor.keys if k not in keep]
    if not discard:
        return factor
    if len(discard) == len(factor.keys):
        logger.debug("Dropping %s: all of its keys are marginalized", factor)
        return None

    kept = [k for k in factor.keys if k in keep]
    position = {k: i for i, k in enumerate(discard + kept)}
    linear = GaussianFactorGraph([factor.linearize(linearization_point)])
    _, remaining = linear.eliminate_partial(discard, eliminate_qr, position)
    if len(remaining) == 0:
        logger.debug("Marginalizing %s left no factor on %s", factor, kept)
        return None

    marginal = linearized_factor(remaining[0], linearization_point)
    logger.debug("Marginalized %s onto %s", factor, marginal)
    return marginal


def summarize_cached_factors(
    cached: Sequence[GaussianFactor],
    root_keys: Iterable[Key],
    position: Mapping[Key, int],
    eliminate_fn: EliminateFn = eliminate_qr,
) -> List[GaussianFactor]:
    """
    Eliminate every non-root key mentioned by ``cached``, in ``position``
    order, and return the linear factors left over the root keys.
    """
    roots = set(root_keys)
    graph = GaussianFactorGraph(cached)
    extra = sorted((k for k in graph.keys() if k not in roots), key=position.__getitem__)
    if not extra:
        return list(graph)
    logger.debug("Eliminating non-root keys %s from the cached factors", extra)
    _, remaining = graph.eliminate_partial(extra, eliminate_fn, position)
    return list(remaining)
