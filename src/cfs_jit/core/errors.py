# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Exception taxonomy for CFS-JIT.

Three kinds of failure are distinguished:

PreconditionError
    The caller handed in something malformed: a conditional solved without
    all of its parent values, mismatched matrix shapes, a duplicate key, a
    factor that cannot be converted to a restricted form.

IndeterminantLinearSystemError
    Elimination hit a rank-deficient frontal block. This is fatal for the
    current smoother update; nothing inside the library retries.

StructuralMismatchError
    An internal invariant broke, e.g. a cached linear factor that is
    neither in Jacobian nor in information (Hessian) form.
"""

from __future__ import annotations

from typing import Hashable, Optional


class CFSError(Exception):
    """Base class for every error raised by CFS-JIT."""


class PreconditionError(CFSError, ValueError):
    """Input violates a documented precondition."""


class IndeterminantLinearSystemError(CFSError, ArithmeticError):
    """A linear system could not be eliminated because it is singular."""

    def __init__(self, key: Optional[Hashable] = None, message: Optional[str] = None) -> None:
        self.key = key
        if message is None:
            message = (
                f"Indeterminant linear system detected while eliminating key {key!r}; "
                "the system is underconstrained or the frontal block is rank deficient"
            )
        super().__init__(message)


class StructuralMismatchError(CFSError, TypeError):
    """An internal structural invariant does not hold."""
