# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Core typed data structures for CFS-JIT.

Key
    Opaque identifier of an unknown quantity (pose, landmark, bias, ...).
    Any hashable object works; keys carry no ordering beyond what an
    elimination ordering imposes on them.

VectorValues
    Mapping ``Key -> jnp.ndarray`` of tangent-space increments. Solutions of
    linear systems and back-substitution results use this plain form.

Values
    The nonlinear estimate: ``Key -> jnp.ndarray`` plus a variable type per
    key. The type selects the manifold (see ``slam.manifold``) that
    ``retract`` and ``local_coordinates`` operate on.

Notes
-----
``Values`` is mutable: the smoother owns one instance and edits it in
place. Arrays themselves are JAX arrays and therefore immutable, so
handing out an array never exposes internal state.
"""

from __future__ import annotations

from typing import Any, Dict, Hashable, Iterable, Iterator, Mapping, Optional, Tuple

import jax.numpy as jnp

from cfs_jit.core.errors import PreconditionError
from cfs_jit.slam.manifold import get_manifold_for_var_type, local_coordinates, retract

Key = Hashable
VectorValues = Dict[Key, jnp.ndarray]


class Values:
    """Current estimate of a set of variables."""

    def __init__(
        self,
        entries: Optional[Mapping[Key, Any]] = None,
        var_type: str = "vector",
    ) -> None:
        self._values: Dict[Key, jnp.ndarray] = {}
        self._types: Dict[Key, str] = {}
        if entries is not None:
            for key, value in entries.items():
                self.insert(key, value, var_type)

    # --- Mapping protocol ---

    def __getitem__(self, key: Key) -> jnp.ndarray:
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(f"No value for key {key!r}") from None

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._values)

    def keys(self) -> Tuple[Key, ...]:
        return tuple(self._values)

    def items(self) -> Iterable[Tuple[Key, jnp.ndarray]]:
        return self._values.items()

    def var_type(self, key: Key) -> str:
        return self._types[key]

    def dim(self, key: Key) -> int:
        return int(self[key].shape[0])

    # --- Editing ---

    def insert(self, key: Key, value: Any, var_type: str = "vector") -> None:
        if key in self._values:
            raise PreconditionError(f"Values already contain key {key!r}")
        self._values[key] = jnp.atleast_1d(jnp.asarray(value, dtype=float))
        self._types[key] = var_type

    def check_disjoint(self, other: "Values") -> None:
        """Raise PreconditionError if ``other`` shares any key with ``self``."""
        clashes = [key for key in other if key in self._values]
        if clashes:
            raise PreconditionError(f"Values already contain keys {clashes!r}")

    def insert_values(self, other: "Values") -> None:
        """Insert every entry of ``other``; duplicates raise before anything changes."""
        self.check_disjoint(other)
        for key, value in other.items():
            self._values[key] = value
            self._types[key] = other.var_type(key)

    def update(self, key: Key, value: Any) -> None:
        if key not in self._values:
            raise PreconditionError(f"Cannot update missing key {key!r}")
        self._values[key] = jnp.atleast_1d(jnp.asarray(value, dtype=float))

    def update_values(self, other: "Values") -> None:
        for key, value in other.items():
            if key not in self._values:
                raise PreconditionError(f"Cannot update missing key {key!r}")
            self._values[key] = value

    def insert_or_assign(self, other: "Values") -> None:
        for key, value in other.items():
            self._values[key] = value
            self._types[key] = other.var_type(key)

    def erase(self, key: Key) -> None:
        if key not in self._values:
            raise PreconditionError(f"Cannot erase missing key {key!r}")
        del self._values[key]
        del self._types[key]

    # --- Derived collections ---

    def copy(self) -> "Values":
        out = Values()
        out._values = dict(self._values)
        out._types = dict(self._types)
        return out

    def subset(self, keys: Iterable[Key]) -> "Values":
        out = Values()
        for key in keys:
            out._values[key] = self[key]
            out._types[key] = self._types[key]
        return out

    # --- Manifold operations ---

    def retract(self, delta: Mapping[Key, jnp.ndarray]) -> "Values":
        """Return a new estimate with ``delta`` applied; keys absent from ``delta`` are kept."""
        out = self.copy()
        for key, d in delta.items():
            manifold = get_manifold_for_var_type(self._types[key])
            out._values[key] = retract(self[key], d, manifold)
        return out

    def local_coordinates(self, other: "Values") -> VectorValues:
        """Increments ``δ`` with ``self.retract(δ) == other`` for every key of ``self``."""
        delta: VectorValues = {}
        for key, value in self._values.items():
            manifold = get_manifold_for_var_type(self._types[key])
            delta[key] = local_coordinates(value, other[key], manifold)
        return delta

    # --- Testable ---

    def equals(self, other: "Values", tol: float = 1e-9) -> bool:
        if set(self._values) != set(other._values):
            return False
        for key, value in self._values.items():
            if self._types[key] != other._types[key]:
                return False
            if value.shape != other[key].shape:
                return False
            if not bool(jnp.all(jnp.abs(value - other[key]) <= tol)):
                return False
        return True

    def __str__(self) -> str:
        lines = [f"Values with {len(self)} values:"]
        for key, value in self._values.items():
            lines.append(f"  {key!s} ({self._types[key]}): {value}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Values(keys={list(self._values)!r})"
