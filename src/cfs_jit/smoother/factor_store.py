# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Slot-based factor storage with a key → slot reverse index.

Factors are kept in a list of slots. Removing a factor frees its slot
instead of shifting the list, so slot numbers handed out earlier stay valid
(the smoother remembers the slots of the current filter summary). Freed
slots are reused first-in first-out before the list grows.

The reverse index maps every key to the set of occupied slots whose factor
touches it; it never holds an entry for a free slot or an empty set.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from cfs_jit.core.errors import PreconditionError
from cfs_jit.core.factor_graph import NonlinearFactorGraph
from cfs_jit.core.factors import NonlinearFactor
from cfs_jit.core.types import Key


class FactorStore:
    """Arena of factor slots with FIFO reuse of freed slots."""

    def __init__(self) -> None:
        self.slots: List[Optional[NonlinearFactor]] = []
        self.free_slots: Deque[int] = deque()
        self.index: Dict[Key, Set[int]] = {}

    def insert(self, factor: NonlinearFactor) -> int:
        if self.free_slots:
            slot = self.free_slots.popleft()
            self.slots[slot] = factor
        else:
            slot = len(self.slots)
            self.slots.append(factor)
        for key in factor.keys:
            self.index.setdefault(key, set()).add(slot)
        return slot

    def remove(self, slot: int) -> NonlinearFactor:
        """Free ``slot`` and detach it from the reverse index; returns the removed factor."""
        if not 0 <= slot < len(self.slots) or self.slots[slot] is None:
            raise PreconditionError(f"Slot {slot} does not hold a factor")
        factor = self.slots[slot]
        for key in factor.keys:
            slots = self.index.get(key)
            if slots is None:
                continue
            slots.discard(slot)
            if not slots:
                del self.index[key]
        self.slots[slot] = None
        self.free_slots.append(slot)
        return factor

    def slots_for(self, key: Key) -> Set[int]:
        return set(self.index.get(key, ()))

    def factors_touching_any(self, keys: Iterable[Key]) -> Set[int]:
        out: Set[int] = set()
        for key in keys:
            out |= self.index.get(key, set())
        return out

    def factors_touching_only(self, keys: Iterable[Key]) -> Set[int]:
        keys = set(keys)
        return {
            slot for slot in self.factors_touching_any(keys)
            if set(self.slots[slot].keys) <= keys
        }

    def __getitem__(self, slot: int) -> Optional[NonlinearFactor]:
        return self.slots[slot]

    def __len__(self) -> int:
        return len(self.slots) - len(self.free_slots)

    def __iter__(self) -> Iterator[NonlinearFactor]:
        return (f for f in self.slots if f is not None)

    def items(self) -> Iterator[Tuple[int, NonlinearFactor]]:
        return ((slot, f) for slot, f in enumerate(self.slots) if f is not None)

    def graph(self) -> NonlinearFactorGraph:
        """The occupied slots, in slot order, as a factor graph."""
        return NonlinearFactorGraph(list(self))
