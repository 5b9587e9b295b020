# Copyright (c) 2025.
# This file is part of CFS-JIT, released under the MIT License.
"""
Elimination tree with cached separator factors.

Eliminating a whole linear factor graph in a fixed ordering yields a tree:
the node for variable ``j`` holds ``P(j | separator)`` and the residual
factor ``f(separator)`` that elimination passed upward, and its parent is
the node of the earliest-ordered separator variable. Nodes whose separator
is empty are roots.

The residual is kept on the node as its *cached factor*: it summarizes
everything below the node on the separator variables. The smoother reads
the cached factors of the sub-trees hanging off the root variables to build
its outgoing summary, so only the boundary-adjacent part of the tree needs
re-processing.

Storage is an arena: cliques live in ``BayesTree.cliques`` and refer to
their children by integer handle. Only downward (parent → child) links are
stored.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from cfs_jit.core.types import Key, VectorValues
from cfs_jit.inference.ordering import positions
from cfs_jit.linear.conditional import GaussianConditional
from cfs_jit.linear.elimination import EliminateFn, GaussianFactorGraph, eliminate_qr
from cfs_jit.linear.factors import GaussianFactor


@dataclass
class Clique:
    """One node of the elimination tree."""
    frontal: Key
    conditional: GaussianConditional
    cached_factor: Optional[GaussianFactor]
    separator: Tuple[Key, ...]
    children: List[int] = field(default_factory=list)


class BayesTree:
    """Arena of :class:`Clique` records produced by :meth:`eliminate`."""

    def __init__(self) -> None:
        self.cliques: List[Clique] = []
        self.roots: List[int] = []
        self.nodes: Dict[Key, int] = {}

    @classmethod
    def eliminate(
        cls,
        graph: GaussianFactorGraph,
        ordering: Sequence[Key],
        eliminate_fn: EliminateFn = eliminate_qr,
    ) -> "BayesTree":
        """
        Eliminate every variable of ``graph`` in ``ordering``.

        Each factor is assigned to its earliest-ordered key. Eliminating a
        key consumes its assigned factors plus the cached factors of its
        children; the new residual is assigned to the earliest-ordered
        separator key, whose node becomes the parent.
        """
        position = positions(ordering)
        tree = cls()

        pending: Dict[Key, List[GaussianFactor]] = defaultdict(list)
        waiting_children: Dict[Key, List[int]] = defaultdict(list)
        for factor in graph:
            first = min(factor.keys, key=position.__getitem__)
            pending[first].append(factor)

        for key in ordering:
            factors = pending.pop(key, [])
            conditional, residual = eliminate_fn(factors, key, position)
            separator = tuple(sorted(conditional.parents(), key=position.__getitem__))

            handle = len(tree.cliques)
            tree.cliques.append(Clique(
                frontal=key,
                conditional=conditional,
                cached_factor=residual,
                separator=separator,
                children=waiting_children.pop(key, []),
            ))
            tree.nodes[key] = handle

            if separator:
                parent_key = separator[0]
                waiting_children[parent_key].append(handle)
                if residual is not None:
                    pending[parent_key].append(residual)
            else:
                tree.roots.append(handle)
        return tree

    def __len__(self) -> int:
        return len(self.cliques)

    def __getitem__(self, handle: int) -> Clique:
        return self.cliques[handle]

    def clique_for(self, key: Key) -> Optional[int]:
        return self.nodes.get(key)

    def optimize(self) -> VectorValues:
        """Top-down back-substitution from the roots."""
        solution: VectorValues = {}
        stack = list(reversed(self.roots))
        while stack:
            clique = self.cliques[stack.pop()]
            solution[clique.frontal] = clique.conditional.solve(solution)
            stack.extend(reversed(clique.children))
        return solution

    def format_symbolic(self, indent: str = "  ") -> str:
        """``P( frontal | parents )`` per clique, children indented below their parent."""
        lines: List[str] = []
        stack = [(root, indent) for root in reversed(self.roots)]
        while stack:
            handle, prefix = stack.pop()
            clique = self.cliques[handle]
            line = f"{prefix}P( {clique.frontal!s} "
            if clique.separator:
                line += "| " + " ".join(str(k) for k in clique.separator) + " "
            lines.append(line + ")")
            stack.extend((child, prefix + indent) for child in reversed(clique.children))
        return "\n".join(lines)
