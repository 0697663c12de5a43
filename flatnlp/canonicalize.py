"""Variable canonicalization.

Alias edges recorded by discovery form a functional graph (each step
variable points to at most one "same signal as" target). Its weakly connected
components are the canonical variables. They are found with a union-find
using path compression and union by rank. An edge joining two variables that
are already in the same set closes a cycle. The cycle is collapsed into its
set and reported.

Canonical indices are dense and order-preserving: classes are numbered by
their smallest member.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np

from flatnlp.errors import Diagnostics
from flatnlp.variables import MAJOR_PHASES, StepVarTable


class UnionFind:
    def __init__(self, n: int = 0):
        self.parent = list(range(n))
        self.rank = [0] * n

    def __len__(self) -> int:
        return len(self.parent)

    def add(self) -> int:
        self.parent.append(len(self.parent))
        self.rank.append(0)
        return len(self.parent) - 1

    def find(self, x: int) -> int:
        root = x
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[x] != root:
            self.parent[x], x = root, self.parent[x]
        return root

    def union(self, a: int, b: int) -> bool:
        """Merge the sets of ``a`` and ``b``; False if they were already one set."""
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return False
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1
        return True

    def labels(self) -> List[int]:
        """Dense label per element, classes numbered by their smallest member."""
        dense: Dict[int, int] = {}
        out = []
        for x in range(len(self.parent)):
            out.append(dense.setdefault(self.find(x), len(dense)))
        return out


def resolve_aliases(
    pointers: Sequence[Optional[int]],
    diagnostics: Optional[Diagnostics] = None,
    names: Optional[Sequence[str]] = None,
) -> List[int]:
    """Canonical index of every node of an alias graph.

    Args:
        pointers: ``pointers[i]`` is the node ``i`` aliases, or ``None``.
        diagnostics: Receives an ``alias-cycle`` entry per cycle found.
        names: Optional node names used in diagnostics.

    Returns:
        List[int]: Dense canonical index per node.
    """
    uf = UnionFind(len(pointers))
    for i, target in enumerate(pointers):
        if target is None:
            continue
        if not uf.union(i, target) and diagnostics is not None:
            diagnostics.report(
                "alias-cycle",
                f"Alias cycle through variable {i} collapsed to one variable",
                None if names is None else names[i],
            )
    return uf.labels()


def canonicalize(step_vars: StepVarTable, diagnostics: Optional[Diagnostics] = None) -> int:
    """Assign ``opt_var_idx`` to every step variable and merge class metadata.

    Bounds take the tightest combination (max of lowers, min of uppers), the
    wires' own costs are summed and the ``state``/``input``/``external`` flags are ORed. A class
    whose merged bounds are empty keeps them and gets an ``infeasible-bound``
    diagnostic.

    Returns:
        int: Number of canonical variables.
    """
    labels = resolve_aliases(
        [v.alias_of for v in step_vars],
        diagnostics,
        [_owner_path(v) for v in step_vars],
    )
    for var, label in zip(step_vars, labels):
        var.opt_var_idx = label

    for canonical, members in step_vars.classes().items():
        group = [step_vars[i] for i in members]
        lower = {p: max(v.lower[p] for v in group) for p in MAJOR_PHASES}
        upper = {p: min(v.upper[p] for v in group) for p in MAJOR_PHASES}
        cost = {p: float(np.sum([v.raw_cost[p] for v in group])) for p in MAJOR_PHASES}
        state = any(v.state for v in group)
        is_input = any(v.input for v in group)
        external = any(v.external for v in group)
        for v in group:
            v.lower = dict(lower)
            v.upper = dict(upper)
            v.cost = dict(cost)
            v.state = state
            v.input = is_input
            v.external = external

        empty = [p for p in MAJOR_PHASES if lower[p] > upper[p]]
        if empty and diagnostics is not None:
            diagnostics.report(
                "infeasible-bound",
                f"Variable {canonical} has lower bound above upper bound at the "
                + ", ".join(f"{p.value} ({lower[p]} > {upper[p]})" for p in empty)
                + " step",
                _owner_path(group[0]),
            )
    return len(set(labels))


def _owner_path(var) -> str:
    return f"{var.port.block.path}:{var.port.number}[{var.sub_index}]"
