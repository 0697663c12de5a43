"""Step variables: one scalar signal valid for a single generic time step."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

import numpy as np


class Phase(Enum):
    INITIAL = "initial"
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    MINOR = "minor"


MAJOR_PHASES = (Phase.INITIAL, Phase.INTERMEDIATE, Phase.FINAL)


def _unbounded_lower() -> Dict[Phase, float]:
    return {p: -np.inf for p in MAJOR_PHASES}


def _unbounded_upper() -> Dict[Phase, float]:
    return {p: np.inf for p in MAJOR_PHASES}


def _zero_cost() -> Dict[Phase, float]:
    return {p: 0.0 for p in MAJOR_PHASES}


@dataclass(eq=False)
class StepVar:
    """One scalar wire.

    Attributes:
        index (int): Position in the step variable table.
        block (int): Index of the owning block.
        port: Diagram outport carrying the signal.
        sub_index (int): 0-based position within a vector port.
        opt_var_idx (int): Canonical index, reassigned by canonicalization.
        alias_of (int): Step variable this one is the same signal as, if any.
        lower, upper (Dict[Phase, float]): Bounds per major phase.
        cost (Dict[Phase, float]): Cost weight per major phase, summed over the
            variable's canonical class once canonicalized.
        raw_cost (Dict[Phase, float]): Cost weight attached to this wire alone.
        phases (Set[Phase]): Phases the variable is live in.
    """

    index: int
    block: int
    port: object
    sub_index: int
    opt_var_idx: int
    alias_of: Optional[int] = None
    lower: Dict[Phase, float] = field(default_factory=_unbounded_lower)
    upper: Dict[Phase, float] = field(default_factory=_unbounded_upper)
    cost: Dict[Phase, float] = field(default_factory=_zero_cost)
    raw_cost: Dict[Phase, float] = field(default_factory=_zero_cost)
    state: bool = False
    input: bool = False
    external: bool = False
    phases: Set[Phase] = field(default_factory=set)

    @property
    def port_number(self) -> int:
        return self.port.number

    def tighten(self, phase: Phase, lower: float, upper: float) -> None:
        self.lower[phase] = max(self.lower[phase], lower)
        self.upper[phase] = min(self.upper[phase], upper)

    def add_cost(self, phase: Phase, weight: float) -> None:
        self.raw_cost[phase] += weight
        self.cost[phase] += weight

    def infeasible_phases(self) -> List[Phase]:
        return [p for p in MAJOR_PHASES if self.lower[p] > self.upper[p]]


class StepVarTable:
    """Growable table of step variables, registered one outport at a time."""

    def __init__(self):
        self._vars: List[StepVar] = []
        self._first: Dict[int, int] = {}

    def add_port(self, block: int, port, width: int) -> int:
        """Register ``width`` scalars for ``port`` and return the first index."""
        key = id(port)
        if key in self._first:
            return self._first[key]
        first = len(self._vars)
        for sub in range(width):
            index = first + sub
            self._vars.append(
                StepVar(index=index, block=block, port=port, sub_index=sub, opt_var_idx=index)
            )
        self._first[key] = first
        return first

    def first_index(self, port) -> Optional[int]:
        return self._first.get(id(port))

    def port_indices(self, port) -> List[int]:
        first = self._first.get(id(port))
        if first is None:
            return []
        indices = []
        i = first
        while i < len(self._vars) and self._vars[i].port is port:
            indices.append(i)
            i += 1
        return indices

    def classes(self) -> Dict[int, List[int]]:
        """Step variable indices grouped by canonical index, in table order."""
        groups: Dict[int, List[int]] = {}
        for var in self._vars:
            groups.setdefault(var.opt_var_idx, []).append(var.index)
        return groups

    @property
    def n_canonical(self) -> int:
        if not self._vars:
            return 0
        return max(v.opt_var_idx for v in self._vars) + 1

    def infeasible(self) -> List[int]:
        """Indices of variables whose bounds form an empty interval in some phase."""
        return [v.index for v in self._vars if v.infeasible_phases()]

    def __getitem__(self, index: int) -> StepVar:
        return self._vars[index]

    def __len__(self) -> int:
        return len(self._vars)

    def __iter__(self) -> Iterator[StepVar]:
        return iter(self._vars)
