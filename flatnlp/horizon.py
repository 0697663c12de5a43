"""Horizon expansion.

Materializes one horizon entry per (canonical variable, time step, minor
stage). Major entries are ordered by time step, then canonical index, so the
entries of step ``t`` line up with the columns of the step system trimmed to
the variables live at ``t``. Entries are then folded:

1. a delay's output at step ``k`` is unified with its input at ``k - 1``,
2. input/external values are held constant over move-blocking windows,
3. the classes are renumbered densely by their smallest entry.

Merged entries take the tightest bounds and summed costs. Minor entries are
appended after the folded major entries, one block of minor-live variables
per (major interval, stage).
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

import numpy as np

from flatnlp.blocks import BlockKind, BlockTable
from flatnlp.canonicalize import UnionFind
from flatnlp.errors import Diagnostics
from flatnlp.variables import Phase, StepVarTable


@dataclass
class HorizonVar:
    """One (canonical variable, time step, minor stage) instance.

    Attributes:
        canonical (int): Step-level canonical index.
        time_step (int): Major step, 1..H. For minor entries, the interval start.
        minor_stage (int): 0 for major entries, 1..S for integration stages.
        lower, upper, cost (float): Metadata inherited from the step's phase.
        index (int): Horizon-scoped index after folding.
    """

    canonical: int
    time_step: int
    minor_stage: int
    lower: float
    upper: float
    cost: float
    index: int = -1


def step_phases(t: int, horizon: int) -> FrozenSet[Phase]:
    """Major phases a time step belongs to."""
    if horizon == 1:
        return frozenset({Phase.INITIAL, Phase.FINAL})
    if t == 1:
        return frozenset({Phase.INITIAL})
    if t == horizon:
        return frozenset({Phase.FINAL})
    return frozenset({Phase.INTERMEDIATE})


def move_blocking_key(t: int, period: float, offset: int) -> int:
    """Window of step ``t``; steps sharing a window share one value."""
    if np.isinf(period):
        return 0
    return (t - 1 - offset % period) // period


@dataclass
class Horizon:
    horizon: int
    n_stages: int
    live: List[FrozenSet[Phase]]
    entries: List[HorizonVar]
    major_labels: np.ndarray
    n_major: int
    minor_canonicals: List[int]
    lower: np.ndarray
    upper: np.ndarray
    cost: np.ndarray
    input_matrix: Dict[int, np.ndarray] = field(default_factory=dict)
    output_matrix: Dict[int, np.ndarray] = field(default_factory=dict)
    _major_entry: Dict[Tuple[int, int], int] = field(default_factory=dict, repr=False)
    _minor_rank: Dict[int, int] = field(default_factory=dict, repr=False)

    @property
    def n_canonical(self) -> int:
        return len(self.live)

    @property
    def n_minor(self) -> int:
        return len(self.minor_canonicals)

    @property
    def n_vars(self) -> int:
        return self.n_major + self.n_intervals * self.n_stages * self.n_minor

    @property
    def n_intervals(self) -> int:
        return self.horizon - 1 if self.n_stages > 0 else 0

    def step_mask(self, t: int) -> np.ndarray:
        """Canonical variables live at major step ``t``."""
        phases = step_phases(t, self.horizon)
        return np.array([bool(p & phases) for p in self.live], dtype=bool)

    def minor_mask(self) -> np.ndarray:
        return np.array([Phase.MINOR in p for p in self.live], dtype=bool)

    def entry_of(self, canonical: int, t: int) -> Optional[int]:
        """Pre-fold major entry, or ``None`` if the variable is not live at ``t``."""
        return self._major_entry.get((t, canonical))

    def index_of(self, canonical: int, t: int) -> int:
        """Horizon index of a variable at major step ``t``, -1 if not live."""
        entry = self._major_entry.get((t, canonical))
        return -1 if entry is None else int(self.major_labels[entry])

    def minor_index(self, canonical: int, k: int, s: int) -> int:
        """Horizon index at stage ``s`` (1-based) of interval ``k``, -1 if absent."""
        rank = self._minor_rank.get(canonical)
        if rank is None or not (1 <= k <= self.n_intervals) or not (1 <= s <= self.n_stages):
            return -1
        return self.n_major + ((k - 1) * self.n_stages + (s - 1)) * self.n_minor + rank

    def entries_at(self, index: int) -> List[HorizonVar]:
        return [e for e in self.entries if e.index == index]


def _phase_metadata(var, phases: FrozenSet[Phase]) -> Tuple[float, float, float]:
    lower = max(var.lower[p] for p in phases)
    upper = min(var.upper[p] for p in phases)
    cost = max(var.cost[p] for p in phases)
    return lower, upper, cost


def expand_horizon(
    blocks: BlockTable,
    step_vars: StepVarTable,
    live: Sequence[FrozenSet[Phase]],
    horizon: int,
    n_stages: int = 0,
    diagnostics: Optional[Diagnostics] = None,
) -> Horizon:
    """Replicate the phase-tagged step variables over ``horizon`` steps."""
    if horizon < 1:
        raise ValueError(f"horizon must be at least 1, got {horizon}")
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    live = [frozenset(p) for p in live]
    n_canonical = len(live)

    representative: Dict[int, object] = {}
    for var in step_vars:
        representative.setdefault(var.opt_var_idx, var)

    def canon(i: int) -> int:
        return step_vars[i].opt_var_idx

    # Major entries
    entries: List[HorizonVar] = []
    major_entry: Dict[Tuple[int, int], int] = {}
    for t in range(1, horizon + 1):
        phases = step_phases(t, horizon)
        for c in range(n_canonical):
            if not live[c] & phases:
                continue
            lower, upper, cost = _phase_metadata(representative[c], phases)
            major_entry[(t, c)] = len(entries)
            entries.append(HorizonVar(c, t, 0, lower, upper, cost))
    n_entries = len(entries)

    uf = UnionFind(n_entries)

    # Delay continuity
    for block in blocks.of_kind(BlockKind.DELAY):
        for out_i, in_i in zip(block.outputs, block.inputs):
            c_out, c_in = canon(out_i), canon(in_i)
            for t in range(2, horizon + 1):
                e_out = major_entry.get((t, c_out))
                if e_out is None:
                    continue
                e_in = major_entry.get((t - 1, c_in))
                if e_in is None:
                    diagnostics.report(
                        "structure",
                        f"Delay output at step {t} has no input at step {t - 1}",
                        block.path,
                    )
                    continue
                uf.union(e_out, e_in)

    # Move-blocking
    for block in blocks:
        if not block.move_blocked:
            continue
        for i in block.outputs:
            c = canon(i)
            first_in_window: Dict[int, int] = {}
            for t in range(1, horizon + 1):
                e = major_entry.get((t, c))
                if e is None:
                    continue
                key = move_blocking_key(t, block.period, block.offset)
                if key in first_in_window:
                    uf.union(first_in_window[key], e)
                else:
                    first_in_window[key] = e

    labels = np.asarray(uf.labels(), dtype=int)
    n_major = int(labels.max()) + 1 if n_entries else 0

    lower = np.full(n_major, -np.inf)
    upper = np.full(n_major, np.inf)
    cost = np.zeros(n_major)
    sizes = np.zeros(n_major, dtype=int)
    individually_infeasible = np.zeros(n_major, dtype=bool)
    for entry, label in zip(entries, labels):
        entry.index = int(label)
        lower[label] = max(lower[label], entry.lower)
        upper[label] = min(upper[label], entry.upper)
        cost[label] += entry.cost
        sizes[label] += 1
        individually_infeasible[label] |= entry.lower > entry.upper
    for label in np.flatnonzero((lower > upper) & (sizes > 1) & ~individually_infeasible):
        diagnostics.report(
            "infeasible-bound",
            f"Horizon variable {label} has lower bound {lower[label]} above upper "
            f"bound {upper[label]} after merging across steps",
        )

    # Minor entries
    minor_canonicals: List[int] = []
    minor_rank: Dict[int, int] = {}
    if n_stages > 0 and horizon >= 2:
        minor_canonicals = [c for c in range(n_canonical) if Phase.MINOR in live[c]]
        minor_rank = {c: r for r, c in enumerate(minor_canonicals)}
        n_minor = len(minor_canonicals)
        for k in range(1, horizon):
            for s in range(1, n_stages + 1):
                base = n_major + ((k - 1) * n_stages + (s - 1)) * n_minor
                for r, c in enumerate(minor_canonicals):
                    entries.append(HorizonVar(c, k, s, -np.inf, np.inf, 0.0, base + r))
        n_total = n_major + (horizon - 1) * n_stages * n_minor
        lower = np.concatenate([lower, np.full(n_total - n_major, -np.inf)])
        upper = np.concatenate([upper, np.full(n_total - n_major, np.inf)])
        cost = np.concatenate([cost, np.zeros(n_total - n_major)])
    else:
        n_stages = 0

    result = Horizon(
        horizon=horizon,
        n_stages=n_stages,
        live=live,
        entries=entries,
        major_labels=labels,
        n_major=n_major,
        minor_canonicals=minor_canonicals,
        lower=lower,
        upper=upper,
        cost=cost,
        _major_entry=major_entry,
        _minor_rank=minor_rank,
    )

    # Per-block index matrices over the horizon
    for block in blocks:
        result.input_matrix[block.index] = _index_matrix(result, [canon(i) for i in block.inputs])
        result.output_matrix[block.index] = _index_matrix(result, [canon(i) for i in block.outputs])
    return result


def _index_matrix(horizon: Horizon, canonicals: Sequence[int]) -> np.ndarray:
    matrix = np.full((len(canonicals), horizon.horizon), -1, dtype=int)
    for row, c in enumerate(canonicals):
        for t in range(1, horizon.horizon + 1):
            matrix[row, t - 1] = horizon.index_of(c, t)
    return matrix
