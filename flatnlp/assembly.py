"""Polynomial assembly.

Builds the horizon-level equality system in four steps:

1. every primitive block's local system is moved onto the step-level
   canonical columns and stacked into one step system,
2. the step system is trimmed to the variables live at the initial,
   intermediate and final steps,
3. the intermediate system is replicated ``H - 2`` times and composed
   block-diagonally with the initial and final systems, one column block per
   time step,
4. the columns are folded onto the horizon indices (delay continuity and
   move-blocking).

With a Butcher tableau the minor-phase system is replicated once per
(interval, stage) and coupling rows tie the stages to the major grid:

- RK:  ``x_k - x_{k+1} + dt * sum_s b_s f_{k,s} = 0`` per integrator output,
- RKm: ``x_k + dt * sum_j a_sj f_{k,j} - X_{k,s} = 0`` per minor-live integrator output,
- FOH: ``(1 - c_s) u_k + c_s u_{k+1} - U_{k,s} = 0`` per first-order held input,
- ZOH: ``u_k - U_{k,s} = 0`` per zero-order held input or delay output.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp

from flatnlp.blocks import BOUNDARY_KINDS, BlockKind, BlockTable, Hold
from flatnlp.errors import Diagnostics
from flatnlp.horizon import Horizon
from flatnlp.integrators import ButcherTableau
from flatnlp.polynomial import PolySystem, combine, direct_sum, replicate, trim
from flatnlp.variables import StepVarTable


class LinearRows:
    """Builder for linear constraint rows, one monomial per term."""

    def __init__(self, n_vars: int):
        self.n_vars = n_vars
        self.rows: List[List[Tuple[int, float]]] = []

    def add(self, terms: Sequence[Tuple[int, float]]) -> None:
        self.rows.append([(int(col), float(coef)) for col, coef in terms if coef != 0])

    def __len__(self) -> int:
        return len(self.rows)

    def system(self) -> PolySystem:
        p_rows, p_cols, k_rows, k_cols, k_vals = [], [], [], [], []
        monomial = 0
        for r, terms in enumerate(self.rows):
            for col, coef in terms:
                p_rows.append(monomial)
                p_cols.append(col)
                k_rows.append(r)
                k_cols.append(monomial)
                k_vals.append(coef)
                monomial += 1
        P = sp.csr_matrix(
            (np.ones(monomial), (p_rows, p_cols)), shape=(monomial, self.n_vars)
        )
        K = sp.csr_matrix((k_vals, (k_rows, k_cols)), shape=(len(self.rows), monomial))
        return PolySystem(P, K)


@dataclass
class AssemblyResult:
    """Horizon-level equality system and the pieces it was built from.

    Attributes:
        system (PolySystem): Final equality system over the horizon indices.
        step (PolySystem): Step-level system over canonical indices.
        phase_systems (Dict[str, PolySystem]): Trimmed ``initial``,
            ``intermediate``, ``final`` and ``minor`` systems.
        row_counts (Dict[str, int]): Equality rows contributed by each part.
    """

    system: PolySystem
    step: PolySystem
    phase_systems: Dict[str, PolySystem] = field(default_factory=dict)
    row_counts: Dict[str, int] = field(default_factory=dict)


def combine_step_system(blocks: BlockTable, step_vars: StepVarTable) -> PolySystem:
    """Stack every primitive block's local system over canonical columns."""
    n = step_vars.n_canonical
    systems = []
    for block in blocks:
        if block.kind != BlockKind.PRIMITIVE or block.system.is_empty:
            continue
        columns = [step_vars[i].opt_var_idx for i in block.inputs + block.outputs]
        if len(columns) != block.system.n_vars:
            # Reported by the structural check during discovery
            continue
        systems.append(block.system.remap_columns(columns, n))
    return combine(systems, n)


def assemble(
    blocks: BlockTable,
    step_vars: StepVarTable,
    horizon: Horizon,
    tableau: Optional[ButcherTableau] = None,
    dt: float = 1.0,
    diagnostics: Optional[Diagnostics] = None,
) -> AssemblyResult:
    """Build the horizon-level equality system."""
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    H = horizon.horizon
    step = combine_step_system(blocks, step_vars)

    phase_systems: Dict[str, PolySystem] = {}
    if H == 1:
        phase_systems["initial"] = trim(step, horizon.step_mask(1))
        parts = [phase_systems["initial"]]
        row_counts = {"initial": phase_systems["initial"].n_constraints}
    else:
        phase_systems["initial"] = trim(step, horizon.step_mask(1))
        phase_systems["final"] = trim(step, horizon.step_mask(H))
        if H > 2:
            phase_systems["intermediate"] = trim(step, horizon.step_mask(2))
        else:
            phase_systems["intermediate"] = PolySystem.empty()
        parts = [
            phase_systems["initial"],
            replicate(phase_systems["intermediate"], H - 2),
            phase_systems["final"],
        ]
        row_counts = {
            "initial": phase_systems["initial"].n_constraints,
            "intermediate": (H - 2) * phase_systems["intermediate"].n_constraints,
            "final": phase_systems["final"].n_constraints,
        }

    major = direct_sum(parts).fold(horizon.major_labels, horizon.n_major)

    integrators = blocks.of_kind(BlockKind.INTEGRATOR)
    if integrators and horizon.n_stages == 0:
        for block in integrators:
            diagnostics.report(
                "structure",
                "Integrator has no effect without a multi-stage integration method "
                "and a horizon of at least 2",
                block.path,
            )

    if horizon.n_stages > 0:
        if tableau is None or tableau.n_stages != horizon.n_stages:
            raise ValueError("Horizon has minor stages but no matching Butcher tableau")
        phase_systems["minor"] = trim(step, horizon.minor_mask())
        minor = replicate(phase_systems["minor"], horizon.n_intervals * horizon.n_stages)
        row_counts["minor"] = minor.n_constraints
        equalities = direct_sum([major, minor])
        couplings = _coupling_rows(blocks, step_vars, horizon, tableau, dt, diagnostics)
        row_counts["coupling"] = len(couplings)
        system = combine([equalities, couplings.system()], horizon.n_vars)
    else:
        system = major

    return AssemblyResult(system=system, step=step, phase_systems=phase_systems, row_counts=row_counts)


def _coupling_rows(
    blocks: BlockTable,
    step_vars: StepVarTable,
    horizon: Horizon,
    tableau: ButcherTableau,
    dt: float,
    diagnostics: Diagnostics,
) -> LinearRows:
    rows = LinearRows(horizon.n_vars)
    S = tableau.n_stages
    K = horizon.n_intervals
    minor = set(horizon.minor_canonicals)

    def canon(i: int) -> int:
        return step_vars[i].opt_var_idx

    def complete(indices, block, what) -> bool:
        if min(indices) < 0:
            diagnostics.report("structure", f"Missing variable for {what} coupling", block.path)
            return False
        return True

    integrators = blocks.of_kind(BlockKind.INTEGRATOR)

    # Runge-Kutta increment across each major interval
    for block in integrators:
        for out_i, in_i in zip(block.outputs, block.inputs):
            cx, cf = canon(out_i), canon(in_i)
            for k in range(1, K + 1):
                x_k, x_next = horizon.index_of(cx, k), horizon.index_of(cx, k + 1)
                f = [horizon.minor_index(cf, k, s) for s in range(1, S + 1)]
                if not complete([x_k, x_next] + f, block, "Runge-Kutta"):
                    continue
                rows.add([(x_k, 1.0), (x_next, -1.0)] + [(f[s], dt * tableau.b[s]) for s in range(S)])

    # Stage values of integrator outputs used inside the interval
    for block in integrators:
        for out_i, in_i in zip(block.outputs, block.inputs):
            cx, cf = canon(out_i), canon(in_i)
            if cx not in minor:
                continue
            for k in range(1, K + 1):
                x_k = horizon.index_of(cx, k)
                f = [horizon.minor_index(cf, k, j) for j in range(1, S + 1)]
                for s in range(1, S + 1):
                    X = horizon.minor_index(cx, k, s)
                    if not complete([x_k, X] + f, block, "Runge-Kutta stage"):
                        continue
                    rows.add(
                        [(x_k, 1.0), (X, -1.0)]
                        + [(f[j], dt * tableau.A[s - 1, j]) for j in range(S)]
                    )

    # Holds anchoring minor stages of inputs, externals and delay outputs
    holds: Dict[int, Tuple[Hold, object]] = {}
    for block in blocks:
        if block.kind not in BOUNDARY_KINDS and block.kind != BlockKind.DELAY:
            continue
        for i in block.outputs:
            c = canon(i)
            if c in minor and c not in holds:
                holds[c] = (block.hold or Hold.ZERO_ORDER, block)

    for hold in (Hold.FIRST_ORDER, Hold.ZERO_ORDER):
        for c, (kind, block) in holds.items():
            if kind != hold:
                continue
            for k in range(1, K + 1):
                u_k, u_next = horizon.index_of(c, k), horizon.index_of(c, k + 1)
                for s in range(1, S + 1):
                    U = horizon.minor_index(c, k, s)
                    if hold == Hold.FIRST_ORDER:
                        if not complete([u_k, u_next, U], block, "first-order hold"):
                            continue
                        c_s = tableau.c[s - 1]
                        rows.add([(u_k, 1.0 - c_s), (u_next, c_s), (U, -1.0)])
                    else:
                        if not complete([u_k, U], block, "zero-order hold"):
                            continue
                        rows.add([(u_k, 1.0), (U, -1.0)])
    return rows
