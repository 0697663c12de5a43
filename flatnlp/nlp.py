"""NLP assembly: cost, inequality and equality blocks plus variable metadata."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import numpy as np
import scipy.sparse as sp

from flatnlp.assembly import AssemblyResult
from flatnlp.blocks import BlockTable
from flatnlp.errors import Diagnostics
from flatnlp.horizon import Horizon
from flatnlp.polynomial import PolySystem, block_diag, stack_rows
from flatnlp.variables import StepVarTable


@dataclass(eq=False)
class ModelSpec:
    """Flattened NLP.

    The combined system stacks the cost, inequality and equality blocks:
    ``A`` rows are monomials over the variables and ``C`` rows are
    constraints over those monomials. The ``*_start_*``/``*_end_*`` markers
    give each block's 0-based, end-exclusive range in ``A`` rows and ``C``
    rows. Inequality rows read ``C @ monomials(A, x) <= 0``, equality rows
    ``== 0`` and the cost is the single cost row.

    The separated blocks are also published as ``AAs``/``Cs`` (equality),
    ``ineq_AAs``/``ineq_Cs`` and ``cost_A``/``cost_C``.
    """

    name: str
    horizon: int
    integ_method: str
    dt: float
    cost: PolySystem
    ineq: PolySystem
    eq: PolySystem
    combined: PolySystem
    lower_bounds: np.ndarray
    upper_bounds: np.ndarray
    costs: np.ndarray
    in_vars: np.ndarray
    ex_vars: np.ndarray
    all_state_vars: np.ndarray
    all_names: List[str]
    cost_start_A: int = 0
    cost_end_A: int = 0
    ineq_start_A: int = 0
    ineq_end_A: int = 0
    eq_start_A: int = 0
    eq_end_A: int = 0
    cost_start_C: int = 0
    cost_end_C: int = 0
    ineq_start_C: int = 0
    ineq_end_C: int = 0
    eq_start_C: int = 0
    eq_end_C: int = 0
    diagnostics: Diagnostics = field(default_factory=Diagnostics)
    blocks: Optional[BlockTable] = field(default=None, repr=False)
    step_vars: Optional[StepVarTable] = field(default=None, repr=False)
    expansion: Optional[Horizon] = field(default=None, repr=False)
    assembly: Optional[AssemblyResult] = field(default=None, repr=False)
    _name_index: Dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        for index, name in enumerate(self.all_names):
            for part in name.split(";"):
                self._name_index.setdefault(part, index)

    @property
    def n_vars(self) -> int:
        return self.combined.n_vars

    @property
    def AAs(self) -> sp.csr_matrix:
        return self.eq.P

    @property
    def Cs(self) -> sp.csr_matrix:
        return self.eq.K

    @property
    def ineq_AAs(self) -> sp.csr_matrix:
        return self.ineq.P

    @property
    def ineq_Cs(self) -> sp.csr_matrix:
        return self.ineq.K

    @property
    def cost_A(self) -> sp.csr_matrix:
        return self.cost.P

    @property
    def cost_C(self) -> sp.csr_matrix:
        return self.cost.K

    @property
    def A(self) -> sp.csr_matrix:
        return self.combined.P

    @property
    def C(self) -> sp.csr_matrix:
        return self.combined.K

    def infeasible_bounds(self) -> np.ndarray:
        """Variables whose merged bounds form an empty interval."""
        return np.flatnonzero(self.lower_bounds > self.upper_bounds)

    def index_of(self, name: str) -> int:
        """Variable index of a name or of any one part of a multi-part name."""
        if name not in self._name_index:
            raise KeyError(f"No variable named {name!r}")
        return self._name_index[name]

    def vector_from_values(self, values: Mapping[str, float], fill: float = np.nan) -> np.ndarray:
        """Solver vector from a ``{name: value}`` mapping."""
        x = np.full(self.n_vars, fill, dtype=float)
        for name, value in values.items():
            x[self.index_of(name)] = value
        return x


def variable_name(var, time_step: int, minor_stage: int) -> str:
    return (
        f"{var.port.block.path}.out{var.port.number}.t{time_step}"
        f".idx{var.sub_index + 1}.minor{minor_stage}"
    )


def variable_names(step_vars: StepVarTable, horizon: Horizon) -> List[str]:
    classes = step_vars.classes()
    parts: List[List[str]] = [[] for _ in range(horizon.n_vars)]
    for entry in horizon.entries:
        for i in classes.get(entry.canonical, []):
            name = variable_name(step_vars[i], entry.time_step, entry.minor_stage)
            if name not in parts[entry.index]:
                parts[entry.index].append(name)
    return [";".join(p) for p in parts]


def cost_block(costs: np.ndarray) -> PolySystem:
    """One cost row with one linear monomial per variable of nonzero cost."""
    n = costs.shape[0]
    (weighted,) = np.nonzero(costs)
    if weighted.size:
        P = sp.csr_matrix(
            (np.ones(weighted.size), (np.arange(weighted.size), weighted)),
            shape=(weighted.size, n),
        )
        return PolySystem(P, costs[weighted].reshape(1, -1))
    if n > 0:
        # Feasibility problem: a zero cost on the constant monomial
        return PolySystem(sp.csr_matrix((1, n)), sp.csr_matrix((1, 1)))
    return PolySystem.empty()


def inequality_block(lower: np.ndarray, upper: np.ndarray) -> PolySystem:
    """Rows ``x - ub <= 0`` for every finite upper bound, then ``lb - x <= 0``
    for every finite lower bound. The last monomial is the constant."""
    n = lower.shape[0]
    (up,) = np.nonzero(np.isfinite(upper))
    (lo,) = np.nonzero(np.isfinite(lower))
    n_bounds = up.size + lo.size
    if n_bounds == 0:
        return PolySystem.empty(n)

    columns = np.concatenate([up, lo])
    P = sp.csr_matrix(
        (np.ones(n_bounds), (np.arange(n_bounds), columns)), shape=(n_bounds + 1, n)
    )
    signs = np.concatenate([np.ones(up.size), -np.ones(lo.size)])
    constants = np.concatenate([-upper[up], lower[lo]])
    rows = np.concatenate([np.arange(n_bounds), np.arange(n_bounds)])
    cols = np.concatenate([np.arange(n_bounds), np.full(n_bounds, n_bounds)])
    K = sp.csr_matrix(
        (np.concatenate([signs, constants]), (rows, cols)), shape=(n_bounds, n_bounds + 1)
    )
    return PolySystem(P, K)


def build_model_spec(
    name: str,
    step_vars: StepVarTable,
    horizon: Horizon,
    assembly: AssemblyResult,
    integ_method: str = "None",
    dt: float = 1.0,
    diagnostics: Optional[Diagnostics] = None,
    blocks: Optional[BlockTable] = None,
) -> ModelSpec:
    n = horizon.n_vars
    eq = assembly.system
    cost = cost_block(horizon.cost)
    ineq = inequality_block(horizon.lower, horizon.upper)

    combined = PolySystem(
        stack_rows([cost.P, ineq.P, eq.P], n),
        block_diag([cost.K, ineq.K, eq.K]),
    )

    classes = step_vars.classes()
    in_vars = np.zeros(n, dtype=bool)
    ex_vars = np.zeros(n, dtype=bool)
    all_state_vars = np.zeros(n, dtype=bool)
    for entry in horizon.entries:
        members = [step_vars[i] for i in classes.get(entry.canonical, [])]
        in_vars[entry.index] |= any(v.input for v in members)
        ex_vars[entry.index] |= any(v.external for v in members)
        if entry.time_step == 1 and entry.minor_stage == 0:
            all_state_vars[entry.index] |= any(v.state for v in members)

    len_cost_A, len_ineq_A, len_eq_A = cost.n_monomials, ineq.n_monomials, eq.n_monomials
    len_cost_C, len_ineq_C, len_eq_C = cost.n_constraints, ineq.n_constraints, eq.n_constraints

    return ModelSpec(
        name=name,
        horizon=horizon.horizon,
        integ_method=integ_method,
        dt=dt,
        cost=cost,
        ineq=ineq,
        eq=eq,
        combined=combined,
        lower_bounds=horizon.lower,
        upper_bounds=horizon.upper,
        costs=horizon.cost,
        in_vars=in_vars,
        ex_vars=ex_vars,
        all_state_vars=all_state_vars,
        all_names=variable_names(step_vars, horizon),
        cost_start_A=0,
        cost_end_A=len_cost_A,
        ineq_start_A=len_cost_A,
        ineq_end_A=len_cost_A + len_ineq_A,
        eq_start_A=len_cost_A + len_ineq_A,
        eq_end_A=len_cost_A + len_ineq_A + len_eq_A,
        cost_start_C=0,
        cost_end_C=len_cost_C,
        ineq_start_C=len_cost_C,
        ineq_end_C=len_cost_C + len_ineq_C,
        eq_start_C=len_cost_C + len_ineq_C,
        eq_end_C=len_cost_C + len_ineq_C + len_eq_C,
        diagnostics=diagnostics if diagnostics is not None else Diagnostics(),
        blocks=blocks,
        step_vars=step_vars,
        expansion=horizon,
        assembly=assembly,
    )
