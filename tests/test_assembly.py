import numpy as np
import pytest

from flatnlp.assembly import LinearRows, assemble, combine_step_system
from flatnlp.canonicalize import canonicalize
from flatnlp.diagram import Diagram
from flatnlp.discovery import discover
from flatnlp.errors import Diagnostics, StructureWarning
from flatnlp.horizon import expand_horizon
from flatnlp.integrators import TABLEAU_MAP
from flatnlp.phases import propagate_phases


def _assemble(diagram, horizon, tableau=None, dt=1.0, diagnostics=None):
    diagnostics = diagnostics if diagnostics is not None else Diagnostics()
    result = discover(diagram, diagnostics=diagnostics)
    canonicalize(result.step_vars, diagnostics)
    live = propagate_phases(result.blocks, result.step_vars, minor=tableau is not None)
    n_stages = 0 if tableau is None else tableau.n_stages
    expansion = expand_horizon(
        result.blocks, result.step_vars, live, horizon, n_stages, diagnostics
    )
    assembly = assemble(result.blocks, result.step_vars, expansion, tableau, dt, diagnostics)
    return result, expansion, assembly


def _canonical(result, block, port=1):
    return result.step_vars[result.step_vars.first_index(block.outport(port))].opt_var_idx


def _accumulator():
    diagram = Diagram("acc")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    delay = diagram.add_block("x", "UnitDelay")
    total = diagram.add_block("sum", "Sum")
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(delay, total, 1, 1)
    diagram.connect(u, total, 1, 2)
    diagram.connect(total, delay)
    diagram.connect(delay, bound)
    return diagram, u, delay, total


def _integrator(hold=None):
    diagram = Diagram("int")
    params = {} if hold is None else {"interpType": hold}
    u = diagram.add_block("u", reference="InputFromWorkspace", **params)
    integrator = diagram.add_block("x", "Integrator")
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(u, integrator)
    diagram.connect(integrator, bound)
    return diagram, u, integrator


def test_linear_rows():
    rows = LinearRows(3)
    rows.add([(0, 1.0), (2, -2.0), (1, 0.0)])
    rows.add([(1, 1.0)])
    system = rows.system()
    assert len(rows) == 2
    assert system.n_monomials == 3
    np.testing.assert_allclose(system.residual([2.0, 0.0, 1.0]), [0.0, 0.0])


def test_step_system_uses_canonical_columns():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    mux = diagram.add_block("mux", "Mux", inports=1)
    gain = diagram.add_block("g", "Gain", Gain=2.0)
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(u, mux)
    diagram.connect(mux, gain)
    diagram.connect(gain, bound)

    result = discover(diagram)
    n = canonicalize(result.step_vars)
    step = combine_step_system(result.blocks, result.step_vars)
    assert step.n_vars == n == 2
    x = np.zeros(n)
    x[_canonical(result, u)] = 3.0
    x[_canonical(result, gain)] = 6.0
    np.testing.assert_allclose(step.residual(x), [0.0])


@pytest.mark.parametrize("horizon", [1, 2, 3, 6])
def test_row_count_replicates_intermediate_system(horizon):
    diagram, u, delay, total = _accumulator()
    result, expansion, assembly = _assemble(diagram, horizon)
    counts = assembly.row_counts

    if horizon == 1:
        assert counts == {"initial": 1}
    else:
        assert counts["initial"] == 1
        assert counts["final"] == 0
        assert counts["intermediate"] == (horizon - 2) * 1
    assert assembly.system.n_constraints == sum(counts.values())
    assert assembly.system.n_vars == expansion.n_vars


@pytest.mark.parametrize("horizon", [2, 4])
def test_accumulator_trajectory_satisfies_equalities(horizon):
    diagram, u, delay, total = _accumulator()
    result, expansion, assembly = _assemble(diagram, horizon)
    cx, cs, cu = (_canonical(result, b) for b in (delay, total, u))

    inputs = np.arange(1.0, horizon)
    states = np.concatenate([[0.5], 0.5 + np.cumsum(inputs)])
    x = np.zeros(expansion.n_vars)
    for k in range(1, horizon + 1):
        x[expansion.index_of(cx, k)] = states[k - 1]
    for k in range(1, horizon):
        x[expansion.index_of(cu, k)] = inputs[k - 1]
        assert expansion.index_of(cs, k) == expansion.index_of(cx, k + 1)
    np.testing.assert_allclose(assembly.system.residual(x), np.zeros(horizon - 1))

    x[expansion.index_of(cx, horizon)] += 1.0
    assert np.abs(assembly.system.residual(x)).max() == pytest.approx(1.0)


def test_constraints_on_dead_variables_are_trimmed():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    gain = diagram.add_block("g", "Gain", Gain=2.0)
    bound = diagram.add_block("bound", reference="Bound", initial_step="off")
    diagram.connect(u, gain)
    diagram.connect(gain, bound)

    result, expansion, assembly = _assemble(diagram, 3)
    assert assembly.row_counts == {"initial": 0, "intermediate": 1, "final": 1}
    assert expansion.n_major == 4


def test_euler_integrator_coupling():
    dt = 0.5
    diagram, u, integrator = _integrator()
    result, expansion, assembly = _assemble(diagram, 3, TABLEAU_MAP["Euler"], dt)
    cx, cu = _canonical(result, integrator), _canonical(result, u)

    # one Runge-Kutta row and one zero-order hold row per interval
    assert assembly.row_counts["coupling"] == 4
    assert assembly.system.n_constraints == 4

    inputs = [1.0, 2.0, 7.0]
    states = [0.0, 0.5, 1.5]
    x = np.zeros(expansion.n_vars)
    for k in range(1, 4):
        x[expansion.index_of(cx, k)] = states[k - 1]
        x[expansion.index_of(cu, k)] = inputs[k - 1]
    for k in (1, 2):
        x[expansion.minor_index(cu, k, 1)] = inputs[k - 1]
    np.testing.assert_allclose(assembly.system.residual(x), np.zeros(4))


def test_rk4_integrator_with_first_order_hold():
    dt = 0.1
    diagram, u, integrator = _integrator(hold="FOH")
    tableau = TABLEAU_MAP["RK4"]
    result, expansion, assembly = _assemble(diagram, 2, tableau, dt)
    cx, cu = _canonical(result, integrator), _canonical(result, u)

    # dx/dt = u with u linear in time is integrated exactly
    u0, u1, x0 = 1.0, 3.0, 2.0
    x1 = x0 + dt * (u0 + u1) / 2
    x = np.zeros(expansion.n_vars)
    x[expansion.index_of(cx, 1)] = x0
    x[expansion.index_of(cx, 2)] = x1
    x[expansion.index_of(cu, 1)] = u0
    x[expansion.index_of(cu, 2)] = u1
    for s in range(1, 5):
        c_s = tableau.c[s - 1]
        x[expansion.minor_index(cu, 1, s)] = (1 - c_s) * u0 + c_s * u1

    assert assembly.row_counts["coupling"] == 1 + 4
    np.testing.assert_allclose(assembly.system.residual(x), np.zeros(5), atol=1e-12)


def test_integrator_stage_values_are_coupled_when_used_inside_interval():
    # dx/dt = -x
    diagram = Diagram("decay")
    integrator = diagram.add_block("x", "Integrator")
    gain = diagram.add_block("g", "Gain", Gain=-1.0)
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(integrator, gain)
    diagram.connect(gain, integrator)
    diagram.connect(integrator, bound)

    tableau = TABLEAU_MAP["Trapez"]
    result, expansion, assembly = _assemble(diagram, 2, tableau, dt=0.2)
    cx, cg = _canonical(result, integrator), _canonical(result, gain)
    assert sorted(expansion.minor_canonicals) == sorted([cx, cg])

    # 2 gain rows at the stages, 1 RK row, 2 stage rows
    assert assembly.row_counts["minor"] == 2
    assert assembly.row_counts["coupling"] == 3

    dt, x0 = 0.2, 1.0
    # trapezoidal rule: x1 = x0 + dt/2 (-x0 - x1)
    x1 = x0 * (1 - dt / 2) / (1 + dt / 2)
    x = np.zeros(expansion.n_vars)
    x[expansion.index_of(cx, 1)] = x0
    x[expansion.index_of(cx, 2)] = x1
    for s, X in ((1, x0), (2, x1)):
        x[expansion.minor_index(cx, 1, s)] = X
        x[expansion.minor_index(cg, 1, s)] = -X
    np.testing.assert_allclose(assembly.system.residual(x), np.zeros(5), atol=1e-12)


def test_integrator_without_stages_is_reported():
    diagram, u, integrator = _integrator()
    diagnostics = Diagnostics()
    with pytest.warns(StructureWarning):
        _assemble(diagram, 3, diagnostics=diagnostics)
    (entry,) = diagnostics.of_kind("structure")
    assert entry.block == "int/x"
