import numpy as np
import pytest

from flatnlp import Diagram, extract_model
from flatnlp.nlp import cost_block, inequality_block, variable_name


def _gain_with_cost():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    gain = diagram.add_block("g", "Gain", Gain=2.0)
    cost = diagram.add_block("cost", reference="DiscreteCost")
    diagram.connect(u, gain)
    diagram.connect(gain, cost)
    return diagram


def test_gain_with_cost_at_horizon_one():
    spec = extract_model(_gain_with_cost(), horizon=1)

    assert spec.n_vars == 2
    assert spec.eq.n_constraints == 1
    assert spec.cost.n_constraints == 1
    assert spec.ineq.n_constraints == 0
    np.testing.assert_allclose(spec.cost.K.toarray(), [[1.0]])
    assert spec.all_names == ["m/g.out1.t1.idx1.minor0", "m/u.out1.t1.idx1.minor0"]
    np.testing.assert_array_equal(spec.ex_vars, [False, True])
    np.testing.assert_array_equal(spec.in_vars, [False, False])
    assert len(spec.diagnostics) == 0

    x = spec.vector_from_values({"m/u.out1.t1.idx1.minor0": 3.0, "m/g.out1.t1.idx1.minor0": 6.0})
    np.testing.assert_allclose(spec.eq.residual(x), [0.0])
    np.testing.assert_allclose(spec.cost.residual(x), [6.0])


def test_combined_system_ranges():
    spec = extract_model(_gain_with_cost(), horizon=1)

    assert (spec.cost_start_A, spec.cost_end_A) == (0, 1)
    assert (spec.ineq_start_A, spec.ineq_end_A) == (1, 1)
    assert (spec.eq_start_A, spec.eq_end_A) == (1, 3)
    assert (spec.cost_start_C, spec.cost_end_C) == (0, 1)
    assert (spec.ineq_start_C, spec.ineq_end_C) == (1, 1)
    assert (spec.eq_start_C, spec.eq_end_C) == (1, 2)
    assert spec.A.shape == (3, 2)
    assert spec.C.shape == (2, 3)

    eq_block = spec.C[spec.eq_start_C : spec.eq_end_C, spec.eq_start_A : spec.eq_end_A]
    np.testing.assert_allclose(eq_block.toarray(), spec.Cs.toarray())
    np.testing.assert_allclose(
        spec.A[spec.eq_start_A : spec.eq_end_A].toarray(), spec.AAs.toarray()
    )


def test_bounds_become_inequalities():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="InputFromWorkspace", out_dims=[2])
    bound = diagram.add_block("bound", reference="Bound", lb=[0.0, -np.inf], ub=5.0)
    diagram.connect(u, bound)

    spec = extract_model(diagram, horizon=2)
    assert spec.n_vars == 4
    # 4 finite upper bounds, 2 finite lower bounds
    assert spec.ineq.n_constraints == 6
    np.testing.assert_array_equal(spec.in_vars, [True] * 4)

    inside = np.array([1.0, -3.0, 4.0, 5.0])
    assert (spec.ineq.residual(inside) <= 0).all()
    outside = np.array([-1.0, 0.0, 0.0, 6.0])
    assert (spec.ineq.residual(outside) > 0).sum() == 2


def test_inequality_block_layout():
    lower = np.array([0.0, -np.inf, 1.0])
    upper = np.array([np.inf, 2.0, 3.0])
    system = inequality_block(lower, upper)
    # upper rows first, the constant monomial last
    assert system.n_constraints == 4
    assert system.n_monomials == 5
    assert system.P[-1].nnz == 0
    np.testing.assert_allclose(system.residual([0.0, 2.0, 3.0]), [0.0, 0.0, 0.0, -2.0])

    assert inequality_block(np.full(2, -np.inf), np.full(2, np.inf)).n_constraints == 0


def test_cost_block():
    system = cost_block(np.array([0.0, 2.0, 0.0, 0.5]))
    assert system.n_constraints == 1
    assert system.n_monomials == 2
    np.testing.assert_allclose(system.residual([9.0, 1.0, 9.0, 4.0]), [4.0])

    # feasibility problem
    system = cost_block(np.zeros(3))
    assert system.n_constraints == 1
    np.testing.assert_allclose(system.residual(np.ones(3)), [0.0])


def test_merged_variables_carry_every_name():
    diagram = Diagram("acc")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    delay = diagram.add_block("x", "UnitDelay")
    total = diagram.add_block("sum", "Sum")
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(delay, total, 1, 1)
    diagram.connect(u, total, 1, 2)
    diagram.connect(total, delay)
    diagram.connect(delay, bound)

    spec = extract_model(diagram, horizon=3)
    index = spec.index_of("acc/x.out1.t2.idx1.minor0")
    assert index == spec.index_of("acc/sum.out1.t1.idx1.minor0")
    assert set(spec.all_names[index].split(";")) == {
        "acc/x.out1.t2.idx1.minor0",
        "acc/sum.out1.t1.idx1.minor0",
    }
    assert spec.all_state_vars[spec.index_of("acc/x.out1.t1.idx1.minor0")]
    assert spec.all_state_vars.sum() == 1
    with pytest.raises(KeyError):
        spec.index_of("acc/sum.out1.t3.idx1.minor0")


def test_infeasible_bounds_are_reported_on_the_model():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    first = diagram.add_block("b1", reference="Bound", lb=0.0, ub=5.0)
    second = diagram.add_block("b2", reference="Bound", lb=7.0, ub=10.0)
    diagram.connect(u, first)
    diagram.connect(u, second)

    with pytest.warns(UserWarning):
        spec = extract_model(diagram, horizon=1)
    np.testing.assert_array_equal(spec.infeasible_bounds(), [0])
    assert len(spec.diagnostics.of_kind("infeasible-bound")) == 1


def test_variable_name():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="InputFromWorkspace", out_dims=[3])
    bound = diagram.add_block("bound", reference="Bound")
    diagram.connect(u, bound)
    spec = extract_model(diagram, horizon=1)
    var = spec.step_vars[2]
    assert variable_name(var, 4, 2) == "m/u.out1.t4.idx3.minor2"


def test_published_block_matrices():
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="InputFromWorkspace")
    bound = diagram.add_block("bound", reference="Bound", lb=-1.0, ub=2.0)
    cost = diagram.add_block("cost", reference="DiscreteCost")
    diagram.connect(u, bound)
    diagram.connect(u, cost)

    spec = extract_model(diagram, horizon=2)
    A, C = spec.A.toarray(), spec.C.toarray()

    np.testing.assert_array_equal(spec.cost_A.toarray(), A[spec.cost_start_A : spec.cost_end_A])
    np.testing.assert_array_equal(
        spec.cost_C.toarray(),
        C[spec.cost_start_C : spec.cost_end_C, spec.cost_start_A : spec.cost_end_A],
    )
    np.testing.assert_array_equal(spec.ineq_AAs.toarray(), A[spec.ineq_start_A : spec.ineq_end_A])
    np.testing.assert_array_equal(
        spec.ineq_Cs.toarray(),
        C[spec.ineq_start_C : spec.ineq_end_C, spec.ineq_start_A : spec.ineq_end_A],
    )
    assert spec.ineq_Cs.shape[0] == 4
    np.testing.assert_allclose(spec.cost.residual(np.array([1.0, 3.0])), [4.0])
