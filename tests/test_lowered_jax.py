import jax.numpy as jnp
import numpy as np
import pytest

from flatnlp import Diagram, extract_model
from flatnlp.lowered import lower_model_spec, lower_polynomial
from flatnlp.polynomial import PolySystem


def test_lowered_polynomial_matches_numpy():
    # x0 * x1^2 - 3 = 0 and x1 / x0 + x2 = 0
    system = PolySystem(
        [[1, 2, 0], [0, 0, 0], [-1, 1, 0], [0, 0, 1]],
        [[1.0, -3.0, 0.0, 0.0], [0.0, 0.0, 1.0, 1.0]],
    )
    lowered = lower_polynomial(system)
    assert lowered.n_vars == 3
    assert lowered.n_constraints == 2

    x = np.array([2.0, 1.5, -0.5])
    np.testing.assert_allclose(np.asarray(lowered(x)), system.residual(x), rtol=1e-5)


def test_jacobian():
    # r = x0 * x1^2 - 3
    system = PolySystem([[1, 2], [0, 0]], [[1.0, -3.0]])
    lowered = lower_polynomial(system)
    jac = np.asarray(lowered.jac(jnp.array([2.0, 3.0])))
    np.testing.assert_allclose(jac, [[9.0, 12.0]], rtol=1e-5)


def test_jacobian_at_zero_with_linear_terms():
    system = PolySystem(np.eye(2), [[2.0, -1.0]])
    lowered = lower_polynomial(system)
    jac = np.asarray(lowered.jac(jnp.zeros(2)))
    np.testing.assert_allclose(jac, [[2.0, -1.0]])


def test_empty_system():
    lowered = lower_polynomial(PolySystem.empty(3))
    assert lowered(jnp.ones(3)).shape == (0,)


@pytest.mark.parametrize("value", [1.0, -2.5])
def test_lowered_model(value):
    diagram = Diagram("m")
    u = diagram.add_block("u", reference="ExternalFromWorkspace")
    gain = diagram.add_block("g", "Gain", Gain=2.0)
    cost = diagram.add_block("cost", reference="DiscreteCost")
    bound = diagram.add_block("bound", reference="Bound", lb=-5.0, ub=5.0)
    diagram.connect(u, gain)
    diagram.connect(gain, cost)
    diagram.connect(u, bound)

    spec = extract_model(diagram, horizon=1)
    nlp = lower_model_spec(spec)
    x = spec.vector_from_values(
        {"m/u.out1.t1.idx1.minor0": value, "m/g.out1.t1.idx1.minor0": 2 * value}
    )

    np.testing.assert_allclose(np.asarray(nlp.eq(x)), [0.0], atol=1e-6)
    np.testing.assert_allclose(float(nlp.objective(x)), 2 * value, rtol=1e-5)
    np.testing.assert_allclose(np.asarray(nlp.ineq(x)), spec.ineq.residual(x), rtol=1e-5)
    np.testing.assert_array_equal(nlp.lower_bounds, spec.lower_bounds)
    assert np.asarray(nlp.eq.jac(x)).shape == (1, 2)


def test_double_precision_matches_sparse_residual(x64):
    system = PolySystem(
        [[1, 2, 0], [0, 0, 0], [-1, 1, 0], [0, 0, 3]],
        [[1.0 / 3.0, -1e-9, 0.0, 0.0], [0.0, 0.0, 0.1, 7.0]],
    )
    lowered = lower_polynomial(system)
    x = np.array([1.1, 2.3, 0.7])
    r = lowered(x)

    assert r.dtype == jnp.float64
    np.testing.assert_allclose(np.asarray(r), system.residual(x), rtol=1e-14, atol=1e-15)
