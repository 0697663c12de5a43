"""JAX-lowered polynomial systems."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

import jax
import jax.numpy as jnp
import numpy as np
from jax import jacfwd

from flatnlp.polynomial import PolySystem

if TYPE_CHECKING:
    from flatnlp.nlp import ModelSpec


@dataclass
class LoweredPolynomial:
    """Residual ``r(x) = K @ monomials(P, x)`` of a polynomial system.

    Attributes:
        func: Residual callable, ``(n_vars,) -> (n_constraints,)``.
        jac: Jacobian callable, ``(n_vars,) -> (n_constraints, n_vars)``.
            Built with ``jacfwd`` when not given.
        n_vars: Number of variables.
        n_constraints: Number of residual rows.
    """

    func: Callable
    jac: Optional[Callable] = None
    n_vars: int = 0
    n_constraints: int = 0

    def __post_init__(self):
        if self.jac is None:
            self.jac = jacfwd(self.func)

    def __call__(self, x):
        return self.func(x)


def _padded_factors(P) -> tuple:
    """Column and exponent of every factor, one row per monomial.

    Rows are padded up to the largest monomial degree with a reference to an
    extra column holding ``1.0`` and a zero exponent.
    """
    P = P.tocsr()
    n_monomials, n_vars = P.shape
    counts = np.diff(P.indptr)
    width = max(int(counts.max()) if counts.size else 0, 1)
    cols = np.full((n_monomials, width), n_vars, dtype=np.int32)
    exps = np.zeros((n_monomials, width))
    for m in range(n_monomials):
        start, end = P.indptr[m], P.indptr[m + 1]
        cols[m, : end - start] = P.indices[start:end]
        exps[m, : end - start] = P.data[start:end]
    return cols, exps


def lower_polynomial(system: PolySystem) -> LoweredPolynomial:
    """Lower a ``PolySystem`` to a JAX residual function.

    Each monomial is the product of ``x[col] ** exponent`` over the nonzeros
    of its ``P`` row, so an empty row evaluates to one.

    Exponents, coefficients and ``x`` use JAX's default float type. That is
    ``float64`` only when ``jax_enable_x64`` is set; otherwise the residual is
    evaluated in ``float32`` and matches ``PolySystem.residual`` to about 1e-6
    relative.
    """
    dtype = jnp.result_type(float)
    cols, exps = _padded_factors(system.P)
    K = system.K.tocoo()
    n_constraints = system.n_constraints

    p_cols = jnp.asarray(cols)
    p_exps = jnp.asarray(exps, dtype=dtype)
    k_rows = jnp.asarray(K.row, dtype=jnp.int32)
    k_cols = jnp.asarray(K.col, dtype=jnp.int32)
    k_vals = jnp.asarray(K.data, dtype=dtype)

    def func(x):
        x = jnp.concatenate([jnp.asarray(x, dtype=dtype), jnp.ones(1, dtype=dtype)])
        factors = jnp.where(p_exps != 0, jnp.power(x[p_cols], p_exps), 1.0)
        monomials = jnp.prod(factors, axis=1)
        terms = k_vals * monomials[k_cols]
        return jax.ops.segment_sum(terms, k_rows, num_segments=n_constraints)

    return LoweredPolynomial(func=func, n_vars=system.n_vars, n_constraints=n_constraints)


@dataclass
class LoweredNLP:
    """JAX-lowered cost, inequality and equality blocks of a ``ModelSpec``.

    Attributes:
        cost: Scalar-row cost residual; the objective is its single entry.
        ineq: Inequality residuals, feasible where ``<= 0``.
        eq: Equality residuals, feasible where ``== 0``.
        lower_bounds, upper_bounds: Variable bounds carried for solvers that
            take them directly.
    """

    cost: LoweredPolynomial
    ineq: LoweredPolynomial
    eq: LoweredPolynomial
    lower_bounds: np.ndarray
    upper_bounds: np.ndarray

    def objective(self, x):
        values = self.cost(x)
        return jnp.sum(values)


def lower_model_spec(spec: "ModelSpec") -> LoweredNLP:
    return LoweredNLP(
        cost=lower_polynomial(spec.cost),
        ineq=lower_polynomial(spec.ineq),
        eq=lower_polynomial(spec.eq),
        lower_bounds=spec.lower_bounds,
        upper_bounds=spec.upper_bounds,
    )
