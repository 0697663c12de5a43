"""Lowered polynomial systems.

This module contains the outputs of lowering a flattened model to executable
JAX code.

Classes:
    LoweredPolynomial: Residual callable of one ``(P, K)`` system with its Jacobian
    LoweredNLP: Lowered cost, inequality and equality blocks of a ``ModelSpec``
"""

from flatnlp.lowered.jax_polynomial import (
    LoweredNLP,
    LoweredPolynomial,
    lower_model_spec,
    lower_polynomial,
)

__all__ = [
    "LoweredPolynomial",
    "LoweredNLP",
    "lower_polynomial",
    "lower_model_spec",
]
