import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class ButcherTableau:
    """Coefficient set of an explicit or implicit Runge-Kutta scheme.

    Attributes:
        A (np.ndarray): Stage coupling matrix, shape (S, S).
        b (np.ndarray): Weight row, shape (S,).
        c (np.ndarray): Stage-time column as a fraction of the step, shape (S,).
    """

    A: np.ndarray
    b: np.ndarray
    c: np.ndarray

    def __post_init__(self):
        A = np.atleast_2d(np.asarray(self.A, dtype=float))
        b = np.atleast_1d(np.asarray(self.b, dtype=float)).ravel()
        c = np.atleast_1d(np.asarray(self.c, dtype=float)).ravel()
        n = b.shape[0]
        if n == 0:
            raise ValueError("Butcher tableau needs at least one stage")
        if A.shape != (n, n):
            raise ValueError(f"Tableau A has shape {A.shape}, expected {(n, n)}")
        if c.shape != (n,):
            raise ValueError(f"Tableau c has shape {c.shape}, expected {(n,)}")
        object.__setattr__(self, "A", A)
        object.__setattr__(self, "b", b)
        object.__setattr__(self, "c", c)

    @property
    def n_stages(self) -> int:
        return self.b.shape[0]


# fmt: off
TABLEAU_MAP = {
    "Euler": ButcherTableau(
        A=[[0.0]],
        b=[1.0],
        c=[0.0],
    ),
    "Trapez": ButcherTableau(
        A=[[0.0, 0.0],
           [0.5, 0.5]],
        b=[0.5, 0.5],
        c=[0.0, 1.0],
    ),
    "RK4": ButcherTableau(
        A=[[0.0, 0.0, 0.0, 0.0],
           [0.5, 0.0, 0.0, 0.0],
           [0.0, 0.5, 0.0, 0.0],
           [0.0, 0.0, 1.0, 0.0]],
        b=[1/6, 1/3, 1/3, 1/6],
        c=[0.0, 0.5, 0.5, 1.0],
    ),
}
# fmt: on


def get_tableau(method: str, tableau: Optional[ButcherTableau] = None) -> Optional[ButcherTableau]:
    """Resolve an integration method name to its Butcher tableau.

    Args:
        method (str): "None", "Euler", "Trapez", "RK4" or "custom".
        tableau (ButcherTableau): Tableau used for "custom".

    Returns:
        ButcherTableau or None: ``None`` when no multi-stage integration is requested.
    """
    if method is None or method == "None":
        return None
    if method == "custom":
        if tableau is None:
            raise ValueError("integ_method 'custom' requires a ButcherTableau")
        if not isinstance(tableau, ButcherTableau):
            tableau = ButcherTableau(*tableau)
        return tableau
    if method in TABLEAU_MAP:
        return TABLEAU_MAP[method]
    warnings.warn(
        f"Integration method {method!r} not implemented, using 'None'",
        UserWarning,
        stacklevel=2,
    )
    return None
