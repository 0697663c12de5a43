"""Sparse polynomial constraint systems.

A system is a pair ``(P, K)``. Row ``i`` of ``P`` holds the exponents of
monomial ``i`` over the variable columns, so an all-zero row is the constant
monomial ``1``. Row ``j`` of ``K`` holds the coefficients of constraint ``j``
over the monomials. The system is satisfied when ``K @ monomials(P, x) == 0``.

Step, phase and horizon level systems are built from block systems only by
column remapping, row trimming, block-diagonal composition and Kronecker
replication. Monomials are never re-derived.
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.sparse as sp


def _csr(matrix, shape=None) -> sp.csr_matrix:
    if sp.issparse(matrix):
        out = sp.csr_matrix(matrix, dtype=float)
    else:
        dense = np.asarray(matrix, dtype=float)
        if dense.ndim == 1 and shape is None:
            dense = dense.reshape(1, -1) if dense.size else dense.reshape(0, 0)
        out = sp.csr_matrix(dense, shape=shape)
    out.eliminate_zeros()
    return out


@dataclass(eq=False)
class PolySystem:
    """Monomial exponents ``P`` and constraint coefficients ``K``.

    Attributes:
        P (sp.csr_matrix): Shape (n_monomials, n_vars).
        K (sp.csr_matrix): Shape (n_constraints, n_monomials).
    """

    P: sp.csr_matrix
    K: sp.csr_matrix

    def __post_init__(self):
        self.P = _csr(self.P)
        self.K = _csr(self.K)
        if self.K.shape[1] != self.P.shape[0]:
            if self.K.shape[0] == 0:
                self.K = sp.csr_matrix((0, self.P.shape[0]))
            else:
                raise ValueError(
                    f"K has {self.K.shape[1]} columns but P has {self.P.shape[0]} monomials"
                )

    @classmethod
    def empty(cls, n_vars: int = 0) -> "PolySystem":
        return cls(sp.csr_matrix((0, n_vars)), sp.csr_matrix((0, 0)))

    @property
    def n_vars(self) -> int:
        return self.P.shape[1]

    @property
    def n_monomials(self) -> int:
        return self.P.shape[0]

    @property
    def n_constraints(self) -> int:
        return self.K.shape[0]

    @property
    def is_empty(self) -> bool:
        return self.n_constraints == 0

    def monomials(self, x) -> np.ndarray:
        """Evaluate every monomial at ``x``."""
        x = np.asarray(x, dtype=float)
        if x.shape != (self.n_vars,):
            raise ValueError(f"Expected {self.n_vars} values, got shape {x.shape}")
        coo = self.P.tocoo()
        values = np.ones(self.n_monomials)
        np.multiply.at(values, coo.row, x[coo.col] ** coo.data)
        return values

    def residual(self, x) -> np.ndarray:
        return self.K @ self.monomials(x)

    def append_outputs(self, n_out: int) -> "PolySystem":
        """Close an expression system over ``n_out`` fresh output columns.

        ``P`` gains one linear monomial per output and ``K`` the negated
        identity, so each row reads ``expression - output = 0``.
        """
        if self.n_constraints != n_out:
            raise ValueError(
                f"Expression system has {self.n_constraints} rows for {n_out} outputs"
            )
        P = block_diag([self.P, sp.identity(n_out, format="csr")])
        K = sp.hstack([self.K, -sp.identity(n_out, format="csr")], format="csr")
        return PolySystem(P, K)

    def remap_columns(self, columns: Sequence[int], n_vars: int) -> "PolySystem":
        """Move local column ``j`` to column ``columns[j]`` of an ``n_vars`` wide system."""
        columns = np.asarray(columns, dtype=int)
        if columns.shape != (self.n_vars,):
            raise ValueError(f"Need {self.n_vars} column targets, got {columns.shape[0]}")
        return PolySystem(self.P @ selection_matrix(columns, n_vars), self.K)

    def fold(self, labels: Sequence[int], n_vars: int) -> "PolySystem":
        """Merge columns sharing a label; exponents of merged columns add up."""
        return self.remap_columns(labels, n_vars)

    def __repr__(self) -> str:
        return (
            f"PolySystem(n_vars={self.n_vars}, n_monomials={self.n_monomials}, "
            f"n_constraints={self.n_constraints})"
        )


def selection_matrix(columns: Sequence[int], n_cols: int) -> sp.csr_matrix:
    """0/1 matrix with a single one at ``(j, columns[j])`` in each row."""
    columns = np.asarray(columns, dtype=int)
    n = columns.shape[0]
    return sp.csr_matrix((np.ones(n), (np.arange(n), columns)), shape=(n, n_cols))


def block_diag(mats: Sequence[sp.spmatrix]) -> sp.csr_matrix:
    """Block-diagonal concatenation that accepts blocks with zero rows or columns."""
    rows, cols, data = [], [], []
    r0 = c0 = 0
    for mat in mats:
        coo = sp.coo_matrix(mat)
        rows.append(coo.row + r0)
        cols.append(coo.col + c0)
        data.append(coo.data)
        r0 += coo.shape[0]
        c0 += coo.shape[1]
    if not mats:
        return sp.csr_matrix((0, 0))
    return sp.csr_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(r0, c0),
    )


def stack_rows(mats: Sequence[sp.spmatrix], n_cols: int = None) -> sp.csr_matrix:
    """Vertical concatenation, padding narrower blocks with zero columns."""
    if n_cols is None:
        n_cols = max((m.shape[1] for m in mats), default=0)
    rows, cols, data = [], [], []
    r0 = 0
    for mat in mats:
        coo = sp.coo_matrix(mat)
        if coo.shape[1] > n_cols:
            raise ValueError(f"Block with {coo.shape[1]} columns exceeds width {n_cols}")
        rows.append(coo.row + r0)
        cols.append(coo.col)
        data.append(coo.data)
        r0 += coo.shape[0]
    if not mats:
        return sp.csr_matrix((0, n_cols))
    return sp.csr_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(r0, n_cols),
    )


def combine(systems: Sequence[PolySystem], n_vars: int = None) -> PolySystem:
    """Stack systems over a shared column space.

    Monomials are stacked and coefficient rows placed block-diagonally, so
    each system keeps its own monomials.
    """
    if n_vars is None:
        n_vars = max((s.n_vars for s in systems), default=0)
    if not systems:
        return PolySystem.empty(n_vars)
    P = stack_rows([s.P for s in systems], n_vars)
    K = block_diag([s.K for s in systems])
    return PolySystem(P, K)


def direct_sum(systems: Sequence[PolySystem]) -> PolySystem:
    """Block-diagonal composition: each system gets its own columns."""
    if not systems:
        return PolySystem.empty()
    return PolySystem(block_diag([s.P for s in systems]), block_diag([s.K for s in systems]))


def replicate(system: PolySystem, n: int) -> PolySystem:
    """``n`` independent copies of ``system`` on consecutive column blocks."""
    if n <= 0:
        return PolySystem.empty()
    eye = sp.identity(n, format="csr")
    return PolySystem(sp.kron(eye, system.P, format="csr"), sp.kron(eye, system.K, format="csr"))


def trim(system: PolySystem, keep) -> PolySystem:
    """Restrict a system to the kept columns, renumbered in order.

    Monomials touching a removed column are dropped, every constraint using
    such a monomial is dropped with them, and monomials no remaining
    constraint uses are pruned.
    """
    keep = np.asarray(keep, dtype=bool)
    if keep.shape != (system.n_vars,):
        raise ValueError(f"Keep mask has shape {keep.shape}, expected {(system.n_vars,)}")
    if system.is_empty:
        return PolySystem.empty(int(keep.sum()))

    P = system.P
    K = system.K
    removed = abs(P[:, ~keep]).sum(axis=1).A1 > 0
    bad_rows = abs(K[:, removed]).sum(axis=1).A1 > 0
    K_kept = K[~bad_rows]
    used = abs(K_kept).sum(axis=0).A1 > 0
    used &= ~removed
    return PolySystem(P[used][:, keep], K_kept[:, used])
