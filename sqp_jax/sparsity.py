"""Compressed sparse column patterns.

The Lagrangian Hessian and the constraint Jacobian are stored as flat value
arrays over a fixed nonzero pattern. A :class:`Sparsity` describes that
pattern in compressed sparse column (CSC) form:

    colind[c] : colind[c + 1]   range of nonzeros belonging to column c
    row[k]                      row index of nonzero k

Patterns are immutable and hashable (all fields are static), so a single
instance can be shared read-only by the Hessian approximation, the QP
formulation and the QP backend for the whole solve.
"""

import equinox as eqx
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float, Int


class Sparsity(eqx.Module):
    """Nonzero pattern of an ``nrow x ncol`` matrix in CSC form.

    Attributes:
        nrow: Number of rows.
        ncol: Number of columns.
        colind: Column offsets into ``row``, length ``ncol + 1``.
        row: Row index of each structural nonzero, sorted within a column.
    """

    nrow: int = eqx.field(static=True)
    ncol: int = eqx.field(static=True)
    colind: tuple[int, ...] = eqx.field(static=True)
    row: tuple[int, ...] = eqx.field(static=True)

    def __check_init__(self):
        if len(self.colind) != self.ncol + 1:
            raise ValueError(
                f"colind must have ncol + 1 = {self.ncol + 1} entries, "
                f"got {len(self.colind)}"
            )
        if self.colind[0] != 0 or self.colind[-1] != len(self.row):
            raise ValueError("colind must start at 0 and end at nnz")
        if any(a > b for a, b in zip(self.colind[:-1], self.colind[1:])):
            raise ValueError("colind must be nondecreasing")
        if any(r < 0 or r >= self.nrow for r in self.row):
            raise ValueError(f"row indices must lie in [0, {self.nrow})")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def dense(cls, nrow: int, ncol: int) -> "Sparsity":
        """Pattern with every entry structurally nonzero."""
        colind = tuple(c * nrow for c in range(ncol + 1))
        row = tuple(r for _ in range(ncol) for r in range(nrow))
        return cls(nrow=nrow, ncol=ncol, colind=colind, row=row)

    @classmethod
    def diagonal(cls, n: int) -> "Sparsity":
        return cls(nrow=n, ncol=n, colind=tuple(range(n + 1)), row=tuple(range(n)))

    @classmethod
    def from_triplets(cls, nrow: int, ncol: int, rows, cols) -> "Sparsity":
        """Build a pattern from (row, column) index pairs.

        Duplicate pairs are merged and rows are sorted within each column.
        """
        pairs = sorted({(int(c), int(r)) for r, c in zip(rows, cols)})
        counts = np.zeros(ncol + 1, dtype=int)
        for c, _ in pairs:
            if c < 0 or c >= ncol:
                raise ValueError(f"column index {c} out of range [0, {ncol})")
            counts[c + 1] += 1
        colind = tuple(int(v) for v in np.cumsum(counts))
        row = tuple(r for _, r in pairs)
        return cls(nrow=nrow, ncol=ncol, colind=colind, row=row)

    @classmethod
    def from_dense_pattern(cls, matrix, tol: float = 0.0) -> "Sparsity":
        """Pattern of the entries of ``matrix`` whose magnitude exceeds ``tol``."""
        matrix = np.asarray(matrix)
        if matrix.ndim != 2:
            raise ValueError(f"Expected a 2-D matrix, got shape {matrix.shape}")
        rows, cols = np.nonzero(np.abs(matrix) > tol)
        return cls.from_triplets(matrix.shape[0], matrix.shape[1], rows, cols)

    # ------------------------------------------------------------------
    # Structure queries
    # ------------------------------------------------------------------

    @property
    def shape(self) -> tuple[int, int]:
        return (self.nrow, self.ncol)

    @property
    def nnz(self) -> int:
        return len(self.row)

    def column_of_nonzero(self) -> np.ndarray:
        """Column index of each structural nonzero."""
        return np.repeat(np.arange(self.ncol), np.diff(np.asarray(self.colind)))

    def row_of_nonzero(self) -> np.ndarray:
        return np.asarray(self.row, dtype=int)

    def column_range(self, c: int) -> range:
        """Nonzero positions belonging to column ``c``."""
        return range(self.colind[c], self.colind[c + 1])

    def diagonal_nonzeros(self) -> np.ndarray:
        """Positions of the structural diagonal entries."""
        return np.flatnonzero(self.row_of_nonzero() == self.column_of_nonzero())

    def has_full_diagonal(self) -> bool:
        return len(self.diagonal_nonzeros()) == min(self.nrow, self.ncol)

    def is_dense(self) -> bool:
        return self.nnz == self.nrow * self.ncol

    # ------------------------------------------------------------------
    # Value array operations
    # ------------------------------------------------------------------

    def to_dense(self, values: Float[Array, " nnz"]) -> Float[Array, "nrow ncol"]:
        """Scatter a value array into a dense matrix."""
        out = jnp.zeros(self.shape, dtype=jnp.result_type(values))
        if self.nnz == 0:
            return out
        return out.at[self.row_of_nonzero(), self.column_of_nonzero()].set(values)

    def from_dense(self, matrix: Float[Array, "nrow ncol"]) -> Float[Array, " nnz"]:
        """Gather the entries of ``matrix`` that lie on the pattern."""
        matrix = jnp.asarray(matrix)
        if matrix.shape != self.shape:
            raise ValueError(f"Expected shape {self.shape}, got {matrix.shape}")
        if self.nnz == 0:
            return jnp.zeros((0,), dtype=matrix.dtype)
        return matrix[self.row_of_nonzero(), self.column_of_nonzero()]

    def mv(
        self,
        values: Float[Array, " nnz"],
        v: Float[Array, " k"],
        transpose: bool = False,
    ) -> Float[Array, " m"]:
        """Matrix-vector product ``A @ v`` (or ``A.T @ v``) on the pattern."""
        rows = self.row_of_nonzero()
        cols = self.column_of_nonzero()
        if transpose:
            out = jnp.zeros((self.ncol,), dtype=jnp.result_type(values, v))
            if self.nnz == 0:
                return out
            return out.at[cols].add(values * v[rows])
        out = jnp.zeros((self.nrow,), dtype=jnp.result_type(values, v))
        if self.nnz == 0:
            return out
        return out.at[rows].add(values * v[cols])

    def bilinear(
        self,
        values: Float[Array, " nnz"],
        x: Float[Array, " nrow"],
        y: Float[Array, " ncol"],
    ) -> Float[Array, ""]:
        """Bilinear form ``x^T A y``."""
        if self.nnz == 0:
            return jnp.zeros((), dtype=jnp.result_type(values, x, y))
        rows = self.row_of_nonzero()
        cols = self.column_of_nonzero()
        return jnp.sum(x[rows] * values * y[cols])

    def identity_values(self, scale: float = 1.0) -> Float[Array, " nnz"]:
        """Value array of ``scale * I`` restricted to the pattern."""
        diag = self.row_of_nonzero() == self.column_of_nonzero()
        return jnp.where(jnp.asarray(diag), scale, 0.0)

    def __repr__(self) -> str:
        return f"Sparsity({self.nrow}x{self.ncol}, nnz={self.nnz})"
