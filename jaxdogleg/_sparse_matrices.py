from __future__ import annotations

from typing import TYPE_CHECKING

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

if TYPE_CHECKING:
    import scipy.sparse


@jdc.pytree_dataclass
class SparseCsrCoordinates:
    indices: jax.Array
    """Column indices of non-zero entries. Shape should be `(nnz,)`."""
    indptr: jax.Array
    """Index of start to each row. Shape should be `(num_rows + 1,)`."""
    shape: jdc.Static[tuple[int, int]]
    """Shape of matrix."""


@jdc.pytree_dataclass
class SparseCsrMatrix:
    """Data structure for sparse CSR matrices.

    Used for residual Jacobians `J`, with one row per measurement and one column
    per state variable. The CSR arrays of `J` are the compressed-column arrays of
    `J^T`, which is the layout CHOLMOD expects when factorizing `J^T J`."""

    values: jax.Array
    """Non-zero matrix values. Shape should be `(nnz,)`."""
    coords: SparseCsrCoordinates
    """Indices describing non-zero entries."""

    @property
    def shape(self) -> tuple[int, int]:
        return self.coords.shape

    @property
    def nnz(self) -> int:
        return self.values.shape[0]

    def _row_ids(self) -> jax.Array:
        """Row index of each stored value."""
        return jnp.repeat(
            jnp.arange(self.coords.shape[0]),
            jnp.diff(self.coords.indptr),
            total_repeat_length=self.nnz,
        )

    def multiply(self, target: jax.Array) -> jax.Array:
        """Sparse-dense multiplication, `J @ target`."""
        assert target.shape == (self.coords.shape[1],)
        return jax.ops.segment_sum(
            self.values * target[self.coords.indices],
            self._row_ids(),
            num_segments=self.coords.shape[0],
        )

    def transpose_multiply(self, target: jax.Array) -> jax.Array:
        """Transposed sparse-dense multiplication, `J^T @ target`."""
        assert target.shape == (self.coords.shape[0],)
        return (
            jnp.zeros(self.coords.shape[1], dtype=self.values.dtype)
            .at[self.coords.indices]
            .add(self.values * target[self._row_ids()])
        )

    def to_dense(self) -> jax.Array:
        """Convert to a dense matrix."""
        out = jnp.zeros(self.coords.shape, dtype=self.values.dtype)
        return out.at[self._row_ids(), self.coords.indices].add(self.values)

    def as_scipy_jt_csc(self) -> scipy.sparse.csc_matrix:
        """Host-side `J^T` as a float64 CSC matrix. Shares index arrays with `J`."""
        import scipy.sparse

        # Matrix is transposed when we reinterpret CSR as CSC.
        return scipy.sparse.csc_matrix(
            (
                onp.asarray(self.values, dtype=onp.float64),
                onp.asarray(self.coords.indices),
                onp.asarray(self.coords.indptr),
            ),
            shape=self.coords.shape[::-1],
        )

    @staticmethod
    def from_scipy_sparse(matrix: scipy.sparse.spmatrix) -> SparseCsrMatrix:
        """Build from any scipy sparse matrix, stored values kept as-is."""
        csr = matrix.tocsr()
        csr.sort_indices()
        return SparseCsrMatrix(
            values=jnp.asarray(csr.data),
            coords=SparseCsrCoordinates(
                indices=jnp.asarray(csr.indices),
                indptr=jnp.asarray(csr.indptr),
                shape=(int(csr.shape[0]), int(csr.shape[1])),
            ),
        )

    @staticmethod
    def from_dense(matrix: jax.Array | onp.ndarray) -> SparseCsrMatrix:
        """Build from a dense 2D array, keeping only non-zero entries."""
        matrix_onp = onp.asarray(matrix)
        assert matrix_onp.ndim == 2
        rows, cols = onp.nonzero(matrix_onp)
        indptr = onp.zeros(matrix_onp.shape[0] + 1, dtype=onp.int32)
        indptr[1:] = onp.cumsum(onp.bincount(rows, minlength=matrix_onp.shape[0]))
        return SparseCsrMatrix(
            values=jnp.asarray(matrix_onp[rows, cols]),
            coords=SparseCsrCoordinates(
                indices=jnp.asarray(cols.astype(onp.int32)),
                indptr=jnp.asarray(indptr),
                shape=(matrix_onp.shape[0], matrix_onp.shape[1]),
            ),
        )
