from __future__ import annotations

from typing import Callable, Literal, Union

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp

from ._sparse_matrices import SparseCsrMatrix

Jacobian = Union[jax.Array, SparseCsrMatrix]
"""Dense `(num_measurements, num_state)` array, or a sparse CSR matrix of the
same shape."""

EvaluateFn = Callable[[jax.Array], tuple[jax.Array, Jacobian]]
"""User model: maps a state vector to `(residual, jacobian)`."""

LinearSolverType = Literal["cholmod", "dense_cholesky"]


@jdc.pytree_dataclass
class CachedStep:
    """A candidate update vector computed at some operating point."""

    step: jax.Array
    lensq: float
    """Squared length of `step`."""


@jdc.pytree_dataclass
class OperatingPoint:
    """Snapshot of the optimization at one state vector.

    Cached steps are `None` until computed. Any new evaluation produces a new
    point with both caches empty, so a cached step is always consistent with the
    `p`, `x` and `jacobian` of the point that holds it."""

    p: jax.Array
    """State vector. Shape should be `(num_state,)`."""
    x: jax.Array
    """Residual vector. Shape should be `(num_measurements,)`."""
    norm2_x: float
    """Cost, `||x||^2`."""
    jacobian: Jacobian
    """Jacobian of `x` with respect to `p`."""
    jt_x: jax.Array
    """Gradient direction, `J^T x`. Shape should be `(num_state,)`."""
    evaluation_id: jdc.Static[int]
    """Unique (per solver context) id of the callback evaluation behind this point."""

    cauchy: CachedStep | None = None
    gauss_newton: CachedStep | None = None
    reached_trust_region_edge: jdc.Static[bool] = False
    """Whether the step proposed from this point was clipped by the trust region."""

    def jacobian_multiply(self, vector: jax.Array) -> jax.Array:
        """Compute `J @ vector`."""
        if isinstance(self.jacobian, SparseCsrMatrix):
            return self.jacobian.multiply(vector)
        return self.jacobian @ vector


class EvaluatorAdapter:
    """Invokes the user's model and packs the outputs into operating points."""

    def __init__(
        self,
        evaluate: EvaluateFn,
        num_state: int,
        num_measurements: int,
        linear_solver: LinearSolverType,
        jacobian_max_nnz: int | None,
    ) -> None:
        if linear_solver == "cholmod" and jacobian_max_nnz is None:
            raise ValueError("The CHOLMOD backend requires `jacobian_max_nnz`.")
        self.evaluate = evaluate
        self.num_state = num_state
        self.num_measurements = num_measurements
        self.linear_solver: LinearSolverType = linear_solver
        self.jacobian_max_nnz = jacobian_max_nnz
        self.evaluation_count = 0

    def __call__(self, p: jax.Array) -> OperatingPoint:
        """Evaluate the model at `p`. The returned point has no cached steps."""
        assert p.shape == (self.num_state,)
        x, jacobian = self.evaluate(p)
        x = jnp.asarray(x, dtype=p.dtype)
        if x.shape != (self.num_measurements,):
            raise ValueError(
                f"Expected residual of shape {(self.num_measurements,)}, got {x.shape}."
            )
        jacobian = self._check_jacobian(jacobian, p.dtype)

        if isinstance(jacobian, SparseCsrMatrix):
            jt_x = jacobian.transpose_multiply(x)
        else:
            jt_x = jacobian.T @ x

        self.evaluation_count += 1
        return OperatingPoint(
            p=p,
            x=x,
            norm2_x=float(jnp.sum(x**2)),
            jacobian=jacobian,
            jt_x=jt_x,
            evaluation_id=self.evaluation_count,
        )

    def _check_jacobian(self, jacobian: Jacobian, dtype: jnp.dtype) -> Jacobian:
        expected_shape = (self.num_measurements, self.num_state)
        if self.linear_solver == "cholmod":
            if not isinstance(jacobian, SparseCsrMatrix):
                raise ValueError(
                    "The CHOLMOD backend expects a `SparseCsrMatrix` Jacobian, got "
                    f"{type(jacobian).__name__}."
                )
            if jacobian.shape != expected_shape:
                raise ValueError(
                    f"Expected Jacobian of shape {expected_shape}, got {jacobian.shape}."
                )
            assert self.jacobian_max_nnz is not None
            if jacobian.nnz > self.jacobian_max_nnz:
                raise ValueError(
                    f"Jacobian has {jacobian.nnz} non-zero entries, more than the "
                    f"declared maximum of {self.jacobian_max_nnz}."
                )
            with jdc.copy_and_mutate(jacobian, validate=False) as jacobian:
                jacobian.values = jnp.asarray(jacobian.values, dtype=dtype)
            return jacobian

        if isinstance(jacobian, SparseCsrMatrix):
            raise ValueError(
                "The dense Cholesky backend expects a dense Jacobian array, got a "
                "`SparseCsrMatrix`."
            )
        jacobian = jnp.asarray(jacobian, dtype=dtype)
        if jacobian.shape != expected_shape:
            raise ValueError(
                f"Expected Jacobian of shape {expected_shape}, got {jacobian.shape}."
            )
        return jacobian
