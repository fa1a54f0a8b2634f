from __future__ import annotations

import abc
import math
import warnings
from typing import TYPE_CHECKING, Any, assert_never

import jax
import jax.scipy.linalg
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp
from overrides import EnforceOverrides, overrides

from ._operating_point import CachedStep, Jacobian, LinearSolverType, OperatingPoint
from ._sparse_matrices import SparseCsrMatrix
from .utils import log

if TYPE_CHECKING:
    import sksparse.cholmod


@jdc.pytree_dataclass
class RegularizationConfig:
    """Diagonal damping applied once `J^T J` has been found singular.

    Lambda starts at zero. Every singular factorization raises it, and it is
    never lowered again for the lifetime of a solver context."""

    lambda_initial: float = 1e-10
    """Value lambda takes the first time a singular `J^T J` is seen."""
    lambda_factor: float = 10.0
    """Multiplier applied to lambda on each further singular `J^T J`."""


class LinearSolverBase(abc.ABC, EnforceOverrides):
    """Factorizes `J^T J + lambda I` and solves for Gauss-Newton steps.

    The cached factorization belongs to whichever operating point was factorized
    last, not necessarily the current one. `is_current()` reports which."""

    def __init__(self, regularization: RegularizationConfig, verbose: bool) -> None:
        self.regularization = regularization
        self.verbose = verbose
        self.lambd = 0.0
        self.factorized_evaluation_id: int | None = None

    def is_current(self, point: OperatingPoint) -> bool:
        """Check whether the cached factorization was computed from `point`."""
        return self.factorized_evaluation_id == point.evaluation_id

    def factorize(self, point: OperatingPoint) -> None:
        """Factorize `J^T J + lambda I` at `point`, raising lambda until the
        matrix is positive definite."""
        self.factorized_evaluation_id = None
        while not self._try_factorize(point.jacobian, self.lambd):
            if self.lambd == 0.0:
                self.lambd = self.regularization.lambda_initial
            else:
                self.lambd *= self.regularization.lambda_factor
            if not math.isfinite(self.lambd) or self.lambd <= 0.0:
                raise FloatingPointError(
                    f"Could not regularize J^T J; lambda reached {self.lambd}."
                )
            if self.verbose:
                log("Singular J^T J, retrying with lambda={:.3e}", self.lambd)
        self.factorized_evaluation_id = point.evaluation_id

    def compute_gauss_newton_step(self, point: OperatingPoint) -> CachedStep:
        """Solve `(J^T J) step = -J^T x`, factorizing only if the cache is stale."""
        if not self.is_current(point):
            self.factorize(point)
        step = -self._solve(point.jt_x)
        return CachedStep(step=step, lensq=float(jnp.sum(step**2)))

    def close(self) -> None:
        """Release the cached factorization."""
        self.factorized_evaluation_id = None

    @property
    @abc.abstractmethod
    def factorization(self) -> Any:
        """Most recently computed factorization, or `None`."""

    @abc.abstractmethod
    def _try_factorize(self, jacobian: Jacobian, lambd: float) -> bool:
        """Attempt a factorization. Returns `False` if `J^T J + lambd I` is not
        positive definite."""

    @abc.abstractmethod
    def _solve(self, rhs: jax.Array) -> jax.Array:
        """Solve `(J^T J + lambd I) out = rhs` with the cached factorization."""


class CholmodSolver(LinearSolverBase):
    """Sparse Cholesky via CHOLMOD. Runs on the host.

    Symbolic analysis is cached per sparsity pattern; numeric factorization
    reuses it in place."""

    def __init__(self, regularization: RegularizationConfig, verbose: bool) -> None:
        super().__init__(regularization, verbose)
        self._factor: sksparse.cholmod.Factor | None = None
        self._pattern_key: tuple[bytes, bytes, tuple[int, int]] | None = None

    @property
    @overrides
    def factorization(self) -> Any:
        """The `sksparse.cholmod.Factor` of `J^T J + lambda I`."""
        return self._factor

    @overrides
    def _try_factorize(self, jacobian: Jacobian, lambd: float) -> bool:
        import sksparse.cholmod

        assert isinstance(jacobian, SparseCsrMatrix)
        jt_scipy = jacobian.as_scipy_jt_csc()

        # Cache sparsity pattern analysis.
        pattern_key = (
            jt_scipy.indices.tobytes(),
            jt_scipy.indptr.tobytes(),
            jt_scipy.shape,
        )
        if self._factor is None or pattern_key != self._pattern_key:
            self._factor = sksparse.cholmod.analyze_AAt(jt_scipy)
            self._pattern_key = pattern_key

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", sksparse.cholmod.CholmodWarning)
            try:
                self._factor.cholesky_AAt_inplace(jt_scipy, beta=lambd)
            except sksparse.cholmod.CholmodNotPositiveDefiniteError:
                return False
        return True

    @overrides
    def _solve(self, rhs: jax.Array) -> jax.Array:
        assert self._factor is not None
        out = self._factor.solve_A(onp.asarray(rhs, dtype=onp.float64))
        return jnp.asarray(out, dtype=rhs.dtype)

    @overrides
    def close(self) -> None:
        super().close()
        self._factor = None
        self._pattern_key = None


class DenseCholeskySolver(LinearSolverBase):
    """Dense Cholesky of the assembled `J^T J`."""

    def __init__(self, regularization: RegularizationConfig, verbose: bool) -> None:
        super().__init__(regularization, verbose)
        self._cho_factor: tuple[jax.Array, bool] | None = None

    @property
    @overrides
    def factorization(self) -> Any:
        """Lower-triangular factor `L`, with `L L^T = J^T J + lambda I`."""
        if self._cho_factor is None:
            return None
        return jnp.tril(self._cho_factor[0])

    @overrides
    def _try_factorize(self, jacobian: Jacobian, lambd: float) -> bool:
        assert not isinstance(jacobian, SparseCsrMatrix)
        JTJ = jacobian.T @ jacobian
        diag_idx = jnp.arange(JTJ.shape[0])
        JTJ = JTJ.at[diag_idx, diag_idx].add(lambd)

        # A failed factorization is reported through NaNs or a zero pivot.
        cho_factor = jax.scipy.linalg.cho_factor(JTJ, lower=True)
        L = jnp.tril(cho_factor[0])
        if not bool(jnp.all(jnp.isfinite(L)) & jnp.all(jnp.diag(L) > 0.0)):
            self._cho_factor = None
            return False
        self._cho_factor = cho_factor
        return True

    @overrides
    def _solve(self, rhs: jax.Array) -> jax.Array:
        assert self._cho_factor is not None
        return jax.scipy.linalg.cho_solve(self._cho_factor, rhs)

    @overrides
    def close(self) -> None:
        super().close()
        self._cho_factor = None


def make_linear_solver(
    linear_solver: LinearSolverType,
    regularization: RegularizationConfig,
    verbose: bool,
) -> LinearSolverBase:
    if linear_solver == "cholmod":
        return CholmodSolver(regularization, verbose)
    elif linear_solver == "dense_cholesky":
        return DenseCholeskySolver(regularization, verbose)
    else:
        assert_never(linear_solver)
