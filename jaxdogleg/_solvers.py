from __future__ import annotations

import dataclasses
import enum
import functools
import math
from typing import Any, Literal

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

from ._dogleg import StepKind, compute_predicted_reduction, propose_step
from ._linear_solvers import RegularizationConfig, make_linear_solver
from ._operating_point import (
    EvaluateFn,
    EvaluatorAdapter,
    LinearSolverType,
    OperatingPoint,
)
from .utils import log, warn

ConvergenceCriterion = Literal["initial_gradient", "gradient", "update", "radius"]


class TerminationReason(enum.Enum):
    CONVERGED = "converged"
    ITERATION_LIMIT = "iteration_limit"


@functools.cache
def _warn_x64_disabled() -> None:
    warn(
        "jax_enable_x64 is off; solving in float32. Default tolerances assume "
        "float64, consider `jax.config.update('jax_enable_x64', True)`."
    )


@jdc.pytree_dataclass
class TrustRegionConfig:
    radius_initial: float = 1.0e3
    """Initial trust region radius. Rejecting a too-large region is cheap, so
    this should be large: say 10x the length of an expected step."""
    decrease_factor: float = 0.1
    """Factor to shrink the radius by when the model fits poorly."""
    decrease_threshold: float = 0.25
    """We shrink the radius if step quality is below this value, or if the step
    was rejected."""
    increase_factor: float = 2.0
    """Factor to grow the radius by when the model fits well."""
    increase_threshold: float = 0.75
    """We grow the radius if step quality is above this value and the step was
    clipped by the trust region."""
    step_quality_min: float = 0.0
    """Steps are accepted if step quality exceeds this value and the cost drops."""

    def _update_radius(
        self,
        radius: float,
        step_quality: float,
        accepted: bool,
        point: OperatingPoint,
    ) -> float:
        """Resize the trust region after evaluating a step proposed from `point`."""
        if not accepted or step_quality < self.decrease_threshold:
            # If the trust region wasn't limiting the step, first drop the radius
            # to the length of the step we actually took.
            if not point.reached_trust_region_edge:
                assert point.gauss_newton is not None
                radius = math.sqrt(point.gauss_newton.lensq)
            return radius * self.decrease_factor
        if step_quality > self.increase_threshold and point.reached_trust_region_edge:
            return radius * self.increase_factor
        return radius


@jdc.pytree_dataclass
class TerminationConfig:
    # Termination criteria. Set a tolerance to a value <= 0 to disable it.
    max_iterations: jdc.Static[int] = 100
    """Maximum number of trial steps, accepted or rejected."""
    gradient_tolerance: float = 1e-8
    """We terminate if `norm_inf(J^T x) < gradient_tolerance`."""
    update_tolerance: float = 1e-8
    """We terminate if `norm_inf(step) < update_tolerance` for an accepted step."""
    radius_tolerance: float = 1e-8
    """We terminate if the trust region radius drops below `radius_tolerance`."""

    def _check_gradient(self, point: OperatingPoint) -> bool:
        gradient_mag = float(jnp.max(jnp.abs(point.jt_x)))
        # An exactly zero gradient admits no descent step, tolerance or not.
        return gradient_mag == 0.0 or (
            self.gradient_tolerance > 0.0 and gradient_mag < self.gradient_tolerance
        )

    def _check_convergence(
        self,
        point: OperatingPoint,
        outcome: StepOutcome,
    ) -> ConvergenceCriterion | None:
        """Check for convergence after a trial step. `point` is the current
        (post-step) before-step operating point."""
        if outcome.accepted:
            if self._check_gradient(point):
                return "gradient"
            if (
                self.update_tolerance > 0.0
                and float(jnp.max(jnp.abs(outcome.step))) < self.update_tolerance
            ):
                return "update"
        if self.radius_tolerance > 0.0 and outcome.radius < self.radius_tolerance:
            return "radius"
        return None


@jdc.pytree_dataclass
class StepOutcome:
    """Result of one trial step of the trust region loop."""

    step: jax.Array
    step_kind: jdc.Static[StepKind]
    accepted: jdc.Static[bool]
    actual_reduction: float
    predicted_reduction: float
    step_quality: float
    """Ratio of actual to predicted reduction, often denoted $$\\rho$$. NaN if the
    predicted reduction was not positive."""
    radius: float
    """Trust region radius after resizing."""


@jdc.pytree_dataclass
class SolveSummary:
    iterations: int
    """Number of trial steps evaluated."""
    accepted_steps: int
    termination: jdc.Static[TerminationReason]
    converged_criterion: jdc.Static[ConvergenceCriterion | None]
    cost_history: jax.Array
    """Cost of the accepted point after each trial step. Entry 0 is the initial
    cost."""
    radius_history: jax.Array
    lambda_history: jax.Array
    accepted_history: jax.Array


class SolverContext:
    """Mutable state of one optimization session.

    Between steps, `before_step` holds the last accepted operating point.
    `after_step` is scratch space used while evaluating a trial step; outside
    the stepping routine, use `before_step`."""

    def __init__(
        self,
        p0: jax.Array | onp.ndarray,
        evaluate: EvaluateFn,
        num_measurements: int,
        linear_solver: LinearSolverType = "dense_cholesky",
        jacobian_max_nnz: int | None = None,
        regularization: RegularizationConfig = RegularizationConfig(),
        verbose: bool = False,
    ) -> None:
        p0 = jnp.array(p0, dtype=jnp.result_type(float))
        if p0.ndim != 1 or p0.shape[0] == 0:
            raise ValueError(f"Expected a non-empty 1D state vector, got {p0.shape}.")
        if p0.dtype != jnp.float64:
            _warn_x64_disabled()

        self.num_state = p0.shape[0]
        self.num_measurements = num_measurements
        self.linear_solver_type: LinearSolverType = linear_solver
        self._evaluator = EvaluatorAdapter(
            evaluate,
            num_state=self.num_state,
            num_measurements=num_measurements,
            linear_solver=linear_solver,
            jacobian_max_nnz=jacobian_max_nnz,
        )
        self._linear_solver = make_linear_solver(linear_solver, regularization, verbose)
        self._closed = False

        self.before_step: OperatingPoint = self._evaluator(p0)
        self.after_step: OperatingPoint | None = None

    def __enter__(self) -> SolverContext:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def lambd(self) -> float:
        """Regularization added to the diagonal of `J^T J`. Never decreases."""
        return self._linear_solver.lambd

    @property
    def factorization(self) -> Any:
        """Last computed factorization of `J^T J + lambda I`. This is not
        necessarily from `before_step`; see `factorization_is_current()`."""
        self._check_open()
        return self._linear_solver.factorization

    def factorization_is_current(self, point: OperatingPoint | None = None) -> bool:
        """Check if the cached factorization was computed from `point`, which
        defaults to `before_step`."""
        self._check_open()
        return self._linear_solver.is_current(
            self.before_step if point is None else point
        )

    def compute_jtj_factorization(self, point: OperatingPoint | None = None) -> None:
        """Make sure the cached factorization belongs to `point`, which defaults
        to `before_step`. Most callers never need this."""
        self._check_open()
        point = self.before_step if point is None else point
        if not self._linear_solver.is_current(point):
            self._linear_solver.factorize(point)

    def propose_step(self, radius: float) -> tuple[jax.Array, StepKind]:
        """Compute the dogleg step from `before_step` for a trust region radius."""
        self._check_open()
        self.before_step, step, kind = propose_step(
            self.before_step, radius, self._linear_solver
        )
        return step, kind

    def evaluate(self, p: jax.Array) -> OperatingPoint:
        """Evaluate the model at `p` into `after_step`."""
        self._check_open()
        self.after_step = self._evaluator(p)
        return self.after_step

    def accept_step(self) -> None:
        """Promote `after_step` to `before_step`."""
        self._check_open()
        assert self.after_step is not None
        self.before_step, self.after_step = self.after_step, self.before_step

    def close(self) -> None:
        """Release the factorization and operating points. Safe to call twice."""
        if self._closed:
            return
        self._linear_solver.close()
        self.after_step = None
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Solver context has already been closed.")


@jdc.pytree_dataclass
class DoglegResult:
    p: jax.Array
    """Optimized state vector."""
    cost: float
    """Final cost, `||x||^2`."""
    termination: jdc.Static[TerminationReason]
    summary: SolveSummary
    context: SolverContext | None
    """Live solver context if one was requested. The caller must `close()` it."""


@jdc.pytree_dataclass
class DoglegSolver:
    """Powell's dogleg trust region method for nonlinear least squares."""

    linear_solver: jdc.Static[LinearSolverType] = "dense_cholesky"
    trust_region: TrustRegionConfig = jdc.field(default_factory=TrustRegionConfig)
    termination: TerminationConfig = jdc.field(default_factory=TerminationConfig)
    regularization: RegularizationConfig = jdc.field(default_factory=RegularizationConfig)
    verbose: jdc.Static[bool] = False
    """Set to `True` to log solver progress."""

    def make_context(
        self,
        p0: jax.Array | onp.ndarray,
        evaluate: EvaluateFn,
        num_measurements: int,
        jacobian_max_nnz: int | None = None,
    ) -> SolverContext:
        """Create a solver context and evaluate the initial point."""
        return SolverContext(
            p0,
            evaluate,
            num_measurements,
            linear_solver=self.linear_solver,
            jacobian_max_nnz=jacobian_max_nnz,
            regularization=self.regularization,
            verbose=self.verbose,
        )

    def solve(
        self,
        p0: jax.Array | onp.ndarray,
        evaluate: EvaluateFn,
        num_measurements: int,
        jacobian_max_nnz: int | None = None,
        return_context: bool = False,
    ) -> DoglegResult:
        """Minimize `||x(p)||^2` starting from `p0`.

        Args:
            p0: Initial state estimate, shape `(num_state,)`.
            evaluate: Model returning the residual and its Jacobian at a state.
            num_measurements: Length of the residual vector.
            jacobian_max_nnz: Upper bound on Jacobian non-zeros. Required by the
                CHOLMOD backend.
            return_context: If `True`, the solver context is left open and
                returned with the result. The caller is then responsible for
                closing it.
        """
        context = self.make_context(p0, evaluate, num_measurements, jacobian_max_nnz)
        try:
            summary = self._run(context)
        except BaseException:
            context.close()
            raise

        result = DoglegResult(
            p=context.before_step.p,
            cost=context.before_step.norm2_x,
            termination=summary.termination,
            summary=summary,
            context=context if return_context else None,
        )
        if not return_context:
            context.close()
        return result

    def step(self, context: SolverContext, radius: float) -> StepOutcome:
        """Propose, evaluate, and accept or reject one trial step."""
        step, step_kind = context.propose_step(radius)
        before = context.before_step
        after = context.evaluate(before.p + step)

        actual_reduction = before.norm2_x - after.norm2_x
        predicted_reduction = compute_predicted_reduction(before, step)
        if predicted_reduction > 0.0:
            step_quality = actual_reduction / predicted_reduction
        else:
            step_quality = math.nan
        accepted = (
            predicted_reduction > 0.0
            and step_quality > self.trust_region.step_quality_min
            and actual_reduction > 0.0
        )

        radius = self.trust_region._update_radius(
            radius, step_quality, accepted, before
        )
        if accepted:
            context.accept_step()

        return StepOutcome(
            step=step,
            step_kind=step_kind,
            accepted=accepted,
            actual_reduction=actual_reduction,
            predicted_reduction=predicted_reduction,
            step_quality=step_quality,
            radius=radius,
        )

    def _run(self, context: SolverContext) -> SolveSummary:
        radius = self.trust_region.radius_initial
        cost_history = [context.before_step.norm2_x]
        radius_history = [radius]
        lambda_history = [context.lambd]
        accepted_history = [False]
        iterations = 0
        accepted_steps = 0
        criterion: ConvergenceCriterion | None = None

        if self.verbose:
            log("Initial cost={:.6e} radius={:.3e}", context.before_step.norm2_x, radius)

        if self.termination._check_gradient(context.before_step):
            criterion = "initial_gradient"
        else:
            # Allow the first step to grow the trust region.
            with jdc.copy_and_mutate(context.before_step, validate=False) as point:
                point.reached_trust_region_edge = True
            context.before_step = point

        while criterion is None and iterations < self.termination.max_iterations:
            outcome = self.step(context, radius)
            iterations += 1
            accepted_steps += int(outcome.accepted)
            radius = outcome.radius

            cost_history.append(context.before_step.norm2_x)
            radius_history.append(radius)
            lambda_history.append(context.lambd)
            accepted_history.append(outcome.accepted)

            if self.verbose:
                log(
                    " step #{}: {} cost={:.6e} rho={:.3f} {} radius={:.3e} lambd={:.3e}",
                    iterations,
                    outcome.step_kind,
                    context.before_step.norm2_x,
                    outcome.step_quality,
                    "accepted" if outcome.accepted else "rejected",
                    radius,
                    context.lambd,
                )
            criterion = self.termination._check_convergence(
                context.before_step, outcome
            )

        termination = (
            TerminationReason.ITERATION_LIMIT
            if criterion is None
            else TerminationReason.CONVERGED
        )
        if self.verbose:
            log(
                "Terminated @ iteration #{}: cost={:.6e} reason={} criterion={}",
                iterations,
                context.before_step.norm2_x,
                termination.value,
                criterion,
            )

        return SolveSummary(
            iterations=iterations,
            accepted_steps=accepted_steps,
            termination=termination,
            converged_criterion=criterion,
            cost_history=jnp.array(cost_history),
            radius_history=jnp.array(radius_history),
            lambda_history=jnp.array(lambda_history),
            accepted_history=jnp.array(accepted_history),
        )


def optimize(
    p0: jax.Array | onp.ndarray,
    evaluate: EvaluateFn,
    num_measurements: int,
    jacobian_max_nnz: int,
    solver: DoglegSolver | None = None,
    return_context: bool = False,
) -> DoglegResult:
    """Optimize with sparse Jacobians, using CHOLMOD for linear solves.

    `evaluate` must return the Jacobian as a `SparseCsrMatrix` with at most
    `jacobian_max_nnz` non-zero entries."""
    solver = DoglegSolver() if solver is None else solver
    solver = dataclasses.replace(solver, linear_solver="cholmod")
    return solver.solve(
        p0,
        evaluate,
        num_measurements,
        jacobian_max_nnz=jacobian_max_nnz,
        return_context=return_context,
    )


def optimize_dense(
    p0: jax.Array | onp.ndarray,
    evaluate: EvaluateFn,
    num_measurements: int,
    solver: DoglegSolver | None = None,
    return_context: bool = False,
) -> DoglegResult:
    """Optimize with dense Jacobians of shape `(num_measurements, num_state)`."""
    solver = DoglegSolver() if solver is None else solver
    solver = dataclasses.replace(solver, linear_solver="dense_cholesky")
    return solver.solve(
        p0,
        evaluate,
        num_measurements,
        return_context=return_context,
    )
