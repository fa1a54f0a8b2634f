"""Powell's dogleg step construction.

Reference:
> METHODS FOR NON-LINEAR LEAST SQUARES PROBLEMS, Madsen et al 2004.
> pg. 30~32
"""

from __future__ import annotations

import math
from typing import Literal

import jax
import jax_dataclasses as jdc
from jax import numpy as jnp

from ._linear_solvers import LinearSolverBase
from ._operating_point import CachedStep, OperatingPoint

StepKind = Literal["gauss_newton", "cauchy", "interpolated"]


def compute_cauchy_step(point: OperatingPoint) -> CachedStep:
    """Steepest-descent step of optimal length.

    Along the gradient direction `J^T x`, the cost `||x + k J J^T x||^2` is
    minimized at `k = -||J^T x||^2 / ||J J^T x||^2`."""
    norm2_jt_x = float(jnp.sum(point.jt_x**2))
    if norm2_jt_x == 0.0:
        return CachedStep(step=jnp.zeros_like(point.jt_x), lensq=0.0)
    norm2_j_jt_x = float(jnp.sum(point.jacobian_multiply(point.jt_x) ** 2))
    k = -norm2_jt_x / norm2_j_jt_x
    return CachedStep(step=k * point.jt_x, lensq=k * k * norm2_jt_x)


def compute_dogleg_step(
    cauchy: CachedStep,
    gauss_newton: CachedStep,
    radius: float,
) -> tuple[jax.Array, bool, StepKind]:
    """Blend the Cauchy and Gauss-Newton steps for a trust region `radius`.

    Returns the step, whether it lies on the trust-region edge, and which
    segment of the dogleg path it came from."""
    radius_sq = radius**2

    # Use GN if it's within trust region.
    if gauss_newton.lensq <= radius_sq:
        return gauss_newton.step, False, "gauss_newton"

    # Use normed Cauchy step if neither are within trust region.
    if cauchy.lensq >= radius_sq:
        if radius <= 0.0:
            return jnp.zeros_like(cauchy.step), True, "cauchy"
        return cauchy.step * (radius / math.sqrt(cauchy.lensq)), True, "cauchy"

    # Otherwise, find beta in (0, 1] with ||a + beta (b - a)|| = radius. We
    # pick the positive root of the quadratic, in whichever form avoids
    # cancellation.
    a = cauchy.step
    b_minus_a = gauss_newton.step - a
    c = float(jnp.sum(a * b_minus_a))
    b_minus_a_norm_sq = float(jnp.sum(b_minus_a**2))
    radius_sq_minus_a_norm_sq = radius_sq - cauchy.lensq
    sqrt_c_sq_plus = math.sqrt(
        max(c**2 + b_minus_a_norm_sq * radius_sq_minus_a_norm_sq, 0.0)
    )
    if c <= 0.0:
        beta = (-c + sqrt_c_sq_plus) / b_minus_a_norm_sq
    else:
        beta = radius_sq_minus_a_norm_sq / (c + sqrt_c_sq_plus)
    return a + beta * b_minus_a, True, "interpolated"


def propose_step(
    point: OperatingPoint,
    radius: float,
    linear_solver: LinearSolverBase,
) -> tuple[OperatingPoint, jax.Array, StepKind]:
    """Compute the dogleg step from `point`, filling in its step caches.

    Cached Cauchy and Gauss-Newton steps are reused when present, so retrying
    with a smaller radius only redoes the blend. Returns the updated point."""
    with jdc.copy_and_mutate(point, validate=False) as point:
        if point.cauchy is None:
            point.cauchy = compute_cauchy_step(point)
        if point.gauss_newton is None:
            point.gauss_newton = linear_solver.compute_gauss_newton_step(point)
        step, reached_edge, kind = compute_dogleg_step(
            point.cauchy, point.gauss_newton, radius
        )
        point.reached_trust_region_edge = reached_edge
    return point, step, kind


def compute_predicted_reduction(point: OperatingPoint, step: jax.Array) -> float:
    """Cost reduction predicted by the linearized model at `point`:

    `||x||^2 - ||x + J step||^2 = -2 step^T J^T x - ||J step||^2`"""
    return float(
        -2.0 * jnp.dot(point.jt_x, step)
        - jnp.sum(point.jacobian_multiply(step) ** 2)
    )
