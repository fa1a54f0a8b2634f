from __future__ import annotations

import jax
import jax_dataclasses as jdc
import numpy as onp
from jax import numpy as jnp

from ._operating_point import EvaluateFn
from ._sparse_matrices import SparseCsrMatrix


@jdc.pytree_dataclass
class GradientCheckResult:
    """Reported vs numerically observed Jacobian column for one state variable."""

    ivar: jdc.Static[int]
    gradient_reported: jax.Array
    """Column `ivar` of the Jacobian returned by the model. Shape `(num_measurements,)`."""
    gradient_observed: jax.Array
    """Central-difference estimate of the same column."""
    error: jax.Array
    error_relative: jax.Array
    """`error` divided by the mean magnitude of the two gradients. Zero where both
    gradients are zero."""

    def format_table(self) -> str:
        """Format as a whitespace-separated table, one row per measurement."""
        lines = [
            "# ivar imeasurement gradient_reported gradient_observed error error_relative"
        ]
        columns = onp.stack(
            [
                onp.asarray(self.gradient_reported),
                onp.asarray(self.gradient_observed),
                onp.asarray(self.error),
                onp.asarray(self.error_relative),
            ],
            axis=-1,
        )
        for imeasurement, (reported, observed, error, relative) in enumerate(columns):
            lines.append(
                f"{self.ivar} {imeasurement} {reported:.6g} {observed:.6g} "
                f"{error:.6g} {relative:.6g}"
            )
        return "\n".join(lines) + "\n"


def check_gradient(
    p: jax.Array | onp.ndarray,
    evaluate: EvaluateFn,
    ivar: int,
    delta: float = 1e-6,
) -> GradientCheckResult:
    """Compare the model's Jacobian against numerical differentiation.

    Useful for debugging hand-written Jacobians. Variable `ivar` is perturbed by
    `+/- delta / 2` around `p`; every residual is checked.
    """
    p = jnp.array(p, dtype=jnp.result_type(float))
    if p.ndim != 1:
        raise ValueError(f"Expected a 1D state vector, got {p.shape}.")
    if not 0 <= ivar < p.shape[0]:
        raise ValueError(f"Variable index {ivar} out of range for {p.shape[0]} states.")

    x, jacobian = evaluate(p)
    if isinstance(jacobian, SparseCsrMatrix):
        jacobian = jacobian.to_dense()
    jacobian = jnp.asarray(jacobian, dtype=p.dtype)
    if jacobian.shape != (jnp.shape(x)[0], p.shape[0]):
        raise ValueError(
            f"Expected Jacobian of shape {(jnp.shape(x)[0], p.shape[0])}, "
            f"got {jacobian.shape}."
        )
    gradient_reported = jacobian[:, ivar]

    x_plus, _ = evaluate(p.at[ivar].add(delta / 2.0))
    x_minus, _ = evaluate(p.at[ivar].add(-delta / 2.0))
    gradient_observed = (
        jnp.asarray(x_plus, dtype=p.dtype) - jnp.asarray(x_minus, dtype=p.dtype)
    ) / delta

    error = jnp.abs(gradient_observed - gradient_reported)
    scale = (jnp.abs(gradient_observed) + jnp.abs(gradient_reported)) / 2.0
    error_relative = jnp.where(
        scale > 0.0, error / jnp.where(scale > 0.0, scale, 1.0), 0.0
    )
    return GradientCheckResult(
        ivar=ivar,
        gradient_reported=gradient_reported,
        gradient_observed=gradient_observed,
        error=error,
        error_relative=error_relative,
    )
