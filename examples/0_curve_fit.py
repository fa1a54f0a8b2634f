"""Fit an exponential decay `y = a * exp(-b * t) + c` to noisy samples.

Uses dense Jacobians, computed with `jax.jacfwd`. For a summary of options:

    python 0_curve_fit.py --help

"""

import jax
import jax.numpy as jnp
import jaxdogleg
import numpy as onp
import tyro

jax.config.update("jax_enable_x64", True)


def main(
    num_samples: int = 50,
    noise_std: float = 0.05,
    seed: int = 0,
    verbose: bool = True,
) -> None:
    rng = onp.random.default_rng(seed)
    params_true = onp.array([2.5, 1.3, 0.5])
    t = onp.linspace(0.0, 4.0, num_samples)
    y = (
        params_true[0] * onp.exp(-params_true[1] * t)
        + params_true[2]
        + rng.normal(scale=noise_std, size=num_samples)
    )

    def residual(params: jax.Array) -> jax.Array:
        return params[0] * jnp.exp(-params[1] * t) + params[2] - y

    residual_jacobian = jax.jit(jax.jacfwd(residual))
    residual = jax.jit(residual)

    def evaluate(params: jax.Array) -> tuple[jax.Array, jax.Array]:
        return residual(params), residual_jacobian(params)

    params_init = jnp.array([1.0, 0.1, 0.0])

    # Sanity check our Jacobian before solving.
    print(jaxdogleg.check_gradient(params_init, evaluate, ivar=1).format_table())

    with jaxdogleg.utils.stopwatch("Running solve"):
        result = jaxdogleg.optimize_dense(
            params_init,
            evaluate,
            num_measurements=num_samples,
            solver=jaxdogleg.DoglegSolver(verbose=verbose),
        )

    print(f"Termination: {result.termination.value}")
    print(f"Steps: {result.summary.accepted_steps} / {result.summary.iterations}")
    print(f"Final cost: {result.cost:.6e}")
    print(f"Estimated parameters: {onp.array(result.p)}")
    print(f"True parameters: {params_true}")


if __name__ == "__main__":
    tyro.cli(main)
