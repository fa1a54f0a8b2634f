import numpy as onp
import pytest
from jax import numpy as jnp
from overrides import overrides

import jaxdogleg
from jaxdogleg._operating_point import EvaluatorAdapter


def _make_adapter(A: onp.ndarray, b: onp.ndarray, sparse: bool = False):
    def evaluate(p):
        x = jnp.asarray(A) @ p - jnp.asarray(b)
        if sparse:
            return x, jaxdogleg.SparseCsrMatrix.from_dense(A)
        return x, jnp.asarray(A)

    return EvaluatorAdapter(
        evaluate,
        num_state=A.shape[1],
        num_measurements=A.shape[0],
        linear_solver="cholmod" if sparse else "dense_cholesky",
        jacobian_max_nnz=A.size if sparse else None,
    )


class _CountingDenseSolver(jaxdogleg.DenseCholeskySolver):
    def __init__(self) -> None:
        super().__init__(jaxdogleg.RegularizationConfig(), verbose=False)
        self.factorize_calls = 0

    @overrides
    def _try_factorize(self, jacobian: jaxdogleg.Jacobian, lambd: float) -> bool:
        self.factorize_calls += 1
        return super()._try_factorize(jacobian, lambd)


def test_dense_gauss_newton_step():
    rng = onp.random.default_rng(0)
    A = rng.standard_normal((10, 4))
    b = rng.standard_normal(10)
    point = _make_adapter(A, b)(jnp.zeros(4))

    solver = jaxdogleg.DenseCholeskySolver(
        jaxdogleg.RegularizationConfig(), verbose=False
    )
    gauss_newton = solver.compute_gauss_newton_step(point)

    expected = -onp.linalg.solve(A.T @ A, A.T @ (-b))
    onp.testing.assert_allclose(gauss_newton.step, expected, rtol=1e-8)
    assert gauss_newton.lensq == pytest.approx(float(expected @ expected))
    assert solver.lambd == 0.0

    L = solver.factorization
    onp.testing.assert_allclose(L @ L.T, A.T @ A, rtol=1e-8, atol=1e-10)


def test_singular_jtj_raises_lambda():
    # Second state variable never appears in the residual.
    A = onp.array([[1.0, 0.0], [2.0, 0.0], [1.0, 0.0]])
    b = onp.array([1.0, 2.0, 3.0])
    adapter = _make_adapter(A, b)
    point = adapter(jnp.zeros(2))

    solver = jaxdogleg.DenseCholeskySolver(
        jaxdogleg.RegularizationConfig(), verbose=False
    )
    gauss_newton = solver.compute_gauss_newton_step(point)
    assert solver.lambd == pytest.approx(1e-10)
    assert bool(jnp.all(jnp.isfinite(gauss_newton.step)))
    assert float(gauss_newton.step[1]) == 0.0

    # Lambda is never lowered, even for later well-conditioned factorizations.
    well_conditioned = _make_adapter(onp.eye(2), onp.ones(2))(jnp.zeros(2))
    solver.factorize(well_conditioned)
    assert solver.lambd == pytest.approx(1e-10)


class _FailingDenseSolver(jaxdogleg.DenseCholeskySolver):
    """Reports the first `num_failures` factorizations as singular."""

    def __init__(self, num_failures: int) -> None:
        super().__init__(
            jaxdogleg.RegularizationConfig(lambda_initial=1e-10, lambda_factor=10.0),
            verbose=False,
        )
        self.num_failures = num_failures
        self.lambdas_tried: list[float] = []

    @overrides
    def _try_factorize(self, jacobian: jaxdogleg.Jacobian, lambd: float) -> bool:
        self.lambdas_tried.append(lambd)
        if len(self.lambdas_tried) <= self.num_failures:
            return False
        return super()._try_factorize(jacobian, lambd)


def test_lambda_ratchet_schedule():
    point = _make_adapter(onp.eye(2), onp.ones(2))(jnp.zeros(2))

    solver = _FailingDenseSolver(num_failures=3)
    solver.factorize(point)
    onp.testing.assert_allclose(solver.lambdas_tried, [0.0, 1e-10, 1e-9, 1e-8])
    assert solver.lambd == pytest.approx(1e-8)
    assert solver.is_current(point)

    # The next factorization starts from the ratcheted value.
    solver.factorize(_make_adapter(onp.eye(2), onp.ones(2))(jnp.ones(2)))
    assert solver.lambdas_tried[-1] == pytest.approx(1e-8)
    assert solver.lambd == pytest.approx(1e-8)


def test_factorization_staleness():
    rng = onp.random.default_rng(1)
    A = rng.standard_normal((6, 3))
    b = rng.standard_normal(6)
    adapter = _make_adapter(A, b)
    point0 = adapter(jnp.zeros(3))
    point1 = adapter(jnp.ones(3))
    assert point0.evaluation_id != point1.evaluation_id

    solver = _CountingDenseSolver()
    assert not solver.is_current(point0)

    solver.compute_gauss_newton_step(point0)
    assert solver.is_current(point0)
    assert not solver.is_current(point1)
    assert solver.factorize_calls == 1

    # Reusing the same point does not refactorize.
    solver.compute_gauss_newton_step(point0)
    assert solver.factorize_calls == 1

    solver.compute_gauss_newton_step(point1)
    assert solver.is_current(point1)
    assert not solver.is_current(point0)
    assert solver.factorize_calls == 2

    solver.close()
    assert not solver.is_current(point1)
    assert solver.factorization is None


def test_cholmod_matches_dense():
    pytest.importorskip("sksparse.cholmod")

    rng = onp.random.default_rng(2)
    A = rng.standard_normal((20, 5)) * rng.integers(low=0, high=2, size=(20, 5))
    A[:5, :] += onp.eye(5)
    b = rng.standard_normal(20)

    dense_point = _make_adapter(A, b)(jnp.zeros(5))
    sparse_point = _make_adapter(A, b, sparse=True)(jnp.zeros(5))

    dense = jaxdogleg.DenseCholeskySolver(
        jaxdogleg.RegularizationConfig(), verbose=False
    )
    cholmod = jaxdogleg.CholmodSolver(jaxdogleg.RegularizationConfig(), verbose=False)

    onp.testing.assert_allclose(
        cholmod.compute_gauss_newton_step(sparse_point).step,
        dense.compute_gauss_newton_step(dense_point).step,
        rtol=1e-6,
        atol=1e-8,
    )
    assert cholmod.is_current(sparse_point)
    assert cholmod.factorization is not None

    cholmod.close()
    assert cholmod.factorization is None


def test_cholmod_singular_jtj_raises_lambda():
    pytest.importorskip("sksparse.cholmod")

    # Second state variable never appears, so its column of J is empty.
    A = onp.array([[1.0, 0.0], [2.0, 0.0], [1.0, 0.0]])
    b = onp.array([1.0, 2.0, 3.0])
    point = _make_adapter(A, b, sparse=True)(jnp.zeros(2))
    assert point.jacobian.nnz == 3

    solver = jaxdogleg.CholmodSolver(jaxdogleg.RegularizationConfig(), verbose=False)
    gauss_newton = solver.compute_gauss_newton_step(point)
    assert solver.lambd == pytest.approx(1e-10)
    assert bool(jnp.all(jnp.isfinite(gauss_newton.step)))
    assert float(gauss_newton.step[0]) == pytest.approx(8.0 / 6.0)
    assert float(gauss_newton.step[1]) == pytest.approx(0.0)
