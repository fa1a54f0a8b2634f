import numpy as onp
import pytest
from jax import numpy as jnp

import jaxdogleg


def _evaluate(p):
    x = jnp.array([p[0] ** 2, p[0] * p[1], jnp.sin(p[1])])
    J = jnp.array([[2.0 * p[0], 0.0], [p[1], p[0]], [0.0, jnp.cos(p[1])]])
    return x, J


def test_correct_jacobian():
    p = jnp.array([1.0, 2.0])
    for ivar in range(2):
        check = jaxdogleg.check_gradient(p, _evaluate, ivar)
        assert check.gradient_reported.shape == (3,)
        onp.testing.assert_allclose(
            check.gradient_observed, check.gradient_reported, atol=1e-6
        )
        assert float(jnp.max(check.error_relative)) < 1e-5


def test_wrong_jacobian_is_flagged():
    def evaluate(p):
        x, J = _evaluate(p)
        return x, J.at[1, 0].set(0.0)

    check = jaxdogleg.check_gradient(jnp.array([1.0, 2.0]), evaluate, ivar=0)
    assert float(check.error[1]) == pytest.approx(2.0, rel=1e-5)
    assert float(check.error_relative[1]) == pytest.approx(2.0, rel=1e-5)

    # Entries that are zero in both gradients have no relative error.
    assert float(check.error_relative[2]) == 0.0


def test_sparse_jacobian():
    def evaluate(p):
        x, J = _evaluate(p)
        return x, jaxdogleg.SparseCsrMatrix.from_dense(J)

    check = jaxdogleg.check_gradient(jnp.array([1.0, 2.0]), evaluate, ivar=1)
    onp.testing.assert_allclose(
        check.gradient_reported, [0.0, 1.0, onp.cos(2.0)], atol=1e-12
    )
    onp.testing.assert_allclose(
        check.gradient_observed, check.gradient_reported, atol=1e-6
    )


def test_format_table():
    check = jaxdogleg.check_gradient(jnp.array([1.0, 2.0]), _evaluate, ivar=1)
    lines = check.format_table().splitlines()

    assert lines[0] == (
        "# ivar imeasurement gradient_reported gradient_observed error error_relative"
    )
    assert len(lines) == 4
    for imeasurement, line in enumerate(lines[1:]):
        fields = line.split()
        assert len(fields) == 6
        assert fields[:2] == ["1", str(imeasurement)]
        float(fields[2])


def test_invalid_variable_index():
    with pytest.raises(ValueError):
        jaxdogleg.check_gradient(jnp.array([1.0, 2.0]), _evaluate, ivar=2)
