import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from rio_fusion.preintegration import Preintegration


def test_integrate_returns_new_accumulator(params):
    empty = Preintegration(params)
    one = empty.integrate([0.0, 0.0, 9.81], [0.0, 0.0, 0.1], 0.01)
    two = one.integrate([0.0, 0.0, 9.81], [0.0, 0.0, 0.1], 0.02)

    assert len(empty) == 0
    assert len(one) == 1
    assert len(two) == 2
    assert two.delta_t == pytest.approx(0.03)
    assert two.to_gtsam().deltaTij() == pytest.approx(0.03)
    assert one.to_gtsam().deltaTij() == pytest.approx(0.01)


def test_reset_keeps_or_replaces_bias(params):
    bias = gtsam.imuBias.ConstantBias(np.array([0.1, 0.0, 0.0]), np.zeros(3))
    integrated = Preintegration(params, bias).integrate(np.zeros(3), np.zeros(3), 0.01)

    reset = integrated.reset_integration()
    assert len(reset) == 0
    np.testing.assert_allclose(np.asarray(reset.bias_hat().accelerometer()), [0.1, 0.0, 0.0])

    other = gtsam.imuBias.ConstantBias(np.zeros(3), np.array([0.0, 0.0, 0.2]))
    rebiased = integrated.reset_integration_and_set_bias(other)
    assert len(rebiased) == 0
    np.testing.assert_allclose(np.asarray(rebiased.bias_hat().gyroscope()), [0.0, 0.0, 0.2])


def test_predict_free_fall(params):
    integrator = Preintegration(params)
    for _ in range(10):
        integrator = integrator.integrate(np.zeros(3), np.zeros(3), 0.01)

    nav = integrator.predict(gtsam.NavState(gtsam.Pose3(), np.zeros(3)))

    np.testing.assert_allclose(np.asarray(nav.velocity()), [0.0, 0.0, -0.981], atol=1e-8)
    np.testing.assert_allclose(np.asarray(nav.pose().translation()), [0.0, 0.0, -0.5 * 9.81 * 0.01], atol=1e-8)


def test_each_accumulator_owns_its_gtsam_object(params):
    base = Preintegration(params).integrate(np.zeros(3), np.zeros(3), 0.01)
    left = base.integrate(np.zeros(3), np.zeros(3), 0.01)
    right = base.integrate(np.zeros(3), np.zeros(3), 0.05)

    assert left.to_gtsam() is not base.to_gtsam()
    assert base.delta_t == pytest.approx(0.01)
    assert left.delta_t == pytest.approx(0.02)
    assert right.delta_t == pytest.approx(0.06)
    assert base.reset_integration().delta_t == 0.0
