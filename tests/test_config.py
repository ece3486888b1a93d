import logging

import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from rio_fusion.config import (CalibrationConfig, NoiseConfig, OptimizationConfig, PreintegrationConfig,
                               SmootherConfig)
from rio_fusion.robust import make_spd, robustify, isotropic


def test_from_dict_builds_nested_configs(caplog):
    with caplog.at_level(logging.WARNING, logger="rio_fusion.config"):
        cfg = OptimizationConfig.from_dict({
            "preintegration": {"gravity": 9.80665, "accelerometer_sigma": 0.02},
            "noise": {"radar_doppler_sigma": 0.1, "robust_kind": "huber", "bogus": 1},
            "smoother": {"lag": 5.0},
            "min_detection_distance": 0.2,
        })

    assert cfg.preintegration.gravity == pytest.approx(9.80665)
    assert cfg.preintegration.accelerometer_sigma == pytest.approx(0.02)
    assert cfg.noise.robust_kind == "huber"
    assert cfg.smoother.lag == pytest.approx(5.0)
    assert cfg.min_detection_distance == pytest.approx(0.2)
    assert "bogus" in caplog.text


def test_defaults():
    cfg = OptimizationConfig.from_dict(None)
    assert cfg.smoother == SmootherConfig()
    assert cfg.min_detection_distance == pytest.approx(0.1)


def test_preintegration_params_and_bias():
    cfg = PreintegrationConfig(initial_bias_gyro=(0.01, 0.0, -0.01))
    params = cfg.make_params()
    np.testing.assert_allclose(np.asarray(params.getAccelerometerCovariance()),
                               cfg.accelerometer_sigma ** 2 * np.eye(3))
    np.testing.assert_allclose(np.asarray(cfg.initial_bias().gyroscope()), [0.01, 0.0, -0.01])


def test_noise_model_dimensions():
    noise = NoiseConfig()
    assert noise.prior_pose().dim() == 6
    assert noise.prior_velocity().dim() == 3
    assert noise.prior_bias().dim() == 6
    assert noise.radar_doppler().dim() == 1
    assert noise.radar_track().dim() == 3
    assert noise.baro_height().dim() == 1


def test_robust_kernels():
    base = isotropic(1, 0.1)
    assert robustify(base, None) is base
    assert robustify(base, "none") is base
    assert isinstance(robustify(base, "cauchy"), gtsam.noiseModel.Robust)
    assert isinstance(NoiseConfig(robust_kind="huber").radar_doppler(), gtsam.noiseModel.Robust)
    with pytest.raises(ValueError):
        robustify(base, "tukey-ish")


def test_make_spd_repairs_singular_covariance():
    cov = make_spd(np.diag([1.0, 0.0, 0.0]))
    np.linalg.cholesky(cov)


def test_track_noise_from_full_covariance():
    cov = [[0.01, 0.0, 0.0], [0.0, 0.01, 0.0], [0.0, 0.0, 0.04]]
    model = NoiseConfig(radar_track_covariance=cov).radar_track()
    assert model.dim() == 3
    np.testing.assert_allclose(np.asarray(model.sigmas()), [0.1, 0.1, 0.2], atol=1e-6)


def test_calibration_config_noise_models():
    cfg = CalibrationConfig.from_dict({"loop_closure_position_sigma": 0.2, "max_iterations": 20})

    assert cfg.max_iterations == 20
    assert cfg.loop_closure().dim() == 6
    np.testing.assert_allclose(np.asarray(cfg.loop_closure().sigmas())[3:], [0.2] * 3)
    assert cfg.zero_velocity().dim() == 3
    assert cfg.first_pose().dim() == 6
    assert cfg.extrinsic().dim() == 6
