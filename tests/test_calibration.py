import logging

import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from rio_fusion.calibration import calibrate_radar_extrinsics, integrate_between, preprocess_scans
from rio_fusion.errors import CalibrationError
from rio_fusion.factors import doppler_prediction, make_doppler_extrinsic_factor
from rio_fusion.graph import B, C, V, X
from rio_fusion.models import ImuSample, OdometryMeasurement, RadarDetection, RadarScan
from rio_fusion.preintegration import Preintegration
from rio_fusion.robust import isotropic

GRAVITY = 9.81
# Out-and-back along body x: v = A sin(w t) on [0, T], at rest afterwards.
A = 1.0
T = 2.0
W = 2.0 * np.pi / T
TARGETS = [np.array(p) for p in ([10.0, 5.0, 1.0], [8.0, -6.0, 0.5], [-7.0, 4.0, -1.0],
                                 [-9.0, -5.0, 2.0], [3.0, 10.0, 0.0], [4.0, -9.0, -0.5])]


def _velocity(t):
    return A * np.sin(W * t) if t <= T else 0.0


def _position(t):
    return A / W * (1.0 - np.cos(W * t)) if t <= T else 0.0


def _acceleration(t):
    return A * W * np.cos(W * t) if t < T else 0.0


def _body_pose(t):
    return gtsam.Pose3(gtsam.Rot3(), np.array([_position(t), 0.0, 0.0]))


def _recording(B_T_BR, end=2.2):
    imu_dt = 1.0 / 200.0
    imu = [ImuSample(k / 200.0, [_acceleration(k / 200.0 + 0.5 * imu_dt), 0.0, GRAVITY], np.zeros(3))
           for k in range(int(round((end + 0.1) * 200)) + 1)]
    odometry = [OdometryMeasurement(k / 100.0, _body_pose(k / 100.0), [_velocity(k / 100.0), 0.0, 0.0])
                for k in range(int(round((end + 0.1) * 100)) + 1)]

    near = RadarDetection(0.03, 0.0, 0.0, 0.0)
    scans = []
    for k in range(int(round(end * 10)) + 1):
        t = k / 10.0
        T_IR = _body_pose(t).compose(B_T_BR)
        detections = [near]
        for target in TARGETS:
            R_p_RT = np.asarray(T_IR.transformTo(target), dtype=float)
            h = doppler_prediction(np.eye(3), np.array([_velocity(t), 0.0, 0.0]), np.zeros(3),
                                   np.zeros(3), R_p_RT, B_T_BR)[0]
            detections.append(RadarDetection(*R_p_RT, round(h, 6)))
        scans.append(RadarScan(t, detections))
    scans.append(RadarScan(1.05, [near]))
    return imu, odometry, scans


def _extrinsic(yaw):
    return gtsam.Pose3(gtsam.Rot3.Yaw(yaw), np.array([0.2, 0.1, 0.05]))


def test_calibration_recovers_extrinsic_rotation():
    truth = _extrinsic(0.3)
    imu, odometry, scans = _recording(truth)

    result = calibrate_radar_extrinsics(imu, odometry, scans, _extrinsic(0.2))

    # Scans 0.0 .. 2.0 s survive: static tail trimmed, empty scan removed.
    assert result.num_scans == 21
    assert result.num_doppler_factors == 21 * len(TARGETS)
    assert result.final_error < result.initial_error

    # Only the rotation of the body x axis into the radar frame is excited.
    ex = np.array([1.0, 0.0, 0.0])
    R_est = result.B_T_BR.rotation().matrix()
    R_true = truth.rotation().matrix()
    np.testing.assert_allclose(R_est.T @ ex, R_true.T @ ex, atol=1e-2)
    assert np.all(np.isfinite(result.bias.vector()))
    assert np.max(np.abs(result.bias.accelerometer())) < 0.05


def test_calibration_without_motion_fails():
    imu, odometry, _ = _recording(_extrinsic(0.3))
    static = [RadarScan(k / 10.0, [RadarDetection(5.0, 0.0, 0.0, 0.0)]) for k in range(5)]
    with pytest.raises(CalibrationError):
        calibrate_radar_extrinsics(imu, odometry, static, _extrinsic(0.3))


def test_preprocess_scans_filters_and_trims(caplog):
    moving = RadarDetection(5.0, 0.0, 0.0, 1.0)
    still = RadarDetection(5.0, 0.0, 0.0, 0.0)
    near = RadarDetection(0.01, 0.0, 0.0, 2.0)
    scans = [RadarScan(0.0, [still]), RadarScan(0.1, [still]), RadarScan(0.2, [moving, near]),
             RadarScan(0.3, [near]), RadarScan(0.4, [still]), RadarScan(0.5, [still])]

    with caplog.at_level(logging.INFO, logger="rio_fusion.models"):
        kept = preprocess_scans(scans, 0.1)

    assert [s.stamp for s in kept] == [0.1, 0.2, 0.4]
    assert kept[1].detections == [moving]


def test_integrate_between_holds_samples_over_the_interval(params):
    samples = [ImuSample(k * 0.01, [0.0, 0.0, GRAVITY], np.zeros(3)) for k in range(4)]
    stamps = [s.stamp for s in samples]

    integrator = integrate_between(Preintegration(params), samples, stamps, 0.005, 0.025)

    assert integrator.delta_t == pytest.approx(0.02)
    assert len(integrator) == 2


def test_doppler_extrinsic_factor_matches_fixed_extrinsic_prediction():
    B_T_BR = _extrinsic(0.3)
    R_IB = gtsam.Rot3.RzRyRx(0.1, -0.05, 0.4)
    v = np.array([1.0, 0.5, -0.2])
    omega = np.array([0.05, -0.1, 0.2])
    bias = gtsam.imuBias.ConstantBias(np.zeros(3), np.array([0.01, 0.0, -0.01]))
    R_p_RT = np.array([6.0, -2.0, 0.5])
    h = doppler_prediction(R_IB.matrix(), v, bias.gyroscope(), omega, R_p_RT, B_T_BR)[0]

    factor = make_doppler_extrinsic_factor(X(0), V(0), B(0), C(0), R_p_RT, h, omega, isotropic(1, 0.1))
    values = gtsam.Values()
    values.insert(X(0), gtsam.Pose3(R_IB, np.zeros(3)))
    values.insert(V(0), v)
    values.insert(B(0), bias)
    values.insert(C(0), B_T_BR)
    assert factor.error(values) == pytest.approx(0.0, abs=1e-12)
    rotated = gtsam.Values(values)
    rotated.update(C(0), _extrinsic(0.5))
    assert rotated.atPose3(C(0)).rotation().yaw() == pytest.approx(0.5)
    assert factor.error(rotated) > 1e-6
