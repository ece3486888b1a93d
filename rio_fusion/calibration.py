"""Batch radar-IMU extrinsic calibration.

A recording with a reference trajectory (odometry), raw IMU and radar scans
becomes one nonlinear least-squares problem: a pose, velocity and bias per
radar scan, combined IMU factors between consecutive scans, a Doppler factor
per detection and a loop closure between the first and last pose. The
recording has to start and end at rest in the same place. All scans share
the extrinsic variable ``C(0)``, solved with Levenberg-Marquardt.
"""
import bisect
from dataclasses import dataclass, field
from typing import List, Optional, Sequence
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .config import CalibrationConfig, NoiseConfig, PreintegrationConfig
from .errors import CalibrationError
from .factors import make_doppler_extrinsic_factor
from .graph import B, C, V, X
from .models import ImuSample, OdometryMeasurement, RadarScan, filter_detections, trim_static_scans
from .preintegration import Preintegration

logger = logging.getLogger("rio_fusion.calibration")


@dataclass
class CalibrationResult:
    B_T_BR: "gtsam.Pose3"
    bias: "gtsam.imuBias.ConstantBias"
    num_scans: int
    num_doppler_factors: int
    initial_error: float
    final_error: float
    iterations: int
    values: "gtsam.Values" = field(repr=False)


def _first_at_or_after(stamps: List[float], t: float) -> Optional[int]:
    i = bisect.bisect_left(stamps, t)
    return i if i < len(stamps) else None


def preprocess_scans(scans: Sequence[RadarScan], min_distance: float) -> List[RadarScan]:
    """Drop close detections, empty scans and the static head/tail of the recording."""
    filtered = [RadarScan(s.stamp, filter_detections(s.detections, min_distance)) for s in scans]
    return trim_static_scans(filtered)


def integrate_between(integrator: Preintegration, samples: Sequence[ImuSample], stamps: List[float],
                      t0: float, t1: float) -> Preintegration:
    """Integrate raw IMU over [t0, t1].

    Each sample is held until the next one; the first sample at or after t0
    is moved back to t0 and the last interval is cut at t1.
    """
    i = bisect.bisect_left(stamps, t0)
    j = max(bisect.bisect_left(stamps, t1), i + 1)
    for k in range(i, min(j, len(samples))):
        start = t0 if k == i else stamps[k]
        end = t1 if k == j - 1 else stamps[k + 1]
        if end <= start:
            continue
        sample = samples[k]
        integrator = integrator.integrate(sample.linear_acceleration, sample.angular_velocity, end - start)
    return integrator


def calibrate_radar_extrinsics(imu: Sequence[ImuSample], odometry: Sequence[OdometryMeasurement],
                               scans: Sequence[RadarScan], initial_B_T_BR: "gtsam.Pose3", *,
                               preintegration: Optional[PreintegrationConfig] = None,
                               noise: Optional[NoiseConfig] = None,
                               config: Optional[CalibrationConfig] = None) -> CalibrationResult:
    """Estimate the radar extrinsic B_T_BR and the IMU bias from one recording."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot calibrate")
    preintegration = preintegration or PreintegrationConfig()
    noise = noise or NoiseConfig()
    config = config or CalibrationConfig()

    imu = sorted(imu, key=lambda s: s.stamp)
    odometry = sorted(odometry, key=lambda o: o.stamp)
    scans = preprocess_scans(sorted(scans, key=lambda s: s.stamp), config.min_detection_distance)
    if not imu or not odometry or not scans:
        raise CalibrationError("Calibration needs IMU, odometry and moving radar scans.")

    t_start = max(imu[0].stamp, odometry[0].stamp, scans[0].stamp)
    imu = [s for s in imu if s.stamp >= t_start]
    odometry = [o for o in odometry if o.stamp >= t_start]
    scans = [s for s in scans if s.stamp >= t_start]
    logger.info("Calibrating from %.3f s with %d IMU, %d odometry and %d radar messages.",
                t_start, len(imu), len(odometry), len(scans))
    imu_stamps = [s.stamp for s in imu]
    odom_stamps = [o.stamp for o in odometry]

    graph = gtsam.NonlinearFactorGraph()
    values = gtsam.Values()
    zero_bias = gtsam.imuBias.ConstantBias()
    doppler_noise = noise.radar_doppler()
    values.insert(C(0), initial_B_T_BR)
    graph.add(gtsam.PriorFactorPose3(C(0), initial_B_T_BR, config.extrinsic()))

    stamps: List[float] = []
    num_doppler = 0
    for scan in scans:
        o = _first_at_or_after(odom_stamps, scan.stamp)
        k = _first_at_or_after(imu_stamps, scan.stamp)
        if o is None or k is None:
            logger.warning("No odometry or IMU after radar scan at %.3f s, skipping.", scan.stamp)
            continue
        idx = len(stamps)
        values.insert(X(idx), odometry[o].T_IB)
        values.insert(V(idx), odometry[o].I_v_IB())
        values.insert(B(idx), zero_bias)
        omega = imu[k].angular_velocity
        for det in scan.detections:
            graph.add(make_doppler_extrinsic_factor(X(idx), V(idx), B(idx), C(0), det.position(),
                                                    det.velocity, omega, doppler_noise))
            num_doppler += 1
        stamps.append(scan.stamp)
    if len(stamps) < 2:
        raise CalibrationError(f"Need at least two usable radar scans, got {len(stamps)}.")

    params = preintegration.make_params()
    for idx in range(len(stamps) - 1):
        integrator = integrate_between(Preintegration(params, zero_bias), imu, imu_stamps,
                                       stamps[idx], stamps[idx + 1])
        graph.add(gtsam.CombinedImuFactor(X(idx), V(idx), X(idx + 1), V(idx + 1),
                                          B(idx), B(idx + 1), integrator.to_gtsam()))

    last = len(stamps) - 1
    graph.add(gtsam.BetweenFactorPose3(X(0), X(last), gtsam.Pose3(), config.loop_closure()))
    graph.add(gtsam.PriorFactorVector(V(0), np.zeros(3), config.zero_velocity()))
    graph.add(gtsam.PriorFactorVector(V(last), np.zeros(3), config.zero_velocity()))
    graph.add(gtsam.PriorFactorPose3(X(0), values.atPose3(X(0)), config.first_pose()))
    graph.add(gtsam.PriorFactorConstantBias(B(0), zero_bias, noise.prior_bias()))

    lm_params = gtsam.LevenbergMarquardtParams()
    lm_params.setMaxIterations(int(config.max_iterations))
    initial_error = float(graph.error(values))
    optimizer = gtsam.LevenbergMarquardtOptimizer(graph, values, lm_params)
    try:
        result = optimizer.optimize()
    except RuntimeError as exc:
        raise CalibrationError(f"Calibration did not solve: {exc}") from exc
    final_error = float(graph.error(result))
    logger.info("Calibration error %.6g -> %.6g after %d iterations (%d scans, %d Doppler factors).",
                initial_error, final_error, optimizer.iterations(), len(stamps), num_doppler)

    return CalibrationResult(
        B_T_BR=result.atPose3(C(0)),
        bias=result.atConstantBias(B(0)),
        num_scans=len(stamps),
        num_doppler_factors=num_doppler,
        initial_error=initial_error,
        final_error=final_error,
        iterations=int(optimizer.iterations()),
        values=result,
    )
