"""Configuration dataclasses for the estimation core.

Each config knows how to build the GTSAM objects it parameterizes, so the
surrounding node only has to fill in numbers (from YAML, ROS parameters or
code) and hand the result over.
"""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Sequence, Tuple
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .models import MIN_DETECTION_DISTANCE
from .robust import diagonal_from_sigmas, gaussian_from_covariance, isotropic, robustify

logger = logging.getLogger("rio_fusion.config")

Vec3 = Tuple[float, float, float]


def _from_dict(cls, data: Optional[Dict[str, Any]]):
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def _set(obj, setter: str, value) -> None:
    # Setter names drift between GTSAM wheels; missing optional ones are skipped.
    if hasattr(obj, setter):
        getattr(obj, setter)(value)
    else:
        logger.debug("%s has no %s; leaving default", type(obj).__name__, setter)


@dataclass
class PreintegrationConfig:
    gravity: float = 9.81
    accelerometer_sigma: float = 1e-2
    gyroscope_sigma: float = 1e-3
    integration_sigma: float = 1e-7
    bias_acc_random_walk: float = 1e-4
    bias_omega_random_walk: float = 1e-5
    bias_init_sigma: float = 1e-3
    initial_bias_acc: Vec3 = (0.0, 0.0, 0.0)
    initial_bias_gyro: Vec3 = (0.0, 0.0, 0.0)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PreintegrationConfig":
        return _from_dict(cls, data)

    def make_params(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build preintegration params")
        params = gtsam.PreintegrationCombinedParams.MakeSharedU(self.gravity)
        I3 = np.eye(3)
        params.setAccelerometerCovariance(self.accelerometer_sigma ** 2 * I3)
        params.setGyroscopeCovariance(self.gyroscope_sigma ** 2 * I3)
        params.setIntegrationCovariance(self.integration_sigma ** 2 * I3)
        _set(params, "setBiasAccCovariance", self.bias_acc_random_walk ** 2 * I3)
        _set(params, "setBiasOmegaCovariance", self.bias_omega_random_walk ** 2 * I3)
        _set(params, "setBiasAccOmegaInit", self.bias_init_sigma ** 2 * np.eye(6))
        return params

    def initial_bias(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build IMU bias")
        return gtsam.imuBias.ConstantBias(np.array(self.initial_bias_acc, dtype=float),
                                          np.array(self.initial_bias_gyro, dtype=float))


@dataclass
class NoiseConfig:
    prior_rotation_sigma: float = 0.05
    prior_position_sigma: float = 0.01
    prior_velocity_sigma: float = 0.1
    prior_bias_acc_sigma: float = 0.1
    prior_bias_gyro_sigma: float = 0.01
    radar_doppler_sigma: float = 0.05
    radar_track_bearing_sigma: float = 0.05
    radar_track_range_sigma: float = 0.1
    # Full [bearing, bearing, range] covariance; overrides the sigmas above.
    radar_track_covariance: Optional[Sequence[Sequence[float]]] = None
    baro_height_sigma: float = 0.5
    robust_kind: Optional[str] = None
    robust_k: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "NoiseConfig":
        return _from_dict(cls, data)

    def prior_pose(self):
        # Pose3 tangent ordering is [rotation, translation].
        return diagonal_from_sigmas([self.prior_rotation_sigma] * 3 + [self.prior_position_sigma] * 3)

    def prior_velocity(self):
        return isotropic(3, self.prior_velocity_sigma)

    def prior_bias(self):
        return diagonal_from_sigmas([self.prior_bias_acc_sigma] * 3 + [self.prior_bias_gyro_sigma] * 3)

    def radar_doppler(self):
        return robustify(isotropic(1, self.radar_doppler_sigma), self.robust_kind, self.robust_k)

    def radar_track(self):
        if self.radar_track_covariance is not None:
            base = gaussian_from_covariance(np.asarray(self.radar_track_covariance, dtype=float))
        else:
            base = diagonal_from_sigmas([self.radar_track_bearing_sigma] * 2 + [self.radar_track_range_sigma])
        return robustify(base, self.robust_kind, self.robust_k)

    def baro_height(self):
        return isotropic(1, self.baro_height_sigma)


@dataclass
class SmootherConfig:
    lag: float = 3.0
    relinearize_threshold: float = 0.01
    relinearize_skip: int = 1
    find_unused_factor_slots: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SmootherConfig":
        return _from_dict(cls, data)


@dataclass
class OptimizationConfig:
    preintegration: PreintegrationConfig = field(default_factory=PreintegrationConfig)
    noise: NoiseConfig = field(default_factory=NoiseConfig)
    smoother: SmootherConfig = field(default_factory=SmootherConfig)
    min_detection_distance: float = MIN_DETECTION_DISTANCE

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OptimizationConfig":
        data = dict(data or {})
        return cls(
            preintegration=PreintegrationConfig.from_dict(data.pop("preintegration", None)),
            noise=NoiseConfig.from_dict(data.pop("noise", None)),
            smoother=SmootherConfig.from_dict(data.pop("smoother", None)),
            **{k: v for k, v in data.items() if k == "min_detection_distance"},
        )


@dataclass
class CalibrationConfig:
    """Batch radar-IMU extrinsic calibration settings."""
    loop_closure_rotation_sigma: float = 0.01
    loop_closure_position_sigma: float = 0.05
    zero_velocity_sigma: float = 1e-3
    # Weak priors fixing the gauge of the first pose and of the extrinsic guess.
    first_pose_rotation_sigma: float = 1.0
    first_pose_position_sigma: float = 1.0
    extrinsic_rotation_sigma: float = 1.0
    extrinsic_position_sigma: float = 1.0
    max_iterations: int = 100
    min_detection_distance: float = MIN_DETECTION_DISTANCE

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CalibrationConfig":
        return _from_dict(cls, data)

    def loop_closure(self):
        return diagonal_from_sigmas([self.loop_closure_rotation_sigma] * 3 + [self.loop_closure_position_sigma] * 3)

    def zero_velocity(self):
        return isotropic(3, self.zero_velocity_sigma)

    def first_pose(self):
        return diagonal_from_sigmas([self.first_pose_rotation_sigma] * 3 + [self.first_pose_position_sigma] * 3)

    def extrinsic(self):
        return diagonal_from_sigmas([self.extrinsic_rotation_sigma] * 3 + [self.extrinsic_position_sigma] * 3)
