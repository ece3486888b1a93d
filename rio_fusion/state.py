from dataclasses import dataclass, replace
from typing import Optional
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .models import ImuSample
from .preintegration import Preintegration


@dataclass(frozen=True, eq=False)
class State:
    """Kinematic snapshot at one IMU sample.

    Frame naming follows A_x_BC: quantity x of frame C w.r.t. B expressed in A,
    with I the inertial (odometry) frame and B the body/IMU frame.
    """
    frame_id: str
    I_p_IB: np.ndarray
    R_IB: "gtsam.Rot3"
    I_v_IB: np.ndarray
    imu: Optional[ImuSample]
    integrator: Preintegration
    baro_height_bias: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "I_p_IB", np.asarray(self.I_p_IB, dtype=float).reshape(3))
        object.__setattr__(self, "I_v_IB", np.asarray(self.I_v_IB, dtype=float).reshape(3))

    @classmethod
    def from_pose(cls, frame_id: str, pose: "gtsam.Pose3", velocity, imu: Optional[ImuSample],
                  integrator: Preintegration, baro_height_bias: Optional[float] = None) -> "State":
        return cls(frame_id, np.asarray(pose.translation(), dtype=float), pose.rotation(),
                   velocity, imu, integrator, baro_height_bias)

    @property
    def stamp(self) -> Optional[float]:
        return None if self.imu is None else self.imu.stamp

    def pose(self) -> "gtsam.Pose3":
        return gtsam.Pose3(self.R_IB, self.I_p_IB)

    def nav_state(self) -> "gtsam.NavState":
        return gtsam.NavState(self.pose(), self.I_v_IB)

    def bias(self):
        return self.integrator.bias_hat()

    def with_integrator(self, integrator: Preintegration) -> "State":
        return replace(self, integrator=integrator)
