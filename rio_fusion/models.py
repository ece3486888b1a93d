from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence
import logging
import numpy as np

logger = logging.getLogger("rio_fusion.models")

# Detections closer than this are dropped (bearing is ill-defined near the sensor).
MIN_DETECTION_DISTANCE = 0.1


@dataclass(frozen=True, eq=False)
class ImuSample:
    """One inertial measurement in the body frame.

    stamp is in seconds; acceleration [m/s^2] and angular velocity [rad/s]
    are stored as float arrays so they can be handed to GTSAM directly.
    """
    stamp: float
    linear_acceleration: np.ndarray
    angular_velocity: np.ndarray
    frame_id: str = "imu"

    def __post_init__(self):
        object.__setattr__(self, "linear_acceleration", np.asarray(self.linear_acceleration, dtype=float).reshape(3))
        object.__setattr__(self, "angular_velocity", np.asarray(self.angular_velocity, dtype=float).reshape(3))

    def zero_order_hold(self, stamp: float) -> "ImuSample":
        """Return a copy of this sample re-stamped at `stamp`."""
        return ImuSample(stamp, self.linear_acceleration, self.angular_velocity, self.frame_id)


@dataclass(frozen=True, eq=False)
class OdometryMeasurement:
    """Reference trajectory sample: body pose in I and body-frame velocity."""
    stamp: float
    T_IB: "gtsam.Pose3"
    B_v_IB: np.ndarray

    def __post_init__(self):
        object.__setattr__(self, "B_v_IB", np.asarray(self.B_v_IB, dtype=float).reshape(3))

    def I_v_IB(self) -> np.ndarray:
        return np.asarray(self.T_IB.rotation().rotate(self.B_v_IB), dtype=float)


@dataclass(frozen=True)
class RadarDetection:
    """Single radar target: position in the sensor frame and radial velocity."""
    x: float
    y: float
    z: float
    velocity: float

    def position(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    def distance(self) -> float:
        return float(np.linalg.norm(self.position()))


@dataclass
class RadarTrack:
    """Persistent landmark observed by the radar.

    The `added` flag is flipped once the landmark has been seeded in the
    estimate. Tracks are shared by reference between Propagations, so the
    flag survives copies and re-integration.
    """
    track_id: int
    R_p_RT: np.ndarray
    added: bool = False

    def __post_init__(self):
        self.R_p_RT = np.asarray(self.R_p_RT, dtype=float).reshape(3)

    def is_added(self) -> bool:
        return self.added

    def set_added(self) -> None:
        self.added = True


@dataclass
class RadarScan:
    stamp: float
    detections: List[RadarDetection] = field(default_factory=list)

    def has_motion(self) -> bool:
        return any(d.velocity != 0 for d in self.detections)


def filter_detections(detections: Iterable[RadarDetection],
                      min_distance: float = MIN_DETECTION_DISTANCE) -> List[RadarDetection]:
    """Drop detections closer than `min_distance` to the sensor."""
    kept = []
    for det in detections:
        dist = det.distance()
        if dist < min_distance:
            logger.warning("Ignoring radar measurement with detection distance %.4f", dist)
            continue
        kept.append(det)
    return kept


def trim_static_scans(scans: Sequence[RadarScan]) -> List[RadarScan]:
    """Remove empty scans and the static head/tail of a recording.

    Leading and trailing scans whose detections all report zero radial
    velocity are dropped, keeping the last static scan before motion starts
    and the first static scan after it ends.
    """
    out = [s for s in scans if s.detections]
    if len(out) < len(scans):
        logger.info("Removed %d radar scans with no detections.", len(scans) - len(out))
    if not out:
        return out
    start = next((i for i, s in enumerate(out) if s.has_motion()), None)
    if start is None:
        logger.warning("No radar scan with non-zero velocity found.")
        return []
    end = next(i for i in range(len(out) - 1, -1, -1) if out[i].has_motion())
    start = max(start - 1, 0)
    end = min(end + 1, len(out) - 1)
    logger.info("Removing %d static radar scans at start and %d at end.", start, len(out) - 1 - end)
    return out[start:end + 1]
