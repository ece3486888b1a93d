import numpy as np
import pytest

gtsam = pytest.importorskip("gtsam")

from rio_fusion.config import NoiseConfig, PreintegrationConfig
from rio_fusion.graph import X
from rio_fusion.models import ImuSample
from rio_fusion.preintegration import Preintegration
from rio_fusion.propagation import Propagation
from rio_fusion.state import State

GRAVITY = 9.81
IMU_DT = 0.01


class InMemorySmoother:
    """Deterministic stand-in for the fixed-lag smoother.

    Keeps every inserted value, optionally shifts freshly inserted poses by
    `pose_shift` (so corrected segments are recognizable) and drops keys
    older than `lag` behind the newest timestamp.
    """

    def __init__(self, lag=None, pose_shift=(0.0, 0.0, 0.0), fail=False, block=None):
        self.lag = lag
        self.pose_shift = np.asarray(pose_shift, dtype=float)
        self.fail = fail
        self.block = block
        self.updates = 0
        self.factor_count = 0
        self._estimate = gtsam.Values()
        self._timestamps = {}
        self._pose_keys = {X(i) for i in range(200)}

    def update(self, graph, values, stamps):
        if self.block is not None:
            self.block.wait(5.0)
        if self.fail:
            raise RuntimeError("indeterminant linear system")
        fresh = gtsam.Values(values)
        for key in fresh.keys():
            if key in self._pose_keys:
                pose = fresh.atPose3(key)
                fresh.update(key, gtsam.Pose3(pose.rotation(),
                                              np.asarray(pose.translation()) + self.pose_shift))
        self._estimate.insert(fresh)
        self._timestamps.update(stamps)
        self.factor_count += int(graph.size())
        self.updates += 1
        if self.lag is not None and self._timestamps:
            cutoff = max(self._timestamps.values()) - self.lag
            for key in [k for k, t in self._timestamps.items() if t < cutoff]:
                del self._timestamps[key]
                if self._estimate.exists(key):
                    self._estimate.erase(key)

    def calculate_estimate(self):
        return self._estimate

    def timestamps(self):
        return dict(self._timestamps)


@pytest.fixture
def smoother_cls():
    return InMemorySmoother


@pytest.fixture
def params():
    return PreintegrationConfig(gravity=GRAVITY).make_params()


@pytest.fixture
def noise():
    return NoiseConfig()


@pytest.fixture
def still_sample():
    """Sample of a body at rest (specific force cancels gravity)."""
    def _make(stamp):
        return ImuSample(stamp, np.array([0.0, 0.0, GRAVITY]), np.zeros(3))
    return _make


@pytest.fixture
def make_state(params, still_sample):
    def _make(stamp=0.0, position=(0.0, 0.0, 0.0), velocity=(0.0, 0.0, 0.0), baro_height_bias=None):
        integrator = Preintegration(params, gtsam.imuBias.ConstantBias())
        return State("odom", np.asarray(position, dtype=float), gtsam.Rot3(), np.asarray(velocity, dtype=float),
                     still_sample(stamp), integrator, baro_height_bias)
    return _make


@pytest.fixture
def still_propagation(make_state, still_sample):
    """Propagation at rest sampled every IMU_DT from t0 to t1 (inclusive)."""
    def _make(t0, t1, first_state_idx, **state_kwargs):
        propagation = Propagation(make_state(t0, **state_kwargs), first_state_idx)
        n = int(round((t1 - t0) / IMU_DT))
        for k in range(1, n + 1):
            propagation.add_imu_measurement(still_sample(t0 + k * IMU_DT))
        return propagation
    return _make
