from typing import Dict, Tuple
import logging
from collections import Counter

try:
    import gtsam
except Exception:
    gtsam = None

logger = logging.getLogger("rio_fusion.graph")


def X(idx: int) -> int:
    """Pose key."""
    return gtsam.symbol("x", int(idx))


def V(idx: int) -> int:
    """Velocity key."""
    return gtsam.symbol("v", int(idx))


def B(idx: int) -> int:
    """IMU bias key."""
    return gtsam.symbol("b", int(idx))


def L(idx: int) -> int:
    """Radar landmark (track) key."""
    return gtsam.symbol("l", int(idx))


def C(idx: int) -> int:
    """Radar extrinsic key."""
    return gtsam.symbol("c", int(idx))


def key_repr(key: int) -> str:
    try:
        return str(gtsam.Symbol(key).string())
    except Exception:
        return str(key)


class GraphAccumulator:
    """Not-yet-submitted factors, initial values and node timestamps.

    Everything added here is handed to the smoother in one piece through
    `pop_batch`, which also resets the accumulator. Factor objects are never
    shared between two graphs.
    """

    def __init__(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build graph")
        self.graph = gtsam.NonlinearFactorGraph()
        self.values = gtsam.Values()
        self.timestamps: Dict[int, float] = {}
        self.counts = Counter()

    def add(self, factor, kind: str) -> None:
        self.graph.add(factor)
        self.counts[kind] += 1

    def insert(self, key: int, value, stamp: float) -> bool:
        """Insert an initial estimate and its timestamp; False if already present."""
        if self.values.exists(key):
            logger.warning("Initial value for %s already queued; keeping the first one.", key_repr(key))
            return False
        self.values.insert(key, value)
        self.timestamps[key] = float(stamp)
        return True

    def stamp(self, key: int, stamp: float) -> None:
        self.timestamps[key] = float(stamp)

    def size(self) -> int:
        return int(self.graph.size())

    def empty(self) -> bool:
        return self.graph.size() == 0 and self.values.size() == 0 and not self.timestamps

    def pop_batch(self) -> Tuple["gtsam.NonlinearFactorGraph", "gtsam.Values", Dict[int, float]]:
        """Return (graph, values, timestamps) and reset for the next batch."""
        batch = (self.graph, self.values, self.timestamps)
        self.graph = gtsam.NonlinearFactorGraph()
        self.values = gtsam.Values()
        self.timestamps = {}
        return batch
