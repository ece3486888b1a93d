from typing import Dict, Optional
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .config import SmootherConfig
from .errors import SolverError

logger = logging.getLogger("rio_fusion.smoother")


def _incremental_smoother_class():
    # Older wheels ship the fixed-lag smoothers in gtsam_unstable only.
    cls = getattr(gtsam, "IncrementalFixedLagSmoother", None)
    if cls is None:
        import gtsam_unstable
        cls = gtsam_unstable.IncrementalFixedLagSmoother
    return cls


def _key_timestamp_map(stamps: Dict[int, float]):
    out = gtsam.FixedLagSmootherKeyTimestampMap()
    for key, t in stamps.items():
        try:
            out.insert((key, t))
        except TypeError:
            out.insert(gtsam.FixedLagSmootherKeyTimestampMapValue(key, t))
    return out


class FixedLagSmoother:
    """Thin adapter around GTSAM's IncrementalFixedLagSmoother (API-compatible across wheels).

    Tracks the timestamp of every live key itself: the wrapped
    KeyTimestampMap is not iterable from Python on all wheels. Keys that no
    longer appear in the estimate have been marginalized and are dropped.
    """

    def __init__(self, cfg: Optional[SmootherConfig] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run fixed-lag smoother")
        cfg = cfg or SmootherConfig()
        params = gtsam.ISAM2Params()

        def _set(obj, prop: str, value, setter: Optional[str] = None):
            if hasattr(obj, prop):
                try:
                    setattr(obj, prop, value); return
                except Exception:
                    pass
            if setter and hasattr(obj, setter):
                getattr(obj, setter)(value)

        _set(params, "relinearizeThreshold", cfg.relinearize_threshold, "setRelinearizeThreshold")
        _set(params, "relinearizeSkip", cfg.relinearize_skip, "setRelinearizeSkip")
        _set(params, "findUnusedFactorSlots", cfg.find_unused_factor_slots)

        self.lag = float(cfg.lag)
        self._smoother = _incremental_smoother_class()(self.lag, params)
        self._timestamps: Dict[int, float] = {}
        self._estimate = gtsam.Values()

    def update(self, graph: "gtsam.NonlinearFactorGraph", values: "gtsam.Values",
               stamps: Dict[int, float]) -> None:
        try:
            self._smoother.update(graph, values, _key_timestamp_map(stamps))
            estimate = self._smoother.calculateEstimate()
        except Exception as exc:
            raise SolverError(f"Fixed-lag smoother update failed: {exc}") from exc
        self._timestamps.update({int(k): float(t) for k, t in stamps.items()})
        live = {int(k) for k in estimate.keys()}
        self._timestamps = {k: t for k, t in self._timestamps.items() if k in live}
        self._estimate = estimate

    def calculate_estimate(self) -> "gtsam.Values":
        return self._estimate

    def timestamps(self) -> Dict[int, float]:
        return dict(self._timestamps)
