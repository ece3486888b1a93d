"""Immutable facade over GTSAM's combined IMU preintegration.

GTSAM's ``PreintegratedCombinedMeasurements`` is a mutable C++ object while
States must never change once created and are shared between split
segments. Each ``Preintegration`` therefore owns one accumulator that is
never integrated in place: ``integrate`` copies it (``copy.copy`` yields an
independent C++ object; the wheels expose no copy constructor) and adds a
single measurement to the copy.
"""
import copy
from typing import Optional
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


class Preintegration:
    __slots__ = ("_params", "_bias", "_pim", "_count")

    def __init__(self, params, bias=None, pim=None, count: int = 0):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot preintegrate IMU")
        self._params = params
        self._bias = bias if bias is not None else gtsam.imuBias.ConstantBias()
        self._pim = pim if pim is not None else gtsam.PreintegratedCombinedMeasurements(params, self._bias)
        self._count = int(count)

    @property
    def params(self):
        return self._params

    @property
    def delta_t(self) -> float:
        return float(self._pim.deltaTij())

    def bias_hat(self):
        return self._bias

    def integrate(self, acc: np.ndarray, gyro: np.ndarray, dt: float) -> "Preintegration":
        """Return a new accumulator with one more measurement integrated."""
        pim = copy.copy(self._pim)
        pim.integrateMeasurement(np.asarray(acc, dtype=float).reshape(3),
                                 np.asarray(gyro, dtype=float).reshape(3), float(dt))
        return Preintegration(self._params, self._bias, pim, self._count + 1)

    def reset_integration(self) -> "Preintegration":
        return Preintegration(self._params, self._bias)

    def reset_integration_and_set_bias(self, bias) -> "Preintegration":
        return Preintegration(self._params, bias)

    def to_gtsam(self):
        """The GTSAM accumulator; treat as read-only (factors copy it)."""
        return self._pim

    def predict(self, nav_state, bias: Optional[object] = None):
        """Predict the NavState reached from `nav_state` after the integrated interval."""
        return self._pim.predict(nav_state, bias if bias is not None else self._bias)

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"Preintegration(n={self._count}, dt={self.delta_t:.4f})"
