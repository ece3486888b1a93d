"""Exception types raised by the estimation core."""


class RioError(RuntimeError):
    """Base class for estimation-core failures."""


class PropagationError(RioError):
    """Raised when an inertial sample cannot be integrated into a Propagation."""


class TemporalInconsistencyError(PropagationError):
    """Raised when a timestamp does not fit the time span of a Propagation."""


class NonPositiveIntervalError(TemporalInconsistencyError):
    """Raised when the interval to the previous sample is zero or negative."""

    def __init__(self, dt: float):
        kind = "Zero" if dt == 0 else "Negative"
        super().__init__(f"{kind} dt ({dt:.9f}s), skipping IMU integration.")
        self.dt = dt

    @property
    def is_zero(self) -> bool:
        return self.dt == 0


class SolverError(RioError):
    """Raised inside the background solve when the smoother update fails."""


class CalibrationError(RioError):
    """Raised when the extrinsic calibration has too little data or does not solve."""
