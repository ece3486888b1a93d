"""IMU propagation segments.

A Propagation integrates IMU samples forward from one initial State. It is
the unit handed to the estimator: the first State is bound to graph node
``first_state_idx``; once a sensor event closes the segment, its latest State
is bound to ``last_state_idx``.
"""
from bisect import bisect_left
from typing import Iterator, List, Optional, Sequence, Tuple, Union
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import NonPositiveIntervalError, PropagationError, TemporalInconsistencyError
from .models import ImuSample, RadarDetection, RadarTrack
from .state import State

logger = logging.getLogger("rio_fusion.propagation")


class Propagation:
    """Ordered, appendable and splittable sequence of States."""

    def __init__(self,
                 initial_states: Union[State, Sequence[State]],
                 first_state_idx: int,
                 last_state_idx: Optional[int] = None):
        if isinstance(initial_states, State):
            initial_states = [initial_states]
        self._states: List[State] = list(initial_states)
        self._first_state_idx = int(first_state_idx)
        self._last_state_idx = None if last_state_idx is None else int(last_state_idx)

        # Sensor data attached to the latest State (set by the caller).
        self.radar_detections: Optional[List[RadarDetection]] = None
        self.radar_tracks: Optional[List[RadarTrack]] = None
        self.baro_height: Optional[float] = None
        self.B_T_BR: Optional["gtsam.Pose3"] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def first_state_idx(self) -> int:
        return self._first_state_idx

    @property
    def last_state_idx(self) -> Optional[int]:
        return self._last_state_idx

    @property
    def is_closed(self) -> bool:
        return self._last_state_idx is not None

    @property
    def states(self) -> Tuple[State, ...]:
        return tuple(self._states)

    @property
    def first_state(self) -> Optional[State]:
        return self._states[0] if self._states else None

    @property
    def latest_state(self) -> Optional[State]:
        return self._states[-1] if self._states else None

    def samples(self) -> List[ImuSample]:
        return [s.imu for s in self._states if s.imu is not None]

    def stamps(self) -> List[float]:
        return [s.imu.stamp for s in self._states if s.imu is not None]

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[State]:
        return iter(self._states)

    def __repr__(self) -> str:
        return (f"Propagation(first={self._first_state_idx}, last={self._last_state_idx}, "
                f"n={len(self._states)})")

    def copy(self) -> "Propagation":
        """Shallow copy with an independent state list.

        States are immutable, so sharing them is safe; tracks are shared on
        purpose so the landmark "added" flag stays global.
        """
        out = Propagation(self._states, self._first_state_idx, self._last_state_idx)
        out._attach_from(self)
        return out

    def _attach_from(self, other: "Propagation") -> None:
        self.radar_detections = other.radar_detections
        self.radar_tracks = other.radar_tracks
        self.baro_height = other.baro_height
        self.B_T_BR = other.B_T_BR

    # ------------------------------------------------------------------
    # Integration
    # ------------------------------------------------------------------
    def add_imu_measurement(self, sample: ImuSample) -> State:
        """Integrate `sample` and append the predicted State.

        Raises PropagationError (or NonPositiveIntervalError for dt <= 0)
        without modifying the Propagation.
        """
        if not self._states:
            raise PropagationError("No initial state, skipping IMU integration.")
        previous = self._states[-1]
        if previous.imu is None:
            raise PropagationError("Previous IMU measurement not complete, skipping IMU integration.")

        dt = sample.stamp - previous.imu.stamp
        if dt <= 0:
            err = NonPositiveIntervalError(dt)
            logger.warning("%s", err)
            raise err

        integrator = previous.integrator.integrate(sample.linear_acceleration, sample.angular_velocity, dt)
        prediction = integrator.predict(self._states[0].nav_state(), integrator.bias_hat())
        state = State.from_pose(previous.frame_id, prediction.pose(), prediction.velocity(),
                                sample, integrator, previous.baro_height_bias)
        self._states.append(state)
        return state

    def split(self, t: float, split_idx: int) -> Tuple["Propagation", "Propagation", int]:
        """Split the segment at time `t`.

        Returns ``(to_t, from_t, next_idx)``: ``to_t`` runs from the original
        start to a zero-order-hold sample at `t` and is closed with
        ``split_idx``; ``from_t`` starts at that boundary State, is opened
        with ``split_idx`` and keeps the original ``last_state_idx``.
        ``next_idx`` is ``split_idx + 1``, the next free node identifier.
        """
        if not self._states:
            raise PropagationError("No initial state, skipping split.")
        if self._states[0].imu is None:
            raise PropagationError("Initial state not complete, skipping split.")
        stamps = self.stamps()
        if t < stamps[0]:
            logger.debug("t is before first IMU measurement, skipping split.")
            raise TemporalInconsistencyError(f"Split time {t:.6f} before first IMU sample {stamps[0]:.6f}")
        if t > stamps[-1]:
            logger.debug("t is after last IMU measurement, skipping split.")
            raise TemporalInconsistencyError(f"Split time {t:.6f} after last IMU sample {stamps[-1]:.6f}")

        i1 = bisect_left(stamps, t)
        if i1 == 0:
            logger.warning("Failed to find IMU measurement after t, skipping split.")
            raise TemporalInconsistencyError(f"No IMU sample bracketing split time {t:.6f}")
        if i1 == len(stamps):
            logger.warning("Failed to find IMU measurement before t, skipping split.")
            raise TemporalInconsistencyError(f"No IMU sample bracketing split time {t:.6f}")
        state_0, state_1 = self._states[i1 - 1], self._states[i1]

        to_t = Propagation(self._states[:i1], self._first_state_idx, split_idx)
        if t > state_0.imu.stamp:
            to_t.add_imu_measurement(state_1.imu.zero_order_hold(t))
        else:
            logger.warning("Split before or exactly at measurement time. t_split: %.9f t_0: %.9f",
                           t, state_0.imu.stamp)

        boundary = to_t.latest_state
        initial = boundary.with_integrator(
            boundary.integrator.reset_integration_and_set_bias(boundary.integrator.bias_hat()))
        from_t = Propagation(initial, split_idx, self._last_state_idx)
        remaining = self._states[i1:]
        if t >= state_1.imu.stamp:
            logger.warning("Split after or exactly at measurement time. t_split: %.9f t_1: %.9f",
                           t, state_1.imu.stamp)
            remaining = remaining[1:]
        for state in remaining:
            from_t.add_imu_measurement(state.imu)

        return to_t, from_t, split_idx + 1

    def repropagate(self, initial_state: State) -> None:
        """Rebuild the whole segment from `initial_state`.

        Every original sample after the first is replayed. The segment is
        replaced only if all samples integrate; otherwise the error is
        re-raised and the Propagation is left untouched.
        """
        if not self._states:
            raise PropagationError("No initial state, skipping repropagation.")
        first = initial_state.with_integrator(initial_state.integrator.reset_integration())
        scratch = Propagation(first, self._first_state_idx, self._last_state_idx)
        for state in self._states[1:]:
            try:
                scratch.add_imu_measurement(state.imu)
            except PropagationError:
                logger.warning("Failed to add IMU message during repropagation.")
                raise
        self._states = scratch._states
