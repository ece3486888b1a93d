"""Sliding-window optimization over IMU propagations.

Graph building runs on the caller's thread and only appends to the
GraphAccumulator. `solve` hands the accumulated batch plus a snapshot of the
trajectory to one background thread, which updates the fixed-lag smoother
and re-integrates every Propagation still inside the window from its
corrected first state. `get_result` then reconciles the caller's (newer)
trajectory with that solution.
"""
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, MutableSequence, Optional, Tuple
import logging
import threading
import time
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from rio_common.kpi_logging import KPILogger
from rio_common.timing import Timing, TimingTracker

from .config import OptimizationConfig
from .errors import PropagationError
from .factors import (baro_residual, doppler_residual, make_baro_factor,
                      make_bearing_range_factor, make_doppler_factor)
from .graph import B, L, V, X, GraphAccumulator
from .models import MIN_DETECTION_DISTANCE
from .propagation import Propagation
from .smoother import FixedLagSmoother
from .state import State

logger = logging.getLogger("rio_fusion.optimization")


@dataclass
class _SolveResult:
    solve_id: int
    propagations: Deque[Propagation]


class Optimization:
    """Fixed-lag factor graph estimator with a single background solver thread.

    At most one solve is outstanding: `solve` is rejected while the worker
    runs and until its result has been collected with `get_result`. There
    is no cancellation; a running solve finishes or fails on its own.
    """

    def __init__(self, smoother=None, *, min_detection_distance: float = MIN_DETECTION_DISTANCE,
                 kpi: Optional[KPILogger] = None):
        self._accumulator = GraphAccumulator()
        self._smoother = smoother
        self.min_detection_distance = float(min_detection_distance)
        self._kpi = kpi

        self._running = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._solve_id = 0

        # Shared with the worker; guarded by _lock.
        self._lock = threading.Lock()
        self._result: Optional[_SolveResult] = None
        self._new_result = False
        self._timing = TimingTracker()

    @classmethod
    def from_config(cls, cfg: Optional[OptimizationConfig] = None,
                    kpi: Optional[KPILogger] = None) -> "Optimization":
        cfg = cfg or OptimizationConfig()
        return cls(FixedLagSmoother(cfg.smoother), min_detection_distance=cfg.min_detection_distance, kpi=kpi)

    # ------------------------------------------------------------------
    # State inspection
    # ------------------------------------------------------------------
    @property
    def accumulator(self) -> GraphAccumulator:
        return self._accumulator

    def is_running(self) -> bool:
        return self._running.is_set()

    def has_result(self) -> bool:
        with self._lock:
            return self._new_result

    def set_smoother(self, smoother) -> bool:
        """Install the smoother; refused while a solve is outstanding."""
        if self._running.is_set() or self._thread is not None:
            logger.warning("Cannot replace smoother while a solve is outstanding.")
            return False
        self._smoother = smoother
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker finished (without collecting the result)."""
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return not self._running.is_set()

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------
    def add_prior_factor(self, propagation: Propagation, noise_model_I_T_IB,
                         noise_model_I_v_IB, noise_model_imu_bias) -> int:
        """Anchor the first State of `propagation` (pose, velocity, bias)."""
        idx = propagation.first_state_idx
        state = propagation.first_state
        if state is None or state.stamp is None:
            logger.error("Propagation %d has no stamped initial state, skipping prior.", idx)
            return 0
        acc = self._accumulator
        acc.insert(X(idx), state.pose(), state.stamp)
        acc.add(gtsam.PriorFactorPose3(X(idx), state.pose(), noise_model_I_T_IB), "prior")
        acc.insert(V(idx), state.I_v_IB, state.stamp)
        acc.add(gtsam.PriorFactorVector(V(idx), state.I_v_IB, noise_model_I_v_IB), "prior")
        acc.insert(B(idx), state.bias(), state.stamp)
        acc.add(gtsam.PriorFactorConstantBias(B(idx), state.bias(), noise_model_imu_bias), "prior")
        return 3

    def add_imu_factor(self, propagation: Propagation) -> int:
        if not propagation.is_closed:
            logger.debug("Propagation has no last state index, skipping adding IMU factor.")
            return 0
        i, j = propagation.first_state_idx, propagation.last_state_idx
        pim = propagation.latest_state.integrator.to_gtsam()
        self._accumulator.add(gtsam.CombinedImuFactor(X(i), V(i), X(j), V(j), B(i), B(j), pim), "imu")
        return 1

    def add_doppler_factors(self, propagation: Propagation, noise_model,
                            residuals: Optional[List[float]] = None) -> int:
        """One radial-velocity factor per radar detection at the closing State.

        If `residuals` is given, the unwhitened residual of every added
        detection at the current State estimate is appended to it.
        """
        if not propagation.is_closed:
            logger.error("Propagation has no last state index, skipping adding Doppler factor.")
            return 0
        if not propagation.radar_detections:
            logger.info("Propagation has no radar detections, skipping adding Doppler factor.")
            return 0
        if propagation.B_T_BR is None:
            logger.debug("Propagation has no B_T_BR, skipping adding Doppler factor.")
            return 0
        idx = propagation.last_state_idx
        state = propagation.latest_state
        B_omega_IB = state.imu.angular_velocity
        added = 0
        for detection in propagation.radar_detections:
            distance = detection.distance()
            if distance < self.min_detection_distance:
                logger.warning("Ignoring radar detection at distance %.4f (< %.4f).",
                               distance, self.min_detection_distance)
                continue
            R_p_RT = detection.position()
            self._accumulator.add(make_doppler_factor(X(idx), V(idx), B(idx), R_p_RT, detection.velocity,
                                                      B_omega_IB, propagation.B_T_BR, noise_model), "doppler")
            added += 1
            if residuals is not None:
                residuals.append(doppler_residual(state.pose(), state.I_v_IB, state.bias(), B_omega_IB,
                                                  R_p_RT, detection.velocity, propagation.B_T_BR))
        return added

    def add_bearing_range_factors(self, propagation: Propagation, noise_model) -> int:
        if not propagation.is_closed:
            logger.error("Propagation has no last state index, skipping adding bearing range factor.")
            return 0
        if not propagation.radar_tracks:
            logger.info("Propagation has no radar tracks, skipping adding bearing range factor.")
            return 0
        if propagation.B_T_BR is None:
            logger.debug("Propagation has no B_T_BR, skipping adding bearing range factor.")
            return 0
        idx = propagation.last_state_idx
        state = propagation.latest_state
        I_T_IR = state.pose().compose(propagation.B_T_BR)
        for track in propagation.radar_tracks:
            key = L(track.track_id)
            self._accumulator.add(make_bearing_range_factor(X(idx), key, track.R_p_RT,
                                                            propagation.B_T_BR, noise_model), "bearing_range")
            self._accumulator.stamp(key, state.stamp)
            if not track.is_added():
                I_p_IT = np.asarray(I_T_IR.transformFrom(track.R_p_RT), dtype=float)
                self._accumulator.insert(key, I_p_IT, state.stamp)
                track.set_added()
                logger.debug("Added landmark %d at location I_p_IT: %s", track.track_id, I_p_IT)
        return len(propagation.radar_tracks)

    def add_baro_factor(self, propagation: Propagation, noise_model,
                        residual: Optional[List[float]] = None) -> int:
        if not propagation.is_closed:
            logger.error("Propagation has no last state index, skipping adding baro factor.")
            return 0
        if propagation.baro_height is None:
            logger.info("Propagation has no baro height, skipping adding baro factor.")
            return 0
        state = propagation.latest_state
        if state.baro_height_bias is None:
            logger.debug("State has no baro height bias, skipping adding baro factor.")
            return 0
        idx = propagation.last_state_idx
        self._accumulator.add(make_baro_factor(X(idx), propagation.baro_height, state.baro_height_bias,
                                               noise_model), "baro")
        if residual is not None:
            residual.append(baro_residual(state.pose(), state.baro_height_bias, propagation.baro_height))
        return 1

    def add_radar_factor(self, propagation_to_radar: Propagation, propagation_from_radar: Propagation,
                         noise_model_radar_doppler, noise_model_radar_track,
                         doppler_residuals: Optional[List[float]] = None) -> None:
        """Add everything a radar scan contributes at a split point.

        `propagation_to_radar` and `propagation_from_radar` are the two halves
        returned by `Propagation.split` at the scan time.
        """
        self.add_imu_factor(propagation_to_radar)
        self.add_imu_factor(propagation_from_radar)
        if propagation_from_radar.is_closed:
            logger.error("Propagation from radar is already closed (last_state_idx=%d).",
                         propagation_from_radar.last_state_idx)

        self.add_doppler_factors(propagation_to_radar, noise_model_radar_doppler, doppler_residuals)
        self.add_bearing_range_factors(propagation_to_radar, noise_model_radar_track)

        if not propagation_to_radar.is_closed:
            logger.error("Propagation to radar has no last state index.")
            return
        idx = propagation_to_radar.last_state_idx
        state = propagation_to_radar.latest_state
        self._accumulator.insert(X(idx), state.pose(), state.stamp)
        self._accumulator.insert(V(idx), state.I_v_IB, state.stamp)
        self._accumulator.insert(B(idx), state.bias(), state.stamp)

    # ------------------------------------------------------------------
    # Asynchronous solve
    # ------------------------------------------------------------------
    def solve(self, propagations) -> bool:
        """Submit the accumulated graph and a trajectory snapshot to the worker."""
        if self._running.is_set():
            logger.debug("Optimization thread still running.")
            return False
        if self._thread is not None:
            logger.debug("Optimization thread not joined, get result first.")
            return False
        if self._smoother is None:
            logger.error("No smoother set, cannot solve.")
            return False

        snapshot = deque(p.copy() for p in propagations)
        graph, values, stamps = self._accumulator.pop_batch()
        self._solve_id += 1
        if self._kpi:
            self._kpi.solve_submitted(self._solve_id, int(graph.size()), int(values.size()), len(snapshot))

        self._running.set()
        self._thread = threading.Thread(
            target=self._solve_threaded,
            args=(self._solve_id, graph, values, stamps, snapshot),
            name="rio-optimization",
            daemon=True,
        )
        self._thread.start()
        return True

    def _fail(self, solve_id: int, stage: str, reason: str) -> None:
        if self._kpi:
            self._kpi.solve_failed(solve_id, stage, reason)

    def _solve_threaded(self, solve_id: int, graph, values, stamps: Dict[int, float],
                        propagations: Deque[Propagation]) -> None:
        try:
            start = time.perf_counter()
            try:
                self._smoother.update(graph, values, stamps)
            except Exception as exc:
                logger.error("Exception in update: %s", exc, exc_info=True)
                self._fail(solve_id, "optimize", str(exc))
                return
            optimize_s = time.perf_counter() - start

            start = time.perf_counter()
            try:
                window = self._smoother.timestamps()
                window_start = min(window.values()) if window else None
                if window_start is not None:
                    while propagations and propagations[0].first_state.stamp < window_start:
                        propagations.popleft()
                estimate = self._smoother.calculate_estimate()
            except Exception as exc:
                logger.error("Exception in reading the smoother window: %s", exc, exc_info=True)
                self._fail(solve_id, "cachePropagations", str(exc))
                return

            for propagation in propagations:
                idx = propagation.first_state_idx
                first = propagation.first_state
                try:
                    integrator = first.integrator.reset_integration_and_set_bias(estimate.atConstantBias(B(idx)))
                    initial = State.from_pose(first.frame_id, estimate.atPose3(X(idx)), estimate.atVector(V(idx)),
                                              first.imu, integrator, first.baro_height_bias)
                    propagation.repropagate(initial)
                except PropagationError as exc:
                    logger.error("Failed to repropagate: %s", exc)
                    self._fail(solve_id, "cachePropagations", str(exc))
                    return
                except Exception as exc:
                    logger.error("Exception in caching new values at idx: %d Error: %s", idx, exc)
                    self._fail(solve_id, "cachePropagations", str(exc))
                    return
            cache_s = time.perf_counter() - start

            stamp = propagations[-1].latest_state.stamp if propagations else None
            if not propagations:
                logger.warning("No propagation left inside the smoother window.")
            with self._lock:
                self._result = _SolveResult(solve_id, propagations)
                self._timing.record("optimize", optimize_s, stamp)
                self._timing.record("cachePropagations", cache_s, stamp)
                self._new_result = True
            if self._kpi:
                self._kpi.optimization_end(solve_id, optimize_s, retained_propagations=len(propagations),
                                           window_start=window_start)
        finally:
            self._running.clear()

    def get_result(self, propagations: MutableSequence[Propagation]) -> Tuple[bool, Dict[str, Timing]]:
        """Reconcile `propagations` in place with the latest solution.

        Returns ``(False, {})`` while the worker runs, when no solve was
        submitted or when it produced no result. Otherwise segments that left
        the window are dropped, solved segments are replaced, the newer ones
        are re-integrated from their predecessor, and ``(True, timing)`` is
        returned.
        """
        if self._running.is_set():
            logger.debug("Optimization thread still running.")
            return False, {}
        if self._thread is None:
            logger.debug("No optimization thread to join, skipping result.")
            return False, {}
        self._thread.join()
        self._thread = None

        with self._lock:
            if not self._new_result:
                logger.warning("No new result.")
                return False, {}
            self._new_result = False
            result, self._result = self._result, None
            stamp = self._timing.get("optimize").stamp
        cache = result.propagations

        local = TimingTracker()
        dropped = 0
        with local.stage("dequeueCleanup"):
            if cache:
                # Node ids grow along the trajectory; anything past the cache front is kept.
                front = cache[0].first_state_idx
                while propagations and propagations[0].first_state_idx < front:
                    del propagations[0]
                    dropped += 1
                if propagations and propagations[0].first_state_idx != front:
                    logger.warning("Trajectory starts at node %d, solution at node %d; nothing dropped past it.",
                                   propagations[0].first_state_idx, front)

        updated = set()
        with local.stage("copyCachedPropagations"):
            for i, propagation in enumerate(propagations):
                match = next((c for c in cache
                              if c.first_state_idx == propagation.first_state_idx
                              and c.last_state_idx is not None
                              and propagation.last_state_idx is not None
                              and c.last_state_idx == propagation.last_state_idx), None)
                if match is None:
                    continue
                propagations[i] = match
                updated.add(i)
                if match is cache[0]:
                    cache.popleft()

        repropagated = stale = 0
        with local.stage("repropagateNewPropagations"):
            for i, propagation in enumerate(propagations):
                if i in updated:
                    continue
                if i == 0:
                    logger.error("First propagation not updated, skipping.")
                    stale += 1
                    continue
                try:
                    propagation.repropagate(propagations[i - 1].latest_state)
                    repropagated += 1
                except PropagationError as exc:
                    logger.error("Failed to repropagate propagation %d: %s", propagation.first_state_idx, exc)
                    stale += 1

        with self._lock:
            for label in ("dequeueCleanup", "copyCachedPropagations", "repropagateNewPropagations"):
                self._timing.record(label, local.get(label).iteration, stamp)
            timing = self._timing.snapshot()
        if self._kpi:
            self._kpi.result_reconciled(result.solve_id, len(updated), repropagated, stale, dropped)
        return True, timing
