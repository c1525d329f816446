"""
Tracked bundle adjustment: per-frame solver + Kalman fusion + homography locking.

Per frame:
1. Predict the tracker forward by dt
2. Build the warm start from the prediction (or from the locked homography)
3. Solve (poses only against the frozen H while locked, plus a free solve
   that may apply a small corrective update to the frozen H)
4. Reject outlier pieces by reprojection error
5. Fuse the remaining measurements with per-piece adaptive covariance
6. Update the lock hysteresis and emit the fused solution
"""

import logging
from collections import deque
from typing import Dict, List, Optional

import numpy as np

from ..config import FusionConfig, SolverConfig, TrackerConfig
from ..models import BAInputs, BASolution, SolveStatus
from ..utils.timing import StageTimer
from .kalman_tracker import KalmanTracker
from .locking import HomographyLock
from .solver import BundleAdjustment

logger = logging.getLogger(__name__)


class TrackedBA:
    """
    Temporal fusion and locking around BundleAdjustment.

    Example:
        >>> tracked = TrackedBA()
        >>> solution = tracked.process_frame(inputs, timestamp=0.0)
        >>> solution.tracking_quality, solution.homography_locked
    """

    def __init__(self, fusion_config: Optional[FusionConfig] = None,
                 solver_config: Optional[SolverConfig] = None,
                 tracker_config: Optional[TrackerConfig] = None):
        self.config = fusion_config or FusionConfig()
        self.solver = BundleAdjustment(solver_config)
        self.tracker = KalmanTracker(tracker_config)
        self.lock = HomographyLock(
            frames_needed=self.config.frames_needed_for_lock,
            lock_threshold=self.config.lock_error_threshold,
            unlock_threshold=self.config.unlock_error_threshold,
        )
        self.locking_enabled = self.config.locking_enabled
        self._error_history: Dict[int, deque] = {}
        self._last_solution: Optional[BASolution] = None
        self._last_timestamp: Optional[float] = None
        self._last_used_warm_start = False
        self._last_optimization_time_ms = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_frame(self, inputs: BAInputs, timestamp: float) -> BASolution:
        """
        Process one frame of batched detections.

        Args:
            inputs: Detected polygons + models (warm start fields are filled in here)
            timestamp: Frame time in seconds (monotonic)

        Returns:
            Fused BASolution; on solver failure the previous solution
            (or identity) with tracking_quality = 0
        """
        timer = StageTimer()

        with timer.time_block("predict"):
            warm_inputs = self._prepare_inputs(inputs, timestamp)

        with timer.time_block("ba_solve"):
            measured = self._solve(warm_inputs, timer)

        if not measured.ok:
            self._last_timestamp = timestamp
            return self._failure(measured, timer)

        errors = measured.errors
        accepted = self._reject_outliers(errors)
        rejected = sorted(set(errors) - set(accepted))
        if rejected:
            logger.debug("Rejected outlier pieces %s (errors %s)", rejected, [round(errors[c], 2) for c in rejected])

        with timer.time_block("kalman_update"):
            poses_meas = {cid: measured.poses[cid] for cid in accepted}
            H_meas = self.lock.H if self.lock.locked else measured.H
            s_meas = self.lock.scale if self.lock.locked else measured.scale
            if not self.tracker.is_initialized():
                self.tracker.initialize(H_meas, s_meas, poses_meas, timestamp)
            else:
                R = self._measurement_covariance(sorted(accepted))
                self.tracker.update(H_meas, s_meas, poses_meas, R, timestamp)

        for cid, err in errors.items():
            self._error_history.setdefault(cid, deque(maxlen=self.config.error_history_size)).append(err)

        H_fused, s_fused, poses_fused = self.tracker.get_state()
        mean_error = float(np.mean([errors[c] for c in accepted]))
        if self.locking_enabled:
            self.lock.observe(mean_error, H_fused, s_fused)

        if self.lock.locked:
            H_out, s_out = self.lock.H, self.lock.scale
        else:
            H_out, s_out = H_fused, s_fused

        solution = BASolution(
            H=np.array(H_out, dtype=float),
            scale=float(s_out),
            poses={cid: poses_fused.get(cid, measured.poses[cid]) for cid in inputs.class_ids},
            errors=dict(errors),
            correspondences=dict(measured.correspondences),
            tracking_quality=self.tracker.get_tracking_quality(),
            homography_locked=self.lock.locked,
            timings=timer.as_dict(),
            status=SolveStatus.OK,
        )
        self._last_solution = solution.copy()
        self._last_timestamp = timestamp
        return solution

    def reset(self) -> None:
        """Return to the state of a freshly constructed instance (locking flag kept)."""
        self.solver.reset()
        self.tracker.reset()
        self.lock.reset()
        self._error_history.clear()
        self._last_solution = None
        self._last_timestamp = None
        self._last_used_warm_start = False
        self._last_optimization_time_ms = 0.0
        logger.debug("TrackedBA reset")

    def set_locking_enabled(self, enabled: bool) -> None:
        """Enable/disable homography locking; always resets the tracker."""
        self.locking_enabled = bool(enabled)
        self.reset()

    def is_locking_enabled(self) -> bool:
        return self.locking_enabled

    def is_homography_locked(self) -> bool:
        return self.lock.locked

    def has_initialized_tracker(self) -> bool:
        return self.tracker.is_initialized()

    def get_last_used_warm_start(self) -> bool:
        return self._last_used_warm_start

    def get_last_optimization_time_ms(self) -> float:
        return self._last_optimization_time_ms

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _prepare_inputs(self, inputs: BAInputs, timestamp: float) -> BAInputs:
        if not self.tracker.is_initialized():
            return inputs

        dt = 0.0 if self._last_timestamp is None else float(timestamp) - self._last_timestamp
        if dt < 0:
            logger.debug("Non-monotonic timestamp (dt=%.4f), predicting with dt=0", dt)
            dt = 0.0
        self.tracker.predict(dt)

        H_pred, s_pred, poses_pred = self.tracker.get_state()
        warm = inputs.subset(inputs.class_ids)
        warm.has_initial_guess = True
        warm.H_init = self.lock.H if self.lock.locked else H_pred
        warm.scale_init = self.lock.scale if self.lock.locked else s_pred
        warm.poses_init = [poses_pred.get(cid) for cid in inputs.class_ids]
        return warm

    def _solve(self, inputs: BAInputs, timer: StageTimer) -> BASolution:
        if not self.lock.locked:
            measured = self.solver.solve(inputs)
            self._last_used_warm_start = self.solver.last_used_warm_start
            self._last_optimization_time_ms = self.solver.last_optimization_time_ms
            timer.merge(measured.timings, prefix="ba.")
            return measured

        fixed = self.solver.solve(inputs, fix_homography=True)
        self._last_used_warm_start = self.solver.last_used_warm_start
        elapsed = self.solver.last_optimization_time_ms
        free = self.solver.solve(inputs)
        self._last_optimization_time_ms = elapsed + self.solver.last_optimization_time_ms
        timer.merge(fixed.timings, prefix="ba.")
        timer.merge(free.timings, prefix="ba_free.")

        if not fixed.ok:
            if free.ok:
                # free.poses are relative to free.H, not the frozen one
                logger.info("Pose-only solve failed while locked (%s), releasing the lock", fixed.status.value)
                self.lock.reset()
            return free
        if free.ok and self._accept_h_update(fixed, free):
            self.lock.adopt(free.H, free.scale)
            return free
        return fixed

    def _accept_h_update(self, fixed: BASolution, free: BASolution) -> bool:
        cfg = self.config
        improvement = (fixed.mean_error - free.mean_error) / max(fixed.mean_error, 1e-9)
        change = max(
            np.linalg.norm(free.H - self.lock.H) / max(np.linalg.norm(self.lock.H), 1e-12),
            abs(free.scale - self.lock.scale) / max(abs(self.lock.scale), 1e-12),
        )
        accepted = improvement > cfg.h_update_min_improvement and change < cfg.h_update_max_norm
        if accepted:
            logger.debug("Corrective homography update while locked (improvement %.1f%%, change %.3f)",
                         100.0 * improvement, change)
        return accepted

    def _reject_outliers(self, errors: Dict[int, float]) -> List[int]:
        """Keep pieces with error <= max(outlier_min_error_px, ratio * median)."""
        if not errors:
            return []
        median = float(np.median(list(errors.values())))
        threshold = max(self.config.outlier_min_error_px, self.config.error_rejection_threshold * median)
        return [cid for cid, err in errors.items() if err <= threshold]

    def _measurement_covariance(self, class_ids: List[int]) -> np.ndarray:
        var = self.tracker.default_measurement_variance(class_ids)
        for j, cid in enumerate(class_ids):
            history = self._error_history.get(cid)
            if history:
                factor = (1.0 + float(np.mean(history)) / self.config.adaptive_error_scale_px) ** 2
                var[9 + 3 * j:12 + 3 * j] *= factor
        return np.diag(var)

    def _failure(self, measured: BASolution, timer: StageTimer) -> BASolution:
        if self._last_solution is not None:
            solution = self._last_solution.copy()
        else:
            solution = BASolution.identity()
        solution.status = measured.status
        solution.tracking_quality = 0.0
        solution.homography_locked = self.lock.locked
        solution.timings = timer.as_dict()
        return solution
