"""
Kalman tracker for the shared homography, scale and per-piece poses.

State (30 entries, see parameterization): 8 homography entries, scale, and
one (theta, tx, ty) slot per class id. Motion model is a random walk, so
predict only grows the covariance. Updates are partial: only the classes
measured in a frame enter the measurement vector.
"""

import logging
from collections import deque
from typing import Dict, Optional, Set, Tuple

import numpy as np

from ..config import TrackerConfig
from ..models import Pose
from ..utils.polygon import wrap_angle
from .parameterization import (
    N_HOMOGRAPHY,
    N_OBJECTS,
    N_STATES,
    SCALE_INDEX,
    homography_to_vector,
    pack_tracked_state,
    pose_slice,
    unpack_tracked_state,
)

logger = logging.getLogger(__name__)


class KalmanTracker:
    """
    Random-walk Kalman filter over the tracked pose state.

    Attributes:
        x: (30,) state mean
        P: (30, 30) state covariance
        observed: Class ids whose pose slot has been measured at least once

    Notes:
        - Rotation innovations are wrapped to [-pi, pi)
        - A class measured for the first time is seeded from its measurement
          instead of being fused with the meaningless zero prior
        - Tracking quality = 1 / (1 + mean_nis / innovation_quality_scale) over the
          last innovation_history_size updates, where nis is the normalized
          innovation sqrt(y^T S^-1 y / m)
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()
        self.x = np.zeros(N_STATES)
        self.P = np.eye(N_STATES)
        self.observed: Set[int] = set()
        self.timestamp: Optional[float] = None
        self._initialized = False
        self._innovations = deque(maxlen=self.config.innovation_history_size)

        cfg = self.config
        self._process_var = np.concatenate([
            np.asarray(cfg.homography_process_std, dtype=float) ** 2,
            [cfg.scale_process_std ** 2],
            np.tile(np.asarray(cfg.pose_process_std, dtype=float) ** 2, N_OBJECTS),
        ])
        self._measurement_var = np.concatenate([
            np.asarray(cfg.homography_measurement_std, dtype=float) ** 2,
            [cfg.scale_measurement_std ** 2],
            np.tile(np.asarray(cfg.pose_measurement_std, dtype=float) ** 2, N_OBJECTS),
        ])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, H: np.ndarray, scale: float, poses: Dict[int, Pose],
                   timestamp: Optional[float] = None) -> None:
        """Start tracking from a first measurement."""
        cfg = self.config
        self.x = pack_tracked_state(H, scale, poses)
        var = self._measurement_var * cfg.measurement_noise_scale * cfg.initial_uncertainty_scale
        for cid in range(N_OBJECTS):
            if cid not in poses:
                var[pose_slice(cid)] = cfg.unobserved_variance
        self.P = np.diag(var)
        self.observed = set(int(c) for c in poses)
        self.timestamp = timestamp
        self._innovations.clear()
        self._initialized = True
        logger.debug("Tracker initialized with classes %s", sorted(self.observed))

    def reset(self) -> None:
        self.__init__(self.config)

    def is_initialized(self) -> bool:
        return self._initialized

    # ------------------------------------------------------------------
    # Filter steps
    # ------------------------------------------------------------------

    def predict(self, dt: float) -> None:
        """Random-walk prediction: x unchanged, P += Q * dt."""
        if not self._initialized:
            return
        dt = max(float(dt), 0.0)
        self.P = self.P + np.diag(self._process_var * self.config.process_noise_scale * dt)

    def default_measurement_variance(self, class_ids) -> np.ndarray:
        """Diagonal of the default R for [h, scale, poses of class_ids]."""
        idx = self._measurement_indices(class_ids)
        return self._measurement_var[idx] * self.config.measurement_noise_scale

    def update(self, H_meas: np.ndarray, scale_meas: float, poses_meas: Dict[int, Pose],
               measurement_cov: Optional[np.ndarray] = None, timestamp: Optional[float] = None) -> None:
        """
        Fuse one frame of measurements.

        Args:
            H_meas: Measured homography
            scale_meas: Measured scale
            poses_meas: Class id → measured Pose (visible classes only)
            measurement_cov: Optional (m, m) covariance for the measurement vector
                             [h (8), scale, poses in ascending class id]; default R otherwise
            timestamp: Time of the measurement

        Raises:
            ValueError: measurement_cov has the wrong shape
        """
        if not self._initialized:
            self.initialize(H_meas, scale_meas, poses_meas, timestamp)
            return

        class_ids = sorted(int(c) for c in poses_meas)
        z = np.concatenate([homography_to_vector(H_meas), [scale_meas]] +
                           [poses_meas[c].as_array() for c in class_ids])
        m = len(z)
        if measurement_cov is None:
            R = np.diag(self.default_measurement_variance(class_ids))
        else:
            R = np.asarray(measurement_cov, dtype=float)
            if R.shape != (m, m):
                raise ValueError(f"measurement_cov must be {m}x{m}, got {R.shape}")

        idx = self._measurement_indices(class_ids)

        # seed never-observed slots directly from the measurement
        new_classes = [c for c in class_ids if c not in self.observed]
        for c in new_classes:
            sl = pose_slice(c)
            rows = [i for i, k in enumerate(idx) if sl.start <= k < sl.stop]
            self.x[sl] = z[rows]
            self.P[sl, :] = 0.0
            self.P[:, sl] = 0.0
            self.P[sl, sl] = R[np.ix_(rows, rows)]
            self.observed.add(c)
        if new_classes:
            keep = [i for i, k in enumerate(idx)
                    if not any(pose_slice(c).start <= k < pose_slice(c).stop for c in new_classes)]
            idx = [idx[i] for i in keep]
            z = z[keep]
            R = R[np.ix_(keep, keep)]

        Hm = np.zeros((len(idx), N_STATES))
        Hm[np.arange(len(idx)), idx] = 1.0

        y = z - Hm @ self.x
        theta_rows = [i for i, k in enumerate(idx) if k >= SCALE_INDEX + 1 and (k - SCALE_INDEX - 1) % 3 == 0]
        if theta_rows:
            y[theta_rows] = wrap_angle(y[theta_rows])

        S = Hm @ self.P @ Hm.T + R
        PHt = self.P @ Hm.T
        K = np.linalg.solve(S.T, PHt.T).T

        self.x = self.x + K @ y
        I_KH = np.eye(N_STATES) - K @ Hm
        self.P = I_KH @ self.P @ I_KH.T + K @ R @ K.T
        self.P = 0.5 * (self.P + self.P.T)

        nis = float(y @ np.linalg.solve(S, y)) / max(len(y), 1)
        self._innovations.append(np.sqrt(max(nis, 0.0)))
        if timestamp is not None:
            self.timestamp = timestamp

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_state(self) -> Tuple[np.ndarray, float, Dict[int, Pose]]:
        """(H, scale, poses of observed classes)."""
        H, scale, poses = unpack_tracked_state(self.x)
        return H, scale, {cid: pose for cid, pose in poses.items() if cid in self.observed}

    def get_tracking_quality(self) -> float:
        """Confidence in [0, 1]; 0 before initialization, 1 before the first update."""
        if not self._initialized:
            return 0.0
        if not self._innovations:
            return 1.0
        mean_innovation = float(np.mean(self._innovations))
        return 1.0 / (1.0 + mean_innovation / self.config.innovation_quality_scale)

    @staticmethod
    def _measurement_indices(class_ids):
        idx = list(range(N_HOMOGRAPHY)) + [SCALE_INDEX]
        for c in sorted(class_ids):
            sl = pose_slice(c)
            idx.extend(range(sl.start, sl.stop))
        return idx
