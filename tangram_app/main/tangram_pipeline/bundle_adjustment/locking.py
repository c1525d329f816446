"""Homography lock hysteresis."""

import logging
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


class HomographyLock:
    """
    Freezes H and scale after a streak of good frames.

    Rules:
        - frames_needed consecutive frames with mean error < lock_threshold → lock
        - any frame with mean error > unlock_threshold while locked → unlock
        - a frame between the thresholds keeps a lock but breaks a streak

    Attributes:
        locked: Lock state
        stable_frames: Current streak length
        H: Frozen homography (None while unlocked)
        scale: Frozen scale (None while unlocked)
    """

    def __init__(self, frames_needed: int = 5, lock_threshold: float = 5.0, unlock_threshold: float = 15.0):
        self.frames_needed = frames_needed
        self.lock_threshold = lock_threshold
        self.unlock_threshold = unlock_threshold
        self.reset()

    def reset(self) -> None:
        self.locked = False
        self.stable_frames = 0
        self.H: Optional[np.ndarray] = None
        self.scale: Optional[float] = None

    def observe(self, mean_error: float, H: np.ndarray, scale: float) -> bool:
        """
        Feed one frame's mean error.

        Args:
            mean_error: Mean RMS error of the accepted pieces (pixels)
            H: Current fused homography (captured when the lock engages)
            scale: Current fused scale

        Returns:
            Lock state after this frame
        """
        if self.locked:
            if mean_error > self.unlock_threshold:
                logger.info("Homography unlocked (mean error %.2f px > %.2f)", mean_error, self.unlock_threshold)
                self.reset()
            return self.locked

        if mean_error < self.lock_threshold:
            self.stable_frames += 1
        else:
            self.stable_frames = 0

        if self.stable_frames >= self.frames_needed:
            self.locked = True
            self.H = np.array(H, dtype=float, copy=True)
            self.scale = float(scale)
            logger.info("Homography locked after %d stable frames", self.stable_frames)
        return self.locked

    def adopt(self, H: np.ndarray, scale: float) -> None:
        """Replace the frozen homography (small corrective update while locked)."""
        self.H = np.array(H, dtype=float, copy=True)
        self.scale = float(scale)
