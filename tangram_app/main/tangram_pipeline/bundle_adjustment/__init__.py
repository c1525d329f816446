"""
Correspondence search, pose optimization and temporal tracking.

Main API:
    BundleAdjustment.solve(inputs) -> BASolution   (single frame)
    TrackedBA.process_frame(inputs, timestamp) -> BASolution   (tracked)
"""

from .solver import BundleAdjustment
from .kalman_tracker import KalmanTracker
from .locking import HomographyLock
from .tracked_ba import TrackedBA

__all__ = ["BundleAdjustment", "KalmanTracker", "HomographyLock", "TrackedBA"]
