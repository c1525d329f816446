"""
Tangram pose pipeline.

Estimates a shared plane homography, a shared scale and per-piece planar poses
for the seven tangram pieces from per-frame segmentation output, with Kalman
tracking and homography locking across frames.

Main API:
    TangramPipeline(models_path=None, assets_dir=None, config=None)
    TangramPipeline.process_frame(frame, detections, proto_masks) -> BASolution
    TangramPipeline.process_frame_with_polygons(frame, polygons) -> BASolution
"""

from .config import FusionConfig, PipelineConfig, RefinerConfig, SolverConfig, TrackerConfig
from .models import (
    CLASS_NAMES,
    BAInputs,
    BASolution,
    Correspondence,
    Detection,
    Pose,
    RefinementResult,
    SolveStatus,
    TangramModel,
)
from .catalog import CatalogError, load_tangram_models
from .refinement import PolygonRefiner
from .bundle_adjustment import BundleAdjustment, KalmanTracker, TrackedBA
from .pipeline import TangramPipeline
from .visualizer import PoseVisualizer, export_plane_coordinates


__all__ = [
    # Main API
    "TangramPipeline",
    # Config
    "PipelineConfig",
    "RefinerConfig",
    "SolverConfig",
    "TrackerConfig",
    "FusionConfig",
    # Models
    "CLASS_NAMES",
    "Pose",
    "Detection",
    "Correspondence",
    "TangramModel",
    "RefinementResult",
    "BAInputs",
    "BASolution",
    "SolveStatus",
    # Components
    "CatalogError",
    "load_tangram_models",
    "PolygonRefiner",
    "BundleAdjustment",
    "KalmanTracker",
    "TrackedBA",
    "PoseVisualizer",
    "export_plane_coordinates",
]
