"""Mask → polygon refinement."""

from .polygon_refiner import PolygonRefiner, validate_frame
from .line_fitting import LineCluster, cluster_segments, fit_line

__all__ = ["PolygonRefiner", "validate_frame", "LineCluster", "cluster_segments", "fit_line"]
