"""Shared helpers: polygon geometry, stage timing, label fixtures."""

from .polygon import (
    signed_area,
    ensure_clockwise,
    polygon_centroid,
    simplify_polygon,
    line_through,
    intersect_lines,
    point_line_distance,
    wrap_angle,
)
from .timing import StageTimer

__all__ = [
    "signed_area",
    "ensure_clockwise",
    "polygon_centroid",
    "simplify_polygon",
    "line_through",
    "intersect_lines",
    "point_line_distance",
    "wrap_angle",
    "StageTimer",
]
