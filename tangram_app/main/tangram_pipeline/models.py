"""
Tangram Pipeline Data Models.

This module defines the data structures shared by all pipeline stages:
- Pose: Rigid transform of one piece inside the reference plane
- Detection: One instance from the segmentation model
- Correspondence: Vertex assignment between detected polygon and model
- TangramModel: Canonical piece geometry
- RefinementResult: Output of the polygon refiner
- BAInputs: Batched solver input (plus optional warm start)
- SolveStatus, BASolution: Per-frame solver / tracker output

Coordinate conventions:
    - Image: pixels, x right, y down
    - Plane: reference plane of the table, mapped to the image by H
    - Model: canonical piece units, mapped to the plane by scale then Pose
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import numpy as np


CLASS_NAMES: Tuple[str, ...] = (
    "tangram_parallelogram",
    "tangram_square",
    "tangram_triangle_lrg",
    "tangram_triangle_lrg2",
    "tangram_triangle_med",
    "tangram_triangle_sml",
    "tangram_triangle_sml2",
)
"""Class id → catalog name (index = class id)."""

NUM_CLASSES = len(CLASS_NAMES)

SHAPE_VERTEX_COUNTS: Dict[str, int] = {
    "triangle": 3,
    "square": 4,
    "parallelogram": 4,
}


def class_name(class_id: int) -> str:
    """Catalog name for a class id, ValueError for ids outside 0..6."""
    if not isinstance(class_id, (int, np.integer)) or not 0 <= class_id < NUM_CLASSES:
        raise ValueError(f"Unknown class id: {class_id!r} (expected 0..{NUM_CLASSES - 1})")
    return CLASS_NAMES[int(class_id)]


@dataclass
class Pose:
    """
    Planar rigid pose of a piece.

    Attributes:
        theta: Rotation in radians (CCW in plane coordinates), range [-pi, pi)
        tx: Translation x in plane units
        ty: Translation y in plane units

    Notes:
        - A model point m maps to the plane as R(theta) @ (scale * m) + (tx, ty)
    """
    theta: float = 0.0
    tx: float = 0.0
    ty: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.theta, self.tx, self.ty], dtype=float)

    @classmethod
    def from_array(cls, values) -> Pose:
        return cls(float(values[0]), float(values[1]), float(values[2]))

    def to_dict(self) -> dict:
        return {"theta": self.theta, "tx": self.tx, "ty": self.ty}


@dataclass
class Detection:
    """
    One instance emitted by the segmentation model.

    Attributes:
        class_id: Piece class in 0..6
        bbox: (x, y, width, height) in detector input space (model_input_size square)
        mask_coeffs: (32,) coefficients combined with the shared proto masks
    """
    class_id: int
    bbox: Tuple[float, float, float, float]
    mask_coeffs: np.ndarray


@dataclass(frozen=True)
class Correspondence:
    """
    Assignment of detected vertices to model vertices.

    Attributes:
        shift: Cyclic shift applied to the (possibly reversed) detected list
        reflected: Detected list is traversed in reverse order
        mirrored_model: Model is mirrored about its y axis (chiral pieces only)

    Notes:
        - Model vertex i corresponds to detected vertex order[(i + shift) % n],
          where order is reversed when reflected is set
    """
    shift: int = 0
    reflected: bool = False
    mirrored_model: bool = False

    @property
    def flag_count(self) -> int:
        return int(self.reflected) + int(self.mirrored_model)

    def to_dict(self) -> dict:
        return {
            "shift": self.shift,
            "reflected": self.reflected,
            "mirrored_model": self.mirrored_model,
        }


@dataclass
class TangramModel:
    """
    Canonical geometry of one tangram piece.

    Attributes:
        name: Catalog name (e.g. "tangram_square")
        shape_type: "triangle", "square" or "parallelogram"
        vertices: (N, 2) model-space vertices, centered, clockwise on screen
        color_bgr: Display color (B, G, R)
    """
    name: str
    shape_type: str
    vertices: np.ndarray
    color_bgr: Tuple[int, int, int] = (128, 128, 128)

    @property
    def class_id(self) -> int:
        return CLASS_NAMES.index(self.name)

    @property
    def num_vertices(self) -> int:
        return int(len(self.vertices))


@dataclass
class RefinementResult:
    """
    Output of the polygon refiner for one detection.

    Attributes:
        refined_mask_full: Binary mask (uint8 0/255) at frame resolution
        refined_mask_160: Binary mask downsampled to the proto resolution
        polygon_norm: (N, 2) polygon normalized to [0, 1] by frame width/height
        lines: One (a, b, c) line per polygon edge, a*x + b*y + c = 0, a^2 + b^2 = 1
        line_segments_global: Dominant Hough segments (x1, y1, x2, y2) in frame pixels
        line_secondary_segments_global: Remaining Hough segments in frame pixels
        timings: Stage name → milliseconds
        num_dominant_lines: Edges backed by a detected line (rest use the coarse edge)
        used_fallback: True if any edge or corner fell back to the coarse polygon

    Notes:
        - An empty polygon_norm means the mask was empty; the piece should be skipped
    """
    refined_mask_full: np.ndarray
    refined_mask_160: np.ndarray
    polygon_norm: np.ndarray
    lines: List[Tuple[float, float, float]] = field(default_factory=list)
    line_segments_global: List[Tuple[float, float, float, float]] = field(default_factory=list)
    line_secondary_segments_global: List[Tuple[float, float, float, float]] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)
    num_dominant_lines: int = 0
    used_fallback: bool = False

    def polygon_pixels(self, width: int, height: int) -> np.ndarray:
        """Polygon in frame pixels."""
        return self.polygon_norm * np.array([width, height], dtype=float)


@dataclass
class BAInputs:
    """
    Batched input of the correspondence & pose solver.

    Attributes:
        detected_points: Per piece (N, 2) detected polygon in image pixels
        model_points: Per piece (N, 2) canonical model vertices
        shape_types: Per piece shape type
        class_ids: Per piece class id (ascending, unique)
        has_initial_guess: Warm start fields below are valid
        H_init: Initial plane → image homography
        scale_init: Initial model → plane scale
        poses_init: Per piece initial pose, None where no prior exists
    """
    detected_points: List[np.ndarray] = field(default_factory=list)
    model_points: List[np.ndarray] = field(default_factory=list)
    shape_types: List[str] = field(default_factory=list)
    class_ids: List[int] = field(default_factory=list)
    has_initial_guess: bool = False
    H_init: Optional[np.ndarray] = None
    scale_init: float = 1.0
    poses_init: List[Optional[Pose]] = field(default_factory=list)

    @property
    def num_pieces(self) -> int:
        return len(self.class_ids)

    def subset(self, keep_class_ids) -> BAInputs:
        """Copy restricted to the given class ids (order preserved)."""
        keep = set(keep_class_ids)
        idx = [i for i, cid in enumerate(self.class_ids) if cid in keep]
        return BAInputs(
            detected_points=[self.detected_points[i] for i in idx],
            model_points=[self.model_points[i] for i in idx],
            shape_types=[self.shape_types[i] for i in idx],
            class_ids=[self.class_ids[i] for i in idx],
            has_initial_guess=self.has_initial_guess,
            H_init=self.H_init,
            scale_init=self.scale_init,
            poses_init=[self.poses_init[i] for i in idx] if self.poses_init else [],
        )


class SolveStatus(Enum):
    """
    Status of a per-frame solution.

    Values:
        OK: Optimization converged on the current frame
        INSUFFICIENT_PIECES: Fewer visible pieces than required
        NOT_CONVERGED: Optimization hit its budget or produced non-finite values
    """
    OK = "OK"
    INSUFFICIENT_PIECES = "INSUFFICIENT_PIECES"
    NOT_CONVERGED = "NOT_CONVERGED"


@dataclass
class BASolution:
    """
    Per-frame pose estimate.

    Attributes:
        H: (3, 3) plane → image homography, H[2, 2] == 1
        scale: Model → plane scale shared by all pieces
        poses: Class id → Pose for the pieces reported this frame
        errors: Class id → RMS reprojection error (pixels)
        correspondences: Class id → chosen vertex assignment
        tracking_quality: Confidence in [0, 1] (0 on failure)
        homography_locked: H and scale are frozen by the locking logic
        timings: Stage name → milliseconds
        status: How this solution was obtained

    Example:
        >>> sol = BASolution.identity()
        >>> sol.to_dict()["H"]
        [1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0]
    """
    H: np.ndarray = field(default_factory=lambda: np.eye(3))
    scale: float = 1.0
    poses: Dict[int, Pose] = field(default_factory=dict)
    errors: Dict[int, float] = field(default_factory=dict)
    correspondences: Dict[int, Correspondence] = field(default_factory=dict)
    tracking_quality: float = 0.0
    homography_locked: bool = False
    timings: Dict[str, float] = field(default_factory=dict)
    status: SolveStatus = SolveStatus.OK

    @classmethod
    def identity(cls, status: SolveStatus = SolveStatus.INSUFFICIENT_PIECES) -> BASolution:
        """Identity homography, unit scale, no pieces, quality 0."""
        return cls(status=status)

    @property
    def ok(self) -> bool:
        return self.status == SolveStatus.OK

    @property
    def mean_error(self) -> float:
        if not self.errors:
            return 0.0
        return float(np.mean(list(self.errors.values())))

    def copy(self) -> BASolution:
        return BASolution(
            H=self.H.copy(),
            scale=self.scale,
            poses={k: Pose(p.theta, p.tx, p.ty) for k, p in self.poses.items()},
            errors=dict(self.errors),
            correspondences=dict(self.correspondences),
            tracking_quality=self.tracking_quality,
            homography_locked=self.homography_locked,
            timings=dict(self.timings),
            status=self.status,
        )

    def same_estimate(self, other: BASolution, atol: float = 0.0) -> bool:
        """
        Compare everything except timings.

        Args:
            other: Solution to compare with
            atol: Absolute tolerance for floating point fields (0 = exact)

        Returns:
            True if both solutions carry the same estimate
        """
        if set(self.poses) != set(other.poses) or set(self.errors) != set(other.errors):
            return False
        if self.correspondences != other.correspondences:
            return False
        if self.homography_locked != other.homography_locked or self.status != other.status:
            return False
        if not np.allclose(self.H, other.H, rtol=0.0, atol=atol):
            return False
        scalars_a = [self.scale, self.tracking_quality]
        scalars_b = [other.scale, other.tracking_quality]
        for cid in sorted(self.poses):
            scalars_a.extend(self.poses[cid].as_array())
            scalars_b.extend(other.poses[cid].as_array())
        for cid in sorted(self.errors):
            scalars_a.append(self.errors[cid])
            scalars_b.append(other.errors[cid])
        return bool(np.allclose(scalars_a, scalars_b, rtol=0.0, atol=atol))

    def to_dict(self) -> dict:
        """JSON-serializable representation (H row-major, class ids as strings)."""
        return {
            "H": [float(v) for v in np.asarray(self.H, dtype=float).ravel()],
            "scale": float(self.scale),
            "poses": {str(k): v.to_dict() for k, v in sorted(self.poses.items())},
            "errors": {str(k): float(v) for k, v in sorted(self.errors.items())},
            "correspondences": {str(k): v.to_dict() for k, v in sorted(self.correspondences.items())},
            "tracking_quality": float(self.tracking_quality),
            "homography_locked": bool(self.homography_locked),
            "timings": {k: float(v) for k, v in self.timings.items()},
            "status": self.status.value,
        }
