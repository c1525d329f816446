"""
Discrete correspondence candidates and closed-form pose initialization.

A candidate assigns model vertex i to detected vertex order[(i + shift) % n],
where order is the detected list, reversed when reflected is set. For chiral
pieces the mirrored model (x → -x, re-wound clockwise) is tried as well.
"""

from typing import List, Sequence, Tuple

import numpy as np

from ..models import Correspondence
from ..utils.polygon import ensure_clockwise


def candidate_correspondences(n_vertices: int, shape_type: str,
                              mirrorable_shapes: Sequence[str] = ("parallelogram",)) -> List[Correspondence]:
    """
    Enumerate all candidates in a fixed order.

    Args:
        n_vertices: Vertex count of the piece
        shape_type: Piece shape type
        mirrorable_shapes: Shape types whose mirrored model is also tried

    Returns:
        Candidates ordered by (mirrored_model, reflected, shift)
    """
    mirror_options = (False, True) if shape_type in mirrorable_shapes else (False,)
    return [
        Correspondence(shift=shift, reflected=reflected, mirrored_model=mirrored)
        for mirrored in mirror_options
        for reflected in (False, True)
        for shift in range(n_vertices)
    ]


def mirror_model(model: np.ndarray) -> np.ndarray:
    mirrored = np.asarray(model, dtype=float) * np.array([-1.0, 1.0])
    return ensure_clockwise(mirrored)


def model_for_candidate(model: np.ndarray, corr: Correspondence) -> np.ndarray:
    return mirror_model(model) if corr.mirrored_model else np.asarray(model, dtype=float)


def reorder_detected(points: np.ndarray, corr: Correspondence) -> np.ndarray:
    """Detected vertices in model order for the given candidate."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    if corr.reflected:
        pts = pts[::-1]
    return np.roll(pts, -corr.shift, axis=0)


def fit_rigid_2d(src: np.ndarray, dst: np.ndarray) -> Tuple[float, np.ndarray]:
    """
    Least-squares rotation + translation mapping src onto dst (no reflection).

    Args:
        src: (N, 2) source points
        dst: (N, 2) target points in the same order

    Returns:
        (theta, t) with dst ≈ R(theta) @ src + t
    """
    src = np.asarray(src, dtype=float)
    dst = np.asarray(dst, dtype=float)
    mu_s = src.mean(axis=0)
    mu_d = dst.mean(axis=0)
    a = src - mu_s
    b = dst - mu_d
    num = np.sum(a[:, 0] * b[:, 1] - a[:, 1] * b[:, 0])
    den = np.sum(a[:, 0] * b[:, 0] + a[:, 1] * b[:, 1])
    theta = float(np.arctan2(num, den))
    c, s = np.cos(theta), np.sin(theta)
    t = mu_d - np.array([c * mu_s[0] - s * mu_s[1], s * mu_s[0] + c * mu_s[1]])
    return theta, t


def rigid_fit_rms(src: np.ndarray, dst: np.ndarray) -> float:
    theta, t = fit_rigid_2d(src, dst)
    c, s = np.cos(theta), np.sin(theta)
    moved = src @ np.array([[c, -s], [s, c]]).T + t
    return float(np.sqrt(np.mean(np.sum((moved - dst) ** 2, axis=1))))
