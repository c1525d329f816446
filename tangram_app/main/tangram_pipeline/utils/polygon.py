"""
Polygon helpers shared by the refiner, the solver and the catalog loader.

Winding convention:
    "Clockwise" means clockwise as seen on screen, i.e. a positive shoelace
    area in y-down image coordinates. Models and detections use the same rule.
"""

from typing import Optional, Tuple
import cv2
import numpy as np


def signed_area(polygon: np.ndarray) -> float:
    """Shoelace area (positive = clockwise on screen)."""
    pts = np.asarray(polygon, dtype=float).reshape(-1, 2)
    if len(pts) < 3:
        return 0.0
    x = pts[:, 0]
    y = pts[:, 1]
    return 0.5 * float(np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def ensure_clockwise(polygon: np.ndarray) -> np.ndarray:
    """
    Return the polygon with clockwise (on screen) vertex order.

    Args:
        polygon: (N, 2) vertices

    Returns:
        (N, 2) float array, reversed if the input was counter-clockwise

    Notes:
        - The first vertex is kept in place when reversing, so the result is
          deterministic for a given input
    """
    pts = np.asarray(polygon, dtype=float).reshape(-1, 2)
    if signed_area(pts) < 0:
        pts = np.concatenate([pts[:1], pts[1:][::-1]], axis=0)
    return pts


def polygon_centroid(polygon: np.ndarray) -> np.ndarray:
    """Area centroid (falls back to vertex mean for degenerate polygons)."""
    pts = np.asarray(polygon, dtype=float).reshape(-1, 2)
    area = signed_area(pts)
    if abs(area) < 1e-12:
        return pts.mean(axis=0)
    x, y = pts[:, 0], pts[:, 1]
    xn, yn = np.roll(x, -1), np.roll(y, -1)
    cross = x * yn - xn * y
    cx = np.sum((x + xn) * cross) / (6.0 * area)
    cy = np.sum((y + yn) * cross) / (6.0 * area)
    return np.array([cx, cy])


def _remove_smallest_triangles(points: np.ndarray, target: int) -> np.ndarray:
    # Visvalingam-Whyatt on a closed ring
    pts = [p for p in np.asarray(points, dtype=float)]
    while len(pts) > target:
        n = len(pts)
        areas = []
        for i in range(n):
            a, b, c = pts[i - 1], pts[i], pts[(i + 1) % n]
            areas.append(abs((b[0] - a[0]) * (c[1] - a[1]) - (c[0] - a[0]) * (b[1] - a[1])))
        del pts[int(np.argmin(areas))]
    return np.array(pts, dtype=float)


def simplify_polygon(contour: np.ndarray, target_vertices: int, max_iterations: int = 30) -> np.ndarray:
    """
    Simplify a closed contour to exactly target_vertices vertices.

    Args:
        contour: (N, 2) or OpenCV (N, 1, 2) contour
        target_vertices: Desired vertex count (>= 3)
        max_iterations: Binary search steps on the approxPolyDP epsilon

    Returns:
        (target_vertices, 2) float array, or fewer vertices if the contour
        itself has fewer points

    Notes:
        - Binary search on epsilon in [0, 0.2 * perimeter]
        - If no epsilon yields the exact count, the closest approximation with
          more vertices is reduced by removing the vertex spanning the smallest
          triangle until the count matches
    """
    pts = np.asarray(contour, dtype=np.float32).reshape(-1, 2)
    if len(pts) <= target_vertices:
        return pts.astype(float)

    curve = pts.reshape(-1, 1, 2)
    perimeter = cv2.arcLength(curve, True)
    lo, hi = 0.0, 0.2 * perimeter
    best_above: Optional[np.ndarray] = None

    for _ in range(max_iterations):
        eps = 0.5 * (lo + hi)
        approx = cv2.approxPolyDP(curve, eps, True).reshape(-1, 2)
        if len(approx) == target_vertices:
            return approx.astype(float)
        if len(approx) > target_vertices:
            best_above = approx
            lo = eps
        else:
            hi = eps

    source = best_above if best_above is not None else pts
    return _remove_smallest_triangles(source, target_vertices)


def line_through(p: np.ndarray, q: np.ndarray) -> Tuple[float, float, float]:
    """Normalized line (a, b, c) through two points, a*x + b*y + c = 0."""
    d = np.asarray(q, dtype=float) - np.asarray(p, dtype=float)
    norm = float(np.hypot(d[0], d[1]))
    if norm < 1e-12:
        return (0.0, 0.0, 0.0)
    a, b = -d[1] / norm, d[0] / norm
    c = -(a * p[0] + b * p[1])
    return (float(a), float(b), float(c))


def intersect_lines(l1, l2, eps: float = 1e-6) -> Optional[np.ndarray]:
    """Intersection of two (a, b, c) lines, None if (nearly) parallel."""
    a1, b1, c1 = l1
    a2, b2, c2 = l2
    det = a1 * b2 - a2 * b1
    if abs(det) < eps:
        return None
    x = (b1 * c2 - b2 * c1) / det
    y = (a2 * c1 - a1 * c2) / det
    return np.array([x, y], dtype=float)


def point_line_distance(points: np.ndarray, line) -> np.ndarray:
    """Absolute distance of (N, 2) points to a normalized line."""
    a, b, c = line
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    return np.abs(a * pts[:, 0] + b * pts[:, 1] + c)


def wrap_angle(theta):
    """Wrap angle(s) to [-pi, pi)."""
    return (np.asarray(theta) + np.pi) % (2.0 * np.pi) - np.pi
