"""
Hough segment clustering and line refitting.

Segments are described in normal form (phi, rho): the line is
x*cos(phi) + y*sin(phi) = rho with phi in [0, pi). Near-collinear segments
are merged into clusters weighted by total segment length.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

Segment = Tuple[float, float, float, float]


def segment_normal_form(x1: float, y1: float, x2: float, y2: float) -> Tuple[float, float]:
    """(phi, rho) of the infinite line through a segment, phi in [0, pi)."""
    dx, dy = x2 - x1, y2 - y1
    phi = np.arctan2(dx, -dy)  # normal = (-dy, dx) rotated into atan2 form
    rho = x1 * np.cos(phi) + y1 * np.sin(phi)
    if phi < 0:
        phi += np.pi
        rho = -rho
    if phi >= np.pi:
        phi -= np.pi
        rho = -rho
    return float(phi), float(rho)


def normal_form_distance(phi_a: float, rho_a: float, phi_b: float, rho_b: float) -> Tuple[float, float]:
    """
    Angle and offset difference between two normal-form lines.

    Notes:
        - Lines with phi near 0 and near pi are compared after flipping one of
          them (phi - pi, -rho), so wrap-around does not split clusters
    """
    d_phi = phi_b - phi_a
    if d_phi > np.pi / 2:
        phi_b, rho_b = phi_b - np.pi, -rho_b
    elif d_phi < -np.pi / 2:
        phi_b, rho_b = phi_b + np.pi, -rho_b
    return abs(phi_b - phi_a), abs(rho_b - rho_a)


@dataclass
class LineCluster:
    """Group of near-collinear Hough segments."""
    phi: float
    rho: float
    weight: float
    segments: List[Segment] = field(default_factory=list)

    def add(self, segment: Segment, phi: float, rho: float, length: float) -> None:
        # align the new member with the cluster before averaging
        if phi - self.phi > np.pi / 2:
            phi, rho = phi - np.pi, -rho
        elif phi - self.phi < -np.pi / 2:
            phi, rho = phi + np.pi, -rho
        total = self.weight + length
        self.phi = (self.phi * self.weight + phi * length) / total
        self.rho = (self.rho * self.weight + rho * length) / total
        if self.phi < 0:
            self.phi, self.rho = self.phi + np.pi, -self.rho
        elif self.phi >= np.pi:
            self.phi, self.rho = self.phi - np.pi, -self.rho
        self.weight = total
        self.segments.append(segment)

    @property
    def line(self) -> Tuple[float, float, float]:
        """(a, b, c) with a^2 + b^2 = 1."""
        return (float(np.cos(self.phi)), float(np.sin(self.phi)), float(-self.rho))

    def endpoints(self) -> np.ndarray:
        pts = []
        for x1, y1, x2, y2 in self.segments:
            pts.append((x1, y1))
            pts.append((x2, y2))
        return np.array(pts, dtype=float)


def cluster_segments(segments: List[Segment], angle_tol_rad: float, rho_tol: float) -> List[LineCluster]:
    """
    Merge Hough segments into line clusters.

    Args:
        segments: (x1, y1, x2, y2) segments
        angle_tol_rad: Maximum normal angle difference within a cluster
        rho_tol: Maximum offset difference within a cluster (pixels)

    Returns:
        Clusters sorted by descending weight (total segment length)

    Notes:
        - Longest segments are assigned first, so cluster centers are
          dominated by the most reliable evidence
        - Output order is deterministic for a given input
    """
    described = []
    for seg in segments:
        x1, y1, x2, y2 = (float(v) for v in seg)
        length = float(np.hypot(x2 - x1, y2 - y1))
        if length < 1e-9:
            continue
        phi, rho = segment_normal_form(x1, y1, x2, y2)
        described.append(((x1, y1, x2, y2), phi, rho, length))
    described.sort(key=lambda item: -item[3])

    clusters: List[LineCluster] = []
    for seg, phi, rho, length in described:
        for cluster in clusters:
            d_phi, d_rho = normal_form_distance(cluster.phi, cluster.rho, phi, rho)
            if d_phi <= angle_tol_rad and d_rho <= rho_tol:
                cluster.add(seg, phi, rho, length)
                break
        else:
            clusters.append(LineCluster(phi=phi, rho=rho, weight=length, segments=[seg]))

    clusters.sort(key=lambda c: -c.weight)
    return clusters


def fit_line(points: np.ndarray) -> Optional[Tuple[float, float, float]]:
    """Least-squares (a, b, c) line through points via cv2.fitLine, None if < 2 points."""
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if len(pts) < 2:
        return None
    vx, vy, x0, y0 = cv2.fitLine(pts, cv2.DIST_L2, 0, 0.01, 0.01).ravel()
    a, b = -float(vy), float(vx)
    norm = float(np.hypot(a, b))
    if norm < 1e-12:
        return None
    a, b = a / norm, b / norm
    c = -(a * float(x0) + b * float(y0))
    return (a, b, c)
