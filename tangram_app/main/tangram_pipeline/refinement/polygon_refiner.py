"""
Polygon refiner: coarse instance mask → sub-pixel polygon.

Pipeline per detection:
1. Mask preparation (resize, binarize, close/open, optional GrabCut)
2. Coarse polygon: largest contour simplified to the expected vertex count
3. Edge map: Canny with Otsu-derived thresholds inside a band around the mask boundary
4. Line extraction: probabilistic Hough segments clustered into lines
5. Line selection: one dominant line per coarse edge, refit on its edge pixels
6. Corners: intersections of adjacent lines (coarse corner as fallback)

Missing lines or implausible intersections never fail the call; they fall
back to the coarse polygon and are reported via num_dominant_lines and
used_fallback.
"""

import logging
from typing import List, Optional, Tuple

import cv2
import numpy as np

from ..config import RefinerConfig
from ..models import RefinementResult
from ..utils.polygon import (
    ensure_clockwise,
    intersect_lines,
    line_through,
    point_line_distance,
    signed_area,
    simplify_polygon,
)
from ..utils.timing import StageTimer
from .line_fitting import (
    LineCluster,
    cluster_segments,
    fit_line,
    normal_form_distance,
    segment_normal_form,
)

logger = logging.getLogger(__name__)


def validate_frame(frame: np.ndarray) -> None:
    """Raise ValueError unless frame is an HxW or HxWx3 uint8 image."""
    if not isinstance(frame, np.ndarray):
        raise ValueError(f"Frame must be a numpy array, got {type(frame).__name__}")
    if frame.dtype != np.uint8:
        raise ValueError(f"Frame must be uint8, got {frame.dtype}")
    if frame.ndim == 3 and frame.shape[2] == 3:
        pass
    elif frame.ndim != 2:
        raise ValueError(f"Frame must be HxW or HxWx3, got shape {frame.shape}")
    if frame.shape[0] < 2 or frame.shape[1] < 2:
        raise ValueError(f"Frame is too small: {frame.shape}")


class PolygonRefiner:
    """
    Refines a coarse segmentation mask into a polygon with the expected
    number of vertices.

    Example:
        >>> refiner = PolygonRefiner()
        >>> result = refiner.refine(frame, mask, expected_vertices=4)
        >>> result.polygon_pixels(frame.shape[1], frame.shape[0])
    """

    def __init__(self, config: Optional[RefinerConfig] = None):
        self.config = config or RefinerConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def refine(self, frame: np.ndarray, coarse_mask: np.ndarray, expected_vertices: int,
               refine_iterations: Optional[int] = None,
               edge_band_px: Optional[int] = None) -> RefinementResult:
        """
        Refine one detection.

        Args:
            frame: Camera frame (HxWx3 BGR or HxW gray, uint8)
            coarse_mask: Soft or binary mask at any resolution (resized to the frame)
            expected_vertices: Vertex count of the piece (3 or 4)
            refine_iterations: GrabCut iterations (None = config default, 0 = skip)
            edge_band_px: Half-width of the edge band (None = config default). Masks
                upsampled from a coarse grid need at least one grid cell plus slack

        Returns:
            RefinementResult (polygon_norm empty if the mask is empty)

        Raises:
            ValueError: Frame or mask of unexpected format, expected_vertices < 3
        """
        validate_frame(frame)
        if expected_vertices < 3:
            raise ValueError(f"expected_vertices must be >= 3, got {expected_vertices}")
        if not isinstance(coarse_mask, np.ndarray) or coarse_mask.ndim != 2 or coarse_mask.size == 0:
            raise ValueError("coarse_mask must be a non-empty 2-D array")

        cfg = self.config
        iterations = cfg.refine_iterations if refine_iterations is None else int(refine_iterations)
        band_px = cfg.edge_band_px if edge_band_px is None else max(1, int(edge_band_px))
        height, width = frame.shape[:2]
        timer = StageTimer()

        with timer.time_block("mask_prep"):
            mask = self._prepare_mask(frame, coarse_mask, iterations, band_px)
            mask_160 = cv2.resize(mask, (cfg.mask_160_size, cfg.mask_160_size), interpolation=cv2.INTER_NEAREST)

        with timer.time_block("coarse_polygon"):
            contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
            contour = max(contours, key=cv2.contourArea) if contours else None
            coarse = None
            if contour is not None and cv2.contourArea(contour) > 0:
                coarse = ensure_clockwise(simplify_polygon(contour, expected_vertices))

        if coarse is None or len(coarse) < expected_vertices or abs(signed_area(coarse)) < 1e-6:
            logger.debug("Mask too small for a %d-gon, returning degraded result", expected_vertices)
            polygon = np.zeros((0, 2)) if coarse is None else coarse / np.array([width, height], dtype=float)
            return RefinementResult(
                refined_mask_full=mask,
                refined_mask_160=mask_160,
                polygon_norm=polygon,
                timings=timer.as_dict(),
                used_fallback=True,
            )

        with timer.time_block("edge_detection"):
            edges, offset = self._detect_edges(frame, mask, contour, band_px)

        edge_lengths = np.linalg.norm(np.roll(coarse, -1, axis=0) - coarse, axis=1)
        mean_edge = float(np.mean(edge_lengths))

        with timer.time_block("hough_lines"):
            clusters = self._extract_clusters(edges, offset, mean_edge)

        with timer.time_block("line_selection"):
            lines, dominant, num_dominant = self._select_lines(coarse, clusters, edges, offset)

        with timer.time_block("intersection"):
            vertices, corner_fallbacks = self._intersect(coarse, lines, mean_edge)

        if signed_area(vertices) < 0:
            vertices = ensure_clockwise(vertices)
            lines = lines[::-1]

        secondary = [seg for c in clusters if not any(c is d for d in dominant) for seg in c.segments]
        used_fallback = num_dominant < expected_vertices or corner_fallbacks > 0
        if used_fallback:
            logger.debug("Refinement fallback: %d/%d dominant lines, %d coarse corners",
                         num_dominant, expected_vertices, corner_fallbacks)

        return RefinementResult(
            refined_mask_full=mask,
            refined_mask_160=mask_160,
            polygon_norm=vertices / np.array([width, height], dtype=float),
            lines=[tuple(float(v) for v in line) for line in lines],
            line_segments_global=[seg for c in dominant for seg in c.segments],
            line_secondary_segments_global=secondary,
            timings=timer.as_dict(),
            num_dominant_lines=num_dominant,
            used_fallback=used_fallback,
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _prepare_mask(self, frame: np.ndarray, coarse_mask: np.ndarray, iterations: int,
                      band_px: int) -> np.ndarray:
        cfg = self.config
        height, width = frame.shape[:2]

        soft = coarse_mask.astype(np.float32)
        if coarse_mask.dtype == np.uint8 and coarse_mask.max() > 1:
            soft /= 255.0
        if soft.shape != (height, width):
            soft = cv2.resize(soft, (width, height), interpolation=cv2.INTER_LINEAR)
        mask = (soft > cfg.mask_threshold).astype(np.uint8) * 255

        k = max(1, int(cfg.morph_kernel_size))
        kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
        mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel)
        mask = cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)

        if iterations > 0 and frame.ndim == 3 and cv2.countNonZero(mask) > 0:
            mask = self._grabcut(frame, mask, iterations, band_px)
        return mask

    def _grabcut(self, frame: np.ndarray, mask: np.ndarray, iterations: int, band_px: int) -> np.ndarray:
        band = 2 * band_px + 1
        kernel = np.ones((band, band), np.uint8)
        sure_fg = cv2.erode(mask, kernel)
        maybe = cv2.dilate(mask, kernel)

        gc_mask = np.full(mask.shape, cv2.GC_BGD, np.uint8)
        gc_mask[maybe > 0] = cv2.GC_PR_BGD
        gc_mask[mask > 0] = cv2.GC_PR_FGD
        gc_mask[sure_fg > 0] = cv2.GC_FGD

        bgd_model = np.zeros((1, 65), np.float64)
        fgd_model = np.zeros((1, 65), np.float64)
        try:
            cv2.grabCut(frame, gc_mask, None, bgd_model, fgd_model, iterations, cv2.GC_INIT_WITH_MASK)
        except cv2.error as e:
            logger.warning("GrabCut failed, keeping morphological mask: %s", e)
            return mask
        refined = np.where((gc_mask == cv2.GC_FGD) | (gc_mask == cv2.GC_PR_FGD), 255, 0).astype(np.uint8)
        return refined if cv2.countNonZero(refined) > 0 else mask

    def _detect_edges(self, frame: np.ndarray, mask: np.ndarray, contour: np.ndarray,
                      band_px: int) -> Tuple[np.ndarray, np.ndarray]:
        cfg = self.config
        height, width = mask.shape
        x, y, bw, bh = cv2.boundingRect(contour)
        x0 = max(0, x - cfg.roi_margin_px)
        y0 = max(0, y - cfg.roi_margin_px)
        x1 = min(width, x + bw + cfg.roi_margin_px)
        y1 = min(height, y + bh + cfg.roi_margin_px)

        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        roi = gray[y0:y1, x0:x1]
        k = cfg.blur_kernel_size
        roi_blur = cv2.GaussianBlur(roi, (k, k), 0)

        otsu, _ = cv2.threshold(roi_blur, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        high = max(float(otsu), cfg.min_canny_high)
        edges = cv2.Canny(roi_blur, cfg.canny_low_ratio * high, high)

        roi_mask = mask[y0:y1, x0:x1]
        band_k = np.ones((2 * band_px + 1, 2 * band_px + 1), np.uint8)
        band = cv2.subtract(cv2.dilate(roi_mask, band_k), cv2.erode(roi_mask, band_k))
        edges[band == 0] = 0

        if cv2.countNonZero(edges) < cfg.min_edge_pixels:
            logger.debug("Only %d image edge pixels, using mask boundary", cv2.countNonZero(edges))
            edges = cv2.Canny(roi_mask, 50, 150)

        return edges, np.array([x0, y0], dtype=float)

    def _extract_clusters(self, edges: np.ndarray, offset: np.ndarray, mean_edge: float) -> List[LineCluster]:
        cfg = self.config
        min_len = max(cfg.min_line_length_px, cfg.min_line_length_ratio * mean_edge)
        raw = cv2.HoughLinesP(
            edges,
            cfg.hough_rho,
            np.deg2rad(cfg.hough_theta_deg),
            threshold=max(5, int(0.5 * min_len)),
            minLineLength=min_len,
            maxLineGap=cfg.max_line_gap_px,
        )
        if raw is None:
            return []
        ox, oy = offset
        segments = [(float(a + ox), float(b + oy), float(c + ox), float(d + oy)) for a, b, c, d in raw.reshape(-1, 4)]
        return cluster_segments(segments, np.deg2rad(cfg.cluster_angle_tol_deg), cfg.cluster_rho_tol_px)

    def _select_lines(self, coarse: np.ndarray, clusters: List[LineCluster], edges: np.ndarray,
                      offset: np.ndarray):
        cfg = self.config
        ys, xs = np.nonzero(edges)
        edge_pts = np.column_stack([xs + offset[0], ys + offset[1]]).astype(float)

        n = len(coarse)
        used = set()
        lines = []
        dominant: List[LineCluster] = []
        for i in range(n):
            p, q = coarse[i], coarse[(i + 1) % n]
            edge_len = float(np.linalg.norm(q - p))
            edge_line = line_through(p, q)
            phi_e, rho_e = segment_normal_form(p[0], p[1], q[0], q[1])
            mid = 0.5 * (p + q)
            max_dist = max(cfg.min_edge_dist_px, cfg.edge_dist_ratio * edge_len)

            chosen = None
            for idx, cluster in enumerate(clusters):
                if idx in used:
                    continue
                d_phi, _ = normal_form_distance(phi_e, rho_e, cluster.phi, cluster.rho)
                if d_phi > np.deg2rad(cfg.edge_angle_tol_deg):
                    continue
                if point_line_distance(mid, cluster.line)[0] > max_dist:
                    continue
                chosen = idx
                break

            if chosen is None:
                lines.append(edge_line)
                continue

            used.add(chosen)
            cluster = clusters[chosen]
            dominant.append(cluster)
            lines.append(self._refit(cluster, p, q, edge_pts))

        return lines, dominant, len(dominant)

    def _refit(self, cluster: LineCluster, p: np.ndarray, q: np.ndarray, edge_pts: np.ndarray):
        cfg = self.config
        line = None
        if len(edge_pts):
            d = q - p
            t = (edge_pts - p) @ d / float(d @ d)
            near = point_line_distance(edge_pts, cluster.line) <= cfg.fit_dist_px
            inside = (t >= cfg.fit_span_margin) & (t <= 1.0 - cfg.fit_span_margin)
            support = edge_pts[near & inside]
            if len(support) >= 5:
                line = fit_line(support)
        if line is None:
            line = fit_line(cluster.endpoints())
        return line if line is not None else cluster.line

    def _intersect(self, coarse: np.ndarray, lines, mean_edge: float) -> Tuple[np.ndarray, int]:
        cfg = self.config
        n = len(coarse)
        max_shift = cfg.max_corner_shift_ratio * mean_edge
        vertices = np.empty_like(coarse)
        fallbacks = 0
        for i in range(n):
            # vertex i joins edge i-1 (v[i-1] -> v[i]) and edge i (v[i] -> v[i+1])
            v = intersect_lines(lines[i - 1], lines[i], cfg.parallel_det_eps)
            if v is None or not np.all(np.isfinite(v)) or np.linalg.norm(v - coarse[i]) > max_shift:
                vertices[i] = coarse[i]
                fallbacks += 1
            else:
                vertices[i] = v
        return vertices, fallbacks
