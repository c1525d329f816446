"""
Tests for the polygon refiner and Hough segment clustering.

Synthetic scenes: a bright polygon on a dark background, with the coarse mask
eroded by a few pixels to mimic an imprecise segmentation.
"""

import cv2
import numpy as np
import pytest

from tangram_app.main.tangram_pipeline.config import RefinerConfig
from tangram_app.main.tangram_pipeline.refinement import PolygonRefiner, cluster_segments
from tangram_app.main.tangram_pipeline.utils.polygon import signed_area

QUAD = np.array([[120, 100], [300, 130], [270, 310], [90, 280]], dtype=np.int32)
TRIANGLE = np.array([[100, 100], [300, 120], [150, 300]], dtype=np.int32)
FRAME_SHAPE = (400, 400)

CORNER_TOL_PX = 3.0


def render_scene(polygon, background=40, foreground=200):
    frame = np.full(FRAME_SHAPE + (3,), background, np.uint8)
    cv2.fillPoly(frame, [polygon], (foreground, foreground, foreground))
    return frame


def coarse_mask(polygon, erode_px=2):
    mask = np.zeros(FRAME_SHAPE, np.uint8)
    cv2.fillPoly(mask, [polygon], 255)
    if erode_px:
        mask = cv2.erode(mask, np.ones((3, 3), np.uint8), iterations=erode_px)
    return mask


def assert_corners_close(found, expected, tol=CORNER_TOL_PX):
    assert found.shape == expected.shape, f"Expected {len(expected)} vertices, got {found.shape}"
    for corner in expected.astype(float):
        dist = np.min(np.linalg.norm(found - corner, axis=1))
        assert dist < tol, f"Corner {corner} off by {dist:.2f}px"


@pytest.fixture
def refiner():
    return PolygonRefiner(RefinerConfig())


# ========== Refinement ==========

def test_quad_recovered_from_eroded_mask(refiner):
    """Noise-free quad: refined corners within tolerance of ground truth"""
    print("Test 1: Quad refinement...", end=" ")
    frame = render_scene(QUAD)
    result = refiner.refine(frame, coarse_mask(QUAD), expected_vertices=4)

    polygon = result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0])
    assert_corners_close(polygon, QUAD)
    assert signed_area(polygon) > 0, "Output must be clockwise on screen"
    assert result.num_dominant_lines == 4
    assert not result.used_fallback
    assert len(result.lines) == 4
    for a, b, _ in result.lines:
        assert np.isclose(a * a + b * b, 1.0)
    assert result.line_segments_global, "Dominant segments should be reported"
    print("✓")


def test_polygon_normalized_to_unit_range(refiner):
    frame = render_scene(QUAD)
    result = refiner.refine(frame, coarse_mask(QUAD), expected_vertices=4)
    assert np.all(result.polygon_norm >= 0.0) and np.all(result.polygon_norm <= 1.0)
    assert result.refined_mask_160.shape == (160, 160)
    assert result.refined_mask_full.shape == FRAME_SHAPE


def test_vertices_lie_on_adjacent_lines(refiner):
    frame = render_scene(QUAD)
    result = refiner.refine(frame, coarse_mask(QUAD), expected_vertices=4)
    polygon = result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0])
    n = len(polygon)
    for i in range(n):
        x, y = polygon[i]
        for a, b, c in (result.lines[i - 1], result.lines[i]):
            assert abs(a * x + b * y + c) < 1e-6


def test_triangle_from_mask_boundary_when_frame_is_flat(refiner):
    """No image contrast: edges come from the mask boundary instead"""
    print("Test 2: Mask-boundary edges...", end=" ")
    frame = np.zeros(FRAME_SHAPE + (3,), np.uint8)
    result = refiner.refine(frame, coarse_mask(TRIANGLE, erode_px=0), expected_vertices=3)
    polygon = result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0])
    assert_corners_close(polygon, TRIANGLE)
    print("✓")


def test_soft_mask_is_thresholded(refiner):
    frame = render_scene(QUAD)
    soft = coarse_mask(QUAD).astype(np.float32) / 255.0 * 0.9
    result = refiner.refine(frame, soft, expected_vertices=4)
    assert_corners_close(result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0]), QUAD)


def test_grayscale_frame_accepted(refiner):
    frame = cv2.cvtColor(render_scene(QUAD), cv2.COLOR_BGR2GRAY)
    result = refiner.refine(frame, coarse_mask(QUAD), expected_vertices=4)
    assert_corners_close(result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0]), QUAD)


def test_grabcut_pass_keeps_polygon(refiner):
    frame = render_scene(QUAD)
    result = refiner.refine(frame, coarse_mask(QUAD), expected_vertices=4, refine_iterations=2)
    assert_corners_close(result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0]), QUAD)


def test_empty_mask_degrades(refiner):
    """Empty mask: empty polygon, fallback flagged, no exception"""
    frame = render_scene(QUAD)
    result = refiner.refine(frame, np.zeros(FRAME_SHAPE, np.uint8), expected_vertices=4)
    assert result.polygon_norm.shape == (0, 2)
    assert result.used_fallback
    assert result.num_dominant_lines == 0


def test_missing_lines_fall_back_to_coarse_edges():
    """Hough disabled by an impossible minimum length: coarse polygon is returned"""
    config = RefinerConfig(min_line_length_px=10_000.0)
    result = PolygonRefiner(config).refine(render_scene(QUAD), coarse_mask(QUAD, erode_px=0), 4)
    assert result.used_fallback
    assert result.num_dominant_lines == 0
    assert_corners_close(result.polygon_pixels(FRAME_SHAPE[1], FRAME_SHAPE[0]), QUAD, tol=4.0)


@pytest.mark.parametrize("frame", [
    np.zeros((400, 400, 3), np.float32),
    np.zeros((400, 400, 4), np.uint8),
    np.zeros((400,), np.uint8),
])
def test_invalid_frame_raises(refiner, frame):
    with pytest.raises(ValueError):
        refiner.refine(frame, coarse_mask(QUAD), expected_vertices=4)


def test_invalid_vertex_count_raises(refiner):
    with pytest.raises(ValueError):
        refiner.refine(render_scene(QUAD), coarse_mask(QUAD), expected_vertices=2)


# ========== Segment clustering ==========

def test_collinear_segments_merge():
    clusters = cluster_segments([(0, 0, 50, 0), (60, 1, 120, 1)], np.deg2rad(6), 4.0)
    assert len(clusters) == 1
    assert np.isclose(clusters[0].weight, 110.0)


def test_near_vertical_segments_merge_across_wraparound():
    """Opposite directions around phi = 0 / pi end up in one cluster"""
    clusters = cluster_segments([(0, 0, 0.5, 10), (1, 10, 1.2, 0)], np.deg2rad(6), 4.0)
    assert len(clusters) == 1


def test_perpendicular_and_distant_segments_stay_apart():
    segments = [(0, 0, 100, 0), (0, 0, 0, 100), (0, 50, 100, 50)]
    clusters = cluster_segments(segments, np.deg2rad(6), 4.0)
    assert len(clusters) == 3
    weights = [c.weight for c in clusters]
    assert weights == sorted(weights, reverse=True)
