"""
Shared fixtures: synthetic tangram scenes with known homography, scale and poses.
"""

import sys
from pathlib import Path

# Add repository root to path for imports
sys.path.insert(0, str(Path(__file__).resolve().parents[4]))

import numpy as np
import pytest

from tangram_app.main.tangram_pipeline.bundle_adjustment.parameterization import project_model
from tangram_app.main.tangram_pipeline.catalog import load_tangram_models
from tangram_app.main.tangram_pipeline.models import BAInputs, CLASS_NAMES, Pose


# ========== Ground truth ==========

GT_H = np.array([
    [1.05, 0.02, 40.0],
    [-0.01, 0.98, 30.0],
    [1.5e-4, -8e-5, 1.0],
])
GT_SCALE = 60.0
GT_POSES = {
    0: Pose(0.3, 120.0, 110.0),
    1: Pose(-0.5, 300.0, 120.0),
    2: Pose(1.2, 470.0, 150.0),
    4: Pose(2.0, 150.0, 300.0),
    5: Pose(-2.5, 330.0, 320.0),
}

FRAME_SIZE = (640, 480)


def scene_polygons(models, H=GT_H, scale=GT_SCALE, poses=None):
    """[(class_id, (N, 2) image polygon)] in model vertex order."""
    poses = GT_POSES if poses is None else poses
    result = []
    for class_id in sorted(poses):
        model = models[CLASS_NAMES[class_id]]
        result.append((class_id, project_model(H, scale, poses[class_id].as_array(), model.vertices)))
    return result


def make_inputs(models, polygons):
    inputs = BAInputs()
    for class_id, pts in polygons:
        model = models[CLASS_NAMES[class_id]]
        inputs.detected_points.append(np.asarray(pts, dtype=float))
        inputs.model_points.append(model.vertices)
        inputs.shape_types.append(model.shape_type)
        inputs.class_ids.append(class_id)
    return inputs


def stretch_polygons(polygons, factor=2.0):
    """Stretch every polygon along x about its own centroid."""
    stretched = []
    for class_id, pts in polygons:
        center = pts.mean(axis=0)
        stretched.append((class_id, (pts - center) * np.array([factor, 1.0]) + center))
    return stretched


@pytest.fixture(scope="session")
def models():
    """Bundled catalog (read-only in tests)"""
    return load_tangram_models()


@pytest.fixture
def polygons(models):
    """Noise-free image polygons of the ground-truth scene"""
    return scene_polygons(models)


@pytest.fixture
def blank_frame():
    width, height = FRAME_SIZE
    return np.zeros((height, width, 3), np.uint8)
