"""
Parameter packing and projection for the bundle adjustment.

Homographies are parameterized by their first 8 row-major entries with
H[2, 2] fixed to 1. The tracked state has a fixed slot per class id:

    [h00 h01 h02 h10 h11 h12 h20 h21 | scale | theta_0 tx_0 ty_0 | ... | theta_6 tx_6 ty_6]
"""

from typing import Dict, Tuple

import numpy as np

from ..models import NUM_CLASSES, Pose

N_HOMOGRAPHY = 8
SCALE_INDEX = 8
POSE_OFFSET = 9
N_OBJECTS = NUM_CLASSES
N_STATES = POSE_OFFSET + 3 * N_OBJECTS

MIN_W = 1e-8


def pose_slice(class_id: int) -> slice:
    start = POSE_OFFSET + 3 * int(class_id)
    return slice(start, start + 3)


def normalize_homography(H: np.ndarray) -> np.ndarray:
    """Scale H so that H[2, 2] == 1 (unchanged if H[2, 2] is ~0)."""
    H = np.asarray(H, dtype=float).reshape(3, 3)
    if abs(H[2, 2]) < 1e-12:
        return H.copy()
    return H / H[2, 2]


def homography_to_vector(H: np.ndarray) -> np.ndarray:
    return normalize_homography(H).ravel()[:N_HOMOGRAPHY].copy()


def vector_to_homography(h: np.ndarray) -> np.ndarray:
    return np.append(np.asarray(h, dtype=float)[:N_HOMOGRAPHY], 1.0).reshape(3, 3)


def pack_tracked_state(H: np.ndarray, scale: float, poses: Dict[int, Pose]) -> np.ndarray:
    """
    Pack H, scale and per-class poses into the 30-entry tracked state.

    Args:
        H: (3, 3) homography (normalized internally)
        scale: Model → plane scale
        poses: Class id → Pose (missing classes stay zero)

    Returns:
        (N_STATES,) state vector
    """
    x = np.zeros(N_STATES)
    x[:N_HOMOGRAPHY] = homography_to_vector(H)
    x[SCALE_INDEX] = scale
    for class_id, pose in poses.items():
        x[pose_slice(class_id)] = pose.as_array()
    return x


def unpack_tracked_state(x: np.ndarray) -> Tuple[np.ndarray, float, Dict[int, Pose]]:
    """Inverse of pack_tracked_state (all 7 slots are returned)."""
    x = np.asarray(x, dtype=float)
    H = vector_to_homography(x[:N_HOMOGRAPHY])
    poses = {cid: Pose.from_array(x[pose_slice(cid)]) for cid in range(N_OBJECTS)}
    return H, float(x[SCALE_INDEX]), poses


def rotation(theta: float) -> np.ndarray:
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, -s], [s, c]])


def model_to_plane(model: np.ndarray, scale: float, pose) -> np.ndarray:
    """Model vertices → plane: R(theta) @ (scale * m) + t."""
    theta, tx, ty = pose
    return (scale * np.asarray(model, dtype=float)) @ rotation(theta).T + np.array([tx, ty])


def apply_homography(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Map (N, 2) points through H with the homogeneous w clamped away from 0."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    homog = pts @ H[:, :2].T + H[:, 2]
    w = homog[:, 2]
    w = np.where(np.abs(w) < MIN_W, np.where(w < 0, -MIN_W, MIN_W), w)
    return homog[:, :2] / w[:, None]


def project_model(H: np.ndarray, scale: float, pose, model: np.ndarray) -> np.ndarray:
    """Model vertices → image pixels."""
    return apply_homography(H, model_to_plane(model, scale, pose))


def image_to_plane(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Image pixels → plane coordinates (inverse homography)."""
    return apply_homography(np.linalg.inv(H), points)
