"""
Loader for polygon label fixtures (YOLO segmentation format).

Each non-empty line of a label file reads:

    class_id x1 y1 x2 y2 ... xn yn

with coordinates normalized to [0, 1] by image width/height.
"""

import logging
from pathlib import Path
from typing import List, Tuple, Union

import cv2
import numpy as np

from ..models import NUM_CLASSES

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")

PolygonLabel = Tuple[int, np.ndarray]


def parse_polygon_labels(text: str, image_width: int, image_height: int) -> List[PolygonLabel]:
    """
    Parse YOLO polygon labels into pixel polygons.

    Args:
        text: Label file contents
        image_width: Width used to de-normalize x coordinates
        image_height: Height used to de-normalize y coordinates

    Returns:
        List of (class_id, (N, 2) float array in pixels) in file order

    Raises:
        ValueError: Malformed line (odd coordinate count, fewer than 3 points,
                    non-numeric token or class id outside 0..6)
    """
    labels: List[PolygonLabel] = []
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        tokens = line.split()
        try:
            class_id = int(tokens[0])
            coords = np.array([float(t) for t in tokens[1:]], dtype=float)
        except ValueError as e:
            raise ValueError(f"Line {line_no}: non-numeric token ({e})") from e

        if not 0 <= class_id < NUM_CLASSES:
            raise ValueError(f"Line {line_no}: class id {class_id} outside 0..{NUM_CLASSES - 1}")
        if len(coords) % 2 != 0 or len(coords) < 6:
            raise ValueError(f"Line {line_no}: expected >= 3 coordinate pairs, got {len(coords)} values")

        points = coords.reshape(-1, 2) * np.array([image_width, image_height], dtype=float)
        labels.append((class_id, points))
    return labels


def load_polygon_labels(label_path: Union[str, Path], image_width: int, image_height: int) -> List[PolygonLabel]:
    """Read and parse a label file (see parse_polygon_labels)."""
    with open(label_path, "r", encoding="utf-8") as f:
        text = f.read()
    labels = parse_polygon_labels(text, image_width, image_height)
    logger.debug("Loaded %d polygon labels from %s", len(labels), label_path)
    return labels


def load_test_case(test_dir: Union[str, Path], image_name: str) -> Tuple[np.ndarray, List[PolygonLabel]]:
    """
    Load an image and its polygon labels from a test directory.

    Args:
        test_dir: Directory containing images/ and labels/
        image_name: File stem shared by image and label

    Returns:
        (frame BGR uint8, labels in pixels)

    Raises:
        FileNotFoundError: Image or label missing
        ValueError: Image unreadable or labels malformed
    """
    test_dir = Path(test_dir)
    image_path = None
    for ext in IMAGE_EXTENSIONS:
        candidate = test_dir / "images" / f"{image_name}{ext}"
        if candidate.exists():
            image_path = candidate
            break
    if image_path is None:
        raise FileNotFoundError(f"No image named {image_name} in {test_dir / 'images'}")

    label_path = test_dir / "labels" / f"{image_name}.txt"
    if not label_path.exists():
        raise FileNotFoundError(f"Label file not found: {label_path}")

    frame = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
    if frame is None:
        raise ValueError(f"Could not read image: {image_path}")

    h, w = frame.shape[:2]
    return frame, load_polygon_labels(label_path, w, h)
