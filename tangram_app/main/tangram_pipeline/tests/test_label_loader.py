"""
Tests for YOLO polygon label fixtures.
"""

import cv2
import numpy as np
import pytest

from tangram_app.main.tangram_pipeline.utils.label_loader import (
    load_polygon_labels,
    load_test_case,
    parse_polygon_labels,
)


def test_parse_normalized_polygons_to_pixels():
    text = "1 0.1 0.2 0.3 0.2 0.3 0.4 0.1 0.4\n\n5 0.5 0.5 0.6 0.5 0.5 0.6\n"
    labels = parse_polygon_labels(text, 640, 480)

    assert [cid for cid, _ in labels] == [1, 5]
    square = labels[0][1]
    assert square.shape == (4, 2)
    assert np.allclose(square[0], [64.0, 96.0])
    assert np.allclose(square[2], [192.0, 192.0])
    assert labels[1][1].shape == (3, 2)


@pytest.mark.parametrize("line, message", [
    ("1 0.1 0.2 0.3", "coordinate pairs"),
    ("1 0.1 0.2 0.3 0.4", "coordinate pairs"),
    ("9 0.1 0.2 0.3 0.4 0.5 0.6", "class id"),
    ("x 0.1 0.2 0.3 0.4 0.5 0.6", "non-numeric"),
    ("2 0.1 0.2 abc 0.4 0.5 0.6", "non-numeric"),
])
def test_malformed_lines_raise(line, message):
    with pytest.raises(ValueError, match=message):
        parse_polygon_labels(line, 100, 100)


def test_load_test_case(tmp_path):
    """images/<name>.png + labels/<name>.txt → frame and pixel polygons"""
    (tmp_path / "images").mkdir()
    (tmp_path / "labels").mkdir()
    frame = np.zeros((200, 300, 3), np.uint8)
    cv2.imwrite(str(tmp_path / "images" / "scene.png"), frame)
    (tmp_path / "labels" / "scene.txt").write_text("0 0.0 0.0 1.0 0.0 1.0 1.0 0.0 1.0\n", encoding="utf-8")

    loaded, labels = load_test_case(tmp_path, "scene")

    assert loaded.shape == (200, 300, 3)
    assert len(labels) == 1
    assert np.allclose(labels[0][1][2], [300.0, 200.0])


def test_load_test_case_missing_label(tmp_path):
    (tmp_path / "images").mkdir()
    cv2.imwrite(str(tmp_path / "images" / "scene.jpg"), np.zeros((10, 10, 3), np.uint8))
    with pytest.raises(FileNotFoundError):
        load_test_case(tmp_path, "scene")


def test_load_polygon_labels_from_file(tmp_path):
    path = tmp_path / "labels.txt"
    path.write_text("4 0.5 0.5 0.75 0.5 0.5 0.75\n", encoding="utf-8")
    labels = load_polygon_labels(path, 100, 100)
    assert labels[0][0] == 4
    assert np.allclose(labels[0][1], [[50, 50], [75, 50], [50, 75]])
