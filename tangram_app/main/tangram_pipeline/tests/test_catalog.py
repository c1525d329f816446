"""
Tests for the model catalog loader (JSON + .mtl colors).
"""

import json

import numpy as np
import pytest

from tangram_app.main.tangram_pipeline.catalog import (
    DEFAULT_CATALOG_PATH,
    CatalogError,
    load_model_colors_from_assets,
    load_tangram_models,
    parse_tangram_models,
)
from tangram_app.main.tangram_pipeline.models import CLASS_NAMES
from tangram_app.main.tangram_pipeline.utils.polygon import signed_area


def _catalog_data():
    with open(DEFAULT_CATALOG_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def test_default_catalog_has_all_classes(models):
    """All seven pieces load with correct vertex counts and clockwise winding"""
    assert set(models) == set(CLASS_NAMES)
    for name, model in models.items():
        expected = 3 if model.shape_type == "triangle" else 4
        assert model.num_vertices == expected, f"{name}: {model.num_vertices} vertices"
        assert signed_area(model.vertices) > 0, f"{name} is not clockwise"
        assert np.allclose(model.vertices.mean(axis=0), 0.0, atol=1e-6), f"{name} is not centered"


def test_standard_tangram_areas(models):
    """Areas follow the 1:2:4 ratios of the classic set (small triangle = 1/2)"""
    area = {name: signed_area(m.vertices) for name, m in models.items()}
    assert np.isclose(area["tangram_triangle_sml"], 0.5, atol=1e-6)
    assert np.isclose(area["tangram_triangle_med"], 1.0, atol=1e-6)
    assert np.isclose(area["tangram_triangle_lrg"], 2.0, atol=1e-6)
    assert np.isclose(area["tangram_square"], 1.0, atol=1e-6)
    assert np.isclose(area["tangram_parallelogram"], 1.0, atol=1e-6)


def test_class_id_roundtrip(models):
    for class_id, name in enumerate(CLASS_NAMES):
        assert models[name].class_id == class_id


def test_missing_class_raises():
    data = _catalog_data()
    del data["tangram_square"]
    with pytest.raises(CatalogError, match="tangram_square"):
        parse_tangram_models(data)


def test_wrong_vertex_count_raises():
    data = _catalog_data()
    data["tangram_triangle_sml"]["vertices"] = [[0, 0], [1, 0], [1, 1], [0, 1]]
    with pytest.raises(CatalogError, match="expected 3 vertices"):
        parse_tangram_models(data)


def test_unknown_shape_type_raises():
    data = _catalog_data()
    data["tangram_square"]["type"] = "hexagon"
    with pytest.raises(CatalogError, match="unknown shape type"):
        parse_tangram_models(data)


def test_degenerate_polygon_raises():
    data = _catalog_data()
    data["tangram_triangle_med"]["vertices"] = [[0, 0], [1, 1], [2, 2]]
    with pytest.raises(CatalogError, match="degenerate"):
        parse_tangram_models(data)


def test_counter_clockwise_input_is_normalized():
    data = _catalog_data()
    data["tangram_square"]["vertices"] = [[-0.5, -0.5], [-0.5, 0.5], [0.5, 0.5], [0.5, -0.5]]
    models = parse_tangram_models(data)
    assert signed_area(models["tangram_square"].vertices) > 0
    assert np.allclose(models["tangram_square"].vertices[0], [-0.5, -0.5])


def test_color_is_converted_to_bgr():
    data = _catalog_data()
    data["tangram_square"]["color"] = [10, 20, 30]
    models = parse_tangram_models(data)
    assert models["tangram_square"].color_bgr == (30, 20, 10)


def test_missing_file_raises(tmp_path):
    with pytest.raises(CatalogError, match="not found"):
        load_tangram_models(tmp_path / "nope.json")


def test_invalid_json_raises(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{ not json", encoding="utf-8")
    with pytest.raises(CatalogError, match="not valid JSON"):
        load_tangram_models(path)


def test_mtl_colors_override(tmp_path):
    """First Kd entry of <name>.mtl replaces the catalog color"""
    models = load_tangram_models()
    (tmp_path / "tangram_square.mtl").write_text(
        "newmtl piece\nKa 0 0 0\nKd 1.0 0.5 0.0\nKd 0 0 1\n", encoding="utf-8")
    (tmp_path / "tangram_parallelogram.mtl").write_text("newmtl empty\n", encoding="utf-8")
    before = models["tangram_parallelogram"].color_bgr

    updated = load_model_colors_from_assets(models, tmp_path)

    assert updated == 1
    assert models["tangram_square"].color_bgr == (0, 128, 255)
    assert models["tangram_parallelogram"].color_bgr == before


def test_mtl_missing_directory_raises(tmp_path):
    models = load_tangram_models()
    with pytest.raises(CatalogError, match="Assets directory"):
        load_model_colors_from_assets(models, tmp_path / "missing")
