"""
Tangram model catalog loading.

Catalog format (JSON):

    {
      "tangram_square": {
        "type": "square",
        "vertices": [[x, y], ...],
        "color": [r, g, b]
      },
      ...
    }

All seven class names must be present. Vertices are normalized to clockwise
winding on load. Display colors may be overridden from Wavefront .mtl files
(first "Kd r g b" entry, components in [0, 1]).
"""

import json
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import numpy as np

from ..models import CLASS_NAMES, SHAPE_VERTEX_COUNTS, TangramModel
from ..utils.polygon import ensure_clockwise, signed_area

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "tangram_shapes_2d.json"


class CatalogError(ValueError):
    """Raised when catalog data is missing, malformed or incomplete.

    Notes:
        - Raised at pipeline construction only; per-frame code never raises it
    """
    pass


def _parse_color(value, name: str):
    if value is None:
        return (128, 128, 128)
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise CatalogError(f"{name}: 'color' must be [r, g, b], got {value!r}")
    try:
        r, g, b = (int(round(float(c))) for c in value)
    except (TypeError, ValueError) as e:
        raise CatalogError(f"{name}: non-numeric color {value!r}") from e
    if not all(0 <= c <= 255 for c in (r, g, b)):
        raise CatalogError(f"{name}: color components must be in 0..255, got {value!r}")
    return (b, g, r)


def parse_tangram_models(data: dict) -> Dict[str, TangramModel]:
    """
    Validate catalog data and build the models.

    Args:
        data: Decoded catalog JSON

    Returns:
        Class name → TangramModel for all seven classes

    Raises:
        CatalogError: Missing class, unknown shape type, wrong vertex count,
                      degenerate polygon or malformed color
    """
    if not isinstance(data, dict):
        raise CatalogError(f"Catalog root must be an object, got {type(data).__name__}")

    missing = [name for name in CLASS_NAMES if name not in data]
    if missing:
        raise CatalogError(f"Catalog is missing shape classes: {', '.join(missing)}")

    models: Dict[str, TangramModel] = {}
    for name in CLASS_NAMES:
        entry = data[name]
        if not isinstance(entry, dict):
            raise CatalogError(f"{name}: entry must be an object")

        shape_type = entry.get("type")
        if shape_type not in SHAPE_VERTEX_COUNTS:
            raise CatalogError(f"{name}: unknown shape type {shape_type!r}")

        try:
            vertices = np.asarray(entry.get("vertices"), dtype=float)
        except (TypeError, ValueError) as e:
            raise CatalogError(f"{name}: vertices are not numeric") from e

        expected = SHAPE_VERTEX_COUNTS[shape_type]
        if vertices.ndim != 2 or vertices.shape != (expected, 2):
            raise CatalogError(
                f"{name}: expected {expected} vertices of shape (x, y), got array of shape {vertices.shape}")
        if not np.all(np.isfinite(vertices)) or abs(signed_area(vertices)) < 1e-9:
            raise CatalogError(f"{name}: degenerate polygon")

        models[name] = TangramModel(
            name=name,
            shape_type=shape_type,
            vertices=ensure_clockwise(vertices),
            color_bgr=_parse_color(entry.get("color"), name),
        )
    return models


def load_tangram_models(path: Optional[Union[str, Path]] = None) -> Dict[str, TangramModel]:
    """
    Load the model catalog from a JSON file.

    Args:
        path: Catalog file (None = bundled default catalog)

    Returns:
        Class name → TangramModel

    Raises:
        CatalogError: File missing, invalid JSON or invalid content
    """
    path = Path(path) if path is not None else DEFAULT_CATALOG_PATH
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise CatalogError(f"Catalog file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise CatalogError(f"Catalog file {path} is not valid JSON: {e}") from e

    models = parse_tangram_models(data)
    logger.info("Loaded %d tangram models from %s", len(models), path)
    return models


def _read_mtl_diffuse(mtl_path: Path):
    with open(mtl_path, "r", encoding="utf-8") as f:
        for line in f:
            parts = line.split()
            if len(parts) >= 4 and parts[0] == "Kd":
                try:
                    return tuple(float(v) for v in parts[1:4])
                except ValueError as e:
                    raise CatalogError(f"{mtl_path}: malformed Kd entry {line.strip()!r}") from e
    return None


def load_model_colors_from_assets(models: Dict[str, TangramModel], assets_dir: Union[str, Path]) -> int:
    """
    Override display colors from <assets_dir>/<name>.mtl diffuse colors.

    Args:
        models: Catalog to update in place
        assets_dir: Directory with one .mtl file per class name

    Returns:
        Number of models whose color was updated

    Raises:
        CatalogError: assets_dir is not a directory or an .mtl entry is malformed

    Notes:
        - Missing .mtl files or files without Kd keep the catalog color
    """
    assets_dir = Path(assets_dir)
    if not assets_dir.is_dir():
        raise CatalogError(f"Assets directory not found: {assets_dir}")

    updated = 0
    for name, model in models.items():
        mtl_path = assets_dir / f"{name}.mtl"
        if not mtl_path.exists():
            logger.debug("No material file for %s, keeping catalog color", name)
            continue
        kd = _read_mtl_diffuse(mtl_path)
        if kd is None:
            continue
        r, g, b = (int(round(min(max(c, 0.0), 1.0) * 255)) for c in kd)
        model.color_bgr = (b, g, r)
        updated += 1
    return updated
