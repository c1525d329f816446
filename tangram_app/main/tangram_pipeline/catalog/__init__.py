"""Canonical tangram geometry catalog."""

from .loader import (
    CatalogError,
    DEFAULT_CATALOG_PATH,
    load_tangram_models,
    load_model_colors_from_assets,
    parse_tangram_models,
)

__all__ = [
    "CatalogError",
    "DEFAULT_CATALOG_PATH",
    "load_tangram_models",
    "load_model_colors_from_assets",
    "parse_tangram_models",
]
