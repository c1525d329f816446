"""
Tangram pose pipeline: detections → refined polygons → tracked poses.

Main API:
    TangramPipeline.process_frame(frame, detections, proto_masks, timestamp)
    TangramPipeline.process_frame_with_polygons(frame, polygon_data, timestamp)

The pipeline owns the model catalog, one PolygonRefiner and one TrackedBA.
It is single-threaded and keeps state across frames (tracker, lock, cache of
the last detected pixel polygons).
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .bundle_adjustment import TrackedBA
from .catalog import load_model_colors_from_assets, load_tangram_models
from .config import PipelineConfig
from .mask_decoding import decode_instance_mask, proto_cell_size, validate_proto_masks
from .models import BAInputs, BASolution, Detection, RefinementResult, TangramModel, class_name
from .refinement import PolygonRefiner, validate_frame
from .utils.polygon import ensure_clockwise, simplify_polygon
from .utils.timing import StageTimer

logger = logging.getLogger(__name__)

PolygonInput = Tuple[int, np.ndarray]


class TangramPipeline:
    """
    End-to-end per-frame pose estimation for the seven tangram pieces.

    Args:
        models_path: Catalog JSON (None = bundled catalog)
        assets_dir: Optional directory of <name>.mtl files overriding colors
        config: Pipeline configuration

    Raises:
        CatalogError: Catalog or assets are missing or malformed

    Example:
        >>> pipeline = TangramPipeline()
        >>> solution = pipeline.process_frame_with_polygons(frame, [(1, square_px)])
        >>> solution.poses[1]
    """

    def __init__(self, models_path: Optional[Union[str, Path]] = None,
                 assets_dir: Optional[Union[str, Path]] = None,
                 config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()
        self.models: Dict[str, TangramModel] = load_tangram_models(models_path)
        if assets_dir is not None:
            updated = load_model_colors_from_assets(self.models, assets_dir)
            logger.info("Loaded %d model colors from %s", updated, assets_dir)

        self.refiner = PolygonRefiner(self.config.refiner)
        self.tracked_ba = TrackedBA(self.config.fusion, self.config.solver, self.config.tracker)
        self._last_detected_points: Dict[int, np.ndarray] = {}
        self._last_refinements: Dict[int, RefinementResult] = {}
        self._clock = 0.0

    # ------------------------------------------------------------------
    # Frame entry points
    # ------------------------------------------------------------------

    def process_frame(self, frame: np.ndarray, detections: Sequence[Detection], proto_masks: np.ndarray,
                      timestamp: Optional[float] = None) -> BASolution:
        """
        Estimate poses from raw detections.

        Args:
            frame: BGR uint8 camera frame
            detections: Detector output (bbox + mask coefficients per instance)
            proto_masks: (32, 160, 160) prototype masks
            timestamp: Frame time in seconds (None = synthetic clock)

        Returns:
            Fused BASolution

        Raises:
            ValueError: Malformed frame, proto tensor or unknown class id
        """
        validate_frame(frame)
        protos = validate_proto_masks(proto_masks)
        height, width = frame.shape[:2]
        timer = StageTimer()
        # decoded masks can sit up to one proto cell off the true edge
        cell_px = proto_cell_size(protos, (width, height))
        band_px = max(self.refiner.config.edge_band_px, int(np.ceil(cell_px)) + 2)

        polygons: List[PolygonInput] = []
        refinements = {}
        for det in self._first_per_class(detections):
            model = self.models[class_name(det.class_id)]
            with timer.time_block("mask_decode"):
                mask = decode_instance_mask(protos, det.mask_coeffs, det.bbox, (width, height),
                                            self.config.model_input_size, self.config.mask_threshold)
            with timer.time_block("refinement"):
                result = self.refiner.refine(frame, mask, model.num_vertices, edge_band_px=band_px)
            refinements[det.class_id] = result
            if len(result.polygon_norm) != model.num_vertices:
                logger.debug("Skipping class %d: refined polygon has %d vertices",
                             det.class_id, len(result.polygon_norm))
                continue
            polygons.append((det.class_id, result.polygon_pixels(width, height)))

        self._last_refinements = refinements
        return self._run(polygons, timestamp, timer)

    def process_frame_with_polygons(self, frame: np.ndarray, polygon_data: Sequence[PolygonInput],
                                    timestamp: Optional[float] = None) -> BASolution:
        """
        Estimate poses from already-extracted pixel polygons (no decode, no refinement).

        Args:
            frame: Camera frame (validated, used for its size only)
            polygon_data: (class_id, (N, 2) pixel polygon) pairs
            timestamp: Frame time in seconds (None = synthetic clock)

        Returns:
            Fused BASolution

        Notes:
            - Polygons with more vertices than the model are simplified
            - Identical call sequences produce identical solutions
        """
        validate_frame(frame)
        polygons: List[PolygonInput] = []
        seen = set()
        for class_id, points in polygon_data:
            model = self.models[class_name(class_id)]
            if class_id in seen:
                logger.debug("Duplicate polygon for class %d ignored", class_id)
                continue
            seen.add(class_id)
            pts = np.asarray(points, dtype=float)
            if pts.ndim != 2 or pts.shape[1] != 2 or len(pts) < 3 or not np.all(np.isfinite(pts)):
                raise ValueError(f"Class {class_id}: polygon must be a finite (N >= 3, 2) array")
            if len(pts) > model.num_vertices:
                pts = simplify_polygon(pts, model.num_vertices)
            if len(pts) != model.num_vertices:
                logger.debug("Skipping class %d: %d vertices, model has %d",
                             class_id, len(pts), model.num_vertices)
                continue
            polygons.append((int(class_id), pts))
        return self._run(polygons, timestamp, StageTimer())

    # ------------------------------------------------------------------
    # Pass-throughs
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Drop all temporal state (tracker, lock, caches, synthetic clock)."""
        self.tracked_ba.reset()
        self._last_detected_points = {}
        self._last_refinements = {}
        self._clock = 0.0

    def toggle_locking(self, enabled: bool) -> None:
        """Enable/disable homography locking (resets the tracker)."""
        self.tracked_ba.set_locking_enabled(enabled)

    def get_tangram_models(self) -> Dict[str, TangramModel]:
        return self.models

    def get_last_detected_points_map(self) -> Dict[int, np.ndarray]:
        """Class id → pixel polygon fed to the solver on the last frame."""
        return {cid: pts.copy() for cid, pts in self._last_detected_points.items()}

    def get_last_refinements(self) -> Dict[int, RefinementResult]:
        """Class id → RefinementResult of the last process_frame call."""
        return dict(self._last_refinements)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _first_per_class(detections: Sequence[Detection]) -> List[Detection]:
        kept = {}
        for det in detections:
            class_name(det.class_id)
            if det.class_id not in kept:
                kept[det.class_id] = det
        return [kept[cid] for cid in sorted(kept)]

    def _next_timestamp(self, timestamp: Optional[float]) -> float:
        if timestamp is None:
            self._clock += self.config.frame_interval_s
        else:
            self._clock = float(timestamp)
        return self._clock

    def _run(self, polygons: List[PolygonInput], timestamp: Optional[float], timer: StageTimer) -> BASolution:
        ts = self._next_timestamp(timestamp)
        polygons = sorted(polygons, key=lambda item: item[0])

        inputs = BAInputs()
        for class_id, pts in polygons:
            model = self.models[class_name(class_id)]
            inputs.detected_points.append(ensure_clockwise(pts))
            inputs.model_points.append(model.vertices)
            inputs.shape_types.append(model.shape_type)
            inputs.class_ids.append(class_id)
        self._last_detected_points = {cid: pts for cid, pts in zip(inputs.class_ids, inputs.detected_points)}

        with timer.time_block("fusion"):
            solution = self.tracked_ba.process_frame(inputs, ts)

        timings = timer.as_dict()
        timings.update(solution.timings)
        timings["total"] = sum(timer.as_dict().values())
        solution.timings = timings
        return solution
