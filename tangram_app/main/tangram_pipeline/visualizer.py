import logging
import os
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from .bundle_adjustment.correspondence import model_for_candidate
from .bundle_adjustment.parameterization import apply_homography, model_to_plane
from .models import BASolution, CLASS_NAMES, TangramModel
from .utils.polygon import polygon_centroid

logger = logging.getLogger(__name__)


def piece_plane_polygon(solution: BASolution, model: TangramModel, class_id: int) -> np.ndarray:
    """Vertices of one placed piece in plane coordinates (mirrored model where chosen)."""
    vertices = model.vertices
    corr = solution.correspondences.get(class_id)
    if corr is not None:
        vertices = model_for_candidate(vertices, corr)
    return model_to_plane(vertices, solution.scale, solution.poses[class_id].as_array())


def export_plane_coordinates(solution: BASolution, models: Dict[str, TangramModel]) -> dict:
    """JSON-serializable plane and image polygons for every posed piece."""
    pieces = {}
    for class_id in sorted(solution.poses):
        name = CLASS_NAMES[class_id]
        plane = piece_plane_polygon(solution, models[name], class_id)
        image = apply_homography(solution.H, plane)
        pieces[name] = {
            "class_id": class_id,
            "pose": solution.poses[class_id].to_dict(),
            "vertices_plane": plane.round(4).tolist(),
            "vertices_image": image.round(2).tolist(),
            "error_px": solution.errors.get(class_id),
        }
    return {
        "scale": float(solution.scale),
        "homography_locked": bool(solution.homography_locked),
        "tracking_quality": float(solution.tracking_quality),
        "pieces": pieces,
    }


class PoseVisualizer:
    """Diagnostic renderings of a BASolution (camera overlay and top-down plane view)."""

    def __init__(self, models: Dict[str, TangramModel], output_dir: str = 'tangram_app/static/output'):
        self.models = models
        self.output_dir = output_dir

    def render_frame_overlay(self, frame: np.ndarray, solution: BASolution,
                             detected_points: Optional[Dict[int, np.ndarray]] = None) -> np.ndarray:
        """Draw reprojected models (and detected polygons, if given) on a copy of the frame."""
        canvas = frame.copy() if frame.ndim == 3 else cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)

        for class_id, pts in (detected_points or {}).items():
            cv2.polylines(canvas, [np.round(pts).astype(np.int32)], True, (255, 255, 255), 1, cv2.LINE_AA)

        for class_id in sorted(solution.poses):
            model = self.models[CLASS_NAMES[class_id]]
            plane = piece_plane_polygon(solution, model, class_id)
            image = apply_homography(solution.H, plane)
            poly = np.round(image).astype(np.int32)
            cv2.polylines(canvas, [poly], True, model.color_bgr, 2, cv2.LINE_AA)
            center = tuple(int(round(v)) for v in polygon_centroid(image))
            error = solution.errors.get(class_id)
            if error is not None:
                cv2.putText(canvas, f"{error:.1f}", center, cv2.FONT_HERSHEY_SIMPLEX, 0.4, (255, 255, 255), 1)

        status = f"q={solution.tracking_quality:.2f} {'LOCKED' if solution.homography_locked else 'tracking'}"
        cv2.putText(canvas, status, (10, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 255, 255), 1)
        return canvas

    def render_plane_visualization(self, solution: BASolution, size: Tuple[int, int] = (480, 480),
                                   margin: int = 20) -> np.ndarray:
        """Top-down view of the placed pieces, fitted into the canvas."""
        width, height = size
        canvas = np.full((height, width, 3), 255, np.uint8)
        if not solution.poses:
            return canvas

        polygons: List[Tuple[TangramModel, np.ndarray]] = []
        for class_id in sorted(solution.poses):
            model = self.models[CLASS_NAMES[class_id]]
            polygons.append((model, piece_plane_polygon(solution, model, class_id)))

        all_pts = np.vstack([p for _, p in polygons])
        lo = all_pts.min(axis=0)
        extent = np.maximum(all_pts.max(axis=0) - lo, 1e-9)
        k = min((width - 2 * margin) / extent[0], (height - 2 * margin) / extent[1])

        for model, plane in polygons:
            pts = np.round((plane - lo) * k + margin).astype(np.int32)
            cv2.fillPoly(canvas, [pts], model.color_bgr)
            cv2.polylines(canvas, [pts], True, (40, 40, 40), 1, cv2.LINE_AA)
        return canvas

    def save_visualizations(self, frame: np.ndarray, solution: BASolution, basename: str,
                            detected_points: Optional[Dict[int, np.ndarray]] = None) -> List[str]:
        """Write overlay and plane view as PNG files, return the file names."""
        os.makedirs(self.output_dir, exist_ok=True)
        output_files = []

        overlay = self.render_frame_overlay(frame, solution, detected_points)
        filename = f"overlay_{basename}.png"
        cv2.imwrite(os.path.join(self.output_dir, filename), overlay)
        output_files.append(filename)

        plane = self.render_plane_visualization(solution)
        filename = f"plane_{basename}.png"
        cv2.imwrite(os.path.join(self.output_dir, filename), plane)
        output_files.append(filename)

        logger.debug("Saved visualizations %s", output_files)
        return output_files
