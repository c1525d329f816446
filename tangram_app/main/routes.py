import logging
from pathlib import Path

import numpy as np
from flask import current_app, jsonify, request, send_file

from tangram_app.main import main_bp
from tangram_app.main.tangram_pipeline import (
    CLASS_NAMES,
    PoseVisualizer,
    export_plane_coordinates,
)

logger = logging.getLogger(__name__)


def _pipeline():
    return current_app.extensions['tangram_pipeline']


def _parse_polygons(payload, width, height):
    """Request polygons → [(class_id, (N, 2) pixel array)]."""
    normalized = bool(payload.get('normalized', False))
    polygons = []
    for entry in payload.get('polygons', []):
        if 'class_id' not in entry or 'points' not in entry:
            raise ValueError("Each polygon needs 'class_id' and 'points'")
        class_id = entry['class_id']
        if isinstance(class_id, bool) or not isinstance(class_id, int):
            raise ValueError(f"class_id must be an integer, got {class_id!r}")
        points = np.asarray(entry['points'], dtype=float)
        if normalized:
            points = points * np.array([width, height], dtype=float)
        polygons.append((class_id, points))
    return polygons


@main_bp.route('/api/models')
def list_models():
    """Catalog summary (vertices in model units, colors as BGR)."""
    models = _pipeline().get_tangram_models()
    return jsonify({
        'models': [
            {
                'class_id': class_id,
                'name': name,
                'type': models[name].shape_type,
                'vertices': models[name].vertices.tolist(),
                'color_bgr': list(models[name].color_bgr),
            }
            for class_id, name in enumerate(CLASS_NAMES)
        ]
    })


@main_bp.route('/api/frame/polygons', methods=['POST'])
def process_polygons():
    """Run one frame of pre-extracted polygons through the tracker."""
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({'error': 'Expected a JSON body'}), 400

    try:
        width = int(payload.get('width', 640))
        height = int(payload.get('height', 480))
        polygons = _parse_polygons(payload, width, height)
        frame = np.zeros((height, width, 3), np.uint8)

        pipeline = _pipeline()
        solution = pipeline.process_frame_with_polygons(frame, polygons, payload.get('timestamp'))

        result = solution.to_dict()
        result['plane'] = export_plane_coordinates(solution, pipeline.get_tangram_models())

        if payload.get('render'):
            visualizer = PoseVisualizer(pipeline.get_tangram_models(), current_app.config['OUTPUT_FOLDER'])
            basename = str(payload.get('name', 'frame'))
            result['images'] = visualizer.save_visualizations(
                frame, solution, basename, pipeline.get_last_detected_points_map())

        return jsonify(result)

    except (ValueError, TypeError) as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.exception("Frame processing failed")
        return jsonify({'error': str(e)}), 500


@main_bp.route('/api/reset', methods=['POST'])
def reset_tracking():
    _pipeline().reset()
    return jsonify({'success': True})


@main_bp.route('/api/locking', methods=['POST'])
def set_locking():
    """Enable/disable homography locking (resets tracking)."""
    payload = request.get_json(silent=True) or {}
    enabled = payload.get('enabled')
    if not isinstance(enabled, bool):
        return jsonify({'error': "'enabled' must be true or false"}), 400

    pipeline = _pipeline()
    pipeline.toggle_locking(enabled)
    return jsonify({
        'success': True,
        'locking_enabled': pipeline.tracked_ba.is_locking_enabled(),
    })


@main_bp.route('/output/<path:filename>')
def get_output_image(filename):
    """Serve rendered visualizations."""
    output_folder = Path(current_app.config['OUTPUT_FOLDER']).resolve()
    filepath = (output_folder / filename).resolve()

    if output_folder in filepath.parents and filepath.exists():
        return send_file(str(filepath))

    return jsonify({'error': 'Image not found'}), 404
