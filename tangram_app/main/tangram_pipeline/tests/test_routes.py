"""
Tests for the Flask API (test client, temporary output folder).
"""

import pytest

from tangram_app import create_app


@pytest.fixture
def client(tmp_path):
    app = create_app({'OUTPUT_FOLDER': str(tmp_path), 'TESTING': True})
    return app.test_client()


def frame_payload(polygons, **extra):
    payload = {
        'width': 640,
        'height': 480,
        'polygons': [{'class_id': cid, 'points': pts.tolist()} for cid, pts in polygons],
    }
    payload.update(extra)
    return payload


def test_list_models(client):
    response = client.get('/api/models')
    assert response.status_code == 200
    models = response.get_json()['models']
    assert len(models) == 7
    assert models[1]['name'] == 'tangram_square'
    assert len(models[1]['vertices']) == 4
    assert len(models[1]['color_bgr']) == 3


def test_process_polygons(client, polygons):
    print("Test 1: POST polygons...", end=" ")
    response = client.post('/api/frame/polygons', json=frame_payload(polygons, timestamp=0.0))
    assert response.status_code == 200

    data = response.get_json()
    assert data['status'] == 'OK'
    assert len(data['H']) == 9
    assert set(data['poses']) == {str(cid) for cid, _ in polygons}
    assert max(data['errors'].values()) < 1.0
    assert 'tangram_square' in data['plane']['pieces']
    assert 'images' not in data
    print("✓")


def test_normalized_polygons(client, polygons):
    normalized = [(cid, pts / [640.0, 480.0]) for cid, pts in polygons]
    response = client.post('/api/frame/polygons', json=frame_payload(normalized, normalized=True))
    assert response.status_code == 200
    assert max(response.get_json()['errors'].values()) < 1.0


def test_render_and_serve_images(client, polygons, tmp_path):
    response = client.post('/api/frame/polygons', json=frame_payload(polygons, render=True, name='t1'))
    images = response.get_json()['images']
    assert images == ['overlay_t1.png', 'plane_t1.png']
    assert (tmp_path / 'overlay_t1.png').exists()

    served = client.get('/output/overlay_t1.png')
    assert served.status_code == 200
    assert served.mimetype == 'image/png'


def test_missing_output_file(client):
    assert client.get('/output/missing.png').status_code == 404
    assert client.get('/output/../routes.py').status_code == 404


@pytest.mark.parametrize("payload", [
    {'polygons': [{'class_id': 9, 'points': [[0, 0], [1, 0], [1, 1]]}]},
    {'polygons': [{'class_id': '1', 'points': [[0, 0], [1, 0], [1, 1], [0, 1]]}]},
    {'polygons': [{'points': [[0, 0], [1, 0], [1, 1]]}]},
    {'polygons': [{'class_id': 1, 'points': [[0, 0], [1, 0]]}]},
])
def test_bad_polygons_rejected(client, payload):
    response = client.post('/api/frame/polygons', json=payload)
    assert response.status_code == 400
    assert 'error' in response.get_json()


def test_non_json_body_rejected(client):
    response = client.post('/api/frame/polygons', data='nope', content_type='text/plain')
    assert response.status_code == 400


def test_reset_and_locking(client, polygons):
    for i in range(5):
        client.post('/api/frame/polygons', json=frame_payload(polygons, timestamp=i / 30.0))
    locked = client.post('/api/frame/polygons', json=frame_payload(polygons, timestamp=5 / 30.0))
    assert locked.get_json()['homography_locked']

    assert client.post('/api/reset').get_json() == {'success': True}
    after_reset = client.post('/api/frame/polygons', json=frame_payload(polygons, timestamp=0.0))
    assert not after_reset.get_json()['homography_locked']

    response = client.post('/api/locking', json={'enabled': False})
    assert response.get_json() == {'success': True, 'locking_enabled': False}
    assert client.post('/api/locking', json={'enabled': 'yes'}).status_code == 400
