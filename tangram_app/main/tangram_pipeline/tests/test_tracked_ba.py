"""
Tests for TrackedBA: warm starts, outlier rejection, fusion and locking over
frame sequences.
"""

import numpy as np
import pytest

from conftest import make_inputs, scene_polygons, stretch_polygons

from tangram_app.main.tangram_pipeline.bundle_adjustment import TrackedBA
from tangram_app.main.tangram_pipeline.bundle_adjustment.parameterization import pose_slice
from tangram_app.main.tangram_pipeline.config import FusionConfig
from tangram_app.main.tangram_pipeline.models import BAInputs, BASolution, SolveStatus

DT = 1.0 / 30.0


def run_frames(tracked, models, polygons, count, start=0):
    solutions = []
    for i in range(start, start + count):
        solutions.append(tracked.process_frame(make_inputs(models, polygons), timestamp=i * DT))
    return solutions


@pytest.fixture
def tracked():
    return TrackedBA()


# ========== Warm start and fusion ==========

def test_first_frame_cold_then_warm(tracked, models, polygons):
    print("Test 1: Warm start sequence...", end=" ")
    first = tracked.process_frame(make_inputs(models, polygons), timestamp=0.0)
    assert first.ok
    assert not tracked.get_last_used_warm_start()
    assert tracked.has_initialized_tracker()

    second = tracked.process_frame(make_inputs(models, polygons), timestamp=DT)
    assert tracked.get_last_used_warm_start()
    assert second.mean_error < 1.0
    assert tracked.get_last_optimization_time_ms() > 0.0
    print("✓")


def test_solution_fields(tracked, models, polygons):
    solution = run_frames(tracked, models, polygons, 2)[-1]
    class_ids = [cid for cid, _ in polygons]
    assert sorted(solution.poses) == class_ids
    assert sorted(solution.errors) == class_ids
    assert 0.0 <= solution.tracking_quality <= 1.0
    assert np.isclose(solution.H[2, 2], 1.0)
    assert {"predict", "ba_solve", "kalman_update"} <= set(solution.timings)
    assert any(k.startswith("ba.") for k in solution.timings)


def test_outlier_piece_not_fused(tracked, models, polygons):
    """A grossly wrong piece is reported with its error but leaves the filter alone"""
    print("Test 2: Outlier rejection...", end=" ")
    tracked.process_frame(make_inputs(models, polygons), timestamp=0.0)
    slot_before = tracked.tracker.x[pose_slice(4)].copy()

    distorted = [(cid, stretch_polygons([(cid, pts)], 3.0)[0][1] if cid == 4 else pts)
                 for cid, pts in polygons]
    solution = tracked.process_frame(make_inputs(models, distorted), timestamp=DT)

    median = np.median(list(solution.errors.values()))
    assert solution.errors[4] > max(2.0, 2.0 * median)
    assert np.array_equal(tracked.tracker.x[pose_slice(4)], slot_before)
    assert np.allclose(solution.poses[4].as_array(), slot_before)
    print("✓")


# ========== Locking ==========

def test_lock_engages_on_fifth_stable_frame(tracked, models, polygons):
    print("Test 3: Lock after 5 frames...", end=" ")
    solutions = run_frames(tracked, models, polygons, 5)
    assert [s.homography_locked for s in solutions] == [False] * 4 + [True]
    assert tracked.is_homography_locked()
    assert np.allclose(solutions[-1].H, tracked.lock.H)
    print("✓")


def test_locked_frames_keep_homography(tracked, models, polygons):
    run_frames(tracked, models, polygons, 5)
    frozen = tracked.lock.H.copy()
    solution = run_frames(tracked, models, polygons, 2, start=5)[-1]
    assert solution.homography_locked
    assert np.array_equal(solution.H, tracked.lock.H)
    assert np.linalg.norm(solution.H - frozen) / np.linalg.norm(frozen) < FusionConfig().h_update_max_norm
    assert any(k.startswith("ba_free.") for k in solution.timings)


def test_perspective_scene_locks(tracked, models):
    polygons = scene_polygons(models, H=np.array([[0.9, 0.1, 60.0], [-0.05, 0.7, 40.0], [2e-4, 1.2e-3, 1.0]]))
    solutions = run_frames(tracked, models, polygons, 5)
    assert all(s.mean_error < 1.0 for s in solutions)
    assert solutions[-1].homography_locked


def test_large_error_unlocks(tracked, models, polygons):
    run_frames(tracked, models, polygons, 5)
    assert tracked.is_homography_locked()

    solution = tracked.process_frame(make_inputs(models, stretch_polygons(polygons, 3.0)), timestamp=5 * DT)

    assert solution.mean_error > FusionConfig().unlock_error_threshold
    assert not solution.homography_locked
    assert not tracked.is_homography_locked()


def test_pose_only_failure_while_locked_releases_lock(tracked, models, polygons, monkeypatch):
    """Free-solve poses are fused together with the free homography"""
    run_frames(tracked, models, polygons, 5)
    assert tracked.is_homography_locked()

    solve = tracked.solver.solve
    free_solutions = []

    def failing_pose_only(inputs, fix_homography=False):
        if fix_homography:
            return BASolution.identity(SolveStatus.NOT_CONVERGED)
        free_solutions.append(solve(inputs))
        return free_solutions[-1]

    update = tracked.tracker.update
    fused = []

    def recording_update(H_meas, scale_meas, poses_meas, *args, **kwargs):
        fused.append((H_meas, scale_meas))
        return update(H_meas, scale_meas, poses_meas, *args, **kwargs)

    monkeypatch.setattr(tracked.solver, "solve", failing_pose_only)
    monkeypatch.setattr(tracked.tracker, "update", recording_update)

    solution = tracked.process_frame(make_inputs(models, polygons), timestamp=5 * DT)

    assert solution.ok
    assert not solution.homography_locked
    assert not tracked.is_homography_locked()
    assert np.array_equal(fused[-1][0], free_solutions[-1].H)
    assert fused[-1][1] == free_solutions[-1].scale


def test_locking_disabled_never_locks(models, polygons):
    tracked = TrackedBA(FusionConfig(locking_enabled=False))
    solutions = run_frames(tracked, models, polygons, 7)
    assert not any(s.homography_locked for s in solutions)
    assert not tracked.is_locking_enabled()


def test_set_locking_enabled_resets(tracked, models, polygons):
    run_frames(tracked, models, polygons, 5)
    tracked.set_locking_enabled(False)
    assert not tracked.is_homography_locked()
    assert not tracked.has_initialized_tracker()

    tracked.set_locking_enabled(True)
    assert tracked.is_locking_enabled()


# ========== Failures and reset ==========

def test_failure_before_any_success_is_identity(tracked):
    solution = tracked.process_frame(BAInputs(), timestamp=0.0)
    assert solution.status == SolveStatus.INSUFFICIENT_PIECES
    assert np.array_equal(solution.H, np.eye(3))
    assert solution.tracking_quality == 0.0
    assert not tracked.has_initialized_tracker()


def test_failure_returns_previous_and_keeps_lock(tracked, models, polygons):
    last = run_frames(tracked, models, polygons, 5)[-1]
    solution = tracked.process_frame(BAInputs(), timestamp=5 * DT)

    assert solution.status == SolveStatus.INSUFFICIENT_PIECES
    assert solution.tracking_quality == 0.0
    assert np.array_equal(solution.H, last.H)
    assert solution.poses.keys() == last.poses.keys()
    assert solution.homography_locked
    assert tracked.is_homography_locked()


def test_reset_behaves_like_new_instance(tracked, models, polygons):
    """After reset the first frame matches a fresh instance exactly"""
    reference = TrackedBA().process_frame(make_inputs(models, polygons), timestamp=0.0)

    run_frames(tracked, models, stretch_polygons(polygons, 1.1), 3)
    tracked.reset()
    assert not tracked.has_initialized_tracker()
    assert not tracked.is_homography_locked()

    solution = tracked.process_frame(make_inputs(models, polygons), timestamp=0.0)
    assert solution.same_estimate(reference)
