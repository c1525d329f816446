"""
Correspondence & pose solver ("bundle adjustment").

Given detected polygons of up to seven pieces, estimates one shared
plane → image homography H, one shared model → plane scale and a planar
pose per piece, together with the vertex correspondence of every piece.

Algorithm:
1. Initialization: warm start (H, scale, poses) or cold start
   (identity vs. horizontal flip, median area-ratio scale)
2. Correspondence search: per piece, every candidate is initialized in
   closed form (2-D Procrustes in plane coordinates), refined by a
   3-parameter fit against the current H, and the lowest-residual candidate
   is kept (deterministic tie-break)
3. Joint optimization: Huber-robust least squares over
   [h (8), scale, (theta, tx, ty) per piece] plus priors on H and scale
   (on a cold start a wide-margin pass runs first so H can leave identity)
4. Re-selection against the refined H, repeated while correspondences change

Failures (too few pieces, budget exhausted, non-finite values) never raise:
the previous solution (or identity) is returned with tracking_quality = 0.
"""

import logging
import time
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import least_squares

from ..config import SolverConfig
from ..models import BAInputs, BASolution, Correspondence, Pose, SolveStatus
from ..utils.polygon import signed_area, wrap_angle
from ..utils.timing import StageTimer
from .correspondence import (
    candidate_correspondences,
    fit_rigid_2d,
    model_for_candidate,
    reorder_detected,
    rigid_fit_rms,
)
from .parameterization import (
    N_HOMOGRAPHY,
    homography_to_vector,
    image_to_plane,
    normalize_homography,
    project_model,
    vector_to_homography,
)

logger = logging.getLogger(__name__)

FLIP_CANDIDATES = (1.0, -1.0)


class BundleAdjustment:
    """
    Joint correspondence search and pose optimization.

    Example:
        >>> ba = BundleAdjustment()
        >>> solution = ba.solve(inputs)
        >>> solution.ok, solution.errors
    """

    def __init__(self, config: Optional[SolverConfig] = None):
        self.config = config or SolverConfig()
        self._last_solution: Optional[BASolution] = None
        self.last_used_warm_start = False
        self.last_optimization_time_ms = 0.0

    def reset(self) -> None:
        """Forget the previous solution (failures fall back to identity again)."""
        self._last_solution = None
        self.last_used_warm_start = False
        self.last_optimization_time_ms = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def solve(self, inputs: BAInputs, fix_homography: bool = False) -> BASolution:
        """
        Solve one frame.

        Args:
            inputs: Batched detections, models and optional warm start
            fix_homography: Keep H and scale at the warm start and solve poses only

        Returns:
            BASolution (status != OK on failure, with tracking_quality = 0)

        Raises:
            ValueError: Inconsistent input lists or vertex count mismatch
        """
        cfg = self.config
        start = time.perf_counter()
        timer = StageTimer()
        self._validate(inputs)

        warm = bool(inputs.has_initial_guess and inputs.H_init is not None)
        self.last_used_warm_start = warm
        if fix_homography and not warm:
            logger.debug("fix_homography requested without warm start, solving H freely")
            fix_homography = False

        if inputs.num_pieces < max(1, cfg.min_visible_pieces):
            self.last_optimization_time_ms = (time.perf_counter() - start) * 1000.0
            return self._failure(SolveStatus.INSUFFICIENT_PIECES, timer)

        detected = [np.asarray(d, dtype=float).reshape(-1, 2) for d in inputs.detected_points]
        models = [np.asarray(m, dtype=float).reshape(-1, 2) for m in inputs.model_points]
        shapes = list(inputs.shape_types)

        with timer.time_block("initialization"):
            if warm:
                H0 = normalize_homography(inputs.H_init)
                s0 = float(inputs.scale_init)
                prior_weight = cfg.warm_start_prior_weight
            else:
                H0, s0 = self._cold_start(detected, models, shapes)
                prior_weight = 1.0
            reference = list(inputs.poses_init) if warm and inputs.poses_init else [None] * len(detected)

        try:
            with timer.time_block("correspondence_search"):
                corrs, poses = self._select_all(detected, models, shapes, H0, s0, reference)

            H, s = H0, s0
            converged = True
            if not fix_homography:
                with timer.time_block("joint_optimization"):
                    for pass_idx in range(max(1, cfg.correspondence_passes)):
                        H, s, poses, converged = self._joint_refine(
                            detected, models, corrs, H, s, poses, H0, s0, prior_weight, cold=not warm)
                        if not converged or pass_idx == cfg.correspondence_passes - 1:
                            break
                        refs = [Pose.from_array(p) for p in poses]
                        new_corrs, new_poses = self._select_all(detected, models, shapes, H, s, refs)
                        if new_corrs == corrs:
                            break
                        logger.debug("Correspondences changed after joint refit, repeating")
                        corrs, poses = new_corrs, new_poses
        except np.linalg.LinAlgError as e:
            logger.warning("Singular homography during solve: %s", e)
            converged = False

        self.last_optimization_time_ms = (time.perf_counter() - start) * 1000.0
        if not converged:
            return self._failure(SolveStatus.NOT_CONVERGED, timer)

        errors = [self._rms(H, s, p, model_for_candidate(m, c), reorder_detected(d, c))
                  for d, m, c, p in zip(detected, models, corrs, poses)]
        values = np.concatenate([H.ravel(), [s], np.ravel(poses), errors])
        if not np.all(np.isfinite(values)):
            logger.warning("Non-finite solver output, reporting failure")
            return self._failure(SolveStatus.NOT_CONVERGED, timer)

        mean_error = float(np.mean(errors))
        solution = BASolution(
            H=normalize_homography(H),
            scale=float(s),
            poses={cid: Pose(float(wrap_angle(p[0])), float(p[1]), float(p[2]))
                   for cid, p in zip(inputs.class_ids, poses)},
            errors={cid: float(e) for cid, e in zip(inputs.class_ids, errors)},
            correspondences=dict(zip(inputs.class_ids, corrs)),
            tracking_quality=1.0 / (1.0 + mean_error / cfg.error_quality_scale_px),
            homography_locked=False,
            timings=timer.as_dict(),
            status=SolveStatus.OK,
        )
        solution.timings["optimization_total"] = self.last_optimization_time_ms
        self._last_solution = solution.copy()
        return solution

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _validate(self, inputs: BAInputs) -> None:
        n = len(inputs.class_ids)
        if not (len(inputs.detected_points) == len(inputs.model_points) == len(inputs.shape_types) == n):
            raise ValueError("BAInputs lists must have equal length")
        if inputs.poses_init and len(inputs.poses_init) != n:
            raise ValueError("poses_init must be empty or have one entry per piece")
        for cid, d, m in zip(inputs.class_ids, inputs.detected_points, inputs.model_points):
            if len(d) != len(m) or len(m) < 3:
                raise ValueError(
                    f"Class {cid}: detected polygon has {len(d)} vertices, model has {len(m)}")

    def _cold_start(self, detected, models, shapes) -> Tuple[np.ndarray, float]:
        ratios = [np.sqrt(abs(signed_area(d)) / abs(signed_area(m)))
                  for d, m in zip(detected, models) if abs(signed_area(m)) > 1e-12]
        s0 = float(np.median(ratios)) if ratios and np.median(ratios) > 0 else 1.0

        best_H, best_cost = None, np.inf
        for sigma in FLIP_CANDIDATES:
            H = np.diag([sigma, 1.0, 1.0])
            cost = 0.0
            for d, m, shape in zip(detected, models, shapes):
                plane = image_to_plane(H, d)
                cost += min(
                    rigid_fit_rms(s0 * model_for_candidate(m, c), reorder_detected(plane, c))
                    for c in candidate_correspondences(len(m), shape, self.config.mirrorable_shapes)
                )
            if cost < best_cost - 1e-9:
                best_H, best_cost = H, cost
        logger.debug("Cold start: flip=%s scale=%.3f", best_H[0, 0] < 0, s0)
        return best_H, s0

    # ------------------------------------------------------------------
    # Correspondence search
    # ------------------------------------------------------------------

    def _select_all(self, detected, models, shapes, H, s, reference: Sequence[Optional[Pose]]):
        corrs: List[Correspondence] = []
        poses: List[np.ndarray] = []
        for d, m, shape, ref in zip(detected, models, shapes, reference):
            corr, pose = self._select_piece(d, m, shape, H, s, ref)
            corrs.append(corr)
            poses.append(pose)
        return corrs, poses

    def _select_piece(self, detected: np.ndarray, model: np.ndarray, shape: str, H: np.ndarray,
                      scale: float, reference: Optional[Pose]) -> Tuple[Correspondence, np.ndarray]:
        """
        Evaluate every candidate of one piece against fixed H and scale.

        Notes:
            - Tie-break among candidates within tie_tolerance_px of the best RMS:
              fewest flags (reflected, mirrored), mirrored model last, rotation
              closest to the reference pose, lowest shift
        """
        cfg = self.config
        plane = image_to_plane(H, detected)
        results = []
        for corr in candidate_correspondences(len(model), shape, cfg.mirrorable_shapes):
            m = model_for_candidate(model, corr)
            target = reorder_detected(detected, corr)
            theta, t = fit_rigid_2d(scale * m, reorder_detected(plane, corr))
            pose = self._fit_pose(H, scale, m, target, np.array([theta, t[0], t[1]]))
            results.append((self._rms(H, scale, pose, m, target), corr, pose))

        best_rms = min(r[0] for r in results)
        tied = [r for r in results if r[0] <= best_rms + cfg.tie_tolerance_px]

        def tie_key(item):
            _, corr, pose = item
            continuity = 0.0 if reference is None else abs(float(wrap_angle(pose[0] - reference.theta)))
            return (corr.flag_count, corr.mirrored_model, round(continuity, 6), corr.shift)

        _, corr, pose = min(tied, key=tie_key)
        return corr, pose

    def _fit_pose(self, H, scale, model, target, x0) -> np.ndarray:
        def residuals(x):
            return (project_model(H, scale, x, model) - target).ravel()

        result = least_squares(residuals, x0, method="lm", max_nfev=self.config.pose_max_function_evals,
                               ftol=self.config.ftol, xtol=self.config.xtol)
        pose = result.x.copy() if np.all(np.isfinite(result.x)) else np.asarray(x0, dtype=float)
        pose[0] = float(wrap_angle(pose[0]))
        return pose

    # ------------------------------------------------------------------
    # Joint optimization
    # ------------------------------------------------------------------

    def _joint_refine(self, detected, models, corrs, H, s, poses, H_prior, s_prior, prior_weight, cold=False):
        cfg = self.config
        ordered_models = [model_for_candidate(m, c) for m, c in zip(models, corrs)]
        ordered_targets = [reorder_detected(d, c) for d, c in zip(detected, corrs)]
        n = len(ordered_models)

        h_prior = homography_to_vector(H_prior)
        h_sigma = np.asarray(cfg.homography_prior_sigma, dtype=float)
        s_sigma = max(cfg.scale_prior_sigma_ratio * abs(s_prior), 1e-6)
        w = np.sqrt(prior_weight)

        def residuals(x):
            Hx = vector_to_homography(x[:N_HOMOGRAPHY])
            sx = x[N_HOMOGRAPHY]
            parts = []
            for i in range(n):
                pose = x[N_HOMOGRAPHY + 1 + 3 * i:N_HOMOGRAPHY + 4 + 3 * i]
                parts.append((project_model(Hx, sx, pose, ordered_models[i]) - ordered_targets[i]).ravel())
            parts.append(w * (x[:N_HOMOGRAPHY] - h_prior) / h_sigma)
            parts.append([w * (sx - s_prior) / s_sigma])
            return np.concatenate(parts)

        def fit(x_start, f_scale):
            return least_squares(
                residuals, x_start,
                method="trf",
                loss="huber",
                f_scale=f_scale,
                x_scale="jac",
                max_nfev=cfg.max_function_evals,
                ftol=cfg.ftol,
                xtol=cfg.xtol,
            )

        x0 = np.concatenate([homography_to_vector(H), [s], np.ravel(poses)])
        if cold and cfg.cold_start_f_scale_px > cfg.huber_f_scale_px:
            coarse = fit(x0, cfg.cold_start_f_scale_px)
            if coarse.status > 0 and np.all(np.isfinite(coarse.x)):
                x0 = coarse.x
            else:
                logger.debug("Cold-start pass stopped early (status=%d)", coarse.status)
        result = fit(x0, cfg.huber_f_scale_px)

        converged = result.status > 0 and bool(np.all(np.isfinite(result.x)))
        if not converged:
            logger.warning("Joint optimization did not converge (status=%d, nfev=%d): %s",
                           result.status, result.nfev, result.message)
        x = result.x
        H_out = vector_to_homography(x[:N_HOMOGRAPHY])
        poses_out = [x[N_HOMOGRAPHY + 1 + 3 * i:N_HOMOGRAPHY + 4 + 3 * i].copy() for i in range(n)]
        return H_out, float(x[N_HOMOGRAPHY]), poses_out, converged

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _rms(H, scale, pose, model, target) -> float:
        diff = project_model(H, scale, pose, model) - target
        return float(np.sqrt(np.mean(np.sum(diff ** 2, axis=1))))

    def _failure(self, status: SolveStatus, timer: StageTimer) -> BASolution:
        if self._last_solution is not None:
            solution = self._last_solution.copy()
            solution.status = status
        else:
            solution = BASolution.identity(status)
        solution.tracking_quality = 0.0
        solution.timings = timer.as_dict()
        solution.timings["optimization_total"] = self.last_optimization_time_ms
        logger.debug("Solver failure (%s), returning %s", status.value,
                     "previous solution" if self._last_solution is not None else "identity")
        return solution
