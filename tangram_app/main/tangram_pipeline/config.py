"""
Tangram Pipeline Configuration Models.

This module defines the configuration structures for the pose pipeline:
- RefinerConfig: Mask → polygon refinement parameters
- SolverConfig: Correspondence search + bundle adjustment parameters
- TrackerConfig: Kalman tracker noise model
- FusionConfig: Outlier rejection, adaptive covariance and homography locking
- PipelineConfig: Aggregate of the above plus frame-level settings

All image measurements in pixels unless stated otherwise.
Angles in radians, range [-pi, pi), counterclockwise positive in plane coordinates.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Tuple


@dataclass
class RefinerConfig:
    """
    Polygon refiner configuration.

    Organized in 4 groups:
    1. Mask preparation
    2. Edge detection
    3. Line extraction (Hough + clustering)
    4. Corner reconstruction

    Notes:
        - Line lengths and tolerances scale with the size of the piece where noted
        - refine_iterations = 0 disables the GrabCut pass entirely
    """

    # ========== 1. Mask preparation ==========
    mask_threshold: float = 0.5
    """Binarization threshold for soft masks in [0, 1] (uint8 masks use threshold * 255)."""

    morph_kernel_size: int = 5
    """Kernel size for morphological close/open on the coarse mask (pixels, odd)."""

    refine_iterations: int = 0
    """GrabCut iterations run on the coarse mask (0 = skip)."""

    mask_160_size: int = 160
    """Side length of the downsampled refined mask (matches the proto resolution)."""

    # ========== 2. Edge detection ==========
    blur_kernel_size: int = 5
    """Gaussian blur kernel before Canny (pixels, odd)."""

    canny_low_ratio: float = 0.5
    """Low Canny threshold as a fraction of the Otsu-derived high threshold."""

    min_canny_high: float = 20.0
    """Lower bound for the auto-derived high Canny threshold (low-contrast scenes)."""

    edge_band_px: int = 4
    """Half-width of the band around the mask boundary in which edges are accepted (pixels)."""

    roi_margin_px: int = 12
    """Margin added around the mask bounding box for the edge ROI (pixels)."""

    min_edge_pixels: int = 30
    """Below this many image edge pixels the mask boundary is used as edge source."""

    # ========== 3. Line extraction ==========
    hough_rho: float = 1.0
    """Distance resolution of the Hough accumulator (pixels)."""

    hough_theta_deg: float = 1.0
    """Angle resolution of the Hough accumulator (degrees)."""

    min_line_length_ratio: float = 0.25
    """Minimum Hough segment length as a fraction of the mean coarse edge length."""

    min_line_length_px: float = 6.0
    """Absolute lower bound for the Hough segment length (pixels)."""

    max_line_gap_px: float = 6.0
    """Maximum gap between collinear Hough points joined into one segment (pixels)."""

    cluster_angle_tol_deg: float = 6.0
    """Segments whose normal angles differ less than this are merged into one cluster (degrees)."""

    cluster_rho_tol_px: float = 4.0
    """Segments whose line offsets differ less than this are merged into one cluster (pixels)."""

    edge_angle_tol_deg: float = 15.0
    """Maximum angle between a cluster and the coarse edge it is assigned to (degrees)."""

    edge_dist_ratio: float = 0.15
    """Maximum distance between coarse edge midpoint and cluster line, as fraction of edge length."""

    min_edge_dist_px: float = 4.0
    """Absolute lower bound for the edge assignment distance (pixels)."""

    fit_dist_px: float = 2.0
    """Edge pixels within this distance of a dominant line are used for its refit (pixels)."""

    fit_span_margin: float = 0.1
    """Fraction of the coarse edge excluded at each end when collecting refit pixels."""

    # ========== 4. Corner reconstruction ==========
    max_corner_shift_ratio: float = 0.25
    """Intersections further than this fraction of the mean edge length from the coarse
    corner are rejected and the coarse corner is kept."""

    parallel_det_eps: float = 1e-6
    """Determinant below which two lines are treated as parallel."""


@dataclass
class SolverConfig:
    """
    Correspondence search and bundle adjustment configuration.

    Organized in 4 groups:
    1. Candidate search
    2. Joint optimization
    3. Priors (gauge fixing and warm-start continuity)
    4. Failure policy

    Notes:
        - Homography prior sigmas are per entry of the row-major 8-vector
          [h00, h01, h02, h10, h11, h12, h20, h21]
        - The Huber scale is in pixels of reprojection error
    """

    # ========== 1. Candidate search ==========
    mirrorable_shapes: Tuple[str, ...] = ("parallelogram",)
    """Shape types whose mirrored model is also tried (chiral pieces)."""

    tie_tolerance_px: float = 1e-3
    """Candidates whose RMS error differs less than this are treated as tied (pixels)."""

    correspondence_passes: int = 2
    """Maximum number of re-selection + joint refit rounds."""

    # ========== 2. Joint optimization ==========
    huber_f_scale_px: float = 2.0
    """Soft margin of the Huber loss (pixels)."""

    cold_start_f_scale_px: float = 20.0
    """Huber margin of the preliminary pass run before the main fit on a cold start (pixels).
    From an identity guess residuals of several pixels are common, and a tight margin
    flattens the gradient before H has moved."""

    max_function_evals: int = 400
    """Evaluation budget for the joint least-squares problem (non-convergence = failure)."""

    pose_max_function_evals: int = 200
    """Evaluation budget for each per-candidate pose fit."""

    ftol: float = 1e-8
    """Relative cost tolerance for scipy.optimize.least_squares."""

    xtol: float = 1e-8
    """Relative step tolerance for scipy.optimize.least_squares."""

    # ========== 3. Priors ==========
    homography_prior_sigma: Tuple[float, ...] = (0.1, 0.1, 10.0, 0.1, 0.1, 10.0, 1e-3, 1e-3)
    """Per-entry standard deviation of the homography prior (cold start)."""

    scale_prior_sigma_ratio: float = 0.1
    """Standard deviation of the scale prior as a fraction of the initial scale."""

    warm_start_prior_weight: float = 10.0
    """Multiplier on the prior residuals when a warm start is available."""

    # ========== 4. Failure policy ==========
    min_visible_pieces: int = 1
    """Fewer pieces than this is reported as failure."""

    error_quality_scale_px: float = 5.0
    """Error at which the single-frame quality estimate drops to 0.5 (pixels)."""


@dataclass
class TrackerConfig:
    """
    Kalman tracker noise model.

    State layout (30 entries):
        [0:8]   homography h00..h21 (h22 fixed to 1)
        [8]     plane scale
        [9:30]  7 x (theta, tx, ty) piece poses, one slot per class id

    Notes:
        - Process noise is a random walk: Q = diag(process_std**2) * dt * process_noise_scale
        - Measurement noise: R = diag(measurement_std**2) * measurement_noise_scale
    """

    # ========== 1. Noise scales ==========
    process_noise_scale: float = 1.0
    """Global multiplier on the process noise."""

    measurement_noise_scale: float = 1.0
    """Global multiplier on the default measurement noise."""

    # ========== 2. Process noise (per second) ==========
    homography_process_std: Tuple[float, ...] = (0.02, 0.02, 8.0, 0.02, 0.02, 8.0, 2e-5, 2e-5)
    scale_process_std: float = 1.0
    pose_process_std: Tuple[float, float, float] = (0.2, 15.0, 15.0)
    """(theta rad/s, tx px/s, ty px/s)"""

    # ========== 3. Measurement noise ==========
    homography_measurement_std: Tuple[float, ...] = (0.01, 0.01, 2.0, 0.01, 0.01, 2.0, 1e-5, 1e-5)
    scale_measurement_std: float = 0.5
    pose_measurement_std: Tuple[float, float, float] = (0.02, 1.5, 1.5)
    """(theta rad, tx px, ty px)"""

    # ========== 4. Initialization / quality ==========
    initial_uncertainty_scale: float = 10.0
    """Initial covariance = measurement covariance * this factor."""

    unobserved_variance: float = 1e6
    """Variance of pose slots that have never been observed."""

    innovation_history_size: int = 10
    """Number of recent updates considered by the tracking quality."""

    innovation_quality_scale: float = 3.0
    """Mean normalized innovation at which the tracking quality drops to 0.5."""


@dataclass
class FusionConfig:
    """
    Per-frame fusion, outlier rejection and homography locking.

    Notes:
        - Lock/unlock thresholds are mean RMS reprojection errors (pixels)
        - Defaults follow the tracked bundle adjustment used on device
    """

    # ========== 1. Locking ==========
    locking_enabled: bool = True
    frames_needed_for_lock: int = 5
    lock_error_threshold: float = 5.0
    unlock_error_threshold: float = 15.0

    # ========== 2. Outlier rejection ==========
    error_rejection_threshold: float = 2.0
    """A piece is an outlier when its error exceeds this multiple of the frame median."""

    outlier_min_error_px: float = 2.0
    """Pieces at or below this error are never rejected (pixels)."""

    # ========== 3. Corrective homography updates while locked ==========
    h_update_min_improvement: float = 0.05
    """Relative mean-error improvement required to adopt a free-solve homography."""

    h_update_max_norm: float = 0.10
    """Maximum relative Frobenius change of the homography accepted while locked."""

    # ========== 4. Adaptive measurement covariance ==========
    error_history_size: int = 10
    adaptive_error_scale_px: float = 3.0
    """Historical error at which a piece's measurement variance is inflated 4x (pixels)."""


@dataclass
class PipelineConfig:
    """
    Complete pipeline configuration.

    Notes:
        - model_input_size is the detector's square input resolution; bboxes arrive in that space
        - frame_interval_s advances the synthetic clock when no timestamp is supplied
    """
    model_input_size: int = 640
    mask_threshold: float = 0.5
    frame_interval_s: float = 1.0 / 30.0

    refiner: RefinerConfig = field(default_factory=RefinerConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
