"""
Accuracy and consistency metrics for EKF-SLAM.

Trajectory metrics operate on time-indexed pandas DataFrames (see
:func:`ekfslam2d.utils.data_utils.build_timeseries`) and align estimate and
ground truth by timestamp. Consistency metrics check the covariance the filter
reports against the errors it actually makes.
"""

import logging

import numpy as np
import pandas as pd
from scipy import stats

logger = logging.getLogger(__name__)


def _validate_trajectory(frame, name):
    if not isinstance(frame, pd.DataFrame):
        raise ValueError(
            f"{name} must be a DataFrame, got {type(frame).__name__}. "
            f"Did you call build_dataframes()?"
        )
    for col in ("x", "y"):
        if col not in frame.columns:
            raise ValueError(
                f"{name} missing required column '{col}'. "
                f"Available columns: {list(frame.columns)}"
            )


def compute_ate(
    estimated_states: pd.DataFrame,
    groundtruth_data: pd.DataFrame,
    verbose: bool = False,
) -> float:
    """
    Compute Absolute Trajectory Error (ATE) using RMSE with timestamp matching.

    Parameters
    ----------
    estimated_states : pd.DataFrame
        Estimated trajectory with datetime index and columns ['x', 'y'].
        Typically ``slam.robot_states`` after ``build_dataframes()``.
    groundtruth_data : pd.DataFrame
        Ground truth trajectory with datetime index and columns ['x', 'y'].
        Typically ``simulation.groundtruth``.
    verbose : bool, optional
        Log alignment and error statistics (default: False).

    Returns
    -------
    float
        Root Mean Squared Error of position errors in meters.

    Raises
    ------
    ValueError
        If inputs are not DataFrames or miss required columns.
    RuntimeError
        If timestamp alignment produces no matching frames.

    Examples
    --------
    >>> sim.run(controls)
    >>> sim.build_dataframes()
    >>> ate = compute_ate(sim.slam.robot_states, sim.groundtruth)
    """
    _validate_trajectory(estimated_states, "estimated_states")
    _validate_trajectory(groundtruth_data, "groundtruth_data")

    # Inner join keeps only timestamps present in both trajectories
    aligned = estimated_states[["x", "y"]].join(
        groundtruth_data[["x", "y"]], how="inner", rsuffix="_gt"
    )
    if len(aligned) == 0:
        raise RuntimeError(
            "Timestamp alignment produced 0 matching frames! "
            f"Estimated time range: [{estimated_states.index.min()}, {estimated_states.index.max()}], "
            f"Ground truth time range: [{groundtruth_data.index.min()}, {groundtruth_data.index.max()}]"
        )

    alignment_pct = len(aligned) / len(estimated_states) * 100
    if alignment_pct < 90:
        logger.warning(
            f"Only {alignment_pct:.1f}% of frames aligned! Check timestamp synchronization."
        )

    errors = np.sqrt(
        (aligned["x"] - aligned["x_gt"]) ** 2 + (aligned["y"] - aligned["y_gt"]) ** 2
    )
    ate = float(np.sqrt(np.mean(errors**2)))

    if verbose:
        logger.info(f"Aligned frames: {len(aligned)} ({alignment_pct:.1f}% of estimates)")
        logger.info(f"Mean error: {np.mean(errors):.4f} m, max error: {np.max(errors):.4f} m")
        logger.info(f"ATE (RMSE): {ate:.4f} m")

    return ate


def compute_landmark_errors(slam, true_landmarks: dict) -> pd.DataFrame:
    """
    Compare estimated landmark positions with their true positions.

    Parameters
    ----------
    slam : ExtendedKalmanFilterSLAM
        Estimator holding the landmark map.
    true_landmarks : dict
        Landmark id -> true (x, y). Landmarks never observed are skipped.

    Returns
    -------
    pd.DataFrame
        Indexed by landmark id with columns
        ['x', 'y', 'x_gt', 'y_gt', 'error', 'nees'].
    """
    rows = []
    for landmark_id in slam.landmark_index:
        if landmark_id not in true_landmarks:
            logger.warning(f"Landmark {landmark_id!r} has no ground truth position")
            continue
        x_gt, y_gt = true_landmarks[landmark_id]
        x, y = slam.landmark_position(landmark_id)
        error = np.array([x - x_gt, y - y_gt])
        rows.append(
            {
                "landmark_id": landmark_id,
                "x": x,
                "y": y,
                "x_gt": x_gt,
                "y_gt": y_gt,
                "error": float(np.linalg.norm(error)),
                "nees": compute_nees(error, slam.landmark_covariance(landmark_id)),
            }
        )
    columns = ["landmark_id", "x", "y", "x_gt", "y_gt", "error", "nees"]
    return pd.DataFrame(rows, columns=columns).set_index("landmark_id")


def compute_nees(error, covariance) -> float:
    """
    Normalized Estimation Error Squared: eᵀ Σ⁻¹ e.

    For a consistent filter the NEES of a d-dimensional estimate follows a χ²
    distribution with d degrees of freedom.
    """
    error = np.asarray(error, dtype=float)
    covariance = np.asarray(covariance, dtype=float)
    return float(error @ np.linalg.solve(covariance, error))


def nees_bounds(dof: int, runs: int = 1, confidence: float = 0.95) -> tuple[float, float]:
    """
    Two-sided acceptance interval for the average NEES over ``runs`` trials.

    Returns
    -------
    tuple of float
        (lower, upper) bounds of the average NEES.
    """
    alpha = 1.0 - confidence
    lower = stats.chi2.ppf(alpha / 2, df=dof * runs) / runs
    upper = stats.chi2.ppf(1 - alpha / 2, df=dof * runs) / runs
    return float(lower), float(upper)


def check_covariance(covariance, tol: float = 1e-4) -> dict:
    """
    Check symmetry and positive semi-definiteness of a covariance matrix.

    Returns
    -------
    dict
        - 'symmetric': max |Σ - Σᵀ| <= tol
        - 'psd': smallest eigenvalue >= -tol
        - 'max_asymmetry': max |Σ - Σᵀ|
        - 'min_eigenvalue': smallest eigenvalue of the symmetric part
    """
    covariance = np.asarray(covariance, dtype=float)
    if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
        raise ValueError(f"covariance must be square, got shape {covariance.shape}")

    max_asymmetry = float(np.max(np.abs(covariance - covariance.T)))
    min_eigenvalue = float(np.min(np.linalg.eigvalsh(0.5 * (covariance + covariance.T))))
    return {
        "symmetric": max_asymmetry <= tol,
        "psd": min_eigenvalue >= -tol,
        "max_asymmetry": max_asymmetry,
        "min_eigenvalue": min_eigenvalue,
    }
