"""
Planar geometry helpers for range-bearing SLAM.

All angles are wrapped with ``atan2(sin, cos)`` instead of modulo arithmetic so
that values on either side of the ±π boundary stay continuous. The same helpers
are used when a landmark is initialized and when it is corrected, which keeps
the angle-wrap convention identical at both call sites.
"""

import numpy as np
from scipy import stats


def wrap_angle(angle):
    """
    Wrap an angle (or array of angles) to the half-open interval (-π, π].

    Parameters
    ----------
    angle : float or ndarray
        Angle(s) in radians.

    Returns
    -------
    float or ndarray
        Wrapped angle(s). ``-π`` is mapped to ``π``.
    """
    wrapped = np.arctan2(np.sin(angle), np.cos(angle))
    if np.ndim(wrapped) == 0:
        wrapped = float(wrapped)
        return np.pi if wrapped <= -np.pi else wrapped
    wrapped = np.where(wrapped <= -np.pi, np.pi, wrapped)
    return wrapped


def relative_to_absolute(pose, range_, bearing):
    """
    Convert a range-bearing observation into world coordinates.

    Parameters
    ----------
    pose : array_like of shape (3,)
        Robot pose [x, y, θ].
    range_ : float
        Distance to the landmark.
    bearing : float
        Angle to the landmark relative to the robot heading.

    Returns
    -------
    tuple of float
        Landmark position (x, y).

    Notes
    -----
        x_l = x + r * cos(θ + φ)
        y_l = y + r * sin(θ + φ)
    """
    absolute_angle = pose[2] + bearing
    x = pose[0] + range_ * np.cos(absolute_angle)
    y = pose[1] + range_ * np.sin(absolute_angle)
    return float(x), float(y)


def absolute_to_relative(pose, x, y):
    """
    Convert a world position into the (range, bearing) seen from ``pose``.

    Parameters
    ----------
    pose : array_like of shape (3,)
        Robot pose [x, y, θ].
    x, y : float
        Landmark position in world coordinates.

    Returns
    -------
    tuple of float
        (range, bearing) with bearing wrapped to (-π, π].
    """
    delta_x = x - pose[0]
    delta_y = y - pose[1]
    range_ = np.sqrt(delta_x**2 + delta_y**2)
    bearing = wrap_angle(np.arctan2(delta_y, delta_x) - pose[2])
    return float(range_), bearing


def covariance_ellipse(covariance, confidence=0.95):
    """
    Compute the confidence ellipse of a 2D Gaussian.

    Parameters
    ----------
    covariance : array_like of shape (2, 2)
        Marginal covariance of a 2D position.
    confidence : float, optional
        Probability mass enclosed by the ellipse (default: 0.95).

    Returns
    -------
    tuple of float
        (width, height, angle): full axis lengths and the orientation of the
        major axis in radians, measured from the x axis.

    Raises
    ------
    ValueError
        If ``covariance`` is not 2x2 or ``confidence`` is outside (0, 1).

    Notes
    -----
    The squared Mahalanobis distance of a 2D Gaussian follows a χ² distribution
    with 2 degrees of freedom, so the ellipse semi-axes are
    ``sqrt(chi2.ppf(confidence, 2) * λ_i)`` for the eigenvalues λ_i.
    """
    covariance = np.asarray(covariance, dtype=float)
    if covariance.shape != (2, 2):
        raise ValueError(f"covariance must be 2x2, got shape {covariance.shape}")
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    symmetric = 0.5 * (covariance + covariance.T)
    eigenvalues, eigenvectors = np.linalg.eigh(symmetric)
    # Numerical noise can push a zero eigenvalue slightly negative
    eigenvalues = np.clip(eigenvalues, 0.0, None)

    scale = stats.chi2.ppf(confidence, df=2)
    major, minor = eigenvalues[1], eigenvalues[0]
    angle = np.arctan2(eigenvectors[1, 1], eigenvectors[0, 1])

    width = 2.0 * np.sqrt(scale * major)
    height = 2.0 * np.sqrt(scale * minor)
    return float(width), float(height), float(angle)
