"""EKF-SLAM estimator and observation types."""

from .ekf_slam import ExtendedKalmanFilterSLAM
from .observation import LandmarkStatus, Observation, UpdateOutcome

__all__ = ["ExtendedKalmanFilterSLAM", "LandmarkStatus", "Observation", "UpdateOutcome"]
