"""Planar EKF-SLAM with known landmark correspondences."""

from .config import SimulationConfig, SLAMConfig, load_config
from .slam import ExtendedKalmanFilterSLAM, LandmarkStatus, Observation, UpdateOutcome

__all__ = [
    "ExtendedKalmanFilterSLAM",
    "LandmarkStatus",
    "Observation",
    "UpdateOutcome",
    "SLAMConfig",
    "SimulationConfig",
    "load_config",
]
