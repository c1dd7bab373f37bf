import numpy as np
import pytest

from ekfslam2d.config import SimulationConfig, SLAMConfig
from ekfslam2d.slam.ekf_slam import ExtendedKalmanFilterSLAM


@pytest.fixture
def config():
    return SLAMConfig(sigma_range=0.1, sigma_bearing=0.05)


@pytest.fixture
def slam(config):
    return ExtendedKalmanFilterSLAM(config)


@pytest.fixture
def ring_landmarks():
    """Twelve landmarks on a circle of radius 8 around (0, 5)."""
    angles = np.linspace(0.0, 2 * np.pi, 12, endpoint=False)
    return {i: (8.0 * np.cos(a), 8.0 * np.sin(a) + 5.0) for i, a in enumerate(angles)}


@pytest.fixture
def sim_config():
    return SimulationConfig(max_range=6.0, seed=7)
