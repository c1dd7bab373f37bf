"""
Noise and numerical parameters for the EKF-SLAM estimator and the simulator.

Parameters can be built directly, from a dictionary, or from a YAML file:

>>> from ekfslam2d.config import SLAMConfig, load_config
>>> config = SLAMConfig(sigma_range=0.1, sigma_bearing=0.05)
>>> slam_config, sim_config = load_config("config/default.yaml")

The YAML file may contain a ``slam`` section and a ``simulation`` section; keys
that do not belong to the corresponding dataclass are ignored with a warning.
"""

import logging
from dataclasses import dataclass, fields

import numpy as np
import yaml

logger = logging.getLogger(__name__)

_CONTROL_NOISE_FIELDS = (
    "linear_noise_gain",
    "angular_noise_gain",
    "linear_noise_floor",
    "angular_noise_floor",
)


def _check_non_negative(config, names):
    for name in names:
        value = getattr(config, name)
        if not np.isfinite(value) or value < 0:
            raise ValueError(f"{name} must be a non-negative finite number, got {value}")


def _filter_keys(cls, values: dict, section: str) -> dict:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        logger.warning(f"Ignoring unknown {section} configuration keys: {unknown}")
    return {key: value for key, value in values.items() if key in known}


@dataclass(frozen=True)
class SLAMConfig:
    """
    Estimator configuration.

    Attributes
    ----------
    sigma_range : float
        Standard deviation of the range measurement (m).
    sigma_bearing : float
        Standard deviation of the bearing measurement (rad).
    linear_noise_gain, angular_noise_gain : float
        Control noise grows linearly with the commanded speed:
        σ_v = gain * |v| + floor.
    linear_noise_floor, angular_noise_floor : float
        Additive floor so that process noise never vanishes at zero speed.
    initial_covariance : float
        Diagonal value of the initial 3x3 robot covariance.
    singular_epsilon : float
        Corrections whose innovation covariance has ``|det(S)|`` below this
        value are rejected.
    min_correction_range : float
        Corrections whose predicted range is below this value are rejected
        (the observation Jacobian is undefined at zero range).
    """

    sigma_range: float
    sigma_bearing: float
    linear_noise_gain: float = 0.1
    angular_noise_gain: float = 0.1
    linear_noise_floor: float = 0.01
    angular_noise_floor: float = 0.01
    initial_covariance: float = 0.01
    singular_epsilon: float = 1e-12
    min_correction_range: float = 1e-9

    def __post_init__(self):
        for name in ("sigma_range", "sigma_bearing", "initial_covariance"):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise ValueError(f"{name} must be a positive finite number, got {value}")
        _check_non_negative(
            self, _CONTROL_NOISE_FIELDS + ("singular_epsilon", "min_correction_range")
        )
        if self.linear_noise_floor == 0 or self.angular_noise_floor == 0:
            logger.warning(
                "A zero control noise floor lets the filter believe in noiseless "
                "motion when the robot is at rest."
            )

    @classmethod
    def from_dict(cls, values: dict) -> "SLAMConfig":
        return cls(**_filter_keys(cls, values, "slam"))

    def sensor_noise(self) -> np.ndarray:
        """Measurement noise covariance R = diag(σ_r², σ_φ²)."""
        return np.diag([self.sigma_range**2, self.sigma_bearing**2])

    def control_noise(self, linear_velocity: float, angular_velocity: float) -> np.ndarray:
        """Control noise covariance N for the commanded velocities."""
        sigma_linear = self.linear_noise_gain * abs(linear_velocity) + self.linear_noise_floor
        sigma_angular = self.angular_noise_gain * abs(angular_velocity) + self.angular_noise_floor
        return np.diag([sigma_linear**2, sigma_angular**2])


@dataclass(frozen=True)
class SimulationConfig:
    """
    Ground-truth simulator and virtual sensor configuration.

    Attributes
    ----------
    max_range : float
        Landmarks farther than this are not observed (m).
    field_of_view : float
        Full angular width of the sensor (rad). ``2π`` sees all around.
    linear_noise_gain, angular_noise_gain, linear_noise_floor, angular_noise_floor : float
        True control noise applied to the commanded velocities.
    seed : int or None
        Seed for the random generator.
    """

    max_range: float = 10.0
    field_of_view: float = 2 * np.pi
    linear_noise_gain: float = 0.1
    angular_noise_gain: float = 0.1
    linear_noise_floor: float = 0.01
    angular_noise_floor: float = 0.01
    seed: int | None = None

    def __post_init__(self):
        if not np.isfinite(self.max_range) or self.max_range <= 0:
            raise ValueError(f"max_range must be a positive finite number, got {self.max_range}")
        _check_non_negative(self, _CONTROL_NOISE_FIELDS)
        if not 0 < self.field_of_view <= 2 * np.pi:
            raise ValueError(f"field_of_view must be in (0, 2π], got {self.field_of_view}")

    @classmethod
    def from_dict(cls, values: dict) -> "SimulationConfig":
        return cls(**_filter_keys(cls, values, "simulation"))


def load_config(path: str) -> tuple[SLAMConfig, SimulationConfig]:
    """
    Load estimator and simulator configuration from a YAML file.

    Parameters
    ----------
    path : str
        Path to a YAML file with ``slam`` and (optionally) ``simulation``
        sections.

    Returns
    -------
    tuple
        (SLAMConfig, SimulationConfig)

    Raises
    ------
    ValueError
        If the file has no ``slam`` section or holds invalid values.
    """
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if "slam" not in raw:
        raise ValueError(f"Configuration file {path} has no 'slam' section")

    slam_config = SLAMConfig.from_dict(raw["slam"])
    sim_config = SimulationConfig.from_dict(raw.get("simulation") or {})
    logger.info(f"Loaded configuration from {path}")
    return slam_config, sim_config
