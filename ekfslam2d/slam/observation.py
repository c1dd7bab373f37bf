"""Landmark observations and the per-landmark estimator bookkeeping types."""

from dataclasses import dataclass
from enum import Enum
from typing import Hashable

import numpy as np

from ekfslam2d.utils.geometry import wrap_angle


@dataclass(frozen=True)
class Observation:
    """
    Range-bearing observation of a landmark with known identity.

    Attributes
    ----------
    landmark_id : hashable
        Stable identifier assigned by the sensor.
    range : float
        Distance to the landmark (m), must be >= 0.
    bearing : float
        Angle to the landmark relative to the robot heading (rad). Wrapped to
        (-π, π] on construction.

    Raises
    ------
    ValueError
        If the range is negative or either value is not finite.
    """

    landmark_id: Hashable
    range: float
    bearing: float

    def __post_init__(self):
        if not np.isfinite(self.range) or self.range < 0:
            raise ValueError(
                f"Observation of landmark {self.landmark_id!r} has invalid range {self.range}; "
                "range must be a finite number >= 0"
            )
        if not np.isfinite(self.bearing):
            raise ValueError(
                f"Observation of landmark {self.landmark_id!r} has invalid bearing {self.bearing}"
            )
        object.__setattr__(self, "range", float(self.range))
        object.__setattr__(self, "bearing", wrap_angle(float(self.bearing)))


class LandmarkStatus(Enum):
    """Landmark lifecycle: UNSEEN until first observed, then TRACKED for good."""

    UNSEEN = "unseen"
    TRACKED = "tracked"


class UpdateOutcome(Enum):
    """Result of fusing one observation."""

    INITIALIZED = "initialized"
    CORRECTED = "corrected"
    REJECTED = "rejected"
