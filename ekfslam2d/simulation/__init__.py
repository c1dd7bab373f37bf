"""Ground-truth robot, noisy controls and virtual range-bearing sensor."""

from .simulator import GroundTruthRobot, RangeBearingSensor, Simulation, sample_controls

__all__ = ["GroundTruthRobot", "RangeBearingSensor", "Simulation", "sample_controls"]
