#!/usr/bin/env python3
"""
Headless ground-truth simulator for EKF-SLAM.

Provides the external collaborators of the estimator:

- :class:`GroundTruthRobot` integrates the true pose with the same unicycle
  kinematics the filter assumes.
- :func:`sample_controls` corrupts commanded velocities with Gaussian noise whose
  standard deviation grows with the commanded magnitude.
- :class:`RangeBearingSensor` produces noisy range-bearing observations of the
  landmarks within range and field of view.
- :class:`Simulation` ties them to an :class:`ExtendedKalmanFilterSLAM`: each
  tick moves the true robot, feeds the noisy controls to the prediction step and
  every observation to the update step.

Examples
--------
>>> from ekfslam2d.config import SLAMConfig, SimulationConfig
>>> from ekfslam2d.simulation.simulator import Simulation
>>>
>>> landmarks = {1: (5.0, 0.0), 2: (0.0, 5.0), 3: (-5.0, 0.0)}
>>> sim = Simulation(
...     SLAMConfig(sigma_range=0.1, sigma_bearing=0.02),
...     SimulationConfig(max_range=8.0, seed=0),
...     landmarks,
... )
>>> slam = sim.run([(1.0, 0.2, 0.1)] * 300)
>>> sim.build_dataframes()
"""

import logging

import numpy as np

from ekfslam2d.slam.ekf_slam import ExtendedKalmanFilterSLAM
from ekfslam2d.slam.observation import Observation, UpdateOutcome
from ekfslam2d.utils.data_utils import build_timeseries
from ekfslam2d.utils.geometry import absolute_to_relative, wrap_angle

logger = logging.getLogger(__name__)


class GroundTruthRobot:
    """True robot pose integrated with the midpoint unicycle model."""

    def __init__(self, x=0.0, y=0.0, heading=0.0):
        self.pose = np.array([x, y, wrap_angle(heading)], dtype=float)

    def step(self, linear_velocity, angular_velocity, delta_time):
        if delta_time < 0:
            raise ValueError(f"delta_time must be >= 0, got {delta_time}")
        theta_mid = self.pose[2] + 0.5 * angular_velocity * delta_time
        self.pose[0] += linear_velocity * delta_time * np.cos(theta_mid)
        self.pose[1] += linear_velocity * delta_time * np.sin(theta_mid)
        self.pose[2] = wrap_angle(self.pose[2] + angular_velocity * delta_time)
        return self.pose.copy()


def sample_controls(linear_velocity, angular_velocity, rng, config):
    """
    Corrupt commanded velocities with zero-mean Gaussian noise.

    Parameters
    ----------
    linear_velocity, angular_velocity : float
        Commanded velocities.
    rng : numpy.random.Generator
        Random generator.
    config : SimulationConfig
        Noise gains and floors: σ = gain * |u| + floor.

    Returns
    -------
    tuple of float
        Noisy (linear_velocity, angular_velocity).
    """
    sigma_linear = config.linear_noise_gain * abs(linear_velocity) + config.linear_noise_floor
    sigma_angular = config.angular_noise_gain * abs(angular_velocity) + config.angular_noise_floor
    return (
        float(linear_velocity + rng.normal(0.0, sigma_linear)),
        float(angular_velocity + rng.normal(0.0, sigma_angular)),
    )


class RangeBearingSensor:
    """
    Virtual range-bearing sensor with known landmark identities.

    Parameters
    ----------
    landmarks : dict
        Landmark id -> true (x, y) position.
    sigma_range : float
        Range noise standard deviation (m).
    sigma_bearing : float
        Bearing noise standard deviation (rad).
    max_range : float
        Landmarks farther than this are not detected.
    field_of_view : float
        Full angular width of the sensor, centered on the robot heading.
    rng : numpy.random.Generator, optional
        Random generator (default: a fresh unseeded generator).
    """

    def __init__(
        self,
        landmarks,
        sigma_range,
        sigma_bearing,
        max_range=10.0,
        field_of_view=2 * np.pi,
        rng=None,
    ):
        self.landmarks = {
            landmark_id: (float(x), float(y)) for landmark_id, (x, y) in landmarks.items()
        }
        self.sigma_range = sigma_range
        self.sigma_bearing = sigma_bearing
        self.max_range = max_range
        self.fov_half = 0.5 * field_of_view
        self.rng = rng or np.random.default_rng()

    def true_observation(self, pose, landmark_id):
        """Noiseless (range, bearing) of a landmark (for testing)."""
        x, y = self.landmarks[landmark_id]
        return absolute_to_relative(pose, x, y)

    def observe(self, pose):
        """
        Observe every landmark within range and field of view.

        Parameters
        ----------
        pose : array_like of shape (3,)
            True robot pose.

        Returns
        -------
        list of Observation
            One noisy observation per detected landmark.
        """
        observations = []
        for landmark_id in self.landmarks:
            range_, bearing = self.true_observation(pose, landmark_id)
            if range_ > self.max_range or abs(bearing) > self.fov_half:
                continue
            noisy_range = max(range_ + self.rng.normal(0.0, self.sigma_range), 0.0)
            noisy_bearing = bearing + self.rng.normal(0.0, self.sigma_bearing)
            observations.append(Observation(landmark_id, noisy_range, noisy_bearing))
        return observations


class Simulation:
    """
    Closed loop of ground truth, sensor and EKF-SLAM estimator.

    Parameters
    ----------
    slam_config : SLAMConfig
        Estimator configuration. Its sensor sigmas are also used by the
        virtual sensor, so the filter's noise model matches the simulated one.
    sim_config : SimulationConfig
        Sensor range, field of view, true control noise and seed.
    landmarks : dict
        Landmark id -> true (x, y). The robot starts at the origin, like the
        estimator.

    Attributes
    ----------
    slam : ExtendedKalmanFilterSLAM
        The estimator, recording its trajectory.
    robot : GroundTruthRobot
        True robot.
    sensor : RangeBearingSensor
        Virtual sensor.
    groundtruth : pandas.DataFrame
        Time-indexed true trajectory, created by :meth:`build_dataframes`.
    """

    def __init__(self, slam_config, sim_config, landmarks):
        self.sim_config = sim_config
        self.rng = np.random.default_rng(sim_config.seed)
        self.robot = GroundTruthRobot()
        self.sensor = RangeBearingSensor(
            landmarks,
            slam_config.sigma_range,
            slam_config.sigma_bearing,
            max_range=sim_config.max_range,
            field_of_view=sim_config.field_of_view,
            rng=self.rng,
        )
        self.slam = ExtendedKalmanFilterSLAM(slam_config, record_history=True)

        self.time = 0.0
        self.outcomes = {outcome: 0 for outcome in UpdateOutcome}
        self._groundtruth = [(0.0, *self.robot.pose)]

    def step(self, linear_velocity, angular_velocity, delta_time):
        """
        Advance the simulation by one control tick.

        Returns
        -------
        list of UpdateOutcome
            Outcome of every observation fused during this tick.
        """
        self.robot.step(linear_velocity, angular_velocity, delta_time)
        if delta_time > 0:
            self.time += delta_time
            self._groundtruth.append((self.time, *self.robot.pose))

        measured_v, measured_w = sample_controls(
            linear_velocity, angular_velocity, self.rng, self.sim_config
        )
        self.slam.predict(measured_v, measured_w, delta_time)

        outcomes = []
        for observation in self.sensor.observe(self.robot.pose):
            outcome = self.slam.update(observation)
            self.outcomes[outcome] += 1
            outcomes.append(outcome)
        return outcomes

    def run(self, controls):
        """
        Run a sequence of control ticks.

        Parameters
        ----------
        controls : iterable of tuple
            (linear_velocity, angular_velocity, delta_time) per tick.

        Returns
        -------
        ExtendedKalmanFilterSLAM
            The estimator after the last tick.
        """
        steps = 0
        for linear_velocity, angular_velocity, delta_time in controls:
            self.step(linear_velocity, angular_velocity, delta_time)
            steps += 1

        logger.info(
            f"Simulated {steps} steps ({self.time:.2f} s): "
            f"{self.slam.num_landmarks} landmarks, "
            f"{self.outcomes[UpdateOutcome.CORRECTED]} corrections, "
            f"{self.outcomes[UpdateOutcome.REJECTED]} rejected observations"
        )
        return self.slam

    def build_dataframes(self):
        """
        Create time-indexed DataFrames of the true and estimated trajectories.

        Creates
        -------
        self.groundtruth : pandas.DataFrame
            True trajectory with columns ['x', 'y', 'theta'].
        self.slam.robot_states, self.slam.landmarks : pandas.DataFrame
            See :meth:`ExtendedKalmanFilterSLAM.build_dataframes`.
        """
        self.groundtruth = build_timeseries(
            np.array(self._groundtruth, dtype=float), cols=["stamp", "x", "y", "theta"]
        )
        self.slam.build_dataframes()


if __name__ == "__main__":
    """
    Drive the robot on a circle through a ring of landmarks and report errors.
    """
    from ekfslam2d.config import SimulationConfig, SLAMConfig
    from ekfslam2d.utils.metrics import compute_ate, compute_landmark_errors

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    angles = np.linspace(0.0, 2 * np.pi, 12, endpoint=False)
    landmarks = {i: (8.0 * np.cos(a), 8.0 * np.sin(a) + 5.0) for i, a in enumerate(angles)}

    sim = Simulation(
        SLAMConfig(sigma_range=0.1, sigma_bearing=0.02),
        SimulationConfig(max_range=6.0, seed=42),
        landmarks,
    )
    # One lap of a radius-5 circle centred on (0, 5)
    sim.run([(1.0, 0.2, 0.05)] * int(2 * np.pi / 0.2 / 0.05))
    sim.build_dataframes()

    ate = compute_ate(sim.slam.robot_states, sim.groundtruth)
    errors = compute_landmark_errors(sim.slam, landmarks)
    logger.info(f"ATE (RMSE): {ate:.3f} m")
    logger.info(f"Mean landmark error: {errors['error'].mean():.3f} m")
