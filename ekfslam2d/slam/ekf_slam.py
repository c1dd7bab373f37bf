#!/usr/bin/env python3
"""
Extended Kalman Filter SLAM with Known Correspondences and Incremental Map Growth.

This module implements the EKF-SLAM algorithm for a planar robot observing point
landmarks with a range-bearing sensor. Landmark identities are given by the
sensor; the number of landmarks is NOT known in advance. The state vector starts
with the robot pose only and grows by two entries the first time a landmark is
seen.

Mathematical Foundation
-----------------------
The filter represents the joint posterior over robot pose and map by a Gaussian:
    p(x_t, m | z_{1:t}, u_{1:t}) ≈ N(μ, Σ)

Augmented State Vector:
    μ = [x, y, θ, m_{1,x}, m_{1,y}, ..., m_{L,x}, m_{L,y}]^T

Where:
    - (x, y, θ): Robot pose, θ wrapped to (-π, π]
    - (m_{i,x}, m_{i,y}): Coordinates of the i-th landmark seen
    - L: Number of landmarks seen so far
    - Dimension: 3 + 2L

Covariance Matrix Structure:
    Σ = [ Σ_rr  Σ_rm ]
        [ Σ_mr  Σ_mm ]

Algorithm Steps
---------------
1. Prediction:
   - Move the robot pose with the unicycle model (midpoint heading)
   - Only the robot block and the robot-map cross-covariances change

2. Landmark Initialization (first sighting):
   - Back-project the observation from the current pose estimate
   - Append the landmark to the state and grow the covariance by 2

3. Landmark Correction (re-sighting):
   - Compare the observation with the one predicted from the estimate
   - Update the full state through the Kalman gain

References
----------
.. [1] Solà, J. (2014). Simultaneous localization and mapping with the extended
       Kalman filter. "A very quick guide with Matlab code."
.. [2] Thrun, S., Burgard, W., & Fox, D. (2005). Probabilistic Robotics.
       Chapter 10: SLAM with Extended Kalman Filters.

Examples
--------
>>> from ekfslam2d.config import SLAMConfig
>>> from ekfslam2d.slam.ekf_slam import ExtendedKalmanFilterSLAM
>>> from ekfslam2d.slam.observation import Observation
>>>
>>> slam = ExtendedKalmanFilterSLAM(SLAMConfig(sigma_range=0.1, sigma_bearing=0.05))
>>> slam.predict(1.0, 0.0, 1.0)
>>> slam.update(Observation(landmark_id=7, range=5.0, bearing=0.0))
<UpdateOutcome.INITIALIZED: 'initialized'>
>>> slam.landmark_position(7)
(6.0, 0.0)
"""

import logging
from types import MappingProxyType

import numpy as np
import pandas as pd

from ekfslam2d.slam.observation import LandmarkStatus, Observation, UpdateOutcome
from ekfslam2d.utils.data_utils import build_timeseries
from ekfslam2d.utils.geometry import (
    absolute_to_relative,
    covariance_ellipse,
    relative_to_absolute,
    wrap_angle,
)

logger = logging.getLogger(__name__)

ROBOT_DIM = 3
LANDMARK_DIM = 2


class ExtendedKalmanFilterSLAM:
    """
    EKF-SLAM estimator with a growing joint state.

    The state vector and covariance matrix are stored in buffers whose capacity
    doubles when a new landmark does not fit, so adding a landmark costs time
    linear in the current state size (plus an occasional amortized copy).
    Readers get copies of the active region through :attr:`state` and
    :attr:`covariance`; only :meth:`predict` and :meth:`update` mutate it.

    Parameters
    ----------
    config : SLAMConfig
        Sensor noise, control noise model and numerical thresholds.
    record_history : bool, optional
        Whether to store one robot pose per timestamp so that
        :meth:`build_dataframes` can produce a trajectory. The stored pose
        includes every correction fused at that timestamp (default: False).
    initial_capacity : int, optional
        Initial buffer size (number of state entries) before the first
        reallocation (default: 3 + 2 * 8).

    Attributes
    ----------
    config : SLAMConfig
        Estimator configuration.
    robot_states : pandas.DataFrame
        Time-indexed robot trajectory, created by :meth:`build_dataframes`.
    landmarks : pandas.DataFrame
        Landmark map indexed by landmark id, created by :meth:`build_dataframes`.

    Notes
    -----
    Each landmark id is either UNSEEN or TRACKED. The first observation of an id
    initializes it (UNSEEN -> TRACKED); every later observation corrects it. The
    transition is irreversible and offsets into the state are never reused.
    """

    def __init__(self, config, record_history=False, initial_capacity=ROBOT_DIM + 2 * 8):
        self.config = config
        self.record_history = record_history

        capacity = max(int(initial_capacity), ROBOT_DIM)
        self._state_buffer = np.zeros(capacity)
        self._covariance_buffer = np.zeros((capacity, capacity))
        self._size = ROBOT_DIM
        self._covariance_buffer[:ROBOT_DIM, :ROBOT_DIM] = config.initial_covariance * np.identity(
            ROBOT_DIM
        )

        # landmark id -> offset of its x coordinate in the state vector
        self._landmark_index = {}
        self._time = 0.0
        self._rejected_observations = 0

        self._history = []
        if self.record_history:
            self._record_pose()

    # ------------------------------------------------------------------ #
    # Read-only accessors
    # ------------------------------------------------------------------ #

    @property
    def _x(self):
        return self._state_buffer[: self._size]

    @property
    def _P(self):
        return self._covariance_buffer[: self._size, : self._size]

    @property
    def state(self) -> np.ndarray:
        """Copy of the joint state vector [x, y, θ, m_1x, m_1y, ...]."""
        return self._x.copy()

    @property
    def covariance(self) -> np.ndarray:
        """Copy of the joint covariance matrix."""
        return self._P.copy()

    @property
    def landmark_index(self):
        """Read-only mapping from landmark id to state offset."""
        return MappingProxyType(self._landmark_index)

    @property
    def robot_pose(self) -> np.ndarray:
        return self._x[:ROBOT_DIM].copy()

    @property
    def num_landmarks(self) -> int:
        return len(self._landmark_index)

    @property
    def time(self) -> float:
        """Simulated time accumulated over all predictions (s)."""
        return self._time

    @property
    def rejected_observations(self) -> int:
        return self._rejected_observations

    def landmark_status(self, landmark_id) -> LandmarkStatus:
        if landmark_id in self._landmark_index:
            return LandmarkStatus.TRACKED
        return LandmarkStatus.UNSEEN

    def landmark_offset(self, landmark_id):
        """State offset of a tracked landmark, or None while it is unseen."""
        return self._landmark_index.get(landmark_id)

    def landmark_position(self, landmark_id):
        offset = self._require_offset(landmark_id)
        return float(self._x[offset]), float(self._x[offset + 1])

    def landmark_covariance(self, landmark_id) -> np.ndarray:
        offset = self._require_offset(landmark_id)
        return self._P[offset : offset + LANDMARK_DIM, offset : offset + LANDMARK_DIM].copy()

    def robot_ellipse(self, confidence=0.95):
        """Confidence ellipse (width, height, angle) of the robot position."""
        return covariance_ellipse(self._P[:2, :2], confidence)

    def landmark_ellipse(self, landmark_id, confidence=0.95):
        """Confidence ellipse (width, height, angle) of a tracked landmark."""
        return covariance_ellipse(self.landmark_covariance(landmark_id), confidence)

    def relative_to_absolute(self, range_, bearing):
        """World position of a (range, bearing) observation from the current pose."""
        return relative_to_absolute(self._x[:ROBOT_DIM], range_, bearing)

    def absolute_to_relative(self, x, y):
        """(range, bearing) of a world position as seen from the current pose."""
        return absolute_to_relative(self._x[:ROBOT_DIM], x, y)

    # ------------------------------------------------------------------ #
    # Prediction
    # ------------------------------------------------------------------ #

    def predict(self, linear_velocity, angular_velocity, delta_time):
        """
        Perform the EKF-SLAM prediction step.

        Moves the robot pose with the commanded velocities and propagates the
        uncertainty through the linearized motion model. Landmark estimates and
        landmark-landmark covariances are left untouched.

        Parameters
        ----------
        linear_velocity : float
            Commanded forward velocity v (m/s).
        angular_velocity : float
            Commanded angular velocity ω (rad/s).
        delta_time : float
            Elapsed time since the previous prediction (s). Zero is a no-op.

        Raises
        ------
        ValueError
            If ``delta_time`` is negative or any input is not finite.

        Mathematical Model
        ------------------
        Motion equations with the heading at the middle of the interval:
            θ_m = θ + ω * Δt / 2
            x'  = x + v * Δt * cos(θ_m)
            y'  = y + v * Δt * sin(θ_m)
            θ'  = θ + ω * Δt

        Jacobians with respect to the robot state and to the control noise:
            F_x = [1  0  -v*Δt*sin(θ_m)]     F_n = [cos(θ_m)*Δt   0 ]
                  [0  1   v*Δt*cos(θ_m)]           [sin(θ_m)*Δt   0 ]
                  [0  0        1       ]           [     0       Δt ]

        Control noise:
            N = diag((a_v*|v| + f_v)², (a_ω*|ω| + f_ω)²)

        Covariance update:
            Σ_rr = F_x Σ_rr F_x^T + F_n N F_n^T
            Σ_rm = F_x Σ_rm,   Σ_mr = Σ_rm^T
        """
        for name, value in (
            ("linear_velocity", linear_velocity),
            ("angular_velocity", angular_velocity),
            ("delta_time", delta_time),
        ):
            if not np.isfinite(value):
                raise ValueError(f"{name} must be finite, got {value}")
        if delta_time < 0:
            raise ValueError(f"delta_time must be >= 0, got {delta_time}")
        if delta_time == 0:
            return

        x = self._x
        P = self._P
        v = float(linear_velocity)
        w = float(angular_velocity)
        dt = float(delta_time)

        # ------------------ Step 1: Mean update ---------------------#
        theta_mid = x[2] + 0.5 * w * dt
        x[0] += v * dt * np.cos(theta_mid)
        x[1] += v * dt * np.sin(theta_mid)
        x[2] = wrap_angle(x[2] + w * dt)

        # ------ Step 2: Linearize motion model by Jacobians ---------#
        F_x = np.array(
            [
                [1.0, 0.0, -v * dt * np.sin(theta_mid)],
                [0.0, 1.0, v * dt * np.cos(theta_mid)],
                [0.0, 0.0, 1.0],
            ]
        )
        F_n = np.array(
            [
                [np.cos(theta_mid) * dt, 0.0],
                [np.sin(theta_mid) * dt, 0.0],
                [0.0, dt],
            ]
        )
        N = self.config.control_noise(v, w)

        # ---------------- Step 3: Covariance update ------------------#
        P_rr = F_x @ P[:ROBOT_DIM, :ROBOT_DIM] @ F_x.T + F_n @ N @ F_n.T
        P[:ROBOT_DIM, :ROBOT_DIM] = 0.5 * (P_rr + P_rr.T)

        if self._size > ROBOT_DIM:
            P_rm = F_x @ P[:ROBOT_DIM, ROBOT_DIM:]
            P[:ROBOT_DIM, ROBOT_DIM:] = P_rm
            P[ROBOT_DIM:, :ROBOT_DIM] = P_rm.T

        self._time += dt
        self._check_invariants()
        if self.record_history:
            self._record_pose()

    # ------------------------------------------------------------------ #
    # Update
    # ------------------------------------------------------------------ #

    def update(self, observation: Observation) -> UpdateOutcome:
        """
        Fuse one landmark observation.

        Unseen landmark ids are initialized; tracked ids are corrected.

        Parameters
        ----------
        observation : Observation
            Range-bearing observation relative to the current pose estimate.

        Returns
        -------
        UpdateOutcome
            INITIALIZED, CORRECTED, or REJECTED when the correction geometry is
            degenerate. A rejected observation leaves the estimate unchanged.
        """
        offset = self._landmark_index.get(observation.landmark_id)
        if offset is None:
            self._initialize_landmark(observation)
            outcome = UpdateOutcome.INITIALIZED
        else:
            outcome = self._correct_landmark(observation, offset)
        self._check_invariants()
        if self.record_history and outcome is UpdateOutcome.CORRECTED:
            self._record_pose()
        return outcome

    def observe(self, landmark_id, range_, bearing) -> UpdateOutcome:
        """Validate raw observation values and fuse them (see :meth:`update`)."""
        return self.update(Observation(landmark_id, range_, bearing))

    def _initialize_landmark(self, observation):
        """
        Add a first-seen landmark to the state and covariance.

        Mathematical Model
        ------------------
        Inverse observation model with α = θ + φ:
            m_x = x + r * cos(α)
            m_y = y + r * sin(α)

        Jacobians with respect to the robot pose and the observation:
            G_r = [1  0  -r*sin(α)]      G_y = [cos(α)  -r*sin(α)]
                  [0  1   r*cos(α)]            [sin(α)   r*cos(α)]

        New covariance blocks:
            Σ_ll = G_r Σ_rr G_r^T + G_y R G_y^T
            Σ_lx = G_r Σ_rx
        where Σ_rx is the robot row block over every existing column.
        """
        old_len = self._size
        range_ = observation.range
        x_l, y_l = self.relative_to_absolute(range_, observation.bearing)

        absolute_angle = self._x[2] + observation.bearing
        sin_a = np.sin(absolute_angle)
        cos_a = np.cos(absolute_angle)
        G_r = np.array(
            [
                [1.0, 0.0, -range_ * sin_a],
                [0.0, 1.0, range_ * cos_a],
            ]
        )
        G_y = np.array(
            [
                [cos_a, -range_ * sin_a],
                [sin_a, range_ * cos_a],
            ]
        )
        R = self.config.sensor_noise()

        P = self._P
        P_ll = G_r @ P[:ROBOT_DIM, :ROBOT_DIM] @ G_r.T + G_y @ R @ G_y.T
        P_lx = G_r @ P[:ROBOT_DIM, :old_len]

        # Grow state and covariance
        new_len = old_len + LANDMARK_DIM
        self._reserve(new_len)
        self._size = new_len
        self._landmark_index[observation.landmark_id] = old_len

        x = self._x
        x[old_len] = x_l
        x[old_len + 1] = y_l

        P = self._P
        P[old_len:new_len, :old_len] = P_lx
        P[:old_len, old_len:new_len] = P_lx.T
        P[old_len:new_len, old_len:new_len] = 0.5 * (P_ll + P_ll.T)

        logger.info(
            f"Landmark {observation.landmark_id!r} initialized at ({x_l:.3f}, {y_l:.3f}), "
            f"state offset {old_len}, {self.num_landmarks} landmarks tracked"
        )

    def _correct_landmark(self, observation, offset):
        """
        Fuse a re-observation of a tracked landmark.

        Mathematical Model
        ------------------
        With δ = (m_x - x, m_y - y), q = δ^T δ and r̂ = √q:
            ẑ = [r̂, atan2(δ_y, δ_x) - θ]

        Observation Jacobian, non-zero only in the robot columns and the
        landmark's own two columns:
            H_r = [-δ_x/r̂  -δ_y/r̂   0]     H_l = [ δ_x/r̂   δ_y/r̂]
                  [ δ_y/q   -δ_x/q  -1]           [-δ_y/q    δ_x/q ]

        Correction:
            S = H Σ H^T + R
            K = Σ H^T S^-1
            μ = μ + K (z - ẑ)          (bearing residual wrapped)
            Σ = (I - K H) Σ,  then symmetrized
        """
        x = self._x
        P = self._P
        config = self.config

        # ---------------- Step 1: Expected observation ---------------#
        x_l = x[offset]
        y_l = x[offset + 1]
        delta_x = x_l - x[0]
        delta_y = y_l - x[1]
        q = delta_x**2 + delta_y**2
        range_expected, bearing_expected = self.absolute_to_relative(x_l, y_l)

        if range_expected < config.min_correction_range:
            return self._reject(
                observation,
                f"predicted range {range_expected:.3g} is below {config.min_correction_range:.3g}",
            )

        innovation = np.array(
            [
                observation.range - range_expected,
                wrap_angle(observation.bearing - bearing_expected),
            ]
        )

        # ------ Step 2: Linearize observation model by Jacobian ------#
        H = np.zeros((2, self._size))
        H[:, :ROBOT_DIM] = [
            [-delta_x / range_expected, -delta_y / range_expected, 0.0],
            [delta_y / q, -delta_x / q, -1.0],
        ]
        H[:, offset : offset + LANDMARK_DIM] = [
            [delta_x / range_expected, delta_y / range_expected],
            [-delta_y / q, delta_x / q],
        ]

        # ---------------- Step 3: Kalman gain update -----------------#
        S = H @ P @ H.T + config.sensor_noise()
        det_S = S[0, 0] * S[1, 1] - S[0, 1] * S[1, 0]
        if not np.isfinite(det_S) or abs(det_S) < config.singular_epsilon:
            return self._reject(
                observation, f"innovation covariance is singular (det={det_S:.3g})"
            )
        S_inv = np.array([[S[1, 1], -S[0, 1]], [-S[1, 0], S[0, 0]]]) / det_S
        K = P @ H.T @ S_inv

        # ------------------- Step 4: Mean update ---------------------#
        x += K @ innovation
        x[2] = wrap_angle(x[2])

        # ---------------- Step 5: Covariance update ------------------#
        # (I - K H) Σ without forming the identity
        P_new = P - K @ (H @ P)
        P[:, :] = 0.5 * (P_new + P_new.T)

        logger.debug(
            f"Landmark {observation.landmark_id!r} corrected, innovation "
            f"(range={innovation[0]:.4f}, bearing={innovation[1]:.4f})"
        )
        return UpdateOutcome.CORRECTED

    def _reject(self, observation, reason):
        self._rejected_observations += 1
        logger.warning(
            f"Observation of landmark {observation.landmark_id!r} rejected: {reason}"
        )
        return UpdateOutcome.REJECTED

    # ------------------------------------------------------------------ #
    # Storage and invariants
    # ------------------------------------------------------------------ #

    def _reserve(self, size):
        capacity = self._state_buffer.shape[0]
        if size <= capacity:
            return
        new_capacity = max(size, 2 * capacity)
        n = self._size

        state_buffer = np.zeros(new_capacity)
        state_buffer[:n] = self._state_buffer[:n]
        covariance_buffer = np.zeros((new_capacity, new_capacity))
        covariance_buffer[:n, :n] = self._covariance_buffer[:n, :n]

        self._state_buffer = state_buffer
        self._covariance_buffer = covariance_buffer
        logger.debug(f"State capacity grown from {capacity} to {new_capacity}")

    def _require_offset(self, landmark_id):
        offset = self._landmark_index.get(landmark_id)
        if offset is None:
            raise KeyError(f"Landmark {landmark_id!r} has not been observed")
        return offset

    def _check_invariants(self):
        n = self._size
        if self._x.shape != (n,) or self._P.shape != (n, n):
            raise RuntimeError(
                f"Dimension mismatch: state {self._x.shape}, covariance {self._P.shape}"
            )
        if n != ROBOT_DIM + LANDMARK_DIM * len(self._landmark_index):
            raise RuntimeError(
                f"State size {n} does not match {len(self._landmark_index)} registered landmarks"
            )
        offsets = list(self._landmark_index.values())
        if offsets != list(range(ROBOT_DIM, n, LANDMARK_DIM)):
            raise RuntimeError(f"Landmark offsets are not contiguous: {offsets}")

    # ------------------------------------------------------------------ #
    # History
    # ------------------------------------------------------------------ #

    def _record_pose(self):
        # One row per timestamp: corrections overwrite the row of their tick
        x = self._x
        row = (self._time, float(x[0]), float(x[1]), float(x[2]))
        if self._history and self._history[-1][0] == self._time:
            self._history[-1] = row
        else:
            self._history.append(row)

    def build_dataframes(self):
        """
        Convert the estimate to pandas DataFrames for analysis.

        Creates
        -------
        self.robot_states : pandas.DataFrame
            Estimated robot trajectory with columns ['x', 'y', 'theta'] indexed
            by simulated time. Empty unless ``record_history`` is enabled.
        self.landmarks : pandas.DataFrame
            Current landmark map indexed by landmark id with columns
            ['x', 'y', 'sigma_x', 'sigma_y'].
        """
        self.robot_states = build_timeseries(
            np.array(self._history, dtype=float).reshape(-1, 4),
            cols=["stamp", "x", "y", "theta"],
        )

        rows = []
        for landmark_id in self._landmark_index:
            x_l, y_l = self.landmark_position(landmark_id)
            covariance = self.landmark_covariance(landmark_id)
            rows.append(
                {
                    "landmark_id": landmark_id,
                    "x": x_l,
                    "y": y_l,
                    "sigma_x": np.sqrt(covariance[0, 0]),
                    "sigma_y": np.sqrt(covariance[1, 1]),
                }
            )
        self.landmarks = pd.DataFrame(
            rows, columns=["landmark_id", "x", "y", "sigma_x", "sigma_y"]
        ).set_index("landmark_id")
