import logging

import numpy as np
import pytest

from ekfslam2d.config import SLAMConfig
from ekfslam2d.slam.ekf_slam import ExtendedKalmanFilterSLAM
from ekfslam2d.slam.observation import LandmarkStatus, Observation, UpdateOutcome
from ekfslam2d.utils.metrics import check_covariance


def reorder(slam, ids):
    """State and covariance with landmarks sorted by id."""
    indexes = [0, 1, 2]
    for landmark_id in ids:
        offset = slam.landmark_offset(landmark_id)
        indexes += [offset, offset + 1]
    return slam.state[indexes], slam.covariance[np.ix_(indexes, indexes)]


def test_initial_state(slam):
    np.testing.assert_array_equal(slam.state, np.zeros(3))
    np.testing.assert_array_equal(slam.covariance, 0.01 * np.identity(3))
    assert slam.num_landmarks == 0
    assert dict(slam.landmark_index) == {}


def test_predict_straight_line(slam):
    slam.predict(1.0, 0.0, 1.0)

    np.testing.assert_allclose(slam.state, [1.0, 0.0, 0.0], atol=1e-12)
    # Uncertainty grows with motion
    assert np.all(np.diag(slam.covariance) >= 0.01)
    assert slam.covariance[1, 1] > 0.01
    assert slam.time == pytest.approx(1.0)


def test_predict_uses_midpoint_heading(slam):
    slam.predict(2.0, np.pi / 2, 1.0)

    theta_mid = np.pi / 4
    np.testing.assert_allclose(
        slam.state, [2.0 * np.cos(theta_mid), 2.0 * np.sin(theta_mid), np.pi / 2], atol=1e-12
    )


def test_predict_robot_covariance_matches_model(config):
    slam = ExtendedKalmanFilterSLAM(config)
    v, w, dt = 1.5, 0.3, 0.2
    slam.predict(v, w, dt)

    theta_mid = 0.5 * w * dt
    F_x = np.array(
        [
            [1.0, 0.0, -v * dt * np.sin(theta_mid)],
            [0.0, 1.0, v * dt * np.cos(theta_mid)],
            [0.0, 0.0, 1.0],
        ]
    )
    F_n = np.array([[np.cos(theta_mid) * dt, 0.0], [np.sin(theta_mid) * dt, 0.0], [0.0, dt]])
    N = np.diag([(0.1 * v + 0.01) ** 2, (0.1 * w + 0.01) ** 2])
    expected = F_x @ (0.01 * np.identity(3)) @ F_x.T + F_n @ N @ F_n.T

    np.testing.assert_allclose(slam.covariance, expected, atol=1e-15)


def test_predict_leaves_landmark_block_untouched(slam):
    slam.observe("a", 4.0, 0.5)
    slam.observe("b", 3.0, -1.0)
    before = slam.covariance

    slam.predict(1.0, 0.4, 0.5)
    after = slam.covariance

    np.testing.assert_array_equal(after[3:, 3:], before[3:, 3:])
    np.testing.assert_allclose(after[:3, 3:], after[3:, :3].T)
    np.testing.assert_array_equal(slam.state[3:], [*slam.landmark_position("a"), *slam.landmark_position("b")])


def test_predict_zero_time_is_noop(slam):
    slam.predict(1.0, 0.2, 0.5)
    slam.observe(1, 5.0, 0.3)
    state, covariance = slam.state, slam.covariance

    slam.predict(3.0, -1.0, 0.0)

    np.testing.assert_array_equal(slam.state, state)
    np.testing.assert_array_equal(slam.covariance, covariance)


def test_predict_noise_floor_at_rest(slam):
    slam.predict(0.0, 0.0, 1.0)
    # Heading variance grows by floor² * dt² even without motion
    assert slam.covariance[2, 2] == pytest.approx(0.01 + 0.01**2)


@pytest.mark.parametrize("delta_time", [-0.1, float("nan")])
def test_predict_rejects_invalid_delta_time(slam, delta_time):
    with pytest.raises(ValueError):
        slam.predict(1.0, 0.0, delta_time)
    np.testing.assert_array_equal(slam.state, np.zeros(3))


def test_scenario_initialize_landmark(slam):
    slam.predict(1.0, 0.0, 1.0)
    np.testing.assert_allclose(slam.state, [1.0, 0.0, 0.0], atol=1e-12)

    outcome = slam.update(Observation("tree", 5.0, 0.0))

    assert outcome is UpdateOutcome.INITIALIZED
    assert slam.landmark_index["tree"] == 3
    assert slam.state.shape == (5,)
    assert slam.covariance.shape == (5, 5)
    np.testing.assert_allclose(slam.landmark_position("tree"), (6.0, 0.0), atol=1e-12)


def test_initialization_covariance_blocks(config):
    slam = ExtendedKalmanFilterSLAM(config)
    slam.predict(1.0, 0.5, 1.0)
    P_before = slam.covariance
    theta = slam.state[2]
    r, b = 4.0, 0.7

    slam.observe("a", r, b)

    alpha = theta + b
    G_r = np.array([[1.0, 0.0, -r * np.sin(alpha)], [0.0, 1.0, r * np.cos(alpha)]])
    G_y = np.array([[np.cos(alpha), -r * np.sin(alpha)], [np.sin(alpha), r * np.cos(alpha)]])
    R = np.diag([0.1**2, 0.05**2])
    P = slam.covariance

    np.testing.assert_allclose(P[3:5, 3:5], G_r @ P_before @ G_r.T + G_y @ R @ G_y.T, atol=1e-14)
    np.testing.assert_allclose(P[3:5, :3], G_r @ P_before, atol=1e-14)
    np.testing.assert_allclose(P[:3, 3:5], (G_r @ P_before).T, atol=1e-14)
    np.testing.assert_array_equal(P[:3, :3], P_before)


def test_second_landmark_correlated_with_first(slam):
    slam.predict(1.0, 0.0, 1.0)
    slam.observe("a", 5.0, 0.0)
    slam.observe("b", 5.0, np.pi / 2)

    P = slam.covariance
    assert slam.landmark_offset("b") == 5
    # Both landmarks inherit the robot uncertainty, so they are correlated
    assert np.any(np.abs(P[3:5, 5:7]) > 0)
    np.testing.assert_allclose(P[3:5, 5:7], P[5:7, 3:5].T)


def test_landmark_status_transition(slam):
    assert slam.landmark_status(42) is LandmarkStatus.UNSEEN
    assert slam.landmark_offset(42) is None

    slam.observe(42, 2.0, 0.1)

    assert slam.landmark_status(42) is LandmarkStatus.TRACKED
    assert slam.landmark_offset(42) == 3


def test_reregistration_is_idempotent(slam):
    first = slam.observe("a", 5.0, 0.2)
    second = slam.observe("a", 5.1, 0.21)

    assert first is UpdateOutcome.INITIALIZED
    assert second is UpdateOutcome.CORRECTED
    assert slam.num_landmarks == 1
    assert slam.state.shape == (5,)
    assert dict(slam.landmark_index) == {"a": 3}


def test_offsets_assigned_in_first_sighting_order(slam):
    for landmark_id in ["z", "a", "m"]:
        slam.observe(landmark_id, 3.0, 0.0)
    slam.observe("a", 3.0, 0.0)

    assert list(slam.landmark_index.items()) == [("z", 3), ("a", 5), ("m", 7)]


def test_landmark_index_is_read_only(slam):
    slam.observe("a", 1.0, 0.0)
    with pytest.raises(TypeError):
        slam.landmark_index["b"] = 5


def test_snapshots_do_not_alias_estimator(slam):
    state = slam.state
    state[0] = 100.0
    covariance = slam.covariance
    covariance[0, 0] = 100.0

    assert slam.state[0] == 0.0
    assert slam.covariance[0, 0] == 0.01


def test_zero_innovation_correction_keeps_state(slam):
    slam.predict(1.0, 0.0, 1.0)
    slam.observe("tree", 5.0, 0.0)
    state, covariance = slam.state, slam.covariance

    outcome = slam.observe("tree", 5.0, 0.0)

    assert outcome is UpdateOutcome.CORRECTED
    np.testing.assert_allclose(slam.state, state, atol=1e-12)
    # A consistent observation can only remove uncertainty
    assert np.trace(slam.covariance) <= np.trace(covariance)
    assert check_covariance(slam.covariance)["symmetric"]


def test_correction_moves_towards_observation(slam):
    slam.predict(1.0, 0.0, 1.0)
    slam.observe("tree", 5.0, 0.0)

    slam.observe("tree", 5.5, 0.0)

    predicted_range, _ = slam.absolute_to_relative(*slam.landmark_position("tree"))
    assert 5.0 < predicted_range < 5.5


def test_correction_reduces_landmark_uncertainty(slam):
    slam.observe("a", 4.0, 0.3)
    before = np.linalg.det(slam.landmark_covariance("a"))

    for _ in range(5):
        slam.observe("a", 4.0, 0.3)

    assert np.linalg.det(slam.landmark_covariance("a")) < before


def test_correction_wraps_bearing_innovation(slam):
    # Landmark straight behind the robot, observed across the ±π boundary
    slam.observe("behind", 5.0, np.pi)
    state = slam.state

    outcome = slam.observe("behind", 5.0, -np.pi + 0.01)

    assert outcome is UpdateOutcome.CORRECTED
    assert np.all(np.isfinite(slam.state))
    assert np.max(np.abs(slam.state - state)) < 0.1


def test_correction_matches_ekf_equations(config):
    slam = ExtendedKalmanFilterSLAM(config)
    slam.predict(1.0, 0.3, 1.0)
    slam.observe("a", 4.0, 0.5)
    slam.predict(0.5, -0.2, 1.0)
    x, P = slam.state, slam.covariance

    z = np.array([3.8, 0.62])
    slam.observe("a", *z)

    dx, dy = x[3] - x[0], x[4] - x[1]
    q = dx**2 + dy**2
    z_hat = np.array([np.sqrt(q), np.arctan2(dy, dx) - x[2]])
    H = np.zeros((2, 5))
    H[:, :3] = [[-dx / np.sqrt(q), -dy / np.sqrt(q), 0.0], [dy / q, -dx / q, -1.0]]
    H[:, 3:5] = [[dx / np.sqrt(q), dy / np.sqrt(q)], [-dy / q, dx / q]]
    S = H @ P @ H.T + np.diag([0.1**2, 0.05**2])
    K = P @ H.T @ np.linalg.inv(S)
    innovation = z - z_hat
    innovation[1] = np.arctan2(np.sin(innovation[1]), np.cos(innovation[1]))

    np.testing.assert_allclose(slam.state, x + K @ innovation, atol=1e-10)
    np.testing.assert_allclose(slam.covariance, (np.identity(5) - K @ H) @ P, atol=1e-10)


def test_degenerate_range_is_rejected(slam, caplog):
    slam.observe("here", 0.0, 0.3)
    state, covariance = slam.state, slam.covariance

    with caplog.at_level(logging.WARNING, logger="ekfslam2d.slam.ekf_slam"):
        outcome = slam.observe("here", 0.0, 0.3)

    assert outcome is UpdateOutcome.REJECTED
    assert slam.rejected_observations == 1
    assert np.all(np.isfinite(slam.state))
    assert np.all(np.isfinite(slam.covariance))
    np.testing.assert_array_equal(slam.state, state)
    np.testing.assert_array_equal(slam.covariance, covariance)
    assert "rejected" in caplog.text


def test_singular_innovation_covariance_is_rejected():
    slam = ExtendedKalmanFilterSLAM(
        SLAMConfig(sigma_range=0.1, sigma_bearing=0.05, singular_epsilon=1e6)
    )
    slam.observe("a", 3.0, 0.0)
    state, covariance = slam.state, slam.covariance

    assert slam.observe("a", 3.2, 0.1) is UpdateOutcome.REJECTED
    np.testing.assert_array_equal(slam.state, state)
    np.testing.assert_array_equal(slam.covariance, covariance)


@pytest.mark.parametrize("range_", [-1.0, float("nan"), float("inf")])
def test_malformed_observation_rejected_at_boundary(slam, range_):
    with pytest.raises(ValueError):
        slam.observe("a", range_, 0.0)
    assert slam.num_landmarks == 0
    assert slam.state.shape == (3,)


def test_observation_bearing_is_wrapped():
    observation = Observation(1, 2.0, 3 * np.pi / 2)
    assert observation.bearing == pytest.approx(-np.pi / 2)


def test_new_landmarks_order_independent(config):
    observations = [Observation("a", 4.0, 0.3), Observation("b", 6.0, -1.2), Observation("c", 2.5, 2.8)]
    estimators = []
    for order in ([0, 1, 2], [2, 0, 1], [1, 2, 0]):
        slam = ExtendedKalmanFilterSLAM(config)
        slam.predict(1.0, 0.4, 1.0)
        for i in order:
            slam.update(observations[i])
        estimators.append(reorder(slam, ["a", "b", "c"]))

    reference_state, reference_covariance = estimators[0]
    for state, covariance in estimators[1:]:
        np.testing.assert_allclose(state, reference_state, atol=1e-12)
        np.testing.assert_allclose(covariance, reference_covariance, atol=1e-12)


def test_corrections_order_independent_to_first_order(config):
    estimators = [ExtendedKalmanFilterSLAM(config) for _ in range(2)]
    for slam in estimators:
        slam.predict(1.0, 0.4, 1.0)
        slam.observe("a", 4.0, 0.3)
        slam.observe("b", 6.0, -1.2)
        slam.predict(0.5, 0.1, 0.5)

    # Small innovations on both landmarks
    observations = {}
    for landmark_id in ("a", "b"):
        range_, bearing = estimators[0].absolute_to_relative(
            *estimators[0].landmark_position(landmark_id)
        )
        observations[landmark_id] = Observation(landmark_id, range_ + 0.02, bearing + 0.005)

    for slam, order in zip(estimators, (["a", "b"], ["b", "a"])):
        for landmark_id in order:
            assert slam.update(observations[landmark_id]) is UpdateOutcome.CORRECTED

    np.testing.assert_allclose(estimators[0].state, estimators[1].state, atol=1e-2)
    np.testing.assert_allclose(estimators[0].covariance, estimators[1].covariance, atol=1e-3)



def test_invariants_hold_over_long_sequence(config):
    rng = np.random.default_rng(3)
    slam = ExtendedKalmanFilterSLAM(config)
    landmarks = {i: rng.uniform(-10.0, 10.0, size=2) for i in range(8)}

    for _ in range(200):
        slam.predict(rng.uniform(0.0, 2.0), rng.uniform(-3.0, 3.0), rng.uniform(0.0, 0.2))
        theta = slam.state[2]
        assert -np.pi < theta <= np.pi

        pose = slam.robot_pose
        for landmark_id in rng.permutation(list(landmarks)):
            x, y = landmarks[landmark_id]
            range_, bearing = np.hypot(x - pose[0], y - pose[1]), np.arctan2(y - pose[1], x - pose[0]) - pose[2]
            slam.observe(
                int(landmark_id),
                max(range_ + rng.normal(0.0, 0.1), 0.0),
                bearing + rng.normal(0.0, 0.05),
            )
            assert -np.pi < slam.state[2] <= np.pi

        checks = check_covariance(slam.covariance, tol=1e-4)
        assert checks["symmetric"]
        assert checks["min_eigenvalue"] >= -1e-6
        assert slam.covariance.shape == (slam.state.size, slam.state.size)

    offsets = list(slam.landmark_index.values())
    assert offsets == list(range(3, slam.state.size, 2))


def test_buffer_growth_preserves_estimate(config):
    small = ExtendedKalmanFilterSLAM(config, initial_capacity=3)
    large = ExtendedKalmanFilterSLAM(config, initial_capacity=100)
    for slam in (small, large):
        for i in range(12):
            slam.predict(1.0, 0.5, 0.1)
            slam.observe(i, 2.0 + 0.1 * i, 0.2 * i)
            slam.observe(i // 2, 2.0 + 0.1 * i, 0.2 * i)

    np.testing.assert_allclose(small.state, large.state, rtol=1e-9, atol=1e-12)
    np.testing.assert_allclose(small.covariance, large.covariance, rtol=1e-9, atol=1e-12)


def test_broken_registry_is_fatal(slam):
    slam.observe("a", 2.0, 0.0)
    slam._landmark_index["ghost"] = 99

    with pytest.raises(RuntimeError):
        slam.predict(1.0, 0.0, 0.1)


def test_ellipses(slam):
    slam.predict(1.0, 0.0, 1.0)
    slam.observe("a", 5.0, 0.0)

    width, height, _ = slam.landmark_ellipse("a")
    assert width >= height > 0
    robot_width, robot_height, _ = slam.robot_ellipse()
    assert robot_width >= robot_height > 0

    with pytest.raises(KeyError):
        slam.landmark_ellipse("unknown")


def test_build_dataframes(config):
    slam = ExtendedKalmanFilterSLAM(config, record_history=True)
    for _ in range(4):
        slam.predict(1.0, 0.0, 0.5)
    slam.observe("a", 3.0, 0.0)
    slam.build_dataframes()

    assert list(slam.robot_states.columns) == ["x", "y", "theta"]
    assert len(slam.robot_states) == 5
    assert slam.robot_states["x"].iloc[-1] == pytest.approx(2.0)
    assert list(slam.landmarks.index) == ["a"]
    assert slam.landmarks.loc["a", "x"] == pytest.approx(5.0)
    assert slam.landmarks.loc["a", "sigma_x"] > 0


def test_history_records_corrected_pose(config):
    slam = ExtendedKalmanFilterSLAM(config, record_history=True)
    slam.observe("a", 4.0, 0.5)
    slam.predict(1.0, 0.1, 1.0)
    predicted = slam.robot_pose
    assert slam.observe("a", 3.5, 0.6) is UpdateOutcome.CORRECTED
    slam.build_dataframes()

    assert len(slam.robot_states) == 2
    assert not np.allclose(slam.robot_pose, predicted)
    np.testing.assert_allclose(
        slam.robot_states.iloc[-1][["x", "y", "theta"]].to_numpy(), slam.robot_pose
    )



def test_history_disabled_by_default(slam):
    slam.predict(1.0, 0.0, 1.0)
    slam.build_dataframes()
    assert slam.robot_states.empty
