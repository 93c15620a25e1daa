"""Test mathematical concepts about KF."""

import pytest
import torch

from kinematic_kf import GaussianState, KalmanFilter, NumericalError


def _spd_matrix(dim: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(*batch, dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 1e-2 * torch.eye(dim, dtype=torch.float64)


def _random_filter(state_dim: int, measure_dim: int) -> KalmanFilter:
    return KalmanFilter(
        torch.randn(state_dim, state_dim, dtype=torch.float64),
        torch.randn(measure_dim, state_dim, dtype=torch.float64),
        _spd_matrix(state_dim),
        _spd_matrix(measure_dim),
    )


def _random_state(state_dim: int) -> GaussianState:
    return GaussianState(torch.randn(state_dim, 1, dtype=torch.float64), _spd_matrix(state_dim))


def test_predict_increase_uncertainty():
    state_dim, measure_dim = 3, 1
    kalman_filter = _random_filter(state_dim, measure_dim)
    kalman_filter.process_matrix = torch.eye(state_dim, dtype=torch.float64)  # Only the noise is added
    state = _random_state(state_dim)

    predicted = kalman_filter.predict(state)

    assert torch.linalg.det(predicted.covariance) > torch.linalg.det(state.covariance)

    predicted_2 = kalman_filter.predict(predicted)

    assert torch.linalg.det(predicted_2.covariance) > torch.linalg.det(predicted.covariance)

    projected = kalman_filter.project(predicted)
    projected_2 = kalman_filter.project(predicted_2)

    assert projected_2.covariance.item() > projected.covariance.item()


def test_predict_matches_manual():
    state_dim, measure_dim = 4, 2
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)

    predicted = kalman_filter.predict(state)

    F, Q = kalman_filter.process_matrix, kalman_filter.process_noise  # noqa: N806
    assert torch.allclose(predicted.mean, F @ state.mean)
    assert torch.allclose(predicted.covariance, F @ state.covariance @ F.T + Q)


def test_update_reduce_uncertainty():
    state_dim, measure_dim = 2, 1
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)
    measure = torch.randn(measure_dim, 1, dtype=torch.float64)

    updated = kalman_filter.update(state, measure)

    assert torch.linalg.det(updated.covariance) < torch.linalg.det(state.covariance)

    updated_2 = kalman_filter.update(updated, measure)

    assert torch.linalg.det(updated_2.covariance) < torch.linalg.det(updated.covariance)

    projected = kalman_filter.project(updated)
    projected_2 = kalman_filter.project(updated_2)

    assert projected_2.covariance.item() < projected.covariance.item()


def test_update_matches_manual():
    state_dim, measure_dim = 3, 2
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)
    measure = torch.randn(measure_dim, 1, dtype=torch.float64)

    updated = kalman_filter.update(state, measure)

    H, R, P = kalman_filter.measurement_matrix, kalman_filter.measurement_noise, state.covariance  # noqa: N806
    gain = P @ H.T @ torch.linalg.inv(H @ P @ H.T + R)
    assert torch.allclose(updated.mean, state.mean + gain @ (measure - H @ state.mean))
    assert torch.allclose(updated.covariance, (torch.eye(state_dim, dtype=torch.float64) - gain @ H) @ P)


def test_update_is_order_independent():
    state_dim, measure_dim = 4, 2
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)
    measure = torch.randn(measure_dim, 1, dtype=torch.float64)
    measure_2 = torch.randn(measure_dim, 1, dtype=torch.float64)

    updated = kalman_filter.update(kalman_filter.update(state, measure), measure_2)
    updated_2 = kalman_filter.update(kalman_filter.update(state, measure_2), measure)

    assert torch.allclose(updated.mean, updated_2.mean)
    assert torch.allclose(updated.covariance, updated_2.covariance)


def test_several_predict_can_be_reduced_to_one():
    state_dim, measure_dim = 3, 2
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)

    F, Q = kalman_filter.process_matrix, kalman_filter.process_noise  # noqa: N806
    H, R = kalman_filter.measurement_matrix, kalman_filter.measurement_noise  # noqa: N806
    reduced_filter = KalmanFilter(F @ F, H, F @ Q @ F.mT + Q, R)

    predicted = kalman_filter.predict(kalman_filter.predict(state))
    predicted_2 = reduced_filter.predict(state)

    assert torch.allclose(predicted.mean, predicted_2.mean)
    assert torch.allclose(predicted.covariance, predicted_2.covariance)


def test_filter_mean_convergence_for_converged_measure():
    state_dim, measure_dim = 6, 2
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)

    # Always the same measure, and process is identity. It should converge
    measure = torch.randn(measure_dim, 1, dtype=torch.float64)
    kalman_filter.process_matrix = torch.eye(state_dim, dtype=torch.float64)

    for _ in range(100):
        state = kalman_filter.predict(state)
        state = kalman_filter.update(state, measure)

    assert torch.allclose(kalman_filter.project(state).mean, measure, atol=1e-6)


def test_joseph_is_equivalent():
    state_dim, measure_dim = 3, 3
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)
    measure = torch.randn(measure_dim, 1, dtype=torch.float64)

    updated = kalman_filter.update(state, measure)
    kalman_filter.joseph_update = True
    updated_joseph = kalman_filter.update(state, measure)

    assert torch.allclose(updated.mean, updated_joseph.mean)
    assert torch.allclose(updated.covariance, updated_joseph.covariance)


def test_precision_is_equivalent_to_cholesky():
    state_dim, measure_dim = 4, 3
    kalman_filter = _random_filter(state_dim, measure_dim)
    state = _random_state(state_dim)
    measure = torch.randn(measure_dim, 1, dtype=torch.float64)

    updated = kalman_filter.update(state, measure)
    # If precision is provided in the projection, it is used instead of a cholesky solve
    projection = kalman_filter.project(state, precompute_precision=True)
    updated_precision = kalman_filter.update(state, measure, projection=projection)

    assert torch.allclose(updated.mean, updated_precision.mean)
    assert torch.allclose(updated.covariance, updated_precision.covariance)


def test_singular_innovation_raises():
    state_dim, measure_dim = 2, 1
    kalman_filter = _random_filter(state_dim, measure_dim)
    kalman_filter.measurement_noise = torch.zeros(measure_dim, measure_dim, dtype=torch.float64)
    # Nothing is uncertain: S = 0
    zero = torch.zeros(state_dim, state_dim, dtype=torch.float64)
    state = GaussianState(zero[:, :1], zero)

    with pytest.raises(NumericalError):
        kalman_filter.update(state, torch.ones(measure_dim, 1, dtype=torch.float64))
