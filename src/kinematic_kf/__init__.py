"""kinematic-kf: Kalman filtering of stacked kinematic signals in PyTorch.

kinematic-kf estimates the kinematic state (position, velocity, acceleration, colored noise) of
an arbitrary number of independent scalar signals, e.g. one per tracked visual feature or per degree
of freedom of a robot, from noisy measures received at a fixed sampling period.

Every channel follows the same predefined state model (see :class:`~kinematic_kf.StateModel`):

- constant velocity, measuring the position,
- constant velocity with a colored (AR(1)) acceleration noise, measuring the velocity,
- constant acceleration with a colored (AR(1)) noise, measuring the velocity.

The channels are stacked into a single block-diagonal linear system, filtered with the classic
predict/update recursion of the (linear, Gaussian) Kalman filter.

Getting started
---------------
The core API consists of:
- :class:`~kinematic_kf.FilterConfiguration` describing the model and its noises.
- :class:`~kinematic_kf.KalmanEstimator` with :meth:`~kinematic_kf.KalmanEstimator.configure` and
  :meth:`~kinematic_kf.KalmanEstimator.filter`.
- :func:`~kinematic_kf.build_system` building the ``F, H, Q, R`` matrices of a configuration.

Numerical notes
---------------
Estimation runs in ``float64`` by default and the Kalman gain is computed with a cholesky solve.
Enable ``joseph_update=True`` on :class:`~kinematic_kf.KalmanEstimator` for a covariance update that
better preserves symmetry and positiveness.

Notes on shapes
---------------
kinematic-kf uses column vectors: states have shape ``(dim_x, 1)``. Measures can be given as
``(dim_z,)`` or ``(dim_z, 1)``.
"""

from .errors import ConfigurationError, KalmanError, NumericalError, UsageError
from .estimator import DEFAULT_INITIAL_VARIANCE, KalmanEstimator
from .kalman_filter import GaussianState, KalmanFilter
from .models import FilterConfiguration, StateModel
from .system import (
    SystemMatrices,
    build_const_accel_colored_noise_measure_vel,
    build_const_velocity_colored_noise_measure_vel,
    build_const_velocity_measure_pos,
    build_system,
    informed_initial_covariance,
)

__all__ = [
    "DEFAULT_INITIAL_VARIANCE",
    "ConfigurationError",
    "FilterConfiguration",
    "GaussianState",
    "KalmanError",
    "KalmanEstimator",
    "KalmanFilter",
    "NumericalError",
    "StateModel",
    "SystemMatrices",
    "UsageError",
    "build_const_accel_colored_noise_measure_vel",
    "build_const_velocity_colored_noise_measure_vel",
    "build_const_velocity_measure_pos",
    "build_system",
    "informed_initial_covariance",
]
__version__ = "0.1.0"
