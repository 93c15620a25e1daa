"""Linear Kalman filter primitives on torch tensors.

The estimator (:class:`~kinematic_kf.KalmanEstimator`) owns the current state. This module only
holds the stateless recursion steps, applied to a :class:`GaussianState` and returning a new one.

Vectors are column vectors: a state of dimension n has a mean of shape ``(..., n, 1)`` and a
covariance of shape ``(..., n, n)``. Leading dimensions are batch dimensions (e.g. the time
dimension of the states returned by ``filter_sequence``).
"""

from __future__ import annotations

import dataclasses
import math
from typing import overload

import torch
import torch.linalg

from .errors import NumericalError
from .system import SystemMatrices


@dataclasses.dataclass
class GaussianState:
    """Multivariate normal distribution N(mean, covariance).

    Used both for the kinematic state estimate and for its projection in the measure space
    (expected measure and innovation covariance).

    Attributes:
        mean (torch.Tensor): Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance (torch.Tensor): Covariance of the distribution.
            Shape: ``(..., dim, dim)``
        precision (torch.Tensor | None): Inverse of the covariance, if already known.
            It is computed and cached by :meth:`mahalanobis_squared` otherwise.
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    @property
    def dim(self) -> int:
        """Dimension of the random variable."""
        return self.mean.shape[-2]

    def clone(self) -> GaussianState:
        """Deep copy of the distribution."""
        return self._map(torch.Tensor.clone)

    def __getitem__(self, idx) -> GaussianState:
        """Select along the leading (batch) dimensions, e.g. ``states[t]``."""
        return self._map(lambda tensor: tensor[idx])

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Send the distribution to another dtype or device.

        Args:
            fmt (torch.dtype | torch.device): Target dtype or device.

        Returns:
            GaussianState: A converted copy (tensors are shared if already in the right format).
        """
        return self._map(lambda tensor: tensor.to(fmt))

    def _map(self, function) -> GaussianState:
        return GaussianState(
            function(self.mean),
            function(self.covariance),
            function(self.precision) if self.precision is not None else None,
        )

    def mahalanobis_squared(self, value: torch.Tensor) -> torch.Tensor:
        """Squared Mahalanobis distance of a value to the distribution.

            d² = (value - mean)ᵀ covariance⁻¹ (value - mean)

        Args:
            value (torch.Tensor): Column vector(s), broadcast against the batch dimensions.
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared distances.
                Shape: ``(...)``
        """
        if self.precision is None:
            self.precision = torch.linalg.inv(self.covariance)

        error = value - self.mean
        return (error.mT @ self.precision @ error)[..., 0, 0]

    def mahalanobis(self, value: torch.Tensor) -> torch.Tensor:
        """Mahalanobis distance of a value to the distribution. Typically used to gate measures.

        Args:
            value (torch.Tensor): Column vector(s).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Distances.
                Shape: ``(...)``
        """
        return self.mahalanobis_squared(value).sqrt()

    def log_likelihood(self, value: torch.Tensor) -> torch.Tensor:
        """Log density of the distribution at the given value.

            log p(value) = -(dim log(2π) + log|covariance| + d²) / 2

        Args:
            value (torch.Tensor): Column vector(s).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log densities.
                Shape: ``(...)``
        """
        distance_sq = self.mahalanobis_squared(value)
        return -0.5 * (self.dim * math.log(2 * math.pi) + torch.logdet(self.covariance) + distance_sq)


class KalmanFilter:
    """Predict/update steps of a linear Gaussian system.

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = H x_k + v_k,       v_k ~ N(0, R)

    For a stacked estimator, x holds the kinematic state of every channel and z the measure of
    every channel (see :mod:`kinematic_kf.system`). The filter does not store any state.

    Attributes:
        process_matrix (torch.Tensor): Transition matrix F.
            Shape: ``(dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Measurement matrix H.
            Shape: ``(dim_z, dim_x)``
        process_noise (torch.Tensor): Process noise covariance Q.
            Shape: ``(dim_x, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance R.
            Shape: ``(dim_z, dim_z)``
        joseph_update (bool): Update the covariance with the Joseph form
            (I - K H) P (I - K H)ᵀ + K R Kᵀ instead of (I - K H) P. It is slower but keeps the
            covariance symmetric and positive with badly conditioned systems.
            Default: False
    """

    def __init__(
        self,
        process_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        *,
        joseph_update=False,
    ) -> None:
        self.process_matrix = process_matrix
        self.measurement_matrix = measurement_matrix
        self.process_noise = process_noise
        self.measurement_noise = measurement_noise
        self.joseph_update = joseph_update

    @classmethod
    def from_system(cls, system: SystemMatrices, *, joseph_update=False) -> KalmanFilter:
        """Kalman filter running on the given system matrices (not copied)."""
        return cls(
            system.process_matrix,
            system.measurement_matrix,
            system.process_noise,
            system.measurement_noise,
            joseph_update=joseph_update,
        )

    @property
    def state_dim(self) -> int:
        """Dimension of the (stacked) state."""
        return self.process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the (stacked) measure."""
        return self.measurement_matrix.shape[-2]

    @property
    def device(self) -> torch.device:
        """Device of the system matrices."""
        return self.process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the system matrices."""
        return self.process_matrix.dtype

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Copy of the filter with its matrices in another dtype or on another device."""
        matrices = (self.process_matrix, self.measurement_matrix, self.process_noise, self.measurement_noise)
        return KalmanFilter(*(matrix.to(fmt) for matrix in matrices), joseph_update=self.joseph_update)

    def predict(self, state: GaussianState) -> GaussianState:
        """Propagate a state estimate over one sampling period.

            x <- F x
            P <- F P Fᵀ + Q

        Args:
            state (GaussianState): Posterior estimate at time k-1.
                Shape (mean): ``(..., dim_x, 1)``

        Returns:
            GaussianState: Prior estimate at time k.
        """
        transition = self.process_matrix
        return GaussianState(
            transition @ state.mean,
            transition @ state.covariance @ transition.mT + self.process_noise,
        )

    def project(
        self,
        state: GaussianState,
        *,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
        precompute_precision=False,
    ) -> GaussianState:
        """Distribution of the next measure given a state estimate.

            z ~ N(H x, S),   S = H P Hᵀ + R

        Args:
            state (GaussianState): State estimate (usually a prior).
            measurement_matrix (torch.Tensor | None): Replaces H, e.g. to drop missing measures.
                Shape: ``(dim_z', dim_x)``
            measurement_noise (torch.Tensor | None): Replaces R.
                Shape: ``(dim_z', dim_z')``
            precompute_precision (bool): Also compute S⁻¹. :meth:`update` then uses it instead of
                a Cholesky solve.
                Default: False

        Returns:
            GaussianState: Expected measure and innovation covariance S.
                Shape (mean): ``(..., dim_z, 1)``
        """
        measurement_matrix, measurement_noise = self._measurement_model(measurement_matrix, measurement_noise)

        innovation_covariance = measurement_matrix @ state.covariance @ measurement_matrix.mT + measurement_noise
        return GaussianState(
            measurement_matrix @ state.mean,
            innovation_covariance,
            torch.linalg.inv(innovation_covariance) if precompute_precision else None,
        )

    def update(
        self,
        state: GaussianState,
        measure: torch.Tensor,
        *,
        projection: GaussianState | None = None,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Correct a state estimate with a measure.

            y = z - H x
            K = P Hᵀ S⁻¹
            x <- x + K y
            P <- (I - K H) P        (or the Joseph form)

        Args:
            state (GaussianState): State estimate (usually the prior from :meth:`predict`).
            measure (torch.Tensor): Measure z (column vector, without missing values).
                Shape: ``(..., dim_z, 1)``
            projection (GaussianState | None): Output of :meth:`project` for this state and
                measurement model, if already computed.
            measurement_matrix (torch.Tensor | None): Replaces H.
            measurement_noise (torch.Tensor | None): Replaces R.

        Returns:
            GaussianState: Posterior estimate.

        Raises:
            NumericalError: If S is not positive definite, or if the result is not finite.
        """
        measurement_matrix, measurement_noise = self._measurement_model(measurement_matrix, measurement_noise)
        if projection is None:
            projection = self.project(state, measurement_matrix=measurement_matrix, measurement_noise=measurement_noise)

        gain = self._gain(state, projection, measurement_matrix)
        mean = state.mean + gain @ (measure - projection.mean)

        if self.joseph_update:
            identity = torch.eye(self.state_dim, dtype=self.dtype, device=self.device)
            factor = identity - gain @ measurement_matrix
            covariance = factor @ state.covariance @ factor.mT + gain @ measurement_noise @ gain.mT
        else:
            covariance = state.covariance - gain @ measurement_matrix @ state.covariance

        if not (torch.isfinite(mean).all() and torch.isfinite(covariance).all()):
            raise NumericalError("The update produced non-finite values.")

        return GaussianState(mean, covariance)

    def _measurement_model(
        self, measurement_matrix: torch.Tensor | None, measurement_noise: torch.Tensor | None
    ) -> tuple[torch.Tensor, torch.Tensor]:
        return (
            self.measurement_matrix if measurement_matrix is None else measurement_matrix,
            self.measurement_noise if measurement_noise is None else measurement_noise,
        )

    @staticmethod
    def _gain(state: GaussianState, projection: GaussianState, measurement_matrix: torch.Tensor) -> torch.Tensor:
        cross_covariance = state.covariance @ measurement_matrix.mT  # P Hᵀ
        if projection.precision is not None:
            return cross_covariance @ projection.precision

        # K Sᵀ = P Hᵀ, with S symmetric: solve S Kᵀ = H Pᵀ
        cholesky, info = torch.linalg.cholesky_ex(projection.covariance)
        if info.any():
            raise NumericalError(
                "The innovation covariance is not positive definite. "
                "Check that the measurement noise is not zero (or reconfigure the filter)."
            )
        return torch.cholesky_solve(cross_covariance.mT, cholesky).mT
