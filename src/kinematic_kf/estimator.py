"""Stateful Kalman estimator for stacked kinematic signals.

Example:
```python
    estimator = KalmanEstimator(StateModel.CONST_VELOCITY_MEASURE_POS)
    estimator.initialize(4, process_noise_std=0.1, measurement_noise_std=0.5, sampling_period=0.04)

    for measure in measures:  # Shape: (4,)
        state = estimator.filter(measure)
        state.mean  # Shape: (8, 1): [p0, v0, p1, v1, p2, v2, p3, v3]
```
"""

from __future__ import annotations

import logging

import torch

from .errors import ConfigurationError, UsageError
from .kalman_filter import GaussianState, KalmanFilter
from .models import FilterConfiguration, StateModel
from .system import SystemMatrices, build_system

logger = logging.getLogger(__name__)

# Default prior variance of each state component: large to reflect the prior ignorance.
DEFAULT_INITIAL_VARIANCE = 1e4


class KalmanEstimator:
    """Kalman filter estimating the kinematic state of ``channel_count`` independent signals.

    The estimator is configured for one of the :class:`StateModel` (see :mod:`kinematic_kf.system`
    for the models definition). It owns the system matrices and the current state estimate, which
    is mutated by each call to :meth:`filter` (predict then update).

    The state of each channel starts at zero, with a large diagonal covariance unless an initial
    covariance is given (see :func:`~kinematic_kf.system.informed_initial_covariance`).

    Measures may contain NaN components (e.g. a lost feature): these components are not used in
    the update, the corresponding channels are only predicted.

    An estimator is not thread-safe: calls to a given instance must be serialized by the caller.
    Use one estimator per control loop.

    Attributes:
        iteration (int): Number of updates since the last (re)configuration.
    """

    def __init__(self, model: StateModel = StateModel.UNKNOWN, *, joseph_update=False) -> None:
        self._model = StateModel.UNKNOWN
        self._joseph_update = joseph_update
        self._config: FilterConfiguration | None = None
        self._system: SystemMatrices | None = None
        self._kalman_filter: KalmanFilter | None = None
        self._initial_covariance: torch.Tensor | None = None
        self._state: GaussianState | None = None
        self._prior: GaussianState | None = None
        self._projection: GaussianState | None = None
        self.iteration = 0

        self.select_model(model)

    # Model catalog

    def select_model(self, model: StateModel) -> None:
        """Set the state model and the state/measure sizes of a channel.

        It does not rebuild the system: call :meth:`configure` (or :meth:`initialize`) afterwards.
        Until then, measures are rejected if the model differs from the configured one.

        Args:
            model (StateModel): The new state model.

        Raises:
            ConfigurationError: If ``model`` is not a StateModel.
        """
        if not isinstance(model, StateModel):
            raise ConfigurationError(f"Invalid state model: {model!r}")

        self._model = model
        logger.debug("Selected state model %s (state size: %d, measure size: %d)", model.name, *self.sizes)

    @property
    def state_model(self) -> StateModel:
        """Currently selected state model."""
        return self._model

    @property
    def sizes(self) -> tuple[int, int]:
        """State and measure sizes of a single channel."""
        return self._model.state_size, self._model.measure_size

    @property
    def state_size(self) -> int:
        """State size of a single channel."""
        return self._model.state_size

    @property
    def measure_size(self) -> int:
        """Measure size of a single channel."""
        return self._model.measure_size

    @property
    def channel_count(self) -> int:
        """Number of filtered channels (0 if not configured)."""
        return self._config.channel_count if self._config is not None else 0

    @property
    def stacked_state_size(self) -> int:
        """Dimension of the full state vector."""
        return self.channel_count * self.state_size

    @property
    def stacked_measure_size(self) -> int:
        """Dimension of the full measure vector."""
        return self.channel_count * self.measure_size

    # Configuration

    @property
    def is_configured(self) -> bool:
        """Whether the estimator can filter measures."""
        return self._system is not None and self._model is not StateModel.UNKNOWN and self._system.model is self._model

    @property
    def configuration(self) -> FilterConfiguration | None:
        """Last successful configuration."""
        return self._config

    @property
    def system(self) -> SystemMatrices | None:
        """System matrices built by the last successful configuration."""
        return self._system

    @property
    def joseph_update(self) -> bool:
        """Whether the covariance is updated with the Joseph form."""
        return self._joseph_update

    @joseph_update.setter
    def joseph_update(self, value: bool) -> None:
        self._joseph_update = value
        if self._kalman_filter is not None:
            self._kalman_filter.joseph_update = value

    def configure(
        self, config: FilterConfiguration, initial_covariance: torch.Tensor | float | None = None
    ) -> GaussianState:
        """Build the system for the given configuration and reset the state.

        On failure, the estimator keeps its previous configuration and state.

        Args:
            config (FilterConfiguration): The new configuration. Its model becomes the selected model.
            initial_covariance (torch.Tensor | float | None): Prior covariance of the state.
                A float is used as the variance of every state component. If None,
                ``DEFAULT_INITIAL_VARIANCE`` is used.
                Shape: ``(stacked_state_size, stacked_state_size)`` (if a tensor)
                Default: None

        Returns:
            GaussianState: The initial state (zero mean).

        Raises:
            ConfigurationError: If the configuration or the initial covariance is invalid.
        """
        system = build_system(config)
        covariance = _initial_covariance(initial_covariance, system.state_dim, config.dtype)

        self._model = config.model
        self._config = config
        self._system = system
        self._kalman_filter = KalmanFilter.from_system(system, joseph_update=self._joseph_update)
        self._initial_covariance = covariance

        logger.debug(
            "Configured %s estimator: %d channel(s), state dim %d, measure dim %d",
            config.model.name,
            config.channel_count,
            system.state_dim,
            system.measure_dim,
        )

        return self.reset()

    def initialize(
        self,
        channel_count: int,
        process_noise_std,
        measurement_noise_std,
        *,
        correlation=0.0,
        sampling_period=1.0,
        initial_covariance: torch.Tensor | float | None = None,
        **kwargs,
    ) -> GaussianState:
        """Configure the estimator for the selected state model.

        Shortcut for ``configure(FilterConfiguration(self.state_model, ...))``.

        Args:
            channel_count (int): Number of independent signals.
            process_noise_std (float | Sequence[float] | torch.Tensor): Process noise std per channel.
            measurement_noise_std (float | Sequence[float] | torch.Tensor): Measurement noise std per channel.
            correlation (float): AR(1) correlation of colored-noise models.
                Default: 0.0
            sampling_period (float): Time between two measures.
                Default: 1.0
            initial_covariance (torch.Tensor | float | None): See :meth:`configure`.
            **kwargs: Additional :class:`FilterConfiguration` fields.

        Returns:
            GaussianState: The initial state (zero mean).

        Raises:
            ConfigurationError: If the selected model is UNKNOWN or the parameters are invalid.
        """
        config = FilterConfiguration(
            self._model,
            channel_count,
            sampling_period,
            correlation,
            process_noise_std,
            measurement_noise_std,
            **kwargs,
        )
        return self.configure(config, initial_covariance)

    def reset(self, initial_covariance: torch.Tensor | float | None = None) -> GaussianState:
        """Reset the state to zero, keeping the system matrices.

        Args:
            initial_covariance (torch.Tensor | float | None): New prior covariance.
                If None, the one given at configuration is re-used.
                Default: None

        Returns:
            GaussianState: The initial state.

        Raises:
            UsageError: If the estimator has never been configured.
            ConfigurationError: If the initial covariance is invalid.
        """
        if self._system is None or self._initial_covariance is None:
            raise UsageError("The estimator has to be configured before being reset.")

        if initial_covariance is not None:
            self._initial_covariance = _initial_covariance(initial_covariance, self._system.state_dim, self.dtype)

        self._state = GaussianState(
            torch.zeros(self._system.state_dim, 1, dtype=self.dtype, device=self.device),
            self._initial_covariance.clone(),
        )
        self._prior = None
        self._projection = None
        self.iteration = 0

        return self._state

    # Estimation

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the estimation (float64 by default)."""
        return self._system.process_matrix.dtype if self._system is not None else torch.float64

    @property
    def device(self) -> torch.device:
        """Device of the estimation."""
        return self._system.process_matrix.device if self._system is not None else torch.device("cpu")

    @property
    def state(self) -> GaussianState:
        """Current state estimate (posterior after the last update).

        Raises:
            UsageError: If the estimator has never been configured.
        """
        if self._state is None:
            raise UsageError("The estimator is not configured.")
        return self._state

    @property
    def mean(self) -> torch.Tensor:
        """Current state estimate x. Shape: ``(stacked_state_size, 1)``"""
        return self.state.mean

    @property
    def covariance(self) -> torch.Tensor:
        """Covariance P of the current estimate. Shape: ``(stacked_state_size, stacked_state_size)``"""
        return self.state.covariance

    @property
    def prior(self) -> GaussianState | None:
        """Predicted state of the last prediction (None before the first one)."""
        return self._prior

    @property
    def projection(self) -> GaussianState | None:
        """Expected distribution N(H x, S) of the last used measure.

        Useful to gate measures (e.g. ``projection.mahalanobis(z)``). When some measure components
        were missing, it only covers the available ones. None before the first update.
        """
        return self._projection

    def predict(self) -> GaussianState:
        """Predict the state on the next sampling time.

            x <- F x
            P <- F P Fᵀ + Q

        Returns:
            GaussianState: The predicted state, which becomes the current state.

        Raises:
            UsageError: If the estimator is not configured.
        """
        kalman_filter = self._check_configured()

        self._prior = kalman_filter.predict(self.state)
        self._state = self._prior
        return self._state

    def update(self, measure) -> GaussianState:
        """Update the current state with a measure, without any prediction.

        Args:
            measure (torch.Tensor | Sequence[float]): Measure of every channel. NaN components are ignored.
                Shape: ``(stacked_measure_size,)`` or ``(stacked_measure_size, 1)``

        Returns:
            GaussianState: The updated state.

        Raises:
            UsageError: If the estimator is not configured or the measure does not have the right size.
            NumericalError: If the innovation covariance cannot be factorized.
        """
        kalman_filter = self._check_configured()
        measure = self._check_measure(measure)

        self._state, self._projection = self._update(kalman_filter, self.state, measure)
        self.iteration += 1
        return self._state

    def filter(self, measure) -> GaussianState:
        """Run a full recursion (predict then update) with a new measure.

        The state is only modified if the whole recursion succeeds.

        Args:
            measure (torch.Tensor | Sequence[float]): Measure of every channel. NaN components are ignored.
                Shape: ``(stacked_measure_size,)`` or ``(stacked_measure_size, 1)``

        Returns:
            GaussianState: The updated state (also available through :attr:`state`).

        Raises:
            UsageError: If the estimator is not configured or the measure does not have the right size.
            NumericalError: If the innovation covariance cannot be factorized.
        """
        kalman_filter = self._check_configured()
        measure = self._check_measure(measure)

        prior = kalman_filter.predict(self.state)
        state, projection = self._update(kalman_filter, prior, measure)

        self._prior = prior
        self._state = state
        self._projection = projection
        self.iteration += 1

        return state

    def filter_sequence(self, measures, return_all=False) -> GaussianState:
        """Filter a sequence of measures.

        The estimator state is updated as with successive calls to :meth:`filter`.

        Args:
            measures (torch.Tensor | Sequence): Measures over time.
                Shape: ``(T, stacked_measure_size)`` or ``(T, stacked_measure_size, 1)``
            return_all (bool): If True, return the posterior state at every time step,
                with a leading time dimension. Otherwise only the last one.
                Default: False

        Returns:
            GaussianState: Either the last posterior state, or all the posterior states.
                Shape (mean): ``([T, ]stacked_state_size, 1)``
                Shape (covariance): ``([T, ]stacked_state_size, stacked_state_size)``

        Raises:
            UsageError: If the estimator is not configured or if a measure does not have the right size.
            NumericalError: If the innovation covariance cannot be factorized.
        """
        self._check_configured()
        measures = torch.as_tensor(measures, dtype=self.dtype, device=self.device)
        if measures.ndim < 1 or measures.shape[0] == 0:
            raise UsageError("Expected a non-empty sequence of measures.")

        dim = self.stacked_state_size
        saver = GaussianState(
            torch.empty((measures.shape[0], dim, 1), dtype=self.dtype, device=self.device),
            torch.empty((measures.shape[0], dim, dim), dtype=self.dtype, device=self.device),
        )

        for t, measure in enumerate(measures):
            state = self.filter(measure)
            saver.mean[t] = state.mean
            saver.covariance[t] = state.covariance

        if return_all:
            return saver

        return self.state

    def _check_configured(self) -> KalmanFilter:
        if self._model is StateModel.UNKNOWN:
            raise UsageError("The state model is UNKNOWN. Select a model and configure the estimator.")
        if self._kalman_filter is None or not self.is_configured:
            raise UsageError(f"The estimator is not configured for the selected model ({self._model.name}).")
        return self._kalman_filter

    def _check_measure(self, measure) -> torch.Tensor:
        try:
            measure = torch.as_tensor(measure, dtype=self.dtype, device=self.device)
        except (TypeError, ValueError, RuntimeError) as exc:
            raise UsageError(f"Invalid measure: {measure!r}") from exc

        if measure.ndim == 2 and measure.shape[1] == 1:
            measure = measure[:, 0]
        elif measure.ndim == 0:
            measure = measure.reshape(1)

        if measure.ndim != 1 or measure.shape[0] != self.stacked_measure_size:
            raise UsageError(
                f"Expected a measure of size {self.stacked_measure_size}. Found shape: {tuple(measure.shape)}"
            )
        if torch.isinf(measure).any():
            raise UsageError("Measures should be finite (or NaN when missing).")

        return measure[:, None]

    def _update(
        self, kalman_filter: KalmanFilter, state: GaussianState, measure: torch.Tensor
    ) -> tuple[GaussianState, GaussianState | None]:
        valid = ~torch.isnan(measure[:, 0])
        if not valid.any():
            logger.debug("No measure available at iteration %d: the state is only predicted", self.iteration)
            return state, None

        measurement_matrix = kalman_filter.measurement_matrix
        measurement_noise = kalman_filter.measurement_noise
        if not valid.all():
            logger.debug(
                "Ignoring %d missing measure component(s) at iteration %d", int((~valid).sum()), self.iteration
            )
            measure = measure[valid]
            measurement_matrix = measurement_matrix[valid]
            measurement_noise = measurement_noise[valid][:, valid]

        projection = kalman_filter.project(
            state, measurement_matrix=measurement_matrix, measurement_noise=measurement_noise
        )
        state = kalman_filter.update(
            state,
            measure,
            projection=projection,
            measurement_matrix=measurement_matrix,
            measurement_noise=measurement_noise,
        )
        return state, projection

    def __repr__(self) -> str:
        return (
            f"KalmanEstimator(model={self._model.name}, channels={self.channel_count}, "
            f"state_dim={self.stacked_state_size}, measure_dim={self.stacked_measure_size}, "
            f"iteration={self.iteration})"
        )


def _initial_covariance(value: torch.Tensor | float | None, dim: int, dtype: torch.dtype) -> torch.Tensor:
    if value is None:
        value = DEFAULT_INITIAL_VARIANCE

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if not value > 0 or value == float("inf"):
            raise ConfigurationError(f"The initial variance should be finite and > 0. Found: {value}")
        return value * torch.eye(dim, dtype=dtype)

    covariance = torch.as_tensor(value, dtype=dtype).clone()
    if covariance.shape != (dim, dim):
        raise ConfigurationError(
            f"Expected an initial covariance of shape {(dim, dim)}. Found: {tuple(covariance.shape)}"
        )
    if not torch.isfinite(covariance).all() or not torch.allclose(covariance, covariance.mT):
        raise ConfigurationError("The initial covariance should be finite and symmetric.")
    if torch.linalg.eigvalsh(covariance).min() < -1e-8 * max(covariance.abs().max().item(), 1.0):
        raise ConfigurationError("The initial covariance should be positive semi-definite.")

    return covariance
