"""Catalog of the supported state models and the filter configuration.

A state model fixes, for a single signal channel, which kinematic quantities are estimated
(the state) and which one is measured:

- ``CONST_VELOCITY_MEASURE_POS``: constant velocity with white noise. State ``[p, v]``, measure ``p``.
- ``CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL``: constant velocity disturbed by a colored (AR(1))
  acceleration. State ``[v, c]``, measure ``v``.
- ``CONST_ACCEL_COLORED_NOISE_MEASURE_VEL``: constant acceleration disturbed by a colored (AR(1))
  noise. State ``[v, a, c]``, measure ``v``.
- ``UNKNOWN``: no model. Sizes are 0 and the filter is inert.

Several channels share the same model and are stacked into a single block-diagonal system.
"""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import math
import operator
from collections.abc import Sequence

import torch

from .errors import ConfigurationError


class StateModel(enum.Enum):
    """Kalman state model selector."""

    CONST_VELOCITY_MEASURE_POS = "const_velocity_measure_pos"
    CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL = "const_velocity_colored_noise_measure_vel"
    CONST_ACCEL_COLORED_NOISE_MEASURE_VEL = "const_accel_colored_noise_measure_vel"
    UNKNOWN = "unknown"

    @property
    def state_size(self) -> int:
        """Size of the state vector of a single channel."""
        return _SIZES[self][0]

    @property
    def measure_size(self) -> int:
        """Size of the measure vector of a single channel."""
        return _SIZES[self][1]

    @property
    def is_colored_noise(self) -> bool:
        """Whether the model holds an AR(1) colored noise term (and thus uses the correlation)."""
        return self in (
            StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL,
            StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL,
        )


# (state_size, measure_size) for one channel
_SIZES = {
    StateModel.CONST_VELOCITY_MEASURE_POS: (2, 1),
    StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL: (2, 1),
    StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL: (3, 1),
    StateModel.UNKNOWN: (0, 0),
}


@dataclasses.dataclass(frozen=True)
class FilterConfiguration:
    """Parameters of a stacked kinematic Kalman filter.

    Attributes:
        model (StateModel): State model shared by all the channels.
        channel_count (int): Number of independent signals filtered together.
        sampling_period (float): Time between two measures (dt). Must be > 0.
            Default: 1.0
        correlation (float): Correlation coefficient rho of the AR(1) colored noise.
            Only used by colored-noise models, where it must lie in ]-1, 1[.
            rho = 0 degenerates into a white noise.
            Default: 0.0
        process_noise_std (float | Sequence[float] | torch.Tensor): Process noise standard deviation.
            For colored-noise models, this is the stationary std of the colored term.
            Shape: broadcastable to ``(channel_count,)``
            Default: 1.0
        measurement_noise_std (float | Sequence[float] | torch.Tensor): Measurement noise standard deviation.
            Shape: broadcastable to ``(channel_count,)``
            Default: 1.0
        expected_model (bool): Constant velocity model only. If True, the noise is a zero-mean
            acceleration over each period rather than a random walk of the velocity.
            Default: False
        group_by_derivative (bool): State ordering convention.
            - False: group by channel (e.g. ``p0, v0, p1, v1``). Matrices are block diagonal.
            - True: group by derivative order (e.g. ``p0, p1, v0, v1``).
            Default: False
        dtype (torch.dtype): Dtype of the built matrices.
            Default: torch.float64
    """

    model: StateModel
    channel_count: int = 1
    sampling_period: float = 1.0
    correlation: float = 0.0
    process_noise_std: float | Sequence[float] | torch.Tensor = 1.0
    measurement_noise_std: float | Sequence[float] | torch.Tensor = 1.0
    expected_model: bool = False
    group_by_derivative: bool = False
    dtype: torch.dtype = torch.float64

    def __post_init__(self) -> None:
        # Own a copy of mutable inputs: the configuration must keep describing the built system
        object.__setattr__(self, "process_noise_std", _snapshot(self.process_noise_std))
        object.__setattr__(self, "measurement_noise_std", _snapshot(self.measurement_noise_std))
        if not isinstance(self.channel_count, bool):
            with contextlib.suppress(TypeError):  # Reported by validate
                object.__setattr__(self, "channel_count", operator.index(self.channel_count))

    @property
    def stacked_state_size(self) -> int:
        """Dimension of the full (all channels) state."""
        return self.channel_count * self.model.state_size

    @property
    def stacked_measure_size(self) -> int:
        """Dimension of the full (all channels) measure."""
        return self.channel_count * self.model.measure_size

    def process_std(self) -> torch.Tensor:
        """Process noise std for each channel.

        Returns:
            torch.Tensor: Shape: ``(channel_count,)``
        """
        return _per_channel(self.process_noise_std, self.channel_count, "process_noise_std", self.dtype)

    def measurement_std(self) -> torch.Tensor:
        """Measurement noise std for each channel.

        Returns:
            torch.Tensor: Shape: ``(channel_count,)``
        """
        return _per_channel(self.measurement_noise_std, self.channel_count, "measurement_noise_std", self.dtype)

    def validate(self) -> None:
        """Check that the configuration describes a usable filter.

        Raises:
            ConfigurationError: If the model is unknown, the channel count < 1, the sampling period
                is not strictly positive, a noise std is negative (or cannot be broadcast to the
                channels), or the correlation leads to an unstable colored noise.
        """
        if not isinstance(self.model, StateModel):
            raise ConfigurationError(f"Invalid state model: {self.model!r}")
        if self.model is StateModel.UNKNOWN:
            raise ConfigurationError("Cannot build a filter for the UNKNOWN state model. Select a model first.")
        try:
            if isinstance(self.channel_count, bool):
                raise TypeError("bool is not a channel count")
            channel_count = operator.index(self.channel_count)
        except TypeError as exc:
            raise ConfigurationError(f"channel_count should be an integer >= 1. Found: {self.channel_count!r}") from exc
        if channel_count < 1:
            raise ConfigurationError(f"channel_count should be an integer >= 1. Found: {self.channel_count!r}")

        sampling_period = _real(self.sampling_period, "sampling_period")
        if not math.isfinite(sampling_period) or sampling_period <= 0:
            raise ConfigurationError(f"sampling_period should be > 0. Found: {self.sampling_period}")
        if self.model.is_colored_noise and not abs(_real(self.correlation, "correlation")) < 1:
            raise ConfigurationError(
                f"The colored noise correlation should lie in ]-1, 1[ to be stable. Found: {self.correlation}"
            )

        # Raises on wrong shapes / negative values
        self.process_std()
        self.measurement_std()


def _per_channel(value, channel_count: int, name: str, dtype: torch.dtype) -> torch.Tensor:
    try:
        std = torch.broadcast_to(torch.as_tensor(value, dtype=dtype), (channel_count,))
    except (RuntimeError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} cannot be broadcast to {channel_count} channels: {value!r}") from exc

    if not torch.isfinite(std).all() or (std < 0).any():
        raise ConfigurationError(f"{name} should be finite and non-negative. Found: {std.tolist()}")

    return std


def _real(value, name: str) -> float:
    if isinstance(value, (str, bytes, bool)):
        raise ConfigurationError(f"{name} should be a real number. Found: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} should be a real number. Found: {value!r}") from exc


def _snapshot(value):
    if isinstance(value, torch.Tensor):
        return value.detach().clone()
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return tuple(value)
    if hasattr(value, "__array__"):  # e.g. numpy arrays
        return torch.as_tensor(value).clone()
    return value
