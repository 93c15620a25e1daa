"""Builders of the system matrices (F, H, Q, R) of the supported state models.

Each model is first described for a single channel. Channels are independent: the full
matrices are the block-diagonal concatenation of the per-channel blocks, optionally
reordered by derivative (see :func:`interleave`).

Models (dt is the sampling period, rho the AR(1) correlation, sp/sm the process/measurement std):

**Constant velocity, measuring the position** (state ``[p, v]``)::

    F = | 1  dt |     H = | 1  0 |     R = sm**2
        | 0  1  |

The velocity follows a random walk: v_{k+1} = v_k + w_k, w_k ~ N(0, sp**2), and the noise
is integrated in the position over the period, leading to Q = sp**2 * | dt**2  dt |.
                                                                       |  dt    1 |
With ``expected_model=True``, the acceleration over the period is a zero-mean noise of std sp
and Q = sp**2 * | dt**4 / 4  dt**3 / 2 |.
                | dt**3 / 2    dt**2   |

**Constant velocity with colored noise, measuring the velocity** (state ``[v, c]``)::

    F = | 1   1  |     H = | 1  0 |     Q = | 0          0         |     R = sm**2
        | 0  rho |                          | 0  sp**2 (1 - rho**2) |

**Constant acceleration with colored noise, measuring the velocity** (state ``[v, a, c]``)::

        | 1  dt  0  |
    F = | 0  1   1  |     H = | 1  0  0 |     Q = diag(0, 0, sp**2 (1 - rho**2))     R = sm**2
        | 0  0  rho |

The colored noise c follows c_{k+1} = rho c_k + w_k with Var(w_k) = sp**2 (1 - rho**2), so that its
stationary variance is sp**2.
"""

from __future__ import annotations

import dataclasses
import logging

import torch

from .errors import ConfigurationError
from .models import FilterConfiguration, StateModel

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class SystemMatrices:
    """Matrices of a linear Gaussian system.

    Attributes:
        model (StateModel): State model used to build the matrices.
        process_matrix (torch.Tensor): Process/Transition matrix ``F``.
            Shape: ``(dim_x, dim_x)``
        measurement_matrix (torch.Tensor): Projection/Measurement matrix ``H``.
            Shape: ``(dim_z, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q``.
            Shape: ``(dim_x, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
            Shape: ``(dim_z, dim_z)``
    """

    model: StateModel
    process_matrix: torch.Tensor
    measurement_matrix: torch.Tensor
    process_noise: torch.Tensor
    measurement_noise: torch.Tensor

    @property
    def state_dim(self) -> int:
        """Dimension of the stacked state."""
        return self.process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the stacked measure."""
        return self.measurement_matrix.shape[-2]


def interleave(x: torch.Tensor, size: int) -> torch.Tensor:
    """Interleave tensor along the first dimension.

    Groups of ``size`` consecutive elements are dispatched so that the i-th element of each
    group ends up together. Applied on a channel-major state (``p0, v0, p1, v1, p2, v2``) with
    ``size = 2``, it yields the derivative-major state (``p0, p1, p2, v0, v1, v2``).

    Example:
        >>> interleave(torch.arange(6), 2)
        tensor([0, 2, 4, 1, 3, 5])

    Args:
        x (torch.Tensor): Tensor to interleave.
            Shape: ``(B, ...)``
        size (int): Group size. Must divide ``B``.

    Returns:
        torch.Tensor: Interleaved tensor.
            Shape: ``(B, ...)``
    """
    shape = list(x.shape)
    return x.reshape([-1, size, *shape[1:]]).transpose(0, 1).reshape([-1, *shape[1:]])


def create_const_velocity_process_noise(process_std: float, dt=1.0, expected_model=False) -> torch.Tensor:
    r"""Create the process noise covariance of a single constant velocity channel.

    The noise is obtained by integrating a Gaussian perturbation through the Taylor-expanded dynamics:

    - default: the velocity receives w ~ N(0, process_std**2) at the beginning of the period,
      so the position receives dt * w.
    - expected model: the acceleration is w ~ N(0, process_std**2) during the period,
      so the velocity receives dt * w and the position dt**2 / 2 * w.

    Args:
        process_std (float): Process noise standard deviation.
        dt (float): Sampling period.
            Default: 1.0
        expected_model (bool): Use the zero-mean acceleration model.
            Default: False

    Returns:
        torch.Tensor: Process noise ``Q`` of the channel.
            Shape: ``(2, 2)``
    """
    # How w enters (p, v)
    if expected_model:
        coefficients = torch.tensor([dt**2 / 2, dt], dtype=torch.float64)
    else:
        coefficients = torch.tensor([dt, 1.0], dtype=torch.float64)

    return process_std**2 * coefficients[:, None] @ coefficients[None]


def _const_velocity_block(process_std: float, dt: float, expected_model: bool):
    process_matrix = torch.tensor([[1.0, dt], [0.0, 1.0]], dtype=torch.float64)
    return process_matrix, create_const_velocity_process_noise(process_std, dt, expected_model)


def _colored_velocity_block(process_std: float, rho: float):
    process_matrix = torch.tensor([[1.0, 1.0], [0.0, rho]], dtype=torch.float64)
    process_noise = torch.zeros(2, 2, dtype=torch.float64)
    process_noise[1, 1] = process_std**2 * (1 - rho**2)
    return process_matrix, process_noise


def _colored_acceleration_block(process_std: float, rho: float, dt: float):
    process_matrix = torch.tensor(
        [
            [1.0, dt, 0.0],
            [0.0, 1.0, 1.0],
            [0.0, 0.0, rho],
        ],
        dtype=torch.float64,
    )
    process_noise = torch.zeros(3, 3, dtype=torch.float64)
    process_noise[2, 2] = process_std**2 * (1 - rho**2)
    return process_matrix, process_noise


def _stack(config: FilterConfiguration, blocks: list[tuple[torch.Tensor, torch.Tensor]]) -> SystemMatrices:
    """Stack the per-channel (F, Q) blocks and create H and R.

    Every model measures the first component of each channel state.
    """
    state_size = config.model.state_size
    measurement_std = config.measurement_std()

    process_matrix = torch.block_diag(*(block[0] for block in blocks))
    process_noise = torch.block_diag(*(block[1] for block in blocks))
    measurement_matrix = torch.block_diag(
        *(torch.eye(1, state_size, dtype=torch.float64) for _ in range(config.channel_count))
    )
    measurement_noise = torch.diag(measurement_std.to(torch.float64) ** 2)

    if config.group_by_derivative:
        process_matrix = interleave(interleave(process_matrix, state_size).T, state_size).T
        process_noise = interleave(interleave(process_noise, state_size).T, state_size).T
        measurement_matrix = interleave(measurement_matrix.T, state_size).T

    return SystemMatrices(
        config.model,
        process_matrix.to(config.dtype).contiguous(),
        measurement_matrix.to(config.dtype).contiguous(),
        process_noise.to(config.dtype).contiguous(),
        measurement_noise.to(config.dtype).contiguous(),
    )


def build_const_velocity_measure_pos(
    channel_count: int,
    process_noise_std,
    measurement_noise_std,
    sampling_period: float,
    **kwargs,
) -> SystemMatrices:
    """Build a constant velocity system measuring the positions.

    Args:
        channel_count (int): Number of independent channels.
        process_noise_std (float | Sequence[float] | torch.Tensor): Std of the velocity noise.
            Shape: broadcastable to ``(channel_count,)``
        measurement_noise_std (float | Sequence[float] | torch.Tensor): Std of the position measures.
            Shape: broadcastable to ``(channel_count,)``
        sampling_period (float): Time between two measures.
        **kwargs: Additional :class:`FilterConfiguration` fields (expected_model, group_by_derivative, dtype).

    Returns:
        SystemMatrices: The stacked system.
    """
    return build_system(
        FilterConfiguration(
            StateModel.CONST_VELOCITY_MEASURE_POS,
            channel_count,
            sampling_period,
            process_noise_std=process_noise_std,
            measurement_noise_std=measurement_noise_std,
            **kwargs,
        )
    )


def build_const_velocity_colored_noise_measure_vel(
    channel_count: int,
    process_noise_std,
    measurement_noise_std,
    correlation: float,
    **kwargs,
) -> SystemMatrices:
    """Build a constant velocity system with colored noise, measuring the velocities.

    Args:
        channel_count (int): Number of independent channels.
        process_noise_std (float | Sequence[float] | torch.Tensor): Stationary std of the colored noise.
            Shape: broadcastable to ``(channel_count,)``
        measurement_noise_std (float | Sequence[float] | torch.Tensor): Std of the velocity measures.
            Shape: broadcastable to ``(channel_count,)``
        correlation (float): AR(1) correlation coefficient, in ]-1, 1[.
        **kwargs: Additional :class:`FilterConfiguration` fields (group_by_derivative, dtype).

    Returns:
        SystemMatrices: The stacked system.
    """
    return build_system(
        FilterConfiguration(
            StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL,
            channel_count,
            correlation=correlation,
            process_noise_std=process_noise_std,
            measurement_noise_std=measurement_noise_std,
            **kwargs,
        )
    )


def build_const_accel_colored_noise_measure_vel(
    channel_count: int,
    process_noise_std,
    measurement_noise_std,
    correlation: float,
    sampling_period: float,
    **kwargs,
) -> SystemMatrices:
    """Build a constant acceleration system with colored noise, measuring the velocities.

    Args:
        channel_count (int): Number of independent channels.
        process_noise_std (float | Sequence[float] | torch.Tensor): Stationary std of the colored noise.
            Shape: broadcastable to ``(channel_count,)``
        measurement_noise_std (float | Sequence[float] | torch.Tensor): Std of the velocity measures.
            Shape: broadcastable to ``(channel_count,)``
        correlation (float): AR(1) correlation coefficient, in ]-1, 1[.
        sampling_period (float): Time between two measures.
        **kwargs: Additional :class:`FilterConfiguration` fields (group_by_derivative, dtype).

    Returns:
        SystemMatrices: The stacked system.
    """
    return build_system(
        FilterConfiguration(
            StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL,
            channel_count,
            sampling_period,
            correlation,
            process_noise_std=process_noise_std,
            measurement_noise_std=measurement_noise_std,
            **kwargs,
        )
    )


def build_system(config: FilterConfiguration) -> SystemMatrices:
    """Validate the configuration and build the stacked system of its model.

    Args:
        config (FilterConfiguration): Filter parameters.

    Returns:
        SystemMatrices: F, H, Q, R for all the channels.
            Shapes: ``(n * state_size, n * state_size)`` for F and Q,
            ``(n * measure_size, n * state_size)`` for H and ``(n * measure_size, n * measure_size)`` for R.

    Raises:
        ConfigurationError: If the configuration is invalid (see :meth:`FilterConfiguration.validate`).
    """
    config.validate()

    process_std = config.process_std().tolist()
    dt = float(config.sampling_period)
    rho = float(config.correlation)

    if config.model is StateModel.CONST_VELOCITY_MEASURE_POS:
        blocks = [_const_velocity_block(std, dt, config.expected_model) for std in process_std]
    elif config.model is StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL:
        blocks = [_colored_velocity_block(std, rho) for std in process_std]
    elif config.model is StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL:
        blocks = [_colored_acceleration_block(std, rho, dt) for std in process_std]
    else:  # pragma: no cover  (validate rejects the other values)
        raise ConfigurationError(f"Unsupported state model: {config.model}")

    logger.debug(
        "Built %s system for %d channel(s) (dt=%g, rho=%g)", config.model.name, config.channel_count, dt, rho
    )

    return _stack(config, blocks)


def informed_initial_covariance(config: FilterConfiguration) -> torch.Tensor:
    """Prior state covariance derived from the model noises.

    Rather than a large uninformative prior, it assumes the first state is deduced from the first
    measures:

    - constant velocity: position from one measure, velocity from a finite difference of two
      measures, plus the process noise integrated over the period::

          | sm**2            sm**2 / (2 dt)                       |
          | sm**2 / (2 dt)   2 sp**2 dt / 3 + sm**2 / (2 dt**2)    |

    - colored velocity: ``diag(sm**2, sp**2)`` (measured velocity, stationary colored noise).
    - colored acceleration: ``diag(sm**2, 2 sm**2 / dt**2, sp**2)`` (the acceleration is a finite
      difference of two velocity measures).

    Args:
        config (FilterConfiguration): Filter parameters.

    Returns:
        torch.Tensor: Initial covariance ``P0``, ordered as the system built by :func:`build_system`.
            Shape: ``(dim_x, dim_x)``

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    config.validate()

    dt = float(config.sampling_period)
    blocks = []
    for sp, sm in zip(config.process_std().tolist(), config.measurement_std().tolist()):
        if config.model is StateModel.CONST_VELOCITY_MEASURE_POS:
            cross = sm**2 / (2 * dt)
            blocks.append(
                torch.tensor(
                    [[sm**2, cross], [cross, 2 * sp**2 * dt / 3 + sm**2 / (2 * dt**2)]],
                    dtype=torch.float64,
                )
            )
        elif config.model is StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL:
            blocks.append(torch.diag(torch.tensor([sm**2, sp**2], dtype=torch.float64)))
        else:
            blocks.append(torch.diag(torch.tensor([sm**2, 2 * sm**2 / dt**2, sp**2], dtype=torch.float64)))

    covariance = torch.block_diag(*blocks)
    if config.group_by_derivative:
        size = config.model.state_size
        covariance = interleave(interleave(covariance, size).T, size).T

    return covariance.to(config.dtype).contiguous()
