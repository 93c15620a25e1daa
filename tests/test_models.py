import pytest
import torch

from kinematic_kf import ConfigurationError, FilterConfiguration, StateModel


@pytest.mark.parametrize(
    ("model", "state_size", "measure_size"),
    [
        (StateModel.CONST_VELOCITY_MEASURE_POS, 2, 1),
        (StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL, 2, 1),
        (StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL, 3, 1),
        (StateModel.UNKNOWN, 0, 0),
    ],
)
def test_model_sizes(model: StateModel, state_size: int, measure_size: int):
    assert model.state_size == state_size
    assert model.measure_size == measure_size


def test_colored_noise_models():
    assert not StateModel.CONST_VELOCITY_MEASURE_POS.is_colored_noise
    assert StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL.is_colored_noise
    assert StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL.is_colored_noise
    assert not StateModel.UNKNOWN.is_colored_noise


def test_models_are_distinct():
    # Models sharing the same sizes must not alias each other
    assert len(StateModel) == 4
    assert StateModel.CONST_VELOCITY_MEASURE_POS is not StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL


def test_stacked_sizes():
    config = FilterConfiguration(StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL, channel_count=4)

    assert config.stacked_state_size == 12
    assert config.stacked_measure_size == 4


def test_noise_std_broadcast_to_channels():
    config = FilterConfiguration(
        StateModel.CONST_VELOCITY_MEASURE_POS, channel_count=3, process_noise_std=0.5, measurement_noise_std=[1, 2, 3]
    )

    assert torch.equal(config.process_std(), torch.tensor([0.5, 0.5, 0.5], dtype=torch.float64))
    assert torch.equal(config.measurement_std(), torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64))


def test_valid_configuration():
    config = FilterConfiguration(
        StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL,
        channel_count=2,
        correlation=-0.99,
        process_noise_std=torch.tensor([0.0, 1.0]),
        measurement_noise_std=0.1,
    )
    config.validate()


def test_correlation_is_ignored_without_colored_noise():
    FilterConfiguration(StateModel.CONST_VELOCITY_MEASURE_POS, correlation=2.0).validate()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"model": StateModel.UNKNOWN},
        {"model": "const_velocity_measure_pos"},
        {"channel_count": 0},
        {"channel_count": -2},
        {"channel_count": 1.5},
        {"channel_count": True},
        {"sampling_period": 0.0},
        {"sampling_period": -0.04},
        {"sampling_period": float("nan")},
        {"process_noise_std": -1.0},
        {"measurement_noise_std": [0.1, -0.1]},
        {"measurement_noise_std": [0.1, 0.1, 0.1]},
        {"process_noise_std": float("inf")},
        {"model": StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL, "correlation": 1.0},
        {"model": StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL, "correlation": -1.5},
        {"sampling_period": "0.1"},
        {"sampling_period": None},
        {"model": StateModel.CONST_VELOCITY_COLORED_NOISE_MEASURE_VEL, "correlation": None},
        {"model": StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL, "correlation": "0.5"},
        {"channel_count": torch.tensor(2.0)},
    ],
)
def test_invalid_configuration(kwargs):
    parameters = {
        "model": StateModel.CONST_VELOCITY_MEASURE_POS,
        "channel_count": 2,
        "sampling_period": 0.1,
        "process_noise_std": 0.1,
        "measurement_noise_std": 0.1,
    }
    parameters.update(kwargs)
    config = FilterConfiguration(**parameters)

    with pytest.raises(ConfigurationError):
        config.validate()


def test_configuration_error_is_a_value_error():
    with pytest.raises(ValueError, match="UNKNOWN"):
        FilterConfiguration(StateModel.UNKNOWN).validate()


class _Count:
    def __init__(self, value: int) -> None:
        self.value = value

    def __index__(self) -> int:
        return self.value


@pytest.mark.parametrize("channel_count", [_Count(3), torch.tensor(3)])
def test_integer_like_channel_count(channel_count):
    config = FilterConfiguration(StateModel.CONST_VELOCITY_MEASURE_POS, channel_count=channel_count)
    config.validate()

    assert config.channel_count == 3
    assert type(config.channel_count) is int
    assert config.stacked_state_size == 6


def test_noise_std_are_copied():
    process_std = [0.1, 0.2]
    measurement_std = torch.tensor([0.5, 0.6])
    config = FilterConfiguration(
        StateModel.CONST_VELOCITY_MEASURE_POS,
        channel_count=2,
        process_noise_std=process_std,
        measurement_noise_std=measurement_std,
    )

    process_std[0] = -5.0
    measurement_std[1] = -5.0

    config.validate()
    assert torch.allclose(config.process_std(), torch.tensor([0.1, 0.2], dtype=torch.float64))
    assert torch.allclose(config.measurement_std(), torch.tensor([0.5, 0.6], dtype=torch.float64))
