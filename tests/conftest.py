import pytest
import torch

from kinematic_kf import FilterConfiguration, StateModel


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")


@pytest.fixture
def const_velocity_config() -> FilterConfiguration:
    return FilterConfiguration(
        StateModel.CONST_VELOCITY_MEASURE_POS,
        channel_count=2,
        sampling_period=0.1,
        process_noise_std=[0.1, 0.2],
        measurement_noise_std=0.5,
    )


@pytest.fixture
def colored_accel_config() -> FilterConfiguration:
    return FilterConfiguration(
        StateModel.CONST_ACCEL_COLORED_NOISE_MEASURE_VEL,
        channel_count=1,
        sampling_period=0.04,
        correlation=0.9,
        process_noise_std=[0.1],
        measurement_noise_std=[0.05],
    )
