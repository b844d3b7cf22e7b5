import numpy as np
import pytest

from epigls.iden_utils import FixedConstants, ObservationSeries, ParameterVector
from epigls.krnl_expera import expera

# boarding-school influenza outbreak (infectious counts, days 1..13)
FLU_T = np.arange(1, 14, dtype=float)
FLU_Y = np.array([3, 8, 28, 76, 222, 293, 257, 237, 192, 126, 70, 28, 12], dtype=float)


@pytest.fixture
def constants():
    return FixedConstants(S0=762, I0=1, N=763)


@pytest.fixture
def flu_obs():
    return ObservationSeries(FLU_T, FLU_Y)


@pytest.fixture
def true_theta():
    return ParameterVector(beta=1.7, gamma=0.45)


@pytest.fixture
def clean_obs(true_theta, constants):
    return ObservationSeries.from_frame(expera(true_theta, constants, FLU_T))


@pytest.fixture
def noisy_obs(true_theta, constants):
    df = expera(true_theta, constants, FLU_T, sigma=0.05, rho=1.0, rng=11)
    return ObservationSeries.from_frame(df)
