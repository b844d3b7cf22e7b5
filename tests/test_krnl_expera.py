import numpy as np
from numpy.testing import assert_allclose

from epigls.krnl_expera import expera
from epigls.krnl_simula import simula

from conftest import FLU_T


def test_noiseless_series_is_model_trajectory(true_theta, constants):
    df = expera(true_theta, constants, FLU_T)
    assert list(df.columns) == ['MES_X:I', 'MES_Y:I', 'MES_E:I']
    mean = simula(FLU_T, constants.y0, constants.phi, true_theta.as_array())['I']
    assert_allclose(df['MES_Y:I'], mean)
    assert_allclose(df['MES_E:I'], 0.0)


def test_relative_noise_scale_and_seed(true_theta, constants):
    a = expera(true_theta, constants, FLU_T, sigma=0.1, rho=1.0, rng=3)
    b = expera(true_theta, constants, FLU_T, sigma=0.1, rho=1.0, rng=3)
    assert_allclose(a['MES_Y:I'], b['MES_Y:I'])
    mean = simula(FLU_T, constants.y0, constants.phi, true_theta.as_array())['I']
    assert_allclose(a['MES_E:I'], 0.1 * mean)


def test_absolute_noise_is_clipped(true_theta, constants):
    df = expera(true_theta, constants, FLU_T, sigma=500.0, rho=0.0, rng=0)
    assert np.all(df['MES_Y:I'] >= 0)
    assert_allclose(df['MES_E:I'], 500.0)
