#krnl_expera.py

import numpy as np
import pandas as pd

from epigls.krnl_simula import simula


def expera(theta, constants, t, sigma=0.0, rho=0.0, rng=None, var='I'):
    r"""
    Generate an in-silico observation series from the SIR model.

    Parameters
    ----------
    theta : ParameterVector
        True (beta, gamma).
    constants : FixedConstants
        S0, I0 and N.
    t : array_like
        Observation times.
    sigma : float, optional
        Noise scale (default: 0.0, noiseless).
    rho : float, optional
        Noise variance proportional to mean**(2 rho): ``rho = 0`` gives absolute
        noise of standard deviation ``sigma``, ``rho = 1`` relative noise
        ``sigma * mean`` (default: 0.0).
    rng : numpy.random.Generator or int, optional
        Random stream or seed.
    var : str, optional
        Variable label used in the column names (default: 'I').

    Returns
    -------
    df : pandas.DataFrame
        Columns 'MES_X:{var}' (times), 'MES_Y:{var}' (noisy counts, clipped at 0)
        and 'MES_E:{var}' (noise standard deviation used per point).

    Examples
    --------
    >>> df = expera(ParameterVector(1.7, 0.45), FixedConstants(762, 1, 763),
    ...             np.arange(1, 14), sigma=0.05, rho=1.0, rng=3)
    >>> obs = ObservationSeries.from_frame(df)
    """
    rng = np.random.default_rng(rng)
    t = np.asarray(t, dtype=float)
    mean = simula(t, constants.y0, constants.phi, theta.as_array())['I']

    std_dev = sigma * np.abs(mean) ** rho
    noisy = np.maximum(rng.normal(loc=mean, scale=std_dev), 0.0)

    return pd.DataFrame({
        f"MES_X:{var}": t,
        f"MES_Y:{var}": noisy,
        f"MES_E:{var}": std_dev,
    })
