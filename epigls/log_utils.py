#log_utils.py

import logging
import sys

import numpy as np
import pandas as pd

from epigls.iden_utils import PARAM_NAMES

logger = logging.getLogger(__name__)


def configure_logger(name='epigls', level=logging.INFO):
    r"""
    Configure a logger with standard output formatting for estimation runs.

    Existing handlers are removed to prevent duplicate messages, a single
    ``StreamHandler`` on stdout is attached and propagation is disabled.

    Parameters
    ----------
    name : str, optional
        Logger name; 'epigls' covers every module of the package (default: 'epigls').
    level : int, optional
        Logging level (default: logging.INFO).

    Returns
    -------
    logger : logging.Logger
        Configured logger instance.

    Examples
    --------
    >>> log = configure_logger(level=logging.DEBUG)
    >>> log.info("Starting estimation")
    INFO: Starting estimation
    """
    log = logging.getLogger(name)
    log.setLevel(level)

    if log.hasHandlers():
        log.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    log.addHandler(handler)

    log.propagate = False
    return log


def to_frame(result):
    """
    Tidy parameter table of a ``GLSResult``.

    Returns
    -------
    pandas.DataFrame
        Indexed by parameter name, with columns 'estimate', 'std', 'ci', 'lower',
        'upper' and 't_value'.
    """
    est = result.theta.as_array()
    un = result.uncert
    std = np.sqrt(np.clip(np.diag(un.cov), 0.0, None))
    return pd.DataFrame(
        {
            'estimate': est,
            'std': std,
            'ci': un.ci,
            'lower': est - un.ci,
            'upper': est + un.ci,
            't_value': un.t_values,
        },
        index=pd.Index(PARAM_NAMES, name='parameter'),
    )


def _report(result):
    """Log the outcome of a full GLS run at INFO level (warnings for flagged results)."""
    irls, un = result.irls, result.uncert

    if irls.converged:
        logger.info(f"Reweighting {irls.status} after {irls.iterations} iteration(s)")
    else:
        logger.warning(f"Reweighting NOT converged: iteration cap of {irls.iterations} reached")

    table = to_frame(result)
    logger.info(f"Estimated parameters (R0 = {result.theta.R0:.4g}):\n{table.to_string(float_format='%.6g')}")
    logger.info(f"sigma2_GLS = {un.sigma2:.6g} on {un.dof} dof, t({1 - un.alpha / 2:.4g}) = {un.tcrit:.4g}")
    logger.info(f"Covariance:\n{np.array2string(un.cov, precision=6)}")

    status = 'ILL-CONDITIONED' if un.ill_conditioned else 'OK'
    msg = f"FIM cond = {un.cond:.3e}, min eigenvalue = {un.min_eig:.3e}; {status}"
    if un.ill_conditioned:
        logger.warning(msg)
    else:
        logger.info(msg)

    if un.cov_h is not None:
        logger.info(f"Hessian-based covariance:\n{np.array2string(un.cov_h, precision=6)}")
