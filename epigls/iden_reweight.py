#iden_reweight.py

import logging

import numpy as np

from epigls.krnl_simula import simula
from epigls.iden_parmest import parmest
from epigls.iden_utils import IRLSResult, reweight_weights, _initialize_options

logger = logging.getLogger(__name__)


def predict(theta, obs, constants, opts):
    """Predicted infectious counts at the observation times for ``theta``."""
    out = simula(obs.t, constants.y0, constants.phi, theta.as_array(),
                 rtol=opts['rtol'], atol=opts['atol'], method=opts['ode'])
    return out['I']


def reweight(obs, constants, iden_opt=None):
    r"""
    Iteratively reweighted least squares (GLS) estimation of (beta, gamma).

    Alternates a multi-start fit under fixed weights with a weight update from the
    fitted trajectory until the estimate stops moving or the iteration cap is reached.

    Parameters
    ----------
    obs : ObservationSeries
        Observed infectious counts.
    constants : FixedConstants
        S0, I0 and N.
    iden_opt : dict, optional
        Identification options (see ``_initialize_options``). Reads in particular:
            - 'rho' : weighting exponent (variance proportional to mean**(2 rho)).
            - 'maxit_o' : outer iteration cap.
            - 'tol_o' : threshold on the squared parameter change.
            - 'seed' : random stream, shared by every multi-start round.

    Returns
    -------
    IRLSResult
        - theta : final estimate.
        - weights : weights implied by the final estimate.
        - fit : the final FitResult (with the weights it was fitted under).
        - iterations : number of outer iterations run.
        - converged, status : 'converged', 'ols' (rho = 0) or 'maxit' (not converged).
        - history : per iteration, dicts with 'beta', 'gamma', 'WLS' and 'dtheta2'.

    Raises
    ------
    AllTrialsFailed
        If every trial of some outer iteration fails (carries the iteration index).
    WeightingFailure
        If a fitted trajectory predicts a zero or non-finite mean while rho > 0.

    Notes
    -----
    **State machine** over outer iterations \( k = 0, 1, \dots \):
        1. Fit with ``parmest``; \( k = 0 \) uses unit weights and uniform random
           starts, later iterations perturb the previous estimate and use the
           current weights.
        2. \( \Delta^2 = (\Delta\beta)^2 + (\Delta\gamma)^2 \) against the previous
           estimate (zero before the first fit).
        3. New weights \( w_i = \hat{I}_i^{-2\rho} \) from the fitted trajectory.
        4. Stop when \( \Delta^2 \le \) ``tol_o`` (for \( k \ge 1 \)) or after
           ``maxit_o`` iterations.

    With \( \rho = 0 \) the weights never change, so the loop stops after the first
    iteration by definition (status 'ols').

    See Also
    --------
    epigls.iden_parmest.parmest : Multi-start fit used at every iteration.
    epigls.iden_uncert.uncert : Uncertainty analysis at the final estimate.
    """
    opts = _initialize_options(iden_opt)
    rng = np.random.default_rng(opts['seed'])
    rho = opts['rho']

    theta = None
    weights = None
    fit = None
    history = []
    status = 'maxit'

    for k in range(opts['maxit_o']):
        fit = parmest(obs, constants, weights, opts, first=(k == 0), previous=theta,
                      rng=rng, iteration=k)

        prev = np.zeros(2) if theta is None else theta.as_array()
        dtheta2 = float(np.sum((fit.theta.as_array() - prev) ** 2))
        theta = fit.theta
        weights = reweight_weights(predict(theta, obs, constants, opts), rho, iteration=k)

        history.append({'iteration': k, 'beta': theta.beta, 'gamma': theta.gamma,
                        'WLS': fit.fun, 'dtheta2': dtheta2})
        if opts['log']:
            logger.info(f"[outer {k}] beta={theta.beta:.8g}, gamma={theta.gamma:.8g}, "
                        f"WLS={fit.fun:.6g}, dtheta^2={dtheta2:.3e}")

        if rho == 0:
            status = 'ols'
            break
        if k > 0 and dtheta2 <= opts['tol_o']:
            status = 'converged'
            break

    iterations = len(history)
    converged = status != 'maxit'
    if not converged:
        logger.warning(f"Reweighting did not converge in {iterations} iterations "
                       f"(last dtheta^2={history[-1]['dtheta2']:.3e} > {opts['tol_o']:.1e})")

    return IRLSResult(theta, weights, fit, iterations, converged, status, tuple(history))
