#iden_uncert.py

import logging

import numpy as np
from numdifftools import Hessian
from scipy import stats

from epigls.krnl_simula import simula
from epigls.iden_utils import (
    EstimationError,
    N_PARAMS,
    UncertResult,
    reweight_weights,
    _initialize_options,
)

logger = logging.getLogger(__name__)


def _fisher(sens_I, weights, sigma2):
    r"""Weighted FIM \( M = \sum_i w_i s_i s_i^T / \hat\sigma^2 \) from sensitivity rows of I."""
    scaled = sens_I * np.sqrt(weights)[:, None]
    return (scaled.T @ scaled) / sigma2


def _conditioning(M, cond_max):
    """Condition number, smallest eigenvalue and ill-conditioning flag of a symmetric matrix."""
    eig = np.linalg.eigvalsh(M)
    min_eig, max_eig = float(eig.min()), float(eig.max())
    cond = max_eig / min_eig if min_eig > 0 else np.inf
    ill = not np.isfinite(cond) or cond >= cond_max
    return cond, min_eig, ill


def _hessian_covariance(theta, obs, constants, weights, sigma2, opts):
    r"""
    Covariance from the numerical Hessian of the weighted objective in (beta, gamma).

    Near the optimum \( H \approx 2 S^T W S \), hence \( V_H = 2 \hat\sigma^2 H^{-1} \);
    it should agree with the FIM covariance when the Gauss-Newton approximation holds.
    Differentiation runs on x = theta / thetac (x = 1 at the estimate) and is scaled
    back. Returns None when the Hessian cannot be inverted.
    """
    thetac = np.asarray(theta, dtype=float)

    def loss(x):
        out = simula(obs.t, constants.y0, constants.phi, x * thetac,
                     rtol=opts['rtol'], atol=opts['atol'], method=opts['ode'])
        return float(np.sum(weights.w * (out['I'] - obs.y) ** 2))

    Hx = Hessian(loss, step=1e-3, method='central', order=2)(np.ones_like(thetac))
    S = np.diag(1.0 / thetac)
    H = S @ Hx @ S
    try:
        return 2.0 * sigma2 * np.linalg.inv(H)
    except np.linalg.LinAlgError as e:
        logger.warning(f"Hessian inversion failed: {e}")
        return None


def uncert(theta, obs, constants, iden_opt=None):
    r"""
    Sensitivity-based uncertainty analysis of a GLS estimate.

    Parameters
    ----------
    theta : ParameterVector
        Final estimate (typically ``reweight(...).theta``).
    obs : ObservationSeries
        Observed infectious counts.
    constants : FixedConstants
        S0, I0 and N.
    iden_opt : dict, optional
        Identification options. Reads 'rho', 'alpha', 'cond_max', 'var-cov', 'log'
        and the integrator settings.

    Returns
    -------
    UncertResult
        - sigma2 : GLS residual variance estimate.
        - fim : 2x2 Fisher Information Matrix over (beta, gamma).
        - cov : its inverse, the parameter covariance.
        - ci : confidence half-widths ``tcrit * sqrt(diag(cov))``.
        - t_values : ``theta / sqrt(diag(cov))``.
        - corr : parameter correlation matrix.
        - cond, min_eig, ill_conditioned : FIM conditioning diagnostics.
        - dof, tcrit, alpha : degrees of freedom, Student-t quantile and its significance level.
        - predicted, weights, sens : trajectory, weights and I-sensitivities used.
        - cov_h : Hessian-based covariance when ``var-cov`` is 'H', else None.

    Raises
    ------
    IntegrationFailure
        If the model or its sensitivities cannot be integrated at ``theta`` (fatal here,
        there is no other start to fall back on).
    WeightingFailure
        If a predicted mean is not strictly positive while rho > 0.
    EstimationError
        If the residual variance is zero or not finite, or a well-conditioned result
        still produces non-finite intervals.

    Notes
    -----
    **Residual variance**:
        \[
        \hat\sigma^2_{GLS} = \frac{1}{n - p} \sum_i w_i (\hat{I}_i - y_i)^2,
        \quad w_i = \hat{I}_i^{-2\rho}, \quad p = 2
        \]

    **Sensitivities**:
    The augmented ODE for (S, I, Z), \( \dot Z = A Z + B \), \( Z(0) = 0 \), is
    integrated once at ``theta``; the I row of Z at each observation time gives
    \( s_i = \partial I(t_i) / \partial(\beta, \gamma) \).

    **Fisher Information and covariance**:
        \[
        M = \frac{1}{\hat\sigma^2} \sum_i w_i s_i s_i^T, \qquad V = M^{-1}
        \]

    **Confidence intervals**:
        \[
        CI_j = t_{1-\alpha/2,\, n-p} \sqrt{V_{jj}}
        \]

    **Ill-conditioning**:
    The FIM is flagged when \( \kappa(M) = \lambda_{max} / \lambda_{min} \) reaches
    ``cond_max`` (default \( 10^8 \)) or \( \lambda_{min} \le 0 \). The covariance is
    still returned, computed with a pseudo-inverse if the matrix is singular, and
    variances that come out non-positive give infinite half-widths.

    See Also
    --------
    epigls.krnl_models.sir_sens : Augmented right-hand side.
    epigls.iden_reweight.reweight : Produces the estimate analysed here.
    """
    opts = _initialize_options(iden_opt)
    th = theta.as_array()
    dof = obs.dof

    out = simula(obs.t, constants.y0, constants.phi, th, sens=True,
                 rtol=opts['rtol'], atol=opts['atol'], method=opts['ode'])
    predicted = out['I']
    sens_I = out['Z'][:, 1, :]

    weights = reweight_weights(predicted, opts['rho'])
    sigma2 = float(np.sum(weights.w * (predicted - obs.y) ** 2) / dof)
    if not np.isfinite(sigma2) or sigma2 <= 0:
        raise EstimationError(f"residual variance must be positive and finite, got {sigma2}")

    M = _fisher(sens_I, weights.w, sigma2)
    cond, min_eig, ill = _conditioning(M, opts['cond_max'])

    try:
        V = np.linalg.inv(M)
    except np.linalg.LinAlgError:
        V = np.linalg.pinv(M)
        ill = True

    tcrit = float(stats.t.ppf(1 - opts['alpha'] / 2, dof))
    var = np.diag(V)
    with np.errstate(invalid='ignore', divide='ignore'):
        sd = np.where(var > 0, np.sqrt(np.where(var > 0, var, 1.0)), np.inf)
        CI = tcrit * sd
        t_values = th / sd
        corr = V / np.outer(sd, sd)

    if not ill and not (np.all(np.isfinite(V)) and np.all(np.isfinite(CI))):
        raise EstimationError("non-finite covariance from a well-conditioned FIM")

    if ill:
        logger.warning(
            f"Ill-conditioned FIM: cond(M)={cond:.2e} (threshold {opts['cond_max']:.1e}), "
            f"min eigenvalue={min_eig:.2e}; (beta, gamma) not practically identifiable"
        )

    cov_h = None
    if opts['var-cov'] == 'H':
        cov_h = _hessian_covariance(th, obs, constants, weights, sigma2, opts)

    result = UncertResult(
        sigma2=sigma2,
        fim=M,
        cov=V,
        ci=CI,
        t_values=t_values,
        corr=corr,
        cond=float(cond),
        min_eig=min_eig,
        ill_conditioned=bool(ill),
        dof=dof,
        tcrit=tcrit,
        alpha=opts['alpha'],
        predicted=predicted,
        weights=weights,
        sens=sens_I,
        cov_h=cov_h,
    )
    if opts['log']:
        logger.info(f"sigma2_GLS={sigma2:.6g}, cond(M)={cond:.3e}, "
                    f"{'ILL-CONDITIONED' if ill else 'OK'}")
    return result
