#iden_gls.py

from epigls.iden_reweight import reweight
from epigls.iden_uncert import uncert
from epigls.iden_utils import GLSResult, _initialize_options
from epigls.log_utils import _report


def gls(obs, constants, iden_opt=None):
    r"""
    Estimate (beta, gamma) by GLS and quantify their uncertainty.

    Runs the reweighting loop and then the sensitivity-based uncertainty analysis
    at its final estimate.

    Parameters
    ----------
    obs : ObservationSeries
        Observed infectious counts.
    constants : FixedConstants
        S0, I0 and N.
    iden_opt : dict, optional
        Identification options (see ``epigls.iden_utils._initialize_options``).
        Defaults: rho = 1, 25 trials, 20 outer iterations, tol_o = 1e-8.

    Returns
    -------
    GLSResult
        ``irls`` (estimate, weights, iterations, convergence status) and ``uncert``
        (residual variance, FIM, covariance, confidence half-widths, conditioning).

    Raises
    ------
    AllTrialsFailed, WeightingFailure, IntegrationFailure, EstimationError
        See ``reweight`` and ``uncert``.

    Examples
    --------
    >>> obs = ObservationSeries(t=range(1, 14), y=[3, 8, 28, 76, 222, 293, 257,
    ...                                           237, 192, 126, 70, 28, 12])
    >>> res = gls(obs, FixedConstants(S0=762, I0=1, N=763), {'seed': 0})
    >>> res.theta, res.uncert.ci, res.irls.converged
    """
    opts = _initialize_options(iden_opt)
    irls = reweight(obs, constants, opts)
    un = uncert(irls.theta, obs, constants, opts)
    result = GLSResult(irls, un)
    if opts['log']:
        _report(result)
    return result
