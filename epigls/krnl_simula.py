#krnl_simula.py

import logging

import numpy as np
from scipy.integrate import solve_ivp

from epigls.krnl_models import sir, sir_sens, sens_y0, NSTATE, NTHETA
from epigls.iden_utils import IntegrationFailure

logger = logging.getLogger(__name__)


def simula(t, y0, phi, theta, sens=False, rtol=1e-8, atol=1e-10, method='LSODA'):
    r"""
    Integrate the SIR model, optionally with its forward sensitivities, at given times.

    The system is integrated from :math:`t = 0` (where ``y0`` applies) across the
    requested output times with ``scipy.integrate.solve_ivp``. When ``sens`` is True the
    2x2 sensitivity matrix of (S, I) with respect to (beta, gamma) is integrated jointly
    with the state, starting from zero.

    Parameters
    ----------
    t : array_like
        Output times, strictly increasing and >= 0.
    y0 : array_like
        Initial state [S0, I0] at t = 0.
    phi : dict
        Fixed constants, ``{'N': population}``.
    theta : array_like
        Parameters [beta, gamma].
    sens : bool, optional
        Also integrate the sensitivity equations (default: False).
    rtol, atol : float, optional
        Integrator tolerances (default: 1e-8, 1e-10).
    method : str, optional
        ``solve_ivp`` method (default: 'LSODA', automatic stiffness switching).

    Returns
    -------
    out : dict
        - 'S', 'I' : np.ndarray, shape (n,)
            Susceptible and infectious trajectories at ``t``.
        - 'Z' : np.ndarray, shape (n, 2, 2)
            Only when ``sens`` is True. ``Z[k, i, j]`` is the derivative of state ``i``
            (0 = S, 1 = I) with respect to parameter ``j`` (0 = beta, 1 = gamma) at ``t[k]``.

    Raises
    ------
    IntegrationFailure
        If the solver reports failure, does not reach every output time, or returns
        non-finite values.

    Notes
    -----
    The sensitivity right-hand side re-evaluates the state Jacobian and the parameter
    Jacobian at every step from the current (S, I), so it cannot be integrated after
    the fact from a stored state trajectory.

    See Also
    --------
    epigls.krnl_models.sir : State right-hand side.
    epigls.krnl_models.sir_sens : Augmented right-hand side.
    """
    t = np.asarray(t, dtype=float)
    theta = np.asarray(theta, dtype=float)
    fun = sir_sens if sens else sir
    y_init = sens_y0(y0) if sens else np.asarray(y0, dtype=float)

    # solve_ivp needs a non-degenerate span; a lone t = 0 is the initial state
    t_end = max(float(t[-1]), 0.0)
    if t_end == 0.0:
        Y = np.repeat(y_init[:, None], t.size, axis=1)
    else:
        with np.errstate(over='ignore', invalid='ignore'):
            try:
                result = solve_ivp(
                    fun,
                    (0.0, t_end),
                    y_init,
                    method=method,
                    t_eval=t,
                    args=(phi, theta),
                    rtol=rtol,
                    atol=atol,
                )
            except (ArithmeticError, ValueError) as e:
                raise IntegrationFailure(theta, str(e)) from e
        if not result.success:
            logger.debug(f"solve_ivp failed at theta={theta.tolist()}: {result.message}")
            raise IntegrationFailure(theta, result.message)
        Y = result.y
        if Y.shape[1] != t.size:
            raise IntegrationFailure(theta, f"solver returned {Y.shape[1]} of {t.size} output times")

    if not np.all(np.isfinite(Y)):
        raise IntegrationFailure(theta, "non-finite trajectory")

    out = {'S': Y[0], 'I': Y[1]}
    if sens:
        out['Z'] = np.reshape(Y[NSTATE:].T, (t.size, NSTATE, NTHETA))
    return out
