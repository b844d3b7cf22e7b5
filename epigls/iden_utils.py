#iden_utils.py

import numbers
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pandas as pd


# ============================================================
# Errors
# ============================================================

class EstimationError(RuntimeError):
    """Base class for failures of the estimation pipeline."""


class IntegrationFailure(EstimationError):
    """
    The ODE integrator could not produce a finite trajectory.

    Parameters
    ----------
    theta : array_like
        (beta, gamma) at which the integration was attempted.
    message : str
        Solver message or description of the non-finite output.
    """

    def __init__(self, theta, message):
        self.theta = np.asarray(theta, dtype=float)
        super().__init__(f"integration failed at theta={self.theta.tolist()}: {message}")


class AllTrialsFailed(EstimationError):
    """
    No multi-start trial converged within one outer iteration.

    Parameters
    ----------
    iteration : int
        Outer (reweighting) iteration index at which it happened.
    ntrials : int
        Number of trials attempted.
    """

    def __init__(self, iteration, ntrials):
        self.iteration = int(iteration)
        self.ntrials = int(ntrials)
        super().__init__(
            f"all {self.ntrials} multi-start trials failed to converge at outer iteration {self.iteration}"
        )


class WeightingFailure(EstimationError):
    """
    A predicted mean is zero, negative or non-finite, so its GLS weight is undefined.

    Parameters
    ----------
    iteration : int or None
        Outer iteration at which the weights were being updated (None outside the loop).
    indices : array_like
        Observation indices with an undefined weight.
    """

    def __init__(self, iteration, indices):
        self.iteration = iteration
        self.indices = np.asarray(indices, dtype=int)
        super().__init__(
            f"undefined GLS weight for observations {self.indices.tolist()} "
            f"(iteration {iteration}): predicted mean is not strictly positive and finite"
        )


# ============================================================
# Records
# ============================================================

# smallest predicted mean for which a weight mean**(-2 rho) is accepted
_TINY_MEAN = 1e-12

N_PARAMS = 2
PARAM_NAMES = ('beta', 'gamma')


@dataclass(frozen=True)
class ObservationSeries:
    """
    Observed infectious counts.

    Parameters
    ----------
    t : array_like
        Observation times, strictly increasing, starting at or after 0.
    y : array_like
        Observed counts (>= 0), same length as ``t``.

    Raises
    ------
    ValueError
        If the series is not one-dimensional, lengths differ, values are not finite,
        times are not strictly increasing or negative, counts are negative, or fewer
        than ``N_PARAMS + 1`` points are given (the residual variance would have no
        degrees of freedom).
    """
    t: np.ndarray
    y: np.ndarray

    def __post_init__(self):
        t = np.array(self.t, dtype=float)
        y = np.array(self.y, dtype=float)
        if t.ndim != 1 or y.ndim != 1:
            raise ValueError("observation times and counts must be one-dimensional")
        if t.size != y.size:
            raise ValueError(f"times ({t.size}) and counts ({y.size}) differ in length")
        if t.size <= N_PARAMS:
            raise ValueError(
                f"at least {N_PARAMS + 1} observations are required, got {t.size}"
            )
        if not (np.all(np.isfinite(t)) and np.all(np.isfinite(y))):
            raise ValueError("observation times and counts must be finite")
        if t[0] < 0:
            raise ValueError("observation times must start at or after 0")
        if np.any(np.diff(t) <= 0):
            raise ValueError("observation times must be strictly increasing")
        if np.any(y < 0):
            raise ValueError("observed counts must be non-negative")
        t.setflags(write=False)
        y.setflags(write=False)
        object.__setattr__(self, 't', t)
        object.__setattr__(self, 'y', y)

    @property
    def n(self):
        return int(self.t.size)

    @property
    def dof(self):
        return self.n - N_PARAMS

    @classmethod
    def from_frame(cls, df: pd.DataFrame, var: str = 'I'):
        """Build a series from the ``MES_X:{var}`` / ``MES_Y:{var}`` columns of a DataFrame."""
        xc, yc = f"MES_X:{var}", f"MES_Y:{var}"
        if xc not in df or yc not in df:
            raise ValueError(f"DataFrame must contain '{xc}' and '{yc}' columns")
        sub = df[[xc, yc]].dropna()
        return cls(sub[xc].to_numpy(dtype=float), sub[yc].to_numpy(dtype=float))


@dataclass(frozen=True)
class FixedConstants:
    """Initial susceptible ``S0``, initial infectious ``I0`` and population ``N``."""
    S0: float
    I0: float
    N: float

    def __post_init__(self):
        for name in ('S0', 'I0', 'N'):
            v = float(getattr(self, name))
            if not np.isfinite(v) or v <= 0:
                raise ValueError(f"{name} must be positive and finite, got {v}")
            object.__setattr__(self, name, v)
        if self.S0 + self.I0 > self.N:
            raise ValueError(f"S0 + I0 ({self.S0 + self.I0}) exceeds N ({self.N})")

    @property
    def y0(self):
        return np.array([self.S0, self.I0], dtype=float)

    @property
    def phi(self):
        return {'N': self.N}


@dataclass(frozen=True)
class ParameterVector:
    """
    Transmission rate ``beta`` and removal rate ``gamma``.

    The optimiser works on unconstrained ``u = (log(R0 - 1), log(gamma))`` so that
    any real ``u`` maps to ``beta, gamma > 0`` with ``R0 = beta / gamma > 1``.
    """
    beta: float
    gamma: float

    def __post_init__(self):
        for name in PARAM_NAMES:
            v = float(getattr(self, name))
            if not np.isfinite(v) or v <= 0:
                raise ValueError(f"{name} must be positive and finite, got {v}")
            object.__setattr__(self, name, v)

    @property
    def R0(self):
        return self.beta / self.gamma

    def as_array(self):
        return np.array([self.beta, self.gamma], dtype=float)

    @staticmethod
    def natural(u):
        """(beta, gamma) array for unconstrained ``u``; entries may be inf or 0 on overflow."""
        with np.errstate(over='ignore', under='ignore', invalid='ignore'):
            r0m1, gamma = np.exp(np.asarray(u, dtype=float))
            beta = gamma * (1.0 + r0m1)
        return np.array([beta, gamma])

    @classmethod
    def from_unconstrained(cls, u):
        """
        Map ``u = (log(R0 - 1), log(gamma))`` to (beta, gamma).

        Raises
        ------
        ValueError
            If the transform overflows or underflows to a non-positive rate.
        """
        return cls(*cls.natural(u))

    def to_unconstrained(self):
        r0m1 = self.R0 - 1.0
        if r0m1 <= 0:
            raise ValueError(f"R0 = {self.R0} must exceed 1 to be reparameterised")
        return np.array([np.log(r0m1), np.log(self.gamma)], dtype=float)


@dataclass(frozen=True)
class WeightVector:
    """Non-negative, finite GLS weight per observation."""
    w: np.ndarray

    def __post_init__(self):
        w = np.array(self.w, dtype=float)
        if w.ndim != 1:
            raise ValueError("weights must be one-dimensional")
        if not np.all(np.isfinite(w)):
            raise ValueError("weights must be finite")
        if np.any(w < 0):
            raise ValueError("weights must be non-negative")
        w.setflags(write=False)
        object.__setattr__(self, 'w', w)

    def __len__(self):
        return int(self.w.size)

    @classmethod
    def ones(cls, n):
        return cls(np.ones(int(n)))


@dataclass(frozen=True)
class TrialResult:
    """Outcome of one local minimisation; ``fun`` is NaN when the trial did not converge."""
    index: int
    start: ParameterVector
    theta: Optional[ParameterVector]
    fun: float
    success: bool
    nit: int = 0
    message: str = ''


@dataclass(frozen=True)
class FitResult:
    """Best converged trial of a multi-start round, with the weights it was fitted under."""
    theta: ParameterVector
    weights: WeightVector
    fun: float
    trials: tuple = field(default=(), repr=False)

    @property
    def nconverged(self):
        return sum(1 for tr in self.trials if tr.success)


@dataclass(frozen=True)
class IRLSResult:
    """
    Outcome of the reweighting loop.

    ``status`` is ``'converged'``, ``'ols'`` (rho = 0 short-circuit) or ``'maxit'``
    (iteration cap reached; ``converged`` is False and the last estimate is kept).
    ``weights`` are the GLS weights implied by the final estimate.
    """
    theta: ParameterVector
    weights: WeightVector
    fit: FitResult
    iterations: int
    converged: bool
    status: str
    history: tuple = field(default=(), repr=False)


@dataclass(frozen=True)
class UncertResult:
    """Residual variance, FIM, covariance and confidence half-widths at an estimate."""
    sigma2: float
    fim: np.ndarray
    cov: np.ndarray
    ci: np.ndarray
    t_values: np.ndarray
    corr: np.ndarray
    cond: float
    min_eig: float
    ill_conditioned: bool
    dof: int
    tcrit: float
    alpha: float
    predicted: np.ndarray = field(repr=False)
    weights: WeightVector = field(repr=False)
    sens: np.ndarray = field(repr=False)
    cov_h: Optional[np.ndarray] = field(default=None, repr=False)


@dataclass(frozen=True)
class GLSResult:
    """Full run: reweighting loop outcome plus uncertainty analysis at its estimate."""
    irls: IRLSResult
    uncert: UncertResult

    @property
    def theta(self):
        return self.irls.theta


# ============================================================
# Options
# ============================================================

_DEFAULTS = {
    'rho': 1.0,
    'ms': 25,
    'maxit_o': 20,
    'tol_o': 1e-8,
    'meth': 'NMS',
    'maxit': 5000,
    'tol': 1e-8,
    'cond_max': 1e8,
    'alpha': 0.05,
    'rtol': 1e-8,
    'atol': 1e-10,
    'ode': 'LSODA',
    'workers': 1,
    'seed': None,
    'var-cov': 'J',
    'log': False,
}

_METHODS = ('NMS', 'BFGS', 'LMBFGS')
_ODE_METHODS = ('LSODA', 'RK45', 'DOP853', 'Radau', 'BDF')


def _initialize_options(iden_opt=None):
    """
    Fill identification options with defaults and validate them.

    Parameters
    ----------
    iden_opt : dict, optional
        User options. Unknown keys raise; missing keys take the defaults below.
            - 'rho' : float
                Weighting exponent (variance proportional to mean**(2 rho)).
            - 'ms' : int
                Multi-start trials per outer iteration.
            - 'maxit_o' : int
                Outer iteration cap.
            - 'tol_o' : float
                Threshold on the squared parameter change between outer iterations.
            - 'meth' : str
                Local minimiser: 'NMS' (Nelder-Mead), 'BFGS' or 'LMBFGS' (L-BFGS-B).
            - 'maxit', 'tol' : int, float
                Iteration budget and tolerance of each local minimisation.
            - 'cond_max' : float
                FIM condition number above which it is reported ill-conditioned.
            - 'alpha' : float
                Significance level of the two-sided confidence intervals.
            - 'rtol', 'atol', 'ode' : float, float, str
                ``solve_ivp`` tolerances and method.
            - 'workers' : int
                Processes used for the trials (1 runs them serially).
            - 'seed' : int, numpy.random.Generator or None
                Random stream for the starting points.
            - 'var-cov' : str
                'J' (FIM only) or 'H' (also a numerical Hessian cross-check).
            - 'log' : bool
                Log progress at INFO level.

    Returns
    -------
    dict
        New options dictionary; the input is not modified.

    Raises
    ------
    ValueError
        On unknown keys or out-of-range values.
    """
    iden_opt = dict(iden_opt or {})
    unknown = set(iden_opt) - set(_DEFAULTS)
    if unknown:
        raise ValueError(f"Unknown identification options: {sorted(unknown)}")
    opts = {**_DEFAULTS, **iden_opt}

    if not (np.isfinite(opts['rho']) and opts['rho'] >= 0):
        raise ValueError(f"'rho' must be a non-negative number, got {opts['rho']}")
    for key in ('ms', 'maxit_o', 'maxit', 'workers'):
        if not isinstance(opts[key], numbers.Integral) or opts[key] < 1:
            raise ValueError(f"'{key}' must be a positive integer, got {opts[key]!r}")
    for key in ('tol_o', 'tol', 'rtol', 'atol', 'cond_max'):
        if not opts[key] > 0:
            raise ValueError(f"'{key}' must be positive, got {opts[key]}")
    if not 0 < opts['alpha'] < 1:
        raise ValueError(f"'alpha' must lie in (0, 1), got {opts['alpha']}")
    if opts['meth'] not in _METHODS:
        raise ValueError(f"Unknown method '{opts['meth']}', expected one of {_METHODS}")
    if opts['ode'] not in _ODE_METHODS:
        raise ValueError(f"Unknown ODE method '{opts['ode']}', expected one of {_ODE_METHODS}")
    if opts['var-cov'] not in ('J', 'H'):
        raise ValueError(f"Unknown var-cov option '{opts['var-cov']}'")
    opts['rho'] = float(opts['rho'])
    return opts


# ============================================================
# Weights
# ============================================================

def reweight_weights(predicted, rho, iteration=None):
    r"""
    GLS weights from a predicted mean trajectory.

    .. math:: w_i = \hat{I}_i^{-2\rho}

    Parameters
    ----------
    predicted : array_like
        Model-predicted infectious counts at the observation times.
    rho : float
        Weighting exponent; ``rho = 0`` gives unit weights (ordinary least squares).
    iteration : int, optional
        Outer iteration, attached to the error for diagnostics.

    Returns
    -------
    WeightVector

    Raises
    ------
    WeightingFailure
        If ``rho > 0`` and any predicted mean is below ``_TINY_MEAN`` or not finite,
        or the resulting weight overflows.
    """
    predicted = np.asarray(predicted, dtype=float)
    if rho == 0:
        return WeightVector.ones(predicted.size)
    bad = ~np.isfinite(predicted) | (predicted < _TINY_MEAN)
    if np.any(bad):
        raise WeightingFailure(iteration, np.flatnonzero(bad))
    with np.errstate(over='ignore'):
        w = predicted ** (-2.0 * rho)
    bad = ~np.isfinite(w)
    if np.any(bad):
        raise WeightingFailure(iteration, np.flatnonzero(bad))
    return WeightVector(w)
