import numpy as np


# ------------------------------------------ SIR -----------------------------------------
# State y = [S, I]; theta = [beta, gamma]; phi = {'N': population}.
# Recovered are implicit (R = N - S - I).

def sir(t, y, phi, theta):
    S, I = y[0], y[1]
    beta, gamma = theta[0], theta[1]
    N = phi['N']

    inf = beta * S * I / N
    dSdt = -inf
    dIdt = inf - gamma * I

    return [dSdt, dIdt]


def jac_state(y, phi, theta):
    # d(dS, dI) / d(S, I)
    S, I = y[0], y[1]
    beta, gamma = theta[0], theta[1]
    N = phi['N']

    return np.array([
        [-beta * I / N, -beta * S / N],
        [beta * I / N, beta * S / N - gamma],
    ])


def jac_theta(y, phi, theta):
    # d(dS, dI) / d(beta, gamma)
    S, I = y[0], y[1]
    N = phi['N']

    return np.array([
        [-S * I / N, 0.0],
        [S * I / N, -I],
    ])


# -------------------------------- SIR + forward sensitivities --------------------------------
# Augmented state [S, I, Z] with Z the 2x2 sensitivity matrix (rows S, I; columns beta, gamma)
# flattened row-major: [dS/dbeta, dS/dgamma, dI/dbeta, dI/dgamma].
# dZ/dt = A Z + B, with A and B evaluated on the current (S, I); Z(0) = 0.

NSTATE = 2
NTHETA = 2


def sir_sens(t, y, phi, theta):
    x = y[:NSTATE]
    Z = np.reshape(y[NSTATE:], (NSTATE, NTHETA))

    dx = sir(t, x, phi, theta)
    dZ = jac_state(x, phi, theta) @ Z + jac_theta(x, phi, theta)

    return np.concatenate([dx, dZ.ravel()])


def sens_y0(y0):
    return np.concatenate([np.asarray(y0, dtype=float), np.zeros(NSTATE * NTHETA)])
