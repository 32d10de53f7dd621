import numpy as np
import logging
from typing import NamedTuple

from prefsampling.utils import sigmoid, log1pexp


class HmcResult(NamedTuple):
    """Outcome of one HMC update: the new state, whether it moved, the Metropolis acceptance probability and the step size used."""
    q: np.ndarray
    accept: int
    accept_prob: float
    delta: float


# ==============================================================================
# Leapfrog integration
# ==============================================================================

def leapfrog(q, p, grad_U, delta, L):
    """
    Simulate Hamiltonian dynamics for L leapfrog steps of size delta.

    :param q: Position (parameter vector)
    :param p: Momentum
    :param grad_U: Gradient of the potential
    :param delta: Step size
    :param L: Number of leapfrog steps
    :return: (q*, p*) at the end of the trajectory
    """
    q = np.array(q, dtype=np.float64, copy=True)
    p = np.array(p, dtype=np.float64, copy=True)

    # half step for momentum
    p -= 0.5 * delta * grad_U(q)
    for step in range(L):
        q += delta * p
        # full steps for momentum except at the end of the trajectory
        if step != L - 1:
            p -= delta * grad_U(q)
    p -= 0.5 * delta * grad_U(q)
    return q, p

def hmc_update(q, U, grad_U, delta, L, rng):
    """
    Generic HMC update of a parameter block.

    Draws momentum p ~ N(0, I), runs L leapfrog steps of size delta and accepts
    the end point with probability min(1, exp(H(q, p) - H(q*, p*))), where
    H = U + |p|^2 / 2. Trajectories with a non-finite Hamiltonian are rejected.

    :param q: Current value of the block
    :param U: Potential, negative log full conditional
    :param grad_U: Gradient of U
    :param delta: Step size
    :param L: Number of leapfrog steps
    :param rng: numpy Generator
    :return: HmcResult
    """
    logger = logging.getLogger(__name__)

    q = np.atleast_1d(np.asarray(q, dtype=np.float64))
    p = rng.standard_normal(q.shape)

    with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
        H_curr = U(q) + 0.5 * np.sum(p ** 2)
        q_star, p_star = leapfrog(q, p, grad_U, delta, L)
        H_star = U(q_star) + 0.5 * np.sum(p_star ** 2)
        log_ratio = H_curr - H_star

    if np.isfinite(log_ratio) and np.all(np.isfinite(q_star)):
        a = 1.0 if log_ratio >= 0 else float(np.exp(log_ratio))
    else:
        logger.debug(f"Non-finite Hamiltonian along trajectory (delta={delta:.4g}, L={L}); proposal rejected")
        a = 0.0

    if rng.uniform() < a:
        return HmcResult(q_star, 1, a, delta)
    return HmcResult(q, 0, a, delta)

# ==============================================================================
# Log likelihoods
# ==============================================================================

def poisson_loglik(y, eta):
    """Poisson log likelihood with log link, up to the log(y!) constant"""
    return np.sum(y * eta - np.exp(eta))

def logistic_loglik(y, eta):
    """Bernoulli log likelihood with logit link"""
    return np.sum(y * eta - log1pexp(eta))


# ==============================================================================
# Block potentials
# ==============================================================================

def w_potential(y_l, x_loc, beta_loc, y_ca, x_c, beta_ca, alpha_ca, y_co, beta_co, alpha_co,
                sigma_inv, ids, offset_ca=0, offset_co=0):
    """
    Potential and gradient for the spatial random effects.

    The full conditional combines the sampling indicator of every grid cell,
    the case and control counts at the sampled cells (through w[ids]) and the
    GP prior N(0, Sigma).

    :param sigma_inv: Inverse of the current covariance matrix
    :param ids: Grid cell of each case/control observation
    :return: (U, grad_U)
    """
    n_cells = x_loc.shape[0]
    eta_loc_fixed = x_loc @ beta_loc
    eta_ca_fixed = x_c @ beta_ca + offset_ca
    eta_co_fixed = x_c @ beta_co + offset_co

    def U(w):
        w_sub = w[ids]
        logd = logistic_loglik(y_l, eta_loc_fixed + w)
        logd += poisson_loglik(y_ca, eta_ca_fixed + alpha_ca * w_sub)
        logd += poisson_loglik(y_co, eta_co_fixed + alpha_co * w_sub)
        logd -= 0.5 * w @ sigma_inv @ w
        return -logd

    def grad_U(w):
        w_sub = w[ids]
        grad = y_l - sigmoid(eta_loc_fixed + w)
        sub = alpha_ca * (y_ca - np.exp(eta_ca_fixed + alpha_ca * w_sub))
        sub += alpha_co * (y_co - np.exp(eta_co_fixed + alpha_co * w_sub))
        # several observations may share a grid cell
        scatter = np.zeros(n_cells)
        np.add.at(scatter, ids, sub)
        grad = grad + scatter - sigma_inv @ w
        return -grad

    return U, grad_U

def beta_potential(y, w_sub, x, alpha, prior_var=100.0, offset=0):
    """
    Potential and gradient for case or control covariate coefficients.

    :param y: case (or control) counts
    :param w_sub: spatial random effects at the observed cells
    :param x: design matrix
    :param alpha: preferential sampling parameter paired with this count process
    :param prior_var: variance of the independent normal prior on each coefficient
    """
    eta_fixed = alpha * w_sub + offset

    def U(beta):
        return -poisson_loglik(y, x @ beta + eta_fixed) + 0.5 * np.sum(beta ** 2) / prior_var

    def grad_U(beta):
        resid = y - np.exp(x @ beta + eta_fixed)
        return -(x.T @ resid) + beta / prior_var

    return U, grad_U

def alpha_potential(y, w_sub, x, beta, prior_mean, prior_var, offset=0):
    """
    Potential and gradient for a preferential sampling parameter, as a length one vector.
    Shares the count likelihood of its paired beta block, with an independent N(prior_mean, prior_var) prior.
    """
    eta_fixed = x @ beta + offset

    def U(a):
        return -poisson_loglik(y, eta_fixed + a[0] * w_sub) + 0.5 * (a[0] - prior_mean) ** 2 / prior_var

    def grad_U(a):
        resid = y - np.exp(eta_fixed + a[0] * w_sub)
        return np.array([-(w_sub @ resid) + (a[0] - prior_mean) / prior_var])

    return U, grad_U

def beta_loc_potential(y_l, w, x_loc, prior_var=100.0):
    """
    Logistic regression of the sampling indicator of every grid cell on x_loc,
    with the full (not subset) field w as offset.
    """
    def U(b):
        return -logistic_loglik(y_l, x_loc @ b + w) + 0.5 * np.sum(b ** 2) / prior_var

    def grad_U(b):
        resid = y_l - sigmoid(x_loc @ b + w)
        return -(x_loc.T @ resid) + b / prior_var

    return U, grad_U

# ==============================================================================
# Block updates
# ==============================================================================

def w_hmc_update(y_l, x_loc, beta_loc, y_ca, x_c, beta_ca, alpha_ca, y_co, beta_co, alpha_co,
                 w, sigma_inv, ids, delta, L, rng, offset_ca=0, offset_co=0):
    """HMC update for the spatial random effects."""
    U, grad_U = w_potential(y_l, x_loc, beta_loc, y_ca, x_c, beta_ca, alpha_ca, y_co, beta_co, alpha_co,
                            sigma_inv, ids, offset_ca=offset_ca, offset_co=offset_co)
    return hmc_update(w, U, grad_U, delta, L, rng)

def beta_hmc_update(y, w_sub, x, beta, alpha, delta, L, rng, prior_var=100.0, offset=0):
    """HMC update for case or control covariate coefficients."""
    U, grad_U = beta_potential(y, w_sub, x, alpha, prior_var=prior_var, offset=offset)
    return hmc_update(beta, U, grad_U, delta, L, rng)

def alpha_hmc_update(y, w_sub, x, beta, alpha, delta, prior_mean, prior_var, L, rng, offset=0):
    """HMC update for a preferential sampling parameter. The returned q is a float."""
    U, grad_U = alpha_potential(y, w_sub, x, beta, prior_mean, prior_var, offset=offset)
    out = hmc_update(np.array([alpha]), U, grad_U, delta, L, rng)
    return out._replace(q=float(out.q[0]))

def beta_loc_hmc_update(y_l, w, x_loc, beta_loc, delta, L, rng, prior_var=100.0):
    """HMC update for the locational covariates."""
    U, grad_U = beta_loc_potential(y_l, w, x_loc, prior_var=prior_var)
    return hmc_update(beta_loc, U, grad_U, delta, L, rng)
