import numpy as np
from scipy.linalg import cho_factor, cho_solve
import logging

# ==============================================================================
# Errors
# ==============================================================================

class PreferentialSamplingError(Exception):
    """Base class for errors raised by the preferential sampling model."""


class DimensionMismatch(PreferentialSamplingError, ValueError):
    """Inputs disagree on the number of grid cells, observations or covariates."""


class NumericalInstability(PreferentialSamplingError, ArithmeticError):
    """A covariance matrix could not be factored."""


class InvalidCheckpoint(PreferentialSamplingError):
    """A chain cannot be continued because it lacks required state or metadata."""


class ConfigurationError(PreferentialSamplingError, ValueError):
    """Invalid sampler configuration or prior hyperparameters."""


# ==============================================================================
# Covariance engine
# ==============================================================================

def kernel(dist, ls):
    """
    Create the exponential correlation matrix e^(-dist / ls).

    :param dist: Distance matrix
    :param ls: range (length scale)
    """
    return np.exp(-dist / ls)

def exponential_covariance(d, theta, phi):
    """
    Exponential covariance matrix: Sigma[i, j] = phi * exp(-d[i, j] / theta)

    :param d: N.w by N.w distance matrix
    :param theta: range parameter, must be positive
    :param phi: marginal variance, must be positive
    :return: N.w by N.w covariance matrix
    """
    return phi * kernel(d, theta)


class CovarianceFactor:
    """
    Cholesky factorization of an exponential covariance matrix.

    The factor is computed once for the correlation matrix R = exp(-d / theta)
    and shared by the log density, the linear solves and the inverse.
    Sigma = phi * R.

    Raises NumericalInstability if R is not numerically positive definite.
    """

    def __init__(self, d, theta, phi):
        self.theta = float(theta)
        self.phi = float(phi)
        self.n = d.shape[0]
        R = kernel(d, self.theta)
        try:
            self._chol = cho_factor(R, lower=True, check_finite=True)
        except (np.linalg.LinAlgError, ValueError) as err:
            raise NumericalInstability(
                f"Exponential covariance with theta={self.theta:.6g} could not be factored: {err}"
            ) from err
        diag = np.diag(self._chol[0])
        if not np.all(np.isfinite(diag)) or np.any(diag <= 0):
            raise NumericalInstability(
                f"Exponential covariance with theta={self.theta:.6g} has a degenerate Cholesky factor"
            )
        self._log_det_R = 2 * np.sum(np.log(diag))

    @property
    def covariance(self):
        L = np.tril(self._chol[0])
        return self.phi * (L @ L.T)

    def solve(self, b):
        """Sigma^-1 b"""
        return cho_solve(self._chol, b) / self.phi

    def inverse(self):
        """Sigma^-1, symmetrized."""
        inv = self.solve(np.eye(self.n))
        return (inv + inv.T) / 2

    def log_det(self):
        return self.n * np.log(self.phi) + self._log_det_R

    def correlation_quad(self, w):
        """w' R^-1 w for the unit-variance correlation matrix R = Sigma / phi."""
        return float(w @ cho_solve(self._chol, w))

    def logpdf(self, w):
        """Log density of w under N(0, Sigma)."""
        quad = self.correlation_quad(w) / self.phi
        return -0.5 * (self.n * np.log(2 * np.pi) + self.log_det() + quad)


# ==============================================================================
# Link functions
# ==============================================================================

def sigmoid(eta):
    """
    Compute sigmoid function, clip properly to prevent infinity/nan
    """
    eta = np.clip(eta, -700, 700)

    # Numerically stable implementation of sigmoid
    # Handles large positive and negative values of eta without overflow.
    return np.where(
        eta >= 0,
        1 / (1 + np.exp(-eta)),
        np.exp(eta) / (1 + np.exp(eta))
    )

def log1pexp(eta):
    """log(1 + e^eta) without overflow"""
    return np.logaddexp(0, eta)

def nullcheck(value, default):
    """
    Returns default if value is null

    :param value: Nullable
    :param default: Default value
    """
    if value is None:
        return default
    return value

# ==============================================================================
# Input checks
# ==============================================================================

def check_distance_matrix(d, n_cells):
    """
    Verify that d is a square N.w by N.w, symmetric, nonnegative matrix with a zero diagonal.

    :param d: Distance matrix
    :param n_cells: Number of grid cells (length of the sampling indicator)
    :return: d as a float array
    """
    logger = logging.getLogger(__name__)

    d = np.asarray(d, dtype=np.float64)
    if d.ndim != 2 or d.shape[0] != d.shape[1]:
        raise DimensionMismatch(f"Distance matrix must be square, got shape {d.shape}")
    if d.shape[0] != n_cells:
        raise DimensionMismatch(
            f"Distance matrix is {d.shape[0]}x{d.shape[1]} but the grid has N.w={n_cells} cells"
        )
    if not np.all(np.isfinite(d)) or np.any(d < 0):
        raise DimensionMismatch("Distance matrix must be finite and nonnegative")
    if not np.allclose(d, d.T):
        raise DimensionMismatch("Distance matrix must be symmetric")
    if np.any(np.diag(d) != 0):
        raise DimensionMismatch("Distance matrix must have a zero diagonal")
    logger.debug(f"Distance matrix checked: N.w={n_cells}, max distance={d.max():.4f}")
    return d
