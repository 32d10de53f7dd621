import numpy as np
import pytest
from scipy.stats import multivariate_normal
from scipy.spatial.distance import pdist, squareform

from prefsampling.utils import (
    CovarianceFactor, DimensionMismatch, NumericalInstability, check_distance_matrix, exponential_covariance
)
from conftest import grid_distances


@pytest.mark.parametrize("theta,phi", [(0.1, 0.5), (1.0, 1.0), (6.0, 4.0), (25.0, 12.0)])
def test_exponential_covariance_symmetric_positive_definite(theta, phi):
    d = grid_distances(5, 5)
    Sigma = exponential_covariance(d, theta, phi)

    assert Sigma.shape == (25, 25)
    np.testing.assert_allclose(Sigma, Sigma.T)
    np.testing.assert_allclose(np.diag(Sigma), phi)
    assert np.all(np.linalg.eigvalsh(Sigma) > 0)

def test_exponential_covariance_random_points():
    rng = np.random.default_rng(1)
    coords = rng.uniform(0, 10, size=(30, 2))
    d = squareform(pdist(coords))
    Sigma = exponential_covariance(d, 2.5, 3.0)
    assert np.all(np.linalg.eigvalsh(Sigma) > 0)

def test_factor_matches_direct_algebra():
    d = grid_distances(4, 4)
    theta, phi = 2.0, 1.7
    Sigma = exponential_covariance(d, theta, phi)
    cov = CovarianceFactor(d, theta, phi)
    w = np.random.default_rng(0).standard_normal(16)

    np.testing.assert_allclose(cov.covariance, Sigma, atol=1e-12)
    np.testing.assert_allclose(cov.inverse() @ Sigma, np.eye(16), atol=1e-8)
    np.testing.assert_allclose(cov.solve(w), np.linalg.solve(Sigma, w), rtol=1e-8)
    np.testing.assert_allclose(cov.correlation_quad(w), w @ np.linalg.solve(Sigma / phi, w), rtol=1e-8)
    np.testing.assert_allclose(cov.logpdf(w), multivariate_normal.logpdf(w, mean=np.zeros(16), cov=Sigma), rtol=1e-8)

def test_factor_inverse_is_symmetric():
    cov = CovarianceFactor(grid_distances(3, 3), 1.5, 2.0)
    inv = cov.inverse()
    np.testing.assert_array_equal(inv, inv.T)

def test_singular_covariance_raises():
    # two distinct cells at distance zero give identical rows
    d = np.zeros((2, 2))
    with pytest.raises(NumericalInstability):
        CovarianceFactor(d, 1.0, 1.0)

def test_check_distance_matrix_rejects_bad_input():
    d = grid_distances(3, 3)
    assert check_distance_matrix(d, 9).shape == (9, 9)

    with pytest.raises(DimensionMismatch):
        check_distance_matrix(d, 10)
    with pytest.raises(DimensionMismatch):
        check_distance_matrix(d[:, :8], 9)

    asymmetric = d.copy()
    asymmetric[0, 1] += 1.0
    with pytest.raises(DimensionMismatch):
        check_distance_matrix(asymmetric, 9)

    negative = d.copy()
    negative[0, 1] = negative[1, 0] = -1.0
    with pytest.raises(DimensionMismatch):
        check_distance_matrix(negative, 9)

    nonzero_diag = d + np.eye(9)
    with pytest.raises(DimensionMismatch):
        check_distance_matrix(nonzero_diag, 9)
