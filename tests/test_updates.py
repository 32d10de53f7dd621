import numpy as np
import pytest

from prefsampling.core import phi_gibbs_update, range_log_density, range_mh_update
from prefsampling.utils import CovarianceFactor, exponential_covariance
from conftest import grid_distances


@pytest.fixture
def field():
    d = grid_distances(5, 5)
    w = np.random.default_rng(7).multivariate_normal(np.zeros(25), exponential_covariance(d, 3.0, 2.0))
    return d, w

def test_range_log_density_outside_support(field):
    d, w = field
    for theta in (0.0, -0.5, -10.0):
        log_density, cov = range_log_density(theta, w, d, 1.0, 2.0, 0.5)
        assert log_density == -np.inf
        assert cov is None

def test_range_update_never_accepts_non_positive(field):
    d, w = field
    rng = np.random.default_rng(0)
    theta = 0.5
    for _ in range(300):
        # proposals this wide land below zero about half the time
        out = range_mh_update(theta, w, d, 2.0, 5.0, a=2.0, b=0.5, rng=rng)
        assert out.theta > 0
        assert out.accept in (0, 1)
        if out.accept == 0:
            assert out.theta == theta
        theta = out.theta

def test_range_update_returns_factor_for_new_range(field):
    d, w = field
    rng = np.random.default_rng(1)
    theta = 3.0
    cov = CovarianceFactor(d, theta, 2.0)
    for _ in range(50):
        out = range_mh_update(theta, w, d, 2.0, 0.5, a=2.0, b=0.5, rng=rng, cov=cov)
        assert out.cov.theta == out.theta
        theta, cov = out.theta, out.cov

def test_range_update_moves(field):
    d, w = field
    rng = np.random.default_rng(2)
    theta = 3.0
    accepted = 0
    for _ in range(200):
        out = range_mh_update(theta, w, d, 2.0, 0.3, a=2.0, b=0.5, rng=rng)
        accepted += out.accept
        theta = out.theta
    assert 0 < accepted < 200

def test_phi_draws_are_positive(field):
    d, w = field
    rng = np.random.default_rng(3)
    cov = CovarianceFactor(d, 3.0, 2.0)
    draws = [phi_gibbs_update(w, cov, 0.01, 0.01, rng) for _ in range(500)]
    assert np.all(np.array(draws) > 0)
    # a zero field leaves only the prior scale
    assert phi_gibbs_update(np.zeros(25), cov, 1.0, 0.5, rng) > 0

def test_phi_draw_matches_conjugate_posterior(field):
    d, w = field
    rng = np.random.default_rng(4)
    cov = CovarianceFactor(d, 3.0, 5.0)
    a, b = 3.0, 2.0
    shape = 25 / 2 + a
    scale = w @ np.linalg.solve(exponential_covariance(d, 3.0, 1.0), w) / 2 + b
    draws = np.array([phi_gibbs_update(w, cov, a, b, rng) for _ in range(4000)])
    assert draws.mean() == pytest.approx(scale / (shape - 1), rel=0.05)

def test_phi_draw_does_not_depend_on_current_phi(field):
    d, w = field
    low = phi_gibbs_update(w, CovarianceFactor(d, 3.0, 0.1), 1.0, 1.0, np.random.default_rng(9))
    high = phi_gibbs_update(w, CovarianceFactor(d, 3.0, 50.0), 1.0, 1.0, np.random.default_rng(9))
    assert low == pytest.approx(high)

def test_phi_draw_uses_range_of_given_factor(field):
    d, w = field
    near = phi_gibbs_update(w, CovarianceFactor(d, 1.0, 2.0), 1.0, 1.0, np.random.default_rng(9))
    far = phi_gibbs_update(w, CovarianceFactor(d, 6.0, 2.0), 1.0, 1.0, np.random.default_rng(9))
    assert near != pytest.approx(far)
