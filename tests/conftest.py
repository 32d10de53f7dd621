import numpy as np
import pytest
from scipy.spatial.distance import pdist, squareform

from prefsampling import Dataset, Priors, SamplerConfig, exponential_covariance


def grid_distances(nx=5, ny=5):
    """Distance matrix between the centres of an nx by ny grid of unit cells."""
    coords = np.array([(i, j) for i in range(nx) for j in range(ny)], dtype=np.float64)
    return squareform(pdist(coords, metric='euclidean'))

def simulate_dataset(d, seed=0, theta=3.0, phi=1.0, beta_loc=(-0.5, 1.0), beta_ca=(1.0, 0.5),
                     beta_co=(2.0, 0.25), alpha_ca=1.0, alpha_co=-0.5):
    """Draw a field, sampling indicator and case/control counts on the grid described by d."""
    rng = np.random.default_rng(seed)
    n = d.shape[0]
    w = rng.multivariate_normal(np.zeros(n), exponential_covariance(d, theta, phi))

    x_loc = np.column_stack([np.ones(n), rng.standard_normal(n)])[:, :len(beta_loc)]
    p_loc = 1 / (1 + np.exp(-(x_loc @ np.asarray(beta_loc) + w)))
    y_l = rng.binomial(1, p_loc)
    y_l[:3] = 1
    ids = np.flatnonzero(y_l)

    x_c = np.column_stack([np.ones(len(ids)), x_loc[ids, 1]])
    y_ca = rng.poisson(np.exp(x_c @ np.asarray(beta_ca) + alpha_ca * w[ids]))
    y_co = rng.poisson(np.exp(x_c @ np.asarray(beta_co) + alpha_co * w[ids]))
    return Dataset(y_ca=y_ca, y_co=y_co, x_c=x_c, y_l=y_l, x_loc=x_loc, ids=ids)


@pytest.fixture
def distances():
    return grid_distances(5, 5)

@pytest.fixture
def dataset(distances):
    return simulate_dataset(distances, seed=42)

@pytest.fixture
def priors():
    return Priors(
        phi=(3.0, 2.0),
        theta=(3.0, 0.5),
        alpha_ca_mean=0.0,
        alpha_ca_var=4.0,
        alpha_co_mean=0.0,
        alpha_co_var=4.0,
    )

@pytest.fixture
def config():
    return SamplerConfig.default(n_sample=50, burnin=10, L_w=8, L_ca=8, L_co=8, L_a_ca=8, L_a_co=8, L_loc=8)
