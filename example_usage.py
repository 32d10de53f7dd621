import numpy as np
import logging
from scipy.spatial.distance import pdist, squareform

from prefsampling import (
    Dataset, Priors, SamplerConfig, burnin_after, continue_mcmc, exponential_covariance,
    preferential_sampling, summarize
)

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

def make_example_data(nx=10, ny=10, seed=0):
    """
    Simulate a small study region. In a real analysis the counts, covariates and
    sampled cells come from the data preparation layer.
    """
    rng = np.random.default_rng(seed)
    coords = np.array([(i, j) for i in range(nx) for j in range(ny)], dtype=float)
    d = squareform(pdist(coords, metric='euclidean'))
    n = len(coords)

    w = rng.multivariate_normal(np.zeros(n), exponential_covariance(d, 4.0, 2.0))
    x_loc = np.column_stack([np.ones(n), rng.standard_normal(n)])
    y_l = rng.binomial(1, 1 / (1 + np.exp(-(x_loc @ np.array([-1.0, 0.5]) + w))))
    ids = np.flatnonzero(y_l)

    x_c = np.column_stack([np.ones(len(ids)), x_loc[ids, 1]])
    y_ca = rng.poisson(np.exp(x_c @ np.array([0.5, 0.25]) + 1.0 * w[ids]))
    y_co = rng.poisson(np.exp(x_c @ np.array([2.0, 0.5]) - 0.25 * w[ids]))
    return Dataset(y_ca=y_ca, y_co=y_co, x_c=x_c, y_l=y_l, x_loc=x_loc, ids=ids), d

def run_example():
    data, d = make_example_data()
    logging.info(f"{data.n_cells} grid cells, {data.n_obs} sampled")

    config = SamplerConfig.default(
        n_sample=2000, burnin=500,
        L_w=8, L_ca=8, L_co=8, L_a_ca=8, L_a_co=8, L_loc=8,
        proposal_sd_theta=0.3
    )
    priors = Priors(
        phi=(3, 2), theta=(3, 0.5),
        alpha_ca_mean=0, alpha_ca_var=4,
        alpha_co_mean=0, alpha_co_var=4
    )

    chain = preferential_sampling(data, d, config, priors, seed=1, print_progress=True)
    chain = burnin_after(chain, 500)
    chain = continue_mcmc(data, d, chain, 1000, seed=2, print_progress=True)

    print(summarize(chain))
    print("Acceptance rates:", chain.accept_rates())

if __name__ == "__main__":
    run_example()
