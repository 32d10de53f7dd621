import numpy as np
import pandas as pd
from scipy.stats import gamma, invgamma
from tqdm import tqdm
from dataclasses import replace
from typing import NamedTuple
import logging

from prefsampling.chain import (
    HMC_BLOCKS, SAMPLE_FIELDS, ChainStore, InitialValues
)
from prefsampling.hmc import (
    alpha_hmc_update, beta_hmc_update, beta_loc_hmc_update, w_hmc_update
)
from prefsampling.tuning import fixed_tuning, initialize_tuning, update_tuning
from prefsampling.utils import (
    CovarianceFactor, InvalidCheckpoint, NumericalInstability, check_distance_matrix, nullcheck
)

# ==============================================================================
# Statistical Wrappers (to match R function signatures)
# ==============================================================================

def dgamma(x, shape, rate, log=False):
    """Wrapper for Gamma density matching R's stats::dgamma (using rate = 1/scale)"""
    if log:
        return gamma.logpdf(x, a=shape, scale=1.0/rate)
    return gamma.pdf(x, a=shape, scale=1.0/rate)

def rinvgamma(n, shape, scale, rng=None):
    """Wrapper for Inverse Gamma sampling matching LaplacesDemon::rinvgamma"""
    return invgamma.rvs(a=shape, scale=scale, size=n, random_state=rng)

# ==============================================================================
# Covariance hyperparameter updates
# ==============================================================================

class RangeUpdate(NamedTuple):
    theta: float
    accept: int
    cov: CovarianceFactor


def range_log_density(theta, w, d, phi, a, b, cov=None):
    """
    Log full conditional of the spatial range, up to a constant:
    Gamma(a, b) prior plus the GP likelihood of w under Exponential(d, theta, phi).

    Returns (-inf, None) for a non positive range or a covariance that cannot be factored.
    """
    if not theta > 0:
        return -np.inf, None
    if cov is None:
        try:
            cov = CovarianceFactor(d, theta, phi)
        except NumericalInstability:
            return -np.inf, None
    return cov.logpdf(w) + dgamma(theta, shape=a, rate=b, log=True), cov

def range_mh_update(theta, w, d, phi, proposal_sd, a, b, rng, cov=None):
    """
    Random walk Metropolis update of the spatial range theta.

    :param theta: Current range
    :param w: Current spatial random effects
    :param d: Distance matrix
    :param phi: Current marginal variance
    :param proposal_sd: Standard deviation of the normal proposal
    :param a: Shape of the gamma prior
    :param b: Rate of the gamma prior
    :param rng: numpy Generator
    :param cov: CovarianceFactor for the current theta and phi, if already computed
    :return: RangeUpdate with the new range, the accept indicator and the factor for the new range
    """
    logger = logging.getLogger(__name__)

    if cov is None:
        cov = CovarianceFactor(d, theta, phi)
    proposal = theta + rng.normal(0, proposal_sd)
    log_curr, cov = range_log_density(theta, w, d, phi, a, b, cov=cov)
    log_prop, cov_prop = range_log_density(proposal, w, d, phi, a, b)
    log_ratio = log_prop - log_curr
    u = rng.uniform()

    if cov_prop is None:
        logger.debug(f"  - theta proposal {proposal:.4f} outside the support or not factorable. Proposal rejected.")
        return RangeUpdate(theta, 0, cov)
    if not np.isnan(log_ratio) and np.log(u) < log_ratio:
        logger.debug(f"  - theta proposal {proposal:.4f} accepted (current {theta:.4f})")
        return RangeUpdate(float(proposal), 1, cov_prop)
    return RangeUpdate(theta, 0, cov)

def phi_gibbs_update(w, cov, a, b, rng):
    """
    Conjugate draw of the marginal variance:
    phi ~ InverseGamma(N.w/2 + a, w' R^-1 w / 2 + b), with R = Sigma / phi the correlation matrix.

    The driver passes the factor for the range accepted in the same iteration,
    so R is built from the new theta. Samplers that keep the correlation
    matrix from before the theta step (as the R preferential sampling code
    does) give different phi draws whenever theta moves.

    :param w: Current spatial random effects
    :param cov: CovarianceFactor for the current range
    :param a: Shape of the inverse gamma prior
    :param b: Scale of the inverse gamma prior
    """
    shape = len(w) / 2 + a
    scale = cov.correlation_quad(w) / 2 + b
    phi = float(rinvgamma(n=1, shape=shape, scale=scale, rng=rng)[0])
    if not (np.isfinite(phi) and phi > 0):
        raise NumericalInstability(f"Inverse gamma draw for phi is not positive (shape={shape:.4g}, scale={scale:.4g})")
    return phi

# ==============================================================================
# Gibbs driver
# ==============================================================================

def preferential_sampling(data, d, config, priors, initial=None, seed=None, print_progress=False):
    """
    Run the preferential sampling MCMC.

    Each iteration updates, in order: beta.loc, w (after rebuilding the
    covariance from the current theta and phi), theta, phi, beta.ca, alpha.ca,
    beta.co, alpha.co. Every block conditions on the most recent value of the others.

    :param data: Dataset
    :param d: Distance matrix between grid cells (N.w x N.w)
    :param config: SamplerConfig
    :param priors: Priors
    :param initial: InitialValues; missing values are drawn at random
    :param seed: Seed (or numpy Generator) for every random draw of the run
    :param print_progress: Show a tqdm progress bar
    :return: SampleChain
    """
    logger = logging.getLogger(__name__)

    d = check_distance_matrix(d, data.n_cells)
    rng = np.random.default_rng(seed)
    N_w = data.n_cells
    logger.info(
        f"Initializing preferential sampling model with N.w={N_w}, n_obs={data.n_obs}, "
        f"p={data.p}, p_loc={data.p_loc}, n_sample={config.n_sample}, burnin={config.burnin}"
    )

    ## starting values
    state = nullcheck(initial, InitialValues()).resolve(data, rng)
    logger.debug(f"Initial values: theta={state.theta:.4f}, phi={state.phi:.4f}, "
                 f"alpha_ca={state.alpha_ca:.4f}, alpha_co={state.alpha_co:.4f}")

    ## tuning
    tunings = {}
    for name in HMC_BLOCKS:
        block = config.block(name)
        if block.self_tune:
            tunings[name] = initialize_tuning(m=block.window, target=block.target)
        else:
            tunings[name] = fixed_tuning(block.delta)
    tuned = [name for name in HMC_BLOCKS if config.block(name).self_tune]

    ## storage
    store = ChainStore(config.n_keep, N_w, data.p, data.p_loc, tuned, config.n_sample)

    ids = data.ids
    prior_theta_a, prior_theta_b = priors.theta
    prior_phi_a, prior_phi_b = priors.phi

    iterations = range(1, config.n_sample + 1)
    if print_progress:
        iterations = tqdm(iterations, desc="MCMC Sampling")

    for i in iterations:
        outs = {}

        # -----------------------------------------------------
        # Location covariates
        # -----------------------------------------------------
        outs['beta_loc'] = beta_loc_hmc_update(
            data.y_l, state.w, data.x_loc, state.beta_loc,
            tunings['beta_loc'].delta_curr, config.beta_loc.n_leapfrog, rng, prior_var=priors.beta_var
        )
        state.beta_loc = outs['beta_loc'].q

        # -----------------------------------------------------
        # Spatial random effects
        # -----------------------------------------------------
        cov = CovarianceFactor(d, state.theta, state.phi)
        sigma_inv = cov.inverse()
        outs['w'] = w_hmc_update(
            data.y_l, data.x_loc, state.beta_loc,
            data.y_ca, data.x_c, state.beta_ca, state.alpha_ca,
            data.y_co, state.beta_co, state.alpha_co,
            state.w, sigma_inv, ids, tunings['w'].delta_curr, config.w.n_leapfrog, rng,
            offset_ca=data.offset_ca, offset_co=data.offset_co
        )
        state.w = outs['w'].q

        # -----------------------------------------------------
        # Range and marginal variance
        # -----------------------------------------------------
        theta_out = range_mh_update(
            state.theta, state.w, d, state.phi, config.proposal_sd_theta,
            a=prior_theta_a, b=prior_theta_b, rng=rng, cov=cov
        )
        state.theta = theta_out.theta
        state.phi = phi_gibbs_update(state.w, theta_out.cov, prior_phi_a, prior_phi_b, rng)

        # -----------------------------------------------------
        # Case covariates and preferential sampling parameter
        # -----------------------------------------------------
        w_sub = state.w[ids]
        outs['beta_ca'] = beta_hmc_update(
            data.y_ca, w_sub, data.x_c, state.beta_ca, state.alpha_ca,
            tunings['beta_ca'].delta_curr, config.beta_ca.n_leapfrog, rng,
            prior_var=priors.beta_var, offset=data.offset_ca
        )
        state.beta_ca = outs['beta_ca'].q

        outs['alpha_ca'] = alpha_hmc_update(
            data.y_ca, w_sub, data.x_c, state.beta_ca, state.alpha_ca,
            tunings['alpha_ca'].delta_curr, priors.alpha_ca_mean, priors.alpha_ca_var,
            config.alpha_ca.n_leapfrog, rng, offset=data.offset_ca
        )
        state.alpha_ca = outs['alpha_ca'].q

        # -----------------------------------------------------
        # Control covariates and preferential sampling parameter
        # -----------------------------------------------------
        outs['beta_co'] = beta_hmc_update(
            data.y_co, w_sub, data.x_c, state.beta_co, state.alpha_co,
            tunings['beta_co'].delta_curr, config.beta_co.n_leapfrog, rng,
            prior_var=priors.beta_var, offset=data.offset_co
        )
        state.beta_co = outs['beta_co'].q

        outs['alpha_co'] = alpha_hmc_update(
            data.y_co, w_sub, data.x_c, state.beta_co, state.alpha_co,
            tunings['alpha_co'].delta_curr, priors.alpha_co_mean, priors.alpha_co_var,
            config.alpha_co.n_leapfrog, rng, offset=data.offset_co
        )
        state.alpha_co = outs['alpha_co'].q

        logger.debug(
            f"Iter {i}: theta={state.theta:.4f} (accept {theta_out.accept}), phi={state.phi:.4f}, "
            f"alpha_ca={state.alpha_ca:.4f}, alpha_co={state.alpha_co:.4f}, "
            + ", ".join(f"{name} accept {out.accept}" for name, out in outs.items())
        )

        # -----------------------------------------------------
        # Store
        # -----------------------------------------------------
        if i > config.burnin:
            accepted = {name: outs[name].accept for name in HMC_BLOCKS}
            accepted['theta'] = theta_out.accept
            store.record(i - config.burnin - 1, state, accepted)

        for name in tuned:
            tunings[name] = update_tuning(tunings[name], outs[name].accept_prob, i, outs[name].accept)
            store.record_delta(i - 1, name, tunings[name].delta_curr)

    chain = store.to_chain(config, priors)
    logger.info(
        "Sampling finished. Acceptance rates: "
        + ", ".join(f"{name}={rate:.3f}" for name, rate in chain.accept_rates().items())
    )
    return chain

# ==============================================================================
# Burnin and continuation
# ==============================================================================

def burnin_after(chain, n_burn):
    """
    Discard the first n_burn stored draws of a chain.

    :param chain: SampleChain
    :param n_burn: Number of stored draws to discard
    :return: A new SampleChain with burnin increased by n_burn
    """
    logger = logging.getLogger(__name__)

    n_curr = len(chain)
    if n_burn < 0:
        raise ValueError(f"n_burn must be nonnegative, got {n_burn}")
    if n_burn > n_curr:
        raise ValueError(f"Cannot discard {n_burn} draws from a chain holding {n_curr}")

    trimmed = {name: getattr(chain, name)[n_burn:].copy() for name in SAMPLE_FIELDS}
    logger.info(f"Discarded {n_burn} draws, {n_curr - n_burn} remain (burnin now {chain.burnin + n_burn})")
    return replace(chain, burnin=chain.burnin + n_burn, **trimmed)

def continue_mcmc(data, d, chain, n_sample, seed=None, print_progress=False):
    """
    Continue running a finished chain for n_sample more iterations.

    The last stored draw becomes the starting value, the last tuned step size of
    each block is held fixed and no burnin is applied. The new draws are
    appended to the existing ones.

    :param data: Dataset the chain was run on
    :param d: Distance matrix between grid cells
    :param chain: SampleChain returned by preferential_sampling or continue_mcmc
    :param n_sample: Number of additional iterations
    :return: A new SampleChain
    """
    logger = logging.getLogger(__name__)

    if chain.config is None or chain.priors is None:
        raise InvalidCheckpoint("Chain is missing its sampler configuration or priors")
    if len(chain) == 0:
        raise InvalidCheckpoint("Chain holds no draws to continue from")

    # get tuning parameters
    deltas = {}
    for name in HMC_BLOCKS:
        trajectory = chain.deltas.get(name) if chain.deltas is not None else None
        if trajectory is not None and len(trajectory) > 0 and np.isfinite(trajectory[-1]):
            deltas[name] = float(trajectory[-1])
        elif chain.config.block(name).delta is not None:
            deltas[name] = float(chain.config.block(name).delta)
        else:
            raise InvalidCheckpoint(f"Chain has no step size recorded for block '{name}'")

    logger.info(f"Continuing chain of {len(chain)} draws for {n_sample} more iterations with fixed step sizes {deltas}")
    config = chain.config.continuation(n_sample, deltas)
    initial = InitialValues.from_state(chain.last_state())
    more = preferential_sampling(data, d, config, chain.priors, initial=initial, seed=seed,
                                 print_progress=print_progress)

    # combine outputs
    combined = {name: np.concatenate([getattr(chain, name), getattr(more, name)]) for name in SAMPLE_FIELDS}
    combined_deltas = {name: np.concatenate([chain.deltas.get(name, np.empty(0)), more.deltas[name]])
                       for name in HMC_BLOCKS}
    n_old, n_new = len(chain), len(more)
    accept = (n_old * chain.accept + n_new * more.accept) / (n_old + n_new)

    return replace(
        chain,
        accept=accept,
        deltas=combined_deltas,
        n_sample=chain.n_sample + n_sample,
        **combined
    )

# ==============================================================================
# Posterior summaries
# ==============================================================================

def summarize(chain, include_w=False):
    """
    Posterior summary statistics of a chain.

    :param chain: SampleChain
    :param include_w: Also summarize every spatial random effect
    :return: pd.DataFrame indexed by parameter, with mean, std and 2.5%, 50%, 97.5% quantiles
    """
    columns = {}
    for name in ('theta', 'phi', 'alpha_ca', 'alpha_co'):
        columns[name] = getattr(chain, name)
    for name in ('beta_ca', 'beta_co', 'beta_loc'):
        samples = getattr(chain, name)
        for k in range(samples.shape[1]):
            columns[f"{name}[{k}]"] = samples[:, k]
    if include_w:
        for k in range(chain.w.shape[1]):
            columns[f"w[{k}]"] = chain.w[:, k]

    rows = []
    for name, samples in columns.items():
        quantiles = np.quantile(samples, [0.025, 0.5, 0.975])
        rows.append({
            'parameter': name,
            'mean': np.mean(samples),
            'std': np.std(samples),
            'q2.5': quantiles[0],
            'q50': quantiles[1],
            'q97.5': quantiles[2],
        })
    return pd.DataFrame(rows).set_index('parameter')

def estimate_risk(chain, x, ids, offset_ca=None, offset_co=None):
    """
    Posterior case and control log intensities at covariate rows x located at grid cells ids.

    log_rr is the log ratio of case to control intensity, i.e. the log odds that
    an observation at that location is a case.

    :param chain: SampleChain
    :param x: covariate rows, standardised like x_c
    :param ids: grid cell of each row
    :return: Dictionary of posterior draws ('log_case', 'log_ctrl', 'log_rr') and posterior means
    """
    x = np.atleast_2d(np.asarray(x, dtype=np.float64))
    ids = np.asarray(ids).ravel()
    offset_ca = nullcheck(offset_ca, 0)
    offset_co = nullcheck(offset_co, 0)

    w_sub = chain.w[:, ids]
    eta_ca = chain.beta_ca @ x.T + chain.alpha_ca[:, np.newaxis] * w_sub + offset_ca
    eta_co = chain.beta_co @ x.T + chain.alpha_co[:, np.newaxis] * w_sub + offset_co
    log_rr = eta_ca - eta_co

    return {
        'log_case': eta_ca,
        'log_ctrl': eta_co,
        'log_rr': log_rr,
        'case_mean': np.mean(np.exp(eta_ca), axis=0),
        'ctrl_mean': np.mean(np.exp(eta_co), axis=0),
        'log_rr_mean': np.mean(log_rr, axis=0),
    }
