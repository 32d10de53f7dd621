import numpy as np
import pandas as pd
import pytest
from dataclasses import replace

from prefsampling import (
    InitialValues, InvalidCheckpoint, burnin_after, continue_mcmc, estimate_risk, preferential_sampling, summarize
)
from prefsampling.chain import HMC_BLOCKS, SAMPLE_FIELDS


@pytest.fixture
def chain(dataset, distances, config, priors):
    return preferential_sampling(dataset, distances, config, priors, seed=10)


# ----------------------------------------------------------------------
# Burnin
# ----------------------------------------------------------------------

def test_burnin_after_drops_leading_draws(chain):
    trimmed = burnin_after(chain, 15)
    assert len(trimmed) == 25
    assert trimmed.burnin == chain.burnin + 15
    assert trimmed.n_sample == chain.n_sample
    for name in SAMPLE_FIELDS:
        np.testing.assert_array_equal(getattr(trimmed, name), getattr(chain, name)[15:])
    np.testing.assert_array_equal(trimmed.accept, chain.accept)
    # input chain is left alone
    assert len(chain) == 40

def test_burnin_after_composes(chain):
    twice = burnin_after(burnin_after(chain, 7), 12)
    once = burnin_after(chain, 19)
    for name in SAMPLE_FIELDS:
        np.testing.assert_array_equal(getattr(twice, name), getattr(once, name))
    assert twice.burnin == once.burnin

def test_burnin_after_bounds(chain):
    assert len(burnin_after(chain, 40)) == 0
    assert len(burnin_after(chain, 0)) == 40
    with pytest.raises(ValueError):
        burnin_after(chain, 41)
    with pytest.raises(ValueError):
        burnin_after(chain, -1)


# ----------------------------------------------------------------------
# Continuation
# ----------------------------------------------------------------------

def test_continue_keeps_existing_draws(dataset, distances, chain):
    longer = continue_mcmc(dataset, distances, chain, 20, seed=11)

    assert len(longer) == len(chain) + 20
    assert longer.n_sample == chain.n_sample + 20
    assert longer.burnin == chain.burnin
    for name in SAMPLE_FIELDS:
        np.testing.assert_array_equal(getattr(longer, name)[:len(chain)], getattr(chain, name))
        assert np.all(np.isfinite(getattr(longer, name)))
    assert np.all(longer.theta > 0) and np.all(longer.phi > 0)

def test_continue_freezes_tuning(dataset, distances, chain):
    longer = continue_mcmc(dataset, distances, chain, 20, seed=11)
    # no new step sizes are recorded once tuning is frozen
    for name in HMC_BLOCKS:
        np.testing.assert_array_equal(longer.deltas[name], chain.deltas[name])
    assert longer.config == chain.config

def test_continue_weights_acceptance_rates(dataset, distances, chain, priors):
    extra = 30
    longer = continue_mcmc(dataset, distances, chain, extra, seed=12)

    deltas = {name: chain.deltas[name][-1] for name in HMC_BLOCKS}
    more = preferential_sampling(
        dataset, distances, chain.config.continuation(extra, deltas), priors,
        initial=InitialValues.from_state(chain.last_state()), seed=12
    )
    expected = (len(chain) * chain.accept + extra * more.accept) / (len(chain) + extra)
    np.testing.assert_allclose(longer.accept, expected)
    np.testing.assert_array_equal(longer.w[len(chain):], more.w)

def test_continue_twice(dataset, distances, chain):
    longer = continue_mcmc(dataset, distances, continue_mcmc(dataset, distances, chain, 5, seed=1), 5, seed=2)
    assert len(longer) == len(chain) + 10
    assert longer.n_sample == chain.n_sample + 10

def test_continue_after_burnin(dataset, distances, chain):
    trimmed = burnin_after(chain, 30)
    longer = continue_mcmc(dataset, distances, trimmed, 10, seed=3)
    assert len(longer) == 20
    np.testing.assert_array_equal(longer.theta[:10], chain.theta[30:])

def test_continue_requires_draws(dataset, distances, chain):
    with pytest.raises(InvalidCheckpoint):
        continue_mcmc(dataset, distances, burnin_after(chain, len(chain)), 5)

def test_continue_requires_step_sizes(dataset, distances, chain):
    missing = dict(chain.deltas)
    missing['w'] = np.empty(0)
    with pytest.raises(InvalidCheckpoint):
        continue_mcmc(dataset, distances, replace(chain, deltas=missing), 5)

def test_continue_requires_metadata(dataset, distances, chain):
    with pytest.raises(InvalidCheckpoint):
        continue_mcmc(dataset, distances, replace(chain, priors=None), 5)
    with pytest.raises(InvalidCheckpoint):
        continue_mcmc(dataset, distances, replace(chain, config=None), 5)


# ----------------------------------------------------------------------
# Summaries
# ----------------------------------------------------------------------

def test_summarize(chain):
    table = summarize(chain)
    assert isinstance(table, pd.DataFrame)
    assert list(table.columns) == ['mean', 'std', 'q2.5', 'q50', 'q97.5']
    for name in ('theta', 'phi', 'alpha_ca', 'alpha_co', 'beta_ca[0]', 'beta_co[1]', 'beta_loc[1]'):
        assert name in table.index
    assert table.loc['theta', 'mean'] == pytest.approx(chain.theta.mean())
    assert (table['q2.5'] <= table['q97.5']).all()
    assert len(summarize(chain, include_w=True)) == len(table) + 25

def test_estimate_risk(chain, dataset):
    risk = estimate_risk(chain, dataset.x_c, dataset.ids)
    assert risk['log_case'].shape == (len(chain), dataset.n_obs)
    assert risk['log_rr_mean'].shape == (dataset.n_obs,)
    assert np.all(risk['case_mean'] > 0)
    np.testing.assert_allclose(risk['log_rr'], risk['log_case'] - risk['log_ctrl'])

    j = 3
    expected = dataset.x_c @ chain.beta_ca[j] + chain.alpha_ca[j] * chain.w[j, dataset.ids]
    np.testing.assert_allclose(risk['log_case'][j], expected)
