import numpy as np
import statsmodels.api as sm
from statsmodels.genmod.families import Binomial, Poisson
import logging
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from prefsampling.utils import DimensionMismatch, ConfigurationError

# HMC blocks with a step size, in Gibbs order after beta_loc
HMC_BLOCKS = ('beta_loc', 'w', 'beta_ca', 'alpha_ca', 'beta_co', 'alpha_co')

# Layout of the acceptance rate vector
ACCEPT_ORDER = ('w', 'theta', 'beta_ca', 'beta_co', 'alpha_ca', 'alpha_co', 'beta_loc')

# ==============================================================================
# Data
# ==============================================================================

def as_design(x):
    """Design matrix as a 2d float array; a vector is a single covariate column."""
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x[:, np.newaxis]
    return x


@dataclass
class Dataset:
    """
    Case/control counts and the sampling structure of the study region.

    :param y_ca: case counts, one per observed cell
    :param y_co: control counts, aligned with y_ca
    :param x_c: standardised design matrix shared by cases and controls
    :param y_l: sampling indicator of every grid cell (1 = sampled)
    :param x_loc: covariates of the observation process, one row per grid cell
    :param ids: grid cell (0-based) of each case/control observation
    :param offset_ca: optional case offset, defaults to zeros
    :param offset_co: optional control offset, defaults to zeros
    """
    y_ca: np.ndarray
    y_co: np.ndarray
    x_c: np.ndarray
    y_l: np.ndarray
    x_loc: np.ndarray
    ids: np.ndarray
    offset_ca: Optional[np.ndarray] = None
    offset_co: Optional[np.ndarray] = None

    def __post_init__(self):
        self.y_ca = np.asarray(self.y_ca, dtype=np.float64).ravel()
        self.y_co = np.asarray(self.y_co, dtype=np.float64).ravel()
        self.x_c = as_design(self.x_c)
        self.y_l = np.asarray(self.y_l, dtype=np.float64).ravel()
        self.x_loc = as_design(self.x_loc)
        self.ids = np.asarray(self.ids).ravel()
        n_obs = len(self.y_ca)
        self.offset_ca = np.zeros(n_obs) if self.offset_ca is None else np.asarray(self.offset_ca, dtype=np.float64).ravel()
        self.offset_co = np.zeros(n_obs) if self.offset_co is None else np.asarray(self.offset_co, dtype=np.float64).ravel()
        self._check()

    def _check(self):
        n_obs, n_cells = len(self.y_ca), len(self.y_l)
        if len(self.y_co) != n_obs:
            raise DimensionMismatch(f"y_co has length {len(self.y_co)}, expected {n_obs} (length of y_ca)")
        if self.x_c.shape[0] != n_obs:
            raise DimensionMismatch(f"x_c has {self.x_c.shape[0]} rows, expected {n_obs} observations")
        if len(self.ids) != n_obs:
            raise DimensionMismatch(f"ids has length {len(self.ids)}, expected {n_obs} observations")
        if len(self.offset_ca) != n_obs or len(self.offset_co) != n_obs:
            raise DimensionMismatch(f"Offsets must have one entry per observation ({n_obs})")
        if self.x_loc.shape[0] != n_cells:
            raise DimensionMismatch(f"x_loc has {self.x_loc.shape[0]} rows, expected N.w={n_cells} grid cells")
        if not np.issubdtype(self.ids.dtype, np.integer):
            if not np.all(np.mod(self.ids, 1) == 0):
                raise DimensionMismatch("ids must be integer grid cell indices")
            self.ids = self.ids.astype(np.int64)
        if n_obs and (self.ids.min() < 0 or self.ids.max() >= n_cells):
            raise DimensionMismatch(f"ids must lie in [0, {n_cells}), got range [{self.ids.min()}, {self.ids.max()}]")
        if np.any((self.y_l != 0) & (self.y_l != 1)):
            raise DimensionMismatch("y_l must be a binary sampling indicator")

    @property
    def n_cells(self):
        return len(self.y_l)

    @property
    def n_obs(self):
        return len(self.y_ca)

    @property
    def p(self):
        return self.x_c.shape[1]

    @property
    def p_loc(self):
        return self.x_loc.shape[1]

    @classmethod
    def from_dict(cls, data, one_based_ids=False):
        """
        Build a Dataset from the nested list layout of the data preparation layer:
        {'case.data': {'y', 'x.standardised'}, 'ctrl.data': {'y'}, 'locs': {'status', 'x.scaled', 'ids'}}

        :param one_based_ids: True if locs['ids'] counts grid cells from 1
        """
        case_data = data['case.data']
        ctrl_data = data['ctrl.data']
        locs = data['locs'] if 'locs' in data else data['loc']
        ids = np.asarray(locs['ids'])
        if one_based_ids:
            ids = ids - 1
        return cls(
            y_ca=case_data['y'],
            y_co=ctrl_data['y'],
            x_c=case_data['x.standardised'],
            y_l=locs['status'],
            x_loc=locs['x.scaled'],
            ids=ids,
        )

# ==============================================================================
# Priors and configuration
# ==============================================================================

@dataclass(frozen=True)
class Priors:
    """
    Prior hyperparameters.

    :param phi: (shape, scale) of the inverse gamma prior on the marginal variance
    :param theta: (shape, rate) of the gamma prior on the spatial range
    :param alpha_ca_mean: normal prior mean of the case preferential sampling parameter
    :param alpha_ca_var: normal prior variance of the case preferential sampling parameter
    :param alpha_co_mean: normal prior mean of the control preferential sampling parameter
    :param alpha_co_var: normal prior variance of the control preferential sampling parameter
    :param beta_var: variance of the weak normal prior on every covariate coefficient
    """
    phi: Tuple[float, float]
    theta: Tuple[float, float]
    alpha_ca_mean: float
    alpha_ca_var: float
    alpha_co_mean: float
    alpha_co_var: float
    beta_var: float = 100.0

    def __post_init__(self):
        if len(self.phi) != 2 or min(self.phi) <= 0:
            raise ConfigurationError(f"prior_phi must be a positive (shape, scale) pair, got {self.phi}")
        if len(self.theta) != 2 or min(self.theta) <= 0:
            raise ConfigurationError(f"prior_theta must be a positive (shape, rate) pair, got {self.theta}")
        for name in ('alpha_ca_var', 'alpha_co_var', 'beta_var'):
            if getattr(self, name) is None or not getattr(self, name) > 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ('alpha_ca_mean', 'alpha_co_mean'):
            if getattr(self, name) is None or not np.isfinite(getattr(self, name)):
                raise ConfigurationError(f"{name} is required")


@dataclass(frozen=True)
class BlockTuning:
    """
    HMC settings for one parameter block.

    :param n_leapfrog: number of leapfrog steps (L)
    :param window: number of iterations to apply self tuning for (m)
    :param target: target acceptance rate
    :param self_tune: whether to adapt the step size
    :param delta: step size, required when self_tune is False
    """
    n_leapfrog: int
    window: int = 700
    target: float = 0.75
    self_tune: bool = True
    delta: Optional[float] = None

    def check(self, name):
        if int(self.n_leapfrog) < 1:
            raise ConfigurationError(f"{name}: n_leapfrog must be at least 1, got {self.n_leapfrog}")
        if not 0 < self.target < 1:
            raise ConfigurationError(f"{name}: target acceptance must lie in (0, 1), got {self.target}")
        if self.window < 0:
            raise ConfigurationError(f"{name}: tuning window must be nonnegative, got {self.window}")
        if not self.self_tune and (self.delta is None or not self.delta > 0):
            raise ConfigurationError(f"{name}: a positive delta is required when self tuning is disabled")

    def frozen(self, delta):
        return replace(self, self_tune=False, delta=float(delta))


@dataclass(frozen=True)
class SamplerConfig:
    """
    Run settings for preferential_sampling.

    Each HMC block has its own BlockTuning; the alpha blocks adapt over 2000
    iterations by default and the remaining blocks over 700.
    """
    n_sample: int
    burnin: int
    w: BlockTuning
    beta_ca: BlockTuning
    beta_co: BlockTuning
    alpha_ca: BlockTuning
    alpha_co: BlockTuning
    beta_loc: BlockTuning
    proposal_sd_theta: float = 0.3

    def __post_init__(self):
        if int(self.n_sample) < 1:
            raise ConfigurationError(f"n_sample must be positive, got {self.n_sample}")
        if not 0 <= int(self.burnin) < int(self.n_sample):
            raise ConfigurationError(f"burnin must lie in [0, n_sample), got {self.burnin} with n_sample={self.n_sample}")
        if not self.proposal_sd_theta > 0:
            raise ConfigurationError(f"proposal_sd_theta must be positive, got {self.proposal_sd_theta}")
        for name in HMC_BLOCKS:
            self.block(name).check(name)

    @classmethod
    def default(cls, n_sample, burnin, L_w, L_ca, L_co, L_a_ca, L_a_co, L_loc, **kwargs):
        """Configuration with self tuning on every block and the default windows and targets."""
        return cls(
            n_sample=n_sample,
            burnin=burnin,
            w=BlockTuning(L_w),
            beta_ca=BlockTuning(L_ca),
            beta_co=BlockTuning(L_co),
            alpha_ca=BlockTuning(L_a_ca, window=2000),
            alpha_co=BlockTuning(L_a_co, window=2000),
            beta_loc=BlockTuning(L_loc),
            **kwargs
        )

    def block(self, name):
        return getattr(self, name)

    @property
    def n_keep(self):
        return self.n_sample - self.burnin

    def continuation(self, n_sample, deltas):
        """Configuration for n_sample more iterations without burnin and with every step size fixed."""
        blocks = {name: self.block(name).frozen(deltas[name]) for name in HMC_BLOCKS}
        return replace(self, n_sample=n_sample, burnin=0, **blocks)

# ==============================================================================
# Parameter state
# ==============================================================================

@dataclass
class ParameterState:
    """Current value of every parameter block. Mutated in place by the Gibbs driver."""
    w: np.ndarray
    theta: float
    phi: float
    beta_ca: np.ndarray
    beta_co: np.ndarray
    beta_loc: np.ndarray
    alpha_ca: float
    alpha_co: float

    def copy(self):
        return ParameterState(
            w=self.w.copy(), theta=self.theta, phi=self.phi,
            beta_ca=self.beta_ca.copy(), beta_co=self.beta_co.copy(), beta_loc=self.beta_loc.copy(),
            alpha_ca=self.alpha_ca, alpha_co=self.alpha_co,
        )


@dataclass
class InitialValues:
    """Optional starting values; anything left as None is drawn at random when the chain starts."""
    w: Optional[np.ndarray] = None
    theta: Optional[float] = None
    phi: Optional[float] = None
    beta_ca: Optional[np.ndarray] = None
    beta_co: Optional[np.ndarray] = None
    beta_loc: Optional[np.ndarray] = None
    alpha_ca: Optional[float] = None
    alpha_co: Optional[float] = None

    @classmethod
    def from_state(cls, state):
        return cls(**state.copy().__dict__)

    @classmethod
    def from_glm(cls, dataset, **kwargs):
        """
        Start the covariate blocks at GLM estimates: Poisson regressions of the case
        and control counts on x_c and a logistic regression of the sampling indicator on x_loc.
        """
        logger = logging.getLogger(__name__)

        starts = {}
        fits = (
            ('beta_ca', dataset.y_ca, dataset.x_c, Poisson()),
            ('beta_co', dataset.y_co, dataset.x_c, Poisson()),
            ('beta_loc', dataset.y_l, dataset.x_loc, Binomial()),
        )
        for name, y, x, family in fits:
            try:
                params = sm.GLM(y, x, family=family).fit().params
                if np.any(np.isnan(params)):
                    logger.warning(f"GLM for initial {name} resulted in NaNs. Drawing it at random.")
                    continue
                starts[name] = np.asarray(params, dtype=np.float64)
                logger.debug(f"Initial {name} from GLM ({family.__class__.__name__}): {starts[name]}")
            except Exception as e:
                logger.warning(f"Could not fit initial GLM for {name}, drawing it at random. Error: {e}")
        starts.update(kwargs)
        return cls(**starts)

    def resolve(self, dataset, rng):
        """
        Fill in missing starting values and check the supplied ones.

        :return: ParameterState
        """
        def vector(value, size, name):
            if value is None:
                return rng.standard_normal(size)
            value = np.asarray(value, dtype=np.float64).ravel()
            if len(value) != size:
                raise DimensionMismatch(f"Initial {name} has length {len(value)}, expected {size}")
            return value.copy()

        w = vector(self.w, dataset.n_cells, 'w')
        beta_ca = vector(self.beta_ca, dataset.p, 'beta_ca')
        beta_co = vector(self.beta_co, dataset.p, 'beta_co')
        # sized from the location covariates
        beta_loc = vector(self.beta_loc, dataset.p_loc, 'beta_loc')
        alpha_ca = float(rng.uniform(1, 3)) if self.alpha_ca is None else float(self.alpha_ca)
        alpha_co = float(rng.uniform(-3, -1)) if self.alpha_co is None else float(self.alpha_co)
        theta = float(rng.uniform(5, 7)) if self.theta is None else float(self.theta)
        phi = float(rng.uniform(3.5, 4.5)) if self.phi is None else float(self.phi)
        if not (theta > 0 and phi > 0):
            raise ConfigurationError(f"Initial theta and phi must be positive, got theta={theta}, phi={phi}")
        return ParameterState(w=w, theta=theta, phi=phi, beta_ca=beta_ca, beta_co=beta_co,
                              beta_loc=beta_loc, alpha_ca=alpha_ca, alpha_co=alpha_co)

# ==============================================================================
# Samples
# ==============================================================================

@dataclass
class SampleChain:
    """
    Posterior draws kept after burnin, with tuning history and the metadata needed to continue the chain.

    accept holds acceptance rates in ACCEPT_ORDER; deltas maps each self tuned
    HMC block to its step size trajectory (empty when its step size was fixed).
    """
    w: np.ndarray
    theta: np.ndarray
    phi: np.ndarray
    beta_ca: np.ndarray
    beta_co: np.ndarray
    beta_loc: np.ndarray
    alpha_ca: np.ndarray
    alpha_co: np.ndarray
    accept: np.ndarray
    deltas: Dict[str, np.ndarray]
    config: SamplerConfig
    priors: Priors
    n_sample: int
    burnin: int

    def __len__(self):
        return self.theta.shape[0]

    def accept_rates(self):
        return dict(zip(ACCEPT_ORDER, self.accept))

    def state(self, j):
        """ParameterState of stored draw j."""
        return ParameterState(
            w=self.w[j].copy(), theta=float(self.theta[j]), phi=float(self.phi[j]),
            beta_ca=self.beta_ca[j].copy(), beta_co=self.beta_co[j].copy(), beta_loc=self.beta_loc[j].copy(),
            alpha_ca=float(self.alpha_ca[j]), alpha_co=float(self.alpha_co[j]),
        )

    def last_state(self):
        return self.state(len(self) - 1)


SAMPLE_FIELDS = ('w', 'theta', 'phi', 'beta_ca', 'beta_co', 'beta_loc', 'alpha_ca', 'alpha_co')


class ChainStore:
    """
    Pre-allocated storage for n_keep post burnin draws, acceptance counts and step size trajectories.
    Draws are written by slot, the arrays are never resized.
    """

    def __init__(self, n_keep, n_cells, p, p_loc, tuned_blocks, n_sample):
        self.n_keep = n_keep
        self.samples = {
            'w': np.full((n_keep, n_cells), np.nan),
            'theta': np.full(n_keep, np.nan),
            'phi': np.full(n_keep, np.nan),
            'beta_ca': np.full((n_keep, p), np.nan),
            'beta_co': np.full((n_keep, p), np.nan),
            'beta_loc': np.full((n_keep, p_loc), np.nan),
            'alpha_ca': np.full(n_keep, np.nan),
            'alpha_co': np.full(n_keep, np.nan),
        }
        self.accept = np.zeros(len(ACCEPT_ORDER))
        self.deltas = {name: (np.full(n_sample, np.nan) if name in tuned_blocks else np.empty(0))
                       for name in HMC_BLOCKS}

    def record(self, j, state, accepted):
        """Store draw j and add its accept indicators (a dict keyed by ACCEPT_ORDER names)."""
        for name in SAMPLE_FIELDS:
            self.samples[name][j] = getattr(state, name)
        for k, name in enumerate(ACCEPT_ORDER):
            self.accept[k] += accepted[name]

    def record_delta(self, i, name, delta):
        self.deltas[name][i] = delta

    def to_chain(self, config, priors):
        return SampleChain(
            accept=self.accept / self.n_keep,
            deltas=self.deltas,
            config=config,
            priors=priors,
            n_sample=config.n_sample,
            burnin=config.burnin,
            **self.samples
        )
