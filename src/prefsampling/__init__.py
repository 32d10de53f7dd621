from .core import preferential_sampling, burnin_after, continue_mcmc, summarize, estimate_risk
from .chain import Dataset, Priors, BlockTuning, SamplerConfig, InitialValues, ParameterState, SampleChain
from .utils import (
    exponential_covariance, CovarianceFactor, PreferentialSamplingError,
    DimensionMismatch, NumericalInstability, InvalidCheckpoint, ConfigurationError
)

__all__ = [
    "preferential_sampling",
    "burnin_after",
    "continue_mcmc",
    "summarize",
    "estimate_risk",
    "Dataset",
    "Priors",
    "BlockTuning",
    "SamplerConfig",
    "InitialValues",
    "ParameterState",
    "SampleChain",
    "exponential_covariance",
    "CovarianceFactor",
    "PreferentialSamplingError",
    "DimensionMismatch",
    "NumericalInstability",
    "InvalidCheckpoint",
    "ConfigurationError",
]
