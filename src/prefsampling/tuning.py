"""
Self tuning of HMC step sizes.

Each HMC block keeps a TuningState. While the iteration count is inside the
adaptation window the step size follows a dual averaging scheme on log(delta),
driven by the acceptance probability of the latest HMC proposal; afterwards it
is frozen at the averaged value delta_bar.
"""
import numpy as np
import logging
from dataclasses import dataclass, replace

REJECT_STREAK_LIMIT = 1000
REJECT_STREAK_SHRINK = 0.1


@dataclass(frozen=True)
class TuningState:
    """
    Step size tuning state for one HMC block.

    :param delta_curr: step size to use for the next HMC update
    :param window: number of iterations over which the step size is adapted (m)
    :param target: target acceptance probability
    :param iteration: last iteration the state was updated at
    :param h_bar: running average of (target - acceptance probability)
    :param delta_bar: averaged step size, used once adaptation stops; the
        starting step size until the first adapted iteration
    :param mu: shrinkage point for log(delta)
    :param reject_streak: recent-acceptance accumulator, the number of
        consecutive rejections since the last accepted proposal; reset to 0 on
        acceptance and after each forced shrink
    :param adaptive: False for a step size fixed externally
    """
    delta_curr: float
    window: int = 0
    target: float = 0.75
    iteration: int = 0
    h_bar: float = 0.0
    delta_bar: float = 1.0
    mu: float = float(np.log(10 * 0.05))
    gamma: float = 0.05
    t0: float = 10.0
    kappa: float = 0.75
    reject_streak: int = 0
    adaptive: bool = True


def initialize_tuning(m, target, delta_init=0.05):
    """
    Create the tuning state of a self tuned block.

    :param m: Number of iterations to apply self tuning for
    :param target: Target acceptance rate
    :param delta_init: Starting step size
    """
    return TuningState(
        delta_curr=delta_init,
        window=int(m),
        target=float(target),
        delta_bar=float(delta_init),
        mu=float(np.log(10 * delta_init)),
    )

def fixed_tuning(delta):
    """Tuning state of a block whose step size is held at delta for the whole run."""
    return TuningState(delta_curr=float(delta), adaptive=False)

def update_tuning(state, accept_prob, i, accepted):
    """
    Adapt the step size after iteration i.

    :param state: Current TuningState
    :param accept_prob: Metropolis acceptance probability of the iteration's HMC proposal
    :param i: Iteration number, starting at 1
    :param accepted: Whether the proposal was accepted
    :return: A new TuningState
    """
    logger = logging.getLogger(__name__)

    if not state.adaptive:
        return state

    reject_streak = 0 if accepted else state.reject_streak + 1
    # nan acceptance probabilities come from diverging trajectories
    a = 0.0 if not np.isfinite(accept_prob) else float(accept_prob)

    if i <= state.window:
        eta = 1.0 / (i + state.t0)
        h_bar = (1 - eta) * state.h_bar + eta * (state.target - a)
        log_delta_curr = state.mu - (np.sqrt(i) / state.gamma) * h_bar
        w = i ** (-state.kappa)
        log_delta_bar = w * log_delta_curr + (1 - w) * np.log(state.delta_bar)
        new_state = replace(
            state,
            delta_curr=float(np.exp(log_delta_curr)),
            delta_bar=float(np.exp(log_delta_bar)),
            h_bar=float(h_bar),
            iteration=i,
            reject_streak=reject_streak,
        )
    else:
        new_state = replace(state, delta_curr=state.delta_bar, iteration=i, reject_streak=reject_streak)

    if new_state.reject_streak > REJECT_STREAK_LIMIT:
        logger.warning(
            f"{new_state.reject_streak} consecutive rejections at iteration {i}; "
            f"shrinking step size {new_state.delta_curr:.4g}"
        )
        shrunk = new_state.delta_curr * REJECT_STREAK_SHRINK
        new_state = replace(new_state, delta_curr=shrunk, delta_bar=shrunk, reject_streak=0)

    return new_state
