from typing import NamedTuple, Optional
import jax.numpy as jnp
import jax.random as jr
from jax import lax

from tensorflow_probability.substrates.jax.distributions import (
    Categorical, Dirichlet, Gamma, Poisson, kl_divergence)

from donorhmm.utils import log_normalize, poisson_log_pmf

__all__ = [
    'CovariateParameters',
    'StaticParameters',
    'VariationalParameters',
    'PriorParameters',
    'initial_distribution',
    'transition_distribution',
    'emission_distribution',
    'conditional_log_likelihood',
    'log_prob',
    'sample',
    'posterior_distributions',
    'posterior_mean',
    'sample_static_params',
    'log_prior',
    'kl_to_prior',
]

# Every parameter container exposes the same two distribution providers:
#   initial_log_probs(covariates[t,c])    -> [k,]
#   transition_log_probs(covariates[t,c]) -> [t-1,k,k], indexed (t, prev, next)
# so that the forward and Viterbi recursions are written once for both.

class CovariateParameters(NamedTuple):
    """Poisson HMM whose initial and transition logits are linear in covariates."""
    rates: jnp.ndarray                  # [k,]
    initial_weights: jnp.ndarray        # [k,c]
    initial_bias: jnp.ndarray           # [k,]
    transition_weights: jnp.ndarray     # [k,k,c]
    transition_bias: jnp.ndarray        # [k,k]

    def initial_log_probs(self, covariates):
        logits = self.initial_bias + self.initial_weights @ covariates[0]
        return log_normalize(logits)

    def transition_log_probs(self, covariates):
        # Transition into step t is driven by the covariates observed at step t
        logits = self.transition_bias \
                 + jnp.einsum('kjc,tc->tkj', self.transition_weights, covariates[1:])
        return log_normalize(logits)

class StaticParameters(NamedTuple):
    """Poisson HMM with donor-independent initial and transition probabilities."""
    initial_probs: jnp.ndarray          # [k,]
    transition_probs: jnp.ndarray       # [k,k]
    rates: jnp.ndarray                  # [k,]

    def initial_log_probs(self, covariates):
        return jnp.log(self.initial_probs)

    def transition_log_probs(self, covariates):
        num_states = self.transition_probs.shape[-1]
        num_steps = covariates.shape[0] - 1
        return jnp.broadcast_to(jnp.log(self.transition_probs),
                                (num_steps, num_states, num_states))

# Dirichlet-Dirichlet-Gamma family, used both as the prior of the static model
# and as its mean-field variational posterior

class VariationalParameters(NamedTuple):
    initial_probs_conc: jnp.ndarray     # [k,]
    transition_probs_conc: jnp.ndarray  # [k,k]
    rate_shape: jnp.ndarray             # [k,]
    rate_rate: jnp.ndarray              # [k,]

class PriorParameters(NamedTuple):
    initial_probs_conc: jnp.ndarray
    transition_probs_conc: jnp.ndarray
    rate_shape: jnp.ndarray
    rate_rate: jnp.ndarray

# -----------------------------------------------------------------------------

def _as_covariates(covariates, num_timesteps):
    """Substitute an empty [t,0] covariate array for static models."""
    if covariates is None:
        return jnp.zeros((num_timesteps, 0))
    return jnp.asarray(covariates)

def initial_distribution(params, covariates):
    """Return the distribution over the first latent state of a donor."""
    return Categorical(logits=params.initial_log_probs(covariates))

def transition_distribution(params, state, covariates):
    """Return the distributions of transitioning from `state` at steps t=1,...,T-1.

    The returned Categorical has batch shape (T-1,).
    """
    return Categorical(logits=params.transition_log_probs(covariates)[:, state])

def emission_distribution(params, state):
    """Return the distribution over donation counts given state."""
    return Poisson(rate=params.rates[state])

def conditional_log_likelihood(params, emissions):
    """Compute log likelihood of the counts at each time step over states.

    Arguments
        params (CovariateParameters or StaticParameters)
        emissions[t,]

    Returns
        conditional_loglik[t,k]
    """
    return poisson_log_pmf(emissions, params.rates)

def log_prob(params, states, emissions, covariates=None):
    """Compute the log joint probability of one donor's states and counts.

    Arguments
        params (CovariateParameters or StaticParameters)
        states[t,]
        emissions[t,]
        covariates[t,c]: Ignored by StaticParameters; may be None.

    Returns
        log_joint_prob (float)
    """
    num_timesteps = emissions.shape[0]
    covariates = _as_covariates(covariates, num_timesteps)

    lp = params.initial_log_probs(covariates)[states[0]]

    transition_lps = params.transition_log_probs(covariates)
    lp += transition_lps[jnp.arange(num_timesteps - 1), states[:-1], states[1:]].sum()

    emission_lls = conditional_log_likelihood(params, emissions)
    lp += emission_lls[jnp.arange(num_timesteps), states].sum()
    return lp

def sample(params, num_timesteps, seed, covariates=None):
    """Sample a latent state path and donation counts for a single donor.

    Arguments
        params (CovariateParameters or StaticParameters)
        num_timesteps (int)
        seed (jr.PRNGKey)
        covariates[t,c]: Required for CovariateParameters.

    Returns
        states[t,]
        emissions[t,]
    """
    covariates = _as_covariates(covariates, num_timesteps)
    transition_lps = params.transition_log_probs(covariates)

    def _step(prev_state, args):
        this_seed, these_lps = args
        state = Categorical(logits=these_lps[prev_state]).sample(seed=this_seed)
        return state, state

    seed_0, seed_1, seed_2 = jr.split(seed, 3)
    initial_state = initial_distribution(params, covariates).sample(seed=seed_1)

    next_seeds = jr.split(seed_0, num_timesteps - 1)
    _, next_states = lax.scan(_step, initial_state, (next_seeds, transition_lps))
    states = jnp.concatenate([jnp.expand_dims(initial_state, 0), next_states])

    emissions = Poisson(rate=params.rates[states]).sample(seed=seed_2)
    return states, emissions.astype(jnp.int32)

# -----------------------------------------------------------------------------

def posterior_distributions(vparams):
    """Return the Dirichlet, row-wise Dirichlet and Gamma factors of q."""
    return (Dirichlet(vparams.initial_probs_conc),
            Dirichlet(vparams.transition_probs_conc),
            Gamma(vparams.rate_shape, vparams.rate_rate))

def posterior_mean(vparams):
    """Point estimate of the static model under its variational posterior.

    Uses the posterior means: pi_k = a_k / sum(a), A_kj = a_kj / sum_j'(a_kj'),
    rate_k = shape_k / rate_k.
    """
    q_initial, q_transition, q_rates = posterior_distributions(vparams)
    return StaticParameters(
        initial_probs=q_initial.mean(),
        transition_probs=q_transition.mean(),
        rates=q_rates.mean(),
    )

def sample_static_params(vparams, seed):
    """Draw reparameterized StaticParameters from the variational posterior."""
    seed_1, seed_2, seed_3 = jr.split(seed, 3)
    q_initial, q_transition, q_rates = posterior_distributions(vparams)
    return StaticParameters(
        initial_probs=q_initial.sample(seed=seed_1),
        transition_probs=q_transition.sample(seed=seed_2),
        rates=q_rates.sample(seed=seed_3),
    )

def log_prior(params, prior_params):
    """Return the log probability of StaticParameters under the prior."""
    lp = Dirichlet(prior_params.initial_probs_conc).log_prob(params.initial_probs)
    lp += Dirichlet(prior_params.transition_probs_conc).log_prob(params.transition_probs).sum()
    lp += Gamma(prior_params.rate_shape, prior_params.rate_rate).log_prob(params.rates).sum()
    return lp

def kl_to_prior(vparams, prior_params):
    """KL(q || p) between the variational posterior and the prior, summed over factors."""
    q_factors = posterior_distributions(vparams)
    p_factors = posterior_distributions(VariationalParameters(*prior_params))
    return sum(kl_divergence(q, p).sum() for q, p in zip(q_factors, p_factors))
