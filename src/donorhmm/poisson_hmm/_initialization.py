import jax.numpy as jnp
import jax.random as jr

from donorhmm.poisson_hmm._model import (CovariateParameters,
                                         VariationalParameters,
                                         PriorParameters)


def _random_rates(seed, num_states):
    """Draw positive rates, sorted so that state 0 has the lowest rate."""
    return jnp.sort(jr.gamma(seed, 2., (num_states,)) + 1e-2)

def _quantile_rates(num_states, emissions):
    """Spread rates over the empirical quantiles of the donation counts.

    Donation counts are mostly zero, so each rate is offset from its quantile
    to keep the rates distinct and strictly positive.
    """
    quantiles = jnp.linspace(0., 1., num_states + 2)[1:-1]
    counts = jnp.asarray(emissions, dtype=jnp.float32).ravel()
    return jnp.quantile(counts, quantiles) + 0.1 * (1 + jnp.arange(num_states))

def initialize_covariate_model(seed, method, num_states, num_covariates,
                               emissions=None, weight_scale=0.1, stickiness=0.):
    """Initialize a covariate-driven Poisson HMM.

    Arguments
        seed (jr.PRNGKey)
        method (str): One of
            'constant': zero logit weights and biases, unit rates.
            'random': small normal logit weights, zero biases, Gamma-drawn rates.
            'quantile': zero logit weights and biases, rates from count quantiles.
        num_states (int)
        num_covariates (int)
        emissions[n,t]: Used for 'quantile' method.
        weight_scale (float): Std. dev. of logit weights for 'random' method.
        stickiness (float): Added to the diagonal of the transition bias.

    Returns
        CovariateParameters
    """
    seed_init, seed_trans, seed_rates = jr.split(seed, 3)

    initial_weights = jnp.zeros((num_states, num_covariates))
    transition_weights = jnp.zeros((num_states, num_states, num_covariates))

    if method == 'constant':
        rates = jnp.ones(num_states)
    elif method == 'random':
        initial_weights = weight_scale * jr.normal(seed_init, initial_weights.shape)
        transition_weights = weight_scale * jr.normal(seed_trans, transition_weights.shape)
        rates = _random_rates(seed_rates, num_states)
    elif method == 'quantile':
        if emissions is None:
            raise ValueError("Method 'quantile' requires `emissions`.")
        rates = _quantile_rates(num_states, emissions)
    else:
        raise ValueError(f"Expected method to be one of 'constant', 'random' or 'quantile', received {method}.")

    return CovariateParameters(
        rates=rates,
        initial_weights=initial_weights,
        initial_bias=jnp.zeros(num_states),
        transition_weights=transition_weights,
        transition_bias=stickiness * jnp.eye(num_states),
    )

# ------------------------------------------------------------------------------

def initialize_variational_params(seed, num_states, emissions=None,
                                  concentration=1., rate_shape=1.):
    """Initialize the variational posterior of a static Poisson HMM.

    The Gamma posteriors are centred on count quantiles if `emissions` is
    given, otherwise on randomly drawn rates.
    """
    if emissions is None:
        mean_rates = _random_rates(seed, num_states)
    else:
        mean_rates = _quantile_rates(num_states, emissions)

    shape = rate_shape * jnp.ones(num_states)
    return VariationalParameters(
        initial_probs_conc=concentration * jnp.ones(num_states),
        transition_probs_conc=concentration * jnp.ones((num_states, num_states)),
        rate_shape=shape,
        rate_rate=shape / mean_rates,
    )

def initialize_prior_from_scalar_values(num_states,
                                        initial_probs_conc=1.,
                                        transition_probs_conc=1.,
                                        rate_shape=1.,
                                        rate_rate=1.,):
    """Initialize PriorParameters from scalar values, with dimension (num_states,)."""
    return PriorParameters(
        initial_probs_conc=initial_probs_conc * jnp.ones(num_states),
        transition_probs_conc=transition_probs_conc * jnp.ones((num_states, num_states)),
        rate_shape=rate_shape * jnp.ones(num_states),
        rate_rate=rate_rate * jnp.ones(num_states),
    )
