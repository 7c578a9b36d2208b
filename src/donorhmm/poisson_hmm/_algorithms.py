from tqdm.auto import trange, tqdm

import jax.numpy as jnp
import jax.random as jr
from jax import jit, vmap, lax, value_and_grad
from jax.scipy.special import logsumexp
from jax.tree_util import tree_map, tree_leaves
import optax

from tensorflow_probability.substrates.jax.bijectors import Softplus

from donorhmm.poisson_hmm._model import (
    CovariateParameters, StaticParameters, VariationalParameters,
    conditional_log_likelihood, sample_static_params, kl_to_prior)
from donorhmm.poisson_hmm._validation import (
    TrainingDivergenceError, check_inputs, check_decodable)
from donorhmm.utils import logsumexp_matvec, maxplus_matvec

__all__ = [
    'hmm_filter',
    'marginal_log_likelihood',
    'viterbi',
    'most_likely_states',
    'covariate_elbo',
    'static_elbo',
    'to_unconstrained',
    'from_unconstrained',
    'fit_svi',
    'fit_covariate_svi',
    'fit_static_svi',
]

# =============================================================================
#
# EXACT MARGINALIZATION AND MAP DECODING
#
# =============================================================================

def _batch_covariates(emissions, covariates):
    """Substitute empty [n,t,0] covariates for static models."""
    if covariates is None:
        return jnp.zeros((*emissions.shape, 0))
    return covariates

def hmm_filter(params, emissions, covariates):
    """Run the forward recursion for a single donor in log space.

    Equivalent to summing the joint probability over all K^T state paths.

    Arguments
        params (CovariateParameters or StaticParameters)
        emissions[t,]
        covariates[t,c]

    Returns
        marginal_loglik (float): log p(emissions | covariates, params)
        filtered_lps[t,k]: log p(z_t=k, emissions[:t+1] | covariates, params)
    """
    initial_lps = params.initial_log_probs(covariates)
    transition_lps = params.transition_log_probs(covariates)
    emission_lls = conditional_log_likelihood(params, emissions)

    def _step(log_alpha, args):
        these_transition_lps, this_ll = args
        log_alpha = logsumexp_matvec(log_alpha, these_transition_lps) + this_ll
        return log_alpha, log_alpha

    log_alpha_0 = initial_lps + emission_lls[0]
    log_alpha_T, next_log_alphas = lax.scan(_step, log_alpha_0, (transition_lps, emission_lls[1:]))

    filtered_lps = jnp.concatenate([log_alpha_0[None, :], next_log_alphas])
    return logsumexp(log_alpha_T), filtered_lps

def marginal_log_likelihood(params, batched_emissions, batched_covariates=None):
    """Compute the marginal log likelihood of each donor's counts.

    Arguments
        params (CovariateParameters or StaticParameters)
        batched_emissions[n,t]
        batched_covariates[n,t,c] or None

    Returns
        marginal_loglik[n,]
    """
    batched_covariates = _batch_covariates(batched_emissions, batched_covariates)
    marginal_lls, _ = vmap(hmm_filter, in_axes=(None, 0, 0))(
        params, batched_emissions, batched_covariates)
    return marginal_lls

def viterbi(params, emissions, covariates):
    """Compute the MAP state path of a single donor.

    Max-product counterpart of `hmm_filter`. Ties are broken towards the
    lowest state index.

    Arguments
        params (CovariateParameters or StaticParameters)
        emissions[t,]
        covariates[t,c]

    Returns
        states[t,]
        deltas[t,k]: max over paths ending in state k of the log joint probability
    """
    initial_lps = params.initial_log_probs(covariates)
    transition_lps = params.transition_log_probs(covariates)
    emission_lls = conditional_log_likelihood(params, emissions)

    def _forward_step(delta, args):
        these_transition_lps, this_ll = args
        best_scores, backpointers = maxplus_matvec(delta, these_transition_lps)
        delta = best_scores + this_ll
        return delta, (delta, backpointers)

    def _backward_step(next_state, backpointers):
        state = backpointers[next_state]
        return state, state

    delta_0 = initial_lps + emission_lls[0]
    delta_T, (next_deltas, backpointers) = lax.scan(
        _forward_step, delta_0, (transition_lps, emission_lls[1:]))

    last_state = jnp.argmax(delta_T)
    _, prev_states = lax.scan(_backward_step, last_state, backpointers, reverse=True)

    states = jnp.concatenate([prev_states, jnp.expand_dims(last_state, 0)])
    deltas = jnp.concatenate([delta_0[None, :], next_deltas])
    return states, deltas

_batched_viterbi = jit(vmap(viterbi, in_axes=(None, 0, 0)))

def most_likely_states(params, emissions, covariates=None, return_trace=False):
    """Compute the Viterbi path of every donor.

    Parameters and inputs are validated once before decoding.

    Arguments
        params (CovariateParameters or StaticParameters): Point estimate.
        emissions[n,t]
        covariates[n,t,c]: Required for CovariateParameters, ignored otherwise.
        return_trace (bool): If True, also return the per-step delta trace.

    Returns
        paths[n,t]
        deltas[n,t,k]: Only if `return_trace`.
    """
    if isinstance(params, CovariateParameters):
        num_covariates = params.initial_weights.shape[-1]
        emissions, covariates = check_inputs(emissions, covariates, num_covariates)
    else:
        emissions, _ = check_inputs(emissions)
        covariates = None
    check_decodable(params)

    paths, deltas = _batched_viterbi(
        params, emissions, _batch_covariates(emissions, covariates))

    if return_trace:
        return paths, deltas
    return paths

# =============================================================================
#
# EVIDENCE LOWER BOUNDS
#
# =============================================================================

def covariate_elbo(params, emissions, covariates):
    """ELBO of the covariate model under a point-mass variational family.

    The latent paths are summed out exactly, so the bound reduces to the
    total marginal log likelihood of the donors.
    """
    return marginal_log_likelihood(params, emissions, covariates).sum()

def static_elbo(vparams, prior_params, emissions, seed, num_particles=1):
    """ELBO of the static model under a mean-field Dirichlet/Gamma posterior.

    E_q[log p(emissions | pi, A, rates)] is estimated with `num_particles`
    reparameterized draws from q; KL(q || prior) is computed in closed form.
    """
    def _expected_ll(this_seed):
        params = sample_static_params(vparams, this_seed)
        return marginal_log_likelihood(params, emissions).sum()

    expected_ll = vmap(_expected_ll)(jr.split(seed, num_particles)).mean()
    return expected_ll - kl_to_prior(vparams, prior_params)

# =============================================================================
#
# STOCHASTIC VARIATIONAL INFERENCE
#
# =============================================================================

# Fields optimized through a softplus bijector. Unconstrained values are held
# in the same container type as the constrained ones.
POSITIVE_FIELDS = {
    CovariateParameters: ('rates',),
    StaticParameters: ('rates',),
    VariationalParameters: VariationalParameters._fields,
}

_positive = Softplus()

def _map_positive_fields(fn, params):
    positive_fields = POSITIVE_FIELDS[type(params)]
    return type(params)(*[
        fn(value) if name in positive_fields else value
        for name, value in zip(params._fields, params)
    ])

def to_unconstrained(params):
    """Map positive fields to the real line."""
    return _map_positive_fields(_positive.inverse, params)

def from_unconstrained(uparams):
    """Map unconstrained fields back to their positive values."""
    return _map_positive_fields(_positive.forward, uparams)

def _all_finite(tree):
    return all(tree_leaves(tree_map(lambda arr: jnp.all(jnp.isfinite(arr)), tree)))

def fit_svi(loss_fn, initial_params, seed=None, num_iters=1000,
            learning_rate=0.05, b1=0.9, b2=0.999, log_every=100, verbose=True):
    """Minimize a negative ELBO with Adam over unconstrained parameters.

    Runs a fixed number of iterations; there is no early stopping. The ELBO
    is recorded at iteration 0, every `log_every` iterations and at the last
    iteration. Each call starts from `initial_params` with a fresh optimizer
    state.

    Arguments
        loss_fn (Callable): (params, seed) -> negative ELBO, where `params`
            are constrained.
        initial_params (CovariateParameters or VariationalParameters)
        seed (jr.PRNGKey): Source of per-iteration seeds for stochastic losses.
        num_iters (int): Number of optimization steps.
        learning_rate (float): Adam step size.
        b1, b2 (float): Adam exponential decay rates of the moment estimates.
        log_every (int): Number of iterations between ELBO checkpoints.
        verbose (bool): If True, show a progress bar and print checkpoints.

    Returns
        fitted_params: Same type as `initial_params`.
        elbos[num_checkpoints,]

    Raises
        TrainingDivergenceError: if the loss or a gradient is non-finite.
    """
    if log_every < 1:
        raise ValueError(f'Expected a positive `log_every`, received {log_every}.')

    seed = jr.PRNGKey(0) if seed is None else seed
    optimizer = optax.adam(learning_rate, b1=b1, b2=b2)

    @jit
    def train_step(uparams, opt_state, this_seed):
        loss, grads = value_and_grad(
            lambda _uparams: loss_fn(from_unconstrained(_uparams), this_seed))(uparams)
        updates, opt_state = optimizer.update(grads, opt_state, uparams)
        return optax.apply_updates(uparams, updates), opt_state, loss, grads

    uparams = to_unconstrained(initial_params)
    opt_state = optimizer.init(uparams)
    iter_seeds = jr.split(seed, num_iters)

    # Last iterate whose loss and gradients were finite
    valid_uparams = uparams

    elbos = []
    pbar = trange(num_iters, disable=not verbose)
    for itr in pbar:
        next_uparams, next_opt_state, loss, grads = train_step(uparams, opt_state, iter_seeds[itr])

        # Halt before accepting an update computed from a non-finite gradient
        if not _all_finite((loss, grads)):
            raise TrainingDivergenceError(itr, from_unconstrained(valid_uparams))

        valid_uparams = uparams
        uparams, opt_state = next_uparams, next_opt_state

        if (itr % log_every == 0) or (itr == num_iters - 1):
            elbo = -float(loss)
            elbos.append(elbo)
            pbar.set_postfix({'elbo': elbo})
            if verbose:
                tqdm.write(f'[{itr:>5d}] elbo: {elbo:.4f}')

    return from_unconstrained(uparams), jnp.asarray(elbos)

def fit_covariate_svi(initial_params, emissions, covariates,
                      num_iters=4000, learning_rate=0.03, b1=0.9, b2=0.999,
                      log_every=400, verbose=True):
    """Fit point estimates of a CovariateParameters model.

    Arguments
        initial_params (CovariateParameters)
        emissions[n,t]
        covariates[n,t,c]
        (remaining arguments as in `fit_svi`)

    Returns
        fitted_params (CovariateParameters)
        elbos[num_checkpoints,]
    """
    num_covariates = initial_params.initial_weights.shape[-1]
    emissions, covariates = check_inputs(emissions, covariates, num_covariates)

    def loss_fn(params, seed):
        return -covariate_elbo(params, emissions, covariates)

    return fit_svi(loss_fn, initial_params, num_iters=num_iters,
                   learning_rate=learning_rate, b1=b1, b2=b2,
                   log_every=log_every, verbose=verbose)

def fit_static_svi(initial_vparams, prior_params, emissions, seed,
                   num_iters=1000, learning_rate=0.05, b1=0.9, b2=0.999,
                   num_particles=1, log_every=100, verbose=True):
    """Fit the variational posterior of a static Poisson HMM.

    Arguments
        initial_vparams (VariationalParameters)
        prior_params (PriorParameters)
        emissions[n,t]
        seed (jr.PRNGKey): Seeds the reparameterized posterior draws.
        num_particles (int): Number of posterior draws per ELBO estimate.
        (remaining arguments as in `fit_svi`)

    Returns
        fitted_vparams (VariationalParameters)
        elbos[num_checkpoints,]
    """
    emissions, _ = check_inputs(emissions)

    loss_fn = lambda vparams, this_seed: -static_elbo(
        vparams, prior_params, emissions, this_seed, num_particles)

    return fit_svi(loss_fn, initial_vparams, seed=seed, num_iters=num_iters,
                   learning_rate=learning_rate, b1=b1, b2=b2,
                   log_every=log_every, verbose=verbose)
