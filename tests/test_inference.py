"""Test variational fitting of covariate and static Poisson HMMs."""

import pytest

from jax import config
config.update('jax_platform_name', 'cpu')

import jax.numpy as jnp
import jax.random as jr
from jax import vmap

from donorhmm import poisson_hmm

def make_true_covariate_params(num_covariates=5):
    """Sticky 3-state model with rates for non-, light and heavy donors."""
    num_states = 3
    transition_weights = jnp.zeros((num_states, num_states, num_covariates))
    transition_weights = transition_weights.at[:, 0, 2].set(1.)   # age pushes towards state 0
    return poisson_hmm.CovariateParameters(
        rates=jnp.array([0.05, 1.0, 3.0]),
        initial_weights=jnp.zeros((num_states, num_covariates)),
        initial_bias=jnp.array([0.5, 0., -0.5]),
        transition_weights=transition_weights,
        transition_bias=2. * jnp.eye(num_states),
    )

def make_rnd_covariates(seed, num_donors, num_timesteps):
    seed_birth, seed_gender = jr.split(seed)
    birth = jr.normal(seed_birth, (num_donors, 1)) * jnp.ones((1, num_timesteps))
    gender = jr.bernoulli(seed_gender, 0.5, (num_donors, 1)) * jnp.ones((1, num_timesteps))
    age = birth + jnp.linspace(-1., 1., num_timesteps)[None, :]
    covid = jnp.zeros((num_donors, num_timesteps)).at[:, -2:].set(1.)
    const = jnp.ones((num_donors, num_timesteps))
    return jnp.stack([birth, gender, age, covid, const], axis=-1)

def make_rnd_data(seed, num_donors=30, num_timesteps=12):
    seed_cov, seed_sample = jr.split(seed)
    true_params = make_true_covariate_params()
    covariates = make_rnd_covariates(seed_cov, num_donors, num_timesteps)
    states, emissions = vmap(poisson_hmm.sample, in_axes=(None, None, 0, 0))(
        true_params, num_timesteps, jr.split(seed_sample, num_donors), covariates)
    return true_params, states, emissions, covariates

# -----------------------------------------------------------------------------

def test_covariate_fit_makes_progress(num_iters=200, log_every=50):
    """ELBO at the last checkpoint is not below the first one."""
    seed_data, seed_init = jr.split(jr.PRNGKey(2718))
    _, _, emissions, covariates = make_rnd_data(seed_data)

    init_params = poisson_hmm.initialize_covariate_model(
        seed_init, 'quantile', 3, 5, emissions=emissions)
    fitted_params, elbos = poisson_hmm.fit_covariate_svi(
        init_params, emissions, covariates,
        num_iters=num_iters, log_every=log_every, verbose=False)

    # Checkpoints at 0, 50, 100, 150 and the last iteration
    assert elbos.shape == (5,)
    assert jnp.all(jnp.isfinite(elbos))
    assert elbos[-1] >= elbos[0] - 1e-3 * jnp.abs(elbos[0])
    assert jnp.all(fitted_params.rates > 0.)

    # The final ELBO matches the fitted parameters up to one Adam step
    final_elbo = poisson_hmm.covariate_elbo(fitted_params, emissions, covariates)
    assert final_elbo >= elbos[0]

def test_covariate_fit_is_repeatable(num_iters=50):
    """Consecutive fits from the same initial parameters share no state."""
    seed_data, seed_init = jr.split(jr.PRNGKey(161))
    _, _, emissions, covariates = make_rnd_data(seed_data, num_donors=10, num_timesteps=6)
    init_params = poisson_hmm.initialize_covariate_model(seed_init, 'random', 3, 5)

    params_1, elbos_1 = poisson_hmm.fit_covariate_svi(
        init_params, emissions, covariates, num_iters=num_iters, log_every=10, verbose=False)
    params_2, elbos_2 = poisson_hmm.fit_covariate_svi(
        init_params, emissions, covariates, num_iters=num_iters, log_every=10, verbose=False)

    assert jnp.allclose(elbos_1, elbos_2)
    assert all(jnp.allclose(a, b) for a, b in zip(params_1, params_2))

def test_covariate_fit_then_decode(num_iters=300):
    """Fitted parameters decode to valid, non-constant paths."""
    seed_data, seed_init = jr.split(jr.PRNGKey(5))
    _, _, emissions, covariates = make_rnd_data(seed_data, num_donors=40)

    init_params = poisson_hmm.initialize_covariate_model(
        seed_init, 'quantile', 3, 5, emissions=emissions)
    params, _ = poisson_hmm.fit_covariate_svi(
        init_params, emissions, covariates, num_iters=num_iters, log_every=100, verbose=False)
    paths = poisson_hmm.most_likely_states(params, emissions, covariates)

    assert paths.shape == emissions.shape
    assert jnp.all((paths >= 0) & (paths < 3))
    assert jnp.unique(paths).size > 1

def test_divergence_reports_iteration():
    """A non-finite covariate poisons the ELBO at the first iteration."""
    _, _, emissions, covariates = make_rnd_data(jr.PRNGKey(0), num_donors=4, num_timesteps=5)
    covariates = covariates.at[0, 0, 0].set(jnp.inf)
    init_params = poisson_hmm.initialize_covariate_model(jr.PRNGKey(1), 'constant', 3, 5)

    with pytest.raises(poisson_hmm.TrainingDivergenceError) as excinfo:
        poisson_hmm.fit_covariate_svi(
            init_params, emissions, covariates, num_iters=10, verbose=False)

    assert excinfo.value.iteration == 0
    assert jnp.allclose(excinfo.value.last_params.rates, init_params.rates, atol=1e-5)

def test_divergence_keeps_last_finite_params(num_iters=50):
    """Parameters that drift into a NaN region are not the reported snapshot."""
    init_params = poisson_hmm.initialize_covariate_model(jr.PRNGKey(1), 'constant', 3, 5)

    def loss_fn(params, seed):
        return -params.rates.sum() + jnp.where(params.rates[0] > 1.05, jnp.nan, 0.)

    with pytest.raises(poisson_hmm.TrainingDivergenceError) as excinfo:
        poisson_hmm.fit_svi(loss_fn, init_params, num_iters=num_iters, verbose=False)

    assert excinfo.value.iteration > 0
    last_params = excinfo.value.last_params
    assert last_params.rates[0] <= 1.05
    assert jnp.isfinite(loss_fn(last_params, None))

def test_fit_rejects_nonpositive_log_every():
    init_params = poisson_hmm.initialize_covariate_model(jr.PRNGKey(1), 'constant', 3, 5)
    with pytest.raises(ValueError):
        poisson_hmm.fit_svi(lambda params, seed: -params.rates.sum(), init_params,
                            num_iters=5, log_every=0, verbose=False)

def test_fit_rejects_mismatched_shapes():
    init_params = poisson_hmm.initialize_covariate_model(jr.PRNGKey(1), 'constant', 3, 5)
    with pytest.raises(poisson_hmm.ShapeMismatchError):
        poisson_hmm.fit_covariate_svi(
            init_params, jnp.zeros((4, 6)), jnp.zeros((4, 5, 5)), num_iters=1, verbose=False)

def test_unconstrained_round_trip():
    params = poisson_hmm.initialize_covariate_model(jr.PRNGKey(3), 'random', 3, 5)
    uparams = poisson_hmm.to_unconstrained(params)
    recovered = poisson_hmm.from_unconstrained(uparams)

    assert jnp.allclose(uparams.transition_weights, params.transition_weights)
    assert all(jnp.allclose(a, b, atol=1e-5) for a, b in zip(params, recovered))

def test_initialize_unknown_method():
    with pytest.raises(ValueError):
        poisson_hmm.initialize_covariate_model(jr.PRNGKey(0), 'kmeans', 3, 5)

# -----------------------------------------------------------------------------

def test_static_fit_makes_progress(num_iters=300, log_every=100):
    seed_data, seed_init, seed_fit = jr.split(jr.PRNGKey(31415), 3)
    _, _, emissions, _ = make_rnd_data(seed_data, num_donors=30, num_timesteps=10)

    init_vparams = poisson_hmm.initialize_variational_params(seed_init, 3)
    prior_params = poisson_hmm.initialize_prior_from_scalar_values(3)
    vparams, elbos = poisson_hmm.fit_static_svi(
        init_vparams, prior_params, emissions, seed_fit,
        num_iters=num_iters, num_particles=4, log_every=log_every, verbose=False)

    assert elbos.shape == (4,)
    assert jnp.all(jnp.isfinite(elbos))
    assert elbos[-1] >= elbos[0] - 0.05 * jnp.abs(elbos[0])
    assert all(jnp.all(field > 0.) for field in vparams)

    params = poisson_hmm.posterior_mean(vparams)
    assert jnp.allclose(params.initial_probs.sum(), 1., atol=1e-6)
    assert jnp.allclose(params.transition_probs.sum(axis=-1), 1., atol=1e-6)

    paths = poisson_hmm.most_likely_states(params, emissions)
    assert paths.shape == emissions.shape

def test_kl_to_prior():
    vparams = poisson_hmm.initialize_variational_params(jr.PRNGKey(0), 3, concentration=2.)
    prior_params = poisson_hmm.initialize_prior_from_scalar_values(3)

    assert poisson_hmm.kl_to_prior(vparams, prior_params) > 0.
    assert jnp.allclose(poisson_hmm.kl_to_prior(poisson_hmm.VariationalParameters(*prior_params), prior_params), 0., atol=1e-5)
