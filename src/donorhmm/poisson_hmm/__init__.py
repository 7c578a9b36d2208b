"""Poisson Hidden Markov Model for yearly donation counts, with initial and
transition distributions that are either static or linear-softmax functions
of per-donor, per-year covariates.

Latent state paths are summed out exactly with a log-space forward recursion,
so the ELBO can be differentiated directly and optimized with Adam. The MAP
path of each donor is recovered with the max-product (Viterbi) version of the
same recursion. Like the rest of this codebase, parameters are plain
NamedTuple pytrees and all algorithms are pure functions.
"""

from ._model import (
    CovariateParameters,
    StaticParameters,
    VariationalParameters,
    PriorParameters,
    initial_distribution,
    transition_distribution,
    emission_distribution,
    conditional_log_likelihood,
    log_prob,
    sample,
    posterior_distributions,
    posterior_mean,
    sample_static_params,
    log_prior,
    kl_to_prior,
)

from ._validation import (
    ShapeMismatchError,
    ParameterValidityError,
    TrainingDivergenceError,
    check_inputs,
    check_decodable,
)

from ._algorithms import (
    hmm_filter,
    marginal_log_likelihood,
    viterbi,
    most_likely_states,
    covariate_elbo,
    static_elbo,
    to_unconstrained,
    from_unconstrained,
    fit_svi,
    fit_covariate_svi,
    fit_static_svi,
)

from ._initialization import (
    initialize_covariate_model,
    initialize_variational_params,
    initialize_prior_from_scalar_values,
)
