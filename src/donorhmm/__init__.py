"""Covariate-driven Poisson HMMs of blood-donation registries."""

from donorhmm import poisson_hmm

from donorhmm.data import (
    COVARIATE_NAMES,
    make_covariates,
    load_registry,
    save_registry,
)

from donorhmm.checkpoint import (
    save_params,
    load_params,
)

from donorhmm.diagnostics import (
    state_occupancy,
    transition_counts,
    switch_rates,
    render_trajectory,
)
