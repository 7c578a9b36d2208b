"""Assemble donation-count and covariate arrays for the Poisson HMM."""
from pathlib import Path

import numpy as onp
import jax.numpy as jnp

from typing import Optional, Sequence, Tuple, TypeVar

Pathlike = TypeVar('Pathlike', Path, str)

__all__ = [
    'COVARIATE_NAMES',
    'COVID_YEARS',
    'make_covariates',
    'load_registry',
    'save_registry',
]

COVARIATE_NAMES = ('birth_year_norm', 'gender_code', 'age_norm', 'covid_indicator', 'const')

COVID_YEARS = (2020, 2021)

def _standardize(x):
    std = x.std()
    return (x - x.mean()) / (std if std > 0 else 1.)

def make_covariates(birth_years: Sequence[float],
                    gender_codes: Sequence[float],
                    years: Sequence[int],
                    covid_years: Sequence[int]=COVID_YEARS) -> jnp.ndarray:
    """Build the per-donor, per-year covariate tensor.

    Birth year and age are standardized over the whole panel. Columns follow
    COVARIATE_NAMES; the last column is constant 1.

    Arguments
        birth_years[n,]
        gender_codes[n,]
        years[t,]: Calendar year of each time step.
        covid_years: Years flagged by the COVID-period indicator.

    Returns
        covariates[n,t,5]
    """
    birth_years = onp.asarray(birth_years, dtype=float)
    gender_codes = onp.asarray(gender_codes, dtype=float)
    years = onp.asarray(years)

    if birth_years.shape != gender_codes.shape:
        raise ValueError(
            f'Expected one gender code per birth year, received {gender_codes.shape} and {birth_years.shape}.')

    num_donors, num_timesteps = len(birth_years), len(years)
    per_donor = lambda x: onp.broadcast_to(x[:, None], (num_donors, num_timesteps))

    ages = years[None, :] - birth_years[:, None]
    covid = onp.isin(years, covid_years).astype(float)

    covariates = onp.stack([
        per_donor(_standardize(birth_years)),
        per_donor(gender_codes),
        _standardize(ages),
        onp.broadcast_to(covid[None, :], (num_donors, num_timesteps)),
        onp.ones((num_donors, num_timesteps)),
    ], axis=-1)

    return jnp.asarray(covariates, dtype=jnp.float32)

def load_registry(path: Pathlike) -> Tuple[jnp.ndarray, Optional[jnp.ndarray]]:
    """Load `obs[n,t]` and, if present, `cov[n,t,c]` from an .npz file."""
    with onp.load(path) as f:
        if 'obs' not in f.files:
            raise KeyError(f"Expected an 'obs' array in {path}, found {f.files}.")
        emissions = jnp.asarray(f['obs'], dtype=jnp.int32)
        covariates = jnp.asarray(f['cov'], dtype=jnp.float32) if 'cov' in f.files else None
    return emissions, covariates

def save_registry(path: Pathlike, emissions, covariates=None) -> None:
    """Write `obs[n,t]` and optional `cov[n,t,c]` to an .npz file."""
    arrays = {'obs': onp.asarray(emissions)}
    if covariates is not None:
        arrays['cov'] = onp.asarray(covariates)
    onp.savez(path, **arrays)
