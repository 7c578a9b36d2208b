"""Input and parameter checks run on concrete arrays, outside of jit."""

import numpy as onp
import jax.numpy as jnp

from donorhmm.poisson_hmm._model import CovariateParameters, StaticParameters
from donorhmm.utils import simplex_error

__all__ = [
    'ShapeMismatchError',
    'ParameterValidityError',
    'TrainingDivergenceError',
    'check_inputs',
    'check_decodable',
]

class ShapeMismatchError(ValueError):
    """Raised when count and covariate arrays do not line up."""

class ParameterValidityError(ValueError):
    """Raised when parameters cannot define a valid Poisson HMM."""

class TrainingDivergenceError(RuntimeError):
    """Raised when the ELBO or its gradient becomes NaN or infinite.

    Attributes
        iteration (int): Iteration at which the non-finite value appeared.
        last_params: Last parameter snapshot with finite loss and gradients.
    """
    def __init__(self, iteration, last_params, message=None):
        self.iteration = iteration
        self.last_params = last_params
        if message is None:
            message = f'Iteration {iteration}: non-finite ELBO or gradient detected.'
        super().__init__(message)

def check_inputs(emissions, covariates=None, num_covariates=None):
    """Validate batched counts and covariates before any computation.

    Arguments
        emissions[n,t]: Non-negative donation counts.
        covariates[n,t,c] or None
        num_covariates (int or None): Expected covariate dimension, if known.

    Returns
        emissions[n,t] as an int32 array
        covariates[n,t,c] as a float array, or None
    """
    _emissions = onp.asarray(emissions)
    if _emissions.ndim != 2:
        raise ShapeMismatchError(
            f'Expected emissions with shape (num_donors, num_timesteps), received {_emissions.shape}.')
    if _emissions.shape[1] < 1:
        raise ShapeMismatchError('Expected at least one time step per donor.')
    if onp.any(_emissions < 0):
        raise ValueError('Donation counts must be non-negative.')
    if not onp.all(onp.mod(_emissions, 1) == 0):
        raise ValueError('Donation counts must be whole numbers.')

    if covariates is None:
        if num_covariates:
            raise ValueError(f'Expected covariates with {num_covariates} columns, received None.')
        return jnp.asarray(_emissions, dtype=jnp.int32), None

    _covariates = onp.asarray(covariates)
    if _covariates.ndim != 3:
        raise ShapeMismatchError(
            f'Expected covariates with shape (num_donors, num_timesteps, num_covariates), received {_covariates.shape}.')
    if _covariates.shape[:2] != _emissions.shape:
        raise ShapeMismatchError(
            f'Emissions shape {_emissions.shape} does not match covariates shape {_covariates.shape[:2]} '
            f'along (num_donors, num_timesteps).')
    if (num_covariates is not None) and (_covariates.shape[-1] != num_covariates):
        raise ShapeMismatchError(
            f'Expected {num_covariates} covariates, received {_covariates.shape[-1]}.')

    return jnp.asarray(_emissions, dtype=jnp.int32), jnp.asarray(_covariates, dtype=jnp.float32)

def check_decodable(params, atol=1e-6):
    """Raise ParameterValidityError unless `params` define a valid Poisson HMM."""
    rates = onp.asarray(params.rates)
    if not onp.all(onp.isfinite(rates)) or onp.any(rates <= 0.):
        raise ParameterValidityError(
            f'Poisson rates must be finite and strictly positive, received {rates}.')

    if isinstance(params, StaticParameters):
        for name in ('initial_probs', 'transition_probs'):
            probs = onp.asarray(getattr(params, name))
            if not onp.all(onp.isfinite(probs)) or onp.any(probs < 0.):
                raise ParameterValidityError(f'`params.{name}` has negative or non-finite entries.')
            err = float(simplex_error(probs))
            if err > atol:
                raise ParameterValidityError(
                    f'`params.{name}` rows must sum to 1, max deviation {err:.2e} > {atol:.0e}.')

    elif isinstance(params, CovariateParameters):
        for name in ('initial_weights', 'initial_bias', 'transition_weights', 'transition_bias'):
            if not onp.all(onp.isfinite(onp.asarray(getattr(params, name)))):
                raise ParameterValidityError(f'`params.{name}` has non-finite entries.')

    else:
        raise TypeError(
            f'Expected CovariateParameters or StaticParameters, received {type(params).__name__}.')
