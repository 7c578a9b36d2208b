"""Save and load fitted parameters as NumPy .npz records.

Records are self-describing: a `kind` entry names the parameter container and
every other entry is one of its fields. They can be decoded without access to
the training run that produced them.
"""

from pathlib import Path
import numpy as onp
import jax.numpy as jnp

from donorhmm.poisson_hmm import (CovariateParameters,
                                  StaticParameters,
                                  VariationalParameters,
                                  PriorParameters)

__all__ = [
    'save_params',
    'load_params',
]

PARAMETER_KINDS = {
    'covariate': CovariateParameters,
    'static': StaticParameters,
    'variational': VariationalParameters,
    'prior': PriorParameters,
}

def _kind_of(params):
    for kind, cls in PARAMETER_KINDS.items():
        if type(params) is cls:
            return kind
    raise TypeError(f'Cannot save parameters of type {type(params).__name__}.')

def save_params(path, params):
    """Write `params` to `path`. Returns the path written to, ending in .npz."""
    path = Path(path)
    if path.suffix != '.npz':
        path = path.with_suffix(path.suffix + '.npz')

    kind = _kind_of(params)
    arrays = {name: onp.asarray(value) for name, value in zip(params._fields, params)}
    onp.savez(path, kind=onp.asarray(kind), **arrays)
    return path

def load_params(path):
    """Read a parameter record written by `save_params`."""
    with onp.load(path) as record:
        kind = str(record['kind'])
        if kind not in PARAMETER_KINDS:
            raise ValueError(f"Unknown parameter kind '{kind}' in {path}.")

        cls = PARAMETER_KINDS[kind]
        missing = [name for name in cls._fields if name not in record.files]
        if missing:
            raise ValueError(f'{path} is missing fields {missing} for {cls.__name__}.')

        return cls(**{name: jnp.asarray(record[name]) for name in cls._fields})
