"""Fit a Poisson HMM to a donor registry and decode each donor's state path.

Expects an .npz file with an `obs` array of shape (num_donors, num_years) and,
for the covariate model, a `cov` array of shape (num_donors, num_years, 5).

Usage
    python scripts/fit_donors.py --data registry.npz --model covariate --num_iters 4000
"""

import os
import argparse
from datetime import datetime
from pathlib import Path

import numpy as onp
import jax.numpy as jnp
import jax.random as jr

from donorhmm import poisson_hmm
from donorhmm import (load_registry, save_params,
                      state_occupancy, switch_rates, transition_counts,
                      render_trajectory)

DATADIR = os.environ.get('DATADIR', '.')
TEMPDIR = os.environ.get('TEMPDIR', './output')

# -------------------------------------
# Suppress JAX/TFD warning: ...`check_dtypes` is deprecated... message
import logging
class CheckTypesFilter(logging.Filter):
    def filter(self, record):
        return "check_types" not in record.getMessage()

logger = logging.getLogger()
logger.addFilter(CheckTypesFilter())

# -------------------------------------

parser = argparse.ArgumentParser(description='Fit and decode a Poisson HMM of yearly donation counts')
parser.add_argument(
    '--data', type=str, default=os.path.join(DATADIR, 'registry.npz'),
    help='Path to .npz file with `obs` and, optionally, `cov` arrays.')
parser.add_argument(
    '--out_dir', type=str, default=TEMPDIR,
    help='Directory to write fitted parameters and decoded paths.')
parser.add_argument(
    '--model', type=str, default='covariate',
    choices=['covariate', 'static'],
    help='Covariate-driven or static initial/transition distributions.')
parser.add_argument(
    '--num_states', type=int, default=3,
    help='Number of latent states.')
parser.add_argument(
    '--init_method', type=str, default='quantile',
    choices=['constant', 'random', 'quantile'],
    help='Initialization of the covariate model.')
parser.add_argument(
    '--seed', type=int, default=20230401,
    help='PRNG seed for initialization and posterior draws.')
parser.add_argument(
    '--num_iters', type=int, default=None,
    help='Number of optimization steps. Default: 4000 (covariate), 1000 (static).')
parser.add_argument(
    '--learning_rate', type=float, default=None,
    help='Adam learning rate. Default: 0.03 (covariate), 0.05 (static).')
parser.add_argument(
    '--log_every', type=int, default=None,
    help='Iterations between ELBO checkpoints. Default: 400 (covariate), 100 (static).')
parser.add_argument(
    '--num_particles', type=int, default=1,
    help='Posterior draws per ELBO estimate (static model only).')
parser.add_argument(
    '--show', type=int, default=5,
    help='Number of donor trajectories to print.')

DEFAULTS = {
    'covariate': dict(num_iters=4000, learning_rate=0.03, log_every=400),
    'static': dict(num_iters=1000, learning_rate=0.05, log_every=100),
}

def main():
    args = parser.parse_args()
    hparams = {k: (getattr(args, k) if getattr(args, k) is not None else v)
               for k, v in DEFAULTS[args.model].items()}

    out_dir = Path(args.out_dir) / datetime.now().strftime('%y%m%d-%H%M%S')
    out_dir.mkdir(parents=True, exist_ok=True)

    emissions, covariates = load_registry(args.data)
    print(f'Loaded {emissions.shape[0]} donors over {emissions.shape[1]} years from {args.data}.')

    seed_init, seed_fit = jr.split(jr.PRNGKey(args.seed))

    if args.model == 'covariate':
        if covariates is None:
            raise ValueError(f"Covariate model requires a `cov` array in {args.data}.")
        init_params = poisson_hmm.initialize_covariate_model(
            seed_init, args.init_method, args.num_states, covariates.shape[-1], emissions=emissions)
        params, elbos = poisson_hmm.fit_covariate_svi(
            init_params, emissions, covariates, **hparams)
        save_params(out_dir / 'params.npz', params)
    else:
        init_vparams = poisson_hmm.initialize_variational_params(
            seed_init, args.num_states, emissions=emissions)
        prior_params = poisson_hmm.initialize_prior_from_scalar_values(args.num_states)
        vparams, elbos = poisson_hmm.fit_static_svi(
            init_vparams, prior_params, emissions, seed_fit,
            num_particles=args.num_particles, **hparams)
        save_params(out_dir / 'vparams.npz', vparams)
        params = poisson_hmm.posterior_mean(vparams)
        save_params(out_dir / 'params.npz', params)
        covariates = None

    print(f'ELBO: {elbos[0]:.2f} -> {elbos[-1]:.2f}')
    print(f'Fitted rates: {onp.array2string(onp.asarray(params.rates), precision=3)}')

    paths = poisson_hmm.most_likely_states(params, emissions, covariates)
    onp.savez(out_dir / 'paths.npz', paths=onp.asarray(paths), elbos=onp.asarray(elbos))

    occupancy = state_occupancy(paths, args.num_states)
    print('State occupancy per year:')
    print(onp.array2string(onp.asarray(occupancy), precision=3))
    print('Decoded transition counts:')
    print(onp.asarray(transition_counts(paths, args.num_states)))
    print(f'Mean switch rate: {float(jnp.mean(switch_rates(paths))):.3f}')

    for n in range(min(args.show, len(paths))):
        print(f'donor {n}: {render_trajectory(paths[n], emissions[n], rates=params.rates)}')

    print(f'Saved results to {out_dir}.')

if __name__ == '__main__':
    main()
