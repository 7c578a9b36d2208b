"""Summaries of decoded state paths."""

import numpy as onp
import jax.numpy as jnp

from jaxtyping import Array, Float, Int

DEFAULT_LABELS = ('non-donor', 'light', 'heavy')

def state_occupancy(paths: Int[Array, "N T"], num_states: int) -> Float[Array, "T K"]:
    """Fraction of donors in each state at each time step."""
    return jnp.mean(paths[..., None] == jnp.arange(num_states), axis=0)

def transition_counts(paths: Int[Array, "N T"], num_states: int) -> Int[Array, "K K"]:
    """Number of decoded transitions from state k (rows) to state j (columns)."""
    one_hot = (paths[..., None] == jnp.arange(num_states)).astype(jnp.int32)
    return jnp.einsum('ntk,ntj->kj', one_hot[:, :-1], one_hot[:, 1:])

def switch_rates(paths: Int[Array, "N T"]) -> Float[Array, "N"]:
    """Fraction of steps at which each donor's decoded state changes."""
    if paths.shape[-1] < 2:
        return jnp.zeros(paths.shape[0])
    return jnp.mean(paths[:, 1:] != paths[:, :-1], axis=-1)

def rate_ordered_labels(rates, names=DEFAULT_LABELS):
    """Name each state by the rank of its Poisson rate, lowest rate first."""
    if len(rates) != len(names):
        return None
    ranks = onp.argsort(onp.argsort(onp.asarray(rates)))
    return tuple(names[r] for r in ranks)

def render_trajectory(path, emissions=None, labels=None, years=None, rates=None) -> str:
    """Render one donor's decoded trajectory as a single line of text.

    Each step is shown as `label`, or `label[count]` if `emissions` is given,
    optionally prefixed by its year. Without `labels`, three states are named
    non-donor/light/heavy by their `rates`; otherwise states print as `S{k}`.
    """
    path = [int(z) for z in path]
    if labels is None and rates is not None:
        labels = rate_ordered_labels(rates)
    label_of = (lambda z: labels[z]) if labels is not None else (lambda z: f'S{z}')

    tokens = []
    for t, state in enumerate(path):
        token = label_of(state)
        if emissions is not None:
            token += f'[{int(emissions[t])}]'
        if years is not None:
            token = f'{years[t]}:{token}'
        tokens.append(token)
    return ' -> '.join(tokens)
