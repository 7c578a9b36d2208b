import jax.numpy as jnp

from donorhmm import state_occupancy, transition_counts, switch_rates, render_trajectory

PATHS = jnp.array([[0, 0, 1, 1, 0],
                   [2, 2, 2, 2, 2],
                   [0, 1, 2, 1, 0]])

def test_state_occupancy():
    occupancy = state_occupancy(PATHS, 3)
    assert occupancy.shape == (5, 3)
    assert jnp.allclose(occupancy.sum(axis=-1), 1.)
    assert jnp.allclose(occupancy[0], jnp.array([2/3, 0., 1/3]))

def test_transition_counts():
    counts = transition_counts(PATHS, 3)
    assert counts.sum() == PATHS.shape[0] * (PATHS.shape[1] - 1)
    assert counts[2, 2] == 4
    assert counts[0, 1] == 2
    assert counts[1, 0] == 2

def test_switch_rates():
    assert jnp.allclose(switch_rates(PATHS), jnp.array([0.5, 0., 1.]))
    assert jnp.array_equal(switch_rates(PATHS[:, :1]), jnp.zeros(3))

def test_render_trajectory():
    assert render_trajectory(PATHS[0]) == 'S0 -> S0 -> S1 -> S1 -> S0'
    assert render_trajectory([0, 1], emissions=[0, 2], years=[2019, 2020],
                             labels=('non-donor', 'light')) \
        == '2019:non-donor[0] -> 2020:light[2]'
    assert render_trajectory([0, 3], labels=None) == 'S0 -> S3'

def test_render_trajectory_names_states_by_rate():
    """State 1 has the highest rate, so it is the heavy-donor state."""
    rates = jnp.array([0.01, 3.0, 1.0])
    assert render_trajectory([0, 1, 2], rates=rates) == 'non-donor -> heavy -> light'
    assert render_trajectory([0, 1], rates=jnp.array([0.1, 2.0])) == 'S0 -> S1'
