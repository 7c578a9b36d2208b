"""Log-space helpers shared by the forward and Viterbi recursions."""

from jax import jit
import jax.numpy as jnp
from jax.nn import log_softmax
from jax.scipy.special import logsumexp

from jaxtyping import Array, Float, Int

from tensorflow_probability.substrates.jax.distributions import Poisson

def log_normalize(logits: Float[Array, "... K"]) -> Float[Array, "... K"]:
    """Map logits to log-probabilities along the last axis."""
    return log_softmax(logits, axis=-1)

def poisson_log_pmf(counts: Int[Array, "..."], rates: Float[Array, "K"]) -> Float[Array, "... K"]:
    """Evaluate log Poisson(counts; rate_k) for every rate.

    A trailing state axis is appended to `counts`, so counts of shape (T,)
    return shape (T, K).
    """
    counts = jnp.asarray(counts, dtype=rates.dtype)
    return Poisson(rate=rates).log_prob(counts[..., None])

@jit
def logsumexp_matvec(log_vec: Float[Array, "K"], log_mat: Float[Array, "K K"]) -> Float[Array, "K"]:
    """Compute log(sum_k exp(log_vec[k] + log_mat[k, j])) for every j."""
    return logsumexp(log_vec[:, None] + log_mat, axis=0)

@jit
def maxplus_matvec(log_vec: Float[Array, "K"], log_mat: Float[Array, "K K"]):
    """Max-product counterpart of `logsumexp_matvec`.

    Returns
        max_scores[j]: max_k (log_vec[k] + log_mat[k, j])
        argmax_scores[j]: lowest k attaining the max
    """
    scores = log_vec[:, None] + log_mat
    return jnp.max(scores, axis=0), jnp.argmax(scores, axis=0)

def simplex_error(probs: Float[Array, "... K"]) -> Float[Array, ""]:
    """Largest absolute deviation of the last-axis sums from one."""
    return jnp.max(jnp.abs(jnp.sum(probs, axis=-1) - 1.))
