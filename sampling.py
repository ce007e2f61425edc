import jax
import jax.numpy as jnp
from jax import random
import abc # For Abstract Base Class

from models.errors import InvalidPolicyError

"""Sampling functions for the model.
Every sampler maps a logits vector and a PRNG key to one token id; the same
key always yields the same token.
"""

def temperature_scale(logits: jax.Array, temperature: float) -> jax.Array:
    """
    Scales logits by temperature.

    Args:
        logits: The input logits array (usually shape [vocab_size]).
        temperature: The sampling temperature. Lower values make the distribution
                     sharper, higher values make it flatter. Must be positive.

    Returns:
        The scaled logits.
    """
    return logits / temperature

def sample_top_p(logits: jax.Array, p: float, key: jax.Array, temperature: float = 1.0) -> jax.Array:
    """
    Samples using nucleus sampling (top-p).

    Sorts the tempered distribution, keeps the smallest prefix of the most
    probable tokens whose cumulative probability reaches p, and samples from
    the renormalized prefix.

    Args:
        logits: The input logits array (usually shape [vocab_size]).
        p: The cumulative probability threshold for nucleus sampling.
        key: JAX PRNG key for random sampling.
        temperature: Sampling temperature, applied before filtering.

    Returns:
        The sampled token ID (scalar integer array).
    """
    scaled_logits = temperature_scale(logits.astype(jnp.float32), temperature)
    if p >= 1.0:
        # Whole vocabulary; no float cumsum rounding can drop the tail
        return random.categorical(key, scaled_logits)

    # Sort logits in descending order
    sorted_indices = jnp.argsort(scaled_logits)[::-1]
    sorted_logits = scaled_logits[sorted_indices]

    probs = jax.nn.softmax(sorted_logits)
    cumulative_probs = jnp.cumsum(probs, axis=-1)

    # A token survives while the mass *before* it is still short of p,
    # so the most probable token is always kept.
    indices_to_remove = cumulative_probs >= p
    indices_to_remove = jnp.roll(indices_to_remove, 1)
    indices_to_remove = indices_to_remove.at[0].set(False)

    updates = jnp.where(indices_to_remove, -jnp.inf, sorted_logits)
    # Undo the sort so the sampled index is a vocabulary id
    scatter_indices = jnp.argsort(sorted_indices)
    logits_filtered = updates[scatter_indices]

    return random.categorical(key, logits_filtered)

class Sampler(abc.ABC):
    @abc.abstractmethod
    def sample(self, logits: jax.Array, key: jax.Array) -> jax.Array:
        """Samples a token from the logits distribution."""
        pass

class GreedySampler(Sampler):
    """Selects the token with the highest probability (argmax, lowest id on ties)."""
    def sample(self, logits: jax.Array, key: jax.Array) -> jax.Array:
        # key is not used for greedy, but kept for interface consistency
        return jnp.argmax(logits, axis=-1)

    def __repr__(self):
        return "GreedySampler()"

class TemperatureSampler(Sampler):
    """Samples from the distribution after applying temperature."""
    def __init__(self, temperature: float):
        if not temperature > 0:
            raise InvalidPolicyError(f"temperature must be positive, got {temperature}")
        self.temperature = float(temperature)

    def sample(self, logits: jax.Array, key: jax.Array) -> jax.Array:
        scaled_logits = temperature_scale(logits.astype(jnp.float32), self.temperature)
        return random.categorical(key, scaled_logits, axis=-1)

    def __repr__(self):
        return f"TemperatureSampler(temperature={self.temperature})"

class TopPSampler(Sampler):
    """Samples using nucleus (top-p) sampling. Temperature is applied internally by sample_top_p."""
    def __init__(self, p: float, temperature: float = 1.0):
        if not 0 < p <= 1.0:
            raise InvalidPolicyError(f"p must be in (0, 1], got {p}")
        if not temperature > 0:
            raise InvalidPolicyError(f"temperature must be positive, got {temperature}")
        self.p = float(p)
        self.temperature = float(temperature)

    def sample(self, logits: jax.Array, key: jax.Array) -> jax.Array:
        return sample_top_p(logits, self.p, key, temperature=self.temperature)

    def __repr__(self):
        return f"TopPSampler(p={self.p}, temperature={self.temperature})"


def sample(logits: jax.Array, policy: Sampler, key: jax.Array) -> int:
    """Draws one token id from `logits` under `policy`."""
    return int(policy.sample(logits, key))


def make_sampler(temperature: float = 0.0, top_p: float = 1.0) -> Sampler:
    """
    Maps invocation settings to a sampling policy.

    temperature 0 selects greedy decoding; otherwise top_p < 1 selects nucleus
    sampling and top_p == 1 plain temperature sampling.
    """
    if temperature < 0:
        raise InvalidPolicyError(f"temperature must be non-negative, got {temperature}")
    if not 0 < top_p <= 1.0:
        raise InvalidPolicyError(f"p must be in (0, 1], got {top_p}")
    if temperature == 0:
        return GreedySampler()
    if top_p < 1.0:
        return TopPSampler(p=top_p, temperature=temperature)
    return TemperatureSampler(temperature)
