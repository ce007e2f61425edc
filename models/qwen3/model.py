from functools import partial
import logging

import jax
import jax.numpy as jnp
from flax import struct
from jax import jit

from models.errors import ConfigError, ContextOverflowError, InvalidTokenError
from utils.ops import (
    rms_norm,
    apply_rotary_emb,
    grouped_query_attention,
    feed_forward,
    kv_head_map,
    precompute_freqs_cis,
    update_cache_row,
)
from utils.kvcache import KVCache
from .config import ModelConfig
from .load import LayerWeights, WeightStore

logger = logging.getLogger(__name__)


@struct.dataclass
class RunState:
    """Scratch activations of the most recent step.

    Passed into every step and returned with the activations of that step.
    Only `att[:, :position + 1]` is live.
    """
    x: jax.Array  # [dim] - residual stream after the last layer
    xq: jax.Array  # [n_heads, head_dim] - rotated queries of the last layer
    xk: jax.Array  # [n_kv_heads, head_dim] - rotated keys of the last layer
    xv: jax.Array  # [n_kv_heads, head_dim] - values of the last layer
    att: jax.Array  # [n_heads, seq_len] - attention weights of the last layer
    logits: jax.Array  # [vocab_size]

    @classmethod
    def new(cls, config: ModelConfig) -> "RunState":
        zeros = lambda *shape: jnp.zeros(shape, dtype=config.dtype)
        return cls(
            x=zeros(config.dim),
            xq=zeros(config.n_heads, config.head_dim),
            xk=zeros(config.n_kv_heads, config.head_dim),
            xv=zeros(config.n_kv_heads, config.head_dim),
            att=zeros(config.n_heads, config.seq_len),
            logits=jnp.zeros((config.vocab_size,), dtype=jnp.float32),
        )


def transformer_block(
    layer: LayerWeights,
    x: jax.Array,
    freqs_cis: jax.Array,
    k_cache: jax.Array,
    v_cache: jax.Array,
    layer_idx: int,
    position: jax.Array,
    config: ModelConfig,
):
    """One Qwen-3 decoder block for a single token.

    Returns:
        Tuple of (x, k_cache, v_cache, (xq, xk, xv, att)).
    """
    # Attention block
    h_norm = rms_norm(x, layer.attention_norm, config.rms_norm_eps)
    params = layer.attention

    xq = jnp.einsum("d,dh->h", h_norm, params.wq).reshape(config.n_heads, config.head_dim)
    xk = jnp.einsum("d,dh->h", h_norm, params.wk).reshape(config.n_kv_heads, config.head_dim)
    xv = jnp.einsum("d,dh->h", h_norm, params.wv).reshape(config.n_kv_heads, config.head_dim)

    # Qwen-3 normalizes every query/key head before the rotation
    xq = rms_norm(xq, params.q_norm, config.rms_norm_eps)
    xk = rms_norm(xk, params.k_norm, config.rms_norm_eps)

    xq = apply_rotary_emb(xq, freqs_cis, style=config.rope_style)
    xk = apply_rotary_emb(xk, freqs_cis, style=config.rope_style)

    k_cache = update_cache_row(k_cache, xk, layer_idx, position)
    v_cache = update_cache_row(v_cache, xv, layer_idx, position)

    attn_output, att = grouped_query_attention(
        xq,
        k_cache[layer_idx],
        v_cache[layer_idx],
        position,
        kv_head_map(config.n_heads, config.n_kv_heads),
    )
    x = x + jnp.einsum("h,hd->d", attn_output, params.wo)  # Residual connection

    # Feed-forward block
    h_ffn_norm = rms_norm(x, layer.ffn_norm, config.rms_norm_eps)
    x = x + feed_forward(h_ffn_norm, layer.feed_forward)

    return x, k_cache, v_cache, (xq, xk, xv, att)


@partial(jit, donate_argnames=["k_cache", "v_cache"])
def forward_step(
    weights: WeightStore,
    freqs_cis: jax.Array,
    token_id: jax.Array,
    position: jax.Array,
    k_cache: jax.Array,
    v_cache: jax.Array,
    state: RunState,
):
    """
    Runs every layer for one token and writes its keys/values at `position`.

    The model shape travels as static pytree metadata on `weights`, so this
    compiles once per model; token and position are traced.

    Returns:
        Tuple of (logits [vocab_size], k_cache, v_cache, state).
    """
    config = weights.config
    x = weights.tok_embeddings[token_id]
    rope = freqs_cis[position]

    for layer_idx in range(config.n_layers):
        x, k_cache, v_cache, (xq, xk, xv, att) = transformer_block(
            weights.layer(layer_idx), x, rope, k_cache, v_cache, layer_idx, position, config
        )

    h = rms_norm(x, weights.norm, config.rms_norm_eps)
    logits = jnp.einsum("d,dv->v", h, weights.classifier).astype(jnp.float32)

    state = state.replace(x=x, xq=xq, xk=xk, xv=xv, att=att.astype(state.att.dtype), logits=logits)
    return logits, k_cache, v_cache, state


class ForwardEngine:
    """Single-sequence driver of the forward pass.

    The engine owns its RunState and rotary tables; the WeightStore is shared
    read-only, so independent sequences use independent engines over the same
    weights. The KVCache is supplied by the caller on every step.
    """

    def __init__(self, weights: WeightStore):
        self.weights = weights
        self.config = weights.config
        self.freqs_cis = precompute_freqs_cis(
            self.config.head_dim,
            self.config.seq_len,
            self.config.rope_theta,
            dtype=jnp.float32,
        ).astype(self.config.dtype)
        self.state = RunState.new(self.config)

    def new_cache(self) -> KVCache:
        """Allocates an empty KVCache sized for this engine's model."""
        return KVCache.new(self.config)

    def _check_cache(self, cache: KVCache):
        expected = (self.config.n_layers, self.config.seq_len, self.config.n_kv_heads, self.config.head_dim)
        if cache.k.shape != expected or cache.v.shape != expected:
            raise ConfigError(f"KVCache shape {cache.k.shape} does not match the model, expected {expected}")

    def step(self, token_id: int, position: int, cache: KVCache) -> jax.Array:
        """
        Computes next-token logits for `token_id` at `position`.

        Writes the token's keys/values into `cache` at row `position` for
        every layer and sets `cache.length` to `position + 1`. Nothing is
        written when a precondition fails.

        Raises:
            ContextOverflowError: position outside [0, seq_len).
            InvalidTokenError: token_id outside [0, vocab_size).
            ConfigError: cache shape does not match the model.

        Returns:
            Logits of shape [vocab_size] (float32).
        """
        token_id = int(token_id)
        position = int(position)
        if not 0 <= position < self.config.seq_len:
            raise ContextOverflowError(position, self.config.seq_len)
        if not 0 <= token_id < self.config.vocab_size:
            raise InvalidTokenError(f"token id {token_id} is outside the vocabulary [0, {self.config.vocab_size})")
        self._check_cache(cache)

        logger.debug(f"step token={token_id} position={position}")
        logits, cache.k, cache.v, self.state = forward_step(
            self.weights,
            self.freqs_cis,
            jnp.asarray(token_id, dtype=jnp.int32),
            jnp.asarray(position, dtype=jnp.int32),
            cache.k,
            cache.v,
            self.state,
        )
        cache.length = position + 1
        return logits
