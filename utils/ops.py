# Shared numerical building blocks for the single-token forward pass (RMSNorm, RoPE, GQA, FFN).
import logging
from functools import partial

import jax
import jax.numpy as jnp
import jax.nn as nn
import jax.lax as lax
import numpy as np
from jax import jit
from flax import struct

logger = logging.getLogger(__name__)


@partial(jit, static_argnames=["head_dim", "end", "dtype"])
def precompute_freqs_cis(
    head_dim: int,
    end: int,
    theta: float = 1000000.0,
    dtype: jnp.dtype = jnp.float32,
) -> jax.Array:
    """
    Precompute the rotational frequency embeddings.

    Args:
        head_dim: Dimension of each attention head.
        end: Maximum sequence length supported by the model.
        theta: Base parameter for frequency calculation.

    Returns:
        A JAX array of shape `[end, head_dim // 2, 2]` containing the cosine
        and sine components.
    """
    freqs = 1.0 / (
        theta
        ** (jnp.arange(0, head_dim, 2)[: (head_dim // 2)].astype(dtype) / head_dim)
    )  # Shape: (head_dim // 2,)
    t = jnp.arange(end, dtype=dtype)  # Shape: (end,)
    freqs = jnp.outer(t, freqs)  # Shape: (end, head_dim // 2)

    freqs_cos = jnp.cos(freqs)
    freqs_sin = jnp.sin(freqs)

    freqs_cis = jnp.stack(
        [freqs_cos, freqs_sin], axis=-1
    )  # Shape: (end, head_dim // 2, 2)
    return freqs_cis


@struct.dataclass
class AttentionParams:
    wq: jax.Array  # [dim, n_heads * head_dim]
    wk: jax.Array  # [dim, n_kv_heads * head_dim]
    wv: jax.Array  # [dim, n_kv_heads * head_dim]
    wo: jax.Array  # [n_heads * head_dim, dim]
    q_norm: jax.Array  # [head_dim], shared by every query head
    k_norm: jax.Array  # [head_dim], shared by every key head


@struct.dataclass
class FeedForwardParams:
    w_gate: jax.Array  # Corresponds to gate_proj
    w_up: jax.Array  # Corresponds to up_proj
    w_down: jax.Array  # Corresponds to down_proj


@jit
def rms_norm(x: jax.Array, weight: jax.Array, eps: float = 1e-6) -> jax.Array:
    """
    Apply Root Mean Square Normalization over the last axis.

    Args:
        x: Input tensor.
        weight: Weight tensor, broadcast against the last axis of x.
        eps: Epsilon for numerical stability.

    Returns:
        Normalized tensor.
    """
    output = x * lax.rsqrt(jnp.mean(jnp.square(x), axis=-1, keepdims=True) + eps)
    return output * weight


@partial(jit, static_argnames=["style"])
def apply_rotary_emb(x: jax.Array, freqs_cis: jax.Array, style: str = "neox") -> jax.Array:
    """
    Apply Rotary Positional Embeddings (RoPE) at a single position.

    Args:
        x: Input tensor of shape [n_heads, head_dim].
        freqs_cis: Rotary table row for the current position, `[head_dim // 2, 2]`.
        style: "neox" rotates the pairs (i, i + head_dim // 2), the layout used by
            Qwen-3 checkpoints. "interleaved" rotates adjacent pairs (2i, 2i + 1).

    Returns:
        The rotated tensor, same shape as x.
    """
    freqs_cos, freqs_sin = freqs_cis[..., 0], freqs_cis[..., 1]

    if style == "neox":
        half = x.shape[-1] // 2
        x_r, x_i = x[..., :half], x[..., half:]
        x_out_r = x_r * freqs_cos - x_i * freqs_sin
        x_out_i = x_r * freqs_sin + x_i * freqs_cos
        return jnp.concatenate([x_out_r, x_out_i], axis=-1)

    # x: [..., head_dim] -> [..., head_dim//2, 2]
    x_shaped = x.reshape(*x.shape[:-1], -1, 2)
    x_r, x_i = x_shaped[..., 0], x_shaped[..., 1]

    # (v_r + i*v_i) * (cos + i*sin) = (v_r*cos - v_i*sin) + i*(v_r*sin + v_i*cos)
    x_out_r = x_r * freqs_cos - x_i * freqs_sin
    x_out_i = x_r * freqs_sin + x_i * freqs_cos

    # [..., head_dim//2, 2] -> [..., head_dim]
    return jnp.stack([x_out_r, x_out_i], axis=-1).reshape(x.shape)


def kv_head_for(query_head: int, n_heads: int, n_kv_heads: int) -> int:
    """Index of the key/value head that query head `query_head` attends with."""
    return query_head // (n_heads // n_kv_heads)


def kv_head_map(n_heads: int, n_kv_heads: int) -> np.ndarray:
    """
    Grouped-query mapping from every query head to its key/value head.

    Plain multi-head attention is the case n_heads == n_kv_heads, where the
    map is the identity.
    """
    return np.array([kv_head_for(h, n_heads, n_kv_heads) for h in range(n_heads)], dtype=np.int32)


def update_cache_row(cache: jax.Array, row: jax.Array, layer_idx: int, position: jax.Array) -> jax.Array:
    """
    Writes `row` ([n_kv_heads, head_dim]) into `cache` at (layer_idx, position).

    cache shape: [n_layers, seq_len, n_kv_heads, head_dim]
    """
    update = row.astype(cache.dtype)[None, None, :, :]
    zero = jnp.zeros((), dtype=jnp.int32)
    start = (jnp.asarray(layer_idx, dtype=jnp.int32), jnp.asarray(position, dtype=jnp.int32), zero, zero)
    return lax.dynamic_update_slice(cache, update, start)


def grouped_query_attention(
    xq: jax.Array,  # [n_heads, head_dim] - rotated queries at the current position
    keys: jax.Array,  # [seq_len, n_kv_heads, head_dim] - this layer's key cache
    values: jax.Array,  # [seq_len, n_kv_heads, head_dim] - this layer's value cache
    position: jax.Array,
    kv_map: np.ndarray,  # [n_heads] - query head -> kv head
) -> tuple[jax.Array, jax.Array]:
    """
    Causal grouped-query attention for a single query position.

    Only cache rows 0..=position take part; rows beyond it are excluded from
    both the softmax and the weighted sum, whatever they contain.

    Returns:
        Tuple of (attention output [n_heads * head_dim], attention weights
        [n_heads, seq_len]).
    """
    seq_len = keys.shape[0]
    head_dim = xq.shape[-1]

    # Every query head reads the kv head given by the explicit mapping
    keys = keys[:, kv_map, :]  # [seq_len, n_heads, head_dim]
    values = values[:, kv_map, :]  # [seq_len, n_heads, head_dim]

    valid = jnp.arange(seq_len) <= position  # [seq_len]

    scores = jnp.einsum("hd,thd->ht", xq, keys) / jnp.sqrt(head_dim).astype(xq.dtype)
    scores = jnp.where(valid[None, :], scores.astype(jnp.float32), -jnp.inf)

    # softmax subtracts the running max before exponentiating
    weights = nn.softmax(scores, axis=-1).astype(xq.dtype)  # [n_heads, seq_len]

    values = jnp.where(valid[:, None, None], values, 0)
    attn_output = jnp.einsum("ht,thd->hd", weights, values)  # [n_heads, head_dim]

    return attn_output.reshape(-1), weights


@jit
def feed_forward(x: jax.Array, params: FeedForwardParams) -> jax.Array:
    """
    Compute the SwiGLU FeedForward network: down(silu(gate(x)) * up(x)).

    Args:
        x: Input vector of shape [dim].
        params: Dataclass containing weight matrices (w_gate, w_up, w_down).

    Returns:
        Output vector of shape [dim].
    """
    gate = jnp.einsum("d,dh->h", x, params.w_gate)
    up = jnp.einsum("d,dh->h", x, params.w_up)

    fused_activation = nn.silu(gate) * up

    return jnp.einsum("h,hd->d", fused_activation, params.w_down)
