"""
Reference Qwen-3 forward pass in PyTorch.

Processes a whole token sequence at once with a causal mask (no KV cache), in
float64, from weights in the (out, in) layout used by GGUF and HuggingFace.
The single-token JAX engine must reproduce its logits at every position.
"""

import math
from typing import Dict, List, Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F

# -----------------------------------------------------------------------------
# Building blocks

def rms_norm(x: torch.Tensor, weight: torch.Tensor, eps: float = 1e-6) -> torch.Tensor:
    return x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + eps) * weight

def rope_cos_sin(head_dim: int, positions: torch.Tensor, theta: float = 1000000.0):
    inv_freq = 1.0 / (theta ** (torch.arange(0, head_dim, 2, dtype=torch.float64) / head_dim))
    freqs = torch.outer(positions.to(torch.float64), inv_freq)  # (seqlen, head_dim/2)
    return freqs.cos(), freqs.sin()

def rotate_half(x: torch.Tensor) -> torch.Tensor:
    x1 = x[..., : x.shape[-1] // 2]
    x2 = x[..., x.shape[-1] // 2 :]
    return torch.cat((-x2, x1), dim=-1)

def apply_rotary_emb_neox(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    # x is (seqlen, n_heads, head_dim); cos/sin are (seqlen, head_dim/2)
    cos = torch.cat((cos, cos), dim=-1)[:, None, :]
    sin = torch.cat((sin, sin), dim=-1)[:, None, :]
    return x * cos + rotate_half(x) * sin

def apply_rotary_emb_interleaved(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    # adjacent pairs (2i, 2i+1) as complex numbers
    x_complex = torch.view_as_complex(x.reshape(*x.shape[:-1], -1, 2).contiguous())
    rotation = torch.complex(cos, sin)[:, None, :]
    return torch.view_as_real(x_complex * rotation).flatten(-2)

def repeat_kv(x: torch.Tensor, n_rep: int) -> torch.Tensor:
    """torch.repeat_interleave(x, dim=1, repeats=n_rep)"""
    return torch.repeat_interleave(x, repeats=n_rep, dim=1)

def swiglu(x: torch.Tensor, w_gate: torch.Tensor, w_up: torch.Tensor, w_down: torch.Tensor) -> torch.Tensor:
    return F.linear(F.silu(F.linear(x, w_gate)) * F.linear(x, w_up), w_down)

def attention(q: torch.Tensor, k: torch.Tensor, v: torch.Tensor, n_rep: int, tile_heads: bool = False) -> torch.Tensor:
    """Causal attention over a full sequence; q is (seqlen, n_heads, head_dim)."""
    seqlen, _, head_dim = q.shape
    if tile_heads:
        # wrong head layout: query head h reads kv head h % n_kv_heads
        k = k.repeat(1, n_rep, 1)
        v = v.repeat(1, n_rep, 1)
    else:
        k = repeat_kv(k, n_rep)
        v = repeat_kv(v, n_rep)
    scores = torch.einsum("thd,shd->hts", q, k) / math.sqrt(head_dim)
    mask = torch.triu(torch.ones(seqlen, seqlen, dtype=torch.bool), diagonal=1)
    scores = scores.masked_fill(mask, float("-inf"))
    probs = F.softmax(scores, dim=-1)
    return torch.einsum("hts,shd->thd", probs, v).reshape(seqlen, -1)

# -----------------------------------------------------------------------------
# Transformer

# Parts of the block that can be switched off to check a test is sensitive to them
ABLATIONS = ("qk_norm", "rope", "ffn", "attention", "head_map")

class Qwen3:
    """Full-sequence Qwen-3 built from a dict of GGUF-named numpy tensors."""

    def __init__(
        self,
        tensors: Dict[str, np.ndarray],
        config,
        rope_style: Optional[str] = None,
        ablate: Sequence[str] = (),
    ):
        unknown = set(ablate) - set(ABLATIONS)
        if unknown:
            raise ValueError(f"Unknown ablations: {sorted(unknown)}")
        self.config = config
        self.rope_style = rope_style or config.rope_style
        self.ablate = set(ablate)
        self.w = {name: torch.tensor(np.asarray(t), dtype=torch.float64) for name, t in tensors.items()}

    def _get(self, name: str, *shape: int) -> torch.Tensor:
        return self.w[name].reshape(*shape)

    def forward(self, tokens: List[int]) -> torch.Tensor:
        """Returns logits of shape (seqlen, vocab_size)."""
        c = self.config
        seqlen = len(tokens)
        embedding = self._get("token_embd.weight", c.vocab_size, c.dim)
        x = embedding[torch.tensor(tokens)]
        cos, sin = rope_cos_sin(c.head_dim, torch.arange(seqlen), c.rope_theta)
        rope = apply_rotary_emb_neox if self.rope_style == "neox" else apply_rotary_emb_interleaved

        for i in range(c.n_layers):
            blk = lambda suffix, *shape: self._get(f"blk.{i}.{suffix}", *shape)
            if "attention" not in self.ablate:
                h = rms_norm(x, blk("attn_norm.weight", c.dim), c.rms_norm_eps)
                q = F.linear(h, blk("attn_q.weight", c.q_dim, c.dim)).view(seqlen, c.n_heads, c.head_dim)
                k = F.linear(h, blk("attn_k.weight", c.kv_dim, c.dim)).view(seqlen, c.n_kv_heads, c.head_dim)
                v = F.linear(h, blk("attn_v.weight", c.kv_dim, c.dim)).view(seqlen, c.n_kv_heads, c.head_dim)
                if "qk_norm" not in self.ablate:
                    q = rms_norm(q, blk("attn_q_norm.weight", c.head_dim), c.rms_norm_eps)
                    k = rms_norm(k, blk("attn_k_norm.weight", c.head_dim), c.rms_norm_eps)
                if "rope" not in self.ablate:
                    q = rope(q, cos, sin)
                    k = rope(k, cos, sin)
                out = attention(q, k, v, c.n_heads // c.n_kv_heads, tile_heads="head_map" in self.ablate)
                x = x + F.linear(out, blk("attn_output.weight", c.dim, c.q_dim))

            if "ffn" not in self.ablate:
                h = rms_norm(x, blk("ffn_norm.weight", c.dim), c.rms_norm_eps)
                x = x + swiglu(
                    h,
                    blk("ffn_gate.weight", c.hidden_dim, c.dim),
                    blk("ffn_up.weight", c.hidden_dim, c.dim),
                    blk("ffn_down.weight", c.dim, c.hidden_dim),
                )

        x = rms_norm(x, self._get("output_norm.weight", c.dim), c.rms_norm_eps)
        if "output.weight" in self.w:
            classifier = self._get("output.weight", c.vocab_size, c.dim)
        else:
            classifier = embedding
        return F.linear(x, classifier)

    def greedy(self, prompt: List[int], max_new_tokens: int) -> List[int]:
        """Greedy continuation of `prompt`, recomputing the whole sequence each step."""
        tokens = list(prompt)
        generated = []
        for _ in range(max_new_tokens):
            next_token = int(torch.argmax(self.forward(tokens)[-1]))
            generated.append(next_token)
            tokens.append(next_token)
        return generated
