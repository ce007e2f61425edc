"""
Model configuration parameters.
"""
from dataclasses import dataclass
from typing import Any, Optional
import json
import logging
from pathlib import Path

import jax.numpy as jnp

from models.errors import ConfigError, LoadError

logger = logging.getLogger(__name__)

ROPE_STYLES = ("neox", "interleaved")

_MISSING = object()


@dataclass(frozen=True)
class ModelConfig:

    # Architecture Config
    dim: int
    hidden_dim: int  # FFN expansion size
    n_layers: int
    n_heads: int
    n_kv_heads: int  # Grouped Query Attention
    head_dim: int  # Qwen-3 sets this independently of dim // n_heads
    vocab_size: int
    seq_len: int  # hard upper bound on KV cache growth

    # Positional Embeddings Config
    rope_theta: float = 1000000.0
    rope_style: str = "neox"

    # Normalization Config
    rms_norm_eps: float = 1e-6

    dtype: Any = jnp.float32

    def __post_init__(self):
        for name in ("dim", "hidden_dim", "n_layers", "n_heads", "n_kv_heads", "head_dim", "vocab_size", "seq_len"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        # Ensure GQA constraints are met
        if self.n_heads % self.n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({self.n_heads}) must be divisible by "
                f"n_kv_heads ({self.n_kv_heads})"
            )
        if self.head_dim % 2 != 0:
            raise ConfigError(f"head_dim must be even for rotary encoding, got {self.head_dim}")
        if self.rope_style not in ROPE_STYLES:
            raise ConfigError(f"rope_style must be one of {ROPE_STYLES}, got {self.rope_style!r}")
        if self.rms_norm_eps <= 0:
            raise ConfigError(f"rms_norm_eps must be positive, got {self.rms_norm_eps}")

    @property
    def q_dim(self) -> int:
        """Width of the concatenated query heads."""
        return self.n_heads * self.head_dim

    @property
    def kv_dim(self) -> int:
        """Width of the concatenated key/value heads."""
        return self.n_kv_heads * self.head_dim

    @property
    def group_size(self) -> int:
        """Number of query heads sharing one key/value head."""
        return self.n_heads // self.n_kv_heads

    @classmethod
    def from_metadata(cls, reader, seq_len: Optional[int] = None, **overrides) -> "ModelConfig":
        """
        Builds a config from the scalar metadata of a model file.

        Args:
            reader: Anything exposing `get_metadata(key, default)` and
                `tensor_shape(name)`, e.g. a GGUFReader or SafetensorsReader.
            seq_len: Optional cap on the context length. The model's own
                context length is used when it is smaller.
            overrides: Extra ModelConfig fields (e.g. dtype).

        Returns:
            An instance of ModelConfig.
        """
        arch = reader.get_metadata("general.architecture", "qwen3")

        def required(key):
            value = reader.get_metadata(f"{arch}.{key}", _MISSING)
            if value is _MISSING:
                raise LoadError(f"Missing required metadata key '{arch}.{key}'")
            return value

        dim = int(required("embedding_length"))
        n_heads = int(required("attention.head_count"))
        n_kv_heads = int(reader.get_metadata(f"{arch}.attention.head_count_kv", n_heads))
        head_dim = reader.get_metadata(f"{arch}.attention.key_length", None)
        if head_dim is None:
            head_dim = dim // n_heads

        vocab_size = reader.get_metadata(f"{arch}.vocab_size", None)
        if vocab_size is None:
            vocab_size = reader.tensor_shape("token_embd.weight")[0]

        context_length = int(required("context_length"))
        if seq_len is not None:
            context_length = min(context_length, int(seq_len))

        config = cls(
            dim=dim,
            hidden_dim=int(required("feed_forward_length")),
            n_layers=int(required("block_count")),
            n_heads=n_heads,
            n_kv_heads=n_kv_heads,
            head_dim=int(head_dim),
            vocab_size=int(vocab_size),
            seq_len=context_length,
            rope_theta=float(reader.get_metadata(f"{arch}.rope.freq_base", 1000000.0)),
            rms_norm_eps=float(reader.get_metadata(f"{arch}.attention.layer_norm_rms_epsilon", 1e-6)),
            **overrides,
        )
        logger.info(f"Loaded {arch} config: {config}")
        return config

    @classmethod
    def from_json_file(cls, model_path: str, seq_len: Optional[int] = None, **overrides) -> "ModelConfig":
        """
        Loads model configuration from a config.json file.

        Args:
            model_path: Path to the directory containing config.json.
            seq_len: Optional cap on max_position_embeddings.

        Returns:
            An instance of ModelConfig.
        """
        config_path = Path(model_path) / 'config.json'
        if not config_path.is_file():
            raise LoadError(f"config.json not found in {model_path}")

        with open(config_path, 'r') as f:
            hf_config = json.load(f)

        # Qwen-3 feed-forward blocks are SwiGLU only
        if hf_config.get('hidden_act', 'silu') != 'silu':
            raise ConfigError(f"Unsupported activation function: {hf_config['hidden_act']}")

        try:
            n_heads = hf_config['num_attention_heads']
            context_length = hf_config['max_position_embeddings']
            if seq_len is not None:
                context_length = min(context_length, int(seq_len))

            # Mapping from Hugging Face config keys to our ModelConfig keys
            return cls(
                dim=hf_config['hidden_size'],
                hidden_dim=hf_config['intermediate_size'],
                n_layers=hf_config['num_hidden_layers'],
                n_heads=n_heads,
                n_kv_heads=hf_config.get('num_key_value_heads', n_heads),
                head_dim=hf_config.get('head_dim') or hf_config['hidden_size'] // n_heads,
                vocab_size=hf_config['vocab_size'],
                seq_len=context_length,
                rope_theta=float(hf_config.get('rope_theta', 1000000.0)),
                rms_norm_eps=float(hf_config.get('rms_norm_eps', 1e-6)),
                **overrides,
            )
        except KeyError as e:
            raise LoadError(f"config.json in {model_path} is missing key {e}") from e
