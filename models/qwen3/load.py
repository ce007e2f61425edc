"""
Functions to load Qwen-3 weights into a WeightStore.

Weights come through a small reader boundary: `get_tensor(name)` returns a
flat float32 buffer and `get_metadata(key)` returns a scalar. Two readers are
supported:

    - GGUFReader: a single self-describing .gguf file (models/qwen3/gguf.py)
    - SafetensorsReader: a HuggingFace checkpoint directory

Tensors are addressed by their GGUF names:
    - token_embd.weight                       [vocab_size, dim]
    - blk.{i}.attn_norm.weight                [dim]
    - blk.{i}.attn_q.weight                   [n_heads * head_dim, dim]
    - blk.{i}.attn_k.weight                   [n_kv_heads * head_dim, dim]
    - blk.{i}.attn_v.weight                   [n_kv_heads * head_dim, dim]
    - blk.{i}.attn_output.weight              [dim, n_heads * head_dim]
    - blk.{i}.attn_q_norm.weight              [head_dim]
    - blk.{i}.attn_k_norm.weight              [head_dim]
    - blk.{i}.ffn_norm.weight                 [dim]
    - blk.{i}.ffn_gate.weight                 [hidden_dim, dim]
    - blk.{i}.ffn_up.weight                   [hidden_dim, dim]
    - blk.{i}.ffn_down.weight                 [dim, hidden_dim]
    - output_norm.weight                      [dim]
    - output.weight (absent when tied)        [vocab_size, dim]

Matrices arrive as (out, in) and are stored transposed as (in, out), one
contiguous array per category with a leading layer axis.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np
from flax import struct
from safetensors import safe_open

from models.errors import LoadError
from utils.ops import AttentionParams, FeedForwardParams
from .config import ModelConfig
from .gguf import GGUFReader
from .tokenizer import Tokenizer

logger = logging.getLogger(__name__)

EMBEDDING = "token_embd.weight"
FINAL_NORM = "output_norm.weight"
CLASSIFIER = "output.weight"


def layer_tensor_shapes(config: ModelConfig) -> Dict[str, Tuple[int, ...]]:
    """Per-layer tensor suffix -> (out, in) source shape."""
    return {
        "attn_norm.weight": (config.dim,),
        "ffn_norm.weight": (config.dim,),
        "attn_q.weight": (config.q_dim, config.dim),
        "attn_k.weight": (config.kv_dim, config.dim),
        "attn_v.weight": (config.kv_dim, config.dim),
        "attn_output.weight": (config.dim, config.q_dim),
        "attn_q_norm.weight": (config.head_dim,),
        "attn_k_norm.weight": (config.head_dim,),
        "ffn_gate.weight": (config.hidden_dim, config.dim),
        "ffn_up.weight": (config.hidden_dim, config.dim),
        "ffn_down.weight": (config.dim, config.hidden_dim),
    }


def expected_tensor_shapes(config: ModelConfig) -> Dict[str, Tuple[int, ...]]:
    """Every tensor a model of this shape needs, classifier included."""
    shapes = {
        EMBEDDING: (config.vocab_size, config.dim),
        FINAL_NORM: (config.dim,),
        CLASSIFIER: (config.vocab_size, config.dim),
    }
    for i in range(config.n_layers):
        for suffix, shape in layer_tensor_shapes(config).items():
            shapes[f"blk.{i}.{suffix}"] = shape
    return shapes


@struct.dataclass
class LayerWeights:
    """View of one transformer block inside a WeightStore."""
    attention: AttentionParams
    feed_forward: FeedForwardParams
    attention_norm: jax.Array  # [dim]
    ffn_norm: jax.Array  # [dim]


@struct.dataclass
class WeightStore:
    """Read-only model parameters, shared by every sequence decoded with them."""
    tok_embeddings: jax.Array  # [vocab_size, dim]
    attention: AttentionParams  # each leaf stacked: [n_layers, ...]
    feed_forward: FeedForwardParams  # each leaf stacked: [n_layers, ...]
    attention_norm: jax.Array  # [n_layers, dim]
    ffn_norm: jax.Array  # [n_layers, dim]
    norm: jax.Array  # [dim]
    output: Optional[jax.Array]  # [dim, vocab_size], None when tied to tok_embeddings
    config: ModelConfig = struct.field(pytree_node=False)

    @property
    def tied(self) -> bool:
        return self.output is None

    @property
    def classifier(self) -> jax.Array:
        """Vocabulary projection [dim, vocab_size]."""
        if self.output is None:
            return self.tok_embeddings.T
        return self.output

    def layer(self, layer_idx: int) -> LayerWeights:
        """Returns the weights of block `layer_idx`."""
        if not 0 <= layer_idx < self.config.n_layers:
            raise IndexError(f"layer {layer_idx} out of range for {self.config.n_layers} layers")
        take = lambda a: a[layer_idx]
        return LayerWeights(
            attention=jax.tree.map(take, self.attention),
            feed_forward=jax.tree.map(take, self.feed_forward),
            attention_norm=self.attention_norm[layer_idx],
            ffn_norm=self.ffn_norm[layer_idx],
        )

    @classmethod
    def from_tensors(cls, tensors: Mapping[str, Any], config: ModelConfig) -> "WeightStore":
        """
        Validates raw named buffers against `config` and builds a WeightStore.

        Args:
            tensors: GGUF tensor name -> buffer (any shape; only the element
                count is checked, data is read in row-major (out, in) order).
                `output.weight` may be omitted for tied embeddings.
            config: ModelConfig describing the expected shapes.

        Raises:
            LoadError: for a missing tensor or a size mismatch.
        """
        shapes = expected_tensor_shapes(config)

        def fetch(name: str) -> np.ndarray:
            if name not in tensors:
                raise LoadError("Missing tensor", tensor=name)
            buf = np.asarray(tensors[name], dtype=np.float32)
            expected = int(np.prod(shapes[name]))
            if buf.size != expected:
                raise LoadError("Size mismatch", tensor=name, expected=expected, actual=buf.size)
            return buf.reshape(shapes[name])

        def matrix(name: str) -> np.ndarray:
            # (out, in) -> (in, out)
            return np.ascontiguousarray(fetch(name).T)

        def stacked(suffix: str, transform) -> jax.Array:
            layers = [transform(f"blk.{i}.{suffix}") for i in range(config.n_layers)]
            return jnp.asarray(np.stack(layers), dtype=config.dtype)

        attention = AttentionParams(
            wq=stacked("attn_q.weight", matrix),
            wk=stacked("attn_k.weight", matrix),
            wv=stacked("attn_v.weight", matrix),
            wo=stacked("attn_output.weight", matrix),
            q_norm=stacked("attn_q_norm.weight", fetch),
            k_norm=stacked("attn_k_norm.weight", fetch),
        )
        feed_forward = FeedForwardParams(
            w_gate=stacked("ffn_gate.weight", matrix),
            w_up=stacked("ffn_up.weight", matrix),
            w_down=stacked("ffn_down.weight", matrix),
        )

        output = None
        if CLASSIFIER in tensors:
            output = jnp.asarray(matrix(CLASSIFIER), dtype=config.dtype)

        weights = cls(
            tok_embeddings=jnp.asarray(fetch(EMBEDDING), dtype=config.dtype),
            attention=attention,
            feed_forward=feed_forward,
            attention_norm=stacked("attn_norm.weight", fetch),
            ffn_norm=stacked("ffn_norm.weight", fetch),
            norm=jnp.asarray(fetch(FINAL_NORM), dtype=config.dtype),
            output=output,
            config=config,
        )
        logger.info(
            f"Built WeightStore: {config.n_layers} layers, "
            f"{'tied' if weights.tied else 'untied'} classifier"
        )
        return weights


def load_weights(reader, config: ModelConfig) -> WeightStore:
    """
    Reads every tensor the model needs through `reader` and builds a WeightStore.

    Args:
        reader: Exposes `has_tensor(name)` and `get_tensor(name)`.
        config: ModelConfig instance for the model.
    """
    tensors = {}
    for name in expected_tensor_shapes(config):
        if name == CLASSIFIER and not reader.has_tensor(name):
            logger.info("No output.weight found, tying classifier to token embeddings")
            continue
        tensors[name] = reader.get_tensor(name)
    return WeightStore.from_tensors(tensors, config)


# HuggingFace name for each GGUF name
_HF_GLOBAL_NAMES = {
    EMBEDDING: "model.embed_tokens.weight",
    FINAL_NORM: "model.norm.weight",
    CLASSIFIER: "lm_head.weight",
}
_HF_LAYER_NAMES = {
    "attn_norm.weight": "input_layernorm.weight",
    "ffn_norm.weight": "post_attention_layernorm.weight",
    "attn_q.weight": "self_attn.q_proj.weight",
    "attn_k.weight": "self_attn.k_proj.weight",
    "attn_v.weight": "self_attn.v_proj.weight",
    "attn_output.weight": "self_attn.o_proj.weight",
    "attn_q_norm.weight": "self_attn.q_norm.weight",
    "attn_k_norm.weight": "self_attn.k_norm.weight",
    "ffn_gate.weight": "mlp.gate_proj.weight",
    "ffn_up.weight": "mlp.up_proj.weight",
    "ffn_down.weight": "mlp.down_proj.weight",
}
# GGUF metadata key (without the architecture prefix) -> config.json key
_HF_METADATA_KEYS = {
    "embedding_length": "hidden_size",
    "feed_forward_length": "intermediate_size",
    "block_count": "num_hidden_layers",
    "attention.head_count": "num_attention_heads",
    "attention.head_count_kv": "num_key_value_heads",
    "attention.key_length": "head_dim",
    "context_length": "max_position_embeddings",
    "rope.freq_base": "rope_theta",
    "attention.layer_norm_rms_epsilon": "rms_norm_eps",
    "vocab_size": "vocab_size",
}


def hf_tensor_name(name: str) -> str:
    """Translates a GGUF tensor name to its HuggingFace equivalent."""
    if name in _HF_GLOBAL_NAMES:
        return _HF_GLOBAL_NAMES[name]
    prefix, layer_idx, suffix = name.split(".", 2)
    if prefix != "blk" or suffix not in _HF_LAYER_NAMES:
        raise LoadError("Unknown tensor name", tensor=name)
    return f"model.layers.{layer_idx}.{_HF_LAYER_NAMES[suffix]}"


class SafetensorsReader:
    """
    Reads a HuggingFace checkpoint directory containing:
        - config.json
        - model.safetensors, or model.safetensors.index.json plus its shards
    """

    def __init__(self, model_path: str):
        self.model_path = Path(model_path)
        config_path = self.model_path / "config.json"
        if not config_path.is_file():
            raise LoadError(f"config.json not found in {self.model_path}")
        with open(config_path, "r") as f:
            self.hf_config = json.load(f)
        self.arch = self.hf_config.get("model_type", "qwen3")

        index_path = self.model_path / "model.safetensors.index.json"
        single_path = self.model_path / "model.safetensors"
        if index_path.exists():
            with open(index_path, "r") as f:
                weight_map = json.load(f)["weight_map"]
        elif single_path.exists():
            with safe_open(single_path, framework="flax") as f:
                weight_map = {name: single_path.name for name in f.keys()}
        else:
            raise LoadError(
                f"No model.safetensors or model.safetensors.index.json found in {self.model_path}"
            )
        self.weight_map: Dict[str, str] = weight_map
        logger.info(
            f"Found {len(weight_map)} tensors in {len(set(weight_map.values()))} shard file(s)"
        )

    def get_metadata(self, key: str, default: Any = None) -> Any:
        if key == "general.architecture":
            return self.arch
        prefix = f"{self.arch}."
        if not key.startswith(prefix):
            return default
        hf_key = _HF_METADATA_KEYS.get(key[len(prefix):])
        if hf_key is None:
            return default
        value = self.hf_config.get(hf_key)
        return default if value is None else value

    def has_tensor(self, name: str) -> bool:
        try:
            return hf_tensor_name(name) in self.weight_map
        except LoadError:
            return False

    def get_tensor(self, name: str) -> np.ndarray:
        hf_name = hf_tensor_name(name)
        if hf_name not in self.weight_map:
            raise LoadError("Missing tensor", tensor=name)
        shard_path = self.model_path / self.weight_map[hf_name]
        # The flax backend understands bfloat16, which numpy cannot represent
        with safe_open(shard_path, framework="flax") as f:
            tensor = f.get_tensor(hf_name)
        return np.asarray(tensor.astype(jnp.float32)).reshape(-1)

    def tensor_shape(self, name: str) -> Tuple[int, ...]:
        hf_name = hf_tensor_name(name)
        if hf_name not in self.weight_map:
            raise LoadError("Missing tensor", tensor=name)
        with safe_open(self.model_path / self.weight_map[hf_name], framework="flax") as f:
            return tuple(f.get_slice(hf_name).get_shape())


def open_reader(model_path: str):
    """Returns a GGUFReader for a .gguf file, a SafetensorsReader for a directory."""
    path = Path(model_path)
    if path.is_dir():
        return SafetensorsReader(str(path))
    if path.suffix == ".gguf" or path.is_file():
        return GGUFReader(str(path))
    raise LoadError(f"Model path not found: {model_path}")


def load_model(model_path: str, seq_len: Optional[int] = None, **config_overrides):
    """Load config, weights and tokenizer.

    Args:
        model_path: A .gguf file, or a HuggingFace directory containing
            config.json, safetensors weights and tokenizer.json.
        seq_len: Optional cap on the context length (bounds KV cache size).

    Returns:
        Tuple of (weights, tokenizer)
    """
    reader = open_reader(model_path)
    try:
        config = ModelConfig.from_metadata(reader, seq_len=seq_len, **config_overrides)
        weights = load_weights(reader, config)

        if isinstance(reader, SafetensorsReader):
            tokenizer = Tokenizer.from_tokenizer_json(str(Path(model_path) / "tokenizer.json"))
        else:
            tokenizer = Tokenizer.from_gguf(reader)
    finally:
        if isinstance(reader, GGUFReader):
            reader.close()
    return weights, tokenizer
