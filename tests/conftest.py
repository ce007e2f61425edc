import struct
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pytest

from models.qwen3.config import ModelConfig
from models.qwen3.gguf import (
    GGML_TYPE_BF16,
    GGML_TYPE_F16,
    GGML_TYPE_F32,
    GGML_TYPE_Q4_0,
    GGML_TYPE_Q8_0,
    GGUF_TYPE_ARRAY,
    GGUF_TYPE_BOOL,
    GGUF_TYPE_FLOAT32,
    GGUF_TYPE_INT32,
    GGUF_TYPE_STRING,
    GGUF_TYPE_UINT32,
)
from models.qwen3.load import CLASSIFIER, expected_tensor_shapes
from models.qwen3.tokenizer import TOKEN_TYPE_CONTROL, TOKEN_TYPE_NORMAL, bytes_to_unicode

# -----------------------------------------------------------------------------
# Model fixtures

TINY = dict(
    dim=8,
    hidden_dim=16,
    n_layers=2,
    n_heads=2,
    n_kv_heads=1,
    head_dim=4,
    vocab_size=16,
    seq_len=8,
)


@pytest.fixture
def tiny_config() -> ModelConfig:
    return ModelConfig(**TINY)


def make_tensors(config: ModelConfig, seed: int = 0, scale: float = 0.2, tied: bool = False) -> Dict[str, np.ndarray]:
    """Random weights for every tensor of `config`, GGUF names and (out, in) shapes."""
    rng = np.random.default_rng(seed)
    tensors = {}
    for name, shape in expected_tensor_shapes(config).items():
        if name == CLASSIFIER and tied:
            continue
        if len(shape) == 1:
            # norm weights stay close to one
            tensors[name] = (1.0 + 0.1 * rng.standard_normal(shape)).astype(np.float32)
        else:
            tensors[name] = (scale * rng.standard_normal(shape)).astype(np.float32)
    return tensors


def shift_tensors(config: ModelConfig) -> Dict[str, np.ndarray]:
    """
    Weights whose greedy continuation can be worked out by hand, for tests of
    the decode loop itself. Attention and FFN barely matter here; numerics are
    checked against the torch reference with `make_tensors` weights instead.

    Token t embeds to s_t * e_(t % 8) with s_t = +1 for t < 8 and -1 otherwise.
    Every other projection is tiny, so after the final norm the hidden state
    is sqrt(8) * embed[t] up to ~1e-6. Row v of output.weight is
    embed[(v - 5) % 16], hence the argmax after token t is (t + 5) % 16.
    """
    rng = np.random.default_rng(1234)
    embed = np.zeros((config.vocab_size, config.dim), dtype=np.float32)
    for t in range(config.vocab_size):
        embed[t, t % config.dim] = 1.0 if t < config.dim else -1.0

    tensors = {}
    for name, shape in expected_tensor_shapes(config).items():
        if len(shape) == 1:
            tensors[name] = np.ones(shape, dtype=np.float32)
        else:
            tensors[name] = (1e-3 * rng.standard_normal(shape)).astype(np.float32)
    tensors["token_embd.weight"] = embed
    tensors[CLASSIFIER] = np.stack([embed[(v - 5) % config.vocab_size] for v in range(config.vocab_size)])
    return tensors


# -----------------------------------------------------------------------------
# GGUF writer

def _pack_string(s: str) -> bytes:
    data = s.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def _value_type(value: Any) -> int:
    if isinstance(value, bool):
        return GGUF_TYPE_BOOL
    if isinstance(value, int):
        return GGUF_TYPE_INT32 if value < 0 else GGUF_TYPE_UINT32
    if isinstance(value, float):
        return GGUF_TYPE_FLOAT32
    if isinstance(value, str):
        return GGUF_TYPE_STRING
    if isinstance(value, (list, tuple)):
        return GGUF_TYPE_ARRAY
    raise TypeError(f"Cannot store {type(value)} in GGUF metadata")


def _pack_value(vtype: int, value: Any) -> bytes:
    if vtype == GGUF_TYPE_STRING:
        return _pack_string(value)
    if vtype == GGUF_TYPE_ARRAY:
        item_type = _value_type(value[0]) if value else GGUF_TYPE_UINT32
        return struct.pack("<IQ", item_type, len(value)) + b"".join(_pack_value(item_type, v) for v in value)
    fmt = {GGUF_TYPE_BOOL: "<?", GGUF_TYPE_INT32: "<i", GGUF_TYPE_UINT32: "<I", GGUF_TYPE_FLOAT32: "<f"}[vtype]
    return struct.pack(fmt, value)


def quantize_q8_0(values: np.ndarray, scale: float) -> bytes:
    """Q8_0 blocks with one fixed scale; exact when values are scale * int8."""
    blocks = values.reshape(-1, 32)
    quants = np.clip(np.round(blocks / scale), -127, 127).astype(np.int8)
    scale_bytes = np.float16(scale).tobytes()
    return b"".join(scale_bytes + q.tobytes() for q in quants)


def quantize_q4_0(values: np.ndarray, scale: float) -> bytes:
    """Q4_0 blocks with one fixed scale; exact when values are scale * [-8, 7]."""
    blocks = values.reshape(-1, 32)
    quants = (np.clip(np.round(blocks / scale), -8, 7) + 8).astype(np.uint8)
    packed = quants[:, :16] | (quants[:, 16:] << 4)
    scale_bytes = np.float16(scale).tobytes()
    return b"".join(scale_bytes + p.tobytes() for p in packed)


def encode_tensor(values: np.ndarray, ggml_type: int) -> bytes:
    values = np.ascontiguousarray(values, dtype=np.float32)
    if ggml_type == GGML_TYPE_F32:
        return values.astype("<f4").tobytes()
    if ggml_type == GGML_TYPE_F16:
        return values.astype("<f2").tobytes()
    if ggml_type == GGML_TYPE_BF16:
        return (values.view(np.uint32) >> 16).astype("<u2").tobytes()
    raise ValueError(f"use quantize_* helpers for type {ggml_type}")


def write_gguf(
    path: Path,
    metadata: Dict[str, Any],
    tensors: Dict[str, Any],
    alignment: int = 32,
    version: int = 3,
) -> Path:
    """
    Writes a GGUF file.

    Args:
        metadata: key -> python scalar, string or list.
        tensors: name -> float array (stored as F32), or name ->
            (raw_bytes, ggml_type, shape) for pre-encoded data.
    """
    infos = []
    data = b""
    for name, tensor in tensors.items():
        if isinstance(tensor, tuple):
            raw, ggml_type, shape = tensor
        else:
            tensor = np.asarray(tensor, dtype=np.float32)
            raw, ggml_type, shape = encode_tensor(tensor, GGML_TYPE_F32), GGML_TYPE_F32, tensor.shape
        data += b"\x00" * ((alignment - len(data) % alignment) % alignment)
        infos.append((name, shape, ggml_type, len(data)))
        data += raw

    header = b"GGUF" + struct.pack("<IQQ", version, len(infos), len(metadata))
    for key, value in metadata.items():
        vtype = _value_type(value)
        header += _pack_string(key) + struct.pack("<I", vtype) + _pack_value(vtype, value)
    for name, shape, ggml_type, offset in infos:
        header += _pack_string(name) + struct.pack("<I", len(shape))
        # GGUF lists dimensions fastest-varying first
        header += b"".join(struct.pack("<Q", d) for d in reversed(shape))
        header += struct.pack("<IQ", ggml_type, offset)
    header += b"\x00" * ((alignment - len(header) % alignment) % alignment)

    path = Path(path)
    path.write_bytes(header + data)
    return path


def model_metadata(config: ModelConfig, arch: str = "qwen3", context_length: Optional[int] = None) -> Dict[str, Any]:
    return {
        "general.architecture": arch,
        f"{arch}.embedding_length": config.dim,
        f"{arch}.feed_forward_length": config.hidden_dim,
        f"{arch}.block_count": config.n_layers,
        f"{arch}.attention.head_count": config.n_heads,
        f"{arch}.attention.head_count_kv": config.n_kv_heads,
        f"{arch}.attention.key_length": config.head_dim,
        f"{arch}.context_length": context_length or config.seq_len,
        f"{arch}.rope.freq_base": float(config.rope_theta),
        f"{arch}.attention.layer_norm_rms_epsilon": float(config.rms_norm_eps),
    }


# -----------------------------------------------------------------------------
# Tokenizer fixtures

SPECIAL_TOKENS = ("<|endoftext|>", "<|im_start|>", "<|im_end|>")
MERGED_TOKENS = (b"he", b"ll", b"hell")


def vocabulary() -> Tuple[list, list]:
    """
    A small byte-level BPE vocabulary: the 256 single bytes (id == byte value),
    then "he", "ll", "hell", then the special tokens.
    """
    table = bytes_to_unicode()
    tokens = [table[b] for b in range(256)]
    tokens += ["".join(table[b] for b in merged) for merged in MERGED_TOKENS]
    token_types = [TOKEN_TYPE_NORMAL] * len(tokens)
    tokens += list(SPECIAL_TOKENS)
    token_types += [TOKEN_TYPE_CONTROL] * len(SPECIAL_TOKENS)
    return tokens, token_types


def tokenizer_metadata() -> Dict[str, Any]:
    tokens, token_types = vocabulary()
    return {
        "tokenizer.ggml.model": "gpt2",
        "tokenizer.ggml.tokens": tokens,
        "tokenizer.ggml.token_type": token_types,
        "tokenizer.ggml.eos_token_id": tokens.index("<|im_end|>"),
    }


@pytest.fixture
def tiny_gguf(tmp_path, tiny_config) -> Path:
    """A complete tiny model file with weights and tokenizer vocabulary."""
    metadata = {**model_metadata(tiny_config), **tokenizer_metadata()}
    return write_gguf(tmp_path / "tiny.gguf", metadata, make_tensors(tiny_config, seed=7))
