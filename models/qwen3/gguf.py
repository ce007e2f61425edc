"""
Reader for GGUF model files.

The file layout is:
    1. Header (magic, version, tensor count, metadata count)
    2. Key/value metadata (model shape, rope base, tokenizer vocabulary, ...)
    3. Tensor directory (name, dims, type, offset)
    4. Padding up to `general.alignment`
    5. Tensor data

The file is memory-mapped and tensors are only materialized when requested.
Quantized tensors are dequantized to float32 so the forward pass never
branches on storage format.
"""

import logging
import mmap
import struct
from pathlib import Path
from typing import Any, Dict, List, Tuple

import numpy as np

from models.errors import LoadError

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
DEFAULT_ALIGNMENT = 32

# Metadata value types
GGUF_TYPE_UINT8 = 0
GGUF_TYPE_INT8 = 1
GGUF_TYPE_UINT16 = 2
GGUF_TYPE_INT16 = 3
GGUF_TYPE_UINT32 = 4
GGUF_TYPE_INT32 = 5
GGUF_TYPE_FLOAT32 = 6
GGUF_TYPE_BOOL = 7
GGUF_TYPE_STRING = 8
GGUF_TYPE_ARRAY = 9
GGUF_TYPE_UINT64 = 10
GGUF_TYPE_INT64 = 11
GGUF_TYPE_FLOAT64 = 12

_SCALAR_FORMATS = {
    GGUF_TYPE_UINT8: "<B",
    GGUF_TYPE_INT8: "<b",
    GGUF_TYPE_UINT16: "<H",
    GGUF_TYPE_INT16: "<h",
    GGUF_TYPE_UINT32: "<I",
    GGUF_TYPE_INT32: "<i",
    GGUF_TYPE_FLOAT32: "<f",
    GGUF_TYPE_BOOL: "<?",
    GGUF_TYPE_UINT64: "<Q",
    GGUF_TYPE_INT64: "<q",
    GGUF_TYPE_FLOAT64: "<d",
}

# Tensor types
GGML_TYPE_F32 = 0
GGML_TYPE_F16 = 1
GGML_TYPE_Q4_0 = 2
GGML_TYPE_Q8_0 = 8
GGML_TYPE_BF16 = 30

# type -> (elements per block, bytes per block)
GGML_BLOCK_SIZES = {
    GGML_TYPE_F32: (1, 4),
    GGML_TYPE_F16: (1, 2),
    GGML_TYPE_BF16: (1, 2),
    GGML_TYPE_Q8_0: (32, 34),  # f16 scale + 32 x int8
    GGML_TYPE_Q4_0: (32, 18),  # f16 scale + 16 bytes of packed nibbles
}


def tensor_nbytes(ggml_type: int, n_elements: int) -> int:
    """Number of bytes a tensor of `n_elements` occupies on disk."""
    if ggml_type not in GGML_BLOCK_SIZES:
        raise LoadError(f"Unsupported GGML tensor type {ggml_type}")
    block_elems, block_bytes = GGML_BLOCK_SIZES[ggml_type]
    if n_elements % block_elems != 0:
        raise LoadError(
            f"Tensor with {n_elements} elements is not a multiple of the block size {block_elems}"
        )
    return n_elements // block_elems * block_bytes


def dequantize(raw: np.ndarray, ggml_type: int, n_elements: int) -> np.ndarray:
    """
    Converts raw tensor bytes into a flat float32 array.

    Args:
        raw: uint8 view over exactly `tensor_nbytes(ggml_type, n_elements)` bytes.
        ggml_type: GGML tensor type id.
        n_elements: Number of logical elements.

    Returns:
        A flat float32 array of length `n_elements`.
    """
    if ggml_type == GGML_TYPE_F32:
        return raw.view(np.float32).copy()
    if ggml_type == GGML_TYPE_F16:
        return raw.view(np.float16).astype(np.float32)
    if ggml_type == GGML_TYPE_BF16:
        # bfloat16 is the upper half of a float32
        return (raw.view(np.uint16).astype(np.uint32) << 16).view(np.float32)

    if ggml_type == GGML_TYPE_Q8_0:
        # Block: [scale (f16, 2 bytes)] + [quants (int8, 32 bytes)]
        blocks = raw.reshape(-1, 34)
        scales = blocks[:, :2].copy().view(np.float16).astype(np.float32)  # [n_blocks, 1]
        quants = blocks[:, 2:].copy().view(np.int8).astype(np.float32)  # [n_blocks, 32]
        return (quants * scales).reshape(n_elements)

    if ggml_type == GGML_TYPE_Q4_0:
        # Block: [scale (f16, 2 bytes)] + [16 bytes]; low nibbles hold elements
        # 0..15 and high nibbles hold elements 16..31, both offset by 8.
        blocks = raw.reshape(-1, 18)
        scales = blocks[:, :2].copy().view(np.float16).astype(np.float32)
        packed = blocks[:, 2:]
        low = (packed & 0x0F).astype(np.int8) - 8
        high = (packed >> 4).astype(np.int8) - 8
        quants = np.concatenate([low, high], axis=1).astype(np.float32)  # [n_blocks, 32]
        return (quants * scales).reshape(n_elements)

    raise LoadError(f"Unsupported GGML tensor type {ggml_type}")


class GGUFReader:
    """
    Reads GGUF files using memory mapping.
    Tensor data is not copied into memory until get_tensor() is called.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        if not self.path.is_file():
            raise LoadError(f"Model file not found: {self.path}")

        self._file = open(self.path, "rb")
        try:
            self._mm = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
        except ValueError as e:
            self._file.close()
            raise LoadError(f"Cannot memory-map {self.path}: {e}") from e
        self._pos = 0

        self.version = 0
        self.metadata: Dict[str, Any] = {}
        self.tensors: Dict[str, Dict[str, Any]] = {}  # name -> {'type', 'dims', 'offset'}
        self.data_offset = 0

        try:
            self._load()
        except (struct.error, UnicodeDecodeError) as e:
            self.close()
            raise LoadError(f"Truncated or malformed GGUF file {self.path}: {e}") from e
        except LoadError:
            self.close()
            raise

    def close(self):
        if self._mm is not None:
            self._mm.close()
            self._mm = None
        if not self._file.closed:
            self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # --- Low level parsing ---

    def _read(self, n: int) -> bytes:
        if self._pos + n > len(self._mm):
            raise LoadError(f"Unexpected end of file in {self.path} at byte {self._pos}")
        data = self._mm[self._pos : self._pos + n]
        self._pos += n
        return data

    def _read_unpack(self, fmt: str) -> Tuple:
        return struct.unpack(fmt, self._read(struct.calcsize(fmt)))

    def _read_string(self) -> str:
        (length,) = self._read_unpack("<Q")
        return self._read(length).decode("utf-8")

    def _read_value(self, vtype: int) -> Any:
        if vtype in _SCALAR_FORMATS:
            return self._read_unpack(_SCALAR_FORMATS[vtype])[0]
        if vtype == GGUF_TYPE_STRING:
            return self._read_string()
        if vtype == GGUF_TYPE_ARRAY:
            (item_type,) = self._read_unpack("<I")
            (length,) = self._read_unpack("<Q")
            return [self._read_value(item_type) for _ in range(length)]
        raise LoadError(f"Unknown GGUF metadata value type {vtype}")

    def _load(self):
        magic = self._read(4)
        if magic != GGUF_MAGIC:
            raise LoadError(f"Invalid GGUF magic {magic!r} in {self.path}")
        (self.version,) = self._read_unpack("<I")
        if self.version not in (2, 3):
            raise LoadError(f"Unsupported GGUF version {self.version}")
        (tensor_count,) = self._read_unpack("<Q")
        (kv_count,) = self._read_unpack("<Q")

        for _ in range(kv_count):
            key = self._read_string()
            (vtype,) = self._read_unpack("<I")
            self.metadata[key] = self._read_value(vtype)

        for _ in range(tensor_count):
            name = self._read_string()
            (n_dims,) = self._read_unpack("<I")
            dims = [self._read_unpack("<Q")[0] for _ in range(n_dims)]
            (ggml_type,) = self._read_unpack("<I")
            (offset,) = self._read_unpack("<Q")
            self.tensors[name] = {"type": ggml_type, "dims": dims, "offset": offset}

        alignment = int(self.metadata.get("general.alignment", DEFAULT_ALIGNMENT))
        self.data_offset = self._pos + (alignment - self._pos % alignment) % alignment

        logger.info(
            f"GGUF v{self.version} {self.path.name}: {len(self.tensors)} tensors, "
            f"{len(self.metadata)} metadata keys, data at byte {self.data_offset}"
        )

    # --- Loader boundary ---

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def has_tensor(self, name: str) -> bool:
        return name in self.tensors

    def tensor_shape(self, name: str) -> Tuple[int, ...]:
        """Row-major shape of a tensor (GGUF stores dims fastest-first)."""
        if name not in self.tensors:
            raise LoadError("Missing tensor", tensor=name)
        return tuple(int(d) for d in reversed(self.tensors[name]["dims"]))

    def get_tensor(self, name: str) -> np.ndarray:
        """
        Returns the tensor as a flat float32 array in row-major order.

        Raises:
            LoadError: if the tensor is missing, has an unsupported type, or
                its data lies outside the file.
        """
        if name not in self.tensors:
            raise LoadError("Missing tensor", tensor=name)
        meta = self.tensors[name]
        n_elements = int(np.prod(meta["dims"], dtype=np.int64))
        nbytes = tensor_nbytes(meta["type"], n_elements)
        start = self.data_offset + meta["offset"]
        if start + nbytes > len(self._mm):
            raise LoadError(f"Tensor data runs past the end of {self.path}", tensor=name)

        raw = np.frombuffer(self._mm, dtype=np.uint8, count=nbytes, offset=start)
        logger.debug(f"Reading {name}: type={meta['type']} shape={self.tensor_shape(name)}")
        return dequantize(raw, meta["type"], n_elements)

    def tensor_names(self) -> List[str]:
        return list(self.tensors)
