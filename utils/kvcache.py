import jax
import jax.numpy as jnp

from models.errors import ContextOverflowError


class KVCache:
    """Per-sequence key/value cache for every layer.

    Buffers are allocated once at the maximum context length and are never
    reallocated while a sequence is running. `length` is the number of valid
    rows; `reset()` truncates it to zero so the same storage can serve a new,
    unrelated sequence.

    Shapes:
        k, v: [n_layers, seq_len, n_kv_heads, head_dim]
    """

    def __init__(
        self,
        n_layers: int,
        seq_len: int,
        kv_heads: int,
        head_dim: int,
        dtype=jnp.float32,
    ):
        self.k = jnp.zeros((n_layers, seq_len, kv_heads, head_dim), dtype=dtype)
        self.v = jnp.zeros((n_layers, seq_len, kv_heads, head_dim), dtype=dtype)
        self.length = 0

    @classmethod
    def new(cls, config, dtype=None) -> "KVCache":
        """Allocates an empty cache sized for `config` (a ModelConfig)."""
        return cls(
            n_layers=config.n_layers,
            seq_len=config.seq_len,
            kv_heads=config.n_kv_heads,
            head_dim=config.head_dim,
            dtype=dtype if dtype is not None else config.dtype,
        )

    @property
    def n_layers(self) -> int:
        return self.k.shape[0]

    @property
    def seq_len(self) -> int:
        return self.k.shape[1]

    @property
    def nbytes(self) -> int:
        return self.k.nbytes + self.v.nbytes

    def _check_position(self, position: int):
        if not 0 <= position < self.seq_len:
            raise ContextOverflowError(position, self.seq_len)

    def write(self, layer_idx: int, position: int, xk: jax.Array, xv: jax.Array):
        """Stores one key and one value row for `layer_idx` at `position`.

        Args:
          xk: Keys for the position, shape `(n_kv_heads, head_dim)` or `(n_kv_heads * head_dim,)`.
          xv: Values for the position, same shape as xk.
        """
        self._check_position(position)
        row_shape = self.k.shape[2:]
        self.k = self.k.at[layer_idx, position].set(jnp.reshape(xk, row_shape).astype(self.k.dtype))
        self.v = self.v.at[layer_idx, position].set(jnp.reshape(xv, row_shape).astype(self.v.dtype))
        self.length = max(self.length, position + 1)

    def read(self, layer_idx: int, upto: int):
        """Returns the keys and values of rows 0..=upto for `layer_idx`.

        Shapes: `(upto + 1, n_kv_heads, head_dim)` each.
        """
        self._check_position(upto)
        return self.k[layer_idx, : upto + 1], self.v[layer_idx, : upto + 1]

    def reset(self):
        """Logically empties the cache; the backing buffers are kept."""
        self.length = 0

    def __repr__(self):
        return (
            f"KVCache(n_layers={self.n_layers}, seq_len={self.seq_len}, "
            f"kv_heads={self.k.shape[2]}, head_dim={self.k.shape[3]}, length={self.length})"
        )
