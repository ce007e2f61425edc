"""
Exceptions raised by the Qwen-3 inference stack.

Load-time errors (LoadError, ConfigError) prevent an engine from being built.
Runtime errors (ContextOverflowError, InvalidTokenError, InvalidPolicyError)
end the current sequence only; no state is mutated when they are raised.
"""


class Qwen3Error(Exception):
    """Base class for every error raised by this package."""


class LoadError(Qwen3Error):
    """A model file is malformed, or a tensor is missing or has the wrong size."""

    def __init__(self, message: str, tensor: str = None, expected: int = None, actual: int = None):
        if tensor is not None and expected is not None:
            message = f"{message}: tensor '{tensor}' expected {expected} elements, got {actual}"
        elif tensor is not None:
            message = f"{message}: tensor '{tensor}'"
        super().__init__(message)
        self.tensor = tensor
        self.expected = expected
        self.actual = actual


class ConfigError(Qwen3Error, ValueError):
    """Hyperparameters are inconsistent, e.g. n_heads not divisible by n_kv_heads."""


class ContextOverflowError(Qwen3Error):
    """A position falls outside [0, seq_len)."""

    def __init__(self, position: int, seq_len: int):
        super().__init__(f"position {position} is outside the context window [0, {seq_len})")
        self.position = position
        self.seq_len = seq_len


class InvalidTokenError(Qwen3Error, ValueError):
    """A token id falls outside [0, vocab_size)."""


class InvalidPolicyError(Qwen3Error, ValueError):
    """A sampling policy was configured with out-of-range parameters."""


class TokenizerError(Qwen3Error):
    """The tokenizer could not be built from the model files."""
