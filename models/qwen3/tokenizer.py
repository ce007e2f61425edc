"""
Byte-level BPE tokenizer for Qwen-3 models, backed by tiktoken.

Qwen's vocabulary is stored as byte-level BPE strings (every byte mapped to a
printable unicode character). The strings are mapped back to raw bytes and the
token ids are used as merge ranks, which is exactly what tiktoken expects.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import (
    AbstractSet,
    Collection,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
    Union,
    cast,
)

import tiktoken

from models.errors import TokenizerError

logger = logging.getLogger(__name__)

# GGUF tokenizer.ggml.token_type values
TOKEN_TYPE_NORMAL = 1
TOKEN_TYPE_UNKNOWN = 2
TOKEN_TYPE_CONTROL = 3
TOKEN_TYPE_USER_DEFINED = 4
TOKEN_TYPE_UNUSED = 5
TOKEN_TYPE_BYTE = 6

# Special tokens that end a model turn when present in the vocabulary
STOP_TOKEN_NAMES = ("<|endoftext|>", "<|im_end|>")


@lru_cache()
def bytes_to_unicode() -> Dict[int, str]:
    """
    The reversible byte -> printable character table used by byte-level BPE.

    Printable latin-1 bytes map to themselves; the remaining bytes are shifted
    into the range starting at U+0100.
    """
    bs = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    cs = bs[:]
    n = 0
    for b in range(2**8):
        if b not in bs:
            bs.append(b)
            cs.append(2**8 + n)
            n += 1
    return dict(zip(bs, (chr(c) for c in cs)))


@lru_cache()
def unicode_to_bytes() -> Dict[str, int]:
    return {c: b for b, c in bytes_to_unicode().items()}


def token_bytes(token: str) -> Optional[bytes]:
    """Raw bytes of a byte-level BPE token string, or None if it is not one."""
    table = unicode_to_bytes()
    try:
        return bytes(table[c] for c in token)
    except KeyError:
        return None


class Tokenizer:
    """
    Tokenizing and encoding/decoding text using tiktoken with Qwen's vocabulary.
    """

    special_tokens: Dict[str, int]
    # Qwen-2/3 pre-tokenizer: like cl100k, but digits are split one at a time
    pat_str = r"(?i:'s|'t|'re|'ve|'m|'ll|'d)|[^\r\n\p{L}\p{N}]?\p{L}+|\p{N}| ?[^\s\p{L}\p{N}]+[\r\n]*|\s*[\r\n]+|\s+(?!\S)|\s+"  # noqa: E501

    def __init__(
        self,
        mergeable_ranks: Dict[bytes, int],
        special_tokens: Dict[str, int],
        bos_id: Optional[int] = None,
        eos_id: Optional[int] = None,
        name: str = "qwen3",
    ):
        """
        Args:
            mergeable_ranks: Raw token bytes -> token id (also its merge rank).
            special_tokens: Special token text -> token id.
            bos_id: Optional beginning-of-text id. Qwen models usually have none.
            eos_id: End-of-text id. Defaults to <|endoftext|> when present.
        """
        if not mergeable_ranks:
            raise TokenizerError("Tokenizer vocabulary is empty")

        self.special_tokens = dict(special_tokens)
        self.model = tiktoken.Encoding(
            name=name,
            pat_str=self.pat_str,
            mergeable_ranks=mergeable_ranks,
            special_tokens=self.special_tokens,
        )

        self.vocab_size: int = self.model.max_token_value + 1
        # Padding and unused ids have no bytes; they decode to nothing
        self.decodable_ids = set(mergeable_ranks.values()) | set(self.special_tokens.values())
        self.bos_id: Optional[int] = bos_id
        self.eos_id: Optional[int] = (
            eos_id if eos_id is not None else self.special_tokens.get("<|endoftext|>")
        )
        self.im_start_id: Optional[int] = self.special_tokens.get("<|im_start|>")
        self.im_end_id: Optional[int] = self.special_tokens.get("<|im_end|>")

        # Tokens that signify the end of a model's turn
        self.stop_tokens = {
            self.special_tokens[t] for t in STOP_TOKEN_NAMES if t in self.special_tokens
        }
        if self.eos_id is not None:
            self.stop_tokens.add(self.eos_id)

    @classmethod
    def from_gguf(cls, reader) -> "Tokenizer":
        """Builds the tokenizer from `tokenizer.ggml.*` metadata of a GGUF file."""
        tokens = reader.get_metadata("tokenizer.ggml.tokens")
        if not tokens:
            raise TokenizerError("GGUF file has no tokenizer.ggml.tokens vocabulary")
        model_type = reader.get_metadata("tokenizer.ggml.model", "gpt2")
        if model_type != "gpt2":
            raise TokenizerError(f"Unsupported tokenizer model '{model_type}', expected byte-level BPE")
        token_types = reader.get_metadata("tokenizer.ggml.token_type") or [TOKEN_TYPE_NORMAL] * len(tokens)

        mergeable_ranks: Dict[bytes, int] = {}
        special_tokens: Dict[str, int] = {}
        for token_id, (token, token_type) in enumerate(zip(tokens, token_types)):
            if token_type in (TOKEN_TYPE_CONTROL, TOKEN_TYPE_USER_DEFINED):
                special_tokens[token] = token_id
            elif token_type == TOKEN_TYPE_UNUSED:
                continue
            else:
                raw = token_bytes(token)
                if raw is None:
                    logger.debug(f"Skipping non byte-level token {token_id}: {token!r}")
                    continue
                mergeable_ranks.setdefault(raw, token_id)

        logger.info(
            f"Tokenizer from GGUF: {len(mergeable_ranks)} BPE tokens, {len(special_tokens)} special tokens"
        )
        return cls(
            mergeable_ranks,
            special_tokens,
            bos_id=reader.get_metadata("tokenizer.ggml.bos_token_id")
            if reader.get_metadata("tokenizer.ggml.add_bos_token", False)
            else None,
            eos_id=reader.get_metadata("tokenizer.ggml.eos_token_id"),
        )

    @classmethod
    def from_tokenizer_json(cls, path: str) -> "Tokenizer":
        """Builds the tokenizer from a HuggingFace tokenizer.json file."""
        path_obj = Path(path)
        if not path_obj.is_file():
            raise TokenizerError(f"Tokenizer file not found at {path}")
        with open(path_obj, "r", encoding="utf-8") as f:
            data = json.load(f)

        try:
            vocab: Dict[str, int] = data["model"]["vocab"]
        except (KeyError, TypeError) as e:
            raise TokenizerError(f"{path} has no model.vocab section") from e

        mergeable_ranks: Dict[bytes, int] = {}
        for token, token_id in vocab.items():
            raw = token_bytes(token)
            if raw is not None:
                mergeable_ranks.setdefault(raw, token_id)
        special_tokens = {t["content"]: t["id"] for t in data.get("added_tokens", [])}
        return cls(mergeable_ranks, special_tokens, name=path_obj.parent.name or "qwen3")

    def encode(
        self,
        s: str,
        *,
        bos: bool = False,
        eos: bool = False,
        allowed_special: Union[Literal["all"], AbstractSet[str]] = "all",
        disallowed_special: Union[Literal["all"], Collection[str]] = (),
    ) -> List[int]:
        """
        Encodes a string into a list of token IDs.

        Args:
            s (str): The input string.
            bos (bool): Whether to prepend the beginning-of-text token, if the model has one.
            eos (bool): Whether to append the end-of-text token.
            allowed_special: Special tokens recognised in the text (refer to tiktoken docs).
            disallowed_special: Special tokens rejected in the text (refer to tiktoken docs).

        Returns:
            List[int]: The encoded token IDs.
        """
        t = self.model.encode(
            s,
            allowed_special=allowed_special,
            disallowed_special=disallowed_special,
        )
        if bos and self.bos_id is not None:
            t.insert(0, self.bos_id)
        if eos and self.eos_id is not None:
            t.append(self.eos_id)
        return t

    def decode(self, t: Sequence[int]) -> str:
        """
        Decodes a list of token IDs into a string.

        Ids without a vocabulary entry (e.g. GGUF padding tokens) are dropped.
        """
        return self.decode_bytes(t).decode("utf-8", errors="replace")

    def decode_bytes(self, t: Sequence[int]) -> bytes:
        ids = [int(i) for i in t]
        known = [i for i in ids if i in self.decodable_ids]
        if len(known) != len(ids):
            logger.debug(f"Dropping undecodable token ids {sorted(set(ids) - set(known))}")
        return self.model.decode_bytes(cast(List[int], known))

    def apply_chat_template(self, user_prompt: str, system_prompt: Optional[str] = None) -> str:
        """Formats a single-turn conversation in Qwen's ChatML layout."""
        prompt = ""
        if system_prompt:
            prompt += f"<|im_start|>system\n{system_prompt}<|im_end|>\n"
        prompt += f"<|im_start|>user\n{user_prompt}<|im_end|>\n<|im_start|>assistant\n"
        return prompt

    def get_vocab_size(self) -> int:
        """Returns the size of the vocabulary."""
        return self.vocab_size
