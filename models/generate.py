"""
Token-by-token generation on top of ForwardEngine.

GenerationLoop is a lazy iterator: the prompt is prefilled on the first
`next()` and every further token costs exactly one engine step, taken only
when the consumer asks for it. Stopping consumption is cancellation.
"""

import codecs
import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Iterator, List, Optional, Sequence

import jax
from jax import random

from models.errors import InvalidTokenError
from models.qwen3.model import ForwardEngine
from models.qwen3.load import WeightStore
from sampling import GreedySampler, Sampler, sample
from utils.kvcache import KVCache

logger = logging.getLogger(__name__)


class GenerationState(enum.Enum):
    IDLE = "idle"
    PREFILL = "prefill"
    DECODE = "decode"
    DONE = "done"
    ERROR = "error"


class GenerationLoop:
    """
    Prefills a prompt and decodes new tokens one at a time.

    Iterating yields generated token ids. Decoding ends when a stop token is
    sampled (it is not yielded), after `max_new_tokens` tokens, or when the
    context window is full; `finish_reason` records which. An exception from
    the engine or sampler moves the loop to ERROR and propagates, while
    `generated` keeps everything yielded so far.

    Args:
        engine: ForwardEngine for the model. Its RunState is used exclusively
            by this loop while it runs.
        prompt_tokens: Non-empty list of prompt token ids.
        sampler: Policy used to pick each new token.
        max_new_tokens: Upper bound on the number of yielded tokens.
        stop_tokens: Ids that end the generation.
        rng_key: JAX PRNG key; split once per sampled token.
        cache: KVCache to decode into. It is reset before prefill. A new one is
            allocated when omitted.
    """

    def __init__(
        self,
        engine: ForwardEngine,
        prompt_tokens: Sequence[int],
        sampler: Sampler,
        max_new_tokens: int,
        stop_tokens: Iterable[int] = (),
        rng_key: Optional[jax.Array] = None,
        cache: Optional[KVCache] = None,
    ):
        self.prompt_tokens = [int(t) for t in prompt_tokens]
        if not self.prompt_tokens:
            raise InvalidTokenError("prompt must contain at least one token")
        self.engine = engine
        self.sampler = sampler
        self.max_new_tokens = max_new_tokens
        self.stop_tokens = frozenset(int(t) for t in stop_tokens)
        self.rng_key = rng_key if rng_key is not None else random.PRNGKey(0)
        self.cache = cache

        self.state = GenerationState.IDLE
        self.finish_reason: Optional[str] = None
        self.error: Optional[BaseException] = None
        self.generated: List[int] = []
        # Next position to run; equals the number of positions in the cache
        self.position = 0
        self._logits = None

    def __iter__(self) -> Iterator[int]:
        return self

    def __next__(self) -> int:
        if self.state in (GenerationState.DONE, GenerationState.ERROR):
            raise StopIteration
        try:
            if self.state == GenerationState.IDLE:
                if self.max_new_tokens <= 0:
                    return self._finish("length")
                self._prefill()
            else:
                self._advance()
            return self._sample_next()
        except StopIteration:
            raise
        except Exception as e:
            self.state = GenerationState.ERROR
            self.error = e
            logger.warning(f"Generation failed after {len(self.generated)} tokens: {e}")
            raise

    def _finish(self, reason: str):
        self.state = GenerationState.DONE
        self.finish_reason = reason
        logger.debug(f"Generation finished ({reason}) after {len(self.generated)} tokens")
        raise StopIteration

    def _prefill(self):
        self.state = GenerationState.PREFILL
        if self.cache is None:
            self.cache = self.engine.new_cache()
        self.cache.reset()
        for token in self.prompt_tokens:
            # Only the logits of the last prompt token are ever sampled
            self._logits = self.engine.step(token, self.position, self.cache)
            self.position += 1
        self.state = GenerationState.DECODE

    def _advance(self):
        """Feeds the last yielded token back into the model, unless decoding is over."""
        if len(self.generated) >= self.max_new_tokens:
            self._finish("length")
        if self.position >= self.engine.config.seq_len:
            self._finish("context")
        self._logits = self.engine.step(self.generated[-1], self.position, self.cache)
        self.position += 1

    def _sample_next(self) -> int:
        self.rng_key, sample_key = random.split(self.rng_key)
        token = sample(self._logits, self.sampler, sample_key)
        if token in self.stop_tokens:
            self._finish("stop")
        self.generated.append(token)
        return token

    def close(self):
        """Cancels the generation; no further steps are run."""
        if self.state not in (GenerationState.DONE, GenerationState.ERROR):
            self.state = GenerationState.DONE
            self.finish_reason = "cancelled"


def stream_text(tokens: Iterable[int], tokenizer: Any) -> Iterator[str]:
    """
    Decodes a token stream incrementally.

    Yields text as soon as it forms complete UTF-8 characters, so multi-byte
    characters split across tokens are never emitted half-way.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    for token in tokens:
        text = decoder.decode(tokenizer.decode_bytes([token]))
        if text:
            yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


def generate(
    engine: ForwardEngine,
    tokenizer: Any,
    prompt: str,
    max_new_tokens: int = 256,
    sampler: Optional[Sampler] = None,
    rng_key: Optional[jax.Array] = None,
    stop_tokens: Optional[Iterable[int]] = None,
    cache: Optional[KVCache] = None,
) -> str:
    """
    Generates a completion for `prompt` and returns the decoded text.

    Args:
        engine: ForwardEngine for the model.
        tokenizer: Tokenizer object (must have .encode, .decode, .stop_tokens)
        prompt: Prompt text, already formatted (e.g. with a chat template).
        max_new_tokens: Maximum number of tokens to generate.
        sampler: Sampling policy, greedy when omitted.
        rng_key: JAX random key
        stop_tokens: Optional override for stop tokens (uses tokenizer.stop_tokens if None)

    Returns:
        The generated text, without the prompt.
    """
    if stop_tokens is None:
        stop_tokens = tokenizer.stop_tokens

    prompt_tokens = tokenizer.encode(prompt, bos=True, eos=False)
    loop = GenerationLoop(
        engine,
        prompt_tokens,
        sampler if sampler is not None else GreedySampler(),
        max_new_tokens,
        stop_tokens=stop_tokens,
        rng_key=rng_key,
        cache=cache,
    )
    for _ in loop:
        pass
    logger.info(f"Generated {len(loop.generated)} tokens ({loop.finish_reason})")
    return tokenizer.decode(loop.generated)


def generate_concurrently(
    weights: WeightStore,
    tokenizer: Any,
    prompts: List[str],
    max_new_tokens: int = 256,
    sampler: Optional[Sampler] = None,
    rng_key: Optional[jax.Array] = None,
    stop_tokens: Optional[Iterable[int]] = None,
    max_workers: int = 4,
) -> List[str]:
    """
    Runs independent generations on a bounded thread pool.

    Every request gets its own ForwardEngine (and so its own RunState) and
    KVCache; only the read-only WeightStore is shared. Request i samples with
    the i-th split of `rng_key`.

    Returns:
        Generated texts in the order of `prompts`.
    """
    if not prompts:
        return []
    if rng_key is None:
        rng_key = random.PRNGKey(0)
    keys = random.split(rng_key, len(prompts))

    def run(index: int) -> str:
        engine = ForwardEngine(weights)
        return generate(
            engine,
            tokenizer,
            prompts[index],
            max_new_tokens=max_new_tokens,
            sampler=sampler,
            rng_key=keys[index],
            stop_tokens=stop_tokens,
        )

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(run, range(len(prompts))))
