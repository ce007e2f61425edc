import logging
import sys
import time
from typing import Optional

import fire
from jax import random

from models.generate import GenerationLoop, stream_text
from models.qwen3.load import load_model
from models.qwen3.model import ForwardEngine
from sampling import make_sampler
from utils.memory import estimate_pytree_memory_footprint, format_bytes, kv_cache_bytes


def main(
    model_path: str,
    prompt: str = "Write a python function that prints all prime numbers between 1 and 100.",
    max_new_tokens: int = 256,
    temperature: float = 0.6,
    top_p: float = 0.95,
    seed: Optional[int] = None,
    seq_len: int = 4096,
    system_prompt: Optional[str] = None,
    chat: bool = True,
    log_level: str = "WARNING",
):
    """
    Entry point for running a Qwen-3 model for text generation.

    Args:
        model_path: A .gguf file or a HuggingFace checkpoint directory.
        prompt: User prompt.
        max_new_tokens: Maximum number of tokens to generate.
        temperature: Sampling temperature; 0 decodes greedily.
        top_p: Nucleus threshold; 1.0 disables nucleus filtering.
        seed: PRNG seed, taken from the clock when omitted.
        seq_len: Cap on the context window (bounds the KV cache size).
        system_prompt: Optional system message for the chat template.
        chat: Wrap the prompt in the Qwen chat template.
        log_level: Python logging level name.
    """
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("jax", "absl"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    sampler = make_sampler(temperature, top_p)
    if seed is None:
        seed = time.time_ns() % (2**31)
    rng_key = random.PRNGKey(seed)

    print("Loading model and tokenizer...")
    start_time = time.time()
    weights, tokenizer = load_model(model_path, seq_len=seq_len)
    config = weights.config
    print("Model config: ", config)
    print(f"Loaded model and tokenizer in {time.time() - start_time:.2f} seconds")

    # Estimate and print memory usage
    print(f"Estimated model params size: {format_bytes(estimate_pytree_memory_footprint(weights))}")
    print(f"KVCache size: {format_bytes(kv_cache_bytes(config))}")

    if chat:
        prompt = tokenizer.apply_chat_template(prompt, system_prompt=system_prompt)
    prompt_tokens = tokenizer.encode(prompt, bos=True, eos=False)
    print(f"Prompt: {len(prompt_tokens)} tokens, sampler: {sampler}, seed: {seed}")

    engine = ForwardEngine(weights)
    loop = GenerationLoop(
        engine,
        prompt_tokens,
        sampler,
        max_new_tokens,
        stop_tokens=tokenizer.stop_tokens,
        rng_key=rng_key,
    )

    start_time = time.time()
    first_token_time = None
    print("-" * 20)
    try:
        for text in stream_text(loop, tokenizer):
            if first_token_time is None:
                first_token_time = time.time()
            sys.stdout.write(text)
            sys.stdout.flush()
    except KeyboardInterrupt:
        loop.close()
    print()
    print("-" * 20)

    elapsed = time.time() - start_time
    n_generated = len(loop.generated)
    if first_token_time is not None:
        print(f"Time to first token: {first_token_time - start_time:.2f} seconds")
    if n_generated > 1 and first_token_time is not None:
        decode_time = time.time() - first_token_time
        print(f"Decode speed: {(n_generated - 1) / max(decode_time, 1e-9):.2f} tokens/s")
    print(f"Generated {n_generated} tokens in {elapsed:.2f} seconds (finish reason: {loop.finish_reason})")


if __name__ == "__main__":
    fire.Fire(main)
