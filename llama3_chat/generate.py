"""
Inference pipeline: sampling and the lazy, cache-backed decode loop.

Autoregressive generation produces text one token at a time:
  1. Feed the prompt through the model (PREFILL), filling the KV cache
  2. Sample the next token from the last position's logits
  3. Feed only that token back in (DECODE); the cache supplies the context
  4. Repeat 2-3 until the consumer stops pulling

THREE LAYERS:

  generate_step    Infinite generator of (token, prob). Owns one KV cache
                   per layer for the lifetime of the generator and does no
                   work beyond what the consumer pulls: N tokens pulled,
                   N forward passes run.

  stream_generate  Wraps generate_step with the stopping rules: stops right
                   after yielding an EOS token, or after max_tokens tokens,
                   without running another forward pass.

  generate         Batch convenience for scripts: encode the prompt, stream,
                   decode the completion, and collect timing metrics.

PER-STEP RELEASE:
  Each forward pass runs inside `_next_logits`. When it returns, every
  activation it created (per-layer queries, attention outputs, the full
  (1, L, vocab) logits of the prefill) loses its last reference and is
  freed before the token is yielded. Only the cache and the last position's
  logits survive the step.

SAMPLING:
  temperature == 0      greedy argmax, ties go to the first maximal index
  0 < top_p < 1         nucleus sampling (see top_p_sampling)
  otherwise             categorical draw over logits / temperature

  The probability returned alongside each token is the softmax of the
  ORIGINAL (unscaled) logits at the chosen index. It is informational.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional, Tuple, Union

import torch
import torch.nn.functional as F

from llama3_chat.model import Model
from llama3_chat.tokenizer import Tokenizer


@dataclass
class GenerateResult:
    """Result of text generation with inference metrics."""
    text: str
    prompt_tokens: int      # number of tokens in the prompt (including BOS)
    generated_tokens: int   # number of tokens generated (including a final EOS)
    prefill_ms: float       # time until the first token was sampled (ms)
    decode_ms: float        # time spent producing the remaining tokens (ms)
    total_ms: float         # total wall time (ms)
    peak_memory_mb: float   # peak GPU memory during generation (0 if CPU)
    temperature: float      # sampling temperature used
    top_p: float            # top-p value used
    token_ids: list = field(default_factory=list)

    @property
    def ttft_ms(self) -> float:
        """Time to first token — same as prefill time."""
        return self.prefill_ms

    @property
    def decode_tok_per_sec(self) -> float:
        """Decode throughput (tokens/sec), excluding the first token."""
        if self.decode_ms <= 0 or self.generated_tokens <= 1:
            return 0.0
        return (self.generated_tokens - 1) / (self.decode_ms / 1000)

    @property
    def overall_tok_per_sec(self) -> float:
        """Overall throughput including prefill."""
        if self.total_ms <= 0:
            return 0.0
        return self.generated_tokens / (self.total_ms / 1000)

    def stats_string(self) -> str:
        """Formatted summary of inference metrics."""
        lines = [
            f"Sampling       : temp={self.temperature}, top_p={self.top_p}",
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"TTFT           : {self.ttft_ms:.1f} ms",
            f"Decode speed   : {self.decode_tok_per_sec:.1f} tok/s",
            f"Overall speed  : {self.overall_tok_per_sec:.1f} tok/s",
            f"Total time     : {self.total_ms:.1f} ms",
        ]
        if self.peak_memory_mb > 0:
            lines.append(f"Peak GPU mem   : {self.peak_memory_mb:.1f} MB")
        return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# SAMPLING
# ═══════════════════════════════════════════════════════════════════════════

def top_p_sampling(logits: torch.Tensor, top_p: float, temperature: float) -> int:
    """
    Nucleus sampling: draw from the smallest set of tokens holding `top_p`
    of the probability mass.

    HOW IT WORKS:
      1. probs = softmax(logits / temperature)
      2. Sort ascending and take the cumulative sum
      3. Keep entries whose cumulative sum exceeds 1 - top_p; these are the
         high-probability tail of the ascending order
      4. The most probable token is always kept, so the retained set is
         never empty however small top_p is
      5. Draw from the retained (unnormalized) mass and map the sorted
         index back to a vocabulary id

    EXAMPLE:
      probs (ascending) = [0.05, 0.10, 0.15, 0.30, 0.40]
      cumsum            = [0.05, 0.15, 0.30, 0.60, 1.00]
      top_p = 0.75 → keep cumsum > 0.25 → [0.15, 0.30, 0.40]

    Args:
        logits: Logits of shape (vocab_size,).
        top_p: Mass to retain, in (0, 1).
        temperature: Positive sampling temperature.

    Returns:
        The sampled token id.
    """
    probs = F.softmax(logits / temperature, dim=-1)
    sorted_probs, sorted_indices = torch.sort(probs)
    cumulative = torch.cumsum(sorted_probs, dim=-1)

    keep = cumulative > 1 - top_p
    keep[-1] = True
    kept_probs = torch.where(keep, sorted_probs, torch.zeros_like(sorted_probs))

    sampled_idx = torch.multinomial(kept_probs, num_samples=1)
    return int(sorted_indices[sampled_idx])


def sample(
    logits: torch.Tensor,
    temperature: float = 0.0,
    top_p: float = 1.0,
) -> Tuple[int, float]:
    """
    Pick the next token from one position's logits.

    Args:
        logits: Shape (vocab_size,) or (1, vocab_size).
        temperature: 0 = greedy; must not be negative.
        top_p: Nucleus threshold; values outside (0, 1) disable truncation.

    Returns:
        (token, prob) where prob is the chosen token's probability under the
        unscaled logits.
    """
    if temperature < 0:
        raise ValueError(f"temperature must be >= 0, got {temperature}")

    logits = logits.reshape(-1).float()

    if temperature == 0:
        token = int(torch.argmax(logits))
    elif 0 < top_p < 1:
        token = top_p_sampling(logits, top_p, temperature)
    else:
        probs = F.softmax(logits / temperature, dim=-1)
        token = int(torch.multinomial(probs, num_samples=1))

    prob = F.softmax(logits, dim=-1)[token].item()
    return token, prob


# ═══════════════════════════════════════════════════════════════════════════
# DECODE LOOP
# ═══════════════════════════════════════════════════════════════════════════

def _next_logits(model: Model, tokens: torch.Tensor, cache: list) -> torch.Tensor:
    """One forward pass; returns only the last position's logits."""
    logits, _ = model(tokens, cache)
    # Copy out of the (1, L, vocab) storage so it can be freed on return.
    return logits[0, -1, :].clone()


def generate_step(
    prompt_tokens: Union[list, torch.Tensor],
    model: Model,
    temperature: float = 0.8,
    top_p: float = 1.0,
) -> Iterator[Tuple[int, float]]:
    """
    Infinite lazy generator of (token, prob) pairs.

    The first pull runs the whole prompt through the model; every later pull
    feeds just the previously sampled token. Arguments are checked when this
    is called, not on the first pull.

    Args:
        prompt_tokens: Non-empty sequence of prompt token ids.
        model: Model following the (logits, cache) forward contract.
        temperature: Sampling temperature (0 = greedy).
        top_p: Nucleus threshold.
    """
    if isinstance(prompt_tokens, torch.Tensor):
        prompt_tokens = prompt_tokens.reshape(-1).tolist()
    else:
        prompt_tokens = list(prompt_tokens)
    if not prompt_tokens:
        raise ValueError("prompt_tokens must contain at least one token")
    if temperature < 0:
        raise ValueError(f"temperature must be >= 0, got {temperature}")

    return _decode_loop(prompt_tokens, model, temperature, top_p)


@torch.inference_mode()
def _decode_loop(
    prompt_tokens: list,
    model: Model,
    temperature: float,
    top_p: float,
) -> Iterator[Tuple[int, float]]:
    device = next(model.parameters()).device
    cache = model.make_cache()

    y = torch.tensor([prompt_tokens], dtype=torch.long, device=device)
    while True:
        logits = _next_logits(model, y, cache)
        token, prob = sample(logits, temperature, top_p)
        y = torch.tensor([[token]], dtype=torch.long, device=device)
        yield token, prob


def stream_generate(
    prompt_tokens: Union[list, torch.Tensor],
    model: Model,
    eos_token_ids: Union[int, Iterable[int]],
    max_tokens: Optional[int] = None,
    temperature: float = 0.8,
    top_p: float = 1.0,
) -> Iterator[int]:
    """
    Yield generated token ids until EOS or the token budget.

    An EOS token IS yielded, then the stream ends. After `max_tokens` tokens
    the stream ends without asking the model for another step. The
    underlying generator (and with it the KV cache) is closed as soon as
    the stream stops.

    Args:
        prompt_tokens: Prompt token ids.
        model: The model.
        eos_token_ids: A single id or a collection of ids that end generation.
        max_tokens: Budget of generated tokens; None = until EOS.
        temperature, top_p: Sampling parameters.
    """
    if isinstance(eos_token_ids, int):
        eos_token_ids = {eos_token_ids}
    else:
        eos_token_ids = set(eos_token_ids)

    steps = generate_step(prompt_tokens, model, temperature, top_p)
    if max_tokens is not None and max_tokens <= 0:
        return

    try:
        for n, (token, _) in enumerate(steps, start=1):
            yield token
            if token in eos_token_ids:
                break
            if max_tokens is not None and n >= max_tokens:
                break
    finally:
        steps.close()


def generate(
    model: Model,
    tokenizer: Tokenizer,
    prompt: Union[str, list],
    max_tokens: int = 256,
    temperature: float = 0.8,
    top_p: float = 1.0,
    on_token: Optional[Callable[[int], None]] = None,
) -> GenerateResult:
    """
    Generate a completion and measure how long it took.

    Args:
        model: Loaded model (eval mode).
        tokenizer: Tokenizer for encode/decode and the stop tokens.
        prompt: Plain text, or a list of chat messages rendered through the
                tokenizer's chat template. Empty text starts from BOS alone.
        max_tokens: Maximum tokens to generate.
        temperature: Sampling temperature (0 = greedy).
        top_p: Nucleus sampling threshold (1.0 = disabled).
        on_token: Called with each token id as soon as it is sampled, e.g.
                  to stream text to a terminal.

    Returns:
        GenerateResult with the completion text (prompt excluded) and
        inference metrics.
    """
    device = next(model.parameters()).device
    use_cuda = device.type == "cuda"
    if use_cuda:
        torch.cuda.reset_peak_memory_stats(device)

    if isinstance(prompt, str):
        prompt_tokens = tokenizer.encode(prompt, bos=True)
    else:
        prompt_tokens = tokenizer.apply_chat_template(prompt)

    t_start = time.perf_counter()
    t_first = None
    generated = []
    for token in stream_generate(
        prompt_tokens, model, tokenizer.eos_token_ids,
        max_tokens=max_tokens, temperature=temperature, top_p=top_p,
    ):
        if t_first is None:
            t_first = time.perf_counter()
        generated.append(token)
        if on_token is not None:
            on_token(token)

    if use_cuda:
        torch.cuda.synchronize(device)
    t_end = time.perf_counter()
    if t_first is None:
        t_first = t_end

    peak_memory_mb = 0.0
    if use_cuda:
        peak_memory_mb = torch.cuda.max_memory_allocated(device) / 1024**2

    return GenerateResult(
        text=tokenizer.decode(generated),
        prompt_tokens=len(prompt_tokens),
        generated_tokens=len(generated),
        prefill_ms=(t_first - t_start) * 1000,
        decode_ms=(t_end - t_first) * 1000,
        total_ms=(t_end - t_start) * 1000,
        peak_memory_mb=peak_memory_mb,
        temperature=temperature,
        top_p=top_p,
        token_ids=generated,
    )
