"""
LLaMA 3 model definition with a chunked KV cache.

Every numeric kernel here (matmul, softmax, attention, embedding lookup) is
a PyTorch primitive. This module only composes them into the LLaMA layer
structure and manages the per-layer key/value cache used during decoding.

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. KVCache          — Per-layer key/value storage, grown in fixed-size chunks
  2. RoPE             — Rotary Positional Embeddings with a position offset
  3. Causal mask      — Additive mask aware of already-cached positions
  4. RMSNorm          — Normalization layer
  5. MLP              — SwiGLU feed-forward network
  6. Attention        — Grouped Query Attention reading/writing the KV cache
  7. TransformerBlock — One decoder layer combining attention + MLP
  8. LlamaModel       — Embedding, N TransformerBlocks, final norm
  9. Model            — LlamaModel plus the language-model head

Submodule attribute names (model.layers.N.self_attn.q_proj, ...) match the
Hugging Face / MLX checkpoint keys, so a safetensors state dict loads into
`Model` without renaming.
"""

from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from llama3_chat.config import ModelConfig


# ═══════════════════════════════════════════════════════════════════════════
# 1. KV Cache
# ═══════════════════════════════════════════════════════════════════════════

class KVCache:
    """
    Key/value storage for ONE attention layer.

    LAYOUT:
      keys, values: (batch=1, n_kv_heads, capacity, head_dim)
      offset:       number of positions written so far (offset <= capacity)

    WHY CHUNKED GROWTH:
      The naive cache concatenates every new token onto the previous tensor,
      so every decode step allocates a tensor of a brand new shape. Caching
      allocators (CUDA, MPS) cannot reuse those blocks and memory churns.

      Instead we grow the buffers `step` positions at a time:
        capacity is always a multiple of `step`
        a decode step that fits in the current capacity writes in place
        only every `step`-th token triggers a reallocation

      Over a session of T tokens that is O(T / step) reallocations instead
      of T.

    GROWTH RULE:
      When offset + new_len > capacity, the new capacity is the smallest
      multiple of `step` that holds offset + new_len. The unused tail of the
      old buffer (positions >= offset) is trimmed first, then a zero-filled
      extension is concatenated. The old buffers are dropped.

    The returned tensors are views of the valid prefix [0, offset): callers
    never see the zero padding.
    """

    def __init__(self, head_dim: int, n_kv_heads: int, step: int = 256):
        self.head_dim = head_dim
        self.n_kv_heads = n_kv_heads
        self.step = step
        self.keys: Optional[torch.Tensor] = None
        self.values: Optional[torch.Tensor] = None
        self.offset = 0

    @property
    def capacity(self) -> int:
        """Physical length of the allocated buffers (0 before first use)."""
        return 0 if self.keys is None else self.keys.shape[2]

    def update_and_fetch(
        self,
        keys: torch.Tensor,
        values: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Append new keys/values and return the whole valid history.

        Args:
            keys: New keys, shape (batch, n_kv_heads, new_len, head_dim).
            values: New values, same shape as keys.

        Returns:
            (keys, values) for positions [0, offset) after the append.
        """
        if keys.shape[1] != self.n_kv_heads or keys.shape[3] != self.head_dim:
            raise ValueError(
                f"expected keys with {self.n_kv_heads} heads of dim {self.head_dim}, "
                f"got shape {tuple(keys.shape)}"
            )
        if values.shape != keys.shape:
            raise ValueError(
                f"keys {tuple(keys.shape)} and values {tuple(values.shape)} must match"
            )

        prev = self.offset
        new_len = keys.shape[2]

        if self.keys is None or prev + new_len > self.keys.shape[2]:
            n_steps = (prev + new_len + self.step - 1) // self.step
            extra = n_steps * self.step - prev
            shape = (keys.shape[0], self.n_kv_heads, extra, self.head_dim)
            new_k = keys.new_zeros(shape)
            new_v = values.new_zeros(shape)
            if self.keys is not None:
                self.keys = torch.cat([self.keys[:, :, :prev, :], new_k], dim=2)
                self.values = torch.cat([self.values[:, :, :prev, :], new_v], dim=2)
            else:
                self.keys, self.values = new_k, new_v

        self.offset += new_len
        self.keys[:, :, prev:self.offset, :] = keys
        self.values[:, :, prev:self.offset, :] = values

        return self.keys[:, :, :self.offset, :], self.values[:, :, :self.offset, :]

    def reset(self) -> None:
        """Drop the buffers so the cache can start a new session."""
        self.keys = None
        self.values = None
        self.offset = 0


# ═══════════════════════════════════════════════════════════════════════════
# 2. Rotary Positional Embeddings (RoPE)
# ═══════════════════════════════════════════════════════════════════════════

def rope_frequencies(
    head_dim: int,
    offset: int,
    seq_len: int,
    theta: float = 10000.0,
    scale: float = 1.0,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Compute cos and sin tables for positions [offset, offset + seq_len).

    For dimension pair i at position m the rotation angle is:

        angle(m, i) = (m * scale) * theta^(-2i / head_dim)

    The tables are computed for the requested positions only, so there is
    no maximum sequence length baked into the model: the KV cache offset
    can grow for as long as memory allows.

    Args:
        head_dim: Dimension of each attention head (must be even).
        offset: Absolute position of the first row.
        seq_len: Number of positions.
        theta: Base frequency (10000 for LLaMA 1/2, 500000 for LLaMA 3).
        scale: Linear position scaling (1 / rope_scaling.factor).
        device: Device to create tensors on.

    Returns:
        (freqs_cos, freqs_sin), each of shape (seq_len, head_dim // 2).
    """
    assert head_dim % 2 == 0, f"head_dim must be even for RoPE, got {head_dim}"

    dim_indices = torch.arange(0, head_dim, 2, device=device).float()
    freqs = 1.0 / (theta ** (dim_indices / head_dim))

    positions = torch.arange(offset, offset + seq_len, device=device).float() * scale
    angles = torch.outer(positions, freqs)
    return angles.cos(), angles.sin()


def apply_rotary_embeddings(
    x: torch.Tensor,
    freqs_cos: torch.Tensor,
    freqs_sin: torch.Tensor,
    traditional: bool = False,
) -> torch.Tensor:
    """
    Rotate query or key tensors by their position-dependent angles.

    TWO PAIRINGS:
      traditional=True:  pairs are consecutive dims (d0,d1), (d2,d3), ...
      traditional=False: pairs are (d_i, d_{i + head_dim/2}) — "rotate half".
                         Hugging Face LLaMA checkpoints expect this one.

    For each pair (x0, x1) with angle θ:
        x0' = x0 · cos(θ) - x1 · sin(θ)
        x1' = x0 · sin(θ) + x1 · cos(θ)

    Args:
        x: Tensor of shape (batch, n_heads, seq_len, head_dim).
        freqs_cos: (seq_len, head_dim // 2).
        freqs_sin: (seq_len, head_dim // 2).
        traditional: Pairing scheme, see above.

    Returns:
        Rotated tensor, same shape and dtype as x.
    """
    # (seq_len, head_dim//2) → (1, 1, seq_len, head_dim//2)
    cos = freqs_cos[None, None]
    sin = freqs_sin[None, None]
    xf = x.float()

    if traditional:
        x_pairs = xf.reshape(*x.shape[:-1], -1, 2)
        x_even, x_odd = x_pairs[..., 0], x_pairs[..., 1]
        rotated = torch.stack(
            [x_even * cos - x_odd * sin, x_even * sin + x_odd * cos], dim=-1
        ).flatten(-2)
    else:
        half = x.shape[-1] // 2
        x1, x2 = xf[..., :half], xf[..., half:]
        rotated = torch.cat([x1 * cos - x2 * sin, x2 * cos + x1 * sin], dim=-1)

    return rotated.type_as(x)


# ═══════════════════════════════════════════════════════════════════════════
# 3. Causal Mask
# ═══════════════════════════════════════════════════════════════════════════

def create_additive_causal_mask(
    n: int,
    offset: int = 0,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Additive attention mask for `n` new queries after `offset` cached keys.

    Query row i sits at absolute position offset + i and may attend to keys
    at positions 0 .. offset + i. Everything to the right gets the most
    negative finite value of `dtype`, which softmax turns into zero weight.

    Returns:
        Tensor of shape (n, offset + n).
    """
    rinds = torch.arange(offset + n, device=device)
    linds = torch.arange(offset, offset + n, device=device)
    blocked = linds[:, None] < rinds[None, :]
    mask = torch.zeros(blocked.shape, dtype=dtype, device=device)
    return mask.masked_fill(blocked, torch.finfo(dtype).min)


# ═══════════════════════════════════════════════════════════════════════════
# 4. RMSNorm
# ═══════════════════════════════════════════════════════════════════════════

class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization.

        RMSNorm(x) = x / sqrt(mean(x²) + eps) * weight

    Computed in float32 and cast back, so half-precision inputs keep a
    stable normalizer.
    """

    def __init__(self, dim: int, eps: float = 1e-5):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        rms_inv = torch.rsqrt(x.float().pow(2).mean(-1, keepdim=True) + self.eps)
        return (x.float() * rms_inv).type_as(x) * self.weight


# ═══════════════════════════════════════════════════════════════════════════
# 5. SwiGLU MLP
# ═══════════════════════════════════════════════════════════════════════════

class MLP(nn.Module):
    """
    SwiGLU feed-forward network.

        MLP(x) = down_proj( silu(gate_proj(x)) ⊙ up_proj(x) )

    Three bias-free projections; the gate decides per hidden unit how much
    of the `up` content passes through.
    """

    def __init__(self, dim: int, hidden_dim: int):
        super().__init__()
        self.gate_proj = nn.Linear(dim, hidden_dim, bias=False)
        self.down_proj = nn.Linear(hidden_dim, dim, bias=False)
        self.up_proj = nn.Linear(dim, hidden_dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))


# ═══════════════════════════════════════════════════════════════════════════
# 6. Grouped Query Attention
# ═══════════════════════════════════════════════════════════════════════════

class Attention(nn.Module):
    """
    Multi-head attention with Grouped Query Attention (GQA) and a KV cache.

    DATA FLOW (one forward call, L new tokens, cache holding `offset` tokens):

      x (B, L, dim)
        ├─→ q_proj → (B, n_heads,    L, head_dim) → RoPE @ [offset, offset+L)
        ├─→ k_proj → (B, n_kv_heads, L, head_dim) → RoPE @ [offset, offset+L) ─┐
        └─→ v_proj → (B, n_kv_heads, L, head_dim) ─────────────────────────────┤
                                                        cache.update_and_fetch ┘
                                                   → K, V (B, n_kv, offset+L, hd)
      SDPA(Q, K, V, mask) → (B, L, dim) → o_proj

    RoPE must be applied with the cache offset read BEFORE the update: the
    new tokens sit after everything already cached.

    GQA: each KV head serves n_heads / n_kv_heads query heads. The KV tensors
    are expanded with repeat_interleave just before attention, so the cache
    itself stays at the compact n_kv_heads size.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        dim = config.hidden_size
        self.n_heads = config.num_attention_heads
        self.n_kv_heads = config.num_key_value_heads
        self.head_dim = config.head_dim
        self.n_kv_groups = config.n_kv_groups
        self.scale = self.head_dim ** -0.5

        self.q_proj = nn.Linear(dim, self.n_heads * self.head_dim, bias=False)
        self.k_proj = nn.Linear(dim, self.n_kv_heads * self.head_dim, bias=False)
        self.v_proj = nn.Linear(dim, self.n_kv_heads * self.head_dim, bias=False)
        self.o_proj = nn.Linear(self.n_heads * self.head_dim, dim, bias=False)

        self.rope_theta = config.rope_theta
        self.rope_traditional = config.rope_traditional
        self.rope_scale = config.rope_scale

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        """
        Args:
            x: Input of shape (batch, seq_len, dim).
            mask: Additive mask of shape (seq_len, kv_len), or None when
                  seq_len == 1 (a single query may see every cached key).
            cache: This layer's KVCache, updated in place. None = no caching.

        Returns:
            Output of shape (batch, seq_len, dim).
        """
        batch_size, seq_len, _ = x.shape

        queries = self.q_proj(x).view(batch_size, seq_len, self.n_heads, self.head_dim)
        keys = self.k_proj(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        values = self.v_proj(x).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)

        queries = queries.transpose(1, 2)
        keys = keys.transpose(1, 2)
        values = values.transpose(1, 2)

        offset = cache.offset if cache is not None else 0
        freqs_cos, freqs_sin = rope_frequencies(
            self.head_dim, offset, seq_len,
            theta=self.rope_theta, scale=self.rope_scale, device=x.device,
        )
        queries = apply_rotary_embeddings(queries, freqs_cos, freqs_sin, self.rope_traditional)
        keys = apply_rotary_embeddings(keys, freqs_cos, freqs_sin, self.rope_traditional)

        if cache is not None:
            keys, values = cache.update_and_fetch(keys, values)

        if self.n_kv_groups > 1:
            keys = keys.repeat_interleave(self.n_kv_groups, dim=1)
            values = values.repeat_interleave(self.n_kv_groups, dim=1)

        output = F.scaled_dot_product_attention(
            queries, keys, values, attn_mask=mask, scale=self.scale
        )
        output = output.transpose(1, 2).reshape(batch_size, seq_len, -1)
        return self.o_proj(output)


# ═══════════════════════════════════════════════════════════════════════════
# 7. Transformer Block
# ═══════════════════════════════════════════════════════════════════════════

class TransformerBlock(nn.Module):
    """
    One pre-norm decoder layer:

        h   = x + self_attn(input_layernorm(x))
        out = h + mlp(post_attention_layernorm(h))
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.self_attn = Attention(config)
        self.mlp = MLP(config.hidden_size, config.intermediate_size)
        self.input_layernorm = RMSNorm(config.hidden_size, config.rms_norm_eps)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, config.rms_norm_eps)

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        h = x + self.self_attn(self.input_layernorm(x), mask, cache)
        return h + self.mlp(self.post_attention_layernorm(h))


# ═══════════════════════════════════════════════════════════════════════════
# 8. LLaMA trunk
# ═══════════════════════════════════════════════════════════════════════════

class LlamaModel(nn.Module):
    """
    Token embedding → N TransformerBlocks → final RMSNorm.

    The causal mask is built once per forward call and shared by all layers.
    With a single new token no mask is needed: the one query is the newest
    position and may attend to the whole cache.
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.vocab_size = config.vocab_size
        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList([
            TransformerBlock(config) for _ in range(config.num_hidden_layers)
        ])
        self.norm = RMSNorm(config.hidden_size, config.rms_norm_eps)

    def forward(
        self,
        inputs: torch.Tensor,
        cache: Optional[list] = None,
    ) -> torch.Tensor:
        h = self.embed_tokens(inputs)

        mask = None
        seq_len = h.shape[1]
        if seq_len > 1:
            offset = cache[0].offset if cache is not None else 0
            mask = create_additive_causal_mask(seq_len, offset, dtype=h.dtype, device=h.device)

        if cache is None:
            cache = [None] * len(self.layers)

        for layer, layer_cache in zip(self.layers, cache):
            h = layer(h, mask, layer_cache)

        return self.norm(h)


# ═══════════════════════════════════════════════════════════════════════════
# 9. Full model
# ═══════════════════════════════════════════════════════════════════════════

class Model(nn.Module):
    """
    LLaMA 3 causal language model.

    FORWARD CONTRACT (what the decode loop relies on):
        logits, cache = model(tokens, cache)

        tokens: (1, L) token ids — the full prompt on the first call, the
                last sampled token afterwards.
        cache:  list with one KVCache per layer (see make_cache()), updated
                in place and returned. None disables caching.
        logits: (1, L, vocab_size), one row per input position.

    With tie_word_embeddings the output projection reuses the embedding
    matrix and there is no separate lm_head.
    """

    def __init__(self, config: ModelConfig, init_weights: bool = True):
        super().__init__()
        config.validate()
        self.config = config
        self.model_type = config.model_type
        self.model = LlamaModel(config)
        if config.tie_word_embeddings:
            self.lm_head = None
        else:
            self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)

        if init_weights:
            self.apply(self._init_weights)

    def _init_weights(self, module: nn.Module) -> None:
        """
        Normal(0, 0.02) init for freshly constructed models.

        Skipped with init_weights=False; the checkpoint loader builds on the
        meta device and assigns the stored tensors instead.
        """
        if isinstance(module, (nn.Linear, nn.Embedding)):
            nn.init.normal_(module.weight, mean=0.0, std=0.02)

    @property
    def layers(self) -> nn.ModuleList:
        return self.model.layers

    @property
    def head_dim(self) -> int:
        return self.config.head_dim

    @property
    def n_kv_heads(self) -> int:
        return self.config.num_key_value_heads

    def make_cache(self, step: int = 256) -> list:
        """One empty KVCache per transformer layer."""
        return [KVCache(self.head_dim, self.n_kv_heads, step) for _ in self.layers]

    def forward(
        self,
        inputs: torch.Tensor,
        cache: Optional[list] = None,
    ) -> Tuple[torch.Tensor, Optional[list]]:
        out = self.model(inputs, cache)
        if self.lm_head is not None:
            return self.lm_head(out), cache

        embed = self.model.embed_tokens
        if isinstance(embed, nn.Embedding):
            return F.linear(out, embed.weight), cache
        # Quantized embedding tables project through their own dequantizer.
        return embed.as_linear(out), cache


def describe_architecture(config: ModelConfig) -> str:
    """Short architecture string, e.g. '16L 2048d 32H/8KV'."""
    return (
        f"{config.num_hidden_layers}L {config.hidden_size}d "
        f"{config.num_attention_heads}H/{config.num_key_value_heads}KV"
    )
