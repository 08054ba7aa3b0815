"""
Configuration for LLaMA 3 checkpoints.

This module is the SINGLE place where a checkpoint's `config.json` is turned
into typed Python values. Everything downstream (model construction, weight
loading, quantization) reads from `ModelConfig`, never from the raw dict.

We use Python dataclasses for configuration because:
  1. Type safety: IDE can catch typos and type mismatches.
  2. Validation in one place: `validate()` rejects bad configs BEFORE any
     weight shard is opened, so a broken checkpoint fails fast.
  3. Serialization: Easy to save/load with dataclasses.asdict().
  4. Defaults: Optional fields of the Hugging Face format get the same
     defaults the reference implementations use.

CONFIG.JSON FIELDS WE READ:
  model_type, hidden_size, num_hidden_layers, intermediate_size,
  num_attention_heads, num_key_value_heads (optional), rms_norm_eps,
  vocab_size, rope_theta (10000), rope_traditional (false),
  rope_scaling (optional, linear only), quantization (optional),
  tie_word_embeddings (false).

  Real checkpoints carry many more keys (torch_dtype, bos_token_id, ...).
  Those are ignored rather than rejected.
"""

from dataclasses import dataclass, asdict, fields
from typing import Optional
import json
import os


class ConfigError(ValueError):
    """Raised when a checkpoint configuration is missing or invalid."""


# Keys that every config.json must provide. Everything else has a default.
REQUIRED_KEYS = (
    "hidden_size",
    "num_hidden_layers",
    "intermediate_size",
    "num_attention_heads",
    "rms_norm_eps",
    "vocab_size",
)

# Packed-integer widths the dequantizer knows how to unpack from uint32 words.
SUPPORTED_BITS = (2, 4, 8)


@dataclass
class QuantizationConfig:
    """
    Group-wise affine quantization parameters.

    Each row of a quantized weight is split into groups of `group_size`
    consecutive values. Every group stores one scale and one bias, and each
    value is an unsigned `bits`-wide integer q such that:

        w ≈ q * scale + bias

    The integers are packed little-end-first into 32-bit words.
    """

    group_size: int = 64
    bits: int = 4

    def validate(self) -> None:
        if self.bits not in SUPPORTED_BITS:
            raise ConfigError(
                f"quantization bits must be one of {SUPPORTED_BITS}, got {self.bits}"
            )
        if self.group_size <= 0:
            raise ConfigError(
                f"quantization group_size must be positive, got {self.group_size}"
            )


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for a LLaMA 3 model.

    Field names follow the Hugging Face `config.json` keys so that
    `ModelConfig.from_dict(json.load(f))` works on a downloaded checkpoint
    without any renaming.

    Example (Meta-Llama-3-8B):
        hidden_size=4096, num_hidden_layers=32, intermediate_size=14336,
        num_attention_heads=32, num_key_value_heads=8, vocab_size=128256,
        rope_theta=500000.0, tie_word_embeddings=False
    """

    # ── Model Dimensions ───────────────────────────────────────────────────
    hidden_size: int
    num_hidden_layers: int
    intermediate_size: int
    num_attention_heads: int
    rms_norm_eps: float
    vocab_size: int

    # "llama" for every checkpoint this package targets. Kept for reporting.
    model_type: str = "llama"

    # ── Grouped Query Attention ────────────────────────────────────────────
    # None means standard multi-head attention (one KV head per query head).
    num_key_value_heads: Optional[int] = None

    # ── Positional Encoding ────────────────────────────────────────────────
    # rope_traditional=True rotates consecutive pairs (d0,d1),(d2,d3)...
    # rope_traditional=False rotates halves (d_i, d_{i+dim/2}), which is the
    # layout Hugging Face LLaMA weights are permuted for.
    rope_theta: float = 10000.0
    rope_traditional: bool = False
    rope_scaling: Optional[dict] = None

    # ── Weights ────────────────────────────────────────────────────────────
    tie_word_embeddings: bool = False
    quantization: Optional[QuantizationConfig] = None

    def __post_init__(self):
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads
        if isinstance(self.quantization, dict):
            self.quantization = QuantizationConfig(
                group_size=self.quantization.get("group_size", 64),
                bits=self.quantization.get("bits", 4),
            )

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head: hidden_size / num_attention_heads."""
        return self.hidden_size // self.num_attention_heads

    @property
    def n_kv_groups(self) -> int:
        """Number of query heads sharing one KV head."""
        return self.num_attention_heads // self.num_key_value_heads

    @property
    def rope_scale(self) -> float:
        """
        Position multiplier for RoPE.

        Linear scaling stretches the usable context by `factor` by feeding
        RoPE the position `m / factor` instead of `m`.
        """
        if self.rope_scaling and self.rope_scaling.get("type") == "linear":
            return 1.0 / self.rope_scaling["factor"]
        return 1.0

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Called before model creation and before any weights are read, so that
        a bad config.json fails with a clear message instead of a shape
        mismatch deep inside a forward pass.
        """
        if not isinstance(self.vocab_size, int) or self.vocab_size <= 0:
            raise ConfigError("vocab_size must be bigger than zero")

        if self.rope_scaling is not None:
            required_keys = {"factor", "type"}
            if not isinstance(self.rope_scaling, dict) or set(self.rope_scaling) != required_keys:
                raise ConfigError(f"rope_scaling must contain keys {sorted(required_keys)}")
            if self.rope_scaling["type"] != "linear":
                raise ConfigError("rope_scaling 'type' currently only supports 'linear'")
            factor = self.rope_scaling["factor"]
            if isinstance(factor, bool) or not isinstance(factor, (int, float)) or factor <= 0:
                raise ConfigError(f"rope_scaling 'factor' must be a positive number, got {factor!r}")

        for name in ("hidden_size", "num_hidden_layers", "intermediate_size",
                     "num_attention_heads", "num_key_value_heads"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.hidden_size % self.num_attention_heads != 0:
            raise ConfigError(
                f"hidden_size ({self.hidden_size}) must be divisible by "
                f"num_attention_heads ({self.num_attention_heads})"
            )
        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ConfigError(
                f"num_attention_heads ({self.num_attention_heads}) must be divisible by "
                f"num_key_value_heads ({self.num_key_value_heads})"
            )
        if self.head_dim % 2 != 0:
            raise ConfigError(f"head_dim ({self.head_dim}) must be even for RoPE rotation pairs")

        if self.quantization is not None:
            self.quantization.validate()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """
        Build and validate a config from a `config.json` dictionary.

        Unknown keys are dropped. Missing required keys raise ConfigError.
        """
        missing = [k for k in REQUIRED_KEYS if k not in d]
        if missing:
            raise ConfigError(f"config is missing required keys: {', '.join(missing)}")
        known = {f.name for f in fields(cls)}
        config = cls(**{k: v for k, v in d.items() if k in known})
        config.validate()
        return config

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from a JSON file (usually <weights>/config.json)."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"model config not found: {path}")
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))


@dataclass
class GenerationConfig:
    """
    Sampling defaults shared by the CLI front-ends.

    temperature: 0 = greedy, higher = more random.
    top_p: nucleus threshold; values outside (0, 1) disable truncation.
    max_tokens: token budget per reply / completion.
    """

    temperature: float = 0.8
    top_p: float = 1.0
    max_tokens: int = 512
    seed: Optional[int] = None
