"""
llama3-chat: run LLaMA 3 family checkpoints locally in PyTorch.

Loads a Hugging Face style checkpoint directory (config.json, safetensors
shards, tokenizer files), optionally quantized, and generates text with a
chunked KV cache and a lazy, pull-driven decode loop.

Key modules:
  - config:    ModelConfig / QuantizationConfig parsed from config.json
  - model:     LLaMA architecture (RMSNorm, RoPE, SwiGLU, GQA, KV cache)
  - quantize:  Group-wise affine quantized Linear / Embedding layers
  - load:      Checkpoint directory → ready-to-run Model
  - tokenizer: Hugging Face tokenizer adapter with chat templates
  - generate:  Sampling and the streaming decode loop
  - device:    Hardware abstraction (CUDA/MPS/CPU)
  - utils:     Seeding, timing, diagnostics, logging
"""

__version__ = "0.1.0"
