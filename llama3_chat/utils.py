"""
Utility functions for the LLaMA 3 inference pipeline.

This module contains cross-cutting concerns that don't belong in any
specific component: reproducibility (seeding), diagnostics (parameter
counting), timing, and the console/file logger used by the scripts.
"""

import os
import sys
import time
import random
from typing import Optional
from datetime import datetime

import numpy as np
import torch
import torch.nn as nn

from llama3_chat.quantize import QuantizedEmbedding, QuantizedLinear


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed every random number generator that sampling may touch.

    Sampling draws come from torch (multinomial), on CPU or on the GPU, so
    torch's generators matter most; Python and NumPy are seeded as well so a
    seeded script is reproducible end to end.

    NOTE: GPU kernels may still be non-deterministic in the last bits, and a
    single flipped logit can change a sampled token. Greedy decoding
    (temperature 0) is the reliable way to get identical outputs.

    Args:
        seed: The random seed value.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_parameters(model: nn.Module) -> int:
    """
    Count the logical number of weights in a model.

    Quantized layers keep their weights in packed int32 buffers, not in
    parameters; each one contributes its unpacked size (rows × cols), so a
    4-bit checkpoint reports the same count as its float original.
    """
    total = sum(p.numel() for p in model.parameters())
    for module in model.modules():
        if isinstance(module, QuantizedLinear):
            total += module.in_features * module.out_features
        elif isinstance(module, QuantizedEmbedding):
            total += module.num_embeddings * module.embedding_dim
    return total


def model_memory_mb(model: nn.Module) -> float:
    """Bytes held by all parameters and buffers, in MB."""
    tensors = list(model.parameters()) + list(model.buffers())
    return sum(t.numel() * t.element_size() for t in tensors) / 1024**2


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Simple context manager for timing code blocks.

    Usage:
        with Timer("Load model") as t:
            model = load_model(path)
        print(t)   # "Load model: 1.2345s"

    On CUDA, operations are asynchronous, so the device is synchronized on
    entry and exit for accurate timing.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# GENERATION LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class GenerationLogger:
    """
    Lightweight logger that writes to stderr and an optional log file.

    Used by the scripts for everything that is not model output: load
    summaries, per-generation statistics and informational messages.
    Generated text itself goes to stdout, so it can be piped cleanly.
    """

    def __init__(self, log_dir: Optional[str] = None, quiet: bool = False):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            quiet: Suppress console output (the log file still gets it).
        """
        self.quiet = quiet
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"generate_{timestamp}.log")
            self.log_file = open(log_path, "w")
            self._write(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        if not self.quiet:
            print(msg, file=sys.stderr)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_load(
        self,
        model_dir: str,
        architecture: str,
        n_params: int,
        seconds: float,
        device: torch.device,
        dtype: torch.dtype,
    ) -> None:
        """
        Example output:
          [LOAD] weights/Meta-Llama-3-8B | 32L 4096d 32H/8KV | 8,030.3M params | cuda bfloat16 | 14.72s
        """
        self._write(
            f"[LOAD] {model_dir} | {architecture} | "
            f"{n_params / 1e6:,.1f}M params | "
            f"{device.type} {str(dtype).replace('torch.', '')} | "
            f"{seconds:.2f}s"
        )

    def log_generation(self, result) -> None:
        """Log the metrics of one GenerateResult."""
        self._write(
            f"{'─' * 60}\n"
            f"{result.stats_string()}\n"
            f"{'─' * 60}"
        )

    def log_info(self, msg: str) -> None:
        """Log an informational message."""
        self._write(f"[INFO] {msg}")

    def close(self) -> None:
        """Close the log file if open."""
        if self.log_file:
            self.log_file.close()
            self.log_file = None
