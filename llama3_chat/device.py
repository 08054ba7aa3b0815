"""
Hardware abstraction for inference.

This module encapsulates ALL device-specific logic so that the model,
loader and decode loop stay device-agnostic.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs): bfloat16 on Ampere+, float16 otherwise.
  2. MPS (Apple Silicon): float16 weights work for inference.
  3. CPU: float32 only. Slow, but always available.

MEMORY RELEASE:
  CUDA and MPS use caching allocators. Freed tensors return to the cache,
  not to the OS, so a long chat session keeps the peak reservation of its
  longest turn. `release_memory` hands the cache back between turns so the
  process returns to its resting footprint after each reply.
"""

import gc
from typing import Optional

import torch


DTYPES = {
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
    "float32": torch.float32,
}


def get_device(requested: str = "auto") -> torch.device:
    """
    Resolve a device string. "auto" picks CUDA → MPS → CPU.

    Args:
        requested: "auto", "cuda", "mps", "cpu" or any torch device string.
    """
    if requested != "auto":
        return torch.device(requested)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def _auto_dtype(device: torch.device) -> torch.dtype:
    if device.type == "cuda":
        return torch.bfloat16 if torch.cuda.is_bf16_supported() else torch.float16
    if device.type == "mps":
        return torch.float16
    # Half precision matmuls are slow or unsupported on CPU.
    return torch.float32


def get_dtype(requested: str, device: torch.device) -> torch.dtype:
    """
    Resolve a dtype name for inference on `device`.

    "auto" picks bfloat16 on CUDA cards that support it (float16 otherwise),
    float16 on MPS and float32 on CPU.
    """
    if requested == "auto":
        return _auto_dtype(device)
    if requested not in DTYPES:
        raise ValueError(
            f"unknown dtype {requested!r}, expected 'auto' or one of {sorted(DTYPES)}"
        )
    return DTYPES[requested]


def device_info(device: torch.device, dtype: Optional[torch.dtype] = None) -> str:
    """
    Human-readable description of the device, printed once at startup.
    """
    lines = [f"Device: {device}"]
    if dtype is not None:
        lines.append(f"  Dtype: {str(dtype).replace('torch.', '')}")

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  CUDA: {torch.version.cuda}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  torch {torch.__version__}")
    return "\n".join(lines)


def get_memory_usage(device: torch.device) -> dict:
    """
    Current memory usage in MB: 'allocated_mb' (live tensors) and
    'reserved_mb' (held by the caching allocator). Zeros on CPU.
    """
    if device.type == "cuda":
        allocated = torch.cuda.memory_allocated(device)
        reserved = torch.cuda.memory_reserved(device)
    elif device.type == "mps":
        allocated = torch.mps.current_allocated_memory()
        reserved = torch.mps.driver_allocated_memory()
    else:
        allocated = reserved = 0
    return {"allocated_mb": allocated / 1024**2, "reserved_mb": reserved / 1024**2}


def release_memory(device: torch.device) -> None:
    """
    Collect unreachable tensors and return cached allocator blocks to the OS.

    Called by the CLI after a chat turn, once the turn's KV cache has been
    dropped.
    """
    gc.collect()
    if device.type == "cuda":
        torch.cuda.empty_cache()
    elif device.type == "mps":
        torch.mps.empty_cache()
