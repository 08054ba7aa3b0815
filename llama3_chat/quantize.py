"""
Group-wise affine weight quantization.

Quantized LLaMA checkpoints (e.g. the 4-bit community conversions) store
each Linear / Embedding weight as three tensors:

    <name>.weight   int32/uint32 (rows, cols * bits / 32)   packed integers
    <name>.scales   float        (rows, cols / group_size)
    <name>.biases   float        (rows, cols / group_size)

Every row is cut into groups of `group_size` consecutive values. Inside a
group, value j is recovered as

    w[j] = q[j] * scale + bias         with q[j] in [0, 2^bits - 1]

and 32 / bits consecutive q's share one 32-bit word, lowest bits first.

On the forward pass we dequantize back to the activation dtype and call the
ordinary PyTorch kernel. Memory is saved at rest; compute stays the same.
"""

from typing import Callable, Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F


def _check_shape(cols: int, group_size: int, bits: int) -> None:
    if cols % group_size != 0:
        raise ValueError(f"last dim {cols} is not divisible by group_size {group_size}")
    if (cols * bits) % 32 != 0:
        raise ValueError(f"last dim {cols} with {bits} bits does not fill whole 32-bit words")


def pack(q: torch.Tensor, bits: int) -> torch.Tensor:
    """
    Pack unsigned `bits`-wide integers into int32 words, lowest bits first.

    Args:
        q: Integer tensor (..., n) with values in [0, 2^bits).

    Returns:
        int32 tensor (..., n * bits / 32). Words are stored with the same bit
        pattern an uint32 checkpoint uses.
    """
    per_word = 32 // bits
    q = q.to(torch.int64).reshape(*q.shape[:-1], -1, per_word)
    shifts = torch.arange(0, 32, bits, device=q.device, dtype=torch.int64)
    words = (q << shifts).sum(dim=-1)
    # Reinterpret the unsigned 32-bit value as signed int32.
    words = torch.where(words >= 2 ** 31, words - 2 ** 32, words)
    return words.to(torch.int32)


def unpack(packed: torch.Tensor, bits: int) -> torch.Tensor:
    """Inverse of pack(): int32 words (..., w) → int64 values (..., w * 32 / bits)."""
    words = packed.to(torch.int64) & 0xFFFFFFFF
    shifts = torch.arange(0, 32, bits, device=packed.device, dtype=torch.int64)
    q = (words.unsqueeze(-1) >> shifts) & ((1 << bits) - 1)
    return q.reshape(*packed.shape[:-1], -1)


def quantize(
    weight: torch.Tensor,
    group_size: int = 64,
    bits: int = 4,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Affine-quantize a 2D weight row by row in groups.

    Each group maps [min, max] onto [0, 2^bits - 1]:
        scale = (max - min) / (2^bits - 1)
        bias  = min
        q     = round((w - bias) / scale)

    Returns:
        (packed, scales, biases) in the checkpoint layout described above.
    """
    rows, cols = weight.shape
    _check_shape(cols, group_size, bits)

    w = weight.float().reshape(rows, -1, group_size)
    w_min = w.amin(dim=-1, keepdim=True)
    w_max = w.amax(dim=-1, keepdim=True)
    n_bins = (1 << bits) - 1

    scales = ((w_max - w_min) / n_bins).clamp(min=1e-7)
    biases = w_min
    q = ((w - biases) / scales).round().clamp(0, n_bins)

    packed = pack(q.reshape(rows, cols), bits)
    return packed, scales.squeeze(-1).to(weight.dtype), biases.squeeze(-1).to(weight.dtype)


def dequantize(
    packed: torch.Tensor,
    scales: torch.Tensor,
    biases: torch.Tensor,
    group_size: int = 64,
    bits: int = 4,
) -> torch.Tensor:
    """Rebuild float weights (rows, cols) from packed integers, scales and biases."""
    q = unpack(packed, bits).to(scales.dtype)
    rows = q.shape[:-1]
    q = q.reshape(*rows, -1, group_size)
    w = q * scales.unsqueeze(-1) + biases.unsqueeze(-1)
    return w.reshape(*rows, -1)


class QuantizedLinear(nn.Module):
    """
    Drop-in nn.Linear replacement with packed quantized weights.

    The packed words, scales and biases are buffers named weight / scales /
    biases, matching checkpoint keys, so load_state_dict fills them directly.
    """

    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = False,
        group_size: int = 64,
        bits: int = 4,
    ):
        super().__init__()
        _check_shape(in_features, group_size, bits)
        self.in_features = in_features
        self.out_features = out_features
        self.group_size = group_size
        self.bits = bits

        n_groups = in_features // group_size
        self.register_buffer(
            "weight", torch.zeros(out_features, in_features * bits // 32, dtype=torch.int32)
        )
        self.register_buffer("scales", torch.ones(out_features, n_groups))
        self.register_buffer("biases", torch.zeros(out_features, n_groups))
        if bias:
            self.bias = nn.Parameter(torch.zeros(out_features))
        else:
            self.bias = None

    @classmethod
    def from_linear(cls, linear: nn.Linear, group_size: int = 64, bits: int = 4) -> "QuantizedLinear":
        """Quantize an existing float Linear layer."""
        layer = cls(
            linear.in_features, linear.out_features,
            bias=linear.bias is not None, group_size=group_size, bits=bits,
        )
        packed, scales, biases = quantize(linear.weight.data, group_size, bits)
        layer.weight.copy_(packed)
        layer.scales = scales
        layer.biases = biases
        if linear.bias is not None:
            layer.bias.data.copy_(linear.bias.data)
        return layer

    def dequantized_weight(self) -> torch.Tensor:
        return dequantize(self.weight, self.scales, self.biases, self.group_size, self.bits)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return F.linear(x, self.dequantized_weight().to(x.dtype), self.bias)

    def extra_repr(self) -> str:
        return (
            f"in_features={self.in_features}, out_features={self.out_features}, "
            f"group_size={self.group_size}, bits={self.bits}"
        )


class QuantizedEmbedding(nn.Module):
    """
    Drop-in nn.Embedding replacement with packed quantized rows.

    A lookup only dequantizes the rows that were asked for. `as_linear`
    dequantizes the whole table, for models that tie the output projection
    to the embedding matrix.
    """

    def __init__(
        self,
        num_embeddings: int,
        embedding_dim: int,
        group_size: int = 64,
        bits: int = 4,
    ):
        super().__init__()
        _check_shape(embedding_dim, group_size, bits)
        self.num_embeddings = num_embeddings
        self.embedding_dim = embedding_dim
        self.group_size = group_size
        self.bits = bits

        n_groups = embedding_dim // group_size
        self.register_buffer(
            "weight", torch.zeros(num_embeddings, embedding_dim * bits // 32, dtype=torch.int32)
        )
        self.register_buffer("scales", torch.ones(num_embeddings, n_groups))
        self.register_buffer("biases", torch.zeros(num_embeddings, n_groups))

    @classmethod
    def from_embedding(cls, embedding: nn.Embedding, group_size: int = 64, bits: int = 4) -> "QuantizedEmbedding":
        """Quantize an existing float Embedding table."""
        layer = cls(embedding.num_embeddings, embedding.embedding_dim, group_size, bits)
        packed, scales, biases = quantize(embedding.weight.data, group_size, bits)
        layer.weight.copy_(packed)
        layer.scales = scales
        layer.biases = biases
        return layer

    def forward(self, ids: torch.Tensor) -> torch.Tensor:
        return dequantize(
            self.weight[ids], self.scales[ids], self.biases[ids], self.group_size, self.bits
        )

    def as_linear(self, x: torch.Tensor) -> torch.Tensor:
        w = dequantize(self.weight, self.scales, self.biases, self.group_size, self.bits)
        return F.linear(x, w.to(x.dtype))

    def extra_repr(self) -> str:
        return (
            f"{self.num_embeddings}, {self.embedding_dim}, "
            f"group_size={self.group_size}, bits={self.bits}"
        )


def _quantized_like(module: nn.Module, group_size: int, bits: int, convert: bool) -> nn.Module:
    if isinstance(module, nn.Linear):
        if convert:
            return QuantizedLinear.from_linear(module, group_size, bits)
        return QuantizedLinear(
            module.in_features, module.out_features,
            bias=module.bias is not None, group_size=group_size, bits=bits,
        )
    if convert:
        return QuantizedEmbedding.from_embedding(module, group_size, bits)
    return QuantizedEmbedding(module.num_embeddings, module.embedding_dim, group_size, bits)


def quantize_model(
    model: nn.Module,
    group_size: int = 64,
    bits: int = 4,
    class_predicate: Optional[Callable[[str, nn.Module], bool]] = None,
    convert: bool = True,
    prefix: str = "",
) -> nn.Module:
    """
    Replace Linear / Embedding submodules with their quantized versions (in place).

    Args:
        model: Module tree to walk.
        group_size, bits: Quantization parameters.
        class_predicate: Called as predicate(dotted_path, module); only modules
                         for which it returns True are replaced. None = all.
        convert: Quantize the existing float weights. With False the
                 replacements are empty modules of the right shape, to be
                 filled from a quantized checkpoint.
        prefix: Dotted path of `model` inside the root (used in recursion).

    Returns:
        The same model object, for chaining.
    """
    for name, child in model.named_children():
        path = f"{prefix}.{name}" if prefix else name
        if isinstance(child, (nn.Linear, nn.Embedding)):
            if class_predicate is not None and not class_predicate(path, child):
                continue
            setattr(model, name, _quantized_like(child, group_size, bits, convert))
        else:
            quantize_model(child, group_size, bits, class_predicate, convert, path)
    return model
