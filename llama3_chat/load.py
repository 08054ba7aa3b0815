"""
Load a LLaMA 3 model from a local checkpoint directory.

DIRECTORY LAYOUT:
    <dir>/config.json            architecture (+ optional quantization)
    <dir>/*.safetensors          one or more weight shards, merged in name order
    <dir>/tokenizer.json         (read by llama3_chat.tokenizer)
    <dir>/tokenizer_config.json  (read by llama3_chat.tokenizer)

LOAD ORDER (fail as early as possible):
  1. config.json is parsed and validated. A bad config raises ConfigError
     before a single shard is opened.
  2. All shards are read into one state dict.
  3. The model is built on the meta device (shapes only). If the config
     says it is quantized, every Linear / Embedding that has a matching
     `<name>.scales` tensor in the checkpoint is swapped for an empty
     quantized counterpart.
  4. The state dict is cast to the target dtype and assigned strictly:
     the checkpoint tensors become the parameters, and missing or
     unexpected keys are errors, not warnings.
"""

import glob
import os
from typing import Optional

import torch
import torch.nn as nn
from safetensors.torch import load_file
from tqdm import tqdm

from llama3_chat.config import ModelConfig
from llama3_chat.model import Model
from llama3_chat.quantize import quantize_model


def load_config(model_dir: str) -> ModelConfig:
    """Read and validate <model_dir>/config.json."""
    if not os.path.isdir(model_dir):
        raise FileNotFoundError(f"model directory not found: {model_dir}")
    return ModelConfig.load(os.path.join(model_dir, "config.json"))


def load_weights(model_dir: str, progress: bool = False) -> dict:
    """
    Merge every *.safetensors shard in `model_dir` into a single dict.

    With progress=True a tqdm bar on stderr counts shards as they load;
    8B checkpoints come in several multi-gigabyte files.

    Packed quantized words are stored as uint32; they are reinterpreted as
    int32 (same bits) because that is what the quantized modules hold.
    """
    shards = sorted(glob.glob(os.path.join(model_dir, "*.safetensors")))
    if not shards:
        raise FileNotFoundError(f"no *.safetensors weight files found in {model_dir}")

    weights = {}
    for shard in tqdm(shards, desc="Loading shards", disable=not progress):
        weights.update(load_file(shard))

    for name, tensor in weights.items():
        if tensor.dtype == torch.uint32:
            weights[name] = tensor.view(torch.int32)
    return weights


def sanitize(weights: dict, config: ModelConfig) -> dict:
    """
    Drop checkpoint entries that have no counterpart in `Model`.

    - rotary inverse-frequency tables: RoPE tables are computed on the fly
    - lm_head.*: when embeddings are tied, the head IS the embedding table
    """
    weights = {k: v for k, v in weights.items() if "rotary_emb.inv_freq" not in k}
    if config.tie_word_embeddings:
        weights = {k: v for k, v in weights.items() if not k.startswith("lm_head.")}
    return weights


def build_model(config: ModelConfig, weights: Optional[dict] = None) -> Model:
    """
    Construct an empty Model for `config`, quantizing layers the checkpoint quantized.

    The model lives on the meta device: every parameter has its shape and
    no storage, and no random init or quantization runs. Fill it with
    `load_state_dict(weights, assign=True)`.

    Some older quantized checkpoints leave a few layers in float; a layer is
    only quantized if `<path>.scales` is present in `weights`.
    """
    keys = weights or {}

    def predicate(path: str, module: nn.Module) -> bool:
        return f"{path}.scales" in keys and isinstance(module, (nn.Linear, nn.Embedding))

    with torch.device("meta"):
        model = Model(config, init_weights=False)
        if config.quantization is not None:
            quantize_model(
                model,
                group_size=config.quantization.group_size,
                bits=config.quantization.bits,
                class_predicate=predicate,
                convert=False,
            )
    return model


def load_model(
    model_dir: str,
    device: Optional[torch.device] = None,
    dtype: Optional[torch.dtype] = None,
    progress: bool = False,
) -> Model:
    """
    Load config + weights from `model_dir` and return a model in eval mode.

    Args:
        model_dir: Checkpoint directory.
        device: Target device (default: CPU).
        dtype: Floating dtype for parameters. None keeps the checkpoint dtype.
        progress: Show a progress bar while reading shards.

    Returns:
        The loaded Model, with gradients disabled.
    """
    config = load_config(model_dir)
    weights = sanitize(load_weights(model_dir, progress), config)

    if dtype is None:
        dtype = next((t.dtype for t in weights.values() if t.is_floating_point()), torch.float32)

    for name, tensor in weights.items():
        if tensor.is_floating_point():
            weights[name] = tensor.to(dtype)

    model = build_model(config, weights)
    model.load_state_dict(weights, strict=True, assign=True)

    if device is not None:
        model = model.to(device)

    model.eval()
    model.requires_grad_(False)
    return model
