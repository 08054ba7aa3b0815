"""
One-shot text generation CLI.

USAGE:
    # Continue a prompt
    python scripts/generate_text.py weights/Meta-Llama-3-8B "Once upon a time"

    # Start from BOS alone
    python scripts/generate_text.py weights/Meta-Llama-3-8B

    # Adjust generation parameters
    python scripts/generate_text.py weights/Meta-Llama-3-8B "Hello" \
        --temperature 0 --max-tokens 64 --dtype float16

WHAT THIS SCRIPT DOES:
    1. Loads the model and tokenizer from a checkpoint directory
    2. Prints the prompt, then streams the completion token by token
    3. Stops at an EOS token or after --max-tokens tokens
    4. Reports timing on stderr
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama3_chat.config import ConfigError, GenerationConfig
from llama3_chat.device import get_device, get_dtype, device_info, get_memory_usage
from llama3_chat.generate import generate
from llama3_chat.load import load_model
from llama3_chat.model import describe_architecture
from llama3_chat.tokenizer import Tokenizer
from llama3_chat.utils import (
    GenerationLogger,
    Timer,
    count_parameters,
    model_memory_mb,
    set_seed,
)


def parse_args(argv=None) -> argparse.Namespace:
    defaults = GenerationConfig()
    parser = argparse.ArgumentParser(
        description="Generate text with a LLaMA 3 checkpoint",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "weights_dir", type=str,
        help="Checkpoint directory (config.json, *.safetensors, tokenizer files)"
    )
    parser.add_argument(
        "prompt", type=str, nargs="?", default="",
        help="Prompt to continue (empty: start from BOS)"
    )
    parser.add_argument(
        "--max-tokens", type=int, default=defaults.max_tokens,
        help="Maximum number of tokens to generate"
    )
    parser.add_argument(
        "--temperature", type=float, default=defaults.temperature,
        help="Sampling temperature (0=greedy)"
    )
    parser.add_argument(
        "--top-p", type=float, default=defaults.top_p,
        help="Top-p (nucleus) sampling threshold (1.0=disabled)"
    )
    parser.add_argument(
        "--seed", type=int, default=defaults.seed,
        help="Random seed for reproducible sampling"
    )
    parser.add_argument(
        "--device", type=str, default="auto",
        help="Device: auto, cuda, mps, cpu"
    )
    parser.add_argument(
        "--dtype", type=str, default="auto",
        choices=["auto", "float16", "bfloat16", "float32"],
        help="Parameter dtype"
    )
    parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Also write load/generation stats to a log file in this directory"
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logger = GenerationLogger(args.log_dir)

    if args.seed is not None:
        set_seed(args.seed)

    device = get_device(args.device)
    dtype = get_dtype(args.dtype, device)
    logger.log_info(device_info(device, dtype))

    try:
        tokenizer = Tokenizer(args.weights_dir)
        with Timer("Load", device) as timer:
            model = load_model(args.weights_dir, device=device, dtype=dtype, progress=True)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        logger.close()
        return 1

    logger.log_load(
        args.weights_dir, describe_architecture(model.config),
        count_parameters(model), timer.elapsed, device, dtype,
    )
    usage = get_memory_usage(device)
    logger.log_info(
        f"Weights {model_memory_mb(model):.1f} MB, "
        f"allocated {usage['allocated_mb']:.1f} MB, reserved {usage['reserved_mb']:.1f} MB"
    )

    print(args.prompt, end="", flush=True)
    detok = tokenizer.detokenizer()
    result = generate(
        model, tokenizer, args.prompt,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
        top_p=args.top_p,
        on_token=lambda token: print(detok.add_token(token), end="", flush=True),
    )
    print(detok.finalize())

    logger.log_generation(result)
    logger.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
