"""
Interactive chat with an instruction-tuned LLaMA 3 checkpoint.

USAGE:
    python scripts/chat.py weights/Meta-Llama-3-8B-Instruct
    python scripts/chat.py weights/Meta-Llama-3-8B-Instruct \
        --system "You are a terse assistant." --temperature 0.6 --top-p 0.9

HOW A TURN WORKS:
    1. The user's line is appended to the message history
    2. The WHOLE history is rendered through the checkpoint's chat template
       and encoded; generation starts from a fresh KV cache every turn
    3. The reply streams to the terminal until an end-of-turn token
       (<|eot_id|>) or --max-tokens
    4. The decoded reply is appended to the history as the assistant turn
    5. Cached allocator memory is handed back before the next prompt

Ctrl-D (EOF) or Ctrl-C at the prompt exits. Ctrl-C while the model is
replying stops that reply and keeps the session going.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama3_chat.config import ConfigError, GenerationConfig
from llama3_chat.device import (
    device_info,
    get_device,
    get_dtype,
    get_memory_usage,
    release_memory,
)
from llama3_chat.generate import stream_generate
from llama3_chat.load import load_model
from llama3_chat.model import Model, describe_architecture
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
        description="Chat with a LLaMA 3 instruct checkpoint",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "weights_dir", type=str,
        help="Checkpoint directory (config.json, *.safetensors, tokenizer files)"
    )
    parser.add_argument(
        "--max-tokens", type=int, default=defaults.max_tokens,
        help="Maximum number of tokens per reply"
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
        "--system", type=str, default=None,
        help="Optional system prompt placed at the start of the conversation"
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
    return parser.parse_args(argv)


def reply(
    model: Model,
    tokenizer: Tokenizer,
    messages: list[dict],
    args: argparse.Namespace,
) -> str:
    """Stream one assistant reply to stdout and return its text."""
    prompt_tokens = tokenizer.apply_chat_template(messages)
    detok = tokenizer.detokenizer()
    try:
        for token in stream_generate(
            prompt_tokens, model, tokenizer.eos_token_ids,
            max_tokens=args.max_tokens,
            temperature=args.temperature,
            top_p=args.top_p,
        ):
            print(detok.add_token(token), end="", flush=True)
    except KeyboardInterrupt:
        pass
    print(detok.finalize())
    return detok.text


def chat_loop(
    model: Model,
    tokenizer: Tokenizer,
    args: argparse.Namespace,
) -> None:
    """Read-generate-print loop over a growing message history."""
    device = next(model.parameters()).device
    messages = []
    if args.system:
        messages.append({"role": "system", "content": args.system})

    print("Type a message and press Enter. Ctrl-D or Ctrl-C to exit.\n")
    while True:
        try:
            user_input = input("You> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            break

        if not user_input:
            continue

        messages.append({"role": "user", "content": user_input})
        print("Assistant> ", end="", flush=True)
        answer = reply(model, tokenizer, messages, args)
        messages.append({"role": "assistant", "content": answer})

        release_memory(device)


def main(argv=None) -> int:
    args = parse_args(argv)
    logger = GenerationLogger()

    if args.seed is not None:
        set_seed(args.seed)

    device = get_device(args.device)
    dtype = get_dtype(args.dtype, device)
    logger.log_info(device_info(device, dtype))

    try:
        tokenizer = Tokenizer(args.weights_dir)
        if not tokenizer.has_chat_template:
            raise ConfigError(
                f"tokenizer in {args.weights_dir} has no chat_template; "
                "use generate_text.py for base models"
            )
        with Timer("Load", device) as timer:
            model = load_model(args.weights_dir, device=device, dtype=dtype, progress=True)
    except (ConfigError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
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

    chat_loop(model, tokenizer, args)
    return 0


if __name__ == "__main__":
    sys.exit(main())
