"""
Tokenizer adapter for LLaMA 3 checkpoints.

LLaMA 3 ships a byte-level BPE tokenizer (128K vocabulary, tiktoken-style
merges) as a Hugging Face `tokenizer.json`, plus a `tokenizer_config.json`
that names the special tokens and carries the Jinja chat template. We load
both through `transformers.AutoTokenizer` and expose the small surface the
rest of the package needs:

  - encode / decode with explicit BOS / EOS control
  - apply_chat_template: messages → prompt token ids
  - bos_id, eos_id and the full set of stop tokens

STOP TOKENS:
  Base LLaMA 3 models end text with <|end_of_text|>. Instruct models end a
  turn with <|eot_id|> (and, for tool calls, <|eom_id|>). The canonical list
  lives in `generation_config.json` as `eos_token_id`, which may be a single
  int or a list. `eos_token_ids` merges that list with the tokenizer's own
  eos token, so the decode loop stops on any of them.

The BPE merge algorithm itself is NOT implemented here; it lives in the
`tokenizers` library that transformers wraps.
"""

import json
import os
from typing import Optional

from transformers import AutoTokenizer


class Tokenizer:
    """
    Thin wrapper around a Hugging Face tokenizer loaded from a directory.

    Usage:
        tokenizer = Tokenizer("weights/Meta-Llama-3-8B-Instruct")
        prompt = tokenizer.apply_chat_template([{"role": "user", "content": "Hi"}])
        text = tokenizer.decode(generated_ids)
    """

    def __init__(self, model_dir: str):
        """
        Args:
            model_dir: Directory containing tokenizer.json / tokenizer_config.json.

        Raises:
            FileNotFoundError: If the directory has no tokenizer files.
        """
        if not os.path.exists(os.path.join(model_dir, "tokenizer_config.json")):
            raise FileNotFoundError(f"tokenizer_config.json not found in {model_dir}")
        self._tok = AutoTokenizer.from_pretrained(model_dir)
        self._extra_eos_ids = self._read_generation_eos(model_dir)

    @staticmethod
    def _read_generation_eos(model_dir: str) -> list[int]:
        path = os.path.join(model_dir, "generation_config.json")
        if not os.path.exists(path):
            return []
        with open(path, "r") as f:
            eos = json.load(f).get("eos_token_id")
        if eos is None:
            return []
        return [eos] if isinstance(eos, int) else list(eos)

    def encode(
        self,
        text: str,
        bos: bool = False,
        eos: bool = False,
    ) -> list[int]:
        """
        Encode text into token ids without any implicit special tokens.

        Args:
            text: Input text.
            bos: Prepend the BOS token.
            eos: Append the EOS token.
        """
        tokens = self._tok.encode(text, add_special_tokens=False)
        if bos and self.bos_id is not None:
            tokens = [self.bos_id] + tokens
        if eos and self.eos_id is not None:
            tokens = tokens + [self.eos_id]
        return tokens

    def decode(self, tokens: list[int], skip_special_tokens: bool = True) -> str:
        """Decode token ids back into text, dropping special tokens by default."""
        return self._tok.decode(tokens, skip_special_tokens=skip_special_tokens)

    @property
    def has_chat_template(self) -> bool:
        return bool(getattr(self._tok, "chat_template", None))

    def apply_chat_template(
        self,
        messages: list[dict],
        add_generation_prompt: bool = True,
    ) -> list[int]:
        """
        Render a conversation with the checkpoint's chat template and encode it.

        The template is rendered to text first and then encoded without
        implicit special tokens: LLaMA 3 templates already emit
        <|begin_of_text|> themselves.

        Args:
            messages: [{"role": "system"|"user"|"assistant", "content": str}, ...]
            add_generation_prompt: Append the assistant header so the model
                                   answers as the assistant.
        """
        if not self.has_chat_template:
            raise ValueError("tokenizer has no chat_template; use encode() for plain prompts")
        text = self._tok.apply_chat_template(
            messages, tokenize=False, add_generation_prompt=add_generation_prompt
        )
        return self._tok.encode(text, add_special_tokens=False)

    @property
    def vocab_size(self) -> int:
        """Total number of tokens, including added special tokens."""
        return len(self._tok)

    @property
    def bos_id(self) -> Optional[int]:
        return self._tok.bos_token_id

    @property
    def eos_id(self) -> Optional[int]:
        return self._tok.eos_token_id

    @property
    def pad_id(self) -> int:
        """Padding id, or -1 if the tokenizer defines none (LLaMA 3 does not)."""
        pad = self._tok.pad_token_id
        return pad if pad is not None else -1

    @property
    def eos_token_ids(self) -> set[int]:
        """Every id that should end generation."""
        ids = set(self._extra_eos_ids)
        if self.eos_id is not None:
            ids.add(self.eos_id)
        return ids

    def id_to_piece(self, token_id: int) -> str:
        """Raw vocabulary string for a token id, e.g. 'ĠOnce' or '<|eot_id|>'."""
        return self._tok.convert_ids_to_tokens(token_id)

    def piece_to_id(self, piece: str) -> int:
        return self._tok.convert_tokens_to_ids(piece)

    def detokenizer(self) -> "StreamingDetokenizer":
        """A fresh incremental decoder for printing tokens as they arrive."""
        return StreamingDetokenizer(self)

    def __len__(self) -> int:
        return self.vocab_size


class StreamingDetokenizer:
    """
    Turns a stream of token ids into a stream of text pieces.

    A byte-level BPE token can hold half of a multi-byte UTF-8 character,
    so tokens cannot be decoded one at a time. Instead the ids seen so far
    are decoded as a whole and only the new suffix is emitted. While the
    text ends in U+FFFD (an incomplete byte sequence) nothing is emitted;
    the character is printed once its remaining bytes arrive.

    Usage:
        detok = tokenizer.detokenizer()
        for token in stream_generate(...):
            print(detok.add_token(token), end="", flush=True)
        print(detok.finalize())
    """

    def __init__(self, tokenizer: Tokenizer):
        self._tokenizer = tokenizer
        self.tokens: list[int] = []
        self._emitted = 0

    def add_token(self, token: int) -> str:
        """Add one id; return the text that became final because of it."""
        self.tokens.append(token)
        text = self._tokenizer.decode(self.tokens)
        if text.endswith("�"):
            return ""
        return self._take(text)

    def finalize(self) -> str:
        """Flush whatever is left, including an incomplete trailing character."""
        return self._take(self._tokenizer.decode(self.tokens))

    @property
    def text(self) -> str:
        return self._tokenizer.decode(self.tokens)

    def _take(self, text: str) -> str:
        piece = text[self._emitted:]
        self._emitted = len(text)
        return piece
