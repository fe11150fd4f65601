#  Copyright (c) 2025, Anemll  All rights reserved.
#
#  Use of this source code is governed by a MIT license that can be
#  found in the LICENSE.txt file or at https://opensource.org/license/mit

import logging
from typing import Iterable, List, Optional, Protocol, Sequence, Set

from transformers import AutoTokenizer

from ..errors import PipelineConstructionFailed

logger = logging.getLogger(__name__)

# Llama 3 <|end_of_text|> and <|eot_id|>
DEFAULT_STOP_TOKENS = (128001, 128009)

STOP_TOKEN_STRINGS = ("<|endoftext|>", "<end_of_turn>", "<|eot_id|>")


class Tokenizer(Protocol):
    def encode(self, text: str) -> List[int]:
        ...

    def decode(self, tokens: Sequence[int]) -> str:
        ...


class HFTokenizer:
    """Adapter exposing a transformers tokenizer as ``encode``/``decode``.

    ``decode`` ignores token ids outside the vocabulary, so arbitrary ids
    decode to an empty string instead of raising.
    """

    def __init__(self, tokenizer, add_special_tokens: bool = True):
        self.tokenizer = tokenizer
        self.add_special_tokens = add_special_tokens
        self.vocab_size = len(tokenizer)

    @classmethod
    def from_pretrained(cls, name_or_path, **kwargs):
        try:
            tokenizer = AutoTokenizer.from_pretrained(
                str(name_or_path),
                use_fast=False,
                trust_remote_code=True,
            )
        except (OSError, ValueError) as e:
            raise PipelineConstructionFailed(f"Failed to load tokenizer from {name_or_path}: {e}") from e
        logger.info("Tokenizer %s loaded (vocabulary size %d)", tokenizer.__class__.__name__, len(tokenizer))
        return cls(tokenizer, **kwargs)

    def encode(self, text: str) -> List[int]:
        return list(self.tokenizer.encode(text, add_special_tokens=self.add_special_tokens))

    def decode(self, tokens: Sequence[int]) -> str:
        known = [int(t) for t in tokens if 0 <= int(t) < self.vocab_size]
        if len(known) != len(tokens):
            logger.debug("Dropped %d unknown token ids while decoding", len(tokens) - len(known))
        return self.tokenizer.decode(known, skip_special_tokens=False)


def build_stop_token_ids(tokenizer) -> Set[int]:
    """Collect token IDs that should stop generation from a transformers tokenizer."""
    if isinstance(tokenizer, HFTokenizer):
        tokenizer = tokenizer.tokenizer

    stop_ids = set()
    eos_token_ids = getattr(tokenizer, "eos_token_id", None)
    if isinstance(eos_token_ids, (list, tuple)):
        stop_ids.update(int(t) for t in eos_token_ids)
    elif eos_token_ids is not None:
        stop_ids.add(int(eos_token_ids))

    if not hasattr(tokenizer, "convert_tokens_to_ids"):
        return stop_ids

    unk = getattr(tokenizer, "unk_token_id", None)
    for token_str in STOP_TOKEN_STRINGS:
        # convert_tokens_to_ids rather than get_vocab(), which is slow or
        # unsupported on some tokenizers
        token_id = tokenizer.convert_tokens_to_ids(token_str)
        if isinstance(token_id, list):
            token_id = token_id[0] if len(token_id) == 1 else None
        if token_id is None or (unk is not None and token_id == unk):
            continue
        stop_ids.add(int(token_id))

    return stop_ids


def resolve_stop_tokens(stop_tokens: Optional[Iterable[int]], tokenizer=None):
    """Explicit stop tokens win; otherwise ask the tokenizer, then fall back to defaults."""
    if stop_tokens is not None:
        return frozenset(int(t) for t in stop_tokens)
    if tokenizer is not None:
        found = build_stop_token_ids(tokenizer)
        if found:
            return frozenset(found)
    return frozenset(DEFAULT_STOP_TOKENS)
