"""
Detokenizer — generated token ids -> display text.
"""

from __future__ import annotations

from typing import Optional, Sequence

from tokenizers import Tokenizer

from services.vlm_service.errors import DetokenizationFailure


class Detokenizer:
    def __init__(self, tokenizer: Tokenizer, *, empty_response_text: str = "No response generated.") -> None:
        self._tokenizer = tokenizer
        self._vocab_size = tokenizer.get_vocab_size(with_added_tokens=True)
        self._empty = empty_response_text

    def decode(self, token_ids: Sequence[int], prompt: Optional[str] = None) -> str:
        """
        Join subwords with the tokenizer's own decoder, dropping
        special tokens. A leading echo of the prompt is removed.
        Ids outside the vocabulary are an upstream defect.
        """
        bad = [t for t in token_ids if t < 0 or t >= self._vocab_size]
        if bad:
            raise DetokenizationFailure(
                f"token ids {bad[:5]} outside vocabulary of size {self._vocab_size}"
            )
        if not token_ids:
            return self._empty

        text = self._tokenizer.decode(list(token_ids), skip_special_tokens=True).strip()
        if prompt and text.lower().startswith(prompt.strip().lower()):
            text = text[len(prompt.strip()):].lstrip(" \n:.-")

        return text or self._empty
