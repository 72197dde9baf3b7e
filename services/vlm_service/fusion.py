"""
Embedding Fusion — prompt tokens + image features -> decoder seed.

FastVLM follows the LLaVA convention: the chat template carries one
`<image>` placeholder token in the user turn, and the vision
encoder's feature sequence replaces that token in the embedding
sequence. The placeholder itself is never embedded.

    [system ... user \n] [F image features] [\n prompt ... assistant \n]
                         ^ anchor = index of <image> in the token ids
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from services.vlm_service.errors import (
    FusionLengthExceeded,
    ShapeMismatch,
    TokenizationFailure,
)
from services.vlm_service.sessions import SessionManager
from utils.logger import get_logger

_log = get_logger(__name__)


def format_chat_prompt(prompt: str, system_prompt: str, image_token: str = "<image>") -> str:
    return (
        f"<|im_start|>system\n{system_prompt}<|im_end|>\n"
        f"<|im_start|>user\n{image_token}\n{prompt}<|im_end|>\n"
        f"<|im_start|>assistant\n"
    )


@dataclass(frozen=True)
class FusedContext:
    """The step-0 decoder input and where the image span sits in it."""

    embeddings: np.ndarray
    prompt: str
    token_ids: Tuple[int, ...]
    anchor: int
    image_token_count: int

    @property
    def length(self) -> int:
        return int(self.embeddings.shape[1])


class EmbeddingFusion:
    """Builds the fused embedding sequence for one image."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        default_prompt: str,
        system_prompt: str,
        max_context_length: int,
        image_token: str = "<image>",
    ) -> None:
        self._sessions = sessions
        self._default_prompt = default_prompt
        self._system_prompt = system_prompt
        self._max_context = max_context_length
        self._image_token = image_token

    def effective_prompt(self, prompt: Optional[str]) -> str:
        if prompt is None:
            return self._default_prompt
        if not prompt.strip():
            raise TokenizationFailure("prompt is empty")
        return prompt.strip()

    def tokenize(self, prompt: str) -> Tuple[List[int], int]:
        """Return (token ids of the full chat prompt, anchor index)."""
        text = format_chat_prompt(prompt, self._system_prompt, self._image_token)
        try:
            encoding = self._sessions.bundle.tokenizer.encode(text, add_special_tokens=True)
        except Exception as exc:
            raise TokenizationFailure(f"tokenizer rejected prompt: {exc}") from exc

        ids = list(encoding.ids)
        image_id = self._sessions.bundle.image_token_id
        positions = [i for i, tok in enumerate(ids) if tok == image_id]
        if len(positions) != 1:
            raise TokenizationFailure(
                f"expected exactly one {self._image_token} placeholder, found {len(positions)}"
            )
        return ids, positions[0]

    def fuse(self, image_tensor: np.ndarray, prompt: Optional[str] = None) -> FusedContext:
        """Encode the image and fuse in one call."""
        features = self._sessions.encode_vision(image_tensor)
        return self.fuse_features(features, prompt)

    def fuse_features(self, features: np.ndarray, prompt: Optional[str] = None) -> FusedContext:
        """Splice precomputed (1, F, hidden) image features into the prompt."""
        effective = self.effective_prompt(prompt)
        ids, anchor = self.tokenize(effective)

        if features.ndim != 3 or features.shape[0] != 1:
            raise ShapeMismatch(f"image features must be (1, F, hidden), got {features.shape}")
        image_tokens = int(features.shape[1])

        fused_len = len(ids) - 1 + image_tokens
        if fused_len > self._max_context:
            raise FusionLengthExceeded(
                f"fused sequence of {fused_len} positions exceeds decoder context {self._max_context}"
            )

        text_ids = ids[:anchor] + ids[anchor + 1:]
        text_embeds = self._sessions.embed_tokens(np.asarray(text_ids, dtype=np.int64))
        if text_embeds.shape[2] != features.shape[2]:
            raise ShapeMismatch(
                f"image feature width {features.shape[2]} != token embedding width {text_embeds.shape[2]}"
            )

        fused = np.concatenate(
            [text_embeds[:, :anchor], features.astype(text_embeds.dtype, copy=False), text_embeds[:, anchor:]],
            axis=1,
        )
        _log.debug(
            "embeddings_fused",
            text_tokens=len(text_ids),
            image_tokens=image_tokens,
            anchor=anchor,
            total=fused.shape[1],
        )
        return FusedContext(
            embeddings=fused,
            prompt=effective,
            token_ids=tuple(ids),
            anchor=anchor,
            image_token_count=image_tokens,
        )
