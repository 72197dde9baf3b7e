"""
Autoregressive Decode Loop — greedy generation over a growing KV cache.

Architecture decisions:
  1. The loop is a pure step function over an explicit DecodeState:
     step(state) -> state'. Nothing is captured between steps, so a
     single step can be driven and inspected in isolation.
  2. Phases: SEEDED -> GENERATING -> {STOPPED, LENGTH_EXCEEDED,
     BACKEND_ERROR}. STOPPED and LENGTH_EXCEEDED both return the
     tokens generated so far; only BACKEND_ERROR fails, and run()
     raises it as GenerationFailure.
  3. Token selection is arg-max over the last position's logits,
     restricted to the tokenizer vocabulary with the image
     placeholder masked out. No sampling, so output is deterministic.
  4. The end-of-sequence token ends generation and is not appended.
  5. After every decoder call the cache must hold exactly
     context_length + step positions; anything else is treated as a
     backend contract violation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

import numpy as np

from services.vlm_service.errors import (
    BackendFailure,
    GenerationFailure,
    ShapeMismatch,
)
from services.vlm_service.kv_cache import KVCacheState
from services.vlm_service.sessions import SessionManager
from utils.logger import get_logger
from utils.metrics import metrics

_log = get_logger(__name__)


class DecodePhase(str, Enum):
    SEEDED = "seeded"
    GENERATING = "generating"
    STOPPED = "stopped"
    LENGTH_EXCEEDED = "length_exceeded"
    BACKEND_ERROR = "backend_error"

    @property
    def is_terminal(self) -> bool:
        return self in (DecodePhase.STOPPED, DecodePhase.LENGTH_EXCEEDED, DecodePhase.BACKEND_ERROR)


@dataclass(frozen=True)
class DecodeState:
    """
    Everything one generation carries between decoder calls.

    step counts completed decoder calls. next_input is the fused
    context while SEEDED and the last token's embedding afterwards.
    """

    phase: DecodePhase
    cache: KVCacheState
    next_input: Optional[np.ndarray]
    token_ids: Tuple[int, ...]
    step: int
    context_length: int
    error: Optional[Exception] = None


@dataclass(frozen=True)
class DecodeOutcome:
    token_ids: Tuple[int, ...]
    terminal_state: DecodePhase
    steps: int
    context_length: int


class DecodeLoop:
    """Greedy decoding against SessionManager.decode_step."""

    def __init__(
        self,
        sessions: SessionManager,
        *,
        max_response_length: int,
        eos_token_id: int,
        image_token_id: Optional[int] = None,
        vocab_size: Optional[int] = None,
    ) -> None:
        if max_response_length < 1:
            raise ValueError("max_response_length must be positive")
        self._sessions = sessions
        self._max_len = max_response_length
        self._eos = eos_token_id
        self._image_token = image_token_id
        self._vocab_size = vocab_size

    # ── State machine ───────────────────────────────────────

    def seed(self, context: np.ndarray) -> DecodeState:
        """Step-0 state: fused context plus a fresh, empty cache."""
        if context.ndim != 3 or context.shape[0] != 1 or context.shape[1] == 0:
            raise ShapeMismatch(f"decode context must be (1, L, hidden), got {context.shape}")
        return DecodeState(
            phase=DecodePhase.SEEDED,
            cache=self._sessions.empty_cache(),
            next_input=context,
            token_ids=(),
            step=0,
            context_length=int(context.shape[1]),
        )

    def step(self, state: DecodeState) -> DecodeState:
        """Run one decoder call and return the successor state."""
        if state.phase.is_terminal:
            raise ValueError(f"cannot step a decode in terminal phase {state.phase.value}")

        try:
            logits, cache = self._sessions.decode_step(state.next_input, state.cache)
            expected = state.context_length + state.step
            if cache.length != expected:
                raise ShapeMismatch(
                    f"KV cache holds {cache.length} positions after step {state.step}, expected {expected}"
                )
        except (BackendFailure, ShapeMismatch) as exc:
            return replace(state, phase=DecodePhase.BACKEND_ERROR, error=exc)

        token = self.select_token(logits)
        advanced = replace(state, cache=cache, step=state.step + 1, next_input=None)

        if token == self._eos:
            return replace(advanced, phase=DecodePhase.STOPPED)

        token_ids = state.token_ids + (token,)
        if len(token_ids) >= self._max_len:
            return replace(advanced, phase=DecodePhase.LENGTH_EXCEEDED, token_ids=token_ids)

        try:
            next_input = self._sessions.embed_tokens(np.array([token], dtype=np.int64))
        except (BackendFailure, ShapeMismatch) as exc:
            return replace(advanced, phase=DecodePhase.BACKEND_ERROR, token_ids=token_ids, error=exc)

        return replace(
            advanced,
            phase=DecodePhase.GENERATING,
            token_ids=token_ids,
            next_input=next_input,
        )

    def select_token(self, logits: np.ndarray) -> int:
        last = logits[0, -1, :]
        limit = last.shape[0] if self._vocab_size is None else min(last.shape[0], self._vocab_size)
        scores = np.array(last[:limit], dtype=np.float32)
        if self._image_token is not None and self._image_token < limit:
            scores[self._image_token] = -np.inf
        return int(np.argmax(scores))

    # ── Driver ──────────────────────────────────────────────

    def run(self, context: np.ndarray) -> DecodeOutcome:
        """Drive the state machine to a terminal phase."""
        state = self.seed(context)
        while not state.phase.is_terminal:
            state = self.step(state)

        metrics.increment(f"decode_{state.phase.value}")
        if state.phase is DecodePhase.BACKEND_ERROR:
            _log.warning(
                "decode_backend_error",
                step=state.step,
                tokens=len(state.token_ids),
                error=str(state.error),
            )
            raise GenerationFailure(
                f"decoding failed at step {state.step}: {state.error}"
            ) from state.error

        _log.debug(
            "decode_finished",
            terminal=state.phase.value,
            steps=state.step,
            tokens=len(state.token_ids),
            context=state.context_length,
        )
        return DecodeOutcome(
            token_ids=state.token_ids,
            terminal_state=state.phase,
            steps=state.step,
            context_length=state.context_length,
        )
