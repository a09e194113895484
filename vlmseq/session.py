"""Decoder session: KV-cache ownership and the prefill + decode loop.

States: CREATED -> PREFILLED -> DECODING -> TERMINATED (absorbing).

Step 1 selects the first token from the prefill logits. Every later step first
feeds the previously selected token (cache +1, position +1) and then selects
from the new logits. A stop token is included in the generated tokens and is
never fed back.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Protocol

import numpy as np

from . import sampling
from .assembler import CombinedSequence
from .config import GenerationConfig, ModelConfig
from .errors import DecodeStepFailure, SessionStateError
from .kv_cache import KVCache

logger = logging.getLogger(__name__)


class LanguageDecoder(Protocol):
    """Black-box decoder primitives.

    ``forward`` processes n new positions: it writes their keys/values into
    ``cache`` (at ``cache.length``, via ``cache.write``) without committing,
    and returns logits for the last position ([vocab], or [n, vocab]).
    """

    def embed_tokens(self, token_ids: np.ndarray) -> np.ndarray:
        ...

    def new_cache(self, capacity: int) -> KVCache:
        ...

    def forward(self, embeddings: np.ndarray, position_ids: np.ndarray,
                cache: KVCache) -> np.ndarray:
        ...


class SessionState(enum.Enum):
    CREATED = "created"
    PREFILLED = "prefilled"
    DECODING = "decoding"
    TERMINATED = "terminated"


class StopReason(enum.Enum):
    STOP_TOKEN = "stop_token"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class GenerationState:
    """Mutable generation state; only the owning session's step mutates it."""
    cache: Optional[KVCache]
    remaining: int
    tokens: List[int] = field(default_factory=list)
    last_token: Optional[int] = None
    position: int = -1
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None

    @property
    def cache_length(self) -> int:
        return 0 if self.cache is None else self.cache.length


def _last_logits(logits: np.ndarray) -> np.ndarray:
    logits = np.asarray(logits)
    if logits.ndim == 2:
        return logits[-1]
    if logits.ndim != 1:
        raise ValueError(f"decoder returned logits of shape {logits.shape}")
    return logits


class DecoderSession:
    """Owns one KV cache and drives generation for one request."""

    def __init__(
        self,
        decoder: LanguageDecoder,
        model_config: ModelConfig,
        generation_config: Optional[GenerationConfig] = None,
        selector: Optional[Callable[[np.ndarray], int]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.decoder = decoder
        self.model_config = model_config
        self.generation_config = generation_config or GenerationConfig()
        self.selector = selector or sampling.from_config(self.generation_config)
        self.stop_tokens = self.generation_config.resolve_stop_tokens(model_config)
        self.cancel_event = cancel_event or threading.Event()
        self.state = SessionState.CREATED
        self.generation: Optional[GenerationState] = None
        self._logits: Optional[np.ndarray] = None
        self._lock = threading.Lock()
        self._num_steps = 0
        self._t_start = None

    # ------------------------------------------------------------------

    @property
    def terminated(self) -> bool:
        return self.state is SessionState.TERMINATED

    @property
    def num_steps(self) -> int:
        return self._num_steps

    @property
    def cache(self) -> Optional[KVCache]:
        return None if self.generation is None else self.generation.cache

    def cancel(self) -> None:
        """Request cancellation; honored at the start of the next step."""
        self.cancel_event.set()

    def _acquire(self):
        if not self._lock.acquire(blocking=False):
            raise SessionStateError("another step is already running on this session")

    def _terminate(self, reason: StopReason, error: Optional[str] = None) -> None:
        gen = self.generation
        if gen is not None:
            gen.stop_reason = reason
            gen.error = error
            if gen.cache is not None:
                gen.cache.release()
        self.state = SessionState.TERMINATED
        self._logits = None
        if gen is not None and self._t_start is not None:
            elapsed = time.time() - self._t_start
            logger.info("generation finished: %s, %d tokens in %.2fs", reason.value,
                        len(gen.tokens), elapsed)

    # ------------------------------------------------------------------

    def prefill(self, sequence: CombinedSequence) -> np.ndarray:
        """Run the whole sequence through the decoder once.

        Returns the logits of the final position.
        """
        self._acquire()
        try:
            if self.state is not SessionState.CREATED:
                raise SessionStateError(f"cannot prefill in state {self.state.value}")
            n = len(sequence)
            if n == 0:
                raise SessionStateError("cannot prefill an empty sequence")
            if not sequence.attention_mask.all():
                raise SessionStateError("prefill takes a single unpadded sequence")

            budget = self.generation_config.max_new_tokens
            room = self.model_config.max_context_length - n + 1
            if budget > room:
                logger.warning("max_new_tokens %d exceeds context room; limiting to %d",
                               budget, max(room, 1))
                budget = max(room, 1)

            cache = self.decoder.new_cache(n + budget)
            self.generation = GenerationState(cache=cache, remaining=budget)
            self._t_start = time.time()
            try:
                logits = self.decoder.forward(sequence.embeddings, sequence.position_ids, cache)
                logits = _last_logits(logits)
                cache.commit(n)
            except Exception as e:
                cache.rollback()
                self._terminate(StopReason.ERROR, str(e))
                raise DecodeStepFailure(f"prefill failed: {e}", self.generation) from e
            self.generation.position = int(sequence.position_ids[-1])
            self._logits = logits
            self.state = SessionState.PREFILLED
            logger.debug("prefilled %d positions", n)
            return logits
        finally:
            self._lock.release()

    def step(self) -> Optional[int]:
        """One decode step. Returns the selected token, or None if cancelled.

        The first step after prefill selects from the prefill logits and does
        not call the decoder, so the cache does not grow. Every later step
        feeds the previous token first: cache length and position each grow
        by exactly 1.
        """
        self._acquire()
        try:
            if self.state is SessionState.TERMINATED:
                raise SessionStateError("session is terminated")
            if self.state is SessionState.CREATED:
                raise SessionStateError("session has not been prefilled")
            gen = self.generation

            if self.cancel_event.is_set():
                self._terminate(StopReason.CANCELLED)
                return None

            if gen.last_token is not None:
                cache = gen.cache
                position = gen.position + 1
                try:
                    embed = np.asarray(
                        self.decoder.embed_tokens(np.array([gen.last_token], dtype=np.int64)),
                        dtype=np.float32,
                    ).reshape(1, -1)
                    logits = self.decoder.forward(
                        embed, np.array([position], dtype=np.int64), cache
                    )
                    logits = _last_logits(logits)
                    cache.commit(1)
                except Exception as e:
                    cache.rollback()
                    self._terminate(StopReason.ERROR, str(e))
                    raise DecodeStepFailure(
                        f"decode step {self._num_steps + 1} failed: {e}", gen
                    ) from e
                gen.position = position
                self._logits = logits

            token = int(self.selector(self._logits))
            self._num_steps += 1
            gen.tokens.append(token)
            gen.last_token = token
            gen.remaining -= 1
            self.state = SessionState.DECODING

            if token in self.stop_tokens:
                self._terminate(StopReason.STOP_TOKEN)
            elif gen.remaining <= 0:
                self._terminate(StopReason.MAX_TOKENS)
            return token
        finally:
            self._lock.release()

    def generate(self, sequence: Optional[CombinedSequence] = None) -> Iterator[int]:
        """Yield tokens one at a time until the session terminates.

        Closing the iterator early cancels the session.
        """
        if sequence is not None:
            self.prefill(sequence)
        try:
            while not self.terminated:
                token = self.step()
                if token is None:
                    break
                yield token
        finally:
            if not self.terminated:
                self._terminate(StopReason.CANCELLED)

    def close(self) -> None:
        if not self._lock.acquire(blocking=False):
            # a step is in flight; it is never interrupted mid-step
            self.cancel()
            return
        try:
            if not self.terminated:
                self._terminate(StopReason.CANCELLED)
        finally:
            self._lock.release()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
