"""Interleave text embeddings with image tokens, truncate, and build masks.

Truncation is planned in two passes over lengths only: the cut point is first
computed in token units, then snapped outward to the nearest unit boundary so
an image's tokens are never split. The plan can be computed before any feature
is extracted (``SequenceAssembler.plan``) for context budgeting.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import ModelConfig
from .errors import (
    ContextOverflowUnrecoverable,
    EmptyImageFeatures,
    ExtractorContractViolation,
    PlaceholderCountMismatch,
)
from .merger import ImageTokenSequence

logger = logging.getLogger(__name__)

# LLaVA convention for the image placeholder in token id streams
IMAGE_TOKEN_INDEX = -200


@dataclass(frozen=True)
class ImageSlot:
    """Opaque image placeholder in a marker sequence."""
    key: Optional[str] = None


Marker = Union[int, ImageSlot]


@dataclass
class PromptMarkers:
    """Ordered markers plus where the most recent user turn begins.

    ``last_turn_start`` indexes into ``markers``; everything from there on is
    kept in full by truncation. When it is None the latest turn is taken to be
    the text after the last image placeholder; a prompt with no placeholder
    then has nothing protected and is plainly left-truncated.
    """
    markers: List[Marker]
    last_turn_start: Optional[int] = None

    def __post_init__(self):
        self.markers = list(self.markers)
        if self.last_turn_start is None:
            return
        if not 0 <= self.last_turn_start <= len(self.markers):
            raise ValueError(
                f"last_turn_start {self.last_turn_start} out of range for "
                f"{len(self.markers)} markers"
            )

    def __len__(self) -> int:
        return len(self.markers)


@dataclass
class _Unit:
    kind: str            # "text" or "image"
    start: int           # offset in the untruncated token sequence
    length: int
    marker: int          # index of the first marker in the unit
    image: int = -1      # image index for image units


@dataclass
class AssemblyPlan:
    """Which text tokens and images survive truncation."""
    units: List[_Unit]
    total_length: int
    cut: int                      # tokens removed from the left
    dropped_images: List[int]
    kept_length: int
    # per-unit count of tokens removed from the unit's front
    removed: List[int] = field(default_factory=list)


@dataclass(frozen=True, eq=False)
class CombinedSequence:
    """Decoder input: embeddings with parallel mask and position ids.

    ``token_ids`` holds the text token id or ``IMAGE_TOKEN_INDEX`` for image
    positions; ``image_ids`` holds the source image index or -1 for text.
    """
    embeddings: np.ndarray      # [N, D] float32
    attention_mask: np.ndarray  # [N] bool
    position_ids: np.ndarray    # [N] int64
    token_ids: np.ndarray       # [N] int64
    image_ids: np.ndarray       # [N] int32
    image_spans: Tuple[Tuple[int, int, int], ...] = ()  # (start, end, image index)
    dropped_images: Tuple[int, ...] = ()
    truncated: int = 0

    def __post_init__(self):
        n = self.embeddings.shape[0]
        if not (len(self.attention_mask) == len(self.position_ids) == n
                == len(self.token_ids) == len(self.image_ids)):
            raise ValueError("embeddings, mask and positions must have equal length")

    def __len__(self) -> int:
        return self.embeddings.shape[0]

    @property
    def hidden_size(self) -> int:
        return self.embeddings.shape[1]

    def causal_mask(self) -> np.ndarray:
        """[N, N] bool: position i attends to j <= i (image tokens included)."""
        return causal_mask(len(self)) & self.attention_mask[None, :]


def causal_mask(n: int) -> np.ndarray:
    return np.tril(np.ones((n, n), dtype=bool))


class SequenceAssembler:
    """Builds a ``CombinedSequence`` from prompt markers and image tokens."""

    def __init__(
        self,
        config: ModelConfig,
        embed_tokens: Callable[[np.ndarray], np.ndarray],
        image_token_id: int = IMAGE_TOKEN_INDEX,
    ):
        self.max_length = config.max_context_length
        self.hidden_size = config.hidden_size
        self.policy = config.truncation_policy
        self.embed_tokens = embed_tokens
        self.image_token_id = image_token_id

    def is_placeholder(self, marker: Marker) -> bool:
        return isinstance(marker, ImageSlot) or marker == self.image_token_id

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _units(self, markers: Sequence[Marker], image_lengths: Sequence[int]) -> List[_Unit]:
        units = []
        offset = 0
        image_idx = 0
        for i, marker in enumerate(markers):
            if self.is_placeholder(marker):
                length = image_lengths[image_idx]
                units.append(_Unit("image", offset, length, i, image_idx))
                image_idx += 1
                offset += length
            elif units and units[-1].kind == "text":
                units[-1].length += 1
                offset += 1
            else:
                units.append(_Unit("text", offset, 1, i))
                offset += 1
        return units

    def plan(self, prompt: Union[PromptMarkers, Sequence[Marker]],
             image_lengths: Sequence[int]) -> AssemblyPlan:
        """Decide truncation from lengths alone."""
        if not isinstance(prompt, PromptMarkers):
            prompt = PromptMarkers(list(prompt))
        markers = prompt.markers

        num_placeholders = sum(1 for m in markers if self.is_placeholder(m))
        if num_placeholders != len(image_lengths):
            raise PlaceholderCountMismatch(num_placeholders, len(image_lengths))
        for i, n in enumerate(image_lengths):
            if n <= 0:
                raise EmptyImageFeatures(f"image {i} has no tokens")

        units = self._units(markers, image_lengths)
        total = sum(u.length for u in units)
        removed = [0] * len(units)
        dropped: List[int] = []

        overflow = total - self.max_length
        if overflow <= 0:
            return AssemblyPlan(units, total, 0, [], total, removed)

        protected = self._protected_offset(units, self._turn_start(prompt), total)
        if overflow > protected:
            raise ContextOverflowUnrecoverable(
                f"sequence of {total} tokens exceeds context {self.max_length}; the latest "
                f"turn alone needs {total - protected} tokens"
            )

        remaining = overflow
        if self.policy == "images_first":
            for k, u in enumerate(units):
                if remaining <= 0 or u.start >= protected:
                    break
                if u.kind == "image":
                    removed[k] = u.length
                    dropped.append(u.image)
                    remaining -= u.length

        # left cut, snapped outward over images
        for k, u in enumerate(units):
            if remaining <= 0:
                break
            if removed[k] == u.length:
                continue
            if u.kind == "image":
                removed[k] = u.length
                dropped.append(u.image)
                remaining -= u.length
            else:
                take = min(u.length, remaining)
                removed[k] = take
                remaining -= take

        cut = sum(removed)
        if dropped:
            logger.warning("truncation dropped image(s) %s to fit context %d",
                           sorted(dropped), self.max_length)
        logger.info("truncated %d of %d tokens to fit context %d", cut, total, self.max_length)
        return AssemblyPlan(units, total, cut, sorted(dropped), total - cut, removed)

    def _turn_start(self, prompt: PromptMarkers) -> int:
        """Marker index where the protected latest turn begins."""
        if prompt.last_turn_start is not None:
            return prompt.last_turn_start
        markers = prompt.markers
        for i in range(len(markers) - 1, -1, -1):
            if self.is_placeholder(markers[i]):
                return i + 1
        return len(markers)

    @staticmethod
    def _protected_offset(units: List[_Unit], last_turn_start: int, total: int) -> int:
        """Token offset where the latest turn begins."""
        for u in units:
            if u.kind == "image":
                if u.marker >= last_turn_start:
                    return u.start
            elif u.marker + u.length > last_turn_start:
                return u.start + max(0, last_turn_start - u.marker)
        return total

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def assemble(self, prompt: Union[PromptMarkers, Sequence[Marker]],
                 images: Sequence[ImageTokenSequence]) -> CombinedSequence:
        if not isinstance(prompt, PromptMarkers):
            prompt = PromptMarkers(list(prompt))
        for i, img in enumerate(images):
            if len(img) == 0:
                raise EmptyImageFeatures(f"image {i} has no tokens")
            if img.hidden_size != self.hidden_size:
                raise ExtractorContractViolation(
                    f"image {i} tokens have width {img.hidden_size}, expected {self.hidden_size}"
                )

        plan = self.plan(prompt, [len(img) for img in images])
        markers = prompt.markers

        text_ids: List[int] = []
        pieces = []  # ("text", count) or ("image", image index)
        for u, r in zip(plan.units, plan.removed):
            if r == u.length:
                continue
            if u.kind == "image":
                pieces.append(("image", u.image))
            else:
                ids = markers[u.marker + r:u.marker + u.length]
                text_ids.extend(int(t) for t in ids)
                pieces.append(("text", len(ids)))

        if text_ids:
            text_embeds = np.asarray(
                self.embed_tokens(np.asarray(text_ids, dtype=np.int64)), dtype=np.float32
            )
            if text_embeds.shape != (len(text_ids), self.hidden_size):
                raise ValueError(
                    f"embed_tokens returned {text_embeds.shape}, "
                    f"expected {(len(text_ids), self.hidden_size)}"
                )
        else:
            text_embeds = np.zeros((0, self.hidden_size), dtype=np.float32)

        embeds = []
        token_ids = []
        image_ids = []
        spans = []
        text_pos = 0
        offset = 0
        for kind, value in pieces:
            if kind == "text":
                embeds.append(text_embeds[text_pos:text_pos + value])
                token_ids.append(np.asarray(text_ids[text_pos:text_pos + value], dtype=np.int64))
                image_ids.append(np.full(value, -1, dtype=np.int32))
                text_pos += value
                offset += value
            else:
                img = images[value]
                n = len(img)
                embeds.append(img.embeddings)
                token_ids.append(np.full(n, self.image_token_id, dtype=np.int64))
                image_ids.append(np.full(n, value, dtype=np.int32))
                spans.append((offset, offset + n, value))
                offset += n

        if embeds:
            embeddings = np.concatenate(embeds).astype(np.float32, copy=False)
            token_arr = np.concatenate(token_ids)
            image_arr = np.concatenate(image_ids)
        else:
            embeddings = np.zeros((0, self.hidden_size), dtype=np.float32)
            token_arr = np.zeros(0, dtype=np.int64)
            image_arr = np.zeros(0, dtype=np.int32)

        n = embeddings.shape[0]
        return CombinedSequence(
            embeddings=embeddings,
            attention_mask=np.ones(n, dtype=bool),
            position_ids=np.arange(n, dtype=np.int64),
            token_ids=token_arr,
            image_ids=image_arr,
            image_spans=tuple(spans),
            dropped_images=tuple(plan.dropped_images),
            truncated=plan.cut,
        )

    __call__ = assemble


# ============================================================================
# Batching
# ============================================================================

@dataclass(frozen=True, eq=False)
class CombinedBatch:
    """Right-padded batch of combined sequences."""
    embeddings: np.ndarray    # [B, N, D]
    padding_mask: np.ndarray  # [B, N] bool, False at padded positions
    position_ids: np.ndarray  # [B, N] int64, 0 at padded positions
    lengths: np.ndarray       # [B]

    def attention_mask(self) -> np.ndarray:
        return attention_mask(self.padding_mask)


def pad_batch(sequences: Sequence[CombinedSequence]) -> CombinedBatch:
    if not sequences:
        raise ValueError("cannot batch zero sequences")
    d = sequences[0].hidden_size
    n = max(len(s) for s in sequences)
    b = len(sequences)
    embeddings = np.zeros((b, n, d), dtype=np.float32)
    padding = np.zeros((b, n), dtype=bool)
    positions = np.zeros((b, n), dtype=np.int64)
    for i, seq in enumerate(sequences):
        if seq.hidden_size != d:
            raise ValueError(f"sequence {i} has width {seq.hidden_size}, expected {d}")
        length = len(seq)
        embeddings[i, :length] = seq.embeddings
        padding[i, :length] = seq.attention_mask
        positions[i, :length] = seq.position_ids
    lengths = np.array([len(s) for s in sequences], dtype=np.int64)
    return CombinedBatch(embeddings, padding, positions, lengths)


def attention_mask(padding_mask: np.ndarray) -> np.ndarray:
    """[B, N] padding mask -> [B, N, N] causal mask excluding padded rows/cols."""
    n = padding_mask.shape[1]
    causal = causal_mask(n)[None, :, :]
    return causal & padding_mask[:, None, :] & padding_mask[:, :, None]
