"""Error types raised by the vlmseq pipeline.

Every error is recoverable by the caller. None of them is retried internally:
a failed decode step has already touched the session's cache, so replaying it
is the caller's decision.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .session import GenerationState


class VlmSeqError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(VlmSeqError):
    """Model or generation configuration is invalid."""


class InvalidImage(VlmSeqError):
    """Image has zero width/height or an unusable pixel buffer."""


class TilingConfigError(VlmSeqError):
    """Tiling cannot proceed, e.g. the anyres candidate grid list is empty."""


class ExtractorContractViolation(VlmSeqError):
    """Vision extractor returned mismatched patch shapes across tiles."""


class PlaceholderCountMismatch(VlmSeqError):
    def __init__(self, num_placeholders: int, num_images: int):
        super().__init__(
            f"prompt has {num_placeholders} image placeholder(s) "
            f"but {num_images} image(s) were supplied"
        )
        self.num_placeholders = num_placeholders
        self.num_images = num_images


class EmptyImageFeatures(VlmSeqError):
    """An image produced an empty token sequence."""


class ContextOverflowUnrecoverable(VlmSeqError):
    """The most recent user turn alone does not fit in the context window."""


class SessionStateError(VlmSeqError):
    """Operation not valid in the decoder session's current state."""


class DecodeStepFailure(VlmSeqError):
    """The external decoder failed; carries whatever was generated so far."""

    def __init__(self, message: str, state: Optional["GenerationState"] = None):
        super().__init__(message)
        self.state = state

    @property
    def partial_tokens(self):
        if self.state is None:
            return []
        return list(self.state.tokens)
