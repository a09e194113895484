"""Multimodal sequence assembly and cached autoregressive generation."""

from .assembler import (
    IMAGE_TOKEN_INDEX,
    CombinedBatch,
    CombinedSequence,
    ImageSlot,
    PromptMarkers,
    SequenceAssembler,
    attention_mask,
    pad_batch,
)
from .config import GenerationConfig, ModelConfig
from .errors import (
    ConfigError,
    ContextOverflowUnrecoverable,
    DecodeStepFailure,
    EmptyImageFeatures,
    ExtractorContractViolation,
    InvalidImage,
    PlaceholderCountMismatch,
    SessionStateError,
    TilingConfigError,
    VlmSeqError,
)
from .image import Image, load_image
from .kv_cache import KVCache
from .merger import FeatureMerger, ImageTokenSequence
from .pipeline import MultimodalPipeline
from .sampling import Greedy, TemperatureSampler
from .session import DecoderSession, GenerationState, SessionState, StopReason
from .text import TokenTextStream, join_turns, split_prompt
from .tiler import AnyRes, Pad, Tile, Tiler, TilingPlan, select_grid, tile
from .vision import MMProjector, PatchEmbeddingBatch, PixelEncoder, ProjectedEncoder, extract_features

__version__ = "0.1.0"
