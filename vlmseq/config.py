"""Model and generation configuration.

Values are read once from an HF-style ``config.json`` and are read-only for the
lifetime of a session.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .errors import ConfigError

# CLIP normalization mean, used as the letterbox fill colour
CLIP_IMAGE_MEAN = (0.48145466, 0.4578275, 0.40821073)

# llava-v1.6 anyres candidates, (height, width) in pixels
DEFAULT_GRID_PINPOINTS = [
    [336, 672], [672, 336], [672, 672], [1008, 336], [336, 1008],
]

MERGE_TYPES = ("flat", "spatial", "spatial_unpad")
TRUNCATION_POLICIES = ("left", "images_first")


@dataclass(frozen=True)
class ModelConfig:
    """Read-only values supplied by the weight/config loader."""
    hidden_size: int = 4096
    max_context_length: int = 4096
    eos_token_ids: Tuple[int, ...] = (2,)
    image_size: int = 336
    patch_size: int = 14
    image_aspect_ratio: str = "anyres"
    image_grid_pinpoints: Tuple[Tuple[int, int], ...] = tuple(
        tuple(p) for p in DEFAULT_GRID_PINPOINTS
    )
    image_mean: Tuple[float, ...] = CLIP_IMAGE_MEAN
    pad_fill: Optional[Tuple[int, ...]] = None
    vision_feature_select: str = "patch"
    num_leading_tokens: int = 1
    mm_patch_merge_type: str = "spatial_unpad"
    base_tile_position: str = "first"
    truncation_policy: str = "left"

    def __post_init__(self):
        if self.hidden_size <= 0:
            raise ConfigError(f"hidden_size must be positive, got {self.hidden_size}")
        if self.max_context_length <= 0:
            raise ConfigError(
                f"max_context_length must be positive, got {self.max_context_length}"
            )
        if self.image_size <= 0 or self.patch_size <= 0:
            raise ConfigError("image_size and patch_size must be positive")
        if self.image_size % self.patch_size != 0:
            raise ConfigError(
                f"image_size {self.image_size} is not a multiple of patch_size {self.patch_size}"
            )
        if self.image_aspect_ratio not in ("pad", "anyres"):
            raise ConfigError(f"unknown image_aspect_ratio: {self.image_aspect_ratio!r}")
        if self.vision_feature_select not in ("patch", "cls_patch"):
            raise ConfigError(
                f"unknown vision_feature_select: {self.vision_feature_select!r}"
            )
        if self.num_leading_tokens < 0:
            raise ConfigError("num_leading_tokens must be >= 0")
        if self.mm_patch_merge_type not in MERGE_TYPES:
            raise ConfigError(f"unexpected mm_patch_merge_type: {self.mm_patch_merge_type!r}")
        if self.base_tile_position not in ("first", "last"):
            raise ConfigError(f"unknown base_tile_position: {self.base_tile_position!r}")
        if self.truncation_policy not in TRUNCATION_POLICIES:
            raise ConfigError(f"unknown truncation_policy: {self.truncation_policy!r}")

    @property
    def patches_per_side(self) -> int:
        return self.image_size // self.patch_size

    @property
    def dropped_leading_tokens(self) -> int:
        """Tokens removed from the front of each tile's extractor output."""
        if self.vision_feature_select == "patch":
            return self.num_leading_tokens
        return 0

    @property
    def fill_color(self) -> Tuple[int, ...]:
        """Letterbox fill: configured constant, else the normalization mean."""
        if self.pad_fill is not None:
            return tuple(int(c) for c in self.pad_fill)
        return tuple(int(round(m * 255)) for m in self.image_mean)

    @classmethod
    def from_dict(cls, config: dict) -> "ModelConfig":
        """Build from an HF-style config dict (LLaVA or nested layouts)."""
        vc = config.get("vision_config", {}) or {}
        tc = config.get("text_config", {}) or {}

        eos = config.get("eos_token_id", tc.get("eos_token_id", 2))
        if isinstance(eos, int):
            eos = [eos]

        max_len = (
            config.get("max_context_length")
            or config.get("tokenizer_model_max_length")
            or config.get("max_position_embeddings")
            or tc.get("max_position_embeddings")
            or 4096
        )

        pinpoints = config.get("image_grid_pinpoints", DEFAULT_GRID_PINPOINTS)
        select = config.get(
            "mm_vision_select_feature",
            config.get("vision_feature_select_strategy", "patch"),
        )
        if select == "default":
            select = "patch"
        elif select == "full":
            select = "cls_patch"

        pad_fill = config.get("pad_fill")
        kwargs = dict(
            hidden_size=config.get("hidden_size", tc.get("hidden_size", 4096)),
            max_context_length=int(max_len),
            eos_token_ids=tuple(int(e) for e in eos),
            image_size=vc.get("image_size", config.get("image_size", 336)),
            patch_size=vc.get("patch_size", config.get("patch_size", 14)),
            image_aspect_ratio=config.get("image_aspect_ratio", "anyres"),
            image_grid_pinpoints=tuple(tuple(int(v) for v in p) for p in pinpoints),
            image_mean=tuple(config.get("image_mean", CLIP_IMAGE_MEAN)),
            pad_fill=tuple(pad_fill) if pad_fill is not None else None,
            vision_feature_select=select,
            num_leading_tokens=config.get("num_leading_tokens", 1),
            mm_patch_merge_type=config.get("mm_patch_merge_type", "spatial_unpad"),
            base_tile_position=config.get("base_tile_position", "first"),
            truncation_policy=config.get("truncation_policy", "left"),
        )
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str) -> "ModelConfig":
        if os.path.isdir(path):
            path = os.path.join(path, "config.json")
        try:
            with open(path) as f:
                config = json.loads(f.read())
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot read config {path}: {e}") from e
        return cls.from_dict(config)


@dataclass
class GenerationConfig:
    """Per-call generation parameters."""
    max_new_tokens: int = 512
    temperature: float = 0.0
    top_k: int = 0
    top_p: float = 1.0
    seed: int = 299792458
    # None means "use the model's eos_token_ids"
    stop_token_ids: Optional[List[int]] = None

    def __post_init__(self):
        if self.max_new_tokens < 1:
            raise ConfigError(f"max_new_tokens must be >= 1, got {self.max_new_tokens}")
        if self.top_k < 0:
            raise ConfigError("top_k must be >= 0")
        if not 0.0 < self.top_p <= 1.0:
            raise ConfigError(f"top_p must be in (0, 1], got {self.top_p}")

    def resolve_stop_tokens(self, model_config: ModelConfig) -> frozenset:
        ids: Sequence[int] = self.stop_token_ids
        if ids is None:
            ids = model_config.eos_token_ids
        return frozenset(int(i) for i in ids)
