"""Merge per-tile patch embeddings into one flat image-token sequence."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config import ModelConfig
from .errors import ConfigError, EmptyImageFeatures, ExtractorContractViolation
from .tiler import TilingPlan
from .vision import PatchEmbeddingBatch

logger = logging.getLogger(__name__)

# source tag for row-separator embeddings
SEPARATOR = -1


@dataclass(frozen=True, eq=False)
class ImageTokenSequence:
    """Flattened image tokens for one image.

    ``sources`` is [L, 3] int32 of (tile index, patch row, patch col) for
    traceability; separators are tagged (-1, -1, -1).
    """
    embeddings: np.ndarray  # [L, D]
    sources: np.ndarray     # [L, 3]
    plan: Optional[TilingPlan] = None

    def __post_init__(self):
        if self.embeddings.ndim != 2:
            raise EmptyImageFeatures(f"image tokens must be [L, D], got {self.embeddings.shape}")
        if self.embeddings.shape[0] == 0:
            raise EmptyImageFeatures("image produced no tokens")
        if self.sources.shape != (self.embeddings.shape[0], 3):
            raise ValueError(
                f"sources {self.sources.shape} do not match embeddings {self.embeddings.shape}"
            )

    def __len__(self) -> int:
        return self.embeddings.shape[0]

    @property
    def hidden_size(self) -> int:
        return self.embeddings.shape[1]


def unpad_shape(height: int, width: int, original_size: Tuple[int, int]) -> Tuple[int, int, int, int]:
    """Rows/cols of a [height, width] patch grid that hold image, not padding.

    Returns (row_start, row_end, col_start, col_end).
    """
    original_width, original_height = original_size
    original_aspect = original_width / original_height
    current_aspect = width / height
    if original_aspect > current_aspect:
        scale = width / original_width
        new_height = int(math.floor(original_height * scale))
        padding = (height - new_height) // 2
        return padding, height - padding, 0, width
    scale = height / original_height
    new_width = int(math.floor(original_width * scale))
    padding = (width - new_width) // 2
    return 0, height, padding, width - padding


def _tile_coords(num_tiles: int, side: int) -> np.ndarray:
    """[num_tiles, side*side, 3] of (tile index, row, col)."""
    tiles = np.repeat(np.arange(num_tiles), side * side)
    rows = np.tile(np.repeat(np.arange(side), side), num_tiles)
    cols = np.tile(np.arange(side), side * num_tiles)
    return np.stack([tiles, rows, cols], axis=-1).reshape(num_tiles, side * side, 3).astype(np.int32)


def _grid(x: np.ndarray, rows: int, cols: int, side: int) -> np.ndarray:
    """[rows*cols, side*side, C] -> [rows*side, cols*side, C] honoring tile position."""
    c = x.shape[-1]
    x = x.reshape(rows, cols, side, side, c)
    x = x.transpose(0, 2, 1, 3, 4)
    return x.reshape(rows * side, cols * side, c)


class FeatureMerger:
    """Turns a ``PatchEmbeddingBatch`` into an ``ImageTokenSequence``.

    Merge types:
      flat           all tiles' patches concatenated in tile order
      spatial        grid tiles reassembled into one 2-D patch grid
      spatial_unpad  as spatial, padding rows/cols removed, then a separator
                     embedding appended to each row
    """

    def __init__(self, config: ModelConfig, image_newline: Optional[np.ndarray] = None):
        self.merge_type = config.mm_patch_merge_type
        self.side = config.patches_per_side
        self.drop = config.dropped_leading_tokens
        self.base_first = config.base_tile_position == "first"
        self.tokens_per_tile = self.side * self.side
        if config.vision_feature_select == "cls_patch":
            self.tokens_per_tile += config.num_leading_tokens
            if self.merge_type != "flat" and config.num_leading_tokens:
                raise ConfigError("cls_patch feature selection only supports the flat merge type")

        if image_newline is None:
            image_newline = np.zeros(config.hidden_size, dtype=np.float32)
        image_newline = np.asarray(image_newline, dtype=np.float32)
        if image_newline.shape != (config.hidden_size,):
            raise ConfigError(
                f"image_newline must have shape ({config.hidden_size},), got {image_newline.shape}"
            )
        self.image_newline = image_newline

    @property
    def uses_separators(self) -> bool:
        return self.merge_type == "spatial_unpad"

    def merged_length(self, plan: TilingPlan) -> int:
        """Token count for an image with this plan, before any feature is computed."""
        if self.merge_type == "flat":
            return plan.num_tiles * self.tokens_per_tile
        per_tile = self.side * self.side
        if not plan.has_base_tile:
            return per_tile + (1 if self.uses_separators else 0)
        height = plan.rows * self.side
        width = plan.cols * self.side
        if self.uses_separators:
            r0, r1, c0, c1 = unpad_shape(height, width, plan.image_size)
            grid = (r1 - r0) * (c1 - c0 + 1)
        else:
            grid = height * width
        return per_tile + grid

    def _select(self, batch: PatchEmbeddingBatch, plan: TilingPlan) -> np.ndarray:
        if batch.num_tiles != plan.num_tiles:
            raise ExtractorContractViolation(
                f"got features for {batch.num_tiles} tiles, plan has {plan.num_tiles}"
            )
        feats = batch.embeddings[:, self.drop:, :]
        if feats.shape[1] != self.tokens_per_tile:
            raise ExtractorContractViolation(
                f"expected {self.tokens_per_tile} patches per tile after selection, "
                f"got {feats.shape[1]}"
            )
        if feats.shape[2] != self.image_newline.shape[0]:
            raise ExtractorContractViolation(
                f"patch width {feats.shape[2]} does not match hidden size {self.image_newline.shape[0]}"
            )
        return feats

    def _with_separators(self, grid: np.ndarray, coords: np.ndarray):
        h = grid.shape[0]
        newline = np.broadcast_to(self.image_newline, (h, 1, grid.shape[2]))
        grid = np.concatenate([grid, newline], axis=1)
        tags = np.full((h, 1, 3), SEPARATOR, dtype=np.int32)
        coords = np.concatenate([coords, tags], axis=1)
        return grid, coords

    def merge(self, batch: PatchEmbeddingBatch, plan: TilingPlan) -> ImageTokenSequence:
        feats = self._select(batch, plan)
        d = feats.shape[2]

        if self.merge_type == "flat":
            coords = np.stack([
                np.repeat(np.arange(plan.num_tiles), self.tokens_per_tile),
                np.zeros(plan.num_tiles * self.tokens_per_tile, dtype=np.int64),
                np.tile(np.arange(self.tokens_per_tile), plan.num_tiles),
            ], axis=-1).astype(np.int32)
            embeds = feats.reshape(-1, d)
            if plan.has_base_tile and not self.base_first:
                n = self.tokens_per_tile
                embeds = np.concatenate([embeds[n:], embeds[:n]])
                coords = np.concatenate([coords[n:], coords[:n]])
            return self._finish(embeds, coords, plan)

        coords = _tile_coords(plan.num_tiles, self.side)

        if not plan.has_base_tile:
            embeds, tags = feats[0], coords[0]
            if self.uses_separators:
                embeds = np.concatenate([embeds, self.image_newline[None, :]])
                tags = np.concatenate([tags, np.full((1, 3), SEPARATOR, dtype=np.int32)])
            return self._finish(embeds, tags, plan)

        base, base_tags = feats[0], coords[0]
        grid = _grid(feats[1:], plan.rows, plan.cols, self.side)
        grid_tags = _grid(coords[1:], plan.rows, plan.cols, self.side)
        if self.uses_separators:
            r0, r1, c0, c1 = unpad_shape(grid.shape[0], grid.shape[1], plan.image_size)
            grid = grid[r0:r1, c0:c1]
            grid_tags = grid_tags[r0:r1, c0:c1]
            grid, grid_tags = self._with_separators(grid, grid_tags)
        grid = grid.reshape(-1, d)
        grid_tags = grid_tags.reshape(-1, 3)

        if self.base_first:
            embeds = np.concatenate([base, grid])
            tags = np.concatenate([base_tags, grid_tags])
        else:
            embeds = np.concatenate([grid, base])
            tags = np.concatenate([grid_tags, base_tags])
        return self._finish(embeds, tags, plan)

    def _finish(self, embeds, tags, plan) -> ImageTokenSequence:
        expected = self.merged_length(plan)
        if embeds.shape[0] != expected:
            raise ExtractorContractViolation(
                f"merged {embeds.shape[0]} image tokens, expected {expected}"
            )
        logger.debug("merged %s %dx%d image into %d tokens", plan.strategy,
                     plan.rows, plan.cols, expected)
        return ImageTokenSequence(
            np.ascontiguousarray(embeds, dtype=np.float32),
            np.ascontiguousarray(tags, dtype=np.int32),
            plan,
        )

    __call__ = merge
