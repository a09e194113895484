"""Image tiling: pad (one letterboxed tile) or anyres (grid + base tile)."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from fractions import Fraction
from typing import List, Sequence, Tuple, Union

from .config import ModelConfig
from .errors import InvalidImage, TilingConfigError
from .image import Image, crop, expand_to_square, resize, resize_and_pad

logger = logging.getLogger(__name__)


# ============================================================================
# Strategies
# ============================================================================

@dataclass(frozen=True)
class Pad:
    """Letterbox to a square and resize to the base resolution."""
    name = "pad"


@dataclass(frozen=True)
class AnyRes:
    """Pick a (rows, cols) grid from a fixed candidate list."""
    grid_candidates: Tuple[Tuple[int, int], ...]
    name = "anyres"

    def __post_init__(self):
        if not self.grid_candidates:
            raise TilingConfigError("anyres grid candidate list is empty")
        for rows, cols in self.grid_candidates:
            if rows < 1 or cols < 1:
                raise TilingConfigError(f"invalid grid candidate {(rows, cols)}")


TilingStrategy = Union[Pad, AnyRes]


def strategy_from_config(config: ModelConfig) -> TilingStrategy:
    """Resolve the tiling strategy once, from the model configuration."""
    if config.image_aspect_ratio == "pad":
        return Pad()
    size = config.image_size
    grids = []
    for height, width in config.image_grid_pinpoints:
        if height % size or width % size:
            raise TilingConfigError(
                f"grid pinpoint {height}x{width} is not a multiple of tile size {size}"
            )
        grids.append((height // size, width // size))
    return AnyRes(tuple(grids))


# ============================================================================
# Plans and tiles
# ============================================================================

@dataclass(frozen=True)
class TilingPlan:
    """Chosen grid shape for one image.

    ``rows * cols`` is always the number of non-base tiles. For ``pad`` that is
    the single letterboxed tile at (0, 0).
    """
    strategy: str
    rows: int
    cols: int
    tile_size: int
    image_size: Tuple[int, int]  # original (width, height)
    fill: Tuple[int, ...] = ()

    @property
    def has_base_tile(self) -> bool:
        return self.strategy == "anyres"

    @property
    def num_grid_tiles(self) -> int:
        return self.rows * self.cols

    @property
    def num_tiles(self) -> int:
        return self.num_grid_tiles + (1 if self.has_base_tile else 0)

    @property
    def canvas_size(self) -> Tuple[int, int]:
        """(width, height) of the resized image before cropping."""
        return self.cols * self.tile_size, self.rows * self.tile_size


@dataclass(frozen=True)
class Tile:
    image: Image
    row: int
    col: int
    is_base: bool = False


# ============================================================================
# Grid selection
# ============================================================================

def padding_waste(width: int, height: int, rows: int, cols: int, tile_size: int) -> Fraction:
    """Canvas area left as padding after an aspect-preserving fit, in pixels."""
    canvas_w = cols * tile_size
    canvas_h = rows * tile_size
    scale = min(Fraction(canvas_w, width), Fraction(canvas_h, height))
    fitted = (width * scale) * (height * scale)
    return canvas_w * canvas_h - fitted


def aspect_mismatch(width: int, height: int, rows: int, cols: int) -> float:
    return abs(math.log((cols / rows) / (width / height)))


def select_grid(
    width: int,
    height: int,
    candidates: Sequence[Tuple[int, int]],
    tile_size: int,
) -> Tuple[int, int]:
    """Choose (rows, cols) minimizing padding waste.

    Ties go to the grid with fewer tiles, then to the closer aspect ratio,
    then to the earlier candidate.
    """
    if width <= 0 or height <= 0:
        raise InvalidImage(f"image has zero width or height: {width}x{height}")
    if not candidates:
        raise TilingConfigError("anyres grid candidate list is empty")

    def key(item):
        idx, (rows, cols) = item
        return (
            padding_waste(width, height, rows, cols, tile_size),
            rows * cols,
            aspect_mismatch(width, height, rows, cols),
            idx,
        )

    _, best = min(enumerate(candidates), key=key)
    return best


# ============================================================================
# Tiling
# ============================================================================

def plan(image_size: Tuple[int, int], strategy: TilingStrategy, base_resolution: int,
         fill: Tuple[int, ...] = ()) -> TilingPlan:
    """Compute the tiling plan for an image of (width, height) without pixels."""
    width, height = image_size
    if width <= 0 or height <= 0:
        raise InvalidImage(f"image has zero width or height: {width}x{height}")
    if isinstance(strategy, Pad):
        return TilingPlan("pad", 1, 1, base_resolution, (width, height), tuple(fill))
    if isinstance(strategy, AnyRes):
        rows, cols = select_grid(width, height, strategy.grid_candidates, base_resolution)
        return TilingPlan("anyres", rows, cols, base_resolution, (width, height), tuple(fill))
    raise TilingConfigError(f"unknown tiling strategy: {strategy!r}")


def tile(image: Image, strategy: TilingStrategy, base_resolution: int,
         fill: Tuple[int, ...] = (0, 0, 0)) -> Tuple[TilingPlan, List[Tile]]:
    """Split an image into tiles of base_resolution.

    anyres returns the base tile (whole image resized) first, followed by the
    grid tiles in row-major order.
    """
    tiling = plan(image.size, strategy, base_resolution, fill)
    size = base_resolution

    if tiling.strategy == "pad":
        square = expand_to_square(image, fill)
        tiles = [Tile(resize(square, size, size), 0, 0)]
    else:
        canvas_w, canvas_h = tiling.canvas_size
        canvas = resize_and_pad(image, canvas_w, canvas_h, fill)
        tiles = [Tile(resize(image, size, size), 0, 0, is_base=True)]
        for r in range(tiling.rows):
            for c in range(tiling.cols):
                tiles.append(Tile(crop(canvas, c * size, r * size, size, size), r, c))

    logger.debug("tiled %dx%d image as %s %dx%d (%d tiles)", image.width, image.height,
                 tiling.strategy, tiling.rows, tiling.cols, len(tiles))
    return tiling, tiles


class Tiler:
    """Tiler bound to one model configuration."""

    def __init__(self, config: ModelConfig):
        self.config = config
        self.strategy = strategy_from_config(config)
        self.tile_size = config.image_size
        self.fill = config.fill_color

    def plan(self, image_size: Tuple[int, int]) -> TilingPlan:
        return plan(image_size, self.strategy, self.tile_size, self.fill)

    def __call__(self, image: Image) -> Tuple[TilingPlan, List[Tile]]:
        return tile(image, self.strategy, self.tile_size, self.fill)
