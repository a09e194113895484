from fractions import Fraction

import numpy as np
import pytest

from conftest import random_image, solid_image
from vlmseq.config import ModelConfig
from vlmseq.errors import InvalidImage, TilingConfigError
from vlmseq.image import Image
from vlmseq.tiler import (
    AnyRes,
    Pad,
    Tiler,
    padding_waste,
    plan,
    select_grid,
    strategy_from_config,
    tile,
)


@pytest.mark.parametrize("size", [(30, 20), (20, 30), (28, 28), (1, 97), (640, 480)])
def test_pad_yields_one_base_resolution_tile(size):
    width, height = size
    tiling, tiles = tile(random_image(width, height), Pad(), 28)
    assert len(tiles) == 1
    assert tiles[0].image.pixels.shape == (28, 28, 3)
    assert (tiles[0].row, tiles[0].col) == (0, 0)
    assert tiling.rows * tiling.cols == 1
    assert tiling.num_tiles == 1


def test_pad_fills_short_side_with_fill_color():
    img = solid_image(40, 20, value=255)
    _, tiles = tile(img, Pad(), 40, fill=(10, 20, 30))
    px = tiles[0].image.pixels
    assert tuple(px[0, 0]) == (10, 20, 30)
    assert tuple(px[39, 0]) == (10, 20, 30)
    assert tuple(px[20, 20]) == (255, 255, 255)


def test_rgba_image_letterboxes_as_rgb():
    rgba = np.full((20, 40, 4), 200, dtype=np.uint8)
    _, tiles = tile(Image(rgba), Pad(), 40, fill=(10, 20, 30))
    px = tiles[0].image.pixels
    assert px.shape == (40, 40, 3)
    assert tuple(px[0, 0]) == (10, 20, 30)


def test_padding_waste_is_exact():
    assert padding_waste(1000, 500, 1, 1, 336) == Fraction(336 * 336 - 336 * 168)
    assert padding_waste(1000, 500, 1, 2, 336) == 0


def test_select_grid_minimizes_waste():
    assert select_grid(1000, 500, [(1, 1), (2, 2), (1, 2)], 336) == (1, 2)
    assert select_grid(300, 900, [(1, 1), (3, 1), (1, 3)], 336) == (3, 1)


def test_equal_waste_prefers_fewer_tiles():
    # square image fits (1,1) and (2,2) with zero padding either way
    assert padding_waste(500, 500, 2, 2, 336) == padding_waste(500, 500, 1, 1, 336)
    assert select_grid(500, 500, [(2, 2), (1, 1)], 336) == (1, 1)
    # 2:1 image fits (1,2) and (2,4) exactly
    assert padding_waste(1000, 500, 2, 4, 336) == padding_waste(1000, 500, 1, 2, 336)
    assert select_grid(1000, 500, [(2, 4), (1, 2)], 336) == (1, 2)


def test_full_tie_keeps_candidate_order():
    assert select_grid(500, 500, [(1, 2), (2, 1)], 336) == (1, 2)
    assert select_grid(500, 500, [(2, 1), (1, 2)], 336) == (2, 1)


def test_select_grid_rejects_bad_input():
    with pytest.raises(InvalidImage):
        select_grid(0, 10, [(1, 1)], 336)
    with pytest.raises(TilingConfigError):
        select_grid(10, 10, [], 336)
    with pytest.raises(TilingConfigError):
        AnyRes(())


def test_zero_sized_image_is_rejected():
    with pytest.raises(InvalidImage):
        Image(np.zeros((0, 10, 3), dtype=np.uint8))
    with pytest.raises(InvalidImage):
        plan((10, 0), Pad(), 336)


def test_anyres_base_tile_first_then_row_major_grid():
    img = random_image(60, 30)
    tiling, tiles = tile(img, AnyRes(((1, 2), (2, 1), (2, 2))), 28)
    assert (tiling.rows, tiling.cols) == (1, 2)
    assert len(tiles) == tiling.rows * tiling.cols + 1
    assert tiles[0].is_base
    assert not any(t.is_base for t in tiles[1:])
    assert [(t.row, t.col) for t in tiles[1:]] == [(0, 0), (0, 1)]
    for t in tiles:
        assert t.image.pixels.shape == (28, 28, 3)


def test_anyres_grid_tiles_cover_the_canvas():
    img = random_image(50, 100, seed=3)
    tiling, tiles = tile(img, AnyRes(((2, 1),)), 28)
    assert tiling.canvas_size == (28, 56)
    assert [(t.row, t.col) for t in tiles[1:]] == [(0, 0), (1, 0)]


def test_strategy_from_config():
    config = ModelConfig(image_size=336, image_grid_pinpoints=((336, 672), (672, 672)))
    assert strategy_from_config(config) == AnyRes(((1, 2), (2, 2)))
    assert isinstance(strategy_from_config(
        ModelConfig(image_aspect_ratio="pad")), Pad)
    with pytest.raises(TilingConfigError):
        strategy_from_config(ModelConfig(image_size=336, image_grid_pinpoints=((300, 672),)))
    with pytest.raises(TilingConfigError):
        strategy_from_config(ModelConfig(image_grid_pinpoints=()))


def test_tiler_plan_matches_tiling(small_config):
    tiler = Tiler(small_config)
    img = random_image(90, 40)
    tiling, tiles = tiler(img)
    assert tiler.plan(img.size) == tiling
    assert len(tiles) == tiling.num_tiles
