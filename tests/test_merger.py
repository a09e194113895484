import dataclasses

import numpy as np
import pytest

from vlmseq.config import ModelConfig
from vlmseq.errors import ConfigError, EmptyImageFeatures, ExtractorContractViolation
from vlmseq.merger import SEPARATOR, FeatureMerger, ImageTokenSequence, unpad_shape
from vlmseq.tiler import TilingPlan
from vlmseq.vision import PatchEmbeddingBatch


def tagged_batch(num_tiles, side, hidden=8, leading=1):
    """Patch k of tile t carries [t, k] in its first two columns; CLS is k=-1."""
    p = side * side + leading
    x = np.zeros((num_tiles, p, hidden), dtype=np.float32)
    for t in range(num_tiles):
        x[t, :, 0] = t
        x[t, :, 1] = np.arange(p) - leading
    return PatchEmbeddingBatch(x)


def test_llava_2x2_scenario_length():
    config = ModelConfig(hidden_size=8, image_size=336, patch_size=14)
    merger = FeatureMerger(config)
    plan = TilingPlan("anyres", 2, 2, 336, (672, 672))
    batch = PatchEmbeddingBatch(
        np.random.default_rng(0).standard_normal((5, 24 * 24 + 1, 8)).astype(np.float32)
    )
    tokens = merger(batch, plan)
    # base 576 + 48 rows of (48 patches + separator)
    assert len(tokens) == 576 + 48 * 49 == merger.merged_length(plan)


def test_merge_is_deterministic():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14)
    merger = FeatureMerger(config)
    plan = TilingPlan("anyres", 1, 2, 28, (60, 30))
    batch = tagged_batch(3, 2)
    a = merger(batch, plan)
    b = merger(batch, plan)
    assert len(a) == len(b)
    np.testing.assert_array_equal(a.embeddings, b.embeddings)
    np.testing.assert_array_equal(a.sources, b.sources)


def test_spatial_grid_honors_tile_positions():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14, mm_patch_merge_type="spatial")
    merger = FeatureMerger(config)
    plan = TilingPlan("anyres", 1, 2, 28, (56, 28))
    tokens = merger(tagged_batch(3, 2), plan)
    assert len(tokens) == 4 + 8
    # base tile first, leading CLS dropped
    assert tokens.sources[:4].tolist() == [[0, 0, 0], [0, 0, 1], [0, 1, 0], [0, 1, 1]]
    assert tokens.embeddings[:4, 1].tolist() == [0, 1, 2, 3]
    assert tokens.sources[4:].tolist() == [
        [1, 0, 0], [1, 0, 1], [2, 0, 0], [2, 0, 1],
        [1, 1, 0], [1, 1, 1], [2, 1, 0], [2, 1, 1],
    ]
    np.testing.assert_array_equal(tokens.embeddings[4:, 0], [1, 1, 2, 2, 1, 1, 2, 2])


def test_unpad_removes_padding_rows_and_appends_separators():
    newline = np.full(8, 7.0, dtype=np.float32)
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14)
    merger = FeatureMerger(config, image_newline=newline)
    # 4x4 patch grid holding a 100x30 image: only the middle 2 rows are image
    plan = TilingPlan("anyres", 2, 2, 28, (100, 30))
    assert unpad_shape(4, 4, (100, 30)) == (1, 3, 0, 4)
    tokens = merger(tagged_batch(5, 2), plan)
    assert len(tokens) == 4 + 2 * (4 + 1) == merger.merged_length(plan)
    separators = tokens.sources[:, 0] == SEPARATOR
    assert separators.sum() == 2
    assert np.flatnonzero(separators).tolist() == [4 + 4, 4 + 9]
    np.testing.assert_array_equal(tokens.embeddings[separators], np.stack([newline, newline]))


def test_unpad_crops_columns_for_tall_images():
    assert unpad_shape(4, 4, (30, 100)) == (0, 4, 1, 3)


def test_single_tile_gets_one_separator():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14, image_aspect_ratio="pad")
    merger = FeatureMerger(config)
    plan = TilingPlan("pad", 1, 1, 28, (30, 20))
    tokens = merger(tagged_batch(1, 2), plan)
    assert len(tokens) == 5
    assert tokens.sources[-1].tolist() == [SEPARATOR] * 3


def test_flat_concatenates_tiles():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14, mm_patch_merge_type="flat")
    merger = FeatureMerger(config)
    plan = TilingPlan("anyres", 1, 2, 28, (56, 28))
    tokens = merger(tagged_batch(3, 2), plan)
    assert len(tokens) == 12
    np.testing.assert_array_equal(tokens.embeddings[:, 0], np.repeat([0, 1, 2], 4))


def test_base_tile_last():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14,
                         mm_patch_merge_type="spatial", base_tile_position="last")
    merger = FeatureMerger(config)
    plan = TilingPlan("anyres", 1, 2, 28, (56, 28))
    tokens = merger(tagged_batch(3, 2), plan)
    assert tokens.sources[-4:, 0].tolist() == [0, 0, 0, 0]
    assert tokens.sources[0, 0] == 1


def test_cls_patch_keeps_leading_token_with_flat_merge():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14,
                         vision_feature_select="cls_patch", mm_patch_merge_type="flat",
                         image_aspect_ratio="pad")
    merger = FeatureMerger(config)
    tokens = merger(tagged_batch(1, 2), TilingPlan("pad", 1, 1, 28, (28, 28)))
    assert len(tokens) == 5
    assert tokens.embeddings[0, 1] == -1
    with pytest.raises(ConfigError):
        FeatureMerger(dataclasses.replace(config, mm_patch_merge_type="spatial"))


def test_mismatched_patch_grid_is_a_contract_violation():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14)
    merger = FeatureMerger(config)
    plan = TilingPlan("anyres", 1, 2, 28, (56, 28))
    with pytest.raises(ExtractorContractViolation):
        merger(tagged_batch(3, 3), plan)
    with pytest.raises(ExtractorContractViolation):
        merger(tagged_batch(2, 2), plan)
    with pytest.raises(ExtractorContractViolation):
        merger(tagged_batch(3, 2, hidden=6), plan)


def test_empty_image_tokens_rejected():
    with pytest.raises(EmptyImageFeatures):
        ImageTokenSequence(np.zeros((0, 8), dtype=np.float32), np.zeros((0, 3), dtype=np.int32))


def test_bad_newline_shape():
    config = ModelConfig(hidden_size=8, image_size=28, patch_size=14)
    with pytest.raises(ConfigError):
        FeatureMerger(config, image_newline=np.zeros(4))
