"""Vision feature extraction contract, projector and per-tile batching."""

from __future__ import annotations

import logging
import math
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .errors import ConfigError, ExtractorContractViolation
from .image import Image
from .tiler import Tile

logger = logging.getLogger(__name__)


class VisionEncoder(Protocol):
    """encode(tile image) -> [P, D] patch embeddings. Pure and stateless."""

    def encode(self, image: Image) -> np.ndarray:
        ...


@dataclass(frozen=True, eq=False)
class PatchEmbeddingBatch:
    """One [P, D] sequence per tile, stacked as [num_tiles, P, D]."""
    embeddings: np.ndarray

    @property
    def num_tiles(self) -> int:
        return self.embeddings.shape[0]

    @property
    def seq_len(self) -> int:
        return self.embeddings.shape[1]

    @property
    def hidden_size(self) -> int:
        return self.embeddings.shape[2]

    def __getitem__(self, idx) -> np.ndarray:
        return self.embeddings[idx]

    def __len__(self) -> int:
        return self.num_tiles


# ============================================================================
# Pixel normalization adapter
# ============================================================================

def to_pixel_values(image: Image, mean: Sequence[float], std: Sequence[float]) -> np.ndarray:
    """uint8 [H, W, C] -> normalized float32 [C, H, W].

    x / 255, then (x - mean) / std per channel.
    """
    x = image.pixels.astype(np.float32) / 255.0
    mean = np.asarray(mean, dtype=np.float32)[: x.shape[2]]
    std = np.asarray(std, dtype=np.float32)[: x.shape[2]]
    x = (x - mean) / std
    return x.transpose(2, 0, 1)


class PixelEncoder:
    """Adapts a numeric backend that takes normalized [C, H, W] pixel values."""

    def __init__(self, forward: Callable[[np.ndarray], np.ndarray],
                 mean: Sequence[float] = (0.5, 0.5, 0.5),
                 std: Sequence[float] = (0.5, 0.5, 0.5)):
        self.forward = forward
        self.mean = tuple(mean)
        self.std = tuple(std)

    def encode(self, image: Image) -> np.ndarray:
        return self.forward(to_pixel_values(image, self.mean, self.std))


# ============================================================================
# Projector
# ============================================================================

def gelu(x):
    """GELU activation (tanh approximation)."""
    return 0.5 * x * (1.0 + np.tanh(math.sqrt(2.0 / math.pi) * (x + 0.044715 * x ** 3)))


_MLP_GELU = re.compile(r"^mlp(\d+)x_gelu$")


class MMProjector:
    """Maps extractor width to decoder width.

    ``layers`` is a list of (weight [out, in], bias [out] or None).
    Supported types: ``linear``, ``mlp{N}x_gelu``, ``identity``.
    """

    def __init__(self, projector_type: str, layers: Sequence[Tuple[np.ndarray, Optional[np.ndarray]]] = ()):
        if projector_type == "identity":
            depth = 0
        elif projector_type == "linear":
            depth = 1
        else:
            m = _MLP_GELU.match(projector_type)
            if m is None:
                raise ConfigError(f"unsupported projector type: {projector_type}")
            depth = int(m.group(1))
        if len(layers) != depth:
            raise ConfigError(
                f"projector {projector_type} expects {depth} layer(s), got {len(layers)}"
            )
        for i in range(1, depth):
            if layers[i][0].shape[1] != layers[i - 1][0].shape[0]:
                raise ConfigError(f"projector layer {i} input width does not match layer {i - 1}")
        self.projector_type = projector_type
        self.layers = [(np.asarray(w, dtype=np.float32),
                        None if b is None else np.asarray(b, dtype=np.float32))
                       for w, b in layers]

    @property
    def out_features(self) -> Optional[int]:
        if not self.layers:
            return None
        return self.layers[-1][0].shape[0]

    def __call__(self, x: np.ndarray) -> np.ndarray:
        for i, (w, b) in enumerate(self.layers):
            if i > 0:
                x = gelu(x)
            x = x @ w.T
            if b is not None:
                x = x + b
        return x


class ProjectedEncoder:
    """Vision encoder followed by the multimodal projector."""

    def __init__(self, encoder: VisionEncoder, projector: MMProjector):
        self.encoder = encoder
        self.projector = projector

    def encode(self, image: Image) -> np.ndarray:
        return self.projector(self.encoder.encode(image))


# ============================================================================
# Extraction
# ============================================================================

def _check_shapes(outputs: List[np.ndarray]) -> None:
    first = outputs[0].shape
    for i, out in enumerate(outputs):
        if out.ndim != 2:
            raise ExtractorContractViolation(
                f"tile {i}: expected [P, D] patch embeddings, got shape {out.shape}"
            )
        if out.shape != first:
            raise ExtractorContractViolation(
                f"tile {i}: patch embeddings {out.shape} do not match tile 0 {first}"
            )
        if out.shape[0] == 0:
            raise ExtractorContractViolation(f"tile {i}: extractor returned no patches")


def extract_features(
    encoder: VisionEncoder,
    tiles: Sequence[Tile],
    max_workers: Optional[int] = None,
) -> PatchEmbeddingBatch:
    """Run the encoder on every tile, preserving tile order.

    With ``max_workers`` > 1 tiles are encoded concurrently; results are still
    returned in tile order.
    """
    if not tiles:
        raise ExtractorContractViolation("no tiles to encode")

    batch_encode = getattr(encoder, "encode_batch", None)
    if batch_encode is not None:
        outputs = list(batch_encode([t.image for t in tiles]))
        if len(outputs) != len(tiles):
            raise ExtractorContractViolation(
                f"encode_batch returned {len(outputs)} outputs for {len(tiles)} tiles"
            )
    elif max_workers is not None and max_workers > 1 and len(tiles) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            outputs = list(pool.map(lambda t: encoder.encode(t.image), tiles))
    else:
        outputs = [encoder.encode(t.image) for t in tiles]

    outputs = [np.asarray(o, dtype=np.float32) for o in outputs]
    _check_shapes(outputs)
    logger.debug("encoded %d tiles -> %s", len(tiles), outputs[0].shape)
    return PatchEmbeddingBatch(np.stack(outputs))
