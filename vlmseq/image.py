"""Image loading and pixel-level resize/pad helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np
from PIL import Image as PILImage

from .errors import InvalidImage


@dataclass(frozen=True, eq=False)
class Image:
    """Raw pixel buffer [H, W, C] uint8. Read-only once constructed.

    C is 1 or 3. A 4-channel buffer has its alpha channel dropped, as
    ``PIL.Image.convert("RGB")`` does.
    """
    pixels: np.ndarray

    def __post_init__(self):
        px = self.pixels
        if not isinstance(px, np.ndarray) or px.ndim != 3:
            raise InvalidImage(
                f"expected a [H, W, C] pixel array, got {getattr(px, 'shape', type(px))}"
            )
        if px.shape[0] == 0 or px.shape[1] == 0:
            raise InvalidImage(f"image has zero width or height: {px.shape[1]}x{px.shape[0]}")
        if px.shape[2] not in (1, 3, 4):
            raise InvalidImage(f"unsupported channel count: {px.shape[2]}")
        if px.shape[2] == 4:
            px = px[:, :, :3]
        if px.dtype != np.uint8:
            px = np.clip(px, 0, 255).astype(np.uint8)
        else:
            px = np.array(px, order="C")
        px.setflags(write=False)
        object.__setattr__(self, "pixels", px)

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def channels(self) -> int:
        return self.pixels.shape[2]

    @property
    def size(self) -> Tuple[int, int]:
        """(width, height), PIL convention."""
        return self.width, self.height

    @classmethod
    def from_pil(cls, img: PILImage.Image) -> "Image":
        if img.width == 0 or img.height == 0:
            raise InvalidImage(f"image has zero width or height: {img.width}x{img.height}")
        return cls(np.array(img.convert("RGB")))

    def to_pil(self) -> PILImage.Image:
        px = self.pixels
        if px.shape[2] == 1:
            return PILImage.fromarray(px[:, :, 0])
        return PILImage.fromarray(np.ascontiguousarray(px))


def load_image(path) -> Image:
    """Load image from disk as RGB."""
    try:
        img = PILImage.open(path)
        img.load()
    except (OSError, ValueError) as e:
        raise InvalidImage(f"cannot read image {path}: {e}") from e
    return Image.from_pil(img)


def resize(img: Image, width: int, height: int) -> Image:
    """Bicubic resize to exactly width x height (aspect ratio not kept)."""
    out = img.to_pil().resize((width, height), resample=PILImage.BICUBIC)
    arr = np.array(out)
    if arr.ndim == 2:
        arr = arr[:, :, None]
    return Image(arr)


def _fill(fill, channels):
    fill = tuple(fill)
    if len(fill) >= channels:
        return fill[:channels]
    return fill + (fill[-1],) * (channels - len(fill))


def expand_to_square(img: Image, fill) -> Image:
    """Letterbox to a square canvas, centering the image on the fill colour."""
    w, h = img.size
    if w == h:
        return img
    side = max(w, h)
    canvas = np.empty((side, side, img.channels), dtype=np.uint8)
    canvas[:, :] = _fill(fill, img.channels)
    top = (side - h) // 2
    left = (side - w) // 2
    canvas[top:top + h, left:left + w] = img.pixels
    return Image(canvas)


def fit_size(width: int, height: int, target_w: int, target_h: int) -> Tuple[int, int]:
    """Largest (w, h) with the source aspect ratio that fits in the target."""
    scale_w = target_w / width
    scale_h = target_h / height
    if scale_w < scale_h:
        new_w = target_w
        new_h = min(int(np.ceil(height * scale_w)), target_h)
    else:
        new_h = target_h
        new_w = min(int(np.ceil(width * scale_h)), target_w)
    return max(new_w, 1), max(new_h, 1)


def resize_and_pad(img: Image, target_w: int, target_h: int, fill) -> Image:
    """Aspect-preserving resize into target_w x target_h, centered on fill."""
    new_w, new_h = fit_size(img.width, img.height, target_w, target_h)
    resized = resize(img, new_w, new_h)
    canvas = np.empty((target_h, target_w, img.channels), dtype=np.uint8)
    canvas[:, :] = _fill(fill, img.channels)
    top = (target_h - new_h) // 2
    left = (target_w - new_w) // 2
    canvas[top:top + new_h, left:left + new_w] = resized.pixels
    return Image(canvas)


def crop(img: Image, left: int, top: int, width: int, height: int) -> Image:
    return Image(img.pixels[top:top + height, left:left + width])
