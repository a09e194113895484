"""End-to-end generation API: images + prompt markers -> lazy token stream."""

from __future__ import annotations

import logging
import os
import threading
import time
from typing import Callable, Iterator, List, Optional, Sequence, Union

import numpy as np
from PIL import Image as PILImage

from .assembler import CombinedSequence, PromptMarkers, SequenceAssembler
from .config import GenerationConfig, ModelConfig
from .image import Image, load_image
from .merger import FeatureMerger, ImageTokenSequence
from .session import DecoderSession, LanguageDecoder
from .text import TokenTextStream
from .tiler import Tiler
from .vision import VisionEncoder, extract_features

logger = logging.getLogger(__name__)

ImageInput = Union[Image, PILImage.Image, str, os.PathLike]


def as_image(image: ImageInput) -> Image:
    if isinstance(image, Image):
        return image
    if isinstance(image, PILImage.Image):
        return Image.from_pil(image)
    return load_image(image)


class MultimodalPipeline:
    """Tiler -> encoder -> merger -> assembler -> decoder session.

    The tiling strategy is resolved once, at construction.
    """

    def __init__(
        self,
        config: ModelConfig,
        encoder: VisionEncoder,
        decoder: LanguageDecoder,
        image_newline: Optional[np.ndarray] = None,
        max_workers: Optional[int] = None,
    ):
        self.config = config
        self.encoder = encoder
        self.decoder = decoder
        self.max_workers = max_workers
        self.tiler = Tiler(config)
        self.merger = FeatureMerger(config, image_newline)
        self.assembler = SequenceAssembler(config, decoder.embed_tokens)

    def image_token_length(self, image: ImageInput) -> int:
        """Merged token count for an image, computed from its size alone."""
        if not isinstance(image, Image):
            image = as_image(image)
        return self.merger.merged_length(self.tiler.plan(image.size))

    def encode_image(self, image: ImageInput) -> ImageTokenSequence:
        image = as_image(image)
        plan, tiles = self.tiler(image)
        batch = extract_features(self.encoder, tiles, self.max_workers)
        return self.merger(batch, plan)

    def build_sequence(
        self,
        images: Sequence[ImageInput],
        prompt: Union[PromptMarkers, Sequence],
    ) -> CombinedSequence:
        t0 = time.time()
        image_tokens: List[ImageTokenSequence] = [self.encode_image(img) for img in images]
        enc_time = time.time() - t0
        sequence = self.assembler(prompt, image_tokens)
        logger.info("encoded %d image(s) in %.2fs; combined sequence %d tokens (%d truncated)",
                    len(image_tokens), enc_time, len(sequence), sequence.truncated)
        return sequence

    def session(
        self,
        generation_config: Optional[GenerationConfig] = None,
        selector: Optional[Callable[[np.ndarray], int]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DecoderSession:
        return DecoderSession(self.decoder, self.config, generation_config, selector, cancel_event)

    def generate(
        self,
        images: Sequence[ImageInput],
        prompt: Union[PromptMarkers, Sequence],
        generation_config: Optional[GenerationConfig] = None,
        selector: Optional[Callable[[np.ndarray], int]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[int]:
        """Lazily yield generated token ids, each as soon as it is selected.

        Nothing runs until the first token is requested. Every call starts a
        fresh session with its own cache.
        """
        sequence = self.build_sequence(images, prompt)
        session = self.session(generation_config, selector, cancel_event)
        with session:
            yield from session.generate(sequence)

    def generate_text(
        self,
        images: Sequence[ImageInput],
        prompt: Union[PromptMarkers, Sequence],
        decode: Callable[[Sequence[int]], str],
        generation_config: Optional[GenerationConfig] = None,
        skip_stop_tokens: bool = True,
        **kwargs,
    ) -> Iterator[str]:
        """Like ``generate`` but yields detokenized text pieces."""
        config = generation_config or GenerationConfig()
        stop = config.resolve_stop_tokens(self.config)
        stream = TokenTextStream(decode)
        for token in self.generate(images, prompt, config, **kwargs):
            if skip_stop_tokens and token in stop:
                continue
            piece = stream.next_token(token)
            if piece:
                yield piece
        rest = stream.decode_rest()
        if rest:
            yield rest
