"""Prompt-to-marker conversion and streaming detokenization.

Tokenization itself is external: callers pass ``encode(text) -> ids`` and
``decode(ids) -> text`` callables.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Sequence

from .assembler import ImageSlot, Marker, PromptMarkers

DEFAULT_IMAGE_TOKEN = "<image>"


def split_prompt(
    prompt: str,
    encode: Callable[[str], Sequence[int]],
    image_token: str = DEFAULT_IMAGE_TOKEN,
    bos_token_id: Optional[int] = None,
) -> List[Marker]:
    """Tokenize a prompt, turning each ``image_token`` occurrence into an ImageSlot.

    ``encode`` must not add special tokens; pass ``bos_token_id`` to prepend one.
    """
    markers: List[Marker] = []
    if bos_token_id is not None:
        markers.append(int(bos_token_id))
    parts = prompt.split(image_token)
    for i, part in enumerate(parts):
        if part:
            markers.extend(int(t) for t in encode(part))
        if i < len(parts) - 1:
            markers.append(ImageSlot(key=f"image{i}"))
    return markers


def join_turns(turns: Sequence[Sequence[Marker]]) -> PromptMarkers:
    """Concatenate per-turn markers; the last turn is the protected one."""
    markers: List[Marker] = []
    last_start = 0
    for turn in turns:
        last_start = len(markers)
        markers.extend(turn)
    return PromptMarkers(markers, last_turn_start=last_start)


class TokenTextStream:
    """Incremental detokenizer.

    Emits only text that is stable: a trailing replacement character (an
    incomplete multi-byte sequence) is held back until more tokens arrive.
    """

    def __init__(self, decode: Callable[[Sequence[int]], str]):
        self.decode = decode
        self.tokens: List[int] = []
        self.prev_index = 0
        self.current_index = 0

    def next_token(self, token: int) -> Optional[str]:
        prev_text = self.decode(self.tokens[self.prev_index:self.current_index])
        self.tokens.append(int(token))
        text = self.decode(self.tokens[self.prev_index:])
        if len(text) > len(prev_text) and not text.endswith("\ufffd"):
            piece = text[len(prev_text):]
            self.prev_index = self.current_index
            self.current_index = len(self.tokens)
            return piece
        return None

    def decode_rest(self) -> Optional[str]:
        prev_text = self.decode(self.tokens[self.prev_index:self.current_index])
        text = self.decode(self.tokens[self.prev_index:])
        if len(text) > len(prev_text):
            return text[len(prev_text):]
        return None

    def decode_all(self) -> str:
        return self.decode(self.tokens)

    def clear(self) -> None:
        self.tokens = []
        self.prev_index = 0
        self.current_index = 0
