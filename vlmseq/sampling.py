"""Token selection strategies. Each consumes one step's logits and picks a token."""

from __future__ import annotations

import numpy as np

from .config import GenerationConfig


def softmax(x, axis=-1):
    """Numerically stable softmax."""
    x_max = x.max(axis=axis, keepdims=True)
    e = np.exp(x - x_max)
    return e / e.sum(axis=axis, keepdims=True)


class Greedy:
    """Argmax."""

    def __call__(self, logits: np.ndarray) -> int:
        return int(np.argmax(logits))


class TemperatureSampler:
    """Temperature sampling with optional top-k and nucleus (top-p) filtering."""

    def __init__(self, temperature: float, top_k: int = 0, top_p: float = 1.0, seed=None):
        if temperature <= 0:
            raise ValueError("temperature must be positive; use Greedy for argmax")
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.rng = np.random.default_rng(seed)

    def __call__(self, logits: np.ndarray) -> int:
        logits = np.asarray(logits, dtype=np.float64).reshape(-1) / self.temperature
        if 0 < self.top_k < logits.shape[0]:
            kth = np.partition(logits, -self.top_k)[-self.top_k]
            logits = np.where(logits < kth, -np.inf, logits)
        probs = softmax(logits)
        if self.top_p < 1.0:
            order = np.argsort(-probs, kind="stable")
            cumulative = np.cumsum(probs[order])
            # keep the smallest prefix whose mass reaches top_p
            keep = np.searchsorted(cumulative, self.top_p) + 1
            mask = np.zeros_like(probs, dtype=bool)
            mask[order[:keep]] = True
            probs = np.where(mask, probs, 0.0)
            probs = probs / probs.sum()
        return int(self.rng.choice(probs.shape[0], p=probs))


def from_config(config: GenerationConfig):
    if config.temperature <= 0:
        return Greedy()
    return TemperatureSampler(config.temperature, config.top_k, config.top_p, config.seed)
