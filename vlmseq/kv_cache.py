"""Key/value cache arena owned by a single decoder session."""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from .errors import SessionStateError

logger = logging.getLogger(__name__)


class KVCache:
    """Preallocated per-layer key/value storage, indexed by layer and position.

    Layout is [num_layers, capacity, num_kv_heads, head_dim] for keys and for
    values. A forward pass writes each layer's new entries at ``length`` with
    ``write``; the session then calls ``commit`` once the whole pass succeeded.
    Uncommitted writes are overwritten by the next pass, so a failed step never
    changes ``length``.
    """

    def __init__(self, num_layers: int, num_kv_heads: int, head_dim: int,
                 capacity: int, dtype=np.float32):
        if min(num_layers, num_kv_heads, head_dim, capacity) <= 0:
            raise ValueError("cache dimensions must be positive")
        self.num_layers = num_layers
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.capacity = capacity
        shape = (num_layers, capacity, num_kv_heads, head_dim)
        self.keys = np.zeros(shape, dtype=dtype)
        self.values = np.zeros(shape, dtype=dtype)
        self.length = 0
        self._pending = 0
        self._released = False

    def __len__(self) -> int:
        return self.length

    @property
    def released(self) -> bool:
        return self._released

    @property
    def remaining(self) -> int:
        return self.capacity - self.length

    def _check_live(self):
        if self._released:
            raise SessionStateError("KV cache has been released")

    def write(self, layer: int, keys: np.ndarray, values: np.ndarray) -> None:
        """Store [n, num_kv_heads, head_dim] keys/values for new positions."""
        self._check_live()
        n = keys.shape[0]
        if keys.shape != values.shape:
            raise ValueError(f"keys {keys.shape} and values {values.shape} differ")
        if keys.shape[1:] != (self.num_kv_heads, self.head_dim):
            raise ValueError(
                f"expected [n, {self.num_kv_heads}, {self.head_dim}], got {keys.shape}"
            )
        if self.length + n > self.capacity:
            raise ValueError(
                f"cache overflow: {self.length} + {n} > capacity {self.capacity}"
            )
        self.keys[layer, self.length:self.length + n] = keys
        self.values[layer, self.length:self.length + n] = values
        self._pending = max(self._pending, n)

    def layer(self, layer: int, extra: int = 0) -> Tuple[np.ndarray, np.ndarray]:
        """Committed entries for a layer, plus ``extra`` pending positions."""
        self._check_live()
        end = self.length + extra
        return self.keys[layer, :end], self.values[layer, :end]

    @property
    def pending(self) -> int:
        """Positions written since the last commit or rollback."""
        return self._pending

    def commit(self, n: int) -> None:
        """Advance ``length`` over the n positions the last pass wrote."""
        self._check_live()
        if self.length + n > self.capacity:
            raise ValueError(f"cache overflow: {self.length} + {n} > capacity {self.capacity}")
        if n != self._pending:
            raise ValueError(f"committing {n} positions but {self._pending} were written")
        self.length += n
        self._pending = 0

    def rollback(self) -> None:
        """Discard uncommitted writes."""
        self._pending = 0

    def release(self) -> None:
        """Free the arena in one step."""
        if self._released:
            return
        logger.debug("releasing KV cache (%d/%d positions used)", self.length, self.capacity)
        self.keys = None
        self.values = None
        self._released = True
