import numpy as np
import pytest

from vlmseq.errors import SessionStateError
from vlmseq.kv_cache import KVCache


def kv(n, value=1.0):
    return np.full((n, 2, 4), value, dtype=np.float32)


def test_write_then_commit():
    cache = KVCache(num_layers=2, num_kv_heads=2, head_dim=4, capacity=8)
    cache.write(0, kv(3), kv(3, 2.0))
    cache.write(1, kv(3), kv(3, 2.0))
    assert cache.length == 0
    k, v = cache.layer(0, extra=3)
    assert k.shape == (3, 2, 4)
    assert v[0, 0, 0] == 2.0
    cache.commit(3)
    assert len(cache) == 3
    assert cache.remaining == 5


def test_rollback_leaves_length_unchanged():
    cache = KVCache(1, 2, 4, 8)
    cache.write(0, kv(3), kv(3))
    cache.commit(3)
    cache.write(0, kv(1, 9.0), kv(1, 9.0))
    cache.rollback()
    assert cache.length == 3
    # the next pass overwrites the discarded entry
    cache.write(0, kv(1, 5.0), kv(1, 5.0))
    cache.commit(1)
    assert cache.layer(0)[0][3, 0, 0] == 5.0


def test_overflow_and_shape_errors():
    cache = KVCache(1, 2, 4, 2)
    with pytest.raises(ValueError):
        cache.write(0, kv(3), kv(3))
    with pytest.raises(ValueError):
        cache.write(0, np.zeros((1, 3, 4)), np.zeros((1, 3, 4)))
    with pytest.raises(ValueError):
        cache.write(0, kv(1), kv(2))
    with pytest.raises(ValueError):
        cache.commit(3)
    with pytest.raises(ValueError):
        KVCache(1, 2, 4, 0)


def test_release():
    cache = KVCache(1, 2, 4, 4)
    cache.release()
    cache.release()
    assert cache.released
    assert cache.keys is None
    with pytest.raises(SessionStateError):
        cache.write(0, kv(1), kv(1))


def test_commit_must_match_written_positions():
    cache = KVCache(1, 2, 4, 8)
    with pytest.raises(ValueError):
        cache.commit(1)
    cache.write(0, kv(2), kv(2))
    assert cache.pending == 2
    with pytest.raises(ValueError):
        cache.commit(1)
    cache.commit(2)
    assert cache.pending == 0
    assert cache.length == 2
