import numpy as np
import pytest

from vlmseq.assembler import SequenceAssembler
from vlmseq.config import ModelConfig
from vlmseq.image import Image
from vlmseq.kv_cache import KVCache


class FakeEncoder:
    """Deterministic stand-in: column 0 = tile mean pixel, column 1 = patch index."""

    def __init__(self, num_patches=5, hidden_size=8):
        self.num_patches = num_patches
        self.hidden_size = hidden_size
        self.calls = 0

    def encode(self, image):
        self.calls += 1
        out = np.zeros((self.num_patches, self.hidden_size), dtype=np.float32)
        out[:, 0] = image.pixels.mean()
        out[:, 1] = np.arange(self.num_patches)
        return out


class FakeDecoder:
    """Scripted decoder. Forward call i returns logits peaking at script[i]."""

    def __init__(self, hidden_size=8, vocab_size=128, num_layers=2, script=(),
                 fail_at=None, default_token=3):
        self.hidden_size = hidden_size
        self.vocab_size = vocab_size
        self.num_layers = num_layers
        self.script = list(script)
        self.fail_at = fail_at
        self.default_token = default_token
        self.calls = []

    def embed_tokens(self, token_ids):
        token_ids = np.asarray(token_ids)
        out = np.zeros((len(token_ids), self.hidden_size), dtype=np.float32)
        out[:, 0] = token_ids
        out[:, 1] = 1.0
        return out

    def new_cache(self, capacity):
        return KVCache(self.num_layers, 1, 4, capacity)

    def forward(self, embeddings, position_ids, cache):
        call = len(self.calls)
        position_ids = np.asarray(position_ids)
        self.calls.append((embeddings.shape[0], position_ids.copy()))
        if self.fail_at is not None and call == self.fail_at:
            raise RuntimeError("device lost")
        n = embeddings.shape[0]
        for layer in range(self.num_layers):
            kv = np.broadcast_to(position_ids[:, None, None].astype(np.float32), (n, 1, 4))
            cache.write(layer, kv, kv)
        token = self.script[call] if call < len(self.script) else self.default_token
        logits = np.zeros(self.vocab_size, dtype=np.float32)
        logits[token] = 1.0
        return logits


@pytest.fixture
def small_config():
    return ModelConfig(
        hidden_size=8,
        max_context_length=4096,
        image_size=28,
        patch_size=14,
        image_grid_pinpoints=((28, 56), (56, 28), (56, 56)),
        eos_token_ids=(2,),
    )


@pytest.fixture
def decoder():
    return FakeDecoder()


@pytest.fixture
def make_sequence(small_config):
    def _make(n, config=None, decoder=None):
        dec = decoder or FakeDecoder()
        assembler = SequenceAssembler(config or small_config, dec.embed_tokens)
        return assembler(list(range(10, 10 + n)), [])
    return _make


def solid_image(width, height, value=128):
    return Image(np.full((height, width, 3), value, dtype=np.uint8))


def random_image(width, height, seed=0):
    rng = np.random.default_rng(seed)
    return Image(rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8))
