"""Stand-ins for ONNX sessions, tokenizers and images.

The fakes keep the real tensor contracts (names, dtypes, shapes) so the CLIP
pipeline is exercised end to end without downloading model weights.
"""

from types import SimpleNamespace
from typing import Dict, List, Optional, Sequence

import numpy as np

from app.assets import catalog
from app.encoders.base import ModelClass
from app.encoders.clip_embedder import CLIPEmbedder
from app.pipelines.image_processor import ImageProcessingError

BOS = 49406
EOS = 49407
EMBEDDING_DIM = 8


class FakeTokenizer:
    """Whitespace tokenizer wrapping ids in CLIP's start/end tokens."""

    def __init__(self, context_length: int = catalog.CLIP_CONTEXT_LENGTH):
        self.context_length = context_length

    def encode(self, text: str):
        if "\x00" in text:
            raise ValueError("unsupported character")
        ids = [BOS] + [100 + len(word) for word in text.split()] + [EOS]
        ids = ids[:self.context_length]
        return SimpleNamespace(ids=ids, attention_mask=[1] * len(ids))


class FakeSession:
    """Mimics ``onnxruntime.InferenceSession.run``.

    Row ``i`` of the embedding output is ``sum(first input row i) + arange``,
    so tests can tell which input produced which vector.
    """

    def __init__(self, input_names: Sequence[str], dim: int = EMBEDDING_DIM, error: Optional[Exception] = None):
        self.input_names = list(input_names)
        self.dim = dim
        self.error = error
        self.calls: List[Dict[str, np.ndarray]] = []

    def get_inputs(self):
        return [SimpleNamespace(name=name) for name in self.input_names]

    def run(self, output_names, feeds):
        self.calls.append(feeds)
        if self.error is not None:
            raise self.error
        first = feeds[self.input_names[0]]
        batch = first.shape[0]
        totals = first.reshape(batch, -1).astype(np.float64).sum(axis=1, keepdims=True)
        embedding = (totals + np.arange(self.dim)).astype(np.float32)
        return [np.zeros((batch, 1), dtype=np.float32), embedding]


class FakeImageProcessor:
    """Images named ``img-<n>`` become tensors filled with ``n``; ``bad*`` fails."""

    def __init__(self):
        self.closed = False

    def to_tensor(self, reference: str, size: int) -> np.ndarray:
        if reference.startswith("bad"):
            raise ImageProcessingError(f"unable to fetch image: {reference}")
        value = float(reference.rsplit("-", 1)[-1])
        return np.full((3, size, size), value, dtype=np.float32)

    def close(self):
        self.closed = True


def make_clip_embedder(model_name: str = "CLIP_RN50_OPENAI", image_processor=None, session_visual=None) -> CLIPEmbedder:
    return CLIPEmbedder(
        catalog.lookup(ModelClass.CLIP, model_name),
        FakeSession(["input", "attention_mask"]),
        session_visual or FakeSession(["input"]),
        FakeTokenizer(),
        image_processor or FakeImageProcessor(),
    )
