"""Tests for the instruction-conditioned text embedder."""

import numpy as np
import pytest

from app.assets import catalog
from app.encoders import instructor_embedder as instructor_module
from app.encoders.base import ClipRequest, EmbedderParams, InstructorRequest, ModelClass, PayloadKind
from app.encoders.instructor_embedder import InstructorEmbedder
from app.errors import InferenceError, InternalContractViolation, InvalidRequestError, SessionConstructionError


class FakeSentenceTransformer:
    """Vector for a text is ``[len(text), len(prompt)]``."""

    def __init__(self):
        self.calls = []

    def encode(self, texts, prompt=None, batch_size=32, convert_to_numpy=True):
        self.calls.append((list(texts), prompt))
        return np.array([[len(text), len(prompt or "")] for text in texts], dtype=np.float32)


@pytest.fixture
def model():
    return FakeSentenceTransformer()


@pytest.fixture
def embedder(model):
    return InstructorEmbedder(catalog.lookup(ModelClass.INSTRUCTOR, "INSTRUCTOR_BASE"), model)


def test_pairs_sharing_an_instruction_are_batched(embedder, model):
    request = InstructorRequest(
        texts=["a", "bb", "ccc", "dddd"],
        instructions=["Represent the title:", "Represent the query:", "Represent the title:", "Represent the query:"],
    )

    vectors = embedder.encode(request)

    assert [call[1] for call in model.calls] == ["Represent the title:", "Represent the query:"]
    assert model.calls[0][0] == ["a", "ccc"]
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0]
    assert [vector[1] for vector in vectors] == [20.0, 20.0, 20.0, 20.0]


def test_empty_request_skips_the_model(embedder, model):
    assert embedder.encode(InstructorRequest(texts=[], instructions=[])) == []
    assert model.calls == []


def test_unpaired_inputs_are_rejected():
    with pytest.raises(InvalidRequestError, match="pairs of"):
        InstructorRequest(texts=["one", "two"], instructions=["only one"])


def test_clip_request_is_a_contract_violation(embedder):
    with pytest.raises(InternalContractViolation):
        embedder.encode(ClipRequest(PayloadKind.TEXT, ["hello"]))


def test_model_failure_is_reported_as_inference_error(embedder, model):
    def broken_encode(texts, **kwargs):
        raise RuntimeError("CUDA out of memory")

    model.encode = broken_encode

    with pytest.raises(InferenceError, match="out of memory"):
        embedder.encode(InstructorRequest(texts=["x"], instructions=["y"]))


def _params(tmp_path, model_name="INSTRUCTOR_LARGE"):
    return EmbedderParams(
        model_name=model_name,
        model_path=tmp_path / model_name,
        num_threads=1,
        parallel_execution=False,
        provisioner=None,
        asset_base_url="",
    )


def test_create_loads_hub_checkpoint_into_model_folder(tmp_path, monkeypatch):
    loaded = []

    def fake_loader(repo, device=None, cache_folder=None):
        loaded.append((repo, device, cache_folder))
        return FakeSentenceTransformer()

    monkeypatch.setattr(instructor_module, "SentenceTransformer", fake_loader)

    embedder = InstructorEmbedder.create(_params(tmp_path))

    assert loaded == [("hkunlp/instructor-large", "cpu", str(tmp_path / "INSTRUCTOR_LARGE"))]
    assert embedder.model_name == "INSTRUCTOR_LARGE"


def test_create_wraps_loader_failures(tmp_path, monkeypatch):
    def broken_loader(repo, device=None, cache_folder=None):
        raise OSError("repository not reachable")

    monkeypatch.setattr(instructor_module, "SentenceTransformer", broken_loader)

    with pytest.raises(SessionConstructionError, match="repository not reachable"):
        InstructorEmbedder.create(_params(tmp_path))
