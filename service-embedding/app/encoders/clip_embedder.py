"""CLIP dual-tower embedder backed by ONNX Runtime.

The text tower takes ``(batch, context_length)`` int32 token ids plus an
identically shaped attention mask; the visual tower takes a
``(batch, 3, size, size)`` float32 pixel tensor. Both towers map into the same
embedding space and the last declared output of each session is the
embedding.
"""

import time
from typing import Any, List, Sequence

import numpy as np
import onnxruntime as ort
from tokenizers import Tokenizer
import structlog

from .base import ClipRequest, Embedder, EmbedderParams, EncodingRequest, ModelClass, PayloadKind
from ..assets import catalog
from ..assets.catalog import ModelDescriptor, TEXTUAL_ONNX, VISUAL_ONNX
from ..errors import (
    InferenceError,
    InternalContractViolation,
    PreprocessingError,
    SessionConstructionError,
    TokenizationError,
    UnsupportedPayloadError,
)
from ..pipelines.image_processor import ImageProcessingError, ImageProcessor

logger = structlog.get_logger("embedder_service.clip_embedder")


def build_session(model_file: str, params: EmbedderParams) -> ort.InferenceSession:
    """Create an inference session honoring the thread and parallelism hints."""
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC
    options.inter_op_num_threads = params.num_threads
    if params.parallel_execution:
        options.execution_mode = ort.ExecutionMode.ORT_PARALLEL
    try:
        return ort.InferenceSession(
            model_file,
            sess_options=options,
            providers=list(params.execution_providers)
        )
    except Exception as e:
        # onnxruntime raises its own pybind exception types
        raise SessionConstructionError(f"unable to build session for {model_file}: {e}") from e


def load_tokenizer(descriptor: ModelDescriptor) -> Tokenizer:
    """Load the model tokenizer and cap sequences at the context length."""
    try:
        tokenizer = Tokenizer.from_pretrained(descriptor.tokenizer)
    except Exception as e:
        raise SessionConstructionError(f"unable to create a tokenizer: {e}") from e
    tokenizer.enable_truncation(max_length=descriptor.context_length)
    return tokenizer


class CLIPEmbedder(Embedder):
    """Text and image encoder sharing one output space."""

    model_class = ModelClass.CLIP

    def __init__(
        self,
        descriptor: ModelDescriptor,
        session_textual: Any,
        session_visual: Any,
        tokenizer: Any,
        image_processor: ImageProcessor,
    ):
        self.descriptor = descriptor
        self.model_name = descriptor.name
        self.context_length = descriptor.context_length
        self.image_size = descriptor.image_size
        self.session_textual = session_textual
        self.session_visual = session_visual
        self.tokenizer = tokenizer
        self.image_processor = image_processor

    @classmethod
    def create(cls, params: EmbedderParams) -> "CLIPEmbedder":
        descriptor = catalog.lookup(ModelClass.CLIP, params.model_name)
        if params.image_processor is None:
            raise SessionConstructionError("CLIP models require a shared image processor")

        base_url = params.asset_base_url.rstrip("/") + "/"
        for filename in (TEXTUAL_ONNX, VISUAL_ONNX):
            spec = descriptor.artifact(filename)
            params.provisioner.provision(
                params.model_path / filename,
                base_url + spec.remote_path,
                spec.md5
            )

        start = time.time()
        logger.info("Building the textual session", model=params.model_name)
        session_textual = build_session(str(params.model_path / TEXTUAL_ONNX), params)
        logger.info("Building the visual session", model=params.model_name)
        session_visual = build_session(str(params.model_path / VISUAL_ONNX), params)
        logger.info("Building the tokenizer", model=params.model_name)
        tokenizer = load_tokenizer(descriptor)
        logger.info(
            "CLIP embedder ready",
            model=params.model_name,
            num_threads=params.num_threads,
            parallel_execution=params.parallel_execution,
            build_seconds=round(time.time() - start, 3)
        )

        return cls(descriptor, session_textual, session_visual, tokenizer, params.image_processor)

    def encode(self, request: EncodingRequest) -> List[List[float]]:
        if not isinstance(request, ClipRequest):
            raise InternalContractViolation(
                f"incorrect request {type(request).__name__} routed to CLIP model {self.model_name}"
            )
        if request.kind == PayloadKind.TEXT:
            return self.encode_text_batch(request.values)
        if request.kind == PayloadKind.IMAGE_URI:
            return self.encode_image_batch(request.values)
        if request.kind == PayloadKind.IMAGE_BYTES:
            raise UnsupportedPayloadError("encoding raw image bytes is not implemented as yet")
        raise InternalContractViolation(f"unexpected CLIP payload kind: {request.kind}")

    def tokenize_batch(self, texts: Sequence[str]):
        """Build the zero-padded ``(ids, attention_mask)`` int32 batch."""
        ids = np.zeros((len(texts), self.context_length), dtype=np.int32)
        mask = np.zeros((len(texts), self.context_length), dtype=np.int32)
        for idx, text in enumerate(texts):
            try:
                encoding = self.tokenizer.encode(text)
            except Exception as e:
                raise TokenizationError(idx, str(e)) from e
            row_ids = encoding.ids[:self.context_length]
            row_mask = encoding.attention_mask[:self.context_length]
            ids[idx, :len(row_ids)] = row_ids
            mask[idx, :len(row_mask)] = row_mask
        return ids, mask

    def encode_text_batch(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        ids, mask = self.tokenize_batch(texts)
        feeds = self._feeds(self.session_textual, (ids, mask))
        outputs = self._run(self.session_textual, feeds, "textual")
        return self._split(outputs[-1], len(texts))

    def pixel_batch(self, references: Sequence[str]) -> np.ndarray:
        """Stack preprocessed images into ``(batch, 3, size, size)``."""
        batch = np.zeros((len(references), 3, self.image_size, self.image_size), dtype=np.float32)
        for idx, reference in enumerate(references):
            try:
                batch[idx] = self.image_processor.to_tensor(reference, self.image_size)
            except ImageProcessingError as e:
                raise PreprocessingError(idx, reference, str(e)) from e
        return batch

    def encode_image_batch(self, references: Sequence[str]) -> List[List[float]]:
        if not references:
            return []
        pixels = self.pixel_batch(references)
        feeds = self._feeds(self.session_visual, (pixels,))
        outputs = self._run(self.session_visual, feeds, "visual")
        return self._split(outputs[-1], len(references))

    def _run(self, session: Any, feeds, tower: str):
        try:
            return session.run(None, feeds)
        except Exception as e:
            # onnxruntime raises its own pybind exception types
            raise InferenceError(f"{tower} session of {self.model_name} failed: {e}") from e

    @staticmethod
    def _feeds(session: Any, arrays: Sequence[np.ndarray]):
        names = [node.name for node in session.get_inputs()]
        if len(names) != len(arrays):
            raise InternalContractViolation(
                f"session expects {len(names)} inputs, pipeline produced {len(arrays)}"
            )
        return dict(zip(names, arrays))

    @staticmethod
    def _split(embedding: np.ndarray, batch_size: int) -> List[List[float]]:
        embedding = np.asarray(embedding, dtype=np.float32).reshape(batch_size, -1)
        return [row.tolist() for row in embedding]
