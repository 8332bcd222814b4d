"""Instruction-conditioned text embedder.

INSTRUCTOR checkpoints are loaded through ``sentence-transformers`` and each
text is encoded with its instruction as the prompt. Inputs sharing an
instruction are encoded together, then scattered back to their original
positions.
"""

from collections import OrderedDict
from typing import Any, Dict, List

import numpy as np
from sentence_transformers import SentenceTransformer
import structlog

from .base import Embedder, EmbedderParams, EncodingRequest, InstructorRequest, ModelClass
from ..assets import catalog
from ..assets.catalog import ModelDescriptor
from ..errors import InferenceError, InternalContractViolation, SessionConstructionError

logger = structlog.get_logger("embedder_service.instructor_embedder")


class InstructorEmbedder(Embedder):
    """Wraps a ``SentenceTransformer`` holding an INSTRUCTOR checkpoint."""

    model_class = ModelClass.INSTRUCTOR

    def __init__(self, descriptor: ModelDescriptor, model: Any, batch_size: int = 32):
        self.descriptor = descriptor
        self.model_name = descriptor.name
        self.model = model
        self.batch_size = batch_size

    @classmethod
    def create(cls, params: EmbedderParams) -> "InstructorEmbedder":
        descriptor = catalog.lookup(ModelClass.INSTRUCTOR, params.model_name)
        logger.info("Loading sentence-transformers checkpoint", model=params.model_name, repo=descriptor.hub_repo)
        try:
            model = SentenceTransformer(
                descriptor.hub_repo,
                device="cpu",
                cache_folder=str(params.model_path)
            )
        except Exception as e:
            raise SessionConstructionError(f"unable to load {descriptor.hub_repo}: {e}") from e
        return cls(descriptor, model)

    def encode(self, request: EncodingRequest) -> List[List[float]]:
        if not isinstance(request, InstructorRequest):
            raise InternalContractViolation(
                f"incorrect request {type(request).__name__} routed to INSTRUCTOR model {self.model_name}"
            )
        if not request.texts:
            return []

        groups: Dict[str, List[int]] = OrderedDict()
        for idx, instruction in enumerate(request.instructions):
            groups.setdefault(instruction, []).append(idx)

        results: List[List[float]] = [[] for _ in request.texts]
        for instruction, positions in groups.items():
            try:
                vectors = self.model.encode(
                    [request.texts[i] for i in positions],
                    prompt=instruction,
                    batch_size=self.batch_size,
                    convert_to_numpy=True
                )
            except Exception as e:
                raise InferenceError(f"{self.model_name} failed to encode: {e}") from e
            vectors = np.asarray(vectors, dtype=np.float32).reshape(len(positions), -1)
            for position, vector in zip(positions, vectors):
                results[position] = vector.tolist()
        return results
