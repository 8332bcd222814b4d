"""Embedder contract and the request types routed to it.

An embedder turns a typed request into one float vector per input. Concrete
families (CLIP dual-tower, INSTRUCTOR text) implement ``create`` and
``encode``; the manager only ever talks to this interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, List, NamedTuple, Optional, Sequence, Union

from ..errors import InvalidRequestError

if TYPE_CHECKING:
    from ..assets.provisioner import AssetProvisioner
    from ..pipelines.image_processor import ImageProcessor


class ModelClass(str, Enum):
    """Supported model families."""
    CLIP = "CLIP"
    INSTRUCTOR = "INSTRUCTOR"

    @classmethod
    def parse(cls, value: str) -> "ModelClass":
        """Resolve a class from its name, case-insensitively."""
        try:
            return cls(value.upper())
        except (AttributeError, ValueError):
            raise InvalidRequestError(f"unknown model_class: {value}")


class ModelIdentifier(NamedTuple):
    """Registry key for an embedder."""
    model_class: ModelClass
    model_name: str

    def __str__(self) -> str:
        return f"{self.model_class.value}/{self.model_name}"


class PayloadKind(str, Enum):
    TEXT = "text"
    IMAGE_URI = "image_uri"
    IMAGE_BYTES = "image_bytes"
    INSTRUCTION_TEXT = "instruction_text"


@dataclass(frozen=True)
class ClipRequest:
    """Batch for a CLIP model: strings, image URIs or raw image bytes."""
    kind: PayloadKind
    values: Sequence[Union[str, bytes]]

    model_class = ModelClass.CLIP

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class InstructorRequest:
    """Batch of (instruction, text) pairs for an INSTRUCTOR model."""
    texts: Sequence[str]
    instructions: Sequence[str]

    model_class = ModelClass.INSTRUCTOR
    kind = PayloadKind.INSTRUCTION_TEXT

    def __post_init__(self):
        if len(self.texts) != len(self.instructions):
            raise InvalidRequestError(
                "INSTRUCTOR class models require pairs of (text, instructions) | "
                f"text.len: {len(self.texts)}, instructions.len: {len(self.instructions)}"
            )

    def __len__(self) -> int:
        return len(self.texts)


EncodingRequest = Union[ClipRequest, InstructorRequest]


@dataclass
class EmbedderParams:
    """Everything a concrete embedder needs to build itself.

    ``image_processor`` is shared by every embedder created by one manager.
    """
    model_name: str
    model_path: Path
    num_threads: int
    parallel_execution: bool
    provisioner: "AssetProvisioner"
    asset_base_url: str
    image_processor: Optional["ImageProcessor"] = None
    execution_providers: List[str] = field(default_factory=lambda: ["CPUExecutionProvider"])


class Embedder(ABC):
    """A constructed, ready-to-serve model."""

    model_class: ModelClass

    @classmethod
    @abstractmethod
    def create(cls, params: EmbedderParams) -> "Embedder":
        """Provision assets and build inference state for ``params.model_name``."""

    @abstractmethod
    def encode(self, request: EncodingRequest) -> List[List[float]]:
        """Encode a batch; ``result[i]`` corresponds to input ``i``."""
