"""Static catalog of servable models.

Maps a model name to its remote artifacts, their MD5 content hashes and the
geometry the encoders need. The tables are built once at import and exposed
read-only; lookups never fall back to a default model.

CLIP artifacts are the ONNX exports published by clip-as-service; paths are
relative to ``EmbedderConfig.ml_asset_base_url``. INSTRUCTOR models are
fetched from the Hugging Face hub by ``sentence-transformers``.
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from ..encoders.base import ModelClass
from ..errors import UnknownModelError

CLIP_CONTEXT_LENGTH = 77
CLIP_TOKENIZER = "openai/clip-vit-base-patch16"

TEXTUAL_ONNX = "textual.onnx"
VISUAL_ONNX = "visual.onnx"


@dataclass(frozen=True)
class AssetSpec:
    """One downloadable artifact of a model."""
    filename: str
    remote_path: str
    md5: str


@dataclass(frozen=True)
class ModelDescriptor:
    """Everything known ahead of time about a named model."""
    name: str
    model_class: ModelClass
    artifacts: Tuple[AssetSpec, ...] = ()
    image_size: Optional[int] = None
    context_length: Optional[int] = None
    tokenizer: Optional[str] = None
    hub_repo: Optional[str] = None
    dimension: Optional[int] = None

    def artifact(self, filename: str) -> AssetSpec:
        for spec in self.artifacts:
            if spec.filename == filename:
                return spec
        raise KeyError(f"{self.name} has no artifact {filename}")


def _clip(
    name: str, folder: str, textual_md5: str, visual_md5: str, image_size: int, dimension: int
) -> ModelDescriptor:
    return ModelDescriptor(
        name=name,
        model_class=ModelClass.CLIP,
        artifacts=(
            AssetSpec(TEXTUAL_ONNX, f"{folder}/{TEXTUAL_ONNX}", textual_md5),
            AssetSpec(VISUAL_ONNX, f"{folder}/{VISUAL_ONNX}", visual_md5),
        ),
        image_size=image_size,
        context_length=CLIP_CONTEXT_LENGTH,
        tokenizer=CLIP_TOKENIZER,
        dimension=dimension,
    )


def _instructor(name: str, repo: str, dimension: int) -> ModelDescriptor:
    return ModelDescriptor(
        name=name,
        model_class=ModelClass.INSTRUCTOR,
        hub_repo=repo,
        dimension=dimension,
    )


CLIP_MODELS: Mapping[str, ModelDescriptor] = MappingProxyType({
    d.name: d for d in (
        _clip("CLIP_RN50_OPENAI", "RN50",
              "722418bfe47a1f5c79d1f44884bb3103", "5761475db01c3abb68a5a805662dcd10", 224, 1024),
        _clip("CLIP_RN50_YFCC15M", "RN50-yfcc15m",
              "4ff2ea7228b9d2337b5440d1955c2108", "87daa9b4a67449b5390a9a73b8c15772", 224, 1024),
        _clip("CLIP_RN50_CC12M", "RN50-cc12m",
              "78fa0ae0ea47aca4b8864f709c48dcec", "0e04bf92f3c181deea2944e322ebee77", 224, 1024),
        _clip("CLIP_VIT_L_14_336_OPENAI", "ViT-L-14@336px",
              "78fab479f136403eed0db46f3e9e7ed2", "f3b1f5d55ca08d43d749e11f7e4ba27e", 336, 768),
    )
})

INSTRUCTOR_MODELS: Mapping[str, ModelDescriptor] = MappingProxyType({
    d.name: d for d in (
        _instructor("INSTRUCTOR_BASE", "hkunlp/instructor-base", 768),
        _instructor("INSTRUCTOR_LARGE", "hkunlp/instructor-large", 768),
        _instructor("INSTRUCTOR_XL", "hkunlp/instructor-xl", 768),
    )
})

_CATALOG: Mapping[ModelClass, Mapping[str, ModelDescriptor]] = MappingProxyType({
    ModelClass.CLIP: CLIP_MODELS,
    ModelClass.INSTRUCTOR: INSTRUCTOR_MODELS,
})

DEFAULT_MODEL = (ModelClass.CLIP, "CLIP_VIT_L_14_336_OPENAI")


def lookup(model_class: ModelClass, model_name: str) -> ModelDescriptor:
    """Resolve a descriptor by exact name.

    Raises ``UnknownModelError`` listing the valid names for the class.
    """
    table = _CATALOG.get(model_class, {})
    descriptor = table.get(model_name)
    if descriptor is None:
        raise UnknownModelError(model_class.value, model_name, table.keys())
    return descriptor


def available_models(model_class: Optional[ModelClass] = None) -> Dict[str, List[str]]:
    """List known model names, grouped by class."""
    classes = [model_class] if model_class else list(_CATALOG)
    return {c.value: sorted(_CATALOG[c]) for c in classes}
