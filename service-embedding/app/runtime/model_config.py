"""Startup model list.

The daemon preloads the models named in a YAML file before it starts
serving::

    models:
      - model_class: CLIP
        model_name: CLIP_VIT_L_14_336_OPENAI
        num_threads: 4
        parallel_execution: true

When the file does not exist the default CLIP model is loaded; a file that
lists no models is rejected.
"""

from pathlib import Path
from typing import List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
import structlog
import yaml

from ..assets.catalog import DEFAULT_MODEL
from ..encoders.base import ModelClass

logger = structlog.get_logger("embedder_service.model_config")


class ModelSettings(BaseModel):
    """One model to initialize."""
    model_config = ConfigDict(protected_namespaces=())

    model_class: ModelClass = Field(..., description="Model family")
    model_name: str = Field(..., description="Catalog name of the model")
    num_threads: int = Field(0, ge=0, description="Inference threads; 0 uses every core")
    parallel_execution: bool = Field(True, description="Run independent graph nodes in parallel")

    @field_validator("model_class", mode="before")
    @classmethod
    def _upper_class(cls, value):
        if isinstance(value, str):
            return value.upper()
        return value


class ModelConfigError(ValueError):
    """The startup model file is unreadable or invalid."""
    pass


def fetch_initial_models(config_path: Path) -> List[ModelSettings]:
    """Read the models to preload from ``config_path``."""
    config_path = Path(config_path)
    if not config_path.exists():
        model_class, model_name = DEFAULT_MODEL
        logger.warning(
            "Model config not found, falling back to default model",
            path=str(config_path),
            model=model_name
        )
        return [ModelSettings(model_class=model_class, model_name=model_name)]

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ModelConfigError(f"unable to read model config {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ModelConfigError(f"model config {config_path} must be a mapping with a 'models' list")

    try:
        models = [ModelSettings(**entry) for entry in data.get("models") or []]
    except (TypeError, ValidationError) as e:
        raise ModelConfigError(f"invalid model entry in {config_path}: {e}") from e

    if not models:
        raise ModelConfigError(
            f"at least 1 model should be specified, please check your config at: {config_path}"
        )
    return models
