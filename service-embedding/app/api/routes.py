"""API routes for the embedder service."""

import base64
import binascii
import time
from typing import Any, Dict, List, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
import structlog

from ..encoders.base import ClipRequest, EncodingRequest, InstructorRequest, ModelClass, PayloadKind
from ..encoders.embedder_manager import EmbedderManager
from ..errors import EmbedderError, InvalidRequestError
from ..runtime.model_config import ModelSettings
from libs.common.config import EmbedderConfig

logger = structlog.get_logger("embedder_service.api")

router = APIRouter()


class InitializeModelRequest(BaseModel):
    """Request model for the initialize endpoint."""
    models: List[ModelSettings] = Field(..., description="Models to construct and register")


class ModelInitResult(BaseModel):
    """Per-model outcome of an initialize call."""
    model_config = ConfigDict(protected_namespaces=())

    model_class: str = Field(..., description="Model family")
    model_name: str = Field(..., description="Model name")
    initialized: bool = Field(..., description="Whether the model is now registered")
    err_message: str = Field("", description="Failure reason, empty on success")


class InitializeModelResponse(BaseModel):
    """Response model for the initialize endpoint."""
    results: List[ModelInitResult]


class EncodeItem(BaseModel):
    """One model's worth of inputs.

    CLIP items may carry any of ``text``, ``image_uri`` and base64 ``image``;
    INSTRUCTOR items carry ``text`` paired index-wise with ``instructions``.
    """
    model_config = ConfigDict(protected_namespaces=())

    model_class: str = Field(..., description="Model family")
    model_name: str = Field(..., description="Model name")
    text: List[str] = Field(default_factory=list, description="Strings to encode")
    instructions: List[str] = Field(default_factory=list, description="Instruction per text (INSTRUCTOR)")
    image_uri: List[str] = Field(default_factory=list, description="Image references to encode (CLIP)")
    image: List[str] = Field(default_factory=list, description="Base64 encoded images (CLIP)")


class EncodeRequest(BaseModel):
    """Request model for the encode endpoint."""
    data: List[EncodeItem] = Field(..., description="Items to encode, one per model")


class EncodeResult(BaseModel):
    """A single vector, or the error for a failed request."""
    embedding: List[float] = Field(default_factory=list, description="Embedding vector")
    err_message: str = Field("", description="Failure reason, empty on success")


class EncodeResponse(BaseModel):
    """Response model for the encode endpoint."""
    results: List[EncodeResult]
    latency_ms: float = Field(..., description="Processing latency in milliseconds")


def get_embedder_manager(request: Request) -> EmbedderManager:
    """Get embedder manager from application state."""
    return request.app.state.embedder_manager


def get_config(request: Request) -> EmbedderConfig:
    """Get service configuration from application state."""
    return request.app.state.config


def transform_encode_request(data: List[EncodeItem]) -> List[Tuple[ModelClass, str, EncodingRequest]]:
    """Fan encode items out into per-model, per-payload requests.

    Raises ``HTTPException(400)`` for unknown classes, unpaired instructor
    inputs and undecodable images.
    """
    requests: List[Tuple[ModelClass, str, EncodingRequest]] = []
    for idx, item in enumerate(data):
        try:
            model_class = ModelClass.parse(item.model_class)
        except InvalidRequestError:
            raise HTTPException(
                status_code=400,
                detail=f"unknown model class: {item.model_class} set at idx: {idx}"
            )

        if model_class == ModelClass.INSTRUCTOR:
            try:
                requests.append((
                    model_class,
                    item.model_name,
                    InstructorRequest(texts=item.text, instructions=item.instructions)
                ))
            except InvalidRequestError as e:
                raise HTTPException(status_code=400, detail=str(e))
            continue

        if item.text:
            requests.append((model_class, item.model_name, ClipRequest(PayloadKind.TEXT, item.text)))
        if item.image_uri:
            requests.append((model_class, item.model_name, ClipRequest(PayloadKind.IMAGE_URI, item.image_uri)))
        if item.image:
            try:
                images = [base64.b64decode(value, validate=True) for value in item.image]
            except (binascii.Error, ValueError):
                raise HTTPException(status_code=400, detail=f"invalid base64 image set at idx: {idx}")
            requests.append((model_class, item.model_name, ClipRequest(PayloadKind.IMAGE_BYTES, images)))
    return requests


@router.post("/initialize", response_model=InitializeModelResponse)
async def initialize_model(
    request: InitializeModelRequest,
    embedder_manager: EmbedderManager = Depends(get_embedder_manager),
    config: EmbedderConfig = Depends(get_config)
):
    """Construct and register models; failures are reported per model."""
    if not config.ml_allow_admin:
        raise HTTPException(
            status_code=403,
            detail=(
                f"server has been configured with allow_admin: {config.ml_allow_admin} "
                "Initialize() cannot be called without authorization"
            )
        )

    results: List[ModelInitResult] = []
    for settings in request.models:
        try:
            await embedder_manager.initialize_model(
                settings.model_class,
                settings.model_name,
                settings.num_threads,
                settings.parallel_execution
            )
            results.append(ModelInitResult(
                model_class=settings.model_class.value,
                model_name=settings.model_name,
                initialized=True
            ))
        except EmbedderError as e:
            logger.warning(
                "Model initialization failed",
                model_class=settings.model_class.value,
                model_name=settings.model_name,
                error=str(e)
            )
            results.append(ModelInitResult(
                model_class=settings.model_class.value,
                model_name=settings.model_name,
                initialized=False,
                err_message=f"unable to init: {e}"
            ))

    return InitializeModelResponse(results=results)


@router.post("/encode", response_model=EncodeResponse)
async def encode(
    request: EncodeRequest,
    embedder_manager: EmbedderManager = Depends(get_embedder_manager)
):
    """Encode every item; each failed request contributes one error entry."""
    start_time = time.time()
    requests = transform_encode_request(request.data)

    results: List[EncodeResult] = []
    for model_class, model_name, encoding_request in requests:
        try:
            vectors = await embedder_manager.encode(model_class, model_name, encoding_request)
            results.extend(EncodeResult(embedding=vector) for vector in vectors)
        except EmbedderError as e:
            logger.warning(
                "Encoding failed",
                model_class=model_class.value,
                model_name=model_name,
                payload_kind=encoding_request.kind.value,
                error=str(e)
            )
            results.append(EncodeResult(err_message=f"err while encoding message: {e}"))

    latency_ms = (time.time() - start_time) * 1000
    logger.info("Encode request served", requests=len(requests), results=len(results), latency_ms=latency_ms)
    return EncodeResponse(results=results, latency_ms=latency_ms)


@router.get("/models")
async def list_models(
    embedder_manager: EmbedderManager = Depends(get_embedder_manager)
) -> Dict[str, Any]:
    """List registered models."""
    return {"models": await embedder_manager.list_models()}
