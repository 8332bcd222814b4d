"""Embedder manager: the process-wide registry of ready-to-serve models.

Embedders are keyed by ``(model class, model name)``. Initialization is
idempotent and coalesced: concurrent callers for the same identifier share one
construction running on a dedicated thread pool, away from the event loop.
Encode calls only take the registry lock for the lookup; inference itself runs
unlocked so several batches can be served in parallel.
"""

import asyncio
import os
import time
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from libs.common.config import EmbedderConfig
from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from libs.common.tracing import EmbedderTracer, get_embedder_tracer
from .base import Embedder, EmbedderParams, EncodingRequest, ModelClass, ModelIdentifier
from .clip_embedder import CLIPEmbedder
from .instructor_embedder import InstructorEmbedder
from ..assets import catalog
from ..assets.provisioner import AssetProvisioner
from ..errors import (
    EmbedderError,
    InternalContractViolation,
    ModelNotRegisteredError,
    PayloadKindMismatchError,
    SessionConstructionError,
)
from ..pipelines.image_processor import ImageProcessor

logger = structlog.get_logger("embedder_service.embedder_manager")

EmbedderFactory = Callable[[EmbedderParams], Embedder]

DEFAULT_FACTORIES: Mapping[ModelClass, EmbedderFactory] = {
    ModelClass.CLIP: CLIPEmbedder.create,
    ModelClass.INSTRUCTOR: InstructorEmbedder.create,
}


class EmbedderManager:
    """Owns every embedder and the lifetime of the resources they share.

    Notes
    - The registry lock guards ``_embedders`` and ``_inflight`` only; it is
      never held while constructing or encoding
    - The first configuration registered for an identifier wins; later
      initialize calls with different thread hints are no-ops
    - A failed construction leaves no trace, so initialize can be retried
    """

    def __init__(
        self,
        config: EmbedderConfig,
        metrics: Optional[MetricsCollector] = None,
        tracer: Optional[EmbedderTracer] = None,
        factories: Optional[Mapping[ModelClass, EmbedderFactory]] = None,
        provisioner: Optional[AssetProvisioner] = None,
        image_processor: Optional[ImageProcessor] = None,
    ):
        """Create an embedder manager.

        Parameters
        - config: ``EmbedderConfig`` with the asset cache folder and runtime knobs
        - metrics: Optional collector for construction/encode metrics
        - factories: Per-class constructors (defaults to the built-in embedders)
        - provisioner, image_processor: Shared helpers handed to every embedder
        """
        self.config = config
        self.model_folder = Path(config.ml_model_folder)
        self.metrics = metrics
        self.tracer = tracer or get_embedder_tracer("embedder-service")
        self.factories: Dict[ModelClass, EmbedderFactory] = dict(factories or DEFAULT_FACTORIES)
        self.provisioner = provisioner or AssetProvisioner(
            timeout=config.ml_download_timeout,
            max_attempts=config.ml_download_max_attempts,
            verify_cached=config.ml_verify_cached_assets,
            metrics=metrics,
        )
        self.image_processor = image_processor or ImageProcessor(timeout=config.ml_image_fetch_timeout)

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, config.ml_construction_workers),
            thread_name_prefix="embedder-construct",
        )
        self._lock = threading.Lock()
        self._embedders: Dict[ModelIdentifier, Embedder] = {}
        self._model_info: Dict[ModelIdentifier, Dict[str, Any]] = {}
        self._inflight: Dict[ModelIdentifier, Future] = {}

    @staticmethod
    def identifier(model_class: Union[ModelClass, str], model_name: str) -> ModelIdentifier:
        if not isinstance(model_class, ModelClass):
            model_class = ModelClass.parse(model_class)
        return ModelIdentifier(model_class, model_name)

    @staticmethod
    def _resolve_threads(num_threads: int) -> int:
        if num_threads and num_threads > 0:
            return num_threads
        return os.cpu_count() or 1

    async def initialize_model(
        self,
        model_class: Union[ModelClass, str],
        model_name: str,
        num_threads: int = 0,
        parallel_execution: bool = True,
    ) -> None:
        """Register a model, constructing it off the event loop if needed.

        Cancelling the awaiting task does not cancel the construction; it
        still completes and registers the model for later callers.
        """
        future = self._submit(self.identifier(model_class, model_name), num_threads, parallel_execution)
        await asyncio.shield(asyncio.wrap_future(future))

    def initialize_model_sync(
        self,
        model_class: Union[ModelClass, str],
        model_name: str,
        num_threads: int = 0,
        parallel_execution: bool = True,
    ) -> None:
        """Blocking variant of ``initialize_model``."""
        self._submit(self.identifier(model_class, model_name), num_threads, parallel_execution).result()

    def _submit(self, ident: ModelIdentifier, num_threads: int, parallel_execution: bool) -> Future:
        # Unknown names fail here, before any work is scheduled.
        catalog.lookup(ident.model_class, ident.model_name)
        num_threads = self._resolve_threads(num_threads)

        with self._lock:
            existing = self._embedders.get(ident)
            if existing is not None:
                info = self._model_info[ident]
                if (info["num_threads"], info["parallel_execution"]) != (num_threads, parallel_execution):
                    logger.info(
                        "Model already initialized; keeping first configuration",
                        model=str(ident),
                        num_threads=info["num_threads"],
                        requested_num_threads=num_threads
                    )
                done: Future = Future()
                done.set_result(existing)
                return done

            future = self._inflight.get(ident)
            if future is not None:
                logger.info("Joining in-flight model construction", model=str(ident))
                return future

            future = self._executor.submit(self._construct, ident, num_threads, parallel_execution)
            self._inflight[ident] = future
            return future

    def _construct(self, ident: ModelIdentifier, num_threads: int, parallel_execution: bool) -> Embedder:
        params = EmbedderParams(
            model_name=ident.model_name,
            model_path=self.model_folder / ident.model_name,
            num_threads=num_threads,
            parallel_execution=parallel_execution,
            provisioner=self.provisioner,
            asset_base_url=self.config.ml_asset_base_url,
            image_processor=self.image_processor,
            execution_providers=list(self.config.ml_execution_providers),
        )
        logger.info(
            "Constructing embedder",
            model=str(ident),
            num_threads=num_threads,
            parallel_execution=parallel_execution
        )
        start = time.time()
        try:
            factory = self.factories.get(ident.model_class)
            if factory is None:
                raise InternalContractViolation(f"no embedder registered for class {ident.model_class.value}")
            with self.tracer.trace_model_construction(ident.model_class.value, ident.model_name):
                embedder = factory(params)
        except Exception as e:
            with self._lock:
                self._inflight.pop(ident, None)
            self._record_initialization(ident, "failure", time.time() - start)
            logger.error("Failed to construct embedder", model=str(ident), error=str(e))
            if isinstance(e, EmbedderError):
                raise
            raise SessionConstructionError(f"unable to construct {ident}: {e}") from e

        duration = time.time() - start
        with self._lock:
            self._embedders[ident] = embedder
            self._model_info[ident] = {
                "model_class": ident.model_class.value,
                "model_name": ident.model_name,
                "dimension": catalog.lookup(ident.model_class, ident.model_name).dimension,
                "num_threads": num_threads,
                "parallel_execution": parallel_execution,
                "loaded_at": time.time(),
            }
            self._inflight.pop(ident, None)
            loaded = len(self._embedders)

        self._record_initialization(ident, "success", duration)
        if self.metrics is not None:
            self.metrics.set_models_loaded(loaded)
        log_performance("embedder.construct", duration * 1000, model=str(ident))
        return embedder

    async def encode(
        self,
        model_class: Union[ModelClass, str],
        model_name: str,
        request: EncodingRequest,
    ) -> List[List[float]]:
        """Encode a batch on a worker thread so inference never blocks the loop."""
        return await asyncio.to_thread(self.encode_sync, model_class, model_name, request)

    def encode_sync(
        self,
        model_class: Union[ModelClass, str],
        model_name: str,
        request: EncodingRequest,
    ) -> List[List[float]]:
        """Route a request to its embedder; ``result[i]`` matches input ``i``."""
        ident = self.identifier(model_class, model_name)
        with self._lock:
            embedder = self._embedders.get(ident)
            pending = ident in self._inflight
        if embedder is None:
            raise ModelNotRegisteredError(
                ident.model_class.value,
                ident.model_name,
                "initialization in progress" if pending else None
            )
        if request.model_class != ident.model_class:
            raise PayloadKindMismatchError(
                f"{request.kind.value} payload cannot be encoded by {ident.model_class.value} model {model_name}"
            )

        start = time.time()
        try:
            with self.tracer.trace_encode(
                ident.model_class.value, ident.model_name, request.kind.value, len(request)
            ):
                vectors = embedder.encode(request)
        except Exception:
            self._record_embedding(ident, request, time.time() - start, "error")
            raise

        duration = time.time() - start
        if len(vectors) != len(request):
            self._record_embedding(ident, request, duration, "error")
            raise InternalContractViolation(
                f"{ident} returned {len(vectors)} vectors for {len(request)} inputs"
            )
        self._record_embedding(ident, request, duration, "success")
        return vectors

    def is_registered(self, model_class: Union[ModelClass, str], model_name: str) -> bool:
        with self._lock:
            return self.identifier(model_class, model_name) in self._embedders

    async def list_models(self) -> List[Dict[str, Any]]:
        """List all registered models."""
        with self._lock:
            return [dict(info) for info in self._model_info.values()]

    async def health_check(self) -> bool:
        """Healthy once at least one model is registered."""
        with self._lock:
            return len(self._embedders) > 0

    def shutdown(self) -> None:
        """Stop the construction pool, close shared clients and drop every embedder."""
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.image_processor.close()
        self.provisioner.close()
        with self._lock:
            self._embedders.clear()
            self._model_info.clear()
            self._inflight.clear()

    async def cleanup(self):
        """Release shared resources; errors are logged, never raised."""
        try:
            self.shutdown()
            logger.info("Embedder manager cleanup completed")
        except Exception as e:
            logger.error("Embedder manager cleanup failed", error=str(e))

    def _record_initialization(self, ident: ModelIdentifier, status: str, duration: float) -> None:
        if self.metrics is not None:
            self.metrics.record_model_initialization(
                ident.model_class.value, ident.model_name, status, duration
            )

    def _record_embedding(self, ident: ModelIdentifier, request: EncodingRequest, duration: float, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_embedding(
                ident.model_class.value,
                ident.model_name,
                request.kind.value,
                duration,
                len(request),
                status
            )
