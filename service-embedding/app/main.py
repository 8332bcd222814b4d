"""Embedder service main application."""

import argparse
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
import structlog

from .api.routes import router as api_router
from .assets.catalog import available_models
from .encoders.embedder_manager import EmbedderManager
from .runtime.metrics import get_metrics_collector
from .runtime.model_config import fetch_initial_models
from libs.common.config import EmbedderConfig
from libs.common.logging import configure_logging
from libs.common.tracing import configure_tracing, instrument_app

logger = structlog.get_logger("embedder_service")

SERVICE_NAME = "embedder-service"


def prepare_model_folder(model_folder: Path) -> bool:
    """Create the asset cache folder; return whether it is writable.

    A read-only folder still serves models that are already cached.
    """
    model_folder = Path(model_folder)
    model_folder.mkdir(parents=True, exist_ok=True)
    writable = os.access(model_folder, os.W_OK)
    if not writable:
        logger.warning(
            "Model folder is readonly, new models cannot be downloaded",
            model_folder=str(model_folder)
        )
    return writable


async def preload_models(manager: EmbedderManager, config: EmbedderConfig) -> None:
    """Initialize the startup models; any failure aborts startup."""
    for settings in fetch_initial_models(config.ml_model_config):
        logger.info(
            "Initializing model before startup",
            model=settings.model_name,
            model_class=settings.model_class.value
        )
        try:
            await manager.initialize_model(
                settings.model_class,
                settings.model_name,
                settings.num_threads,
                settings.parallel_execution
            )
        except Exception as e:
            logger.error(
                "Unable to initialize model at startup",
                model=settings.model_name,
                model_class=settings.model_class.value,
                error=str(e)
            )
            raise
        logger.info(
            "Successfully initialized model at startup",
            model=settings.model_name,
            model_class=settings.model_class.value
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    config: EmbedderConfig = app.state.config
    configure_logging(SERVICE_NAME, config.ml_log_level, config.ml_log_format)
    app.state.startup_time = time.time()

    if config.ml_tracing_enabled:
        tracer = configure_tracing(SERVICE_NAME, config.ml_otel_exporter)
        if tracer:
            logger.info("OpenTelemetry tracing enabled", exporter=config.ml_otel_exporter)
        else:
            logger.warning("Tracing initialization failed")
    else:
        logger.info("OpenTelemetry tracing disabled via configuration")

    logger.info("Starting embedder service")
    prepare_model_folder(config.ml_model_folder)

    app.state.metrics_collector = get_metrics_collector(SERVICE_NAME)
    if getattr(app.state, "embedder_manager", None) is None:
        app.state.embedder_manager = EmbedderManager(config, metrics=app.state.metrics_collector)

    try:
        if app.state.preload_models:
            await preload_models(app.state.embedder_manager, config)
    except Exception:
        await app.state.embedder_manager.cleanup()
        raise

    logger.info("Embedder service started successfully", allow_admin=config.ml_allow_admin)

    yield

    # Shutdown
    logger.info("Shutting down embedder service")
    await app.state.embedder_manager.cleanup()
    logger.info("Embedder service shutdown complete")


def create_app(
    config: Optional[EmbedderConfig] = None,
    embedder_manager: Optional[EmbedderManager] = None,
    preload: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    ``embedder_manager`` and ``preload`` exist so tests and embedding hosts can
    supply their own manager or skip startup model loading.
    """
    app = FastAPI(
        title="Embedder Service",
        description="Text and image embeddings from locally served models",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.config = config or EmbedderConfig()
    app.state.embedder_manager = embedder_manager
    app.state.preload_models = preload

    app.include_router(api_router, prefix="/api/v1")
    if app.state.config.ml_tracing_enabled:
        instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Collect metrics for HTTP requests."""
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        response.headers["X-Process-Time"] = str(duration)
        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is not None:
            collector.record_http_request(
                method=request.method,
                endpoint=request.url.path,
                status=response.status_code,
                duration=duration
            )
        return response

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        manager = getattr(request.app.state, "embedder_manager", None)
        if manager is not None and await manager.health_check():
            return {"status": "healthy", "service": SERVICE_NAME}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "service": SERVICE_NAME}
        )

    @app.get("/metrics")
    async def metrics(request: Request):
        """Prometheus metrics endpoint."""
        collector = getattr(request.app.state, "metrics_collector", None)
        if collector is not None:
            return Response(content=collector.get_metrics(), media_type="text/plain")
        return Response(content="# No metrics available\n", media_type="text/plain")

    @app.get("/live")
    async def liveness(request: Request):
        """Liveness probe. Returns quickly if process is responsive."""
        return {
            "status": "alive",
            "service": SERVICE_NAME,
            "uptime_seconds": time.time() - getattr(request.app.state, "startup_time", time.time())
        }

    @app.get("/ready")
    async def readiness(request: Request):
        """Readiness probe. Ready once at least one model is registered."""
        manager = getattr(request.app.state, "embedder_manager", None)
        if manager is None or not await manager.health_check():
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "service": SERVICE_NAME}
            )
        return {
            "status": "ready",
            "service": SERVICE_NAME,
            "models_loaded": len(await manager.list_models())
        }

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": SERVICE_NAME,
            "version": "0.1.0",
            "status": "running",
            "endpoints": {
                "initialize": "/api/v1/initialize",
                "encode": "/api/v1/encode",
                "models": "/api/v1/models",
                "metrics": "/metrics"
            },
            "probes": {
                "health": "/health",
                "live": "/live",
                "ready": "/ready"
            },
            "catalog": available_models()
        }

    return app


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve text and image embeddings")
    parser.add_argument("--host", default=None, help="Address to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument(
        "--config", "-c", type=Path, default=None,
        help="YAML file listing the models to load on startup"
    )
    parser.add_argument(
        "--model-folder", "-f", type=Path, default=None,
        help="Folder in which embedding models are downloaded and cached"
    )
    parser.add_argument(
        "--allow-admin", action="store_true", default=None,
        help="Accept administrative calls such as /initialize"
    )
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EmbedderConfig:
    """Environment settings overridden by any flags given on the command line."""
    overrides = {
        "ml_embedder_host": args.host,
        "ml_embedder_port": args.port,
        "ml_model_config": args.config,
        "ml_model_folder": args.model_folder,
        "ml_allow_admin": args.allow_admin,
        "ml_log_level": args.log_level,
    }
    return EmbedderConfig(**{key: value for key, value in overrides.items() if value is not None})


def main(argv=None) -> None:
    config = build_config(parse_args(argv))
    uvicorn.run(
        create_app(config),
        host=config.ml_embedder_host,
        port=config.ml_embedder_port,
        log_level=config.ml_log_level.lower()
    )


if __name__ == "__main__":
    main()
