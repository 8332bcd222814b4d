"""Configuration management for the embedder daemon.

This module centralizes environment-driven configuration. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly‑typed settings with sensible defaults
- One place to discover commonly used environment variables
- A small service‑specific subclass to keep concerns clear

Usage
- Inject the config in the service entrypoint: ``config = EmbedderConfig()``
- Command-line flags override fields via keyword arguments
"""

from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by every entrypoint.

    Field names map to upper‑cased environment variables (``ml_log_level`` is
    read from ``ML_LOG_LEVEL``).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    ml_env: str = Field(default="local")

    # Observability
    ml_tracing_enabled: bool = Field(default=False)
    ml_otel_exporter: str = Field(default="http://localhost:4318/v1/traces")

    # Logging
    ml_log_level: str = Field(default="INFO")
    ml_log_format: str = Field(default="json")


class EmbedderConfig(BaseConfig):
    """Configuration for the embedder service.

    Covers the listener, the on‑disk asset cache, remote asset location and
    inference runtime knobs.
    """

    ml_embedder_host: str = Field(default="0.0.0.0")
    ml_embedder_port: int = Field(default=50051)
    ml_model_folder: Path = Field(default=Path(".cache"))
    ml_model_config: Path = Field(default=Path("/app/runtime/config.yaml"))
    # Enables administrative calls such as ``/initialize``
    ml_allow_admin: bool = Field(default=False)

    # Assets
    ml_asset_base_url: str = Field(
        default="https://clip-as-service.s3.us-east-2.amazonaws.com/models-436c69702d61732d53657276696365/onnx/"
    )
    ml_download_timeout: float = Field(default=300.0)
    ml_download_max_attempts: int = Field(default=3)
    ml_verify_cached_assets: bool = Field(default=False)

    # Runtime
    ml_execution_providers: List[str] = Field(default_factory=lambda: ["CPUExecutionProvider"])
    ml_image_fetch_timeout: float = Field(default=30.0)
    ml_construction_workers: int = Field(default=2)

