"""Common utilities shared across the embedder daemon.

Includes:
- ``config``: Pydantic-based configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``tracing``: OpenTelemetry setup and span helpers.

Import pattern:
- from libs.common.config import EmbedderConfig
- from libs.common.logging import configure_logging
"""
