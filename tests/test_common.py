"""Tests for common utilities."""

import logging
from pathlib import Path

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from libs.common.config import BaseConfig, EmbedderConfig
from libs.common.logging import configure_logging, log_performance
from libs.common.metrics import MetricsCollector
from libs.common.tracing import EmbedderTracer


def test_config_loading():
    """Test configuration loading."""
    config = BaseConfig()
    assert config.ml_env == "local"
    assert config.ml_log_level == "INFO"
    assert config.ml_tracing_enabled is False


def test_embedder_config_defaults():
    """Test embedder configuration."""
    config = EmbedderConfig()
    assert config.ml_embedder_port == 50051
    assert config.ml_model_folder == Path(".cache")
    assert config.ml_allow_admin is False
    assert config.ml_execution_providers == ["CPUExecutionProvider"]
    assert config.ml_asset_base_url.endswith("/onnx/")


def test_embedder_config_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("ML_ALLOW_ADMIN", "true")
    monkeypatch.setenv("ML_MODEL_FOLDER", str(tmp_path))
    monkeypatch.setenv("ML_DOWNLOAD_MAX_ATTEMPTS", "5")

    config = EmbedderConfig()

    assert config.ml_allow_admin is True
    assert config.ml_model_folder == tmp_path
    assert config.ml_download_max_attempts == 5


def test_embedder_config_reads_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("# comment\nML_ALLOW_ADMIN=true\n\nML_ASSET_BASE_URL=https://mirror.example.com/onnx/\n")

    config = EmbedderConfig(_env_file=env_file)

    assert config.ml_allow_admin is True
    assert config.ml_asset_base_url == "https://mirror.example.com/onnx/"


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")
    configure_logging("test-service", "debug", "console")
    log_performance("unit.test", 1.5, model="CLIP/CLIP_RN50_OPENAI")


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service")
    assert collector.service_name == "test-service"

    collector.record_http_request("GET", "/test", 200, 0.1)
    collector.record_embedding("CLIP", "CLIP_RN50_OPENAI", "text", 0.05, 3)
    collector.record_embedding("CLIP", "CLIP_RN50_OPENAI", "image_uri", 0.05, 2, status="error")
    collector.record_model_initialization("CLIP", "CLIP_RN50_OPENAI", "success", 12.0)
    collector.set_models_loaded(1)
    collector.record_asset_download("success")

    metrics = collector.get_metrics()
    assert isinstance(metrics, str)
    assert "http_requests_total" in metrics
    assert collector.registry.get_sample_value(
        "ml_embedding_items_total", {"model_class": "CLIP", "model_name": "CLIP_RN50_OPENAI"}
    ) == 3.0
    assert collector.registry.get_sample_value("ml_models_loaded") == 1.0


def test_tracer_spans_do_not_swallow_errors():
    tracer = EmbedderTracer("test-service")

    with tracer.trace_model_construction("CLIP", "CLIP_RN50_OPENAI"):
        pass

    with pytest.raises(ValueError, match="boom"):
        with tracer.trace_encode("CLIP", "CLIP_RN50_OPENAI", "text", 2):
            raise ValueError("boom")


def test_logging_quiets_http_client_loggers():
    configure_logging("test-service", "DEBUG", "json")

    assert logging.getLogger("httpx").level == logging.WARNING


def test_traced_block_is_the_parent_of_nested_spans():
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracer = EmbedderTracer("test-service")
    tracer.tracer = provider.get_tracer("test")

    with tracer.trace_model_construction("CLIP", "CLIP_RN50_OPENAI") as span:
        assert trace.get_current_span() is span
        with tracer.tracer.start_as_current_span("GET textual.onnx"):
            pass

    assert trace.get_current_span() is not span
    spans = {finished.name: finished for finished in exporter.get_finished_spans()}
    construct = spans["embedder.construct"]
    assert spans["GET textual.onnx"].parent.span_id == construct.context.span_id
    assert construct.status.status_code == StatusCode.OK
