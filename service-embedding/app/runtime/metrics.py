"""Metrics collection facade for the embedder service.

Re-exports the shared metrics utilities so the rest of the service can import
from a stable local path (``app.runtime.metrics``).

Key APIs:
- ``get_metrics_collector(service_name)``: return the process-wide collector.
- ``MetricsCollector``: record request, embedding, model and asset metrics.
"""

from libs.common.metrics import MetricsCollector, get_metrics_collector

__all__ = ["MetricsCollector", "get_metrics_collector"]
