"""Metrics collection for the embedder daemon.

Provides a thin convenience wrapper around ``prometheus_client`` so the
service records HTTP, embedding, model lifecycle and asset metrics with
consistent label sets.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- A single registry is kept per collector (can be injected for tests)
"""

from typing import Optional

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry`` (e.g. for testing)
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.request_count = Counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'endpoint', 'status'],
            registry=self.registry
        )

        self.request_duration = Histogram(
            'http_request_duration_seconds',
            'HTTP request duration',
            ['method', 'endpoint'],
            registry=self.registry
        )

        self.embedding_requests = Counter(
            'ml_embedding_requests_total',
            'Total embedding requests partitioned by outcome',
            ['model_class', 'model_name', 'payload_kind', 'status'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'ml_embedding_duration_seconds',
            'Embedding batch duration',
            ['model_class', 'model_name', 'payload_kind'],
            registry=self.registry
        )

        self.embedding_items = Counter(
            'ml_embedding_items_total',
            'Total inputs encoded',
            ['model_class', 'model_name'],
            registry=self.registry
        )

        self.model_initializations = Counter(
            'ml_model_initializations_total',
            'Model construction attempts partitioned by outcome',
            ['model_class', 'model_name', 'status'],
            registry=self.registry
        )

        self.model_initialization_duration = Histogram(
            'ml_model_initialization_duration_seconds',
            'Model construction duration',
            ['model_class', 'model_name'],
            buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800),
            registry=self.registry
        )

        self.models_loaded = Gauge(
            'ml_models_loaded',
            'Number of registered embedders',
            registry=self.registry
        )

        self.asset_downloads = Counter(
            'ml_asset_downloads_total',
            'Model asset downloads partitioned by outcome',
            ['status'],
            registry=self.registry
        )

    def record_http_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration: float
    ) -> None:
        """Record HTTP request metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_embedding(
        self,
        model_class: str,
        model_name: str,
        payload_kind: str,
        duration: float,
        count: int,
        status: str = "success"
    ) -> None:
        """Record one encode call."""
        self.embedding_requests.labels(
            model_class=model_class,
            model_name=model_name,
            payload_kind=payload_kind,
            status=status
        ).inc()
        self.embedding_duration.labels(
            model_class=model_class,
            model_name=model_name,
            payload_kind=payload_kind
        ).observe(duration)
        if status == "success":
            self.embedding_items.labels(model_class=model_class, model_name=model_name).inc(count)

    def record_model_initialization(
        self,
        model_class: str,
        model_name: str,
        status: str,
        duration: Optional[float] = None
    ) -> None:
        """Record a model construction attempt."""
        self.model_initializations.labels(
            model_class=model_class,
            model_name=model_name,
            status=status
        ).inc()
        if duration is not None:
            self.model_initialization_duration.labels(
                model_class=model_class,
                model_name=model_name
            ).observe(duration)

    def set_models_loaded(self, count: int) -> None:
        """Set the number of registered embedders."""
        self.models_loaded.set(count)

    def record_asset_download(self, status: str) -> None:
        """Record an asset download outcome (``success``, ``hash_mismatch``, ``error``)."""
        self.asset_downloads.labels(status=status).inc()

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


# Global metrics collector instance
_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get or create the process‑wide metrics collector."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
    return _metrics_collector
