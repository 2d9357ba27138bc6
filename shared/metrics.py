"""
Shared metrics configuration for the Segmentator services.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        # Business metrics
        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        if self.service_name == "segments":
            self._setup_segments_metrics()

    def _setup_segments_metrics(self):
        """Set up segments-specific metrics."""
        self._metrics["segment_assignments_total"] = Counter(
            "segment_assignments_total",
            "Relation rows opened or closed",
            ["operation"],
            registry=self.registry
        )

        self._metrics["auto_assign_sample_size"] = Histogram(
            "auto_assign_sample_size",
            "Users drawn per auto-assignment call",
            buckets=(0, 10, 100, 1000, 10000, 100000, float("inf")),
            registry=self.registry
        )

        self._metrics["reports_exported_total"] = Counter(
            "reports_exported_total",
            "History reports written",
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name not in self._metrics:
            return
        metric = self._metrics[metric_name]
        if labels:
            metric = metric.labels(**labels)
        metric.inc(amount)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name not in self._metrics:
            return
        metric = self._metrics[metric_name]
        if labels:
            metric = metric.labels(**labels)
        metric.observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
