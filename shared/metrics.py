"""
Prometheus metrics for the access gating service.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional, Tuple, List


# name -> (help, labels)
_COUNTERS: Dict[str, Tuple[str, List[str]]] = {
    "http_requests_total": ("Total HTTP requests", ["method", "endpoint", "status_code"]),
    "health_check_total": ("Total health check requests", ["status"]),
    "errors_total": ("Total errors", ["error_type", "service"]),
    "access_checks_total": ("Access checks by resulting state", ["decision"]),
    "decision_cache_total": ("Decision cache lookups and rejected writes", ["outcome"]),
    "evaluation_errors_total": ("Checks or rules that failed closed", ["kind"]),
    "cache_invalidations_total": ("Decision cache invalidations", ["scope"]),
}

# Access checks are mostly cache hits, so buckets start well below a millisecond
_ACCESS_CHECK_BUCKETS = (0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5)

_HISTOGRAMS: Dict[str, Tuple[str, List[str], Optional[tuple]]] = {
    "http_request_duration_seconds": ("HTTP request duration in seconds", ["method", "endpoint"], None),
    "access_check_duration_seconds": (
        "Access check duration in seconds", ["mode"], _ACCESS_CHECK_BUCKETS
    ),
}


class MetricsCollector:
    """Per-service metrics on a private registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": self.service_name, "version": "1.0.0"})
        self._metrics["service_info"] = info

        for name, (documentation, labels) in _COUNTERS.items():
            self._metrics[name] = Counter(name, documentation, labels, registry=self.registry)

        for name, (documentation, labels, buckets) in _HISTOGRAMS.items():
            kwargs = {"buckets": buckets} if buckets else {}
            self._metrics[name] = Histogram(name, documentation, labels, registry=self.registry, **kwargs)

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
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric; unknown names are ignored."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric; unknown names are ignored."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
