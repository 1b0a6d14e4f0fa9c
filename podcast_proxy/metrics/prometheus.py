"""Prometheus metrics collection module."""

from typing import Any, List

from prometheus_client import Counter, Gauge, Histogram


class MetricsRegistry:
    """Registry for Prometheus metrics.

    Registering a name twice returns the metric created first, so several
    component instances in one process share their counters.
    """

    def __init__(self):
        """Initialize metrics registry."""
        self._metrics = {}

    def register_counter(self, name: str, description: str, labels: List[str] = None) -> Counter:
        """Register a new counter metric."""
        if name in self._metrics:
            return self._metrics[name]

        counter = Counter(name, description, labels or [])
        self._metrics[name] = counter
        return counter

    def register_gauge(self, name: str, description: str, labels: List[str] = None) -> Gauge:
        """Register a new gauge metric."""
        if name in self._metrics:
            return self._metrics[name]

        gauge = Gauge(name, description, labels or [])
        self._metrics[name] = gauge
        return gauge

    def register_histogram(
        self, name: str, description: str, labels: List[str] = None
    ) -> Histogram:
        """Register a new histogram metric."""
        if name in self._metrics:
            return self._metrics[name]

        histogram = Histogram(name, description, labels or [])
        self._metrics[name] = histogram
        return histogram

    def get_metric(self, name: str) -> Any:
        """Get a registered metric by name."""
        return self._metrics.get(name)


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090):
    """Start a Prometheus metrics server on the specified port.

    Args:
        port: Port number for metrics server
    """
    from prometheus_client import start_http_server

    start_http_server(port)
