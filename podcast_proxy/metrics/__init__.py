"""Metrics for the feed proxy."""

from .prometheus import MetricsRegistry, metrics, start_metrics_server

__all__ = ["MetricsRegistry", "metrics", "start_metrics_server"]
