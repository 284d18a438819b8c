from .metrics_collector import DEFAULT_THRESHOLDS, MetricsCollector

__all__ = ["DEFAULT_THRESHOLDS", "MetricsCollector"]
