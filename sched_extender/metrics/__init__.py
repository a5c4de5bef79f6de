"""
Metrics: Prometheus queries for scoring and the extender's own exports
"""

from .prometheus_client import PrometheusClient
from .extender_metrics import ExtenderMetrics

__all__ = ['PrometheusClient', 'ExtenderMetrics']
