"""
Monitoring: health reporting, request metrics/alerting and Prometheus export.
"""

from almacen.infrastructure.monitoring.health_checker import (
    ComponentHealth,
    HealthService,
    worst_status,
)
from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector
from almacen.infrastructure.monitoring.metrics_service import (
    Alert,
    AlertRule,
    EndpointMetrics,
    MetricsService,
    RequestMetrics,
    default_alert_rules,
)

__all__ = [
    "Alert",
    "AlertRule",
    "ComponentHealth",
    "EndpointMetrics",
    "HealthService",
    "MetricsCollector",
    "MetricsService",
    "RequestMetrics",
    "default_alert_rules",
    "worst_status",
]
