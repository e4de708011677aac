"""
Request Metrics Service

In-process request analytics:
- Ring buffer of recent requests
- Per-endpoint aggregates (count, min/avg/max latency, error rate)
- Alert rules evaluated after every recorded request
- Periodic cleanup of stale samples and idle endpoints

STAGE-METRICS: Request metrics
------------------------------
METRICS.1: Recording
METRICS.2: Alert evaluation
METRICS.3: Cleanup
METRICS.4: Export

Author: Almacen Platform Team
Date: 2025-12-11
"""

import asyncio
import contextlib
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import orjson

from almacen.core.config.constants import AlertSeverity
from almacen.core.config.settings import Settings
from almacen.core.logging.logger import get_logger

if TYPE_CHECKING:
    from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

RECENT_ALERTS_LIMIT = 100
SUMMARY_LIMIT = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RequestMetrics:
    method: str
    url: str
    status_code: int
    response_time: float
    timestamp: datetime = field(default_factory=_utcnow)
    user_agent: str | None = None
    ip: str | None = None
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "statusCode": self.status_code,
            "responseTime": round(self.response_time, 3),
            "timestamp": self.timestamp.isoformat(),
            "userAgent": self.user_agent,
            "ip": self.ip,
            "error": self.error,
        }


@dataclass
class EndpointMetrics:
    endpoint: str
    method: str
    count: int
    total_response_time: float
    min_response_time: float
    max_response_time: float
    error_count: int
    last_accessed: datetime

    @property
    def average_response_time(self) -> float:
        return self.total_response_time / self.count if self.count else 0.0

    @property
    def error_rate(self) -> float:
        return self.error_count / self.count * 100 if self.count else 0.0

    def add(self, response_time: float, is_error: bool, when: datetime) -> None:
        self.count += 1
        self.total_response_time += response_time
        self.min_response_time = min(self.min_response_time, response_time)
        self.max_response_time = max(self.max_response_time, response_time)
        if is_error:
            self.error_count += 1
        self.last_accessed = when

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "method": self.method,
            "count": self.count,
            "averageResponseTime": round(self.average_response_time, 3),
            "minResponseTime": round(self.min_response_time, 3),
            "maxResponseTime": round(self.max_response_time, 3),
            "totalResponseTime": round(self.total_response_time, 3),
            "errorCount": self.error_count,
            "errorRate": round(self.error_rate, 2),
            "lastAccessed": self.last_accessed.isoformat(),
        }


@dataclass
class AlertRule:
    name: str
    condition: Callable[[EndpointMetrics], bool]
    threshold: float
    message: str
    severity: AlertSeverity
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "threshold": self.threshold,
            "message": self.message,
            "severity": self.severity.value,
            "enabled": self.enabled,
        }


@dataclass
class Alert:
    rule: str
    severity: AlertSeverity
    message: str
    method: str
    endpoint: str
    average_response_time: float
    error_rate: float
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "message": self.message,
            "method": self.method,
            "endpoint": self.endpoint,
            "averageResponseTime": round(self.average_response_time, 3),
            "errorRate": round(self.error_rate, 2),
            "timestamp": self.timestamp.isoformat(),
        }


def default_alert_rules() -> list[AlertRule]:
    return [
        AlertRule(
            name="High Response Time",
            condition=lambda m: m.average_response_time > 2000,
            threshold=2000,
            message="Average response time is too high",
            severity=AlertSeverity.WARNING,
        ),
        AlertRule(
            name="High Error Rate",
            condition=lambda m: m.error_rate > 10,
            threshold=10,
            message="Error rate is too high",
            severity=AlertSeverity.CRITICAL,
        ),
        AlertRule(
            name="Slow Endpoint Alert",
            condition=lambda m: m.max_response_time > 5000,
            threshold=5000,
            message="Maximum response time exceeded threshold",
            severity=AlertSeverity.WARNING,
        ),
        AlertRule(
            name="Frequent Errors Alert",
            condition=lambda m: m.error_count > 50,
            threshold=50,
            message="High number of errors detected",
            severity=AlertSeverity.ERROR,
        ),
    ]


_SEVERITY_LOG_LEVEL = {
    AlertSeverity.CRITICAL: "error",
    AlertSeverity.ERROR: "error",
    AlertSeverity.WARNING: "warning",
    AlertSeverity.INFO: "info",
}


class MetricsService:
    """
    Request metrics and alerting.

    Alerting has no deduplication: every enabled rule that matches any
    endpoint fires on every recorded request.

    Usage:
        service = MetricsService(settings)
        service.record_request(RequestMetrics("GET", "/api/materials", 200, 12.4))
        summary = service.get_performance_summary()
        service.start_cleanup_task()
        ...
        await service.stop()
    """

    def __init__(
        self,
        settings: Settings,
        metrics: "MetricsCollector | None" = None,
        now: Callable[[], datetime] = _utcnow,
    ):
        cfg = settings.monitoring
        self._collector = metrics
        self._now = now
        self._requests: deque[RequestMetrics] = deque(maxlen=cfg.REQUEST_METRICS_HISTORY)
        self._endpoints: dict[tuple[str, str], EndpointMetrics] = {}
        self._rules: list[AlertRule] = default_alert_rules()
        self._recent_alerts: deque[Alert] = deque(maxlen=RECENT_ALERTS_LIMIT)
        self._cleanup_interval = cfg.METRICS_CLEANUP_INTERVAL
        self._retention = timedelta(seconds=cfg.METRICS_RETENTION_SECONDS)
        self._endpoint_retention = timedelta(seconds=cfg.ENDPOINT_RETENTION_SECONDS)
        self._cleanup_task: asyncio.Task | None = None

    # =========================================================================
    # Recording
    # =========================================================================

    def record_request(self, request: RequestMetrics) -> None:
        """
        STAGE-METRICS.1: Append to the ring buffer, update the endpoint
        aggregate, then evaluate alert rules.
        """
        self._requests.append(request)

        key = (request.method, request.url)
        endpoint = self._endpoints.get(key)
        if endpoint is None:
            self._endpoints[key] = EndpointMetrics(
                endpoint=request.url,
                method=request.method,
                count=1,
                total_response_time=request.response_time,
                min_response_time=request.response_time,
                max_response_time=request.response_time,
                error_count=1 if request.is_error else 0,
                last_accessed=request.timestamp,
            )
        else:
            endpoint.add(request.response_time, request.is_error, request.timestamp)

        self.check_alerts()

    # =========================================================================
    # Alerting
    # =========================================================================

    def check_alerts(self) -> list[Alert]:
        """STAGE-METRICS.2: Evaluate every enabled rule over every endpoint."""
        fired = []
        enabled = [rule for rule in self._rules if rule.enabled]
        for endpoint in list(self._endpoints.values()):
            for rule in enabled:
                if rule.condition(endpoint):
                    fired.append(self._trigger(rule, endpoint))
        return fired

    def _trigger(self, rule: AlertRule, endpoint: EndpointMetrics) -> Alert:
        alert = Alert(
            rule=rule.name,
            severity=rule.severity,
            message=rule.message,
            method=endpoint.method,
            endpoint=endpoint.endpoint,
            average_response_time=endpoint.average_response_time,
            error_rate=endpoint.error_rate,
            timestamp=self._now(),
        )
        self._recent_alerts.append(alert)

        log_func = getattr(logger, _SEVERITY_LOG_LEVEL[rule.severity])
        log_func(
            f"[{rule.severity.value.upper()}] {rule.message}",
            stage="METRICS.2",
            rule=rule.name,
            method=endpoint.method,
            endpoint=endpoint.endpoint,
            average_response_time_ms=round(endpoint.average_response_time, 2),
            error_rate=round(endpoint.error_rate, 2),
        )
        if self._collector:
            self._collector.record_alert(rule.name, rule.severity.value)
        return alert

    def add_alert_rule(self, rule: AlertRule) -> None:
        self._rules.append(rule)

    def get_alert_rules(self) -> list[AlertRule]:
        return list(self._rules)

    def toggle_alert_rule(self, name: str, enabled: bool) -> bool:
        """Enable or disable a rule by name; False when no rule has that name."""
        for rule in self._rules:
            if rule.name == name:
                rule.enabled = enabled
                logger.info("Alert rule toggled", stage="METRICS.2", rule=name, enabled=enabled)
                return True
        return False

    def get_recent_alerts(self, limit: int | None = None) -> list[Alert]:
        alerts = list(reversed(self._recent_alerts))
        return alerts[:limit] if limit else alerts

    # =========================================================================
    # Queries
    # =========================================================================

    def get_request_metrics(
        self,
        method: str | None = None,
        url: str | None = None,
        status_code: int | None = None,
        errors_only: bool = False,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[RequestMetrics]:
        """Filtered request samples, most recent first."""
        result = [
            m for m in self._requests
            if (method is None or m.method == method)
            and (url is None or url in m.url)
            and (status_code is None or m.status_code == status_code)
            and (not errors_only or m.is_error)
            and (start is None or m.timestamp >= start)
            and (end is None or m.timestamp <= end)
        ]
        result.sort(key=lambda m: m.timestamp, reverse=True)
        return result[:limit] if limit else result

    def get_endpoint_metrics(self, endpoint: str, method: str | None = None) -> EndpointMetrics | None:
        for (key_method, key_endpoint), metrics in self._endpoints.items():
            if key_endpoint == endpoint and (method is None or key_method == method):
                return metrics
        return None

    def get_all_endpoint_metrics(self) -> list[EndpointMetrics]:
        return list(self._endpoints.values())

    def get_performance_summary(self) -> dict[str, Any]:
        endpoints = list(self._endpoints.values())
        slowest = sorted(endpoints, key=lambda m: m.average_response_time, reverse=True)
        erroring = sorted(
            (m for m in endpoints if m.error_count > 0), key=lambda m: m.error_rate, reverse=True
        )
        frequent = sorted(endpoints, key=lambda m: m.count, reverse=True)
        return {
            "totalEndpoints": len(endpoints),
            "slowestEndpoints": [m.to_dict() for m in slowest[:SUMMARY_LIMIT]],
            "highestErrorRate": [m.to_dict() for m in erroring[:SUMMARY_LIMIT]],
            "mostFrequent": [m.to_dict() for m in frequent[:SUMMARY_LIMIT]],
        }

    def get_stats(self) -> dict[str, Any]:
        total = len(self._requests)
        errors = sum(1 for m in self._requests if m.is_error)
        hour_ago = self._now() - timedelta(hours=1)
        recent = sum(1 for m in self._requests if m.timestamp >= hour_ago)
        top = sorted(self._endpoints.values(), key=lambda m: m.count, reverse=True)[:SUMMARY_LIMIT]
        return {
            "totalRequests": total,
            "errorRate": round(errors / total * 100, 2) if total else 0.0,
            "averageResponseTime": (
                round(sum(m.response_time for m in self._requests) / total, 3) if total else 0.0
            ),
            "requestsPerMinute": round(recent / 60, 3),
            "topEndpoints": [
                {"endpoint": m.endpoint, "method": m.method, "count": m.count} for m in top
            ],
            "alertRules": len(self._rules),
        }

    # =========================================================================
    # Maintenance
    # =========================================================================

    def clear_metrics(self) -> None:
        self._requests.clear()
        self._endpoints.clear()
        logger.info("All request metrics cleared", stage="METRICS.3")

    def cleanup(self, now: datetime | None = None) -> tuple[int, int]:
        """
        STAGE-METRICS.3: Drop samples older than the retention window and
        endpoints idle longer than the endpoint retention window.

        Returns:
            (requests removed, endpoints removed)
        """
        now = now or self._now()
        sample_cutoff = now - self._retention
        endpoint_cutoff = now - self._endpoint_retention

        kept = [m for m in self._requests if m.timestamp >= sample_cutoff]
        removed_requests = len(self._requests) - len(kept)
        self._requests = deque(kept, maxlen=self._requests.maxlen)

        stale = [k for k, m in self._endpoints.items() if m.last_accessed < endpoint_cutoff]
        for key in stale:
            del self._endpoints[key]

        if removed_requests or stale:
            logger.debug(
                "Metrics cleanup",
                stage="METRICS.3",
                requests_removed=removed_requests,
                endpoints_removed=len(stale),
            )
        return removed_requests, len(stale)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            self.cleanup()

    def start_cleanup_task(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info(
                "Metrics cleanup task started", stage="METRICS.3", interval_s=self._cleanup_interval
            )

    async def stop(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    # =========================================================================
    # Export
    # =========================================================================

    def export_metrics(self) -> bytes:
        """STAGE-METRICS.4: JSON document for external monitoring systems."""
        return orjson.dumps(
            {
                "timestamp": self._now().isoformat(),
                "stats": self.get_stats(),
                "performance": self.get_performance_summary(),
                "alertRules": [
                    {"name": r.name, "enabled": r.enabled, "severity": r.severity.value}
                    for r in self._rules
                ],
            },
            option=orjson.OPT_INDENT_2,
        )
