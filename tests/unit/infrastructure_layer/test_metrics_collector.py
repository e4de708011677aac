"""
Unit Tests for MetricsCollector
"""

import pytest

from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector


@pytest.mark.unit
class TestMetricsCollector:
    """Test suite for the Prometheus collector."""

    def test_registries_are_isolated(self, settings):
        """Test two collectors in one process do not collide."""
        first = MetricsCollector(settings)
        second = MetricsCollector(settings)

        first.record_cache_lookup(hit=True)

        assert first.registry.get_sample_value("almacen_cache_lookups_total", {"result": "hit"}) == 1
        assert second.registry.get_sample_value("almacen_cache_lookups_total", {"result": "hit"}) is None

    def test_response_cache_result_is_lowercased(self, metrics_collector):
        metrics_collector.record_response_cache("HIT")
        metrics_collector.record_response_cache("MISS")
        metrics_collector.record_response_cache("MISS")

        registry = metrics_collector.registry
        assert registry.get_sample_value("almacen_response_cache_total", {"result": "hit"}) == 1
        assert registry.get_sample_value("almacen_response_cache_total", {"result": "miss"}) == 2

    def test_query_errors(self, metrics_collector):
        """Test failed queries are observed and counted."""
        metrics_collector.record_query(0.02, cache_hit=False)
        metrics_collector.record_query(0.5, cache_hit=False, error=True)

        registry = metrics_collector.registry
        assert registry.get_sample_value("almacen_db_query_errors_total") == 1
        assert registry.get_sample_value(
            "almacen_db_query_duration_seconds_count", {"cache_hit": "false"}
        ) == 2

    def test_pool_gauges(self, metrics_collector):
        """Test active connections are derived from total and idle."""
        metrics_collector.set_pool_connections(total=10, idle=4, waiting=2)

        registry = metrics_collector.registry
        assert registry.get_sample_value("almacen_db_pool_connections", {"state": "active"}) == 6
        assert registry.get_sample_value("almacen_db_pool_connections", {"state": "waiting"}) == 2

    def test_exposition(self, metrics_collector):
        """Test the text exposition includes app info and recorded series."""
        metrics_collector.record_http_request("GET", "/api/materials", 200, 0.03)

        body = metrics_collector.get_prometheus_metrics().decode()

        assert 'almacen_app_info{app_name="Almacen Backend"' in body
        assert "almacen_http_request_duration_seconds_bucket" in body
        assert metrics_collector.get_content_type().startswith("text/plain")
