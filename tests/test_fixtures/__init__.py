"""
Test Fixtures Package

Shared test utilities and helpers for consistent testing across all modules.
"""

from .cache_factory import CacheTestFactory, FakeClock
from .database_factory import DatabaseTestFactory, RecordingSleep
from .request_factory import RequestMetricsFactory
from .settings_factory import SettingsFactory

__all__ = [
    "CacheTestFactory",
    "DatabaseTestFactory",
    "FakeClock",
    "RecordingSleep",
    "RequestMetricsFactory",
    "SettingsFactory",
]
