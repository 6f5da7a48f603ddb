"""
Analytics Package for job_analytics

This package contains:
- config.py: Central configuration loader with validation
- store.py: DuckDB persistent store
- base.py / website.py / referrals.py: Platform services
- registry.py: Platform service registry and sync workflow
- aggregator.py: Raw metric rollups (daily / weekly / monthly)
"""

from analytics.aggregator import AggregationResult, DataAggregator
from analytics.base import BasePlatformService, RateLimiter, ServiceResponse, ValidationError
from analytics.config import Config, ConfigurationError, get_config
from analytics.registry import PlatformServiceRegistry, build_default_registry
from analytics.store import PersistentStore

__all__ = [
    "AggregationResult",
    "BasePlatformService",
    "Config",
    "ConfigurationError",
    "DataAggregator",
    "PersistentStore",
    "PlatformServiceRegistry",
    "RateLimiter",
    "ServiceResponse",
    "ValidationError",
    "build_default_registry",
    "get_config",
]
