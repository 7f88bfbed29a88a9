"""
Configuration package for the chat relay.

This package provides centralized, type-safe configuration management
using Pydantic Settings.
"""

from .settings import (
    BrokerSettings,
    CircuitBreakerSettings,
    DeadLetterSettings,
    RateLimitSettings,
    RetrySettings,
    Settings,
    StreamSettings,
    get_settings,
    reload_settings,
)

__all__ = [
    "BrokerSettings",
    "CircuitBreakerSettings",
    "DeadLetterSettings",
    "RateLimitSettings",
    "RetrySettings",
    "Settings",
    "StreamSettings",
    "get_settings",
    "reload_settings",
]
