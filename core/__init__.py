"""
Core Module Package.

Infrastructure shared by every subsystem.

Components:
- clock: UTC time abstraction
- config: Environment-driven application configuration
- exceptions: Root exception hierarchy
- http_client: aiohttp client base for outbound calls
- logging_setup: Process-wide logging configuration
"""

from .clock import ClockProtocol, SystemClock, MockClock, from_unix, to_iso8601
from .config import AppConfig, load_chain_endpoints
from .exceptions import (
    Severity,
    RelayMonitorError,
    ConfigurationError,
    InvalidConfigError,
    UpstreamError,
)
from .http_client import HttpClientBase
from .logging_setup import setup_logging


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "from_unix",
    "to_iso8601",
    "AppConfig",
    "load_chain_endpoints",
    "Severity",
    "RelayMonitorError",
    "ConfigurationError",
    "InvalidConfigError",
    "UpstreamError",
    "HttpClientBase",
    "setup_logging",
]
