"""
Core Module - Application Configuration.

============================================================
PURPOSE
============================================================
All runtime configuration for the relay monitor service.

Values come from the environment (a local .env file is loaded
first). Component tunables that are not deployment specific
live with their component (FeePolicy, ClearingConfig).

============================================================
"""

import json
import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv

from .exceptions import InvalidConfigError


logger = logging.getLogger(__name__)


# ============================================================
# APPLICATION CONFIGURATION
# ============================================================

@dataclass
class AppConfig:
    """Configuration for the relay monitor service."""

    # Upstreams
    metrics_url: str = "http://localhost:3001/metrics"
    """Exposition endpoint of the relay metrics exporter."""

    chain_endpoints: Dict[str, str] = field(default_factory=dict)
    """Chain id -> REST (LCD) endpoint."""

    hermes_url: str = "http://localhost:5185"
    """REST endpoint of the relayer that performs clearing."""

    # Clearing
    clearing_secret_key: str = ""
    """HMAC key used to sign clearing tokens."""

    service_address: str = ""
    """Address that receives clearing fee payments."""

    token_ttl_seconds: int = 300
    """Validity window of a clearing token."""

    dispatch_timeout_seconds: float = 30.0
    """Upper bound on waiting for the relayer to accept a dispatch."""

    # Resolver
    resolver_batch_size: int = 5
    """Concurrent lookups per resolver batch group."""

    request_timeout_seconds: float = 10.0
    """Upper bound on a single remote HTTP lookup."""

    # Status polling fallback
    poll_interval_seconds: float = 2.0
    """Interval between status polls."""

    poll_max_attempts: int = 150
    """Polls before giving up with a timeout."""

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "AppConfig":
        """Load configuration from environment variables."""
        load_dotenv(env_file)
        return cls(
            metrics_url=os.getenv("METRICS_URL", "http://localhost:3001/metrics"),
            chain_endpoints=load_chain_endpoints(os.getenv("CHAIN_ENDPOINTS", "")),
            hermes_url=os.getenv("HERMES_URL", "http://localhost:5185"),
            clearing_secret_key=os.getenv("CLEARING_SECRET_KEY", ""),
            service_address=os.getenv("SERVICE_ADDRESS", ""),
            token_ttl_seconds=_env_number("TOKEN_TTL_SECONDS", "300", int),
            dispatch_timeout_seconds=_env_number("DISPATCH_TIMEOUT_SECONDS", "30", float),
            resolver_batch_size=_env_number("RESOLVER_BATCH_SIZE", "5", int),
            request_timeout_seconds=_env_number("REQUEST_TIMEOUT_SECONDS", "10", float),
            poll_interval_seconds=_env_number("POLL_INTERVAL_SECONDS", "2", float),
            poll_max_attempts=_env_number("POLL_MAX_ATTEMPTS", "150", int),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=_env_number("API_PORT", "8080", int),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if not self.clearing_secret_key:
            errors.append("CLEARING_SECRET_KEY is required to sign clearing tokens")
        elif len(self.clearing_secret_key) < 16:
            errors.append("CLEARING_SECRET_KEY must be at least 16 characters")

        if not self.service_address:
            errors.append("SERVICE_ADDRESS is required to verify fee payments")

        if self.token_ttl_seconds < 1:
            errors.append("token_ttl_seconds must be at least 1")

        if self.resolver_batch_size < 1:
            errors.append("resolver_batch_size must be at least 1")

        if self.request_timeout_seconds <= 0:
            errors.append("request_timeout_seconds must be positive")

        if self.poll_interval_seconds <= 0:
            errors.append("poll_interval_seconds must be positive")

        if self.poll_max_attempts < 1:
            errors.append("poll_max_attempts must be at least 1")

        if self.log_format not in ("json", "text"):
            errors.append("log_format must be 'json' or 'text'")

        return errors


def _env_number(key: str, default: str, kind: Callable[[str], Any]) -> Any:
    raw = os.getenv(key, default).strip() or default
    try:
        return kind(raw)
    except ValueError:
        raise InvalidConfigError(key, raw, f"expected {'an integer' if kind is int else 'a number'}")


# ============================================================
# CHAIN ENDPOINT LOADING
# ============================================================

def load_chain_endpoints(raw: str) -> Dict[str, str]:
    """
    Parse the CHAIN_ENDPOINTS setting.

    Accepts either an inline JSON object or a path to a JSON file
    holding one. Empty input yields an empty mapping.

    Raises:
        InvalidConfigError: If the value is not a JSON object of strings
    """
    raw = raw.strip()
    if not raw:
        return {}

    if not raw.startswith("{"):
        path = Path(raw)
        if not path.is_file():
            raise InvalidConfigError("CHAIN_ENDPOINTS", raw, "not a JSON object or readable file")
        raw = path.read_text(encoding="utf-8")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidConfigError("CHAIN_ENDPOINTS", raw, f"invalid JSON: {e}")

    if not isinstance(data, dict):
        raise InvalidConfigError("CHAIN_ENDPOINTS", raw, "expected a JSON object")

    endpoints: Dict[str, str] = {}
    for chain_id, url in data.items():
        if not isinstance(url, str) or not url:
            raise InvalidConfigError("CHAIN_ENDPOINTS", url, f"endpoint for {chain_id} must be a URL string")
        endpoints[str(chain_id)] = url

    logger.debug(f"Loaded {len(endpoints)} chain endpoints")
    return endpoints
