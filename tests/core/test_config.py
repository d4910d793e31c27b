"""
Tests for Application Configuration.

============================================================
PURPOSE
============================================================
Environment loading, validation and CHAIN_ENDPOINTS parsing.

TEST PRINCIPLES:
- Validation lists every problem at once
- A bad CHAIN_ENDPOINTS value fails loudly at startup

============================================================
"""

import json

import pytest

from core.config import AppConfig, load_chain_endpoints
from core.exceptions import InvalidConfigError, Severity


ENV_KEYS = [
    "METRICS_URL",
    "CHAIN_ENDPOINTS",
    "HERMES_URL",
    "CLEARING_SECRET_KEY",
    "SERVICE_ADDRESS",
    "TOKEN_TTL_SECONDS",
    "DISPATCH_TIMEOUT_SECONDS",
    "RESOLVER_BATCH_SIZE",
    "REQUEST_TIMEOUT_SECONDS",
    "POLL_INTERVAL_SECONDS",
    "POLL_MAX_ATTEMPTS",
    "API_HOST",
    "API_PORT",
    "LOG_LEVEL",
    "LOG_FORMAT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        # setenv first so teardown also removes values load_dotenv wrote
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    return monkeypatch


def valid_config(**overrides) -> AppConfig:
    fields = dict(
        clearing_secret_key="test-secret-key-0123456789",
        service_address="cosmos1service",
    )
    fields.update(overrides)
    return AppConfig(**fields)


# ============================================================
# LOADING
# ============================================================

class TestFromEnv:
    """Tests for AppConfig.from_env()."""

    def test_env_file_values(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "CLEARING_SECRET_KEY=test-secret-key-0123456789\n"
            "SERVICE_ADDRESS=cosmos1service\n"
            "TOKEN_TTL_SECONDS=120\n"
            "CHAIN_ENDPOINTS='{\"osmosis-1\": \"https://lcd.osmosis.zone\"}'\n"
            "API_PORT=9090\n"
        )

        config = AppConfig.from_env(str(env_file))

        assert config.clearing_secret_key == "test-secret-key-0123456789"
        assert config.token_ttl_seconds == 120
        assert config.api_port == 9090
        assert config.chain_endpoints == {"osmosis-1": "https://lcd.osmosis.zone"}
        assert config.validate() == []

    def test_process_env_wins_over_file(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("RESOLVER_BATCH_SIZE=3\n")
        clean_env.setenv("RESOLVER_BATCH_SIZE", "8")

        config = AppConfig.from_env(str(env_file))

        assert config.resolver_batch_size == 8

    def test_defaults(self, clean_env, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("")

        config = AppConfig.from_env(str(env_file))

        assert config.resolver_batch_size == 5
        assert config.token_ttl_seconds == 300
        assert config.poll_max_attempts == 150
        assert config.chain_endpoints == {}

    @pytest.mark.parametrize("key,value", [
        ("API_PORT", "eighty"),
        ("TOKEN_TTL_SECONDS", "5m"),
        ("POLL_INTERVAL_SECONDS", "fast"),
        ("POLL_MAX_ATTEMPTS", "1.5"),
    ])
    def test_malformed_number(self, clean_env, tmp_path, key, value):
        env_file = tmp_path / ".env"
        env_file.write_text("")
        clean_env.setenv(key, value)

        with pytest.raises(InvalidConfigError) as exc_info:
            AppConfig.from_env(str(env_file))

        assert exc_info.value.context["config_key"] == key


class TestValidate:
    """Tests for AppConfig.validate()."""

    def test_valid(self):
        assert valid_config().validate() == []

    def test_missing_secrets(self):
        errors = AppConfig().validate()

        assert len(errors) == 2
        assert any("CLEARING_SECRET_KEY" in e for e in errors)
        assert any("SERVICE_ADDRESS" in e for e in errors)

    def test_short_secret(self):
        errors = valid_config(clearing_secret_key="short").validate()

        assert errors == ["CLEARING_SECRET_KEY must be at least 16 characters"]

    def test_every_problem_reported(self):
        errors = valid_config(
            token_ttl_seconds=0,
            resolver_batch_size=0,
            request_timeout_seconds=0,
            poll_interval_seconds=0,
            poll_max_attempts=0,
            log_format="xml",
        ).validate()

        assert len(errors) == 6


# ============================================================
# CHAIN ENDPOINTS
# ============================================================

class TestLoadChainEndpoints:
    """Tests for load_chain_endpoints()."""

    def test_empty(self):
        assert load_chain_endpoints("") == {}
        assert load_chain_endpoints("   ") == {}

    def test_inline_json(self):
        endpoints = load_chain_endpoints('{"cosmoshub-4": "https://lcd.cosmos.network"}')

        assert endpoints == {"cosmoshub-4": "https://lcd.cosmos.network"}

    def test_json_file(self, tmp_path):
        path = tmp_path / "chains.json"
        path.write_text(json.dumps({
            "osmosis-1": "https://lcd.osmosis.zone",
            "neutron-1": "https://rest.neutron.org",
        }))

        endpoints = load_chain_endpoints(str(path))

        assert set(endpoints) == {"osmosis-1", "neutron-1"}

    @pytest.mark.parametrize("raw", [
        "/no/such/file.json",
        "{not json",
        '{"osmosis-1": 42}',
        '{"osmosis-1": ""}',
    ])
    def test_invalid(self, raw):
        with pytest.raises(InvalidConfigError) as exc_info:
            load_chain_endpoints(raw)

        assert exc_info.value.context["config_key"] == "CHAIN_ENDPOINTS"
        assert exc_info.value.severity is Severity.HIGH

    def test_json_array_file_is_rejected(self, tmp_path):
        path = tmp_path / "chains.json"
        path.write_text('["osmosis-1"]')

        with pytest.raises(InvalidConfigError):
            load_chain_endpoints(str(path))
