from __future__ import annotations

import pytest

from transit_matrix.pipeline_errors import MissingCredentialError
from transit_matrix.route_batch import ensure_credentials
from transit_matrix.settings import Settings, routing_config_from_settings


def test_local_defaults(monkeypatch) -> None:
    monkeypatch.delenv("ROUTE_CONCURRENCY", raising=False)
    monkeypatch.delenv("RATE_LIMIT_DELAY_MS", raising=False)
    config = routing_config_from_settings(Settings(USE_LOCAL_OTP=True, OTP_LOCAL_URL="http://localhost:9080/otp"))

    assert config.is_local
    assert config.url == "http://localhost:9080/otp"
    assert config.concurrency == 10
    assert config.rate_limit_delay_ms == 0
    assert config.chunk_size == 100
    assert not config.requires_api_key


def test_remote_defaults_and_key_aliases(monkeypatch) -> None:
    monkeypatch.delenv("DIGITRANSIT_API_KEY", raising=False)
    monkeypatch.delenv("ROUTE_CONCURRENCY", raising=False)
    monkeypatch.delenv("RATE_LIMIT_DELAY_MS", raising=False)
    monkeypatch.setenv("HSL_API_KEY", "hsl-key")
    config = routing_config_from_settings(Settings(USE_LOCAL_OTP=False))

    assert not config.is_local
    assert config.concurrency == 1
    assert config.rate_limit_delay_ms == 200
    assert config.api_key == "hsl-key"
    ensure_credentials(config)


def test_remote_without_key_is_rejected(monkeypatch) -> None:
    monkeypatch.delenv("DIGITRANSIT_API_KEY", raising=False)
    monkeypatch.delenv("HSL_API_KEY", raising=False)
    config = routing_config_from_settings(Settings(USE_LOCAL_OTP=False, _env_file=None))

    with pytest.raises(MissingCredentialError) as excinfo:
        ensure_credentials(config)
    assert excinfo.value.reason_code == "missing_credential"


def test_backoff_bounds_are_validated() -> None:
    with pytest.raises(ValueError):
        Settings(RATE_LIMIT_BACKOFF_BASE_MS=5000, RATE_LIMIT_BACKOFF_MAX_MS=1000)
