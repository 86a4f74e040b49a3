from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_db_path() -> str:
    # Keep the working database next to the backend by default.
    return str(Path(__file__).resolve().parents[1] / "out" / "transit_matrix.db")


class Settings(BaseSettings):
    """Validated settings (env-driven). Only this module reads the environment."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    use_local_otp: bool = Field(default=True, alias="USE_LOCAL_OTP")
    otp_local_url: str = Field(
        default="http://localhost:9080/otp/gtfs/v1",
        alias="OTP_LOCAL_URL",
    )
    otp_remote_url: str = Field(
        default="https://api.digitransit.fi/routing/v2/hsl/gtfs/v1",
        alias="OTP_REMOTE_URL",
    )
    otp_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DIGITRANSIT_API_KEY", "HSL_API_KEY", "otp_api_key"),
    )
    otp_request_timeout_s: float = Field(default=30.0, ge=1.0, le=300.0, alias="OTP_REQUEST_TIMEOUT_S")
    otp_num_itineraries: int = Field(default=3, ge=1, le=10, alias="OTP_NUM_ITINERARIES")

    # None means "pick the local/remote default" (10 local, 1 remote).
    route_concurrency: int | None = Field(default=None, ge=1, le=256, alias="ROUTE_CONCURRENCY")
    rate_limit_delay_ms: int | None = Field(default=None, ge=0, le=60_000, alias="RATE_LIMIT_DELAY_MS")
    rate_limit_max_retries: int = Field(default=6, ge=0, le=50, alias="RATE_LIMIT_MAX_RETRIES")
    rate_limit_backoff_base_ms: int = Field(default=1000, ge=0, alias="RATE_LIMIT_BACKOFF_BASE_MS")
    rate_limit_backoff_max_ms: int = Field(default=30_000, ge=0, alias="RATE_LIMIT_BACKOFF_MAX_MS")
    route_chunk_size: int = Field(default=100, ge=1, le=10_000, alias="ROUTE_CHUNK_SIZE")

    db_path: str = Field(default_factory=_default_db_path, alias="DB_PATH")
    out_dir: str = Field(default="out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @model_validator(mode="after")
    def _validate_backoff(self) -> Settings:
        if self.rate_limit_backoff_max_ms < self.rate_limit_backoff_base_ms:
            raise ValueError("RATE_LIMIT_BACKOFF_MAX_MS must be >= RATE_LIMIT_BACKOFF_BASE_MS")
        return self


settings = Settings()


@dataclass(frozen=True)
class RoutingConfig:
    """Everything the route scheduler needs, resolved once and passed in explicitly."""

    url: str
    is_local: bool
    api_key: str | None
    concurrency: int
    rate_limit_delay_ms: int
    max_rate_limit_retries: int = 6
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30_000
    request_timeout_s: float = 30.0
    num_itineraries: int = 3
    chunk_size: int = 100

    @property
    def requires_api_key(self) -> bool:
        return not self.is_local


def routing_config_from_settings(source: Settings | None = None) -> RoutingConfig:
    s = source or settings
    is_local = bool(s.use_local_otp)
    concurrency = s.route_concurrency if s.route_concurrency is not None else (10 if is_local else 1)
    delay_ms = s.rate_limit_delay_ms if s.rate_limit_delay_ms is not None else (0 if is_local else 200)
    api_key = (s.otp_api_key or "").strip() or None
    return RoutingConfig(
        url=s.otp_local_url if is_local else s.otp_remote_url,
        is_local=is_local,
        api_key=api_key,
        concurrency=int(concurrency),
        rate_limit_delay_ms=int(delay_ms),
        max_rate_limit_retries=int(s.rate_limit_max_retries),
        backoff_base_ms=int(s.rate_limit_backoff_base_ms),
        backoff_max_ms=int(s.rate_limit_backoff_max_ms),
        request_timeout_s=float(s.otp_request_timeout_s),
        num_itineraries=int(s.otp_num_itineraries),
        chunk_size=int(s.route_chunk_size),
    )
