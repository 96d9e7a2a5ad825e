"""Pipeline configuration read from the environment."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from receiptdesk.services.errors import ConfigError

# Free-tier reference size of the primary bucket; not configurable.
REFERENCE_CAPACITY_BYTES = 1_000_000_000

DEFAULT_USAGE_THRESHOLD = 0.8
DEFAULT_USAGE_CACHE_SECONDS = 60.0
DEFAULT_UPLOAD_MAX_RETRIES = 3
DEFAULT_UPLOAD_RETRY_DELAY_MS = 400
DEFAULT_INGEST_CONCURRENCY = 4
DEFAULT_PRIMARY_BUCKET = "documents"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ConfigError(name, f"Expected a {cast.__name__}, got '{raw}'") from exc


@dataclass
class PipelineConfig:
    usage_threshold: float = DEFAULT_USAGE_THRESHOLD
    overflow_enabled: bool = False
    reference_capacity_bytes: int = REFERENCE_CAPACITY_BYTES
    usage_cache_seconds: float = DEFAULT_USAGE_CACHE_SECONDS
    upload_max_retries: int = DEFAULT_UPLOAD_MAX_RETRIES
    upload_retry_delay_ms: int = DEFAULT_UPLOAD_RETRY_DELAY_MS
    primary_bucket: str = DEFAULT_PRIMARY_BUCKET
    ingest_concurrency: int = DEFAULT_INGEST_CONCURRENCY
    signer_url: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if not 0 < self.usage_threshold <= 1:
            raise ConfigError("STORAGE_USAGE_THRESHOLD", "Must be within (0, 1]")
        if self.upload_max_retries < 1:
            raise ConfigError("UPLOAD_MAX_RETRIES", "Must be at least 1")
        if self.upload_retry_delay_ms < 0:
            raise ConfigError("UPLOAD_RETRY_DELAY_MS", "Must not be negative")
        if self.ingest_concurrency < 1:
            raise ConfigError("INGEST_CONCURRENCY", "Must be at least 1")
        if self.usage_cache_seconds < 0:
            raise ConfigError("STORAGE_USAGE_CACHE_SECONDS", "Must not be negative")
        if not self.primary_bucket:
            raise ConfigError("PRIMARY_BUCKET", "Must not be empty")

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            usage_threshold=_env_number("STORAGE_USAGE_THRESHOLD", DEFAULT_USAGE_THRESHOLD, float),
            overflow_enabled=_env_bool("R2_ENABLED"),
            usage_cache_seconds=_env_number("STORAGE_USAGE_CACHE_SECONDS", DEFAULT_USAGE_CACHE_SECONDS, float),
            upload_max_retries=_env_number("UPLOAD_MAX_RETRIES", DEFAULT_UPLOAD_MAX_RETRIES, int),
            upload_retry_delay_ms=_env_number("UPLOAD_RETRY_DELAY_MS", DEFAULT_UPLOAD_RETRY_DELAY_MS, int),
            primary_bucket=os.getenv("PRIMARY_BUCKET", DEFAULT_PRIMARY_BUCKET),
            ingest_concurrency=_env_number("INGEST_CONCURRENCY", DEFAULT_INGEST_CONCURRENCY, int),
            signer_url=os.getenv("UPLOAD_SIGNER_URL") or None,
        )


@dataclass
class OverflowCredentials:
    """Credentials for the S3-compatible overflow bucket (Cloudflare R2)."""

    account_id: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    bucket: Optional[str] = None
    public_base_url: Optional[str] = None

    @property
    def configured(self) -> bool:
        return all(
            [self.account_id, self.access_key_id, self.secret_access_key, self.bucket, self.public_base_url]
        )

    @property
    def endpoint_url(self) -> str:
        return f"https://{self.account_id}.r2.cloudflarestorage.com"

    @classmethod
    def from_env(cls) -> "OverflowCredentials":
        return cls(
            account_id=os.getenv("R2_ACCOUNT_ID"),
            access_key_id=os.getenv("R2_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("R2_SECRET_ACCESS_KEY"),
            bucket=os.getenv("R2_BUCKET"),
            public_base_url=os.getenv("R2_PUBLIC_BASE_URL"),
        )
