"""
config.py
Runtime settings for the trx_id backfill.

Values come from the process environment, optionally seeded from a dotenv
file, and may be overridden by command-line flags.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

import httpx
from dotenv import dotenv_values

from trxid_backfill.errors import ConfigurationError

DEFAULT_PROCESS_STEP      = 100
DEFAULT_SEARCH_STEP       = 1000
DEFAULT_HTTP_TIMEOUT      = 30.0
DEFAULT_MAX_RETRY_WAVES   = 10
DEFAULT_RETRY_BACKOFF_MIN = 1.0
DEFAULT_RETRY_BACKOFF_MAX = 60.0
DEFAULT_INSERT_BATCH_SIZE = 1000

LOG_FORMATS = ("console", "json")
LOG_LEVELS  = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
API_URL_SCHEMES = ("http", "https")


@dataclass(frozen=True)
class BackfillConfig:
    api_url: str
    pg_dsn: str
    process_step: int        = DEFAULT_PROCESS_STEP
    search_step: int         = DEFAULT_SEARCH_STEP
    http_timeout: float      = DEFAULT_HTTP_TIMEOUT
    max_retry_waves: int     = DEFAULT_MAX_RETRY_WAVES     # 0 = retry until everything succeeds
    retry_backoff_min: float = DEFAULT_RETRY_BACKOFF_MIN
    retry_backoff_max: float = DEFAULT_RETRY_BACKOFF_MAX
    insert_batch_size: int   = DEFAULT_INSERT_BATCH_SIZE
    log_level: str           = "INFO"
    log_format: str          = "console"

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_env(
        cls,
        env: Mapping[str, str] | None = None,
        env_file: str | Path | None = None,
    ) -> "BackfillConfig":
        """
        Build a config from environment variables.

        Parameters
        ----------
        env : Mapping[str, str] | None
            Variables to read; defaults to ``os.environ``.
        env_file : str | Path | None
            Dotenv file read underneath ``env``; variables present in
            ``env`` win over the file.
        """
        env = dict(os.environ if env is None else env)
        if env_file is not None:
            if not Path(env_file).is_file():
                raise ConfigurationError(f"env file not found: {env_file}")
            file_values = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
            env = {**file_values, **env}

        return cls(
            api_url           = _require(env, "API_URL"),
            pg_dsn            = _require(env, "PG_DSN"),
            process_step      = _int(env, "PROCESS_STEP", DEFAULT_PROCESS_STEP),
            search_step       = _int(env, "SEARCH_STEP", DEFAULT_SEARCH_STEP),
            http_timeout      = _float(env, "HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
            max_retry_waves   = _int(env, "MAX_RETRY_WAVES", DEFAULT_MAX_RETRY_WAVES),
            retry_backoff_min = _float(env, "RETRY_BACKOFF_MIN", DEFAULT_RETRY_BACKOFF_MIN),
            retry_backoff_max = _float(env, "RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX),
            insert_batch_size = _int(env, "INSERT_BATCH_SIZE", DEFAULT_INSERT_BATCH_SIZE),
            log_level         = env.get("LOG_LEVEL", "INFO").upper(),
            log_format        = env.get("LOG_FORMAT", "console").lower(),
        )

    def with_overrides(self, **overrides) -> "BackfillConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def validate(self):
        if not self.api_url:
            raise ConfigurationError("need API_URL config.")
        if _url_scheme(self.api_url) not in API_URL_SCHEMES:
            raise ConfigurationError(f"API_URL must be an http(s) URL, got {self.api_url!r}")
        if not self.pg_dsn:
            raise ConfigurationError("need PG_DSN config.")
        for name in ("process_step", "search_step", "insert_batch_size"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name.upper()} must be >= 1")
        if self.max_retry_waves < 0:
            raise ConfigurationError("MAX_RETRY_WAVES must be >= 0")
        if self.http_timeout <= 0:
            raise ConfigurationError("HTTP_TIMEOUT must be > 0")
        if self.retry_backoff_min < 0 or self.retry_backoff_max < self.retry_backoff_min:
            raise ConfigurationError("RETRY_BACKOFF_MIN/MAX must satisfy 0 <= min <= max")
        if self.log_level not in LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(f"LOG_FORMAT must be one of {', '.join(LOG_FORMATS)}")


def _require(env: Mapping[str, str], key: str) -> str:
    value = env.get(key, "").strip()
    if not value:
        raise ConfigurationError(f"need {key} config.")
    return value


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


def _url_scheme(url: str) -> str:
    try:
        return httpx.URL(url).scheme
    except httpx.InvalidURL:
        return ""
