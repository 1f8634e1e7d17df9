# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service settings loaded from an INI file with environment fallbacks.

Values in the INI file win; missing options fall back to ``CM_*``
environment variables and then to built-in defaults.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/campaigns.db

        [security]
        encryption_key = <output of `campaign-mailer generate-secret`>
        cron_secret = s3cret
        bypass_secret =
        bypass_header = x-vercel-protection-bypass

        [server]
        host = 0.0.0.0
        port = 8000
        environment = production
        base_url = https://mailer.example.com
        self_url =

        [scheduler]
        active = true
        poll_interval = 60

        [delivery]
        batch_size = 10
        retry_delay_seconds = 60
        default_max_retries = 3
        stale_sending_seconds =
        smtp_rate_per_second = 3
        smtp_pool_ttl = 300
        company_lookup_timeout = 2

        [auth]
        session_ttl_seconds = 604800

        [logging]
        level = INFO
        delivery_activity = false

Environment variables (all prefixed with CM_):
    CM_CONFIG, CM_DB_PATH, CM_ENCRYPTION_KEY, CM_CRON_SECRET,
    CM_BYPASS_SECRET, CM_BYPASS_HEADER, CM_HOST, CM_PORT, CM_ENVIRONMENT,
    CM_BASE_URL, CM_SELF_URL, CM_SCHEDULER_ACTIVE, CM_POLL_INTERVAL,
    CM_BATCH_SIZE, CM_RETRY_DELAY_SECONDS, CM_DEFAULT_MAX_RETRIES,
    CM_STALE_SENDING_SECONDS, CM_SMTP_RATE_PER_SECOND, CM_SMTP_POOL_TTL,
    CM_COMPANY_LOOKUP_TIMEOUT, CM_SESSION_TTL_SECONDS, CM_LOG_LEVEL,
    CM_LOG_DELIVERY_ACTIVITY
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or invalid."""


@dataclass
class ServiceSettings:
    db_path: str = "/data/campaigns.db"
    encryption_key: str | None = None
    cron_secret: str | None = None
    bypass_secret: str | None = None
    bypass_header: str = "x-vercel-protection-bypass"
    environment: str = "production"
    base_url: str = "http://localhost:8000"
    self_url: str | None = None
    host: str = "0.0.0.0"
    port: int = 8000
    scheduler_active: bool = False
    poll_interval: float = 60.0
    batch_size: int = 10
    retry_delay_seconds: int = 60
    default_max_retries: int = 3
    stale_sending_seconds: int | None = None
    smtp_rate_per_second: int = 3
    smtp_pool_ttl: int = 300
    company_lookup_timeout: float = 2.0
    session_ttl_seconds: int = 7 * 24 * 3600
    log_delivery_activity: bool = False
    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def require_encryption_key(self) -> str:
        if not self.encryption_key:
            raise ConfigurationError("No encryption key configured (CM_ENCRYPTION_KEY)")
        return self.encryption_key


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_settings(path: str | os.PathLike | None = None) -> ServiceSettings:
    """Load settings from ``path`` (default ``$CM_CONFIG`` or ``config.ini``).

    A missing file is not an error: every option then comes from the
    environment or the defaults.
    """
    config_path = Path(path or os.getenv("CM_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = _blank_to_none(get(section, option, fallback))
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool = False) -> bool:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = _blank_to_none(get(section, option, fallback))
        if value is None:
            return default
        return float(value)

    defaults = ServiceSettings()
    settings = ServiceSettings(
        db_path=get("storage", "db_path", os.getenv("CM_DB_PATH")) or defaults.db_path,
        encryption_key=_blank_to_none(get("security", "encryption_key", os.getenv("CM_ENCRYPTION_KEY"))),
        cron_secret=_blank_to_none(get("security", "cron_secret", os.getenv("CM_CRON_SECRET"))),
        bypass_secret=_blank_to_none(get("security", "bypass_secret", os.getenv("CM_BYPASS_SECRET"))),
        bypass_header=(
            _blank_to_none(get("security", "bypass_header", os.getenv("CM_BYPASS_HEADER")))
            or defaults.bypass_header
        ).lower(),
        environment=_blank_to_none(get("server", "environment", os.getenv("CM_ENVIRONMENT"))) or defaults.environment,
        base_url=(_blank_to_none(get("server", "base_url", os.getenv("CM_BASE_URL"))) or defaults.base_url).rstrip("/"),
        self_url=_blank_to_none(get("server", "self_url", os.getenv("CM_SELF_URL"))),
        host=_blank_to_none(get("server", "host", os.getenv("CM_HOST"))) or defaults.host,
        port=get_int("server", "port", os.getenv("CM_PORT"), defaults.port),
        scheduler_active=get_bool("scheduler", "active", os.getenv("CM_SCHEDULER_ACTIVE"), False),
        poll_interval=get_float("scheduler", "poll_interval", os.getenv("CM_POLL_INTERVAL"), defaults.poll_interval),
        batch_size=get_int("delivery", "batch_size", os.getenv("CM_BATCH_SIZE"), defaults.batch_size),
        retry_delay_seconds=get_int(
            "delivery", "retry_delay_seconds", os.getenv("CM_RETRY_DELAY_SECONDS"), defaults.retry_delay_seconds
        ),
        default_max_retries=get_int(
            "delivery", "default_max_retries", os.getenv("CM_DEFAULT_MAX_RETRIES"), defaults.default_max_retries
        ),
        stale_sending_seconds=get_int(
            "delivery", "stale_sending_seconds", os.getenv("CM_STALE_SENDING_SECONDS"), None
        ),
        smtp_rate_per_second=get_int(
            "delivery", "smtp_rate_per_second", os.getenv("CM_SMTP_RATE_PER_SECOND"), defaults.smtp_rate_per_second
        ),
        smtp_pool_ttl=get_int("delivery", "smtp_pool_ttl", os.getenv("CM_SMTP_POOL_TTL"), defaults.smtp_pool_ttl),
        company_lookup_timeout=get_float(
            "delivery",
            "company_lookup_timeout",
            os.getenv("CM_COMPANY_LOOKUP_TIMEOUT"),
            defaults.company_lookup_timeout,
        ),
        session_ttl_seconds=get_int(
            "auth", "session_ttl_seconds", os.getenv("CM_SESSION_TTL_SECONDS"), defaults.session_ttl_seconds
        ),
        log_delivery_activity=get_bool(
            "logging", "delivery_activity", os.getenv("CM_LOG_DELIVERY_ACTIVITY"), False
        ),
        log_level=(_blank_to_none(get("logging", "level", os.getenv("CM_LOG_LEVEL"))) or defaults.log_level).upper(),
    )
    settings.db_path = os.path.expanduser(settings.db_path)
    if settings.stale_sending_seconds is not None and settings.stale_sending_seconds <= 0:
        settings.stale_sending_seconds = None
    return settings
