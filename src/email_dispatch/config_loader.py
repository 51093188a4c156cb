# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the email dispatch service.

Settings are read from an INI file (default ``config.ini``, overridden by
``EDS_CONFIG``) with ``EDS_*`` environment variables as fallbacks. Values in
the file win over the environment; invalid numbers fall back to the default
with a warning.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/email_dispatch.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = secret

        [dispatch]
        pool_size = 10
        provider_timeout = 30
        scheduler_interval = 30
        test_mode = false

        [smtp]
        host = smtp.example.com
        port = 587
        user = mailer
        password = secret
        use_tls = true

        [identity]
        base_url = https://identity.internal/api
        token = identity-token
        timeout = 10

        [logging]
        level = INFO

    Loading it::

        config = load_config("/etc/email-dispatch/config.ini")
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path

from .logger import get_logger

logger = get_logger("EmailDispatch.config")


@dataclass
class DispatchConfig:
    """Runtime configuration of the service.

    Attributes:
        db_path: SQLite database path.
        host: HTTP bind address.
        port: HTTP port.
        api_token: Value expected in the ``X-API-Token`` header, or None.
        pool_size: Recipients processed concurrently per batch.
        provider_timeout: Seconds allowed for a single provider call.
        scheduler_interval: Seconds between scheduler passes.
        test_mode: Disable timed background loops.
        smtp_host: SMTP server hostname.
        smtp_port: SMTP server port.
        smtp_user: SMTP username, if authentication is required.
        smtp_password: SMTP password.
        smtp_use_tls: Direct TLS on 465, STARTTLS elsewhere.
        identity_base_url: Base URL of the identity service.
        identity_token: Bearer token for the identity service.
        identity_timeout: Seconds allowed for an identity lookup.
        log_level: Root logging level.
    """

    db_path: str = "/data/email_dispatch.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None

    pool_size: int = 10
    provider_timeout: float = 30.0
    scheduler_interval: float = 30.0
    test_mode: bool = False

    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True

    identity_base_url: str = "http://localhost:3000/api"
    identity_token: str | None = None
    identity_timeout: float = 10.0

    log_level: str = "INFO"


def load_config(config_path: str | None = None) -> DispatchConfig:
    """Load configuration from an INI file with ``EDS_*`` environment fallbacks.

    Args:
        config_path: Path to the INI file. Defaults to ``EDS_CONFIG`` or
            ``config.ini``. A missing file is not an error.

    Returns:
        DispatchConfig with parsed settings, using defaults for missing values.
    """
    path = Path(config_path or os.getenv("EDS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    else:
        logger.info("Config file %s not found, using environment and defaults", path)

    defaults = DispatchConfig()

    def get(section: str, option: str, env: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or default
        value = os.getenv(env)
        if value is None:
            return default
        return value.strip() or default

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning("Invalid int for [%s] %s: %r, using default %s", section, option, value, default)
            return default

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning("Invalid float for [%s] %s: %r, using default %s", section, option, value, default)
            return default

    def get_bool(section: str, option: str, env: str, default: bool) -> bool:
        value = get(section, option, env)
        if value is None:
            return default
        normalized = value.lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        logger.warning("Invalid boolean for [%s] %s: %r, using default %s", section, option, value, default)
        return default

    return DispatchConfig(
        db_path=os.path.expanduser(get("storage", "db_path", "EDS_DB_PATH", defaults.db_path)),
        host=get("server", "host", "EDS_HOST", defaults.host),
        port=get_int("server", "port", "EDS_PORT", defaults.port),
        api_token=get("server", "api_token", "EDS_API_TOKEN"),
        pool_size=max(1, get_int("dispatch", "pool_size", "EDS_POOL_SIZE", defaults.pool_size)),
        provider_timeout=get_float("dispatch", "provider_timeout", "EDS_PROVIDER_TIMEOUT", defaults.provider_timeout),
        scheduler_interval=get_float(
            "dispatch", "scheduler_interval", "EDS_SCHEDULER_INTERVAL", defaults.scheduler_interval
        ),
        test_mode=get_bool("dispatch", "test_mode", "EDS_TEST_MODE", defaults.test_mode),
        smtp_host=get("smtp", "host", "EDS_SMTP_HOST", defaults.smtp_host),
        smtp_port=get_int("smtp", "port", "EDS_SMTP_PORT", defaults.smtp_port),
        smtp_user=get("smtp", "user", "EDS_SMTP_USER"),
        smtp_password=get("smtp", "password", "EDS_SMTP_PASSWORD"),
        smtp_use_tls=get_bool("smtp", "use_tls", "EDS_SMTP_USE_TLS", defaults.smtp_use_tls),
        identity_base_url=get("identity", "base_url", "EDS_IDENTITY_URL", defaults.identity_base_url),
        identity_token=get("identity", "token", "EDS_IDENTITY_TOKEN"),
        identity_timeout=get_float("identity", "timeout", "EDS_IDENTITY_TIMEOUT", defaults.identity_timeout),
        log_level=(get("logging", "level", "EDS_LOG_LEVEL", defaults.log_level) or "INFO").upper(),
    )
