# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Service configuration from an INI file with ``MDQ_*`` environment fallbacks.

Values in the INI file win over environment variables; both fall back to the
defaults below.

Environment variables:
    MDQ_CONFIG - Path to the INI file (default: config.ini)
    MDQ_LOG_LEVEL - Logging level (default: INFO)
    MDQ_HOST / MDQ_PORT - HTTP bind address (default: 0.0.0.0:8000)
    MDQ_API_TOKEN - Token required in the ``X-API-Token`` header
    MDQ_RATE_LIMIT_PER_MINUTE - Successful sends per minute (default: 50)
    MDQ_MAX_ATTEMPTS - Attempts before permanent failure (default: 3)
    MDQ_RETRY_DELAY - Seconds between attempts (default: 5)
    MDQ_RETRY_BACKOFF - ``fixed`` or ``exponential`` (default: fixed)
    MDQ_SEND_INTERVAL - Pause between two sends in seconds (default: 0.1)
    MDQ_MAX_ENQUEUE_BATCH - Largest accepted bulk request (default: 1000)
    MDQ_TRANSPORT - ``smtp`` or ``resend`` (default: smtp)
    MDQ_SMTP_HOST / MDQ_SMTP_PORT / MDQ_SMTP_USER / MDQ_SMTP_PASSWORD / MDQ_SMTP_USE_TLS
    MDQ_RESEND_API_KEY - API key for the Resend transport
    MDQ_DEFAULT_SENDER - ``From`` used when a message carries none
    MDQ_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: false)

Config file sections/keys:
    [server] host, port, api_token
    [queue] rate_limit_per_minute, max_attempts, retry_delay_seconds,
            retry_backoff, send_interval_seconds, max_enqueue_batch
    [transport] kind, smtp_host, smtp_port, smtp_user, smtp_password,
                smtp_use_tls, resend_api_key, default_sender
    [logging] level, delivery_activity
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

DEFAULT_CONFIG_PATH = "config.ini"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class DispatchSettings:
    """Resolved settings for one service process."""

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    log_level: str = "INFO"
    log_delivery_activity: bool = False
    rate_limit_per_minute: int = 50
    max_attempts: int = 3
    retry_delay: float = 5.0
    retry_backoff: str = "fixed"
    send_interval: float = 0.1
    max_enqueue_batch: int = 1000
    transport: str = "smtp"
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool | None = None
    resend_api_key: str | None = None
    default_sender: str = "notifications@localhost"


def parse_bool(value: str | None, default: bool | None = None) -> bool | None:
    """Read ``yes``/``no`` style flags; unknown values give ``default``."""
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return default


def load_settings(
    config_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> DispatchSettings:
    """Load settings from ``config_path`` (or ``MDQ_CONFIG``) and the environment.

    A missing INI file is not an error: environment and defaults apply.

    Raises:
        ValueError: If a numeric setting cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("MDQ_CONFIG", DEFAULT_CONFIG_PATH))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(env_name, default)

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"[{section}] {option} must be an integer, got {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None or not str(value).strip():
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"[{section}] {option} must be a number, got {value!r}") from exc

    def get_optional(section: str, option: str, env_name: str) -> str | None:
        value = get(section, option, env_name)
        if value is None:
            return None
        return value.strip() or None

    return DispatchSettings(
        host=get("server", "host", "MDQ_HOST", "0.0.0.0") or "0.0.0.0",
        port=get_int("server", "port", "MDQ_PORT", 8000),
        api_token=get_optional("server", "api_token", "MDQ_API_TOKEN"),
        log_level=(get("logging", "level", "MDQ_LOG_LEVEL", "INFO") or "INFO").upper(),
        log_delivery_activity=bool(
            parse_bool(get("logging", "delivery_activity", "MDQ_LOG_DELIVERY_ACTIVITY"), False)
        ),
        rate_limit_per_minute=get_int("queue", "rate_limit_per_minute", "MDQ_RATE_LIMIT_PER_MINUTE", 50),
        max_attempts=get_int("queue", "max_attempts", "MDQ_MAX_ATTEMPTS", 3),
        retry_delay=get_float("queue", "retry_delay_seconds", "MDQ_RETRY_DELAY", 5.0),
        retry_backoff=(get("queue", "retry_backoff", "MDQ_RETRY_BACKOFF", "fixed") or "fixed").strip().lower(),
        send_interval=get_float("queue", "send_interval_seconds", "MDQ_SEND_INTERVAL", 0.1),
        max_enqueue_batch=get_int("queue", "max_enqueue_batch", "MDQ_MAX_ENQUEUE_BATCH", 1000),
        transport=(get("transport", "kind", "MDQ_TRANSPORT", "smtp") or "smtp").strip().lower(),
        smtp_host=get("transport", "smtp_host", "MDQ_SMTP_HOST", "localhost") or "localhost",
        smtp_port=get_int("transport", "smtp_port", "MDQ_SMTP_PORT", 25),
        smtp_user=get_optional("transport", "smtp_user", "MDQ_SMTP_USER"),
        smtp_password=get_optional("transport", "smtp_password", "MDQ_SMTP_PASSWORD"),
        smtp_use_tls=parse_bool(get("transport", "smtp_use_tls", "MDQ_SMTP_USE_TLS")),
        resend_api_key=get_optional("transport", "resend_api_key", "MDQ_RESEND_API_KEY"),
        default_sender=get("transport", "default_sender", "MDQ_DEFAULT_SENDER", "notifications@localhost")
        or "notifications@localhost",
    )
