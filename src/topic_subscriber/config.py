"""
Genesys Cloud topic subscriber URL and environment configuration.

Loads .env and exposes the per-user data directory, region-derived endpoint
URLs and timeouts. All URLs can be overridden via environment variables for
environment switching (e.g. a test org behind a proxy).

Environment variables:
  - GENESYS_DATA_DIR                  (optional; directory with settings.json / access_token.json)
  - GENESYS_LOG_LEVEL                 (optional, default: INFO)
  - GENESYS_HTTP_TIMEOUT_SECONDS      (optional, default: 30)
  - GENESYS_REDIRECT_TIMEOUT_SECONDS  (optional; unset = wait for the browser forever)
  - GENESYS_LOGIN_BASE_URL            (optional, default: https://login.<region>.pure.cloud)
  - GENESYS_API_BASE_URL              (optional, default: https://api.<region>)
  - GENESYS_NOTIFICATIONS_URL         (optional, default: wss://api.<region>/notifications)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .errors import ConfigurationInvalid


APP_DIR_NAME = "GenesysTopicSubscriber"
_DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


def _load_dotenv(log: Optional[logging.LoggerAdapter] = None) -> None:
    """
    Load a .env file into the process environment (if one exists).

    Search order:
    1. Current working directory (.env)
    2. The project root, i.e. two levels up from this file
       (src/topic_subscriber/config.py → project root)

    Shell / CI environment variables already set take priority: load_dotenv()
    is always called with override=False.
    """
    from dotenv import load_dotenv

    cwd_env = Path.cwd() / ".env"
    project_root_env = Path(__file__).resolve().parents[2] / ".env"

    env_file: Optional[Path] = None
    if cwd_env.is_file():
        env_file = cwd_env
    elif project_root_env.is_file():
        env_file = project_root_env

    if env_file is None:
        return

    loaded = load_dotenv(env_file, override=False)
    if log is not None:
        if loaded:
            log.debug("loaded .env from %s (shell vars take precedence)", env_file)
        else:
            log.debug(
                ".env found at %s but all variables were already set in the environment",
                env_file,
            )


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Get environment variable, stripped; return default if unset or empty."""
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _get_float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = _get_env(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationInvalid(f"{name} must be a number of seconds, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationInvalid(f"{name} must be positive, got {raw!r}")
    return value


# Load .env on module import so getters see env vars.
_load_dotenv()


def get_data_dir() -> Path:
    """
    Return the per-user directory holding settings.json and the token cache.

    Uses GENESYS_DATA_DIR if set, else %APPDATA%/GenesysTopicSubscriber on
    Windows and ~/.config/GenesysTopicSubscriber elsewhere.
    """
    override = _get_env("GENESYS_DATA_DIR")
    if override is not None:
        return Path(override).expanduser()
    appdata = _get_env("APPDATA")
    base = Path(appdata) if appdata else Path.home() / ".config"
    return base / APP_DIR_NAME


def get_log_level() -> str:
    return _get_env("GENESYS_LOG_LEVEL", "INFO") or "INFO"


def get_http_timeout_seconds() -> float:
    return _get_float_env("GENESYS_HTTP_TIMEOUT_SECONDS", _DEFAULT_HTTP_TIMEOUT_SECONDS) or _DEFAULT_HTTP_TIMEOUT_SECONDS


def get_redirect_timeout_seconds() -> Optional[float]:
    """Return the bounded wait for the browser redirect, or None to wait forever."""
    return _get_float_env("GENESYS_REDIRECT_TIMEOUT_SECONDS", None)


def get_login_base_url(region: str) -> str:
    """Return OAuth base URL (e.g. for /oauth/authorize, /oauth/token)."""
    return _get_env("GENESYS_LOGIN_BASE_URL") or f"https://login.{region}.pure.cloud"


def get_authorize_url(region: str) -> str:
    """Return full OAuth authorize endpoint URL."""
    return f"{get_login_base_url(region).rstrip('/')}/oauth/authorize"


def get_token_url(region: str) -> str:
    """Return full OAuth token endpoint URL."""
    return f"{get_login_base_url(region).rstrip('/')}/oauth/token"


def get_api_base_url(region: str) -> str:
    """Return REST API base URL."""
    return _get_env("GENESYS_API_BASE_URL") or f"https://api.{region}"


def get_available_topics_url(region: str) -> str:
    """Return the notification topic listing endpoint URL."""
    return f"{get_api_base_url(region).rstrip('/')}/api/v2/notifications/availabletopics"


def get_notifications_url(region: str) -> str:
    """Return the notification WebSocket URL."""
    return _get_env("GENESYS_NOTIFICATIONS_URL") or f"wss://api.{region}/notifications"
