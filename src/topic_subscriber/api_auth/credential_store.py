"""
Local persistence for the cached bearer token and the client settings.

Both files live in one per-user data directory that is injected by the caller:

    <data_dir>/settings.json       {"client_id": ..., "redirect_uri": ..., "region": ...}
    <data_dir>/access_token.json   {"access_token": ..., "expires_at": "<ISO-8601 UTC>"}

A missing or malformed token cache only means "log in again"; missing settings
are fatal because no token can be obtained without them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import ConfigurationMissing
from ..logging_config import get_logger, redact

TOKEN_FILE_NAME = "access_token.json"
SETTINGS_FILE_NAME = "settings.json"


@dataclass(frozen=True)
class TokenRecord:
    access_token: str
    expires_at: datetime  # aware, UTC

    def is_valid(self, *, now: datetime, margin_seconds: float) -> bool:
        """True while now < expires_at - margin; the boundary itself is expired."""
        return now.timestamp() < self.expires_at.timestamp() - margin_seconds

    def to_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "expires_at": format_utc_timestamp(self.expires_at),
        }


@dataclass(frozen=True)
class ClientSettings:
    client_id: str
    redirect_uri: str
    region: str


def format_utc_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_utc_timestamp(value: str) -> datetime:
    """Parse ISO-8601; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _read_json_object(path: Path) -> Optional[dict[str, Any]]:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return data


class CredentialStore:
    """Reads/writes the token cache and reads settings from `data_dir`."""

    def __init__(self, data_dir: Path, *, log: Optional[logging.LoggerAdapter] = None) -> None:
        self.data_dir = Path(data_dir)
        self._log = get_logger("credential_store", log)

    @property
    def token_path(self) -> Path:
        return self.data_dir / TOKEN_FILE_NAME

    @property
    def settings_path(self) -> Path:
        return self.data_dir / SETTINGS_FILE_NAME

    def load_token(self) -> Optional[TokenRecord]:
        """
        Load the cached token. Returns None if the file does not exist or is invalid.
        """
        data = _read_json_object(self.token_path)
        if data is None:
            if self.token_path.exists():
                self._log.warning("ignoring unreadable token cache at %s", self.token_path)
            return None

        access_token = data.get("access_token")
        expires_at = data.get("expires_at")
        if not isinstance(access_token, str) or not access_token or not isinstance(expires_at, str):
            self._log.warning("ignoring token cache with missing fields (keys=%s)", sorted(data.keys()))
            return None
        try:
            expires = parse_utc_timestamp(expires_at)
        except ValueError:
            self._log.warning("ignoring token cache with bad expires_at=%r", expires_at)
            return None
        return TokenRecord(access_token=access_token, expires_at=expires)

    def save_token(self, record: TokenRecord) -> None:
        """
        Save the token cache with atomic replace and restrictive permissions (0o600).
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.token_path.with_suffix(self.token_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(record.to_dict(), ensure_ascii=False), encoding="utf-8")
        tmp_path.chmod(0o600)
        tmp_path.replace(self.token_path)
        self._log.debug("token cache written to %s (expires_at=%s)", self.token_path, record.to_dict()["expires_at"])

    def clear_token(self) -> bool:
        """Remove the token cache. Returns True if a file was removed."""
        try:
            self.token_path.unlink()
        except FileNotFoundError:
            return False
        self._log.info("token cache removed")
        return True

    def load_settings(self) -> ClientSettings:
        """
        Load settings.json. Raises ConfigurationMissing if absent, unparseable or incomplete.
        """
        path = self.settings_path
        if not path.is_file():
            raise ConfigurationMissing(f"Missing settings file for PKCE auth: {path}")
        data = _read_json_object(path)
        if data is None:
            raise ConfigurationMissing(f"Settings file is not a valid JSON object: {path}")

        values = {key: data.get(key) for key in ("client_id", "redirect_uri", "region")}
        missing = [k for k, v in values.items() if not isinstance(v, str) or not v.strip()]
        if missing:
            raise ConfigurationMissing(f"Settings file {path} is missing: {', '.join(missing)}")

        settings = ClientSettings(
            client_id=values["client_id"].strip(),
            redirect_uri=values["redirect_uri"].strip(),
            region=values["region"].strip(),
        )
        self._log.debug(
            "loaded settings (client_id=%s, redirect_uri=%s, region=%s)",
            redact(settings.client_id),
            settings.redirect_uri,
            settings.region,
        )
        return settings
