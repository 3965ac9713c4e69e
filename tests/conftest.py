"""
Pytest configuration for the topic subscriber test suite.

Tests import `topic_subscriber...` normally. To make that work in a fresh
checkout without an editable install, the local `src` directory is added to
`sys.path`.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    """
    Ensure the local `topic_subscriber` package is importable for tests.
    """
    project_root = Path(__file__).resolve().parent.parent
    src = project_root / "src"

    if src.is_dir():
        # Prepend so local sources win over any globally installed package.
        sys.path.insert(0, str(src))


@pytest.fixture
def settings_dir(tmp_path: Path) -> Path:
    """A data dir holding a valid settings.json."""
    (tmp_path / "settings.json").write_text(
        json.dumps(
            {
                "client_id": "client-id-1234",
                "redirect_uri": "http://localhost:8080",
                "region": "mypurecloud.com",
            }
        ),
        encoding="utf-8",
    )
    return tmp_path


@pytest.fixture(autouse=True)
def _clean_genesys_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's .env / shell overrides out of the tests."""
    for name in (
        "GENESYS_DATA_DIR",
        "GENESYS_LOG_LEVEL",
        "GENESYS_HTTP_TIMEOUT_SECONDS",
        "GENESYS_REDIRECT_TIMEOUT_SECONDS",
        "GENESYS_LOGIN_BASE_URL",
        "GENESYS_API_BASE_URL",
        "GENESYS_NOTIFICATIONS_URL",
    ):
        monkeypatch.delenv(name, raising=False)
