"""
Logging setup and secret redaction helpers.

Every record carries a run_id so the multi-step login/subscribe flow of a
single CLI run can be correlated. Tokens, authorization codes and PKCE
verifiers must never reach the logs; use the sanitize helpers for any request
or response detail that is logged.
"""

from __future__ import annotations

import logging
import re
from typing import Optional


LOGGER_NAME = "topic_subscriber"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [run=%(run_id)s] %(message)s"


class _RunIdFilter(logging.Filter):
    """
    Ensure every log record has a run_id attribute for formatting.
    """

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self._run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003 - logging uses `filter` name
        if not hasattr(record, "run_id"):
            record.run_id = self._run_id
        return True


def _coerce_log_level(level: str) -> int:
    level_upper = (level or "").strip().upper()
    if not level_upper:
        return logging.INFO
    return logging._nameToLevel.get(level_upper, logging.INFO)


def configure_logging(*, run_id: str, level: str) -> logging.LoggerAdapter:
    """
    Configure logging for CLI runs.

    - Uses root logger configuration only if nothing is configured yet.
    - Adds a run_id to all records so we can correlate multi-step flows.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=_coerce_log_level(level), format=LOG_FORMAT)
    else:
        root.setLevel(_coerce_log_level(level))

    # Records from third-party loggers (websockets, urllib3) need run_id too.
    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):  # type: ignore[no-untyped-def]
        record = old_factory(*args, **kwargs)
        if not hasattr(record, "run_id"):
            record.run_id = run_id
        return record

    logging.setLogRecordFactory(record_factory)

    for h in root.handlers:
        h.addFilter(_RunIdFilter(run_id))

    return logging.LoggerAdapter(logging.getLogger(LOGGER_NAME), {})


def get_logger(name: str, log: Optional[logging.LoggerAdapter] = None) -> logging.LoggerAdapter:
    """Return `log` if given, else an adapter over the named package logger."""
    if log is not None:
        return log
    return logging.LoggerAdapter(logging.getLogger(f"{LOGGER_NAME}.{name}"), {})


_SENSITIVE_KEYS = {
    "access_token",
    "refresh_token",
    "id_token",
    "client_secret",
    "code_verifier",
    "code",
    "authorization",
}


def redact(value: object) -> str:
    """
    Partially redact identifiers (client ids) for safe logging.
    """
    if value is None:
        return "<none>"
    s = str(value)
    if not s:
        return "<empty>"
    if len(s) <= 8:
        return "<redacted>"
    return f"{s[:3]}...{s[-3:]}"


def redact_sensitive(value: object) -> str:
    """
    Redact *fully* for secret-bearing fields (tokens, codes, verifiers).

    Unlike `redact()`, this never keeps a prefix/suffix because even partial
    leaks of OAuth tokens/codes can be risky in logs.
    """
    if value is None:
        return "<none>"
    s = str(value)
    if not s:
        return "<empty>"
    return "<redacted>"


def sanitize_mapping(d: dict) -> dict:
    """
    Return a shallow copy safe for logging (redacts sensitive keys).
    """
    safe: dict = {}
    for k, v in d.items():
        if str(k).lower() in _SENSITIVE_KEYS:
            safe[k] = redact_sensitive(v)
        else:
            safe[k] = v
    return safe


def sanitize_obj(obj: object) -> object:
    """
    Deep-sanitize JSON-like objects (dict/list/tuple) for safe logging.
    """
    if isinstance(obj, dict):
        out: dict = {}
        for k, v in obj.items():
            if str(k).lower() in _SENSITIVE_KEYS:
                out[k] = redact_sensitive(v)
            else:
                out[k] = sanitize_obj(v)
        return out
    if isinstance(obj, list):
        return [sanitize_obj(v) for v in obj]
    if isinstance(obj, tuple):
        return tuple(sanitize_obj(v) for v in obj)
    return obj


_JSON_SECRET_RE = re.compile(
    r'("(?:access_token|refresh_token|id_token|code_verifier)"\s*:\s*")[^"]+(")', re.IGNORECASE
)
_FORM_SECRET_RE = re.compile(r"\b((?:access_token|refresh_token|id_token|code_verifier)=)[^&\s]+", re.IGNORECASE)
_CODE_RE = re.compile(r"\b(code=)[^&\"\s]+", re.IGNORECASE)
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def sanitize_text(text: str) -> str:
    """
    Best-effort scrub of OAuth secrets in free-form text (response bodies, URLs).

    Prefers over-redaction to accidental leaks.
    """
    if not text:
        return text
    scrubbed = _JSON_SECRET_RE.sub(r"\1<redacted>\2", text)
    scrubbed = _FORM_SECRET_RE.sub(r"\1<redacted>", scrubbed)
    scrubbed = _CODE_RE.sub(r"\1<redacted>", scrubbed)
    scrubbed = _BEARER_RE.sub(r"\1<redacted>", scrubbed)
    return scrubbed
