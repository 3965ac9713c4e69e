"""
Genesys Cloud OAuth2 authorization-code + PKCE login with a local token cache.

Flow of `Authenticator.get_token()`:

1. Return the cached token if it is still valid (no network).
2. Load settings.json (fatal if missing) and create a PKCE verifier/challenge.
3. Bind a one-shot HTTP listener on the redirect URI and open the browser at
   https://login.<region>.pure.cloud/oauth/authorize.
4. Take the `code` from the single redirect request.
5. POST it with the verifier to /oauth/token and cache the result.

Any failure in steps 2..5 (except missing settings) is an AuthenticationFailed;
there is no retry. Calling get_token() again restarts the interactive flow.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import threading
import time
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, Optional
from urllib.parse import parse_qs, quote, urlencode, urlparse

import requests

from .. import config as config_mod
from ..errors import AuthenticationFailed
from ..logging_config import get_logger, redact, sanitize_mapping, sanitize_obj, sanitize_text
from .credential_store import ClientSettings, CredentialStore, TokenRecord

# A cached token is only used while now < expires_at - TOKEN_EXPIRY_MARGIN_SECONDS.
TOKEN_EXPIRY_MARGIN_SECONDS = 60
# Stored expires_at is pulled this far ahead of the server-reported expiry.
TOKEN_WRITE_MARGIN_SECONDS = 30

SUCCESS_PAGE = "<html><body>Login successful. You can close this window.</body></html>"
FAILURE_PAGE = "<html><body>Login failed. Return to the application for details.</body></html>"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _base64url_no_padding(raw: bytes) -> str:
    """
    Base64URL encode without "=" padding (RFC 7636).
    """
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = 32) -> str:
    """
    Generate a PKCE code_verifier from `num_bytes` random bytes.

    32 bytes encode to 43 characters of [A-Za-z0-9_-]; RFC 7636 allows 43..128,
    i.e. 32..96 bytes.
    """
    if num_bytes < 32 or num_bytes > 96:
        raise ValueError("PKCE code_verifier must be built from 32..96 random bytes")
    return _base64url_no_padding(secrets.token_bytes(num_bytes))


def code_challenge_s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return _base64url_no_padding(digest)


@dataclass(frozen=True)
class PkceSession:
    """Verifier/challenge pair for one authorization round-trip. Never persisted."""

    code_verifier: str
    code_challenge: str

    @classmethod
    def create(cls) -> "PkceSession":
        verifier = generate_code_verifier()
        return cls(code_verifier=verifier, code_challenge=code_challenge_s256(verifier))

    def __repr__(self) -> str:
        return "PkceSession(code_verifier=<redacted>, code_challenge=<redacted>)"


def build_authorization_url(settings: ClientSettings, code_challenge: str) -> str:
    params = {
        "response_type": "code",
        "client_id": settings.client_id,
        "redirect_uri": settings.redirect_uri,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{config_mod.get_authorize_url(settings.region)}?{urlencode(params, quote_via=quote)}"


class _RedirectServer(HTTPServer):
    expected_path: str = "/"
    captured_query: Optional[dict[str, list[str]]] = None
    log: Optional[logging.LoggerAdapter] = None
    # Read timeout applied to each accepted connection (None: block).
    request_timeout: Optional[float] = None


class _RedirectHandler(BaseHTTPRequestHandler):
    server: _RedirectServer

    def setup(self) -> None:
        # A silent client times out instead of blocking past the deadline.
        self.timeout = self.server.request_timeout
        super().setup()

    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        if path != self.server.expected_path:
            self.send_error(404)
            return

        query = parse_qs(parsed.query)
        self.server.captured_query = query
        page = SUCCESS_PAGE if query.get("code", [""])[0] else FAILURE_PAGE
        body = page.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args) -> None:  # noqa: A002 - signature from http.server
        if self.server.log is not None:
            self.server.log.debug("redirect listener: %s", sanitize_text(format % args))


class RedirectListener:
    """
    One-shot HTTP listener on the OAuth redirect URI.

    Binds on construction so the port is reserved before the browser is
    launched. `wait_for_code()` blocks until the redirect arrives (or the
    optional timeout elapses) and always closes the socket afterwards.
    """

    def __init__(
        self,
        redirect_uri: str,
        *,
        timeout: Optional[float] = None,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        parsed = urlparse(redirect_uri)
        if parsed.scheme != "http" or not parsed.hostname:
            raise ValueError(f"redirect_uri must be an http:// URL with a host, got {redirect_uri!r}")
        self._timeout = timeout
        port = parsed.port if parsed.port is not None else 80
        self._server = _RedirectServer((parsed.hostname, port), _RedirectHandler)
        self._server.expected_path = parsed.path.rstrip("/") or "/"
        self._server.log = log

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    def close(self) -> None:
        self._server.server_close()

    def __enter__(self) -> "RedirectListener":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def wait_for_code(self) -> str:
        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        try:
            while self._server.captured_query is None:
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise AuthenticationFailed(
                            f"No login redirect received within {self._timeout:g} seconds"
                        )
                    self._server.timeout = remaining
                    self._server.request_timeout = remaining
                self._server.handle_request()
        finally:
            self.close()

        query = self._server.captured_query
        error = query.get("error", [""])[0]
        if error:
            description = query.get("error_description", [""])[0]
            raise AuthenticationFailed(f"Login was rejected: {error} {description}".strip())
        code = query.get("code", [""])[0]
        if not code:
            raise AuthenticationFailed("Login redirect did not carry an authorization code")
        return code


def exchange_code_for_token(
    *,
    session: requests.Session,
    settings: ClientSettings,
    code: str,
    code_verifier: str,
    timeout_seconds: float,
    ssl_verify: bool = True,
    clock: Callable[[], datetime] = _utc_now,
    log: logging.LoggerAdapter,
) -> TokenRecord:
    url = config_mod.get_token_url(settings.region)
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": settings.redirect_uri,
        "client_id": settings.client_id,
        "code_verifier": code_verifier,
    }

    log.info("exchanging authorization code for access token")
    log.debug(
        "token request details (sanitized): %s",
        {"url": url, "form": sanitize_mapping(form), "timeout_seconds": timeout_seconds, "ssl_verify": ssl_verify},
    )

    start = time.perf_counter()
    try:
        resp = session.post(url, data=form, timeout=timeout_seconds, verify=ssl_verify)
    except requests.RequestException as e:
        raise AuthenticationFailed(f"/oauth/token request failed: {e}") from e
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    log.debug(
        "token response details: %s",
        {
            "status_code": resp.status_code,
            "elapsed_ms": elapsed_ms,
            "content_type": resp.headers.get("Content-Type"),
        },
    )

    if resp.status_code >= 400:
        raise AuthenticationFailed(
            f"/oauth/token failed: HTTP {resp.status_code}. "
            f"Body (truncated, sanitized): {sanitize_text((resp.text or '')[:800])!r}"
        )

    try:
        payload = resp.json()
    except ValueError as e:
        raise AuthenticationFailed(
            f"/oauth/token response was not valid JSON: {e}. Body: {sanitize_text((resp.text or '')[:800])!r}"
        ) from e
    if not isinstance(payload, dict):
        raise AuthenticationFailed(f"/oauth/token response was not a JSON object: {type(payload).__name__}")

    log.debug("token response body (sanitized): %s", sanitize_obj(payload))

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise AuthenticationFailed(f"/oauth/token response missing access_token. Keys: {sorted(payload.keys())}")
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, int):
        raise AuthenticationFailed(f"/oauth/token response has invalid expires_in: {expires_in!r}")

    try:
        expires_at = clock() + timedelta(seconds=expires_in - TOKEN_WRITE_MARGIN_SECONDS)
    except OverflowError as e:
        raise AuthenticationFailed(f"/oauth/token response has out-of-range expires_in: {expires_in!r}") from e
    log.info("access token acquired (expires_in=%ss)", expires_in)
    return TokenRecord(access_token=access_token, expires_at=expires_at)


class Authenticator:
    """
    Returns a bearer token, reusing the cache or running the browser PKCE flow.

    get_token() is safe to call from several threads; the cache
    read-check-authenticate-write sequence runs under one lock.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        session: Optional[requests.Session] = None,
        open_browser: Callable[[str], bool] = webbrowser.open,
        clock: Callable[[], datetime] = _utc_now,
        listener_factory: Callable[..., RedirectListener] = RedirectListener,
        redirect_timeout: Optional[float] = None,
        timeout_seconds: float = 30.0,
        ssl_verify: bool = True,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self._store = store
        self._session = session if session is not None else requests.Session()
        self._open_browser = open_browser
        self._clock = clock
        self._listener_factory = listener_factory
        self._redirect_timeout = redirect_timeout
        self._timeout_seconds = timeout_seconds
        self._ssl_verify = ssl_verify
        self._log = get_logger("auth", log)
        self._lock = threading.Lock()

    def get_token(self) -> str:
        with self._lock:
            cached = self._store.load_token()
            if cached is not None and cached.is_valid(now=self._clock(), margin_seconds=TOKEN_EXPIRY_MARGIN_SECONDS):
                self._log.debug("using cached token (expires_at=%s)", cached.to_dict()["expires_at"])
                return cached.access_token

            if cached is not None:
                self._log.info("cached token is expired or about to expire; logging in again")
            settings = self._store.load_settings()
            record = self._run_pkce_flow(settings)
            try:
                self._store.save_token(record)
            except OSError as e:
                self._log.warning("could not write token cache (%s); next run will log in again", e)
            return record.access_token

    def _run_pkce_flow(self, settings: ClientSettings) -> TokenRecord:
        pkce = PkceSession.create()
        authorize_url = build_authorization_url(settings, pkce.code_challenge)
        self._log.debug(
            "authorize request (client_id=%s, redirect_uri=%s, region=%s)",
            redact(settings.client_id),
            settings.redirect_uri,
            settings.region,
        )

        try:
            listener = self._listener_factory(settings.redirect_uri, timeout=self._redirect_timeout, log=self._log)
        except (OSError, ValueError) as e:
            raise AuthenticationFailed(f"Cannot listen on redirect URI {settings.redirect_uri}: {e}") from e

        with listener:
            self._log.info("opening browser for login; waiting for redirect on %s", settings.redirect_uri)
            try:
                opened = self._open_browser(authorize_url)
            except webbrowser.Error as e:
                raise AuthenticationFailed(f"Could not launch a browser: {e}") from e
            if not opened:
                self._log.warning("no browser could be launched; open this URL manually: %s", authorize_url)
            try:
                code = listener.wait_for_code()
            except OSError as e:
                raise AuthenticationFailed(f"Redirect listener failed: {e}") from e
        self._log.debug("authorization code received (length=%s)", len(code))

        return exchange_code_for_token(
            session=self._session,
            settings=settings,
            code=code,
            code_verifier=pkce.code_verifier,
            timeout_seconds=self._timeout_seconds,
            ssl_verify=self._ssl_verify,
            clock=self._clock,
            log=self._log,
        )
