#!/usr/bin/env python3
"""
Genesys Cloud notification topic subscriber (CLI).

Subcommands:
  login    Obtain a token (browser PKCE login unless a valid one is cached)
  logout   Remove the cached token
  topics   List the available notification topics
  listen   Subscribe to topics and print one line per notification

Client settings are read from <data dir>/settings.json:
    {"client_id": "...", "redirect_uri": "http://localhost:8080", "region": "mypurecloud.com"}

Exit codes: 0 ok, 2 configuration missing or invalid, 3 authentication failed,
4 subscription failed, 5 topic listing failed, 130 interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Callable, Optional, TextIO

from . import config as config_mod
from .api_auth.auth import Authenticator
from .api_auth.credential_store import CredentialStore, format_utc_timestamp
from .errors import (
    AuthenticationFailed,
    ConfigurationInvalid,
    ConfigurationMissing,
    SubscriptionFailed,
    TopicListingFailed,
)
from .logging_config import LOGGER_NAME, configure_logging, sanitize_text
from .notifications.engine import SubscriptionEngine
from .notifications.models import NotificationEvent, format_notification
from .notifications.topics import group_topics, list_available_topics


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="genesys-topics",
        description="Genesys Cloud notification topic subscriber (PKCE login -> topics -> WebSocket).",
    )
    p.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help='Logging verbosity (default: GENESYS_LOG_LEVEL or "INFO").',
    )
    p.add_argument(
        "--data-dir",
        default=None,
        help="Directory with settings.json and the token cache (default: GENESYS_DATA_DIR or the app-data dir).",
    )
    p.add_argument(
        "--timeout-seconds",
        type=float,
        default=None,
        help="HTTP timeout in seconds (default: GENESYS_HTTP_TIMEOUT_SECONDS or 30).",
    )
    p.add_argument(
        "--redirect-timeout-seconds",
        type=float,
        default=None,
        help="Give up waiting for the browser login after this many seconds (default: wait forever).",
    )
    p.add_argument(
        "--insecure-skip-ssl-verify",
        action="store_true",
        help="Disable TLS certificate verification for HTTP calls (NOT recommended).",
    )

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("login", help="Obtain or reuse an access token.")
    sub.add_parser("logout", help="Remove the cached access token.")

    topics = sub.add_parser("topics", help="List available notification topics.")
    topics.add_argument("--grouped", action="store_true", help="Group topics by their third name segment.")
    topics.add_argument("--json", action="store_true", help="Print topics as JSON.")

    listen = sub.add_parser("listen", help="Subscribe and print notifications until Ctrl-C.")
    listen.add_argument("topics", nargs="+", metavar="TOPIC", help="Topic name(s) to subscribe to.")
    return p.parse_args(argv)


def cmd_login(args: argparse.Namespace, *, store: CredentialStore, authenticator: Authenticator, out: TextIO) -> int:
    authenticator.get_token()
    record = store.load_token()
    if record is not None:
        print(f"Logged in. Token valid until {format_utc_timestamp(record.expires_at)}.", file=out)
    else:
        print("Logged in. Token could not be cached.", file=out)
    return 0


def cmd_logout(args: argparse.Namespace, *, store: CredentialStore, authenticator: Authenticator, out: TextIO) -> int:
    if store.clear_token():
        print("Cached token removed.", file=out)
    else:
        print("No cached token.", file=out)
    return 0


def cmd_topics(args: argparse.Namespace, *, store: CredentialStore, authenticator: Authenticator, out: TextIO) -> int:
    settings = store.load_settings()
    token = authenticator.get_token()
    topics = list_available_topics(
        token,
        region=settings.region,
        timeout_seconds=_timeout_seconds(args),
        ssl_verify=not bool(args.insecure_skip_ssl_verify),
    )

    if args.json:
        print(json.dumps([{"name": t.name, "description": t.description} for t in topics], ensure_ascii=False), file=out)
    elif args.grouped:
        for key, items in group_topics(topics).items():
            print(f"{key}:", file=out)
            for t in items:
                print(f"  {t.name}\t{t.description}", file=out)
    else:
        for t in topics:
            print(f"{t.name}\t{t.description}", file=out)
    return 0


async def listen(
    url: str,
    topics: list[str],
    *,
    token_provider: Callable[[], str],
    sink: Callable[[NotificationEvent], None],
    log: Optional[logging.LoggerAdapter] = None,
    **engine_kwargs,
) -> None:
    """Subscribe and stay subscribed until the peer closes the socket or the task is cancelled."""
    async with SubscriptionEngine(url, token_provider, sink, log=log, **engine_kwargs) as engine:
        await engine.subscribe(topics)
        await engine.wait_closed()


def cmd_listen(args: argparse.Namespace, *, store: CredentialStore, authenticator: Authenticator, out: TextIO) -> int:
    settings = store.load_settings()
    url = config_mod.get_notifications_url(settings.region)
    # Interactive login runs here, on the main thread, so Ctrl-C can interrupt it;
    # the engine then reads the token from the cache.
    authenticator.get_token()

    def sink(event: NotificationEvent) -> None:
        print(format_notification(event), file=out, flush=True)

    asyncio.run(listen(url, list(args.topics), token_provider=authenticator.get_token, sink=sink))
    print("Notification socket closed.", file=out)
    return 0


_COMMANDS = {
    "login": cmd_login,
    "logout": cmd_logout,
    "topics": cmd_topics,
    "listen": cmd_listen,
}


def _timeout_seconds(args: argparse.Namespace) -> float:
    if args.timeout_seconds is not None:
        return float(args.timeout_seconds)
    return config_mod.get_http_timeout_seconds()


def build_authenticator(args: argparse.Namespace, store: CredentialStore, log: logging.LoggerAdapter) -> Authenticator:
    redirect_timeout = args.redirect_timeout_seconds
    if redirect_timeout is None:
        redirect_timeout = config_mod.get_redirect_timeout_seconds()
    return Authenticator(
        store,
        redirect_timeout=redirect_timeout,
        timeout_seconds=_timeout_seconds(args),
        ssl_verify=not bool(args.insecure_skip_ssl_verify),
        log=log,
    )


def main(argv: Optional[list[str]] = None, *, out: Optional[TextIO] = None) -> int:
    out = out if out is not None else sys.stdout
    args = parse_args(sys.argv[1:] if argv is None else argv)
    run_id = uuid.uuid4().hex[:12]
    log = configure_logging(run_id=run_id, level=args.log_level or config_mod.get_log_level())
    try:
        data_dir = Path(args.data_dir).expanduser() if args.data_dir else config_mod.get_data_dir()
        store = CredentialStore(data_dir, log=log)
        authenticator = build_authenticator(args, store, log)
        log.debug("running %s (data_dir=%s)", args.command, data_dir)
        return _COMMANDS[args.command](args, store=store, authenticator=authenticator, out=out)
    except (ConfigurationMissing, ConfigurationInvalid) as e:
        log.error("configuration error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except AuthenticationFailed as e:
        # Avoid accidentally printing secrets in error output.
        log.error("authentication failed: %s", sanitize_text(str(e)))
        print(f"Error: {sanitize_text(str(e))}", file=sys.stderr)
        return 3
    except SubscriptionFailed as e:
        log.error("subscription failed: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 4
    except TopicListingFailed as e:
        log.error("topic listing failed: %s", sanitize_text(str(e)))
        print(f"Error: {sanitize_text(str(e))}", file=sys.stderr)
        return 5
    except KeyboardInterrupt:
        logging.getLogger(LOGGER_NAME).warning("interrupted by user")
        print("Interrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
