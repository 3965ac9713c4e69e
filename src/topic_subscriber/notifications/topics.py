"""
Available notification topics (REST).

GET /api/v2/notifications/availabletopics with `Authorization: Bearer` and
return the `entities` as Topic values. Only the topic names matter to the
subscription engine; descriptions and grouping are for display.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from .. import config as config_mod
from ..errors import TopicListingFailed
from ..logging_config import get_logger, sanitize_text
from .models import Topic


def api_get_json(
    *,
    session: requests.Session,
    url: str,
    access_token: str,
    timeout_seconds: float,
    ssl_verify: bool = True,
) -> Any:
    """
    Shared authenticated GET helper.

    - Adds Authorization: Bearer
    - Parses JSON and raises `TopicListingFailed` on failures
    """
    headers = {"Authorization": f"Bearer {access_token}"}
    try:
        resp = session.get(url, headers=headers, timeout=timeout_seconds, verify=ssl_verify)
    except requests.RequestException as e:
        raise TopicListingFailed(f"GET {url} failed: {e}") from e

    if resp.status_code >= 400:
        body = (resp.text or "")[:800]
        raise TopicListingFailed(
            f"GET {url} failed: HTTP {resp.status_code}. Body (truncated, sanitized): {sanitize_text(body)!r}"
        )

    try:
        return resp.json()
    except ValueError as e:
        body = (resp.text or "")[:800]
        raise TopicListingFailed(f"GET {url} response was not valid JSON: {e}. Body: {sanitize_text(body)!r}") from e


def _extract_entities(payload: Any, *, url: str) -> list[dict]:
    if not isinstance(payload, dict) or not isinstance(payload.get("entities"), list):
        raise TopicListingFailed(f"Unexpected JSON shape from {url}: expected object with 'entities' list.")
    items = payload["entities"]
    if not all(isinstance(x, dict) for x in items):
        raise TopicListingFailed(f"Unexpected items from {url}: expected list of objects.")
    return items


def list_available_topics(
    access_token: str,
    *,
    region: str,
    session: Optional[requests.Session] = None,
    url: Optional[str] = None,
    timeout_seconds: float = 30.0,
    ssl_verify: bool = True,
    log: Optional[logging.LoggerAdapter] = None,
) -> list[Topic]:
    log = get_logger("topics", log)
    url = url or config_mod.get_available_topics_url(region)
    sess = session if session is not None else requests.Session()

    payload = api_get_json(
        session=sess,
        url=url,
        access_token=access_token,
        timeout_seconds=timeout_seconds,
        ssl_verify=ssl_verify,
    )
    topics = []
    for entity in _extract_entities(payload, url=url):
        name = entity.get("name")
        if not isinstance(name, str) or not name:
            log.debug("skipping topic entity without a name (keys=%s)", sorted(entity.keys()))
            continue
        description = entity.get("description")
        topics.append(Topic(name=name, description=description if isinstance(description, str) else ""))
    log.info("listed %d available topics", len(topics))
    return topics


def group_topics(topics: list[Topic]) -> dict[str, list[Topic]]:
    """Group topics by `grouping_key`, keeping first-seen group order."""
    groups: dict[str, list[Topic]] = {}
    for topic in topics:
        groups.setdefault(topic.grouping_key, []).append(topic)
    return groups
