"""URL query-parameter capture and reconciliation for visitor sessions.

A visitor's parameters (utm_*, sub ids, click ids...) can be recorded in four
places. ``merge_session_params`` folds them into one ``dict[str, str]`` in a
fixed precedence order, lowest first:

1. the session's persisted ``url_params``
2. the event's ``event_data["url_params"]``
3. the query string of the event's page URL
4. the query string of the session's landing page URL
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import parse_qsl, unquote_plus, urlsplit

logger = logging.getLogger(__name__)


def _split_manually(url: str) -> dict[str, str]:
    """Best-effort ``key=value&...`` parsing for URLs urllib refuses."""
    _, sep, query = url.partition("?")
    if not sep:
        return {}
    query = query.split("#", 1)[0]
    params: dict[str, str] = {}
    for pair in query.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        key = unquote_plus(key)
        if key:
            params[key] = unquote_plus(value)
    return params


def parse_query_params(url: Optional[str]) -> dict[str, str]:
    """Return the query parameters of ``url``; blank values are kept as ``""``."""
    if not url:
        return {}
    try:
        query = urlsplit(url).query
        return {key: value for key, value in parse_qsl(query, keep_blank_values=True) if key}
    except ValueError:
        logger.debug("Falling back to manual query parsing for %r", url)
        return _split_manually(url)


def coerce_params(raw: Any) -> dict[str, str]:
    """Normalize a stored JSON map into ``dict[str, str]`` (drops None values)."""
    if not isinstance(raw, Mapping):
        return {}
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def merge_params(sources: Iterable[Mapping[str, str]]) -> dict[str, str]:
    """Merge maps in order; later maps overwrite earlier keys."""
    merged: dict[str, str] = {}
    for source in sources:
        merged.update(source)
    return merged


def merge_session_params(session: Any, event: Any = None) -> dict[str, str]:
    """Reconcile every known source of URL params for one session.

    ``event`` is the session's most recent page view, if there is one.
    """
    event_data = getattr(event, "event_data", None) if event is not None else None
    event_params = event_data.get("url_params") if isinstance(event_data, Mapping) else None

    return merge_params([
        coerce_params(getattr(session, "url_params", None)),
        coerce_params(event_params),
        parse_query_params(getattr(event, "page_url", None) if event is not None else None),
        parse_query_params(getattr(session, "landing_page_url", None)),
    ])
