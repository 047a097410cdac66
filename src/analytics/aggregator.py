"""Dashboard aggregations over a list of visitor sessions.

Every function here is pure: it takes the already-selected sessions (ORM rows
or anything with the same attributes) and returns plain dicts/lists ready to
serialize. Nothing is shared between calls, so the stats endpoint can run all
of them over one query result without re-querying.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from src.analytics.url_params import merge_session_params

TOP_N = 10


def _pages(session: Any) -> list[str]:
    return list(getattr(session, "pages_visited", None) or [])


def _pct(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0


def _ranked(counter: Counter, limit: Optional[int] = None) -> list[tuple[str, int]]:
    # Counter.most_common is stable for ties (first-seen order)
    return counter.most_common(limit)


# ── Scalar metrics ───────────────────────────────────────────────────────────

def bounce_rate(sessions: Sequence[Any]) -> float:
    total = len(sessions)
    bounced = sum(1 for s in sessions if s.is_bounce)
    return _pct(bounced, total)


def avg_session_time(sessions: Sequence[Any]) -> float:
    """Mean total_time over sessions that have one. Missing values are skipped, not zeroed."""
    times = [s.total_time for s in sessions if s.total_time is not None]
    return sum(times) / len(times) if times else 0


def pages_per_session(sessions: Sequence[Any]) -> float:
    total = len(sessions)
    if total == 0:
        return 0
    return sum(len(_pages(s)) for s in sessions) / total


def summary_metrics(sessions: Sequence[Any]) -> dict:
    total = len(sessions)
    return {
        "total_visitors": total,
        "unique_visitors": len({s.visitor_id for s in sessions}),
        "sessions": total,
        "bounce_rate": bounce_rate(sessions),
        "avg_session_time": avg_session_time(sessions),
        "pages_per_session": pages_per_session(sessions),
    }


# ── Page breakdowns ──────────────────────────────────────────────────────────

def top_pages(sessions: Sequence[Any], limit: int = TOP_N) -> list[dict]:
    """Views per path. A view counts as a bounce only when it was the session's sole page."""
    views: Counter = Counter()
    bounces: Counter = Counter()
    for session in sessions:
        pages = _pages(session)
        for path in pages:
            views[path] += 1
        if len(pages) == 1:
            bounces[pages[0]] += 1

    return [
        {
            "path": path,
            "url": path,
            "views": count,
            "bounceRate": _pct(bounces[path], count),
        }
        for path, count in _ranked(views, limit)
    ]


def entry_pages(sessions: Sequence[Any], limit: int = TOP_N) -> list[dict]:
    counter = Counter(s.entry_page or "/" for s in sessions)
    return [
        {"path": path, "url": path, "entries": count}
        for path, count in _ranked(counter, limit)
    ]


def exit_pages(sessions: Sequence[Any], limit: int = TOP_N) -> list[dict]:
    counter = Counter(s.exit_page for s in sessions if s.exit_page)
    return [
        {"path": path, "url": path, "exits": count}
        for path, count in _ranked(counter, limit)
    ]


# ── Audience breakdowns ──────────────────────────────────────────────────────

def traffic_source(session: Any) -> str:
    if session.referrer_type == "direct":
        return "direct"
    return session.referrer_domain or "unknown"


def traffic_sources(sessions: Sequence[Any], limit: int = TOP_N) -> list[dict]:
    counter = Counter(traffic_source(s) for s in sessions)
    total = sum(counter.values())
    return [
        {"source": source, "visitors": count, "percentage": _pct(count, total)}
        for source, count in _ranked(counter, limit)
    ]


def devices(sessions: Sequence[Any]) -> list[dict]:
    counter = Counter(s.device_type or "unknown" for s in sessions)
    total = sum(counter.values())
    return [
        {"type": device, "count": count, "percentage": _pct(count, total)}
        for device, count in _ranked(counter)
    ]


def classify_browser(user_agent: Optional[str]) -> str:
    """Substring match in priority order. Chrome UAs also say Safari, so Chrome wins."""
    ua = user_agent or ""
    if "Chrome" in ua:
        return "Chrome"
    if "Safari" in ua:
        return "Safari"
    if "Firefox" in ua:
        return "Firefox"
    if "Edge" in ua:
        return "Edge"
    if "Opera" in ua:
        return "Opera"
    return "Unknown"


def browsers(sessions: Sequence[Any]) -> list[dict]:
    counter = Counter(classify_browser(s.user_agent) for s in sessions if s.user_agent)
    total = sum(counter.values())
    return [
        {"name": name, "count": count, "percentage": _pct(count, total)}
        for name, count in _ranked(counter)
    ]


def geography(sessions: Sequence[Any], limit: int = TOP_N) -> list[dict]:
    counter = Counter(s.location_country or "Unknown" for s in sessions)
    total = sum(counter.values())
    return [
        {"country": country, "visitors": count, "percentage": _pct(count, total)}
        for country, count in _ranked(counter, limit)
    ]


# ── Active visitors ──────────────────────────────────────────────────────────

def latest_page_views(events: Sequence[Any]) -> dict[str, Any]:
    """First event seen per session. ``events`` must already be newest-first."""
    latest: dict[str, Any] = {}
    for event in events:
        if event.session_id not in latest:
            latest[event.session_id] = event
    return latest


def current_page(session: Any, event: Any = None) -> str:
    if event is not None and getattr(event, "page_path", None):
        return event.page_path
    pages = _pages(session)
    return pages[-1] if pages else "/"


def active_visitor(session: Any, event: Any = None, affiliate: Any = None) -> dict:
    return {
        "session_id": session.session_id,
        "visitor_id": session.visitor_id,
        "affiliate_id": session.affiliate_id,
        "affiliate_name": getattr(affiliate, "name", None),
        "affiliate_number": getattr(affiliate, "affiliate_number", None),
        "currentPage": current_page(session, event),
        "device": session.device_type or "Unknown",
        "browser": classify_browser(session.user_agent),
        "location": session.location_country or "Unknown",
        "lastSeen": session.updated_at,
        "pageViews": session.page_views or len(_pages(session)),
        "landingPage": session.landing_page_url or session.entry_page,
        "url_params": merge_session_params(session, event),
    }


def active_visitors(
    sessions: Sequence[Any],
    latest_events: Mapping[str, Any],
    affiliates: Mapping[str, Any],
) -> list[dict]:
    return [
        active_visitor(s, latest_events.get(s.id), affiliates.get(s.affiliate_id))
        for s in sessions
    ]


# ── Per-affiliate grouping ───────────────────────────────────────────────────

@dataclass
class AffiliateTraffic:
    affiliate_id: str
    sessions: list = field(default_factory=list)
    visitor_ids: set = field(default_factory=set)
    page_views: int = 0
    visitors: list = field(default_factory=list)

    def as_dict(self, affiliate: Any = None) -> dict:
        return {
            "affiliate_id": self.affiliate_id,
            "affiliate_name": getattr(affiliate, "name", None),
            "affiliate_number": getattr(affiliate, "affiliate_number", None),
            "sessions": len(self.sessions),
            "unique_visitors": len(self.visitor_ids),
            "page_views": self.page_views,
            "bounce_rate": bounce_rate(self.sessions),
            "avg_session_time": avg_session_time(self.sessions),
            "active_visitors": self.visitors,
        }


def group_by_affiliate(
    sessions: Sequence[Any],
    latest_events: Mapping[str, Any],
    affiliates: Mapping[str, Any],
) -> list[dict]:
    """Fold attributable sessions into per-affiliate traffic summaries."""
    groups: dict[str, AffiliateTraffic] = {}
    for session in sessions:
        if not session.affiliate_id:
            continue
        group = groups.get(session.affiliate_id)
        if group is None:
            group = groups[session.affiliate_id] = AffiliateTraffic(session.affiliate_id)
        affiliate = affiliates.get(session.affiliate_id)
        group.sessions.append(session)
        group.visitor_ids.add(session.visitor_id)
        group.page_views += session.page_views or 0
        group.visitors.append(active_visitor(session, latest_events.get(session.id), affiliate))

    result = [g.as_dict(affiliates.get(aid)) for aid, g in groups.items()]
    result.sort(key=lambda g: g["sessions"], reverse=True)
    return result


def build_dashboard(
    sessions: Sequence[Any],
    latest_events: Mapping[str, Any],
    affiliates: Mapping[str, Any],
) -> dict:
    """All dashboard sections for one session set."""
    return {
        "metrics": summary_metrics(sessions),
        "activeVisitors": active_visitors(sessions, latest_events, affiliates),
        "topPages": top_pages(sessions),
        "entryPages": entry_pages(sessions),
        "exitPages": exit_pages(sessions),
        "trafficSources": traffic_sources(sessions),
        "devices": devices(sessions),
        "browsers": browsers(sessions),
        "geography": geography(sessions),
        "affiliates": group_by_affiliate(sessions, latest_events, affiliates),
    }
