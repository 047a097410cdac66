"""Tests for URL parameter capture and merge order."""
from __future__ import annotations

from types import SimpleNamespace

from src.analytics.url_params import coerce_params, merge_params, merge_session_params, parse_query_params


def test_later_sources_win():
    assert merge_params([{"a": "1"}, {"a": "2", "b": "3"}]) == {"a": "2", "b": "3"}


def test_parse_query_params_keeps_blank_values():
    assert parse_query_params("https://shop.test/p?utm_source=x&empty=&sub1=a%20b") == {
        "utm_source": "x", "empty": "", "sub1": "a b",
    }


def test_parse_query_params_without_query():
    assert parse_query_params("https://shop.test/p") == {}
    assert parse_query_params(None) == {}
    assert parse_query_params("") == {}


def test_parse_query_params_falls_back_on_malformed_url():
    # urllib rejects the unbalanced IPv6 bracket; the manual split still reads the query
    assert parse_query_params("http://[::1/landing?ref=12&sub2=z") == {"ref": "12", "sub2": "z"}


def test_coerce_params_stringifies_and_drops_none():
    assert coerce_params({"n": 5, "gone": None, "s": "x"}) == {"n": "5", "s": "x"}
    assert coerce_params(["not", "a", "map"]) == {}
    assert coerce_params(None) == {}


def test_merge_session_params_precedence():
    session = SimpleNamespace(
        url_params={"a": "session", "only_session": "1"},
        landing_page_url="https://shop.test/?a=landing&d=4",
    )
    event = SimpleNamespace(
        event_data={"url_params": {"a": "event_data", "b": "2"}},
        page_url="https://shop.test/p?a=page&c=3",
    )
    assert merge_session_params(session, event) == {
        "a": "landing",
        "only_session": "1",
        "b": "2",
        "c": "3",
        "d": "4",
    }


def test_merge_session_params_without_event():
    session = SimpleNamespace(url_params=None, landing_page_url="https://shop.test/?ref=9")
    assert merge_session_params(session) == {"ref": "9"}
