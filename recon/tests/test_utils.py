"""Tests for shared utility functions."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from recon.utils import TRUNCATION_MARKER, as_utc, cap_text, hash_text, json_parse, normalize_whitespace


class TestJsonParse:
    def test_valid(self):
        assert json_parse('{"a": 1}') == {"a": 1}

    def test_invalid_returns_empty_dict(self):
        assert json_parse("not json") == {}
        assert json_parse(None) == {}

    def test_explicit_default(self):
        assert json_parse("", default=[]) == []
        assert json_parse("oops", default=None) is None


class TestHashText:
    def test_whitespace_insensitive(self):
        assert hash_text("Mercy  Health\n opens\tclinic") == hash_text("Mercy Health opens clinic")

    def test_nbsp_treated_as_space(self):
        assert hash_text("a\xa0b") == hash_text("a b")

    def test_content_sensitive(self):
        assert hash_text("a b") != hash_text("a c")

    def test_normalize_whitespace(self):
        assert normalize_whitespace("  x \n y  ") == "x y"


class TestCapText:
    def test_within_limit(self):
        assert cap_text("abc", 3) == "abc"

    def test_truncated(self):
        assert cap_text("abcdef", 3) == "abc" + TRUNCATION_MARKER

    def test_custom_marker(self):
        assert cap_text("abcdef", 2, marker="...") == "ab..."

    def test_none(self):
        assert cap_text(None, 5) == ""


class TestAsUtc:
    def test_naive_tagged(self):
        assert as_utc(datetime(2026, 1, 1, 9)) == datetime(2026, 1, 1, 9, tzinfo=UTC)

    def test_aware_converted(self):
        plus_two = timezone(timedelta(hours=2))
        result = as_utc(datetime(2026, 1, 1, 9, tzinfo=plus_two))
        assert result == datetime(2026, 1, 1, 7, tzinfo=UTC)
        assert result.tzinfo is UTC

    def test_none(self):
        assert as_utc(None) is None
