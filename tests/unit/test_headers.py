"""Unit tests for the header sanitizer and relay header rules.

Covers:
  - PERMISSIVE / STRICT character policies for names and values
  - idempotence and unchanged compliant input
  - empty-name drop, multi-value shape, non-string coercion
  - ASGI raw-pair sanitization and change reporting
  - minimal_headers() fallback set
  - relay request/response header stripping
"""

from __future__ import annotations

import re

import pytest

from portal.proxy.headers import (
    HOP_BY_HOP_HEADERS,
    Profile,
    build_relay_request_headers,
    build_relay_response_headers,
    collect_header_pairs,
    expand_header_pairs,
    minimal_headers,
    sanitize_headers,
    sanitize_raw_headers,
    sanitize_value,
)

PERMISSIVE_OK = re.compile(r"^[\t\x20-\x7E\x80-\xFF]*$")
STRICT_OK = re.compile(r"^[\x20-\x7E]*$")

# Every code point 0x00–0xFF plus a few beyond latin-1.
ALL_BYTES = "".join(chr(i) for i in range(256)) + " é\U0001F600"


# ─── sanitize_value() ─────────────────────────────────────────────────────────


class TestSanitizeValue:
    def test_crlf_removed_permissive(self) -> None:
        assert sanitize_value("a\r\nb") == "ab"

    def test_htab_kept_permissive(self) -> None:
        assert sanitize_value("a\tb") == "a\tb"

    def test_htab_removed_strict(self) -> None:
        assert sanitize_value("a\tb", Profile.STRICT) == "ab"

    def test_obs_text_kept_permissive(self) -> None:
        assert sanitize_value("caf\xe9") == "caf\xe9"

    def test_obs_text_removed_strict(self) -> None:
        assert sanitize_value("caf\xe9", Profile.STRICT) == "caf"

    def test_del_removed(self) -> None:
        assert sanitize_value("a\x7fb") == "ab"
        assert sanitize_value("a\x7fb", Profile.STRICT) == "ab"

    def test_beyond_latin1_removed_permissive(self) -> None:
        assert sanitize_value("x y\U0001F600") == "x y"

    def test_non_string_coerced(self) -> None:
        assert sanitize_value(42) == "42"

    @pytest.mark.parametrize("profile,pattern", [
        (Profile.PERMISSIVE, PERMISSIVE_OK),
        (Profile.STRICT, STRICT_OK),
    ])
    def test_output_within_profile(self, profile: Profile, pattern: re.Pattern[str]) -> None:
        assert pattern.match(sanitize_value(ALL_BYTES, profile))

    @pytest.mark.parametrize("profile", list(Profile))
    def test_idempotent(self, profile: Profile) -> None:
        once = sanitize_value(ALL_BYTES, profile)
        assert sanitize_value(once, profile) == once

    def test_compliant_unchanged(self) -> None:
        value = "Mozilla/5.0 (X11; Linux x86_64)"
        assert sanitize_value(value) == value
        assert sanitize_value(value, Profile.STRICT) == value


# ─── sanitize_headers() ───────────────────────────────────────────────────────


class TestSanitizeHeaders:
    def test_values_sanitized(self) -> None:
        assert sanitize_headers({"X-Test": "a\r\nb"}) == {"X-Test": "ab"}

    def test_names_sanitized(self) -> None:
        assert sanitize_headers({"X-\x00Test": "v"}) == {"X-Test": "v"}

    def test_empty_name_dropped(self) -> None:
        assert sanitize_headers({"\r\n": "value", "ok": "1"}) == {"ok": "1"}

    def test_whitespace_name_dropped(self) -> None:
        assert sanitize_headers({" \t": "value"}) == {}

    def test_none_value_dropped(self) -> None:
        assert sanitize_headers({"a": None}) == {}  # type: ignore[dict-item]

    def test_multi_value_shape_preserved(self) -> None:
        result = sanitize_headers({"Set-Cookie": ["a=1\n", "b=2", "\r"]})
        assert result == {"Set-Cookie": ["a=1", "b=2", ""]}

    def test_tuple_value_becomes_list(self) -> None:
        assert sanitize_headers({"Accept": ("a", "b")}) == {"Accept": ["a", "b"]}

    def test_numeric_value_coerced(self) -> None:
        assert sanitize_headers({"Content-Length": 12}) == {"Content-Length": "12"}  # type: ignore[dict-item]

    def test_case_preserved(self) -> None:
        assert list(sanitize_headers({"X-Mixed-Case": "v"})) == ["X-Mixed-Case"]

    def test_input_not_modified(self) -> None:
        original = {"X-Test": "a\r\nb"}
        sanitize_headers(original)
        assert original == {"X-Test": "a\r\nb"}

    @pytest.mark.parametrize("profile", list(Profile))
    def test_idempotent(self, profile: Profile) -> None:
        headers = {"A\x01": ALL_BYTES, "B": [ALL_BYTES, "x"], "\x02": "gone"}
        once = sanitize_headers(headers, profile)
        assert sanitize_headers(once, profile) == once

    def test_no_empty_keys(self) -> None:
        headers = {chr(i): "v" for i in range(0, 0x21)}
        assert all(name.strip() for name in sanitize_headers(headers))


# ─── sanitize_raw_headers() ───────────────────────────────────────────────────


class TestSanitizeRawHeaders:
    def test_reports_change(self) -> None:
        pairs, changed = sanitize_raw_headers([(b"x-test", b"a\r\nb")])
        assert pairs == [(b"x-test", b"ab")]
        assert changed is True

    def test_reports_no_change(self) -> None:
        raw = [(b"accept", b"*/*"), (b"user-agent", b"curl/8.0")]
        pairs, changed = sanitize_raw_headers(raw)
        assert pairs == raw
        assert changed is False

    def test_obs_text_bytes_round_trip(self) -> None:
        pairs, changed = sanitize_raw_headers([(b"x-name", b"caf\xe9")])
        assert pairs == [(b"x-name", b"caf\xe9")]
        assert changed is False

    def test_empty_name_dropped_and_reported(self) -> None:
        pairs, changed = sanitize_raw_headers([(b"\x00", b"v"), (b"a", b"1")])
        assert pairs == [(b"a", b"1")]
        assert changed is True

    def test_repeated_names_keep_order(self) -> None:
        raw = [(b"cookie", b"a=1"), (b"accept", b"*/*"), (b"cookie", b"b=2")]
        pairs, _ = sanitize_raw_headers(raw)
        assert pairs == raw


# ─── minimal_headers() ────────────────────────────────────────────────────────


class TestMinimalHeaders:
    def test_only_allowlisted_kept(self) -> None:
        headers = {
            "Accept": "*/*",
            "Accept-Language": "en",
            "Content-Type": "text/plain",
            "Content-Length": "3",
            "User-Agent": "ua",
            "Cookie": "session=1",
            "X-Custom": "x",
        }
        assert set(minimal_headers(headers)) == {
            "Accept", "Accept-Language", "Content-Type", "Content-Length", "User-Agent",
        }

    def test_strict_profile_applied(self) -> None:
        assert minimal_headers({"user-agent": "caf\xe9\tbot"}) == {"user-agent": "cafbot"}

    def test_case_insensitive(self) -> None:
        assert minimal_headers({"ACCEPT": "a"}) == {"ACCEPT": "a"}


# ─── Shape conversion ─────────────────────────────────────────────────────────


class TestShapeConversion:
    def test_expand(self) -> None:
        assert expand_header_pairs({"a": ["1", "2"], "b": "3"}) == [("a", "1"), ("a", "2"), ("b", "3")]

    def test_collect(self) -> None:
        assert collect_header_pairs([("a", "1"), ("b", "3"), ("a", "2"), ("a", "4")]) == {
            "a": ["1", "2", "4"],
            "b": "3",
        }


# ─── Relay header rules ───────────────────────────────────────────────────────


class TestRelayRequestHeaders:
    def test_relay_control_headers_stripped(self) -> None:
        result = build_relay_request_headers([
            ("X-Bare-URL", "https://example.com/"),
            ("x-bare-headers", "{}"),
            ("Accept", "*/*"),
        ])
        assert result == {"Accept": "*/*"}

    @pytest.mark.parametrize("name", sorted(HOP_BY_HOP_HEADERS))
    def test_hop_by_hop_stripped(self, name: str) -> None:
        assert build_relay_request_headers([(name, "v")]) == {}

    def test_connection_tokens_stripped(self) -> None:
        result = build_relay_request_headers([
            ("Connection", "keep-alive, X-Private"),
            ("X-Private", "secret"),
            ("X-Public", "ok"),
        ])
        assert result == {"X-Public": "ok"}

    def test_repeated_names_collected(self) -> None:
        result = build_relay_request_headers([("Cookie", "a=1"), ("Cookie", "b=2")])
        assert result == {"Cookie": ["a=1", "b=2"]}


class TestRelayResponseHeaders:
    def test_content_encoding_stripped(self) -> None:
        result = build_relay_response_headers({"Content-Encoding": "gzip", "Content-Type": "text/html"})
        assert result == [("Content-Type", "text/html")]

    def test_multi_value_expanded(self) -> None:
        result = build_relay_response_headers({"Set-Cookie": ["a=1", "b=2"]})
        assert result == [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]

    def test_hop_by_hop_stripped(self) -> None:
        result = build_relay_response_headers({"Transfer-Encoding": "chunked", "X-Ok": "1"})
        assert result == [("X-Ok", "1")]
