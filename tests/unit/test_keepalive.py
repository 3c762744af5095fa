"""Unit tests for the keep-alive policy."""

from __future__ import annotations

import httpcore
import httpx
import pytest

from httpstage.services.http import (
    KeepAlivePolicy,
    Route,
    effective_keep_alive,
    parse_keep_alive,
)


class TestParseKeepAlive:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("timeout=5, max=100", 5.0),
            ("max=100, timeout=30", 30.0),
            ('timeout="7"', 7.0),
            ("Timeout = 2.5", 2.5),
        ],
    )
    def test_reads_timeout(self, value, expected):
        assert parse_keep_alive(httpx.Headers({"Keep-Alive": value})) == expected

    def test_absent_header(self):
        assert parse_keep_alive(httpx.Headers()) is None

    def test_malformed_timeout_ignored(self):
        assert parse_keep_alive(httpx.Headers({"Keep-Alive": "timeout=soon, max=5"})) is None

    def test_header_without_timeout(self):
        assert parse_keep_alive(httpx.Headers({"Keep-Alive": "max=5"})) is None


class TestEffectiveKeepAlive:
    def test_advertised_duration_wins(self):
        headers = httpx.Headers({"Keep-Alive": "timeout=9"})
        assert effective_keep_alive(headers, 4.0) == 9.0

    def test_default_without_header(self):
        assert effective_keep_alive(httpx.Headers(), 4.0) == 4.0

    @pytest.mark.parametrize("value", ["timeout=0", "timeout=-3"])
    def test_non_positive_falls_back_to_default(self, value):
        assert effective_keep_alive(httpx.Headers({"Keep-Alive": value}), 4.0) == 4.0


class TestRoute:
    def test_default_ports(self):
        assert Route.from_url(httpx.URL("https://example.org/a")) == Route("https", "example.org", 443)
        assert Route.from_url(httpx.URL("http://example.org/a")) == Route("http", "example.org", 80)

    def test_explicit_port(self):
        assert Route.from_url(httpx.URL("http://localhost:2710/")) == Route("http", "localhost", 2710)

    def test_url_and_origin_agree(self):
        origin = httpcore.Origin(b"http", b"localhost", 2710)
        assert Route.from_origin(origin) == Route.from_url(httpx.URL("http://localhost:2710/x"))


class TestKeepAlivePolicy:
    def test_unknown_route_uses_default(self):
        policy = KeepAlivePolicy(4.0)
        assert policy.duration_for(Route("http", "a", 80)) == 4.0

    def test_learns_per_route(self):
        policy = KeepAlivePolicy(4.0)
        a = Route("http", "a", 80)
        b = Route("http", "b", 80)

        assert policy.observe(a, httpx.Headers({"Keep-Alive": "timeout=12"})) == 12.0
        policy.observe(b, httpx.Headers())

        assert policy.duration_for(a) == 12.0
        assert policy.duration_for(b) == 4.0
        assert policy.snapshot() == {a: 12.0}

    def test_latest_response_wins(self):
        policy = KeepAlivePolicy(4.0)
        route = Route("http", "a", 80)
        policy.observe(route, httpx.Headers({"Keep-Alive": "timeout=12"}))
        policy.observe(route, httpx.Headers())
        assert policy.duration_for(route) == 4.0
        assert policy.snapshot() == {}

    def test_least_recent_route_forgotten(self):
        policy = KeepAlivePolicy(4.0, max_routes=2)
        advertised = httpx.Headers({"Keep-Alive": "timeout=12"})
        a, b, c = (Route("http", name, 80) for name in "abc")

        policy.observe(a, advertised)
        policy.observe(b, advertised)
        policy.observe(a, advertised)
        policy.observe(c, advertised)

        assert set(policy.snapshot()) == {a, c}
        assert policy.duration_for(b) == 4.0
