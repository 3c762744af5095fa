"""Connection keep-alive policy.

A server may advertise how long it keeps an idle connection open with
``Keep-Alive: timeout=N``. When it does, that duration is honoured for the
route; otherwise the configured default applies.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Mapping
from typing import NamedTuple

import httpcore
import httpx

_DEFAULT_PORTS = {"http": 80, "https": 443}


class Route(NamedTuple):
    """Connection pool key: one route per scheme/host/port."""

    scheme: str
    host: str
    port: int

    @classmethod
    def from_url(cls, url: httpx.URL) -> Route:
        port = url.port or _DEFAULT_PORTS.get(url.scheme, 0)
        return cls(url.scheme, url.host, port)

    @classmethod
    def from_origin(cls, origin: httpcore.Origin) -> Route:
        return cls(
            origin.scheme.decode("ascii"),
            origin.host.decode("ascii"),
            origin.port,
        )


def parse_keep_alive(headers: httpx.Headers) -> float | None:
    """Return the advertised keep-alive timeout in seconds, if any.

    Reads every ``Keep-Alive`` header, e.g. ``timeout=5, max=100``. Malformed
    values are ignored.
    """
    for value in headers.get_list("keep-alive", split_commas=True):
        name, _, param = value.partition("=")
        if name.strip().lower() != "timeout":
            continue
        try:
            return float(param.strip().strip('"'))
        except ValueError:
            continue
    return None


def effective_keep_alive(headers: httpx.Headers, default: float) -> float:
    """Keep-alive duration for a response.

    The server's advertised duration when present and positive, else
    ``default``.
    """
    advertised = parse_keep_alive(headers)
    if advertised is not None and advertised > 0:
        return advertised
    return default


class KeepAlivePolicy:
    """Per-route keep-alive durations learned from responses.

    Only routes whose server advertised a non-default duration are
    remembered, and at most ``max_routes`` of those; the least recently
    observed route is forgotten first.
    """

    def __init__(self, default: float, *, max_routes: int = 1024) -> None:
        self._default = default
        self._max_routes = max_routes
        self._durations: OrderedDict[Route, float] = OrderedDict()

    @property
    def default(self) -> float:
        return self._default

    def observe(self, route: Route, headers: httpx.Headers) -> float:
        """Record the duration a response implies for its route."""
        duration = effective_keep_alive(headers, self._default)
        if duration == self._default:
            self._durations.pop(route, None)
            return duration
        self._durations[route] = duration
        self._durations.move_to_end(route)
        while len(self._durations) > self._max_routes:
            self._durations.popitem(last=False)
        return duration

    def duration_for(self, route: Route) -> float:
        return self._durations.get(route, self._default)

    def snapshot(self) -> Mapping[Route, float]:
        """Routes with a learned, non-default duration."""
        return dict(self._durations)
