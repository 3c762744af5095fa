"""Pooled HTTP transport.

Two layers sit under the shared httpx.AsyncClient:

- KeepAliveHTTPTransport: the socket-level pool. Each connection adopts the
  keep-alive duration its server advertises as soon as the response headers
  arrive, so the connection that received ``Keep-Alive: timeout=N`` stays
  reusable for exactly that long. New connections start from the duration
  last learned for their route.
- RouteLimitedTransport: caps concurrent requests per route and feeds every
  response's Keep-Alive header back into the policy. It wraps any transport,
  which lets tests put an httpx.MockTransport underneath.
"""

from __future__ import annotations

import asyncio
import socket
import ssl
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import Any

import httpcore
import httpx
import structlog

from httpstage.config import PoolConfig
from httpstage.services.http.keepalive import KeepAlivePolicy, Route

logger = structlog.get_logger()

SocketOption = tuple[int, int, int]


def build_socket_options(config: PoolConfig) -> list[SocketOption]:
    """Socket-level settings applied to every new connection."""
    options: list[SocketOption] = [
        (socket.SOL_SOCKET, socket.SO_RCVBUF, config.buffer_size),
        (socket.SOL_SOCKET, socket.SO_SNDBUF, config.buffer_size),
    ]
    if config.tcp_no_delay:
        options.append((socket.IPPROTO_TCP, socket.TCP_NODELAY, 1))
    return options


class KeepAliveHTTPConnection(httpcore.AsyncHTTPConnection):
    """Connection whose idle expiry follows its server's Keep-Alive header."""

    def __init__(
        self,
        origin: httpcore.Origin,
        policy: KeepAlivePolicy,
        **kwargs: Any,
    ) -> None:
        self._route = Route.from_origin(origin)
        self._keep_alive_policy = policy
        super().__init__(
            origin=origin,
            keepalive_expiry=policy.duration_for(self._route),
            **kwargs,
        )

    @property
    def keep_alive(self) -> float | None:
        return self._keepalive_expiry

    async def handle_async_request(self, request: httpcore.Request) -> httpcore.Response:
        response = await super().handle_async_request(request)
        self.adopt_keep_alive(httpx.Headers(response.headers))
        return response

    def adopt_keep_alive(self, headers: httpx.Headers) -> float:
        """Apply the duration ``headers`` imply to this live connection."""
        duration = self._keep_alive_policy.observe(self._route, headers)
        self._keepalive_expiry = duration
        # The HTTP/1.1 connection computes its idle deadline from this when the
        # response closes, so it must be set before the body is released
        if self._connection is not None:
            self._connection._keepalive_expiry = duration
        return duration


class KeepAliveConnectionPool(httpcore.AsyncConnectionPool):
    """Connection pool whose connections expire per the route's keep-alive."""

    def __init__(
        self,
        policy: KeepAlivePolicy,
        *,
        ssl_context: ssl.SSLContext,
        max_connections: int,
        socket_options: list[SocketOption],
        network_backend: httpcore.AsyncNetworkBackend | None = None,
    ) -> None:
        super().__init__(
            ssl_context=ssl_context,
            max_connections=max_connections,
            keepalive_expiry=policy.default,
            network_backend=network_backend,
            socket_options=socket_options,
        )
        self._keep_alive_policy = policy
        self._connection_ssl_context = ssl_context
        self._connection_socket_options = socket_options

    @property
    def ssl_context(self) -> ssl.SSLContext:
        return self._connection_ssl_context

    def create_connection(self, origin: httpcore.Origin) -> httpcore.AsyncConnectionInterface:
        return KeepAliveHTTPConnection(
            origin,
            self._keep_alive_policy,
            ssl_context=self._connection_ssl_context,
            network_backend=self._network_backend,
            socket_options=self._connection_socket_options,
        )


class KeepAliveHTTPTransport(httpx.AsyncHTTPTransport):
    """httpx transport backed by a KeepAliveConnectionPool."""

    def __init__(
        self,
        config: PoolConfig,
        policy: KeepAlivePolicy,
        *,
        ssl_context: ssl.SSLContext,
    ) -> None:
        socket_options = build_socket_options(config)
        super().__init__(verify=ssl_context, socket_options=socket_options)
        # httpx exposes no hook for the connection factory; swap the pool it built
        self._pool = KeepAliveConnectionPool(
            policy,
            ssl_context=ssl_context,
            max_connections=config.effective_max_total,
            socket_options=socket_options,
        )

    @property
    def pool(self) -> KeepAliveConnectionPool:
        return self._pool


class _ReleasingStream(httpx.AsyncByteStream):
    """Response stream that runs ``release`` once when closed."""

    def __init__(self, stream: httpx.AsyncByteStream, release: Callable[[], None]) -> None:
        self._stream = stream
        self._release = release
        self._released = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        async for chunk in self._stream:
            yield chunk

    async def aclose(self) -> None:
        try:
            await self._stream.aclose()
        finally:
            if not self._released:
                self._released = True
                self._release()


class _RouteSlots:
    """Concurrency slots for one route, plus how many requests hold or await one."""

    def __init__(self, limit: int) -> None:
        self.semaphore = asyncio.Semaphore(limit)
        self.users = 0


class RouteLimitedTransport(httpx.AsyncBaseTransport):
    """Per-route concurrency cap and keep-alive observation.

    A route's slots exist only while some request holds or awaits one, so
    the table stays as large as the set of routes currently in use.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        policy: KeepAlivePolicy,
        *,
        max_per_route: int,
        acquire_timeout: float | None = None,
    ) -> None:
        self._transport = transport
        self._policy = policy
        self._max_per_route = max_per_route
        self._acquire_timeout = acquire_timeout
        self._routes: dict[Route, _RouteSlots] = {}
        self._log = logger.bind(component="route_transport")

    @property
    def wrapped(self) -> httpx.AsyncBaseTransport:
        return self._transport

    @property
    def active_routes(self) -> int:
        """Routes with a request in flight or waiting for a slot."""
        return len(self._routes)

    def _enter(self, route: Route) -> _RouteSlots:
        slots = self._routes.get(route)
        if slots is None:
            slots = _RouteSlots(self._max_per_route)
            self._routes[route] = slots
        slots.users += 1
        return slots

    def _leave(self, route: Route, slots: _RouteSlots, *, acquired: bool) -> None:
        if acquired:
            slots.semaphore.release()
        slots.users -= 1
        if slots.users == 0 and self._routes.get(route) is slots:
            del self._routes[route]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        route = Route.from_url(request.url)
        slots = self._enter(route)
        try:
            await asyncio.wait_for(slots.semaphore.acquire(), self._acquire_timeout)
        except TimeoutError as e:
            self._leave(route, slots, acquired=False)
            raise httpx.PoolTimeout(
                f"No connection available for {route.host}:{route.port}",
                request=request,
            ) from e
        except BaseException:
            self._leave(route, slots, acquired=False)
            raise
        try:
            response = await self._transport.handle_async_request(request)
        except BaseException:
            self._leave(route, slots, acquired=True)
            raise

        stream = response.stream
        if not isinstance(stream, httpx.AsyncByteStream):
            self._leave(route, slots, acquired=True)
            raise TypeError(
                f"{type(self._transport).__name__} returned a synchronous response stream"
            )

        duration = self._policy.observe(route, response.headers)
        if duration != self._policy.default:
            self._log.debug(
                "pool.keep_alive.advertised",
                route=f"{route.scheme}://{route.host}:{route.port}",
                seconds=duration,
            )

        return httpx.Response(
            status_code=response.status_code,
            headers=response.headers,
            stream=_ReleasingStream(stream, partial(self._leave, route, slots, acquired=True)),
            extensions=response.extensions,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()
