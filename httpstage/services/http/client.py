"""Connection pool service.

Owns the shared httpx.AsyncClient that every execution sends through. Each
enable() builds a new pool generation; the previous one is shut down first,
so no caller ever checks out a half-built or closing pool.

Usage:
    service = ConnectionPoolService()
    await service.enable(settings.pool)

    handle = await service.acquire_client()
    async with handle:
        async with handle.stream(request) as response:
            ...

    await service.disable()
"""

from __future__ import annotations

import asyncio
import netrc
import os
import ssl
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import TracebackType
from typing import Protocol

import httpx
import structlog

from httpstage.config import PoolConfig
from httpstage.errors import PoolUnavailableError, TransportError
from httpstage.services.http.keepalive import KeepAlivePolicy
from httpstage.services.http.transport import KeepAliveHTTPTransport, RouteLimitedTransport

logger = structlog.get_logger()


def netrc_auth() -> httpx.NetRCAuth | None:
    """Credentials from the user's netrc file, if there is one.

    The file named by ``NETRC`` is read, else ``~/.netrc``. Hosts without an
    entry are sent without credentials.
    """
    path = os.environ.get("NETRC") or os.path.expanduser("~/.netrc")
    if not os.path.isfile(path):
        return None
    try:
        return httpx.NetRCAuth(path)
    except netrc.NetrcParseError as e:
        logger.warning("pool.netrc_invalid", path=path, error=str(e))
        return None


class TlsContextProvider(Protocol):
    """Supplies the SSL context used for https routes."""

    def create_ssl_context(self) -> ssl.SSLContext: ...


class PoolGeneration:
    """One pool instance, between an enable and the next disable/reconfigure."""

    def __init__(
        self,
        number: int,
        client: httpx.AsyncClient,
        config: PoolConfig,
        policy: KeepAlivePolicy,
    ) -> None:
        self.number = number
        self.client = client
        self.config = config
        self.policy = policy
        self._active = 0
        self._closing = False
        self._closed = False
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def closing(self) -> bool:
        return self._closing

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active(self) -> int:
        """Handles currently checked out."""
        return self._active

    def checkout(self) -> None:
        if self._closing:
            raise PoolUnavailableError(
                "Connection pool is shutting down",
                details={"generation": self.number},
            )
        self._active += 1
        self._drained.clear()

    def checkin(self) -> None:
        self._active -= 1
        if self._active <= 0:
            self._active = 0
            self._drained.set()

    async def shutdown(self, drain_timeout: float) -> None:
        """Reject new checkouts, wait for in-flight handles, then close."""
        if self._closed:
            return
        self._closing = True
        log = logger.bind(component="http_pool", generation=self.number)
        if self._active:
            try:
                await asyncio.wait_for(self._drained.wait(), drain_timeout)
            except TimeoutError:
                log.warning("pool.drain_timeout", in_flight=self._active)
        await self.client.aclose()
        self._closed = True
        log.info("pool.shutdown")


class PoolHandle:
    """Execution handle bound to one pool generation.

    Release it with ``aclose()`` or by using it as an async context manager.
    """

    def __init__(self, generation: PoolGeneration) -> None:
        self._generation = generation
        self._released = False

    @property
    def generation(self) -> int:
        return self._generation.number

    @property
    def closed(self) -> bool:
        """True once the generation this handle is bound to has closed."""
        return self._generation.closed

    async def __aenter__(self) -> PoolHandle:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if not self._released:
            self._released = True
            self._generation.checkin()

    @asynccontextmanager
    async def stream(self, request: httpx.Request) -> AsyncIterator[httpx.Response]:
        """Send ``request`` and yield the response with its body unread.

        The response is closed on exit, returning the connection to the pool.

        Raises:
            PoolUnavailableError: If the handle was released or its pool has
                begun shutdown
            TransportError: On connect/read timeouts and socket or TLS failures
        """
        if self._released or self._generation.closing:
            raise PoolUnavailableError(
                "Execution handle is no longer bound to an open pool",
                details={"generation": self._generation.number},
            )
        client = self._generation.client
        declares_length = "Content-Length" in request.headers
        # send() is as-is; build_request applies the pool headers and timeouts
        request = client.build_request(
            request.method,
            request.url,
            headers=request.headers,
            content=request.content,
        )
        if not declares_length:
            request.headers.pop("Content-Length", None)
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request to {request.url} timed out: {e!r}",
                details={"url": str(request.url)},
            ) from e
        except httpx.TransportError as e:
            if self._generation.closed:
                raise PoolUnavailableError(
                    "Connection pool was closed during the request",
                    details={"generation": self._generation.number},
                ) from e
            raise TransportError(
                f"Request to {request.url} failed: {e!r}",
                details={"url": str(request.url)},
            ) from e
        except RuntimeError as e:
            # httpx refuses to send on a client that has been closed
            if self._generation.closed:
                raise PoolUnavailableError(
                    "Connection pool was closed during the request",
                    details={"generation": self._generation.number},
                ) from e
            raise
        try:
            yield response
        finally:
            await response.aclose()


class ConnectionPoolService:
    """Manages the shared, bounded connection pool.

    Replacing the pool and checking out a handle are serialized by one lock.
    In-flight handles keep the generation they checked out until released.
    """

    def __init__(
        self,
        *,
        tls: TlsContextProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the pool service.

        Args:
            tls: Provider of the SSL context for https routes. The system
                default context is used when omitted.
            transport: Replaces the socket-level transport (tests use
                httpx.MockTransport). Route limits and keep-alive
                observation still wrap it.
        """
        self._tls = tls
        self._transport = transport
        self._lock = asyncio.Lock()
        self._generation: PoolGeneration | None = None
        self._next_number = 1
        self._log = logger.bind(component="http_pool")

    @property
    def is_enabled(self) -> bool:
        return self._generation is not None

    @property
    def generation(self) -> int | None:
        """Number of the current generation, or None when disabled."""
        if self._generation is None:
            return None
        return self._generation.number

    @property
    def keep_alive_policy(self) -> KeepAlivePolicy | None:
        if self._generation is None:
            return None
        return self._generation.policy

    @property
    def client(self) -> httpx.AsyncClient | None:
        """Client of the current generation, or None when disabled."""
        if self._generation is None:
            return None
        return self._generation.client

    async def enable(self, config: PoolConfig) -> None:
        """Build a new pool generation, shutting down the previous one first."""
        async with self._lock:
            previous, self._generation = self._generation, None
            if previous is not None:
                await previous.shutdown(previous.config.drain_timeout)

            number = self._next_number
            self._next_number += 1
            policy = KeepAlivePolicy(config.keep_alive_timeout)
            client = self._build_client(config, policy)
            self._generation = PoolGeneration(number, client, config, policy)

        self._log.info(
            "pool.enabled",
            generation=number,
            max_total=config.effective_max_total,
            max_per_route=config.max_per_route,
            keep_alive_timeout=config.keep_alive_timeout,
        )

    async def disable(self) -> None:
        """Shut down and release the pool. Safe to call repeatedly."""
        async with self._lock:
            previous, self._generation = self._generation, None
            if previous is None:
                return
            await previous.shutdown(previous.config.drain_timeout)
        self._log.info("pool.disabled", generation=previous.number)

    async def acquire_client(self) -> PoolHandle:
        """Check out a handle on the current generation.

        Raises:
            PoolUnavailableError: If the service is disabled
        """
        async with self._lock:
            generation = self._generation
            if generation is None:
                raise PoolUnavailableError("Connection pool is not enabled")
            generation.checkout()
            return PoolHandle(generation)

    def _build_client(self, config: PoolConfig, policy: KeepAlivePolicy) -> httpx.AsyncClient:
        inner = self._transport
        if inner is None:
            inner = KeepAliveHTTPTransport(config, policy, ssl_context=self._ssl_context())
        transport = RouteLimitedTransport(
            inner,
            policy,
            max_per_route=config.max_per_route,
            acquire_timeout=config.connect_timeout,
        )

        auth: httpx.Auth | None = None
        if config.username is not None:
            auth = httpx.BasicAuth(config.username, config.password or "")
        else:
            auth = netrc_auth()

        return httpx.AsyncClient(
            transport=transport,
            auth=auth,
            timeout=httpx.Timeout(
                connect=config.connect_timeout,
                read=config.read_timeout,
                write=config.read_timeout,
                pool=config.connect_timeout,
            ),
            follow_redirects=config.max_redirects > 0,
            max_redirects=config.max_redirects,
            headers={
                "User-Agent": config.user_agent,
                # No transparent content compression
                "Accept-Encoding": "identity",
            },
        )

    def _ssl_context(self) -> ssl.SSLContext:
        if self._tls is not None:
            return self._tls.create_ssl_context()
        return ssl.create_default_context()
