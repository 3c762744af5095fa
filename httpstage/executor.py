"""Templated HTTP request execution.

For each record: resolve the template, build the request, send it through a
pooled handle and split the result.

- 2xx: the original goes to ``request-success``; a child record carrying the
  response headers as attributes and the response body as content goes to
  ``response-success``.
- Anything else: the response body is captured into ``http.response`` and
  the record fails.

Every failure, whatever raised it, ends with the penalized record on
``failure``. Nothing is retried here.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from enum import Enum

import httpx
import structlog

from httpstage.errors import (
    ClientProtocolError,
    PoolUnavailableError,
    StageError,
    StreamingError,
    TransportError,
)
from httpstage.records import (
    ATTR_ERROR_RESPONSE,
    ATTR_MESSAGE,
    ATTR_STATUS,
    ATTR_URL,
    Failure,
    Outcome,
    Record,
    Relationship,
    Success,
)
from httpstage.request import build_request
from httpstage.services.http.client import ConnectionPoolService, PoolHandle
from httpstage.session import RecordSession
from httpstage.template import Template

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 8 * 1024


class ExecutionState(str, Enum):
    """Where a single record's execution has got to."""

    RESOLVED = "resolved"
    SENT = "sent"
    RESPONSE_RECEIVED = "response_received"
    SPLITTING = "splitting"
    SUCCESS_EMITTED = "success_emitted"
    CAPTURING = "capturing"
    FAILURE_EMITTED = "failure_emitted"


def header_attributes(headers: httpx.Headers) -> dict[str, str]:
    """Response headers as record attributes.

    A header sent once keeps its value verbatim; repeated headers are joined
    with ", " under the name of their first occurrence.
    """
    attributes: dict[str, str] = {}
    names: dict[str, str] = {}
    for raw_name, raw_value in headers.raw:
        name = raw_name.decode(headers.encoding)
        value = raw_value.decode(headers.encoding)
        key = name.lower()
        if key not in names:
            names[key] = name
            attributes[name] = value
        else:
            first = names[key]
            attributes[first] = f"{attributes[first]}, {value}"
    return attributes


def target_url(response: httpx.Response, request: httpx.Request) -> str:
    """Absolute URL the response came from, after any redirects."""
    try:
        url = response.url
        if url.is_absolute_url:
            return str(url)
    except RuntimeError:
        # Response not bound to a request
        pass
    return str(request.url)


class _Execution:
    """State of one record's trip through the executor.

    ``record`` always holds the latest version of the original record so a
    failure routes it with every attribute gathered so far.
    """

    def __init__(self, record: Record) -> None:
        self.record = record
        self.state = ExecutionState.RESOLVED
        self.started = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class HttpTemplateExecutor:
    """Runs templated requests for records and routes the outcomes."""

    def __init__(
        self,
        template: Template,
        pool: ConnectionPoolService,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._template = template
        self._pool = pool
        self._chunk_size = chunk_size
        self._log = logger.bind(component="http_executor")

    @property
    def template(self) -> Template:
        return self._template

    async def execute(self, record: Record, session: RecordSession) -> Outcome:
        """Execute one record and route it. Exactly one outcome per record."""
        execution = _Execution(record)
        try:
            return await self._execute(execution, session)
        except Exception as e:
            self._log.error(
                "http.request.failed",
                record=execution.record.id,
                state=execution.state.value,
                relationship=Relationship.FAILURE.value,
                error=str(e),
                exc_info=True,
            )
            failed = session.penalize(execution.record)
            session.transfer(failed, Relationship.FAILURE)
            execution.state = ExecutionState.FAILURE_EMITTED
            return Failure(failed, e)

    async def _execute(self, execution: _Execution, session: RecordSession) -> Outcome:
        template = self._template
        resolved = template.resolve(execution.record)
        request = build_request(
            resolved,
            execution.record,
            forward_pattern=template.forward_pattern,
            ignored_attributes=template.ignored_attributes,
        )

        handle = await self._pool.acquire_client()
        async with handle:
            execution.started = time.monotonic()
            execution.state = ExecutionState.SENT
            async with handle.stream(request) as response:
                execution.state = ExecutionState.RESPONSE_RECEIVED
                return await self._process_response(
                    execution, session, handle, request, response
                )

    async def _process_response(
        self,
        execution: _Execution,
        session: RecordSession,
        handle: PoolHandle,
        request: httpx.Request,
        response: httpx.Response,
    ) -> Outcome:
        url = target_url(response, request)
        status = response.status_code
        execution.record = session.put_all_attributes(
            execution.record,
            {
                ATTR_STATUS: str(status),
                ATTR_MESSAGE: response.reason_phrase,
                ATTR_URL: url,
            },
        )

        if not response.is_success:
            execution.state = ExecutionState.CAPTURING
            body = await self._read_text(response, handle)
            execution.record = session.put_attribute(
                execution.record, ATTR_ERROR_RESPONSE, body.strip()
            )
            raise ClientProtocolError(status, details={"url": url})

        execution.state = ExecutionState.SPLITTING
        original = execution.record
        # Child of the stamped original, so it carries the http.* attributes too
        flow = session.create(original)
        transferred = False
        try:
            flow = session.put_all_attributes(flow, header_attributes(response.headers))
            flow = await session.import_from(flow, self._body_chunks(response, handle))

            self._log.info(
                "http.request.completed",
                url=url,
                status=status,
                record=original.id,
                elapsed_ms=execution.elapsed_ms,
            )

            session.transfer(original, Relationship.REQUEST_SUCCESS)
            session.transfer(flow, Relationship.RESPONSE_SUCCESS)
            transferred = True
        finally:
            if not transferred:
                try:
                    session.remove(flow)
                except Exception as cleanup_error:
                    self._log.error(
                        "http.response.cleanup_failed",
                        record=flow.id,
                        error=str(cleanup_error),
                        exc_info=True,
                    )

        execution.state = ExecutionState.SUCCESS_EMITTED
        return Success(original, flow)

    async def _body_chunks(
        self, response: httpx.Response, handle: PoolHandle
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(self._chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            raise self._streaming_error(e, handle) from e

    async def _read_text(self, response: httpx.Response, handle: PoolHandle) -> str:
        try:
            await response.aread()
        except httpx.HTTPError as e:
            raise self._streaming_error(e, handle) from e
        return response.text

    @staticmethod
    def _streaming_error(error: httpx.HTTPError, handle: PoolHandle) -> StageError:
        if handle.closed:
            return PoolUnavailableError(
                "Connection pool was closed while reading the response",
                details={"generation": handle.generation},
            )
        if isinstance(error, httpx.TimeoutException):
            return TransportError(f"Timed out reading response body: {error!r}")
        return StreamingError(f"Failed to read response body: {error!r}")
