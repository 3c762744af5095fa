"""Stage lifecycle: enable, reconfigure, disable, run.

HttpTemplateStage ties the configuration to a running pool and executor. A
configuration change swaps both; executions already in flight finish on the
pool generation and template they started with.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog

from httpstage.config import StageSettings
from httpstage.executor import HttpTemplateExecutor
from httpstage.records import Outcome, Record
from httpstage.services.http.client import ConnectionPoolService, TlsContextProvider
from httpstage.session import RecordSession
from httpstage.template import Template

logger = structlog.get_logger()


class HttpTemplateStage:
    """Templated HTTP execution stage.

    Usage:
        stage = HttpTemplateStage(settings)
        await stage.enable()
        outcome = await stage.process(record, session)
        await stage.disable()
    """

    def __init__(
        self,
        settings: StageSettings,
        *,
        tls: TlsContextProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._pool = ConnectionPoolService(tls=tls, transport=transport)
        self._executor = self._build_executor(settings)
        self._log = logger.bind(component="http_stage")

    @property
    def settings(self) -> StageSettings:
        return self._settings

    @property
    def pool(self) -> ConnectionPoolService:
        return self._pool

    @property
    def is_enabled(self) -> bool:
        return self._pool.is_enabled

    async def enable(self) -> None:
        """Enable the pool and compile the template from current settings."""
        await self._pool.enable(self._settings.pool)
        self._executor = self._build_executor(self._settings)
        self._log.info(
            "stage.enabled",
            method=self._settings.template.method,
            url=self._settings.template.url,
            generation=self._pool.generation,
        )

    async def reconfigure(self, settings: StageSettings) -> None:
        """Apply new settings, swapping the pool and the template."""
        executor = self._build_executor(settings)
        await self._pool.enable(settings.pool)
        self._settings = settings
        self._executor = executor
        self._log.info("stage.reconfigured", generation=self._pool.generation)

    async def disable(self) -> None:
        """Release the pool. Safe to call repeatedly."""
        await self._pool.disable()

    async def process(self, record: Record, session: RecordSession) -> Outcome:
        """Run one record through the stage.

        While disabled the record is routed to failure with
        PoolUnavailableError.
        """
        return await self._executor.execute(record, session)

    async def run(
        self,
        session: RecordSession,
        *,
        max_records: int | None = None,
    ) -> list[Outcome]:
        """Drain the session's input, running up to ``concurrency`` at once.

        Outcomes are returned in input order.
        """
        records: list[Record] = []
        while max_records is None or len(records) < max_records:
            record = session.get()
            if record is None:
                break
            records.append(record)

        semaphore = asyncio.Semaphore(self._settings.concurrency)

        async def _run_one(record: Record) -> Outcome:
            async with semaphore:
                return await self.process(record, session)

        return list(await asyncio.gather(*(_run_one(r) for r in records)))

    def _build_executor(self, settings: StageSettings) -> HttpTemplateExecutor:
        return HttpTemplateExecutor(
            Template.from_config(settings.template),
            self._pool,
            chunk_size=settings.pool.buffer_size,
        )


@asynccontextmanager
async def lifespan_stage(
    settings: StageSettings,
    *,
    tls: TlsContextProvider | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncGenerator[HttpTemplateStage, None]:
    """Enable a stage for the duration of the block.

    Usage:
        async with lifespan_stage(get_settings()) as stage:
            await stage.run(session)
    """
    stage = HttpTemplateStage(settings, tls=tls, transport=transport)
    await stage.enable()
    try:
        yield stage
    finally:
        await stage.disable()
