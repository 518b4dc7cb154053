from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xerosync.domain.xero.oauth import XeroConnector
from xerosync.domain.xero.sync_service import SyncRunResult, sync_all_pending
from xerosync.infra.metrics import Metrics

logger = logging.getLogger(__name__)

SKIP_COORDINATOR_STOPPED = "coordinator_stopped"


class SyncCoordinator:
    """Single-flight gate in front of `sync_all_pending`.

    Concurrent callers share the in-flight run and its result. A new run waits
    until `min_spacing_seconds` have passed since the previous one finished.
    Only one process is expected to drive syncs; nothing here coordinates
    across processes.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        connector: XeroConnector,
        app_settings,
        metrics: Metrics | None = None,
        min_spacing_seconds: float | None = None,
        request_spacing_seconds: float | None = None,
        batch_limit: int | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._connector = connector
        self._settings = app_settings
        self._metrics = metrics
        self._min_spacing = (
            app_settings.xero_min_sync_spacing_seconds if min_spacing_seconds is None else min_spacing_seconds
        )
        self._request_spacing = (
            app_settings.xero_request_spacing_seconds if request_spacing_seconds is None else request_spacing_seconds
        )
        self._batch_limit = batch_limit or app_settings.xero_sync_batch_limit
        self._clock = clock
        self._sleep = sleep
        self._in_flight: asyncio.Task[SyncRunResult] | None = None
        self._last_finished_at: float | None = None
        self._stopped = False
        self.runs_started = 0

    @property
    def is_running(self) -> bool:
        return self._in_flight is not None

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def run(self, *, limit: int | None = None, trigger: str = "manual") -> SyncRunResult:
        if self._stopped:
            logger.info("xero_sync_refused", extra={"extra": {"trigger": trigger, "reason": SKIP_COORDINATOR_STOPPED}})
            return SyncRunResult(skipped_reason=SKIP_COORDINATOR_STOPPED)
        task = self._in_flight
        if task is None:
            task = asyncio.create_task(self._run(limit=limit, trigger=trigger))
            task.add_done_callback(self._clear_in_flight)
            self._in_flight = task
        else:
            logger.info("xero_sync_joined_in_flight", extra={"extra": {"trigger": trigger}})
        # A cancelled caller must not cancel the run other callers are waiting on.
        return await asyncio.shield(task)

    def _clear_in_flight(self, task: asyncio.Task) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _wait_for_spacing(self) -> None:
        if self._last_finished_at is None or self._min_spacing <= 0:
            return
        remaining = self._min_spacing - (self._clock() - self._last_finished_at)
        if remaining > 0:
            logger.debug("xero_sync_spacing_wait", extra={"extra": {"seconds": round(remaining, 3)}})
            await self._sleep(remaining)

    async def _run(self, *, limit: int | None, trigger: str) -> SyncRunResult:
        await self._wait_for_spacing()
        self.runs_started += 1
        started = self._clock()
        try:
            async with self._session_factory() as session:
                result = await sync_all_pending(
                    session,
                    self._connector,
                    app_settings=self._settings,
                    limit=limit or self._batch_limit,
                    request_spacing=self._request_spacing,
                    sleep=self._sleep,
                    metrics=self._metrics,
                )
        except Exception:
            if self._metrics is not None:
                self._metrics.record_xero_run("error")
            raise
        finally:
            self._last_finished_at = self._clock()
        if self._metrics is not None:
            self._metrics.record_xero_run(result.skipped_reason or ("rate_limited" if result.rate_limited else "ok"))
        logger.info(
            "xero_sync_run_finished",
            extra={
                "extra": {
                    "trigger": trigger,
                    "duration_seconds": round(self._last_finished_at - started, 3),
                    "total_synced": result.total_synced,
                    "total_failed": result.total_failed,
                    "skipped_reason": result.skipped_reason,
                }
            },
        )
        return result

    def force_stop(self) -> None:
        """Refuse new runs and drop the in-flight marker; calls already sent to Xero still complete."""
        self._stopped = True
        self._in_flight = None
        logger.warning("xero_sync_force_stopped")

    def resume(self) -> None:
        self._stopped = False
        logger.info("xero_sync_resumed")
