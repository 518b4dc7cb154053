from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xerosync.domain.xero.coordinator import SyncCoordinator
from xerosync.infra.logging import clear_log_context, update_log_context
from xerosync.infra.metrics import Metrics
from xerosync.jobs.xero_cleanup import run_xero_cleanup
from xerosync.jobs.xero_sync import run_xero_retry, run_xero_sync

logger = logging.getLogger(__name__)

LOOP_SYNC = "xero-sync"
LOOP_RETRY = "xero-retry"
LOOP_CLEANUP = "xero-cleanup"

JobRunner = Callable[[int], Awaitable[dict[str, int]]]


@dataclass(frozen=True)
class LoopConfig:
    enabled: bool
    interval_seconds: float
    max_items: int


@dataclass(frozen=True)
class ScheduledLoop:
    name: str
    config: LoopConfig
    runner: JobRunner


class SyncScheduler:
    """Runs each enabled loop as its own asyncio task on a fixed interval.

    Overlapping sync passes are prevented by the coordinator, not here.
    """

    def __init__(
        self,
        loops: list[ScheduledLoop],
        *,
        metrics: Metrics | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._loops = {loop.name: loop for loop in loops}
        self._metrics = metrics
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self.tick_counts: dict[str, int] = {name: 0 for name in self._loops}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def loop_names(self) -> list[str]:
        return sorted(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        for loop in self._loops.values():
            if not loop.config.enabled:
                logger.info("scheduler_loop_disabled", extra={"extra": {"job": loop.name}})
                continue
            self._tasks[loop.name] = asyncio.create_task(self._run_loop(loop), name=f"scheduler:{loop.name}")
        logger.info("scheduler_started", extra={"extra": {"loops": self.loop_names}})

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("scheduler_stopped", extra={"extra": {"cancelled": len(tasks)}})

    async def _run_loop(self, loop: ScheduledLoop) -> None:
        while True:
            await self._sleep(loop.config.interval_seconds)
            await self.run_once(loop.name)

    async def run_once(self, name: str) -> dict[str, int] | None:
        loop = self._loops.get(name)
        if loop is None:
            raise ValueError(f"unknown_job:{name}")
        self.tick_counts[name] += 1
        if self._metrics is not None:
            self._metrics.record_job_heartbeat(name)
        update_log_context(job=name)
        try:
            result = await loop.runner(loop.config.max_items)
        except Exception as exc:  # noqa: BLE001
            logger.exception("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            if self._metrics is not None:
                self._metrics.record_job_error(name, type(exc).__name__)
            return None
        finally:
            clear_log_context()
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        if self._metrics is not None:
            self._metrics.record_job_success(name, time.time())
        return result


def loop_configs_from_settings(app_settings) -> dict[str, LoopConfig]:
    return {
        LOOP_SYNC: LoopConfig(
            enabled=app_settings.xero_sync_loop_enabled,
            interval_seconds=app_settings.xero_sync_interval_seconds,
            max_items=app_settings.xero_sync_max_items,
        ),
        LOOP_RETRY: LoopConfig(
            enabled=app_settings.xero_retry_loop_enabled,
            interval_seconds=app_settings.xero_retry_interval_seconds,
            max_items=app_settings.xero_retry_max_items,
        ),
        LOOP_CLEANUP: LoopConfig(
            enabled=app_settings.xero_cleanup_loop_enabled,
            interval_seconds=app_settings.xero_cleanup_interval_seconds,
            max_items=app_settings.xero_cleanup_max_items,
        ),
    }


def build_scheduler(
    app_settings,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    coordinator: SyncCoordinator,
    metrics: Metrics | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> SyncScheduler:
    configs = loop_configs_from_settings(app_settings)
    return SyncScheduler(
        [
            ScheduledLoop(
                name=LOOP_SYNC,
                config=configs[LOOP_SYNC],
                runner=lambda limit: run_xero_sync(coordinator, limit=limit),
            ),
            ScheduledLoop(
                name=LOOP_RETRY,
                config=configs[LOOP_RETRY],
                runner=lambda limit: run_xero_retry(session_factory, coordinator, limit=limit),
            ),
            ScheduledLoop(
                name=LOOP_CLEANUP,
                config=configs[LOOP_CLEANUP],
                runner=lambda limit: run_xero_cleanup(session_factory, app_settings=app_settings, limit=limit),
            ),
        ],
        metrics=metrics,
        sleep=sleep,
    )
