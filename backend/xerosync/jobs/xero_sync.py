from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xerosync.domain.xero.coordinator import SyncCoordinator
from xerosync.domain.xero.staging_service import promote_ready_drafts
from xerosync.domain.xero.sync_service import SyncRunResult

logger = logging.getLogger(__name__)


def _summary(result: SyncRunResult) -> dict[str, int]:
    return {
        "synced": result.total_synced,
        "failed": result.total_failed,
        "deferred": result.invoices.deferred + result.payments.deferred + result.credit_notes.deferred,
        "errors": result.invoices.errors + result.payments.errors + result.credit_notes.errors,
        "rate_limited": int(result.rate_limited),
        "skipped": int(result.skipped_reason is not None),
    }


async def run_xero_sync(coordinator: SyncCoordinator, *, limit: int | None = None) -> dict[str, int]:
    result = await coordinator.run(limit=limit, trigger="scheduler_sync")
    return _summary(result)


async def run_xero_retry(
    session_factory: async_sessionmaker[AsyncSession],
    coordinator: SyncCoordinator,
    *,
    limit: int | None = None,
) -> dict[str, int]:
    """Promote drafts whose payment completed, then sync what became pending."""
    async with session_factory() as session:
        promoted = await promote_ready_drafts(session, limit=limit or 100)
    if not promoted:
        return {"promoted": 0, "synced": 0, "failed": 0}
    result = await coordinator.run(limit=limit, trigger="scheduler_retry")
    return {"promoted": promoted, **_summary(result)}
