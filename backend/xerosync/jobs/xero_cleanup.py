from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xerosync.domain.xero.retention_service import purge_synced_records


async def run_xero_cleanup(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    app_settings,
    limit: int | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    async with session_factory() as session:
        result = await purge_synced_records(
            session,
            retention_days=app_settings.xero_synced_retention_days,
            log_retention_days=app_settings.xero_sync_log_retention_days,
            limit=limit,
            now=now,
        )
    return result.as_dict()
