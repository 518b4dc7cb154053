from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.xero.db_models import XeroSyncLog
from xerosync.shared.clock import utcnow


def _snapshot(value: dict | list | None) -> dict | None:
    if value is None:
        return None
    if isinstance(value, list):
        return {"items": value}
    return value


def record_sync_log(
    session: AsyncSession,
    *,
    operation_type: str,
    entity_type: str,
    entity_id: uuid.UUID | str | None,
    success: bool,
    tenant_id: str | None = None,
    external_id: str | None = None,
    error_message: str | None = None,
    request_data: dict | list | None = None,
    response_data: dict | list | None = None,
    now: datetime | None = None,
) -> XeroSyncLog:
    """Append an audit row; the caller owns the commit."""
    entry = XeroSyncLog(
        tenant_id=tenant_id,
        operation_type=operation_type,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        external_id=external_id,
        success=success,
        error_message=error_message,
        request_data=_snapshot(request_data),
        response_data=_snapshot(response_data),
        created_at=now or utcnow(),
    )
    session.add(entry)
    return entry
