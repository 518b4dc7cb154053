from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.xero import statuses
from xerosync.domain.xero.db_models import XeroInvoice, XeroInvoiceLineItem, XeroPayment, XeroSyncLog
from xerosync.shared.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionResult:
    invoices_deleted: int
    payments_deleted: int
    logs_deleted: int

    @property
    def total(self) -> int:
        return self.invoices_deleted + self.payments_deleted + self.logs_deleted

    def as_dict(self) -> dict[str, int]:
        return {
            "invoices_deleted": self.invoices_deleted,
            "payments_deleted": self.payments_deleted,
            "logs_deleted": self.logs_deleted,
        }


async def purge_synced_records(
    session: AsyncSession,
    *,
    retention_days: int,
    log_retention_days: int,
    limit: int | None = None,
    now: datetime | None = None,
) -> RetentionResult:
    """Delete synced rows and audit entries past their retention windows.

    Only `synced` rows are eligible. An invoice is kept while any of its
    payments is still unsynced.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    log_cutoff = now - timedelta(days=log_retention_days)

    payment_ids_stmt = (
        sa.select(XeroPayment.xero_payment_uuid)
        .where(
            XeroPayment.sync_status == statuses.SYNC_STATUS_SYNCED,
            XeroPayment.staged_at < cutoff,
        )
        .order_by(XeroPayment.staged_at)
    )
    if limit:
        payment_ids_stmt = payment_ids_stmt.limit(limit)
    payment_ids = list((await session.scalars(payment_ids_stmt)).all())
    payments_deleted = 0
    if payment_ids:
        result = await session.execute(sa.delete(XeroPayment).where(XeroPayment.xero_payment_uuid.in_(payment_ids)))
        payments_deleted += result.rowcount or 0

    unsynced_payment = (
        sa.select(XeroPayment.xero_payment_uuid)
        .where(
            XeroPayment.invoice_uuid == XeroInvoice.invoice_uuid,
            XeroPayment.sync_status != statuses.SYNC_STATUS_SYNCED,
        )
        .exists()
    )
    invoice_ids_stmt = (
        sa.select(XeroInvoice.invoice_uuid)
        .where(
            XeroInvoice.sync_status == statuses.SYNC_STATUS_SYNCED,
            XeroInvoice.staged_at < cutoff,
            ~unsynced_payment,
        )
        .order_by(XeroInvoice.staged_at)
    )
    if limit:
        invoice_ids_stmt = invoice_ids_stmt.limit(limit)
    invoice_ids = list((await session.scalars(invoice_ids_stmt)).all())
    invoices_deleted = 0
    if invoice_ids:
        # Children are removed explicitly; SQLite does not enforce ON DELETE.
        await session.execute(
            sa.update(XeroInvoice)
            .where(XeroInvoice.original_invoice_uuid.in_(invoice_ids))
            .values(original_invoice_uuid=None)
        )
        await session.execute(sa.delete(XeroInvoiceLineItem).where(XeroInvoiceLineItem.invoice_uuid.in_(invoice_ids)))
        result = await session.execute(sa.delete(XeroPayment).where(XeroPayment.invoice_uuid.in_(invoice_ids)))
        payments_deleted += result.rowcount or 0
        result = await session.execute(sa.delete(XeroInvoice).where(XeroInvoice.invoice_uuid.in_(invoice_ids)))
        invoices_deleted = result.rowcount or 0

    result = await session.execute(sa.delete(XeroSyncLog).where(XeroSyncLog.created_at < log_cutoff))
    logs_deleted = result.rowcount or 0

    await session.commit()
    purged = RetentionResult(
        invoices_deleted=invoices_deleted,
        payments_deleted=payments_deleted,
        logs_deleted=logs_deleted,
    )
    logger.info("xero_retention_purged", extra={"extra": purged.as_dict()})
    return purged
