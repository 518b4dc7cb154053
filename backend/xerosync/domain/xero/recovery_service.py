"""Admin visibility into staged rows and the failed-row recovery operations."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.xero import schemas, statuses
from xerosync.domain.xero.db_models import XeroInvoice, XeroPayment, XeroSyncLog
from xerosync.shared.clock import utcnow

logger = logging.getLogger(__name__)

TIME_WINDOWS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
INVOICE_PREFIX = "inv_"
PAYMENT_PREFIX = "pay_"
OPEN_STATUSES = (statuses.SYNC_STATUS_PENDING, statuses.SYNC_STATUS_STAGED)
ITEM_LIST_LIMIT = 200


@dataclass(frozen=True)
class ItemSelection:
    invoice_ids: list[uuid.UUID] = field(default_factory=list)
    payment_ids: list[uuid.UUID] = field(default_factory=list)


@dataclass(frozen=True)
class ResetResult:
    reset_invoices: int
    reset_payments: int
    unrecoverable: list[str]
    not_found: list[str]


@dataclass(frozen=True)
class IgnoreResult:
    ignored_invoices: int
    ignored_payments: int
    not_found: list[str]


def window_start(time_window: str, *, now: datetime | None = None) -> datetime:
    delta = TIME_WINDOWS.get(time_window)
    if delta is None:
        raise ValueError("invalid_time_window")
    return (now or utcnow()) - delta


def parse_item_ids(items: list[str]) -> ItemSelection:
    invoice_ids: list[uuid.UUID] = []
    payment_ids: list[uuid.UUID] = []
    for item in items:
        if item.startswith(INVOICE_PREFIX):
            prefix, target = INVOICE_PREFIX, invoice_ids
        elif item.startswith(PAYMENT_PREFIX):
            prefix, target = PAYMENT_PREFIX, payment_ids
        else:
            raise ValueError("invalid_item_id")
        try:
            target.append(uuid.UUID(item[len(prefix):]))
        except ValueError as exc:
            raise ValueError("invalid_item_id") from exc
    return ItemSelection(invoice_ids=invoice_ids, payment_ids=payment_ids)


def invoice_item_id(invoice: XeroInvoice) -> str:
    return f"{INVOICE_PREFIX}{invoice.invoice_uuid}"


def payment_item_id(payment: XeroPayment) -> str:
    return f"{PAYMENT_PREFIX}{payment.xero_payment_uuid}"


def invoice_unrecoverable_reason(invoice: XeroInvoice) -> str | None:
    """Reason this invoice can never sync without manual data correction."""
    if invoice.member_uuid is None:
        return "missing_user_id"
    if not invoice.is_credit_note and invoice.net_amount != 0 and invoice.payment_id is None:
        return "missing_payment_reference"
    if not invoice.line_items:
        return "missing_line_items"
    return None


def payment_unrecoverable_reason(payment: XeroPayment) -> str | None:
    invoice = payment.invoice
    if invoice is None:
        return "missing_invoice"
    if invoice.sync_status == statuses.SYNC_STATUS_IGNORED:
        return "parent_invoice_ignored"
    if invoice_unrecoverable_reason(invoice):
        return "parent_invoice_unrecoverable"
    return None


def _invoice_item(invoice: XeroInvoice) -> schemas.SyncItem:
    reason = invoice_unrecoverable_reason(invoice)
    return schemas.SyncItem(
        item_id=invoice_item_id(invoice),
        entity_type=statuses.ENTITY_CREDIT_NOTE if invoice.is_credit_note else statuses.ENTITY_INVOICE,
        user_id=str(invoice.member_uuid) if invoice.member_uuid else None,
        amount=invoice.net_amount,
        sync_status=invoice.sync_status,
        sync_error=invoice.sync_error,
        staged_at=invoice.staged_at,
        unrecoverable=reason is not None,
        unrecoverable_reason=reason,
    )


def _payment_item(payment: XeroPayment) -> schemas.SyncItem:
    reason = payment_unrecoverable_reason(payment)
    user_id = (payment.staging_metadata or {}).get("user_id")
    return schemas.SyncItem(
        item_id=payment_item_id(payment),
        entity_type=statuses.ENTITY_PAYMENT,
        user_id=str(user_id) if user_id else None,
        amount=payment.amount_paid,
        sync_status=payment.sync_status,
        sync_error=payment.sync_error,
        staged_at=payment.staged_at,
        unrecoverable=reason is not None,
        unrecoverable_reason=reason,
    )


async def _status_counts(session: AsyncSession, column, *conditions) -> schemas.StatusCounts:
    rows = (
        await session.execute(sa.select(column, sa.func.count()).where(*conditions).group_by(column))
    ).all()
    return schemas.StatusCounts(**{status: count for status, count in rows if status in statuses.SYNC_STATUSES})


async def _items(session: AsyncSession, sync_statuses: tuple[str, ...]) -> list[schemas.SyncItem]:
    invoices = (
        await session.scalars(
            sa.select(XeroInvoice)
            .where(XeroInvoice.sync_status.in_(sync_statuses))
            .order_by(XeroInvoice.staged_at)
            .limit(ITEM_LIST_LIMIT)
        )
    ).all()
    payments = (
        await session.scalars(
            sa.select(XeroPayment)
            .where(XeroPayment.sync_status.in_(sync_statuses))
            .order_by(XeroPayment.staged_at)
            .limit(ITEM_LIST_LIMIT)
        )
    ).unique().all()
    items = [_invoice_item(invoice) for invoice in invoices] + [_payment_item(payment) for payment in payments]
    return sorted(items, key=lambda item: item.staged_at)


def _group_by_user(pending: list[schemas.SyncItem], failed: list[schemas.SyncItem]) -> list[schemas.UserSyncGroup]:
    groups: dict[str | None, schemas.UserSyncGroup] = {}
    for item in pending + failed:
        group = groups.setdefault(item.user_id, schemas.UserSyncGroup(user_id=item.user_id, items=[]))
        if item.sync_status == statuses.SYNC_STATUS_FAILED:
            group.failed += 1
        else:
            group.pending += 1
        group.items.append(item)
    return sorted(groups.values(), key=lambda group: (-group.failed, -group.pending, group.user_id or ""))


async def sync_status_report(
    session: AsyncSession,
    *,
    connection: schemas.XeroConnectionStatus,
    time_window: str,
    coordinator_running: bool = False,
    now: datetime | None = None,
) -> schemas.XeroSyncStatusResponse:
    since = window_start(time_window, now=now)
    op_rows = (
        await session.execute(
            sa.select(XeroSyncLog.operation_type, XeroSyncLog.success, sa.func.count())
            .where(XeroSyncLog.created_at >= since)
            .group_by(XeroSyncLog.operation_type, XeroSyncLog.success)
        )
    ).all()
    operations: dict[str, schemas.OperationStats] = {}
    for operation_type, success, count in op_rows:
        stats = operations.setdefault(operation_type, schemas.OperationStats(operation_type=operation_type))
        if success:
            stats.succeeded += count
        else:
            stats.failed += count

    pending_items = await _items(session, OPEN_STATUSES)
    failed_items = await _items(session, (statuses.SYNC_STATUS_FAILED,))
    return schemas.XeroSyncStatusResponse(
        connection=connection,
        time_window=time_window,
        operations=sorted(operations.values(), key=lambda stats: stats.operation_type),
        invoices=await _status_counts(
            session, XeroInvoice.sync_status, XeroInvoice.invoice_type == statuses.INVOICE_TYPE_SALE
        ),
        payments=await _status_counts(session, XeroPayment.sync_status),
        credit_notes=await _status_counts(
            session, XeroInvoice.sync_status, XeroInvoice.invoice_type == statuses.INVOICE_TYPE_CREDIT
        ),
        pending_items=pending_items,
        failed_items=failed_items,
        by_user=_group_by_user(pending_items, failed_items),
        coordinator_running=coordinator_running,
    )


async def _failed_rows(
    session: AsyncSession, selection: ItemSelection | None
) -> tuple[list[XeroInvoice], list[XeroPayment], list[str]]:
    invoice_stmt = sa.select(XeroInvoice).where(XeroInvoice.sync_status == statuses.SYNC_STATUS_FAILED)
    payment_stmt = sa.select(XeroPayment).where(XeroPayment.sync_status == statuses.SYNC_STATUS_FAILED)
    if selection is not None:
        invoice_stmt = invoice_stmt.where(XeroInvoice.invoice_uuid.in_(selection.invoice_ids))
        payment_stmt = payment_stmt.where(XeroPayment.xero_payment_uuid.in_(selection.payment_ids))
    invoices = list((await session.scalars(invoice_stmt)).all())
    payments = list((await session.scalars(payment_stmt)).unique().all())

    not_found: list[str] = []
    if selection is not None:
        found_invoices = {invoice.invoice_uuid for invoice in invoices}
        found_payments = {payment.xero_payment_uuid for payment in payments}
        not_found = [f"{INVOICE_PREFIX}{item}" for item in selection.invoice_ids if item not in found_invoices]
        not_found += [f"{PAYMENT_PREFIX}{item}" for item in selection.payment_ids if item not in found_payments]
    return invoices, payments, not_found


async def reset_failed(session: AsyncSession, *, items: list[str] | None = None) -> ResetResult:
    """Re-arm failed rows as `pending`; unrecoverable rows are reported, not reset.

    `items=None` selects every failed row.
    """
    selection = parse_item_ids(items) if items is not None else None
    invoices, payments, not_found = await _failed_rows(session, selection)
    unrecoverable: list[str] = []
    reset_invoices = 0
    reset_payments = 0
    for invoice in invoices:
        if invoice_unrecoverable_reason(invoice):
            unrecoverable.append(invoice_item_id(invoice))
            continue
        invoice.sync_status = statuses.SYNC_STATUS_PENDING
        invoice.sync_error = None
        reset_invoices += 1
    for payment in payments:
        if payment_unrecoverable_reason(payment):
            unrecoverable.append(payment_item_id(payment))
            continue
        payment.sync_status = statuses.SYNC_STATUS_PENDING
        payment.sync_error = None
        reset_payments += 1
    await session.commit()
    logger.info(
        "xero_failed_rows_reset",
        extra={
            "extra": {
                "reset_invoices": reset_invoices,
                "reset_payments": reset_payments,
                "unrecoverable": len(unrecoverable),
            }
        },
    )
    return ResetResult(
        reset_invoices=reset_invoices,
        reset_payments=reset_payments,
        unrecoverable=unrecoverable,
        not_found=not_found,
    )


async def ignore_failed(session: AsyncSession, *, items: list[str] | None = None) -> IgnoreResult:
    selection = parse_item_ids(items) if items is not None else None
    invoices, payments, not_found = await _failed_rows(session, selection)
    for invoice in invoices:
        invoice.sync_status = statuses.SYNC_STATUS_IGNORED
    for payment in payments:
        payment.sync_status = statuses.SYNC_STATUS_IGNORED
    await session.commit()
    logger.info(
        "xero_failed_rows_ignored",
        extra={"extra": {"ignored_invoices": len(invoices), "ignored_payments": len(payments)}},
    )
    return IgnoreResult(ignored_invoices=len(invoices), ignored_payments=len(payments), not_found=not_found)


async def list_sync_logs(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 50,
    time_window: str | None = None,
    now: datetime | None = None,
) -> tuple[list[XeroSyncLog], int]:
    stmt = sa.select(XeroSyncLog)
    if time_window:
        stmt = stmt.where(XeroSyncLog.created_at >= window_start(time_window, now=now))
    total = int(await session.scalar(sa.select(sa.func.count()).select_from(stmt.subquery())) or 0)
    entries = (
        await session.scalars(
            stmt.order_by(XeroSyncLog.created_at.desc(), XeroSyncLog.log_id).offset(offset).limit(limit)
        )
    ).all()
    return list(entries), total
