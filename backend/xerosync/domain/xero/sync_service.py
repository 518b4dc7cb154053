"""Staged invoice, payment and credit note synchronizer.

Each row moves `pending`/`staged` -> `synced` | `failed`. Rows are left
untouched (deferred) whenever the cause is external and temporary: no Xero
connection, rate limiting, timeouts, server errors or an unconfirmed local
payment. Only structural problems mark a row `failed`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.members import statuses as member_statuses
from xerosync.domain.members.db_models import MemberPayment
from xerosync.domain.xero import statuses
from xerosync.domain.xero.client import XeroApiError, XeroClient
from xerosync.domain.xero.contacts_service import resolve_contact
from xerosync.domain.xero.credit_notes import build_credit_note_reference
from xerosync.domain.xero.db_models import XeroInvoice, XeroPayment
from xerosync.domain.xero.oauth import XeroConnector
from xerosync.domain.xero.payloads import (
    build_credit_note_payload,
    build_invoice_payload,
    build_payment_payload,
    validate_line_items,
)
from xerosync.domain.xero.sync_log import record_sync_log
from xerosync.infra.logging import SyncEvent, log_sync_event
from xerosync.infra.metrics import Metrics
from xerosync.shared.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

OUTCOME_SYNCED = "synced"
OUTCOME_FAILED = "failed"
OUTCOME_DEFERRED = "deferred"
OUTCOME_SKIPPED = "skipped"

SKIP_NOTHING_PENDING = "nothing_pending"
SKIP_NOT_CONNECTED = "xero_not_connected"


@dataclass(frozen=True)
class SyncOutcome:
    status: str
    reason: str | None = None
    external_id: str | None = None
    rate_limited: bool = False


@dataclass
class EntityCounts:
    synced: int = 0
    failed: int = 0
    deferred: int = 0
    errors: int = 0

    def add(self, outcome: SyncOutcome) -> None:
        if outcome.status == OUTCOME_SYNCED:
            self.synced += 1
        elif outcome.status == OUTCOME_FAILED:
            self.failed += 1
        elif outcome.status == OUTCOME_DEFERRED:
            self.deferred += 1

    def as_dict(self) -> dict[str, int]:
        return {"synced": self.synced, "failed": self.failed, "deferred": self.deferred, "errors": self.errors}


@dataclass(frozen=True)
class PendingCounts:
    invoices: int = 0
    payments: int = 0
    credit_notes: int = 0

    @property
    def total(self) -> int:
        return self.invoices + self.payments + self.credit_notes


@dataclass(frozen=True)
class SyncRunResult:
    invoices: EntityCounts = field(default_factory=EntityCounts)
    payments: EntityCounts = field(default_factory=EntityCounts)
    credit_notes: EntityCounts = field(default_factory=EntityCounts)
    rate_limited: bool = False
    skipped_reason: str | None = None

    @property
    def total_synced(self) -> int:
        return self.invoices.synced + self.payments.synced + self.credit_notes.synced

    @property
    def total_failed(self) -> int:
        return self.invoices.failed + self.payments.failed + self.credit_notes.failed

    def as_dict(self) -> dict:
        return {
            "total_synced": self.total_synced,
            "total_failed": self.total_failed,
            "invoices": self.invoices.as_dict(),
            "payments": self.payments.as_dict(),
            "credit_notes": self.credit_notes.as_dict(),
            "rate_limited": self.rate_limited,
            "skipped_reason": self.skipped_reason,
        }


def _deferred(reason: str, *, rate_limited: bool = False) -> SyncOutcome:
    return SyncOutcome(status=OUTCOME_DEFERRED, reason=reason, rate_limited=rate_limited)


async def _mark_failed(
    session: AsyncSession,
    row: XeroInvoice | XeroPayment,
    *,
    entity_id: uuid.UUID,
    entity_type: str,
    operation_type: str,
    tenant_id: str | None,
    error: str,
    now: datetime,
    request_data: dict | None = None,
    response_data: dict | None = None,
) -> SyncOutcome:
    row.sync_status = statuses.SYNC_STATUS_FAILED
    row.sync_error = error
    record_sync_log(
        session,
        tenant_id=tenant_id,
        operation_type=operation_type,
        entity_type=entity_type,
        entity_id=entity_id,
        success=False,
        error_message=error,
        request_data=request_data,
        response_data=response_data,
        now=now,
    )
    await session.commit()
    log_sync_event(
        logger,
        SyncEvent(
            event=f"xero_{entity_type}_failed",
            entity_type=entity_type,
            entity_id=str(entity_id),
            tenant_id=tenant_id,
            outcome=OUTCOME_FAILED,
            error=error,
        ),
        level=logging.WARNING,
    )
    return SyncOutcome(status=OUTCOME_FAILED, reason=error)


async def _defer_on_api_error(
    session: AsyncSession, exc: XeroApiError, *, entity_type: str, entity_id: uuid.UUID, tenant_id: str
) -> SyncOutcome:
    # Persist anything already resolved (contact links); the row itself is untouched.
    await session.commit()
    log_sync_event(
        logger,
        SyncEvent(
            event="xero_sync_rate_limited" if exc.rate_limited else "xero_sync_transient_error",
            entity_type=entity_type,
            entity_id=str(entity_id),
            tenant_id=tenant_id,
            outcome=OUTCOME_DEFERRED,
            error=exc.message,
        ),
        level=logging.WARNING,
    )
    return _deferred(exc.code, rate_limited=exc.rate_limited)


def _log_synced(entity_type: str, entity_id: uuid.UUID, tenant_id: str, external_id: str) -> None:
    log_sync_event(
        logger,
        SyncEvent(
            event=f"xero_{entity_type}_synced",
            entity_type=entity_type,
            entity_id=str(entity_id),
            tenant_id=tenant_id,
            outcome=OUTCOME_SYNCED,
            fields={"external_id": external_id},
        ),
    )


async def _payment_completed(session: AsyncSession, payment_id: uuid.UUID) -> bool:
    payment = await session.get(MemberPayment, payment_id)
    return payment is not None and payment.status == member_statuses.PAYMENT_STATUS_COMPLETED


async def sync_invoice(
    session: AsyncSession,
    client: XeroClient | None,
    invoice: XeroInvoice,
    *,
    app_settings,
    now: datetime | None = None,
) -> SyncOutcome:
    if invoice.sync_status not in statuses.SYNCABLE_STATUSES:
        return SyncOutcome(status=OUTCOME_SKIPPED, reason="not_syncable")
    if client is None:
        return _deferred(SKIP_NOT_CONNECTED)

    now = now or utcnow()
    tenant_id = client.tenant_id
    fail_kwargs = {
        "entity_id": invoice.invoice_uuid,
        "entity_type": statuses.ENTITY_INVOICE,
        "operation_type": statuses.OPERATION_INVOICE_SYNC,
        "tenant_id": tenant_id,
        "now": now,
    }

    member_uuid = invoice.member_uuid
    if member_uuid is None:
        return await _mark_failed(session, invoice, error="missing_user_id", **fail_kwargs)

    if invoice.net_amount != 0:
        if invoice.payment_id is None:
            return await _mark_failed(session, invoice, error="missing_payment_reference", **fail_kwargs)
        if not await _payment_completed(session, invoice.payment_id):
            return _deferred("payment_not_completed")

    try:
        validate_line_items(invoice)
    except ValueError as exc:
        return await _mark_failed(session, invoice, error=str(exc), **fail_kwargs)

    contact = await resolve_contact(session, client, member_uuid)
    if not contact.success:
        if contact.retryable:
            await session.commit()
            return _deferred(contact.error or "contact_deferred", rate_limited=contact.rate_limited)
        return await _mark_failed(
            session, invoice, error=f"contact_resolution_failed: {contact.error}", **fail_kwargs
        )

    payload = build_invoice_payload(
        invoice,
        contact_id=contact.external_id,
        currency_code=app_settings.xero_currency_code,
        due_days=app_settings.xero_invoice_due_days,
    )
    try:
        response = await client.create_invoice(payload)
    except XeroApiError as exc:
        if exc.retryable:
            return await _defer_on_api_error(
                session, exc, entity_type=statuses.ENTITY_INVOICE, entity_id=invoice.invoice_uuid, tenant_id=tenant_id
            )
        return await _mark_failed(
            session, invoice, error=exc.message, request_data=payload, response_data=exc.payload, **fail_kwargs
        )

    external_id = response.get("InvoiceID")
    if not external_id:
        return await _mark_failed(
            session, invoice, error="xero_invoice_missing_id", request_data=payload, response_data=response, **fail_kwargs
        )
    invoice.external_invoice_id = external_id
    invoice.external_invoice_number = response.get("InvoiceNumber")
    invoice.invoice_status = statuses.XERO_STATUS_AUTHORISED
    invoice.tenant_id = tenant_id
    invoice.sync_status = statuses.SYNC_STATUS_SYNCED
    invoice.sync_error = None
    invoice.last_synced_at = now
    record_sync_log(
        session,
        tenant_id=tenant_id,
        operation_type=statuses.OPERATION_INVOICE_SYNC,
        entity_type=statuses.ENTITY_INVOICE,
        entity_id=invoice.invoice_uuid,
        success=True,
        external_id=external_id,
        request_data=payload,
        response_data=response,
        now=now,
    )
    await session.commit()
    _log_synced(statuses.ENTITY_INVOICE, invoice.invoice_uuid, tenant_id, external_id)
    return SyncOutcome(status=OUTCOME_SYNCED, external_id=external_id)


async def sync_payment(
    session: AsyncSession,
    client: XeroClient | None,
    payment: XeroPayment,
    *,
    now: datetime | None = None,
) -> SyncOutcome:
    if payment.sync_status not in statuses.SYNCABLE_STATUSES:
        return SyncOutcome(status=OUTCOME_SKIPPED, reason="not_syncable")
    if client is None:
        return _deferred(SKIP_NOT_CONNECTED)

    invoice = payment.invoice
    if invoice.sync_status != statuses.SYNC_STATUS_SYNCED or not invoice.external_invoice_id:
        return _deferred("invoice_not_synced")

    now = now or utcnow()
    tenant_id = client.tenant_id
    fail_kwargs = {
        "entity_id": payment.xero_payment_uuid,
        "entity_type": statuses.ENTITY_PAYMENT,
        "operation_type": statuses.OPERATION_PAYMENT_SYNC,
        "tenant_id": tenant_id,
        "now": now,
    }
    payment_date = (as_utc(payment.staged_at) or now).date()
    try:
        payload = build_payment_payload(
            payment, external_invoice_id=invoice.external_invoice_id, payment_date=payment_date
        )
    except ValueError as exc:
        return await _mark_failed(session, payment, error=str(exc), **fail_kwargs)

    try:
        response = await client.create_payment(payload)
    except XeroApiError as exc:
        if exc.retryable:
            return await _defer_on_api_error(
                session,
                exc,
                entity_type=statuses.ENTITY_PAYMENT,
                entity_id=payment.xero_payment_uuid,
                tenant_id=tenant_id,
            )
        return await _mark_failed(
            session, payment, error=exc.message, request_data=payload, response_data=exc.payload, **fail_kwargs
        )

    external_id = response.get("PaymentID")
    if not external_id:
        return await _mark_failed(
            session, payment, error="xero_payment_missing_id", request_data=payload, response_data=response, **fail_kwargs
        )
    payment.external_payment_id = external_id
    payment.tenant_id = tenant_id
    payment.sync_status = statuses.SYNC_STATUS_SYNCED
    payment.sync_error = None
    payment.last_synced_at = now
    record_sync_log(
        session,
        tenant_id=tenant_id,
        operation_type=statuses.OPERATION_PAYMENT_SYNC,
        entity_type=statuses.ENTITY_PAYMENT,
        entity_id=payment.xero_payment_uuid,
        success=True,
        external_id=external_id,
        request_data=payload,
        response_data=response,
        now=now,
    )
    await session.commit()
    _log_synced(statuses.ENTITY_PAYMENT, payment.xero_payment_uuid, tenant_id, external_id)
    return SyncOutcome(status=OUTCOME_SYNCED, external_id=external_id)


async def sync_credit_note(
    session: AsyncSession,
    client: XeroClient | None,
    credit_note: XeroInvoice,
    *,
    app_settings,
    now: datetime | None = None,
) -> SyncOutcome:
    if credit_note.sync_status not in statuses.SYNCABLE_STATUSES:
        return SyncOutcome(status=OUTCOME_SKIPPED, reason="not_syncable")
    if client is None:
        return _deferred(SKIP_NOT_CONNECTED)

    now = now or utcnow()
    tenant_id = client.tenant_id
    fail_kwargs = {
        "entity_id": credit_note.invoice_uuid,
        "entity_type": statuses.ENTITY_CREDIT_NOTE,
        "operation_type": statuses.OPERATION_CREDIT_NOTE_SYNC,
        "tenant_id": tenant_id,
        "now": now,
    }
    member_uuid = credit_note.member_uuid
    if member_uuid is None:
        return await _mark_failed(session, credit_note, error="missing_user_id", **fail_kwargs)
    try:
        validate_line_items(credit_note)
    except ValueError as exc:
        return await _mark_failed(session, credit_note, error=str(exc), **fail_kwargs)

    contact = await resolve_contact(session, client, member_uuid)
    if not contact.success:
        if contact.retryable:
            await session.commit()
            return _deferred(contact.error or "contact_deferred", rate_limited=contact.rate_limited)
        return await _mark_failed(
            session, credit_note, error=f"contact_resolution_failed: {contact.error}", **fail_kwargs
        )

    original_external_id = None
    if credit_note.original_invoice_uuid is not None:
        original = await session.get(XeroInvoice, credit_note.original_invoice_uuid)
        if original is not None:
            original_external_id = original.external_invoice_number or original.external_invoice_id
    metadata = credit_note.staging_metadata or {}
    reference = build_credit_note_reference(
        str(metadata.get("payment_id") or credit_note.payment_id or credit_note.invoice_uuid),
        reason=metadata.get("reason"),
        original_external_id=original_external_id,
    )
    payload = build_credit_note_payload(
        credit_note,
        contact_id=contact.external_id,
        currency_code=app_settings.xero_currency_code,
        reference=reference,
    )
    try:
        response = await client.create_credit_note(payload)
    except XeroApiError as exc:
        if exc.retryable:
            return await _defer_on_api_error(
                session,
                exc,
                entity_type=statuses.ENTITY_CREDIT_NOTE,
                entity_id=credit_note.invoice_uuid,
                tenant_id=tenant_id,
            )
        return await _mark_failed(
            session, credit_note, error=exc.message, request_data=payload, response_data=exc.payload, **fail_kwargs
        )

    external_id = response.get("CreditNoteID")
    if not external_id:
        return await _mark_failed(
            session,
            credit_note,
            error="xero_credit_note_missing_id",
            request_data=payload,
            response_data=response,
            **fail_kwargs,
        )
    credit_note.external_invoice_id = external_id
    credit_note.external_invoice_number = response.get("CreditNoteNumber")
    credit_note.tenant_id = tenant_id
    credit_note.sync_status = statuses.SYNC_STATUS_SYNCED
    credit_note.sync_error = None
    credit_note.last_synced_at = now
    record_sync_log(
        session,
        tenant_id=tenant_id,
        operation_type=statuses.OPERATION_CREDIT_NOTE_SYNC,
        entity_type=statuses.ENTITY_CREDIT_NOTE,
        entity_id=credit_note.invoice_uuid,
        success=True,
        external_id=external_id,
        request_data=payload,
        response_data=response,
        now=now,
    )
    await session.commit()
    _log_synced(statuses.ENTITY_CREDIT_NOTE, credit_note.invoice_uuid, tenant_id, external_id)
    return SyncOutcome(status=OUTCOME_SYNCED, external_id=external_id)


def _syncable_invoices(invoice_type: str) -> sa.Select:
    return (
        sa.select(XeroInvoice.invoice_uuid)
        .where(
            XeroInvoice.invoice_type == invoice_type,
            XeroInvoice.sync_status.in_(statuses.SYNCABLE_STATUSES),
        )
        .order_by(XeroInvoice.staged_at, XeroInvoice.invoice_uuid)
    )


def _ready_sale_invoices() -> sa.Select:
    # Only rows that can make progress take batch slots: free, unreferenced, or locally paid.
    payment_completed = (
        sa.select(MemberPayment.payment_id)
        .where(
            MemberPayment.payment_id == XeroInvoice.payment_id,
            MemberPayment.status == member_statuses.PAYMENT_STATUS_COMPLETED,
        )
        .exists()
    )
    return _syncable_invoices(statuses.INVOICE_TYPE_SALE).where(
        sa.or_(XeroInvoice.net_amount == 0, XeroInvoice.payment_id.is_(None), payment_completed)
    )


def _syncable_payments() -> sa.Select:
    return (
        sa.select(XeroPayment.xero_payment_uuid)
        .join(XeroInvoice, XeroInvoice.invoice_uuid == XeroPayment.invoice_uuid)
        .where(
            XeroPayment.sync_status.in_(statuses.SYNCABLE_STATUSES),
            XeroInvoice.sync_status == statuses.SYNC_STATUS_SYNCED,
            XeroInvoice.external_invoice_id.is_not(None),
        )
        .order_by(XeroPayment.staged_at, XeroPayment.xero_payment_uuid)
    )


async def _count(session: AsyncSession, stmt: sa.Select) -> int:
    return int(await session.scalar(sa.select(sa.func.count()).select_from(stmt.subquery())) or 0)


async def count_pending(session: AsyncSession) -> PendingCounts:
    return PendingCounts(
        invoices=await _count(session, _ready_sale_invoices()),
        payments=await _count(session, _syncable_payments()),
        credit_notes=await _count(session, _syncable_invoices(statuses.INVOICE_TYPE_CREDIT)),
    )


async def sync_all_pending(
    session: AsyncSession,
    connector: XeroConnector,
    *,
    app_settings,
    limit: int | None = None,
    request_spacing: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    metrics: Metrics | None = None,
) -> SyncRunResult:
    """Sync staged invoices, then payments, then credit notes.

    Counts first and skips authentication entirely when nothing is pending. A
    rate-limited call stops the run; remaining rows wait for the next one.
    """
    pending = await count_pending(session)
    if metrics is not None:
        metrics.set_xero_pending(statuses.ENTITY_INVOICE, pending.invoices)
        metrics.set_xero_pending(statuses.ENTITY_PAYMENT, pending.payments)
        metrics.set_xero_pending(statuses.ENTITY_CREDIT_NOTE, pending.credit_notes)
    if pending.total == 0:
        return SyncRunResult(skipped_reason=SKIP_NOTHING_PENDING)

    client = await connector.authenticated_client(session)
    if client is None:
        logger.warning("xero_sync_skipped", extra={"extra": {"reason": SKIP_NOT_CONNECTED, "pending": pending.total}})
        return SyncRunResult(skipped_reason=SKIP_NOT_CONNECTED)

    batch_limit = limit or app_settings.xero_sync_batch_limit
    invoice_counts, payment_counts, credit_counts = EntityCounts(), EntityCounts(), EntityCounts()
    rate_limited = False

    async def process(ids: list[uuid.UUID], model, counts: EntityCounts, entity_type: str, handler) -> bool:
        for index, row_id in enumerate(ids):
            if index and request_spacing > 0:
                await sleep(request_spacing)
            row = await session.get(model, row_id)
            if row is None:
                continue
            try:
                outcome = await handler(row)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "xero_sync_row_error", extra={"extra": {"entity_type": entity_type, "entity_id": str(row_id)}}
                )
                await session.rollback()
                session.expunge_all()
                counts.errors += 1
                continue
            counts.add(outcome)
            if outcome.rate_limited:
                return True
        return False

    async with client:
        invoice_ids = list((await session.scalars(_ready_sale_invoices().limit(batch_limit))).all())
        rate_limited = await process(
            invoice_ids,
            XeroInvoice,
            invoice_counts,
            statuses.ENTITY_INVOICE,
            lambda row: sync_invoice(session, client, row, app_settings=app_settings),
        )
        if not rate_limited:
            payment_ids = list((await session.scalars(_syncable_payments().limit(batch_limit))).all())
            rate_limited = await process(
                payment_ids,
                XeroPayment,
                payment_counts,
                statuses.ENTITY_PAYMENT,
                lambda row: sync_payment(session, client, row),
            )
        if not rate_limited:
            credit_ids = list(
                (await session.scalars(_syncable_invoices(statuses.INVOICE_TYPE_CREDIT).limit(batch_limit))).all()
            )
            rate_limited = await process(
                credit_ids,
                XeroInvoice,
                credit_counts,
                statuses.ENTITY_CREDIT_NOTE,
                lambda row: sync_credit_note(session, client, row, app_settings=app_settings),
            )

    result = SyncRunResult(
        invoices=invoice_counts,
        payments=payment_counts,
        credit_notes=credit_counts,
        rate_limited=rate_limited,
    )
    if metrics is not None:
        for entity, counts in (
            (statuses.ENTITY_INVOICE, invoice_counts),
            (statuses.ENTITY_PAYMENT, payment_counts),
            (statuses.ENTITY_CREDIT_NOTE, credit_counts),
        ):
            metrics.record_xero_records(entity, OUTCOME_SYNCED, counts.synced)
            metrics.record_xero_records(entity, OUTCOME_FAILED, counts.failed)
            metrics.record_xero_records(entity, OUTCOME_DEFERRED, counts.deferred)
    logger.info("xero_sync_run_complete", extra={"extra": result.as_dict()})
    return result
