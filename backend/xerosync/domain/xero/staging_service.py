"""Staging writer: durable local intent for every financial event bound for Xero.

Rows are written before any external call. Each source event maps to a unique
`source_key`, so staging the same event twice is a no-op.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.members import statuses as member_statuses
from xerosync.domain.members.db_models import MemberPayment
from xerosync.domain.xero import statuses
from xerosync.domain.xero.credit_notes import SourceLine, allocate_refund
from xerosync.domain.xero.db_models import XeroInvoice, XeroInvoiceLineItem, XeroPayment
from xerosync.domain.xero.oauth import load_active_token
from xerosync.shared.clock import utcnow

logger = logging.getLogger(__name__)

REASON_ALREADY_STAGED = "already_staged"
REASON_NO_ACTIVE_TENANT = "no_active_tenant"


@dataclass(frozen=True)
class FactLineItem:
    line_item_type: str
    description: str
    unit_amount: int
    quantity: int = 1
    item_id: str | None = None
    account_code: str | None = None

    @property
    def line_amount(self) -> int:
        return self.quantity * self.unit_amount


@dataclass(frozen=True)
class DiscountApplied:
    code: str
    amount: int
    discount_code_id: str | None = None


@dataclass(frozen=True)
class PaymentCompletedFact:
    payment_id: uuid.UUID
    user_id: uuid.UUID
    total_amount: int
    discount_amount: int
    final_amount: int
    line_items: list[FactLineItem]
    discount_codes_used: list[DiscountApplied] = field(default_factory=list)
    processor_reference: str | None = None
    payment_method: str = member_statuses.PAYMENT_METHOD_STRIPE


@dataclass(frozen=True)
class FreePurchaseFact:
    user_id: uuid.UUID
    record_id: str
    trigger_source: str
    description: str | None = None
    line_item_type: str = statuses.LINE_TYPE_REGISTRATION


@dataclass(frozen=True)
class RefundCompletedFact:
    refund_id: uuid.UUID
    payment_id: uuid.UUID
    amount: int
    reason: str | None = None


@dataclass(frozen=True)
class StagingResult:
    """Outcome of a staging call.

    `success` with `staged=False` means there was nothing to do (already
    staged, or no Xero tenant to sync to). Callers should neither retry nor
    alert on it. `success=False` is a real staging failure with `error` set.
    """

    success: bool
    staged: bool
    invoice_uuid: uuid.UUID | None = None
    payment_uuid: uuid.UUID | None = None
    reason: str | None = None
    error: str | None = None


def _failure(error: str) -> StagingResult:
    return StagingResult(success=False, staged=False, error=error)


async def _existing(session: AsyncSession, source_key: str) -> XeroInvoice | None:
    return await session.scalar(sa.select(XeroInvoice).where(XeroInvoice.source_key == source_key))


async def _preflight(session: AsyncSession, source_key: str) -> tuple[str | None, StagingResult | None]:
    existing = await _existing(session, source_key)
    if existing is not None:
        return None, StagingResult(
            success=True, staged=False, invoice_uuid=existing.invoice_uuid, reason=REASON_ALREADY_STAGED
        )
    token = await load_active_token(session)
    if token is None:
        logger.info("xero_staging_skipped", extra={"extra": {"source_key": source_key, "reason": REASON_NO_ACTIVE_TENANT}})
        return None, StagingResult(success=True, staged=False, reason=REASON_NO_ACTIVE_TENANT)
    return token.tenant_id, None


async def _commit_staged(session: AsyncSession, invoice: XeroInvoice, payment: XeroPayment | None) -> StagingResult:
    session.add(invoice)
    if payment is not None:
        session.add(payment)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a race with a concurrent writer for the same source event.
        await session.rollback()
        existing = await _existing(session, invoice.source_key)
        if existing is None:
            raise
        return StagingResult(
            success=True, staged=False, invoice_uuid=existing.invoice_uuid, reason=REASON_ALREADY_STAGED
        )
    logger.info(
        "xero_staged",
        extra={
            "extra": {
                "source_key": invoice.source_key,
                "invoice_uuid": str(invoice.invoice_uuid),
                "net_amount": invoice.net_amount,
                "sync_status": invoice.sync_status,
            }
        },
    )
    return StagingResult(
        success=True,
        staged=True,
        invoice_uuid=invoice.invoice_uuid,
        payment_uuid=payment.xero_payment_uuid if payment is not None else None,
    )


def _payment_lines(fact: PaymentCompletedFact) -> list[XeroInvoiceLineItem]:
    lines: list[XeroInvoiceLineItem] = []
    for item in fact.line_items:
        lines.append(
            XeroInvoiceLineItem(
                position=len(lines),
                line_item_type=item.line_item_type,
                item_id=item.item_id,
                description=item.description,
                quantity=item.quantity,
                unit_amount=item.unit_amount,
                account_code=item.account_code,
                line_amount=item.line_amount,
            )
        )
    discounts = list(fact.discount_codes_used)
    if fact.discount_amount and not discounts:
        discounts = [DiscountApplied(code="", amount=fact.discount_amount)]
    for discount in discounts:
        description = f"Discount ({discount.code})" if discount.code else "Discount"
        lines.append(
            XeroInvoiceLineItem(
                position=len(lines),
                line_item_type=statuses.LINE_TYPE_DISCOUNT,
                discount_code_id=discount.discount_code_id,
                description=description,
                quantity=1,
                unit_amount=-discount.amount,
                line_amount=-discount.amount,
            )
        )
    return lines


def _validate_payment_fact(fact: PaymentCompletedFact) -> str | None:
    amounts = (fact.total_amount, fact.discount_amount, fact.final_amount)
    if any(isinstance(value, bool) or not isinstance(value, int) for value in amounts):
        return "amounts_must_be_integer_minor_units"
    if any(value < 0 for value in amounts):
        return "negative_amount"
    if fact.total_amount - fact.discount_amount != fact.final_amount:
        return "amount_mismatch"
    if not fact.line_items:
        return "no_line_items"
    if any(item.line_item_type not in statuses.LINE_TYPES for item in fact.line_items):
        return "unknown_line_item_type"
    if sum(item.line_amount for item in fact.line_items) != fact.total_amount:
        return "line_item_total_mismatch"
    if fact.discount_codes_used and sum(d.amount for d in fact.discount_codes_used) != fact.discount_amount:
        return "discount_total_mismatch"
    return None


async def stage_payment(
    session: AsyncSession,
    fact: PaymentCompletedFact,
    *,
    bank_account_code: str,
    draft: bool = False,
    now: datetime | None = None,
) -> StagingResult:
    error = _validate_payment_fact(fact)
    if error:
        logger.warning(
            "xero_staging_rejected",
            extra={"extra": {"payment_id": str(fact.payment_id), "reason": error}},
        )
        return _failure(error)

    source_key = f"payment:{fact.payment_id}"
    tenant_id, early = await _preflight(session, source_key)
    if early is not None:
        return early

    now = now or utcnow()
    lines = _payment_lines(fact)
    if sum(line.line_amount for line in lines) != fact.final_amount:
        return _failure("line_item_sum_mismatch")

    sync_status = statuses.SYNC_STATUS_DRAFT if draft else statuses.SYNC_STATUS_STAGED
    invoice = XeroInvoice(
        invoice_uuid=uuid.uuid4(),
        source_key=source_key,
        payment_id=fact.payment_id,
        tenant_id=tenant_id,
        invoice_type=statuses.INVOICE_TYPE_SALE,
        invoice_status=statuses.XERO_STATUS_AUTHORISED if fact.final_amount == 0 else statuses.XERO_STATUS_DRAFT,
        total_amount=fact.total_amount,
        discount_amount=fact.discount_amount,
        net_amount=fact.final_amount,
        sync_status=sync_status,
        staged_at=now,
        staging_metadata={
            "user_id": str(fact.user_id),
            "payment_id": str(fact.payment_id),
            "processor_reference": fact.processor_reference,
            "payment_method": fact.payment_method,
            "line_items": [
                {
                    "type": item.line_item_type,
                    "item_id": item.item_id,
                    "description": item.description,
                    "quantity": item.quantity,
                    "unit_amount": item.unit_amount,
                }
                for item in fact.line_items
            ],
            "discounts": [
                {"code": discount.code, "amount": discount.amount, "discount_code_id": discount.discount_code_id}
                for discount in fact.discount_codes_used
            ],
        },
        line_items=lines,
    )
    payment = None
    if fact.final_amount > 0:
        payment = XeroPayment(
            xero_payment_uuid=uuid.uuid4(),
            invoice=invoice,
            tenant_id=tenant_id,
            payment_method=fact.payment_method,
            bank_account_code=bank_account_code,
            amount_paid=fact.final_amount,
            reference=fact.processor_reference or str(fact.payment_id),
            sync_status=sync_status,
            staged_at=now,
            staging_metadata={"user_id": str(fact.user_id), "payment_id": str(fact.payment_id)},
        )
    return await _commit_staged(session, invoice, payment)


async def stage_invoice_draft(
    session: AsyncSession,
    fact: PaymentCompletedFact,
    *,
    bank_account_code: str,
    now: datetime | None = None,
) -> StagingResult:
    """Stage ahead of payment confirmation; rows wait as drafts until promoted."""
    return await stage_payment(session, fact, bank_account_code=bank_account_code, draft=True, now=now)


async def stage_free_purchase(
    session: AsyncSession,
    fact: FreePurchaseFact,
    *,
    now: datetime | None = None,
) -> StagingResult:
    source_key = f"free:{fact.record_id}"
    tenant_id, early = await _preflight(session, source_key)
    if early is not None:
        return early

    now = now or utcnow()
    description = fact.description or f"Registration ({fact.trigger_source})"
    invoice = XeroInvoice(
        invoice_uuid=uuid.uuid4(),
        source_key=source_key,
        tenant_id=tenant_id,
        invoice_type=statuses.INVOICE_TYPE_SALE,
        invoice_status=statuses.XERO_STATUS_AUTHORISED,
        total_amount=0,
        discount_amount=0,
        net_amount=0,
        sync_status=statuses.SYNC_STATUS_STAGED,
        staged_at=now,
        staging_metadata={
            "user_id": str(fact.user_id),
            "record_id": fact.record_id,
            "trigger_source": fact.trigger_source,
            "payment_method": member_statuses.PAYMENT_METHOD_FREE,
        },
        line_items=[
            XeroInvoiceLineItem(
                position=0,
                line_item_type=fact.line_item_type,
                item_id=fact.record_id,
                description=description,
                quantity=1,
                unit_amount=0,
                line_amount=0,
            )
        ],
    )
    return await _commit_staged(session, invoice, None)


async def stage_refund(
    session: AsyncSession,
    fact: RefundCompletedFact,
    *,
    refund_account_code: str,
    now: datetime | None = None,
) -> StagingResult:
    if fact.amount <= 0:
        return _failure("invalid_refund_amount")

    source_key = f"refund:{fact.refund_id}"
    tenant_id, early = await _preflight(session, source_key)
    if early is not None:
        return early

    original = await _existing(session, f"payment:{fact.payment_id}")
    if original is not None:
        if fact.amount > original.net_amount:
            return _failure("refund_exceeds_invoice")
        user_id = (original.staging_metadata or {}).get("user_id")
        source_lines = [
            SourceLine(
                line_item_type=line.line_item_type,
                description=line.description,
                line_amount=line.line_amount,
                account_code=line.account_code,
                item_id=line.item_id,
            )
            for line in original.line_items
        ]
    else:
        # Sale invoice already purged by retention: credit the refund as a single line.
        member_payment = await session.get(MemberPayment, fact.payment_id)
        if member_payment is None:
            return _failure("original_payment_not_found")
        if fact.amount > member_payment.final_amount:
            return _failure("refund_exceeds_payment")
        user_id = str(member_payment.member_uuid)
        source_lines = []
        logger.info(
            "xero_refund_original_invoice_missing",
            extra={"extra": {"refund_id": str(fact.refund_id), "payment_id": str(fact.payment_id)}},
        )

    allocated = allocate_refund(
        source_lines,
        fact.amount,
        fallback_account_code=refund_account_code,
        fallback_description=f"Refund for Payment {str(fact.payment_id)[:8]}",
    )
    now = now or utcnow()
    credit_note = XeroInvoice(
        invoice_uuid=uuid.uuid4(),
        source_key=source_key,
        payment_id=fact.payment_id,
        refund_id=fact.refund_id,
        original_invoice_uuid=original.invoice_uuid if original is not None else None,
        tenant_id=tenant_id,
        invoice_type=statuses.INVOICE_TYPE_CREDIT,
        invoice_status=statuses.XERO_STATUS_AUTHORISED,
        total_amount=fact.amount,
        discount_amount=0,
        net_amount=fact.amount,
        sync_status=statuses.SYNC_STATUS_PENDING,
        staged_at=now,
        staging_metadata={
            "user_id": user_id,
            "payment_id": str(fact.payment_id),
            "refund_id": str(fact.refund_id),
            "reason": fact.reason,
        },
        line_items=[
            XeroInvoiceLineItem(
                position=position,
                line_item_type=line.line_item_type,
                item_id=line.item_id,
                description=line.description,
                quantity=1,
                unit_amount=line.amount,
                account_code=line.account_code,
                line_amount=line.amount,
            )
            for position, line in enumerate(allocated)
        ],
    )
    return await _commit_staged(session, credit_note, None)


async def promote_ready_drafts(session: AsyncSession, *, limit: int = 100) -> int:
    """Move draft invoices (and their payments) to pending once the local payment completed."""
    drafts = (
        await session.scalars(
            sa.select(XeroInvoice)
            .join(MemberPayment, MemberPayment.payment_id == XeroInvoice.payment_id)
            .where(
                XeroInvoice.sync_status == statuses.SYNC_STATUS_DRAFT,
                MemberPayment.status == member_statuses.PAYMENT_STATUS_COMPLETED,
            )
            .order_by(XeroInvoice.staged_at)
            .limit(limit)
        )
    ).all()
    for invoice in drafts:
        invoice.sync_status = statuses.SYNC_STATUS_PENDING
        for payment in invoice.payments:
            if payment.sync_status == statuses.SYNC_STATUS_DRAFT:
                payment.sync_status = statuses.SYNC_STATUS_PENDING
    if drafts:
        await session.commit()
        logger.info("xero_drafts_promoted", extra={"extra": {"count": len(drafts)}})
    return len(drafts)
