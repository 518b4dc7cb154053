import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import sqlalchemy as sa

from tests.xero_fakes import (
    rate_limited_response,
    seed_member,
    seed_member_payment,
    seed_token,
    validation_error_response,
)
from xerosync.domain.members import statuses as member_statuses
from xerosync.domain.xero import staging_service, statuses, sync_service
from xerosync.domain.xero.db_models import (
    XeroContactLink,
    XeroInvoice,
    XeroInvoiceLineItem,
    XeroPayment,
    XeroSyncLog,
)
from xerosync.domain.xero.retention_service import purge_synced_records
from xerosync.domain.xero.staging_service import (
    DiscountApplied,
    FactLineItem,
    PaymentCompletedFact,
    RefundCompletedFact,
)
from xerosync.settings import settings


async def _stage_purchase(session, *, total=5000, discount=0, payment_status=member_statuses.PAYMENT_STATUS_COMPLETED):
    member = await seed_member(session)
    member_payment = await seed_member_payment(
        session, member, total_amount=total, discount_amount=discount, status=payment_status
    )
    fact = PaymentCompletedFact(
        payment_id=member_payment.payment_id,
        user_id=member.member_uuid,
        total_amount=total,
        discount_amount=discount,
        final_amount=total - discount,
        line_items=[
            FactLineItem(line_item_type=statuses.LINE_TYPE_MEMBERSHIP, description="Annual membership", unit_amount=total)
        ],
        discount_codes_used=[DiscountApplied(code="SPRING", amount=discount)] if discount else [],
        processor_reference=member_payment.processor_reference,
    )
    result = await staging_service.stage_payment(session, fact, bank_account_code="090")
    assert result.staged
    return member_payment, result


def _manual_invoice(*, net_amount: int, line_amount: int, metadata: dict) -> XeroInvoice:
    return XeroInvoice(
        invoice_uuid=uuid.uuid4(),
        source_key=f"manual:{uuid.uuid4()}",
        net_amount=net_amount,
        total_amount=net_amount,
        sync_status=statuses.SYNC_STATUS_STAGED,
        staged_at=datetime.now(tz=timezone.utc),
        staging_metadata=metadata,
        line_items=[
            XeroInvoiceLineItem(
                line_item_type=statuses.LINE_TYPE_REGISTRATION,
                description="Registration",
                quantity=1,
                unit_amount=line_amount,
                line_amount=line_amount,
            )
        ],
    )


@pytest.mark.anyio
async def test_sync_runs_invoices_then_payments_then_credit_notes(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        member_payment, staged = await _stage_purchase(session, total=5000, discount=1000)
        refund = await staging_service.stage_refund(
            session,
            RefundCompletedFact(refund_id=uuid.uuid4(), payment_id=member_payment.payment_id, amount=1000),
            refund_account_code="400",
        )

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.skipped_reason is None
    assert result.rate_limited is False
    assert (result.invoices.synced, result.payments.synced, result.credit_notes.synced) == (1, 1, 1)
    assert result.total_failed == 0

    writes = [(request.method, request.url.path.rsplit("/", 1)[-1]) for request in fake_xero.requests if request.method == "PUT"]
    assert writes == [("PUT", "Contacts"), ("PUT", "Invoices"), ("PUT", "Payments"), ("PUT", "CreditNotes")]
    invoice_id = fake_xero.invoices[0]["InvoiceID"]
    assert fake_xero.payments[0]["Invoice"] == {"InvoiceID": invoice_id}
    assert fake_xero.payments[0]["Amount"] == "40.00"
    assert fake_xero.credit_notes[0]["Reference"].endswith(f"(Inv: {fake_xero.invoices[0]['InvoiceNumber']})")

    async with async_session_maker() as session:
        invoice = await session.get(XeroInvoice, staged.invoice_uuid)
        assert invoice.sync_status == statuses.SYNC_STATUS_SYNCED
        assert invoice.external_invoice_id == invoice_id
        assert invoice.invoice_status == statuses.XERO_STATUS_AUTHORISED
        assert invoice.last_synced_at is not None
        payment = await session.get(XeroPayment, staged.payment_uuid)
        assert payment.sync_status == statuses.SYNC_STATUS_SYNCED
        assert payment.external_payment_id == fake_xero.payments[0]["PaymentID"]
        credit_note = await session.get(XeroInvoice, refund.invoice_uuid)
        assert credit_note.sync_status == statuses.SYNC_STATUS_SYNCED
        assert credit_note.external_invoice_number == fake_xero.credit_notes[0]["CreditNoteNumber"]
        logs = (await session.scalars(sa.select(XeroSyncLog).where(XeroSyncLog.success.is_(True)))).all()
        assert {log.operation_type for log in logs} == {
            statuses.OPERATION_CONTACT_SYNC,
            statuses.OPERATION_INVOICE_SYNC,
            statuses.OPERATION_PAYMENT_SYNC,
            statuses.OPERATION_CREDIT_NOTE_SYNC,
        }


@pytest.mark.anyio
async def test_rate_limit_defers_row_and_stops_batch(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, first = await _stage_purchase(session)
        _, second = await _stage_purchase(session)
    fake_xero.queue("PUT", "Invoices", rate_limited_response())

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.rate_limited is True
    assert result.invoices.deferred == 1
    assert result.invoices.synced == 0
    assert result.total_failed == 0
    assert len(fake_xero.calls("PUT", "Invoices")) == 1
    assert fake_xero.calls("PUT", "Payments") == []

    async with async_session_maker() as session:
        for staged in (first, second):
            invoice = await session.get(XeroInvoice, staged.invoice_uuid)
            assert invoice.sync_status == statuses.SYNC_STATUS_STAGED
            assert invoice.sync_error is None
        # The contact resolved before the rate limit is kept for the next run.
        assert await session.scalar(sa.select(sa.func.count()).select_from(XeroContactLink)) == 1

    async with async_session_maker() as session:
        retry = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert retry.invoices.synced == 2
    assert retry.payments.synced == 2


@pytest.mark.anyio
async def test_server_error_defers_without_failing(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, staged = await _stage_purchase(session)
    fake_xero.queue("PUT", "Invoices", httpx.Response(503, json={"Title": "Service Unavailable"}))

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.invoices.deferred == 1
    assert result.rate_limited is False
    # The payment is not picked up until its invoice exists in Xero.
    assert result.payments.deferred == 0
    assert fake_xero.calls("PUT", "Payments") == []
    async with async_session_maker() as session:
        invoice = await session.get(XeroInvoice, staged.invoice_uuid)
        assert invoice.sync_status == statuses.SYNC_STATUS_STAGED


@pytest.mark.anyio
async def test_structural_rejection_marks_invoice_failed(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, staged = await _stage_purchase(session)
    fake_xero.queue("PUT", "Invoices", validation_error_response("Account code '200' is not a valid code."))

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.invoices.failed == 1
    async with async_session_maker() as session:
        invoice = await session.get(XeroInvoice, staged.invoice_uuid)
        assert invoice.sync_status == statuses.SYNC_STATUS_FAILED
        assert "not a valid code" in invoice.sync_error
        log = await session.scalar(
            sa.select(XeroSyncLog).where(XeroSyncLog.operation_type == statuses.OPERATION_INVOICE_SYNC)
        )
        assert log.success is False
        assert log.request_data["Type"] == statuses.INVOICE_TYPE_SALE


@pytest.mark.anyio
async def test_uncompleted_local_payment_is_not_picked_up(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, staged = await _stage_purchase(session, payment_status=member_statuses.PAYMENT_STATUS_PENDING)

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.skipped_reason == sync_service.SKIP_NOTHING_PENDING
    assert fake_xero.requests == []
    assert fake_xero.token_requests == []
    async with async_session_maker() as session:
        invoice = await session.get(XeroInvoice, staged.invoice_uuid)
        assert invoice.sync_status == statuses.SYNC_STATUS_STAGED


@pytest.mark.anyio
async def test_payment_behind_failed_invoice_does_not_block_later_payments(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, rejected = await _stage_purchase(session)
        _, accepted = await _stage_purchase(session)
    fake_xero.queue("PUT", "Invoices", validation_error_response("Account code '200' is not a valid code."))

    for _ in range(2):
        async with async_session_maker() as session:
            await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings, limit=1)

    async with async_session_maker() as session:
        assert (await session.get(XeroInvoice, rejected.invoice_uuid)).sync_status == statuses.SYNC_STATUS_FAILED
        assert (await session.get(XeroPayment, rejected.payment_uuid)).sync_status == statuses.SYNC_STATUS_STAGED
        assert (await session.get(XeroPayment, accepted.payment_uuid)).sync_status == statuses.SYNC_STATUS_SYNCED
        assert (await sync_service.count_pending(session)).total == 0
    assert len(fake_xero.calls("PUT", "Payments")) == 1


@pytest.mark.anyio
async def test_refunded_local_payment_does_not_block_later_invoices(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, refunded = await _stage_purchase(session, payment_status=member_statuses.PAYMENT_STATUS_REFUNDED)
        _, paid = await _stage_purchase(session)

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings, limit=1)

    assert (result.invoices.synced, result.invoices.deferred) == (1, 0)
    assert result.payments.synced == 1
    async with async_session_maker() as session:
        assert (await session.get(XeroInvoice, paid.invoice_uuid)).sync_status == statuses.SYNC_STATUS_SYNCED
        assert (await session.get(XeroInvoice, refunded.invoice_uuid)).sync_status == statuses.SYNC_STATUS_STAGED


@pytest.mark.anyio
async def test_payment_waits_while_parent_invoice_is_failed(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        _, staged = await _stage_purchase(session)
    fake_xero.queue("PUT", "Invoices", validation_error_response("Account code '200' is not a valid code."))
    async with async_session_maker() as session:
        await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    async with async_session_maker() as session:
        payment = await session.get(XeroPayment, staged.payment_uuid)
        assert payment.invoice.sync_status == statuses.SYNC_STATUS_FAILED
        client = await app_services.connector.authenticated_client(session)
        async with client:
            outcome = await sync_service.sync_payment(session, client, payment)

    assert outcome.status == sync_service.OUTCOME_DEFERRED
    assert outcome.reason == "invoice_not_synced"
    assert fake_xero.calls("PUT", "Payments") == []
    async with async_session_maker() as session:
        stored = await session.get(XeroPayment, staged.payment_uuid)
        assert stored.sync_status == statuses.SYNC_STATUS_STAGED
        assert stored.external_payment_id is None


@pytest.mark.anyio
async def test_missing_user_and_bad_line_sum_fail_structurally(async_session_maker, app_services, fake_xero):
    orphan = _manual_invoice(net_amount=0, line_amount=0, metadata={})
    mismatched = _manual_invoice(net_amount=0, line_amount=250, metadata={"user_id": str(uuid.uuid4())})
    async with async_session_maker() as session:
        await seed_token(session)
        session.add_all([orphan, mismatched])
        await session.commit()

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.invoices.failed == 2
    assert fake_xero.requests == []
    async with async_session_maker() as session:
        assert (await session.get(XeroInvoice, orphan.invoice_uuid)).sync_error == "missing_user_id"
        assert (await session.get(XeroInvoice, mismatched.invoice_uuid)).sync_error == "line_item_sum_mismatch"


@pytest.mark.anyio
async def test_nothing_pending_skips_authentication(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.skipped_reason == sync_service.SKIP_NOTHING_PENDING
    assert fake_xero.requests == []
    assert fake_xero.token_requests == []


@pytest.mark.anyio
async def test_pending_rows_without_connection_are_left_alone(async_session_maker, app_services, fake_xero):
    invoice = _manual_invoice(net_amount=0, line_amount=0, metadata={"user_id": str(uuid.uuid4())})
    async with async_session_maker() as session:
        session.add(invoice)
        await session.commit()

    async with async_session_maker() as session:
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)
        pending = await sync_service.count_pending(session)

    assert result.skipped_reason == sync_service.SKIP_NOT_CONNECTED
    assert pending.invoices == 1
    assert fake_xero.requests == []


@pytest.mark.anyio
async def test_non_syncable_rows_are_skipped():
    invoice = _manual_invoice(net_amount=0, line_amount=0, metadata={"user_id": str(uuid.uuid4())})
    invoice.sync_status = statuses.SYNC_STATUS_IGNORED

    outcome = await sync_service.sync_invoice(None, None, invoice, app_settings=settings)

    assert outcome.status == sync_service.OUTCOME_SKIPPED


@pytest.mark.anyio
async def test_refund_after_retention_purge_credits_single_line(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        member_payment, _ = await _stage_purchase(session)
    async with async_session_maker() as session:
        await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)
    async with async_session_maker() as session:
        purged = await purge_synced_records(
            session, retention_days=7, log_retention_days=90, now=datetime.now(tz=timezone.utc) + timedelta(days=8)
        )
        assert purged.invoices_deleted == 1
        refund = await staging_service.stage_refund(
            session,
            RefundCompletedFact(refund_id=uuid.uuid4(), payment_id=member_payment.payment_id, amount=1000),
            refund_account_code="400",
        )

    assert refund.staged is True
    async with async_session_maker() as session:
        credit_note = await session.get(XeroInvoice, refund.invoice_uuid)
        assert credit_note.original_invoice_uuid is None
        assert credit_note.member_uuid == member_payment.member_uuid
        result = await sync_service.sync_all_pending(session, app_services.connector, app_settings=settings)

    assert result.credit_notes.synced == 1
    line = fake_xero.credit_notes[0]["LineItems"][0]
    assert line["Description"] == f"Refund for Payment {str(member_payment.payment_id)[:8]}"
    assert (line["LineAmount"], line["AccountCode"]) == ("10.00", "400")
    assert "(Inv:" not in fake_xero.credit_notes[0]["Reference"]
