import asyncio
import uuid

import pytest

from tests.xero_fakes import seed_member, seed_member_payment, seed_token
from xerosync.domain.members import statuses as member_statuses
from xerosync.domain.members.db_models import MemberPayment
from xerosync.domain.xero import staging_service, statuses
from xerosync.domain.xero.db_models import XeroInvoice
from xerosync.domain.xero.staging_service import FactLineItem, PaymentCompletedFact
from xerosync.infra.metrics import Metrics
from xerosync.jobs import run as job_runner
from xerosync.jobs.scheduler import (
    LOOP_CLEANUP,
    LOOP_RETRY,
    LOOP_SYNC,
    LoopConfig,
    ScheduledLoop,
    SyncScheduler,
    loop_configs_from_settings,
)
from xerosync.jobs.xero_sync import run_xero_retry, run_xero_sync
from xerosync.settings import settings


async def _yield_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def _loop(name: str, runner, *, enabled: bool = True, max_items: int = 10) -> ScheduledLoop:
    return ScheduledLoop(name=name, config=LoopConfig(enabled=enabled, interval_seconds=60, max_items=max_items), runner=runner)


@pytest.mark.anyio
async def test_run_once_passes_max_items_and_records_success():
    seen: list[int] = []

    async def runner(limit: int) -> dict[str, int]:
        seen.append(limit)
        return {"synced": 2}

    metrics = Metrics(enabled=True)
    scheduler = SyncScheduler([_loop(LOOP_SYNC, runner, max_items=25)], metrics=metrics)

    result = await scheduler.run_once(LOOP_SYNC)

    assert result == {"synced": 2}
    assert seen == [25]
    assert scheduler.tick_counts[LOOP_SYNC] == 1
    assert metrics.registry.get_sample_value("job_last_success_timestamp", {"job": LOOP_SYNC}) is not None


@pytest.mark.anyio
async def test_run_once_rejects_unknown_job():
    scheduler = SyncScheduler([])
    with pytest.raises(ValueError, match="unknown_job"):
        await scheduler.run_once("xero-nope")


@pytest.mark.anyio
async def test_failing_job_is_contained(caplog):
    async def broken(limit: int) -> dict[str, int]:
        raise RuntimeError("boom")

    metrics = Metrics(enabled=True)
    scheduler = SyncScheduler([_loop(LOOP_CLEANUP, broken)], metrics=metrics)

    result = await scheduler.run_once(LOOP_CLEANUP)

    assert result is None
    assert metrics.registry.get_sample_value(
        "job_errors_total", {"job": LOOP_CLEANUP, "reason": "RuntimeError"}
    ) == 1.0
    assert any(record.getMessage() == "job_failed" for record in caplog.records)


@pytest.mark.anyio
async def test_start_runs_enabled_loops_and_stop_cancels_them():
    ticks = {LOOP_SYNC: 0, LOOP_RETRY: 0}

    def counting(name):
        async def runner(limit: int) -> dict[str, int]:
            ticks[name] += 1
            return {}

        return runner

    scheduler = SyncScheduler(
        [_loop(LOOP_SYNC, counting(LOOP_SYNC)), _loop(LOOP_RETRY, counting(LOOP_RETRY), enabled=False)],
        sleep=_yield_sleep,
    )

    scheduler.start()
    assert scheduler.loop_names == [LOOP_SYNC]
    for _ in range(20):
        await asyncio.sleep(0)
    await scheduler.stop()

    assert scheduler.running is False
    assert ticks[LOOP_SYNC] > 0
    assert ticks[LOOP_RETRY] == 0
    stopped_at = ticks[LOOP_SYNC]
    for _ in range(20):
        await asyncio.sleep(0)
    assert ticks[LOOP_SYNC] == stopped_at


def test_loop_configs_follow_settings():
    settings.xero_sync_max_items = 5
    configs = loop_configs_from_settings(settings)

    assert set(configs) == {LOOP_SYNC, LOOP_RETRY, LOOP_CLEANUP}
    assert configs[LOOP_SYNC].max_items == 5
    assert configs[LOOP_CLEANUP].interval_seconds == settings.xero_cleanup_interval_seconds


@pytest.mark.anyio
async def test_retry_job_promotes_drafts_then_syncs(async_session_maker, app_services, fake_xero):
    async with async_session_maker() as session:
        await seed_token(session)
        member = await seed_member(session)
        member_payment = await seed_member_payment(session, member, status=member_statuses.PAYMENT_STATUS_PENDING)
        staged = await staging_service.stage_invoice_draft(
            session,
            PaymentCompletedFact(
                payment_id=member_payment.payment_id,
                user_id=member.member_uuid,
                total_amount=5000,
                discount_amount=0,
                final_amount=5000,
                line_items=[
                    FactLineItem(line_item_type=statuses.LINE_TYPE_MEMBERSHIP, description="Membership", unit_amount=5000)
                ],
                processor_reference="pi_draft",
            ),
            bank_account_code="090",
        )

    idle = await run_xero_retry(async_session_maker, app_services.coordinator, limit=10)
    assert idle == {"promoted": 0, "synced": 0, "failed": 0}

    async with async_session_maker() as session:
        stored = await session.get(MemberPayment, member_payment.payment_id)
        stored.status = member_statuses.PAYMENT_STATUS_COMPLETED
        await session.commit()

    summary = await run_xero_retry(async_session_maker, app_services.coordinator, limit=10)

    assert summary["promoted"] == 1
    assert summary["synced"] == 2
    async with async_session_maker() as session:
        invoice = await session.get(XeroInvoice, staged.invoice_uuid)
        assert invoice.sync_status == statuses.SYNC_STATUS_SYNCED


@pytest.mark.anyio
async def test_sync_job_summarises_skipped_run(app_services, fake_xero):
    summary = await run_xero_sync(app_services.coordinator, limit=5)

    assert summary["skipped"] == 1
    assert summary["synced"] == 0
    assert fake_xero.requests == []


def test_job_runner_cli_parses_jobs():
    args = job_runner.parse_args(["--once", "--job", LOOP_SYNC, "--job", LOOP_CLEANUP])

    assert args.once is True
    assert args.jobs == [LOOP_SYNC, LOOP_CLEANUP]


def test_job_runner_cli_rejects_unknown_job():
    with pytest.raises(SystemExit):
        job_runner.parse_args(["--job", "xero-" + uuid.uuid4().hex[:6]])
