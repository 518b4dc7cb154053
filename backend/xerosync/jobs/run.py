import argparse
import asyncio
import logging

from xerosync.infra.db import dispose_engine, get_session_factory
from xerosync.infra.logging import configure_logging
from xerosync.infra.metrics import configure_metrics
from xerosync.infra.tracing import configure_tracing
from xerosync.jobs.scheduler import LOOP_CLEANUP, LOOP_RETRY, LOOP_SYNC
from xerosync.services import AppServices, build_app_services
from xerosync.settings import settings

logger = logging.getLogger(__name__)

JOB_NAMES = (LOOP_SYNC, LOOP_RETRY, LOOP_CLEANUP)


async def _check_connection(services: AppServices, session_factory) -> None:
    async with session_factory() as session:
        health = await services.connector.health_check(session)
    logger.info(
        "xero_startup_connection_check",
        extra={"extra": {"status": health.status, "tenant_id": health.tenant_id, "detail": health.detail}},
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Xero sync loops")
    parser.add_argument("--job", action="append", dest="jobs", choices=JOB_NAMES, help="Job name to run with --once")
    parser.add_argument("--once", action="store_true", help="Run each job once and exit")
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    configure_tracing(service_name=f"{settings.app_name}-jobs")
    configure_logging()
    metrics_client = configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    services = build_app_services(settings, session_factory=session_factory, metrics=metrics_client)
    scheduler = services.scheduler

    try:
        await _check_connection(services, session_factory)
        if args.once:
            for name in args.jobs or JOB_NAMES:
                await scheduler.run_once(name)
            return

        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
