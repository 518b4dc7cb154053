from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from xerosync.domain.xero.coordinator import SyncCoordinator
from xerosync.domain.xero.oauth import XeroConnector
from xerosync.infra.db import open_session
from xerosync.infra.metrics import Metrics, configure_metrics
from xerosync.jobs.scheduler import SyncScheduler, build_scheduler


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    metrics: Metrics
    connector: XeroConnector
    coordinator: SyncCoordinator
    scheduler: SyncScheduler


def build_app_services(
    app_settings,
    *,
    session_factory: Callable[[], Any] | None = None,
    metrics: Metrics | None = None,
    api_transport: httpx.AsyncBaseTransport | None = None,
    token_transport: httpx.AsyncBaseTransport | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    factory = session_factory or open_session
    connector = XeroConnector(
        app_settings,
        metrics=metrics_client,
        api_transport=api_transport,
        token_transport=token_transport,
    )
    coordinator = SyncCoordinator(
        session_factory=factory,
        connector=connector,
        app_settings=app_settings,
        metrics=metrics_client,
        sleep=sleep,
    )
    return AppServices(
        metrics=metrics_client,
        connector=connector,
        coordinator=coordinator,
        scheduler=build_scheduler(
            app_settings,
            session_factory=factory,
            coordinator=coordinator,
            metrics=metrics_client,
            sleep=sleep,
        ),
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
