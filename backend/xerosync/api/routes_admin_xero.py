from __future__ import annotations

import secrets

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.api.admin_auth import AdminIdentity, require_admin, require_finance, require_viewer
from xerosync.api.problem_details import PROBLEM_TYPE_DOMAIN, problem_details, xero_problem
from xerosync.domain.errors import DomainError
from xerosync.domain.xero import recovery_service, schemas as xero_schemas
from xerosync.domain.xero.client import XeroApiError
from xerosync.domain.xero.oauth import ConnectionHealth, XeroConnector
from xerosync.domain.xero.coordinator import SyncCoordinator
from xerosync.domain.xero.sync_service import SyncRunResult
from xerosync.infra.db import get_db_session
from xerosync.services import resolve_services

router = APIRouter(prefix="/v1/admin/xero", tags=["admin-xero"])


def _connector(request: Request) -> XeroConnector:
    return resolve_services(request.app).connector


def _coordinator(request: Request) -> SyncCoordinator:
    return resolve_services(request.app).coordinator


def _connection_status(connector: XeroConnector, health: ConnectionHealth) -> xero_schemas.XeroConnectionStatus:
    return xero_schemas.XeroConnectionStatus(
        status=health.status,
        connected=health.connected,
        tenant_id=health.tenant_id,
        tenant_name=health.tenant_name,
        oauth_configured=connector.oauth_configured,
        detail=health.detail,
    )


def _sync_response(result: SyncRunResult) -> xero_schemas.ManualSyncResponse:
    return xero_schemas.ManualSyncResponse(**result.as_dict())


@router.get("/status", response_model=xero_schemas.XeroSyncStatusResponse)
async def get_xero_status(
    request: Request,
    time_window: str = Query("24h", alias="timeWindow"),
    _identity: AdminIdentity = Depends(require_viewer),
    session: AsyncSession = Depends(get_db_session),
):
    connector = _connector(request)
    try:
        recovery_service.window_start(time_window)
    except ValueError as exc:
        raise DomainError.from_code(exc, field="timeWindow") from exc
    health = await connector.describe_connection(session)
    return await recovery_service.sync_status_report(
        session,
        connection=_connection_status(connector, health),
        time_window=time_window,
        coordinator_running=_coordinator(request).is_running,
    )


@router.post("/manual-sync", response_model=xero_schemas.ManualSyncResponse)
async def trigger_manual_sync(
    request: Request,
    _identity: AdminIdentity = Depends(require_finance),
) -> xero_schemas.ManualSyncResponse:
    result = await _coordinator(request).run(trigger="manual")
    return _sync_response(result)


@router.post("/retry-failed", response_model=xero_schemas.RetryFailedResponse)
async def retry_failed(
    payload: xero_schemas.SelectionRequest,
    request: Request,
    _identity: AdminIdentity = Depends(require_finance),
    session: AsyncSession = Depends(get_db_session),
):
    items = payload.items if payload.type == "selected" else None
    try:
        reset = await recovery_service.reset_failed(session, items=items)
    except ValueError as exc:
        raise DomainError.from_code(exc, field="items") from exc
    result = await _coordinator(request).run(trigger="retry_failed")
    return xero_schemas.RetryFailedResponse(
        reset_invoices=reset.reset_invoices,
        reset_payments=reset.reset_payments,
        unrecoverable=reset.unrecoverable,
        not_found=reset.not_found,
        sync=_sync_response(result),
    )


@router.post("/ignore-failed", response_model=xero_schemas.IgnoreFailedResponse)
async def ignore_failed(
    payload: xero_schemas.SelectionRequest,
    request: Request,
    _identity: AdminIdentity = Depends(require_finance),
    session: AsyncSession = Depends(get_db_session),
):
    items = payload.items if payload.type == "selected" else None
    try:
        ignored = await recovery_service.ignore_failed(session, items=items)
    except ValueError as exc:
        raise DomainError.from_code(exc, field="items") from exc
    return xero_schemas.IgnoreFailedResponse(
        ignored_invoices=ignored.ignored_invoices,
        ignored_payments=ignored.ignored_payments,
        not_found=ignored.not_found,
    )


@router.get("/sync-logs", response_model=xero_schemas.SyncLogPage)
async def list_sync_logs(
    request: Request,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    time_window: str | None = Query(None, alias="timeWindow"),
    _identity: AdminIdentity = Depends(require_viewer),
    session: AsyncSession = Depends(get_db_session),
):
    try:
        entries, total = await recovery_service.list_sync_logs(
            session, offset=offset, limit=limit, time_window=time_window
        )
    except ValueError as exc:
        raise DomainError.from_code(exc, field="timeWindow") from exc
    return xero_schemas.SyncLogPage(
        items=[
            xero_schemas.SyncLogEntryResponse(
                log_id=str(entry.log_id),
                tenant_id=entry.tenant_id,
                operation_type=entry.operation_type,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                external_id=entry.external_id,
                success=entry.success,
                error_message=entry.error_message,
                request_data=entry.request_data,
                response_data=entry.response_data,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.get("/connect/start", response_model=xero_schemas.XeroConnectStartResponse)
async def start_xero_connect(
    request: Request,
    _identity: AdminIdentity = Depends(require_admin),
):
    connector = _connector(request)
    if not connector.oauth_configured:
        return problem_details(
            request=request,
            status=status.HTTP_400_BAD_REQUEST,
            title="Xero OAuth Not Configured",
            detail="Missing Xero OAuth configuration.",
            type_=PROBLEM_TYPE_DOMAIN,
        )
    return xero_schemas.XeroConnectStartResponse(
        authorization_url=connector.build_auth_url(state=secrets.token_urlsafe(16))
    )


@router.post("/connect/callback", response_model=xero_schemas.XeroConnectCallbackResponse)
async def finish_xero_connect(
    payload: xero_schemas.XeroConnectCallbackRequest,
    request: Request,
    _identity: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    connector = _connector(request)
    if not connector.oauth_configured:
        return problem_details(
            request=request,
            status=status.HTTP_400_BAD_REQUEST,
            title="Xero OAuth Not Configured",
            detail="Missing Xero OAuth configuration.",
            type_=PROBLEM_TYPE_DOMAIN,
        )
    try:
        tokens = await connector.complete_authorization(session, payload.code)
    except XeroApiError as exc:
        return xero_problem(request, exc, title="Xero OAuth Exchange Failed")
    except ValueError as exc:
        raise DomainError.from_code(exc, field="code") from exc
    await session.commit()
    return xero_schemas.XeroConnectCallbackResponse(
        connected=True,
        tenants=[
            xero_schemas.XeroTenantResponse(tenant_id=token.tenant_id, tenant_name=token.tenant_name)
            for token in tokens
        ],
    )


@router.post("/disconnect", response_model=xero_schemas.XeroDisconnectResponse)
async def disconnect_xero(
    request: Request,
    _identity: AdminIdentity = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> xero_schemas.XeroDisconnectResponse:
    disconnected = await _connector(request).disconnect(session)
    await session.commit()
    return xero_schemas.XeroDisconnectResponse(connected=False, disconnected=disconnected)


@router.post("/keep-alive", response_model=xero_schemas.XeroConnectionStatus)
async def keep_alive(
    request: Request,
    _identity: AdminIdentity = Depends(require_finance),
    session: AsyncSession = Depends(get_db_session),
) -> xero_schemas.XeroConnectionStatus:
    connector = _connector(request)
    health = await connector.health_check(session)
    return _connection_status(connector, health)
