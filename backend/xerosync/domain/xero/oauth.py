from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import urlencode

import httpx
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from xerosync.domain.xero import statuses
from xerosync.domain.xero.client import XeroApiError, XeroClient
from xerosync.domain.xero.db_models import XeroOAuthToken
from xerosync.domain.xero.sync_log import record_sync_log
from xerosync.infra.logging import SyncEvent, log_sync_event
from xerosync.infra.metrics import Metrics
from xerosync.shared.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

ACCESS_TOKEN_SKEW = timedelta(seconds=60)

CONNECTION_CONNECTED = "connected"
CONNECTION_EXPIRED = "expired"
CONNECTION_ERROR = "error"
CONNECTION_NOT_CONNECTED = "not_connected"


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: str
    expires_in: int
    id_token: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class ConnectionHealth:
    status: str
    tenant_id: str | None = None
    tenant_name: str | None = None
    detail: str | None = None

    @property
    def connected(self) -> bool:
        return self.status == CONNECTION_CONNECTED


async def load_active_token(session: AsyncSession) -> XeroOAuthToken | None:
    return await session.scalar(
        sa.select(XeroOAuthToken)
        .where(XeroOAuthToken.is_active.is_(True))
        .order_by(XeroOAuthToken.updated_at.desc())
        .limit(1)
    )


class XeroConnector:
    """Owns Xero credentials and hands out authenticated API clients.

    Tokens are refreshed lazily: every call to `authenticated_client` checks the
    stored access token and refreshes it when it is about to expire.
    """

    def __init__(
        self,
        app_settings,
        *,
        metrics: Metrics | None = None,
        api_transport: httpx.AsyncBaseTransport | None = None,
        token_transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = app_settings
        self._metrics = metrics
        self._api_transport = api_transport
        self._token_transport = token_transport
        self._clock = clock

    @property
    def oauth_configured(self) -> bool:
        return bool(
            self._settings.xero_client_id
            and self._settings.xero_client_secret
            and self._settings.xero_redirect_uri
        )

    def build_auth_url(self, *, state: str | None = None) -> str:
        query = {
            "response_type": "code",
            "client_id": self._settings.xero_client_id,
            "redirect_uri": self._settings.xero_redirect_uri,
            "scope": self._settings.xero_scopes,
        }
        if state:
            query["state"] = state
        return f"{self._settings.xero_authorize_url}?{urlencode(query)}"

    def _basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self._settings.xero_client_id or "", self._settings.xero_client_secret or "")

    async def _token_request(self, payload: dict[str, str], *, error_code: str) -> TokenSet:
        timeout = httpx.Timeout(10.0, connect=5.0)
        async with httpx.AsyncClient(timeout=timeout, transport=self._token_transport) as client:
            try:
                response = await client.post(self._settings.xero_token_url, data=payload, auth=self._basic_auth())
            except httpx.TransportError as exc:
                raise XeroApiError(error_code, detail=type(exc).__name__, transient=True) from exc
        if response.status_code != 200:
            raise XeroApiError(
                error_code,
                status_code=response.status_code,
                transient=response.status_code >= 500 or response.status_code == 429,
            )
        data = response.json()
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            raise XeroApiError("missing_token_fields")
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(data.get("expires_in") or 1800),
            id_token=data.get("id_token"),
            scope=data.get("scope"),
        )

    async def exchange_code(self, code: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self._settings.xero_redirect_uri or "",
            },
            error_code="token_exchange_failed",
        )

    async def refresh_tokens(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            error_code="token_refresh_failed",
        )

    async def fetch_connections(self, access_token: str) -> list[dict]:
        timeout = httpx.Timeout(self._settings.xero_http_timeout_seconds, connect=5.0)
        async with httpx.AsyncClient(timeout=timeout, transport=self._api_transport) as client:
            response = await client.get(
                self._settings.xero_connections_url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        if response.status_code >= 400:
            raise XeroApiError("xero_connections_failed", status_code=response.status_code)
        data = response.json()
        return data if isinstance(data, list) else []

    async def complete_authorization(self, session: AsyncSession, code: str) -> list[XeroOAuthToken]:
        """Exchange an authorization code and store one token row per connected tenant."""
        token_set = await self.exchange_code(code)
        connections = await self.fetch_connections(token_set.access_token)
        if not connections:
            raise ValueError("no_xero_tenants")
        now = self._clock()
        stored: list[XeroOAuthToken] = []
        for connection in connections:
            tenant_id = connection.get("tenantId")
            if not tenant_id:
                continue
            record = await session.scalar(sa.select(XeroOAuthToken).where(XeroOAuthToken.tenant_id == tenant_id))
            if record is None:
                record = XeroOAuthToken(tenant_id=tenant_id, created_at=now)
                session.add(record)
            record.tenant_name = connection.get("tenantName")
            self._apply_token_set(record, token_set, now=now)
            stored.append(record)
        await session.flush()
        logger.info("xero_connected", extra={"extra": {"tenants": [record.tenant_id for record in stored]}})
        return stored

    def _apply_token_set(self, record: XeroOAuthToken, token_set: TokenSet, *, now: datetime) -> None:
        record.access_token = token_set.access_token
        record.refresh_token = token_set.refresh_token
        record.id_token = token_set.id_token
        record.scope = token_set.scope
        record.expires_at = now + timedelta(seconds=token_set.expires_in)
        record.is_active = True
        record.updated_at = now

    async def list_connections(self, session: AsyncSession) -> list[XeroOAuthToken]:
        return list(
            (
                await session.scalars(
                    sa.select(XeroOAuthToken)
                    .where(XeroOAuthToken.is_active.is_(True))
                    .order_by(XeroOAuthToken.updated_at.desc())
                )
            ).all()
        )

    async def get_active_token(self, session: AsyncSession) -> XeroOAuthToken | None:
        return await load_active_token(session)

    def refresh_token_expired(self, token: XeroOAuthToken) -> bool:
        issued_at = as_utc(token.updated_at) or as_utc(token.created_at)
        if issued_at is None:
            return False
        ttl = timedelta(days=self._settings.xero_refresh_token_ttl_days)
        return self._clock() >= issued_at + ttl

    def access_token_expired(self, token: XeroOAuthToken) -> bool:
        expires_at = as_utc(token.expires_at)
        return expires_at is None or self._clock() + ACCESS_TOKEN_SKEW >= expires_at

    async def _deactivate(self, session: AsyncSession, token: XeroOAuthToken, *, reason: str) -> None:
        token.is_active = False
        record_sync_log(
            session,
            tenant_id=token.tenant_id,
            operation_type=statuses.OPERATION_TOKEN_REFRESH,
            entity_type=statuses.ENTITY_TOKEN,
            entity_id=token.token_id,
            success=False,
            error_message=reason,
            now=self._clock(),
        )
        await session.commit()
        log_sync_event(
            logger,
            SyncEvent(
                event="xero_reauthentication_required",
                entity_type=statuses.ENTITY_TOKEN,
                tenant_id=token.tenant_id,
                outcome="deactivated",
                error=reason,
            ),
            level=logging.CRITICAL,
        )

    async def ensure_fresh_token(self, session: AsyncSession, token: XeroOAuthToken) -> XeroOAuthToken | None:
        if self.refresh_token_expired(token):
            await self._deactivate(session, token, reason="refresh_token_expired")
            return None
        if not self.access_token_expired(token):
            return token
        try:
            token_set = await self.refresh_tokens(token.refresh_token)
        except XeroApiError as exc:
            if self._metrics is not None:
                self._metrics.record_xero_token_refresh("transient_error" if exc.retryable else "error")
            if exc.retryable:
                log_sync_event(
                    logger,
                    SyncEvent(
                        event="xero_token_refresh_deferred",
                        entity_type=statuses.ENTITY_TOKEN,
                        tenant_id=token.tenant_id,
                        error=exc.message,
                    ),
                    level=logging.WARNING,
                )
                return None
            await self._deactivate(session, token, reason=exc.message)
            return None
        self._apply_token_set(token, token_set, now=self._clock())
        record_sync_log(
            session,
            tenant_id=token.tenant_id,
            operation_type=statuses.OPERATION_TOKEN_REFRESH,
            entity_type=statuses.ENTITY_TOKEN,
            entity_id=token.token_id,
            success=True,
            now=self._clock(),
        )
        await session.commit()
        if self._metrics is not None:
            self._metrics.record_xero_token_refresh("success")
        logger.info("xero_token_refreshed", extra={"extra": {"tenant_id": token.tenant_id}})
        return token

    def client_for(self, token: XeroOAuthToken) -> XeroClient:
        return XeroClient(
            token.access_token,
            token.tenant_id,
            base_url=self._settings.xero_api_base_url,
            timeout_seconds=self._settings.xero_http_timeout_seconds,
            transport=self._api_transport,
            metrics=self._metrics,
        )

    async def authenticated_client(self, session: AsyncSession) -> XeroClient | None:
        token = await self.get_active_token(session)
        if token is None:
            return None
        fresh = await self.ensure_fresh_token(session, token)
        if fresh is None:
            return None
        return self.client_for(fresh)

    async def describe_connection(self, session: AsyncSession) -> ConnectionHealth:
        """Connection state from stored credentials only, without calling Xero."""
        token = await self.get_active_token(session)
        if token is None:
            return ConnectionHealth(status=CONNECTION_NOT_CONNECTED)
        status = CONNECTION_EXPIRED if self.refresh_token_expired(token) else CONNECTION_CONNECTED
        return ConnectionHealth(status=status, tenant_id=token.tenant_id, tenant_name=token.tenant_name)

    async def health_check(self, session: AsyncSession) -> ConnectionHealth:
        token = await self.get_active_token(session)
        if token is None:
            return ConnectionHealth(status=CONNECTION_NOT_CONNECTED)
        tenant_id, tenant_name = token.tenant_id, token.tenant_name
        fresh = await self.ensure_fresh_token(session, token)
        if fresh is None:
            status = CONNECTION_ERROR if token.is_active else CONNECTION_EXPIRED
            return ConnectionHealth(status=status, tenant_id=tenant_id, tenant_name=tenant_name)
        client = self.client_for(fresh)
        try:
            await client.get_organisation()
        except XeroApiError as exc:
            logger.warning(
                "xero_health_check_failed",
                extra={"extra": {"tenant_id": tenant_id, "reason": exc.code, "status_code": exc.status_code}},
            )
            return ConnectionHealth(
                status=CONNECTION_ERROR, tenant_id=tenant_id, tenant_name=tenant_name, detail=exc.message
            )
        finally:
            await client.close()
        return ConnectionHealth(status=CONNECTION_CONNECTED, tenant_id=tenant_id, tenant_name=tenant_name)

    async def disconnect(self, session: AsyncSession, *, tenant_id: str | None = None) -> int:
        stmt = sa.update(XeroOAuthToken).where(XeroOAuthToken.is_active.is_(True)).values(is_active=False)
        if tenant_id:
            stmt = stmt.where(XeroOAuthToken.tenant_id == tenant_id)
        result = await session.execute(stmt)
        await session.flush()
        logger.info("xero_disconnected", extra={"extra": {"tenant_id": tenant_id, "count": result.rowcount}})
        return result.rowcount or 0
