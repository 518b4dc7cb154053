from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator


class XeroConnectionStatus(BaseModel):
    status: str
    connected: bool
    tenant_id: str | None = None
    tenant_name: str | None = None
    oauth_configured: bool
    detail: str | None = None


class OperationStats(BaseModel):
    operation_type: str
    succeeded: int = 0
    failed: int = 0


class StatusCounts(BaseModel):
    pending: int = 0
    staged: int = 0
    draft: int = 0
    synced: int = 0
    failed: int = 0
    ignored: int = 0


class SyncItem(BaseModel):
    item_id: str
    entity_type: str
    user_id: str | None = None
    amount: int
    sync_status: str
    sync_error: str | None = None
    staged_at: datetime
    unrecoverable: bool = False
    unrecoverable_reason: str | None = None


class UserSyncGroup(BaseModel):
    user_id: str | None = None
    pending: int = 0
    failed: int = 0
    items: list[SyncItem]


class XeroSyncStatusResponse(BaseModel):
    connection: XeroConnectionStatus
    time_window: str
    operations: list[OperationStats]
    invoices: StatusCounts
    payments: StatusCounts
    credit_notes: StatusCounts
    pending_items: list[SyncItem]
    failed_items: list[SyncItem]
    by_user: list[UserSyncGroup]
    coordinator_running: bool


class EntityCountsResponse(BaseModel):
    synced: int = 0
    failed: int = 0
    deferred: int = 0
    errors: int = 0


class ManualSyncResponse(BaseModel):
    total_synced: int
    total_failed: int
    invoices: EntityCountsResponse
    payments: EntityCountsResponse
    credit_notes: EntityCountsResponse
    rate_limited: bool
    skipped_reason: str | None = None


class SelectionRequest(BaseModel):
    type: Literal["all", "selected"] = "all"
    items: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def require_items_when_selected(self) -> "SelectionRequest":
        if self.type == "selected" and not self.items:
            raise ValueError("items are required when type is 'selected'")
        return self


class RetryFailedResponse(BaseModel):
    reset_invoices: int
    reset_payments: int
    unrecoverable: list[str]
    not_found: list[str]
    sync: ManualSyncResponse


class IgnoreFailedResponse(BaseModel):
    ignored_invoices: int
    ignored_payments: int
    not_found: list[str]


class SyncLogEntryResponse(BaseModel):
    log_id: str
    tenant_id: str | None = None
    operation_type: str
    entity_type: str
    entity_id: str | None = None
    external_id: str | None = None
    success: bool
    error_message: str | None = None
    request_data: dict | None = None
    response_data: dict | None = None
    created_at: datetime


class SyncLogPage(BaseModel):
    items: list[SyncLogEntryResponse]
    total: int
    offset: int
    limit: int


class XeroConnectStartResponse(BaseModel):
    authorization_url: str


class XeroConnectCallbackRequest(BaseModel):
    code: str
    state: str | None = None


class XeroTenantResponse(BaseModel):
    tenant_id: str
    tenant_name: str | None = None


class XeroConnectCallbackResponse(BaseModel):
    connected: bool
    tenants: list[XeroTenantResponse] = Field(default_factory=list)


class XeroDisconnectResponse(BaseModel):
    connected: bool
    disconnected: int
