from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from xerosync.domain.xero import statuses
from xerosync.infra.db import Base, UUID_TYPE


class XeroOAuthToken(Base):
    __tablename__ = "xero_oauth_tokens"

    token_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tenant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    id_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_xero_oauth_tokens_active", "is_active"),)


class XeroContactLink(Base):
    __tablename__ = "xero_contact_links"

    link_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    member_uuid: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("members.member_uuid", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contact_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_status: Mapped[str] = mapped_column(String(16), nullable=False)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("member_uuid", "tenant_id", name="uq_xero_contact_links_member_tenant"),
        Index("ix_xero_contact_links_tenant", "tenant_id"),
    )


class XeroInvoice(Base):
    """Staged sale invoice or credit note waiting to exist in Xero."""

    __tablename__ = "xero_invoices"

    invoice_uuid: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    source_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE,
        ForeignKey("member_payments.payment_id", ondelete="SET NULL"),
        nullable=True,
    )
    refund_id: Mapped[uuid.UUID | None] = mapped_column(UUID_TYPE, nullable=True)
    original_invoice_uuid: Mapped[uuid.UUID | None] = mapped_column(
        UUID_TYPE,
        ForeignKey("xero_invoices.invoice_uuid", ondelete="SET NULL"),
        nullable=True,
    )
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.INVOICE_TYPE_SALE,
        server_default=statuses.INVOICE_TYPE_SALE,
    )
    invoice_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.XERO_STATUS_DRAFT,
        server_default=statuses.XERO_STATUS_DRAFT,
    )
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    external_invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_invoice_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.SYNC_STATUS_STAGED,
        server_default=statuses.SYNC_STATUS_STAGED,
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    staged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    staging_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )

    line_items: Mapped[list["XeroInvoiceLineItem"]] = relationship(
        "XeroInvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="XeroInvoiceLineItem.position",
        lazy="selectin",
    )
    payments: Mapped[list["XeroPayment"]] = relationship(
        "XeroPayment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_xero_invoices_sync_status", "sync_status", "staged_at"),
        Index("ix_xero_invoices_payment_id", "payment_id"),
    )

    @property
    def is_credit_note(self) -> bool:
        return self.invoice_type == statuses.INVOICE_TYPE_CREDIT

    @property
    def member_uuid(self) -> uuid.UUID | None:
        raw = (self.staging_metadata or {}).get("user_id")
        if not raw:
            return None
        try:
            return uuid.UUID(str(raw))
        except ValueError:
            return None


class XeroInvoiceLineItem(Base):
    __tablename__ = "xero_invoice_line_items"

    line_item_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    invoice_uuid: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("xero_invoices.invoice_uuid", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    line_item_type: Mapped[str] = mapped_column(String(16), nullable=False)
    item_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_code_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    account_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    tax_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.TAX_TYPE_NONE,
        server_default=statuses.TAX_TYPE_NONE,
    )
    line_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    invoice: Mapped[XeroInvoice] = relationship("XeroInvoice", back_populates="line_items")

    __table_args__ = (Index("ix_xero_invoice_line_items_invoice", "invoice_uuid"),)


class XeroPayment(Base):
    __tablename__ = "xero_payments"

    xero_payment_uuid: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    invoice_uuid: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("xero_invoices.invoice_uuid", ondelete="CASCADE"),
        nullable=False,
    )
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False, default="stripe")
    bank_account_code: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False)
    reference: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.SYNC_STATUS_STAGED,
        server_default=statuses.SYNC_STATUS_STAGED,
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    staged_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    staging_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )

    invoice: Mapped[XeroInvoice] = relationship("XeroInvoice", back_populates="payments", lazy="joined")

    __table_args__ = (
        Index("ix_xero_payments_sync_status", "sync_status", "staged_at"),
        Index("ix_xero_payments_invoice", "invoice_uuid"),
    )


class XeroSyncLog(Base):
    __tablename__ = "xero_sync_logs"

    log_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operation_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_xero_sync_logs_created_at", "created_at"),
        Index("ix_xero_sync_logs_entity", "entity_type", "entity_id"),
    )
