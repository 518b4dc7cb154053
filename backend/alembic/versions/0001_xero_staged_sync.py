"""members, staged xero records and sync log

Revision ID: 0001_xero_staged_sync
Revises: 
Create Date: 2026-10-18 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_xero_staged_sync"
down_revision = None
branch_labels = None
depends_on = None

UUID_TYPE = sa.Uuid(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "members",
        sa.Column("member_uuid", UUID_TYPE, primary_key=True),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=320)),
        sa.Column("member_number", sa.String(length=32)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_members_email", "members", ["email"])

    op.create_table(
        "member_payments",
        sa.Column("payment_id", UUID_TYPE, primary_key=True),
        sa.Column(
            "member_uuid",
            UUID_TYPE,
            sa.ForeignKey("members.member_uuid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(length=16), nullable=False, server_default="stripe"),
        sa.Column("processor_reference", sa.String(length=255)),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column("final_amount", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_member_payments_member_uuid", "member_payments", ["member_uuid"])
    op.create_index("ix_member_payments_status", "member_payments", ["status"])

    op.create_table(
        "xero_oauth_tokens",
        sa.Column("token_id", UUID_TYPE, primary_key=True),
        sa.Column("tenant_id", sa.String(length=64), nullable=False, unique=True),
        sa.Column("tenant_name", sa.Text()),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text(), nullable=False),
        sa.Column("id_token", sa.Text()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scope", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_xero_oauth_tokens_active", "xero_oauth_tokens", ["is_active"])

    op.create_table(
        "xero_contact_links",
        sa.Column("link_id", UUID_TYPE, primary_key=True),
        sa.Column(
            "member_uuid",
            UUID_TYPE,
            sa.ForeignKey("members.member_uuid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("external_contact_id", sa.String(length=64)),
        sa.Column("contact_name", sa.Text()),
        sa.Column("sync_status", sa.String(length=16), nullable=False),
        sa.Column("sync_error", sa.Text()),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("member_uuid", "tenant_id", name="uq_xero_contact_links_member_tenant"),
    )
    op.create_index("ix_xero_contact_links_tenant", "xero_contact_links", ["tenant_id"])

    op.create_table(
        "xero_invoices",
        sa.Column("invoice_uuid", UUID_TYPE, primary_key=True),
        sa.Column("source_key", sa.String(length=128), nullable=False, unique=True),
        sa.Column(
            "payment_id",
            UUID_TYPE,
            sa.ForeignKey("member_payments.payment_id", ondelete="SET NULL"),
        ),
        sa.Column("refund_id", UUID_TYPE),
        sa.Column(
            "original_invoice_uuid",
            UUID_TYPE,
            sa.ForeignKey("xero_invoices.invoice_uuid", ondelete="SET NULL"),
        ),
        sa.Column("tenant_id", sa.String(length=64)),
        sa.Column("invoice_type", sa.String(length=16), nullable=False, server_default="ACCREC"),
        sa.Column("invoice_status", sa.String(length=16), nullable=False, server_default="DRAFT"),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("discount_amount", sa.Integer(), nullable=False),
        sa.Column("net_amount", sa.Integer(), nullable=False),
        sa.Column("external_invoice_id", sa.String(length=64)),
        sa.Column("external_invoice_number", sa.String(length=64)),
        sa.Column("sync_status", sa.String(length=16), nullable=False, server_default="staged"),
        sa.Column("sync_error", sa.Text()),
        sa.Column("staged_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("staging_metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_xero_invoices_sync_status", "xero_invoices", ["sync_status", "staged_at"])
    op.create_index("ix_xero_invoices_payment_id", "xero_invoices", ["payment_id"])

    op.create_table(
        "xero_invoice_line_items",
        sa.Column("line_item_id", UUID_TYPE, primary_key=True),
        sa.Column(
            "invoice_uuid",
            UUID_TYPE,
            sa.ForeignKey("xero_invoices.invoice_uuid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("line_item_type", sa.String(length=16), nullable=False),
        sa.Column("item_id", sa.String(length=64)),
        sa.Column("discount_code_id", sa.String(length=64)),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_amount", sa.Integer(), nullable=False),
        sa.Column("account_code", sa.String(length=16)),
        sa.Column("tax_type", sa.String(length=16), nullable=False, server_default="NONE"),
        sa.Column("line_amount", sa.Integer(), nullable=False),
    )
    op.create_index("ix_xero_invoice_line_items_invoice", "xero_invoice_line_items", ["invoice_uuid"])

    op.create_table(
        "xero_payments",
        sa.Column("xero_payment_uuid", UUID_TYPE, primary_key=True),
        sa.Column(
            "invoice_uuid",
            UUID_TYPE,
            sa.ForeignKey("xero_invoices.invoice_uuid", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tenant_id", sa.String(length=64)),
        sa.Column("external_payment_id", sa.String(length=64)),
        sa.Column("payment_method", sa.String(length=16), nullable=False),
        sa.Column("bank_account_code", sa.String(length=16), nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=False),
        sa.Column("reference", sa.Text()),
        sa.Column("sync_status", sa.String(length=16), nullable=False, server_default="staged"),
        sa.Column("sync_error", sa.Text()),
        sa.Column("staged_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True)),
        sa.Column("staging_metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_xero_payments_sync_status", "xero_payments", ["sync_status", "staged_at"])
    op.create_index("ix_xero_payments_invoice", "xero_payments", ["invoice_uuid"])

    op.create_table(
        "xero_sync_logs",
        sa.Column("log_id", UUID_TYPE, primary_key=True),
        sa.Column("tenant_id", sa.String(length=64)),
        sa.Column("operation_type", sa.String(length=32), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64)),
        sa.Column("external_id", sa.String(length=64)),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text()),
        sa.Column("request_data", sa.JSON()),
        sa.Column("response_data", sa.JSON()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_xero_sync_logs_created_at", "xero_sync_logs", ["created_at"])
    op.create_index("ix_xero_sync_logs_entity", "xero_sync_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("xero_sync_logs")
    op.drop_table("xero_payments")
    op.drop_table("xero_invoice_line_items")
    op.drop_table("xero_invoices")
    op.drop_table("xero_contact_links")
    op.drop_table("xero_oauth_tokens")
    op.drop_table("member_payments")
    op.drop_table("members")
