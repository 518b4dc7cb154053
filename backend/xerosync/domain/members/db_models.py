from __future__ import annotations

import uuid
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from xerosync.domain.members import statuses
from xerosync.infra.db import Base, UUID_TYPE


class Member(Base):
    __tablename__ = "members"

    member_uuid: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    member_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )

    __table_args__ = (Index("ix_members_email", "email"),)


class MemberPayment(Base):
    __tablename__ = "member_payments"

    payment_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    member_uuid: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        ForeignKey("members.member_uuid", ondelete="CASCADE"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.PAYMENT_STATUS_PENDING,
        server_default=statuses.PAYMENT_STATUS_PENDING,
    )
    payment_method: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=statuses.PAYMENT_METHOD_STRIPE,
        server_default=statuses.PAYMENT_METHOD_STRIPE,
    )
    processor_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    member: Mapped[Member] = relationship("Member", lazy="joined")

    __table_args__ = (
        Index("ix_member_payments_member_uuid", "member_uuid"),
        Index("ix_member_payments_status", "status"),
    )
