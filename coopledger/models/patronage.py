"""Patronage refund batches and their per-member allocations."""

import enum
from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    String, BigInteger, Integer, Numeric, Enum, DateTime, Date, ForeignKey, Text,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from coopledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefundMethod(str, enum.Enum):
    RATE_BASED = "rate_based"    # purchases × rate
    POOL_BASED = "pool_based"    # fixed fund shared by purchases


class BatchStatus(str, enum.Enum):
    DRAFT = "draft"
    APPROVED = "approved"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"


class RefundAllocationStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FORFEITED = "forfeited"


class PatronageRefundBatch(Base):
    __tablename__ = "patronage_refund_batches"
    __table_args__ = (
        Index("ix_patronage_batches_tenant_status", "tenant_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    period_label: Mapped[str] = mapped_column(String(50), nullable=False)
    period_from: Mapped[date] = mapped_column(Date, nullable=False)
    period_to: Mapped[date] = mapped_column(Date, nullable=False)

    method: Mapped[RefundMethod] = mapped_column(
        Enum(RefundMethod), default=RefundMethod.RATE_BASED, nullable=False
    )
    rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), default=Decimal("0"), nullable=False)
    pool: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    total_member_purchases: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_allocated: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_distributed: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus), default=BatchStatus.DRAFT, nullable=False
    )
    approved_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class PatronageRefundAllocation(Base):
    """One member's share of a batch, paid out or forfeited exactly once."""

    __tablename__ = "patronage_refund_allocations"
    __table_args__ = (
        UniqueConstraint("batch_id", "party_id", name="uq_patronage_allocations_member"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("patronage_refund_batches.id"), nullable=False, index=True
    )
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    member_purchases: Mapped[int] = mapped_column(BigInteger, nullable=False)
    allocation_percentage: Mapped[Decimal] = mapped_column(
        Numeric(10, 6), default=Decimal("0"), nullable=False
    )
    allocation_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    status: Mapped[RefundAllocationStatus] = mapped_column(
        Enum(RefundAllocationStatus), default=RefundAllocationStatus.PENDING, nullable=False
    )
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
