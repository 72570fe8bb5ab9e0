"""Parties (customers and suppliers), restricted-use wallets and document sequences."""

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    String, BigInteger, Integer, Enum, DateTime, ForeignKey, Boolean, JSON,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from coopledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PartySide(str, enum.Enum):
    RECEIVABLE = "receivable"  # customer owes us
    PAYABLE = "payable"        # we owe the supplier


class Party(Base):
    """A customer or supplier; owns its ledger postings.

    ``outstanding_total`` is a denormalised copy of the latest posting's
    ``balance_after`` and is written only by the ledger store.
    """

    __tablename__ = "parties"
    __table_args__ = (
        UniqueConstraint("tenant_id", "side", "code", name="uq_parties_tenant_side_code"),
        Index("ix_parties_tenant_side", "tenant_id", "side"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    side: Mapped[PartySide] = mapped_column(Enum(PartySide), nullable=False)
    code: Mapped[str] = mapped_column(String(30), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_member: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    credit_limit: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    credit_terms_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outstanding_total: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    accumulated_patronage: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class CustomerWallet(Base):
    """Restricted-use spending wallet (e.g. a rice subsidy) held by a customer."""

    __tablename__ = "customer_wallets"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    allowed_category_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class DocumentSequence(Base):
    """Per-tenant counter behind PO-/SALE-/LN- style document numbers."""

    __tablename__ = "document_sequences"
    __table_args__ = (
        UniqueConstraint("tenant_id", "prefix", "year", name="uq_document_sequences_scope"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    prefix: Mapped[str] = mapped_column(String(10), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    last_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
