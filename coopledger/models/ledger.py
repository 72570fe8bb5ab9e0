"""Receivable / payable ledger postings and payment allocations.

Sign convention: obligations are stored positive, payments negative, and a
reversal mirrors the obligation it cancels.  ``balance_after`` chains every
posting of a party in insertion order.
"""

import enum
from datetime import date, datetime, timezone

from sqlalchemy import (
    String, BigInteger, Enum, DateTime, Date, ForeignKey, Text, Boolean,
    Index, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from coopledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PostingKind(str, enum.Enum):
    OBLIGATION = "obligation"
    PAYMENT = "payment"
    REVERSAL = "reversal"


class OriginType(str, enum.Enum):
    SALE = "sale"
    PURCHASE_ORDER = "purchase_order"
    WALLET = "wallet"
    MANUAL = "manual"


class LedgerPosting(Base):
    __tablename__ = "ledger_postings"
    __table_args__ = (
        Index("ix_ledger_postings_party_date", "party_id", "transaction_date"),
        Index("ix_ledger_postings_party_open", "party_id", "kind", "paid_date"),
        CheckConstraint(
            "(kind != 'OBLIGATION') OR (amount > 0)",
            name="ck_ledger_postings_obligation_positive",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    kind: Mapped[PostingKind] = mapped_column(Enum(PostingKind), nullable=False)

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reversal_of_id: Mapped[int | None] = mapped_column(
        ForeignKey("ledger_postings.id"), nullable=True
    )

    origin_type: Mapped[OriginType | None] = mapped_column(Enum(OriginType), nullable=True)
    origin_reference: Mapped[str | None] = mapped_column(String(50), nullable=True)
    wallet_id: Mapped[int | None] = mapped_column(
        ForeignKey("customer_wallets.id"), nullable=True
    )
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    @property
    def is_open(self) -> bool:
        return (
            self.kind == PostingKind.OBLIGATION
            and self.paid_date is None
            and not self.is_reversed
        )


class Allocation(Base):
    """The portion of a payment applied to one obligation."""

    __tablename__ = "ledger_allocations"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_ledger_allocations_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_postings.id"), nullable=False, index=True
    )
    obligation_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_postings.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
