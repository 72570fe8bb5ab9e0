"""Share capital subscriptions."""

from datetime import datetime, date, timezone

from sqlalchemy import (
    String, BigInteger, Integer, Enum, DateTime, Date, ForeignKey, Boolean, Text,
    UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from coopledger.database import Base
from coopledger.models.savings import AccountStatus
from coopledger.money import floor_div


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ShareAccount(Base):
    __tablename__ = "share_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "account_number", name="uq_share_accounts_number"),
        CheckConstraint("par_value_per_share > 0", name="ck_share_accounts_par_positive"),
        CheckConstraint(
            "total_paid_up_amount <= total_subscribed_amount",
            name="ck_share_accounts_paid_within_subscription",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False)
    subscribed_shares: Mapped[int] = mapped_column(Integer, nullable=False)
    par_value_per_share: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_subscribed_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_paid_up_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    certified_shares: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus), default=AccountStatus.ACTIVE, nullable=False
    )
    opened_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    @property
    def eligible_shares(self) -> int:
        return floor_div(self.total_paid_up_amount, self.par_value_per_share)


class SharePayment(Base):
    __tablename__ = "share_payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("share_accounts.id"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    paid_up_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reversed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class ShareCertificate(Base):
    __tablename__ = "share_certificates"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("share_accounts.id"), nullable=False, index=True
    )
    certificate_number: Mapped[str] = mapped_column(String(30), index=True, nullable=False)
    shares: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    issued_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cancelled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
