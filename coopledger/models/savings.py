"""Savings accounts and time deposits."""

import enum
from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    String, BigInteger, Integer, Numeric, Enum, DateTime, Date, ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from coopledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class SavingsTransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST = "interest"
    CLOSING = "closing"


class InterestMethod(str, enum.Enum):
    SIMPLE_ON_MATURITY = "simple_on_maturity"
    PERIODIC = "periodic"


class PaymentFrequency(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMI_ANNUAL = "semi_annual"
    ANNUALLY = "annually"


FREQUENCY_MONTHS = {
    PaymentFrequency.MONTHLY: 1,
    PaymentFrequency.QUARTERLY: 3,
    PaymentFrequency.SEMI_ANNUAL: 6,
    PaymentFrequency.ANNUALLY: 12,
}


class TimeDepositStatus(str, enum.Enum):
    ACTIVE = "active"
    MATURED = "matured"
    PRE_TERMINATED = "pre_terminated"


class TimeDepositTransactionType(str, enum.Enum):
    PLACEMENT = "placement"
    INTEREST = "interest"
    PENALTY = "penalty"
    MATURITY_PAYOUT = "maturity_payout"
    PRE_TERMINATION_PAYOUT = "pre_termination_payout"


class SavingsAccount(Base):
    __tablename__ = "savings_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "account_number", name="uq_savings_accounts_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False)
    annual_interest_rate: Mapped[Decimal] = mapped_column(
        Numeric(9, 6), default=Decimal("0"), nullable=False
    )
    current_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    minimum_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus), default=AccountStatus.ACTIVE, nullable=False
    )
    opened_date: Mapped[date] = mapped_column(Date, nullable=False)
    closed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_interest_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class SavingsTransaction(Base):
    """Amounts are signed: deposits and interest positive, withdrawals negative."""

    __tablename__ = "savings_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("savings_accounts.id"), nullable=False, index=True
    )
    transaction_type: Mapped[SavingsTransactionType] = mapped_column(
        Enum(SavingsTransactionType), nullable=False
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class TimeDeposit(Base):
    __tablename__ = "time_deposits"
    __table_args__ = (
        UniqueConstraint("tenant_id", "account_number", name="uq_time_deposits_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False)

    principal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    annual_rate: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)
    term_months: Mapped[int] = mapped_column(Integer, nullable=False)
    placement_date: Mapped[date] = mapped_column(Date, nullable=False)
    maturity_date: Mapped[date] = mapped_column(Date, nullable=False)
    interest_method: Mapped[InterestMethod] = mapped_column(
        Enum(InterestMethod), nullable=False
    )
    payment_frequency: Mapped[PaymentFrequency | None] = mapped_column(
        Enum(PaymentFrequency), nullable=True
    )
    early_withdrawal_penalty_rate: Mapped[Decimal] = mapped_column(
        Numeric(9, 6), nullable=False
    )

    current_balance: Mapped[int] = mapped_column(BigInteger, nullable=False)
    minimum_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    interest_earned: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    penalty_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    payout_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    status: Mapped[TimeDepositStatus] = mapped_column(
        Enum(TimeDepositStatus), default=TimeDepositStatus.ACTIVE, nullable=False
    )
    closed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class TimeDepositTransaction(Base):
    __tablename__ = "time_deposit_transactions"
    __table_args__ = (
        UniqueConstraint(
            "time_deposit_id", "transaction_type", "period_number",
            name="uq_time_deposit_transactions_period",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    time_deposit_id: Mapped[int] = mapped_column(
        ForeignKey("time_deposits.id"), nullable=False, index=True
    )
    transaction_type: Mapped[TimeDepositTransactionType] = mapped_column(
        Enum(TimeDepositTransactionType), nullable=False
    )
    period_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
