"""Member loan accounts, amortization schedules, penalties and payments."""

import enum
from datetime import datetime, date, timezone
from decimal import Decimal

from sqlalchemy import (
    String, BigInteger, Integer, Numeric, Enum, DateTime, Date, ForeignKey, Text,
    Boolean, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from coopledger.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoanStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    PAID = "paid"
    DEFAULTED = "defaulted"


class PaymentInterval(str, enum.Enum):
    WEEKLY = "weekly"
    SEMI_MONTHLY = "semi_monthly"
    MONTHLY = "monthly"


class PaymentComponent(str, enum.Enum):
    PENALTY = "penalty"
    INTEREST = "interest"
    PRINCIPAL = "principal"


class LoanAccount(Base):
    __tablename__ = "loan_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "loan_number", name="uq_loan_accounts_number"),
        CheckConstraint("principal > 0", name="ck_loan_accounts_principal_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    party_id: Mapped[int] = mapped_column(ForeignKey("parties.id"), nullable=False, index=True)
    loan_number: Mapped[str] = mapped_column(String(20), nullable=False)

    # Terms
    principal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    monthly_rate: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)
    term_months: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_interval: Mapped[PaymentInterval] = mapped_column(
        Enum(PaymentInterval), default=PaymentInterval.MONTHLY, nullable=False
    )
    processing_fee_rate: Mapped[Decimal] = mapped_column(
        Numeric(9, 6), default=Decimal("0"), nullable=False
    )
    purpose: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lifecycle
    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus), default=LoanStatus.PENDING, nullable=False
    )
    application_date: Mapped[date] = mapped_column(Date, nullable=False)
    approved_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    rejected_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    disbursement_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    first_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    maturity_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    closed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    default_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Disbursement figures
    processing_fee: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    net_proceeds: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    level_payment: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Running balances, written only by loan_service
    outstanding_principal: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    outstanding_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_penalties_outstanding: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )
    total_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class AmortizationEntry(Base):
    """One scheduled installment.  Written once at disbursement."""

    __tablename__ = "amortization_entries"
    __table_args__ = (
        UniqueConstraint("loan_id", "sequence", name="uq_amortization_entries_seq"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("loan_accounts.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    principal_due: Mapped[int] = mapped_column(BigInteger, nullable=False)
    interest_due: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_due: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)


class LoanPenalty(Base):
    __tablename__ = "loan_penalties"
    __table_args__ = (
        UniqueConstraint(
            "amortization_entry_id", "applied_date", name="uq_loan_penalties_entry_date"
        ),
        CheckConstraint("waived_amount <= net_penalty", name="ck_loan_penalties_waiver"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("loan_accounts.id"), nullable=False, index=True
    )
    amortization_entry_id: Mapped[int] = mapped_column(
        ForeignKey("amortization_entries.id"), nullable=False, index=True
    )
    applied_date: Mapped[date] = mapped_column(Date, nullable=False)
    days_overdue: Mapped[int] = mapped_column(Integer, nullable=False)
    overdue_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(9, 6), nullable=False)

    net_penalty: Mapped[int] = mapped_column(BigInteger, nullable=False)
    waived_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    waiver_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    waived_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    amount_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    @property
    def collectible(self) -> int:
        return self.net_penalty - self.waived_amount - self.amount_paid


class LoanPayment(Base):
    __tablename__ = "loan_payments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    loan_id: Mapped[int] = mapped_column(
        ForeignKey("loan_accounts.id"), nullable=False, index=True
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    penalty_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    interest_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    principal_paid: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    is_reversed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reversed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    reversal_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class LoanPaymentLine(Base):
    """How one payment was split across penalties and schedule entries."""

    __tablename__ = "loan_payment_lines"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_loan_payment_lines_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("loan_payments.id"), nullable=False, index=True
    )
    component: Mapped[PaymentComponent] = mapped_column(
        Enum(PaymentComponent), nullable=False
    )
    penalty_id: Mapped[int | None] = mapped_column(
        ForeignKey("loan_penalties.id"), nullable=True
    )
    amortization_entry_id: Mapped[int | None] = mapped_column(
        ForeignKey("amortization_entries.id"), nullable=True, index=True
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
