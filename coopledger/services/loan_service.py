"""Member loan lifecycle: application through payoff.

Status flow::

    pending -> approved | rejected
    approved -> disbursed            (schedule generated here, once)
    disbursed -> active              (first payment)
    active -> paid | defaulted

The amortization schedule is never edited after disbursement.  Payments are
recorded as ``LoanPaymentLine`` rows against penalties and installments, and
the loan's running balances are recomputed from those lines.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import settings
from coopledger.models.loan import (
    LoanAccount,
    LoanStatus,
    PaymentInterval,
    AmortizationEntry,
    LoanPenalty,
    LoanPayment,
    LoanPaymentLine,
    PaymentComponent,
)
from coopledger.models.party import PartySide
from coopledger.money import Money, RateLike, apply_rate, to_rate
from coopledger.services import guards
from coopledger.services.exceptions import InvariantViolation, NotFoundError, ValidationRejection
from coopledger.services.ledger_store import get_party, lock_account
from coopledger.services.schedules import (
    LoanTerms,
    generate_loan_schedule,
    installment_due_dates,
    penalty_amount,
)
from coopledger.services.sequences import next_document_number

logger = logging.getLogger(__name__)

PAYABLE_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)
PENALTY_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.DEFAULTED)


@dataclass
class LoanPaymentResult:
    payment: LoanPayment
    penalty_paid: Money
    interest_paid: Money
    principal_paid: Money
    lines: list[LoanPaymentLine] = field(default_factory=list)


@dataclass
class InstallmentStatus:
    entry: AmortizationEntry
    interest_paid: Money
    principal_paid: Money

    @property
    def interest_remaining(self) -> Money:
        return self.entry.interest_due - self.interest_paid

    @property
    def principal_remaining(self) -> Money:
        return self.entry.principal_due - self.principal_paid

    @property
    def remaining(self) -> Money:
        return self.interest_remaining + self.principal_remaining

    @property
    def is_paid(self) -> bool:
        return self.remaining == 0


@dataclass
class LoanStatement:
    loan: LoanAccount
    installments: list[InstallmentStatus]
    penalties: list[LoanPenalty]
    payments: list[LoanPayment]

    @property
    def total_scheduled(self) -> Money:
        return sum(i.entry.total_due for i in self.installments)

    @property
    def total_penalties(self) -> Money:
        return sum(p.net_penalty for p in self.penalties)

    @property
    def total_waived(self) -> Money:
        return sum(p.waived_amount for p in self.penalties)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _expect_status(loan: LoanAccount, action: str, *expected: LoanStatus) -> None:
    if loan.status not in expected:
        wanted = " or ".join(s.value for s in expected)
        raise ValidationRejection(
            f"Cannot {action}: loan {loan.loan_number} is {loan.status.value}, expected {wanted}",
            constraint="loan_status",
        )


async def _lock_loan(db: AsyncSession, tenant_id: int, loan_id: int) -> LoanAccount:
    return await lock_account(db, LoanAccount, tenant_id, loan_id, "Loan")


async def get_loan(db: AsyncSession, tenant_id: int, loan_id: int) -> LoanAccount:
    result = await db.execute(
        select(LoanAccount).where(LoanAccount.id == loan_id, LoanAccount.tenant_id == tenant_id)
    )
    loan = result.scalar_one_or_none()
    if loan is None:
        raise NotFoundError("Loan", loan_id)
    return loan


async def _installments(db: AsyncSession, loan_id: int) -> list[InstallmentStatus]:
    entries = (await db.execute(
        select(AmortizationEntry)
        .where(AmortizationEntry.loan_id == loan_id)
        .order_by(AmortizationEntry.sequence)
    )).scalars().all()

    paid = (await db.execute(
        select(
            LoanPaymentLine.amortization_entry_id,
            LoanPaymentLine.component,
            sa_func.sum(LoanPaymentLine.amount),
        )
        .join(AmortizationEntry, AmortizationEntry.id == LoanPaymentLine.amortization_entry_id)
        .join(LoanPayment, LoanPayment.id == LoanPaymentLine.payment_id)
        .where(AmortizationEntry.loan_id == loan_id, LoanPayment.is_reversed.is_(False))
        .group_by(LoanPaymentLine.amortization_entry_id, LoanPaymentLine.component)
    )).all()
    by_entry: dict[tuple[int, PaymentComponent], int] = {
        (entry_id, component): int(total) for entry_id, component, total in paid
    }
    return [
        InstallmentStatus(
            entry=e,
            interest_paid=by_entry.get((e.id, PaymentComponent.INTEREST), 0),
            principal_paid=by_entry.get((e.id, PaymentComponent.PRINCIPAL), 0),
        )
        for e in entries
    ]


async def _open_penalties(db: AsyncSession, loan_id: int) -> list[LoanPenalty]:
    result = await db.execute(
        select(LoanPenalty)
        .where(LoanPenalty.loan_id == loan_id, LoanPenalty.is_paid.is_(False))
        .order_by(LoanPenalty.applied_date, LoanPenalty.id)
    )
    return [p for p in result.scalars().all() if p.collectible > 0]


def _maybe_close(loan: LoanAccount, on: date) -> None:
    if (
        loan.status == LoanStatus.ACTIVE
        and loan.outstanding_balance == 0
        and loan.total_penalties_outstanding == 0
    ):
        loan.status = LoanStatus.PAID
        loan.closed_date = on
        logger.info("Loan %s fully paid on %s", loan.loan_number, on)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

async def apply_for_loan(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    *,
    principal: Money,
    monthly_rate: RateLike,
    term_months: int,
    application_date: date,
    interval: PaymentInterval = PaymentInterval.MONTHLY,
    processing_fee_rate: RateLike = Decimal("0"),
    purpose: str | None = None,
) -> LoanAccount:
    party = await get_party(db, tenant_id, party_id)
    if party.side != PartySide.RECEIVABLE:
        raise ValidationRejection("Only members can borrow", constraint="party_side")
    guards.check_positive_amount(principal, "Loan principal")
    if term_months <= 0:
        raise ValidationRejection("Loan term must be at least one month", constraint="term")
    rate = to_rate(monthly_rate)
    fee_rate = to_rate(processing_fee_rate)
    if rate < 0 or not (0 <= fee_rate < 1):
        raise ValidationRejection("Loan rates are out of range", constraint="rate")

    loan = LoanAccount(
        tenant_id=tenant_id,
        party_id=party.id,
        loan_number=await next_document_number(db, tenant_id, "LN", application_date),
        principal=principal,
        monthly_rate=rate,
        term_months=term_months,
        payment_interval=PaymentInterval(interval),
        processing_fee_rate=fee_rate,
        purpose=purpose,
        status=LoanStatus.PENDING,
        application_date=application_date,
    )
    db.add(loan)
    await db.flush()
    logger.info("Loan %s applied for by party %d: %d", loan.loan_number, party.id, principal)
    return loan


async def approve_loan(db: AsyncSession, tenant_id: int, loan_id: int, *, on: date) -> LoanAccount:
    loan = await _lock_loan(db, tenant_id, loan_id)
    _expect_status(loan, "approve", LoanStatus.PENDING)
    loan.status = LoanStatus.APPROVED
    loan.approved_date = on
    await db.flush()
    logger.info("Approved loan %s", loan.loan_number)
    return loan


async def reject_loan(
    db: AsyncSession, tenant_id: int, loan_id: int, *, reason: str, on: date
) -> LoanAccount:
    loan = await _lock_loan(db, tenant_id, loan_id)
    _expect_status(loan, "reject", LoanStatus.PENDING)
    if not reason or not reason.strip():
        raise ValidationRejection("A rejection reason is required", constraint="reason")
    loan.status = LoanStatus.REJECTED
    loan.rejected_date = on
    loan.rejection_reason = reason
    await db.flush()
    logger.info("Rejected loan %s: %s", loan.loan_number, reason)
    return loan


async def disburse_loan(
    db: AsyncSession,
    tenant_id: int,
    loan_id: int,
    *,
    on: date,
    first_payment_date: date | None = None,
) -> list[AmortizationEntry]:
    """Release the loan and write its amortization schedule."""
    loan = await _lock_loan(db, tenant_id, loan_id)
    _expect_status(loan, "disburse", LoanStatus.APPROVED)

    if first_payment_date is None:
        first_payment_date = installment_due_dates(on, loan.payment_interval, 2)[1]
    if first_payment_date <= on:
        raise ValidationRejection(
            "First payment must fall after the disbursement date", constraint="first_payment_date"
        )

    schedule = generate_loan_schedule(LoanTerms(
        principal=loan.principal,
        monthly_rate=Decimal(loan.monthly_rate),
        term_months=loan.term_months,
        first_payment_date=first_payment_date,
        interval=loan.payment_interval,
    ))

    fee = apply_rate(loan.principal, loan.processing_fee_rate)
    entries = [
        AmortizationEntry(
            loan_id=loan.id,
            sequence=row.sequence,
            due_date=row.due_date,
            principal_due=row.principal,
            interest_due=row.interest,
            total_due=row.total,
            balance_after=row.balance_after,
        )
        for row in schedule
    ]
    db.add_all(entries)

    loan.status = LoanStatus.DISBURSED
    loan.disbursement_date = on
    loan.first_payment_date = first_payment_date
    loan.maturity_date = schedule[-1].due_date
    loan.processing_fee = fee
    loan.net_proceeds = loan.principal - fee
    loan.level_payment = schedule[0].total
    loan.outstanding_principal = loan.principal
    loan.outstanding_balance = sum(row.total for row in schedule)
    loan.total_penalties_outstanding = 0
    await db.flush()

    logger.info(
        "Disbursed loan %s: principal=%d fee=%d net=%d over %d installments",
        loan.loan_number, loan.principal, fee, loan.net_proceeds, len(entries),
    )
    return entries


async def mark_defaulted(
    db: AsyncSession, tenant_id: int, loan_id: int, *, reason: str, on: date
) -> LoanAccount:
    loan = await _lock_loan(db, tenant_id, loan_id)
    _expect_status(loan, "default", LoanStatus.DISBURSED, LoanStatus.ACTIVE)
    loan.status = LoanStatus.DEFAULTED
    loan.default_reason = reason
    loan.closed_date = on
    await db.flush()
    logger.warning("Loan %s marked defaulted: %s", loan.loan_number, reason)
    return loan


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

async def apply_loan_payment(
    db: AsyncSession,
    tenant_id: int,
    loan_id: int,
    amount: Money,
    *,
    payment_date: date,
    method: str = "cash",
    reference: str | None = None,
) -> LoanPaymentResult:
    """Split a payment: oldest penalties, then per installment interest then principal."""
    loan = await _lock_loan(db, tenant_id, loan_id)
    _expect_status(loan, "accept payment", *PAYABLE_STATUSES)
    guards.check_positive_amount(amount, "Payment amount")
    guards.check_loan_payment(loan, amount)

    penalties = await _open_penalties(db, loan.id)
    installments = await _installments(db, loan.id)

    # plan every line before writing anything
    remaining = amount
    penalty_lines: list[tuple[LoanPenalty, Money]] = []
    for penalty in penalties:
        if remaining == 0:
            break
        applied = min(remaining, penalty.collectible)
        penalty_lines.append((penalty, applied))
        remaining -= applied

    entry_lines: list[tuple[AmortizationEntry, PaymentComponent, Money]] = []
    for inst in installments:
        if remaining == 0:
            break
        for component, due in (
            (PaymentComponent.INTEREST, inst.interest_remaining),
            (PaymentComponent.PRINCIPAL, inst.principal_remaining),
        ):
            if remaining == 0 or due <= 0:
                continue
            applied = min(remaining, due)
            entry_lines.append((inst.entry, component, applied))
            remaining -= applied

    if remaining:
        logger.error(
            "Loan %s payment %d left %d unapplied (balance=%d penalties=%d)",
            loan.loan_number, amount, remaining,
            loan.outstanding_balance, loan.total_penalties_outstanding,
        )
        raise InvariantViolation(
            "Loan running balances disagree with its schedule",
            context={"loan_id": loan.id, "amount": amount, "unapplied": remaining},
        )

    penalty_paid = sum(a for _, a in penalty_lines)
    interest_paid = sum(a for _, c, a in entry_lines if c == PaymentComponent.INTEREST)
    principal_paid = sum(a for _, c, a in entry_lines if c == PaymentComponent.PRINCIPAL)

    payment = LoanPayment(
        loan_id=loan.id,
        payment_date=payment_date,
        amount=amount,
        penalty_paid=penalty_paid,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        balance_after=loan.outstanding_balance - interest_paid - principal_paid,
        payment_method=method,
        reference_number=reference,
    )
    db.add(payment)
    await db.flush()

    lines: list[LoanPaymentLine] = []
    for penalty, applied in penalty_lines:
        penalty.amount_paid += applied
        if penalty.collectible == 0:
            penalty.is_paid = True
            penalty.paid_date = payment_date
        lines.append(LoanPaymentLine(
            payment_id=payment.id,
            component=PaymentComponent.PENALTY,
            penalty_id=penalty.id,
            amount=applied,
        ))
    for entry, component, applied in entry_lines:
        lines.append(LoanPaymentLine(
            payment_id=payment.id,
            component=component,
            amortization_entry_id=entry.id,
            amount=applied,
        ))
    db.add_all(lines)

    loan.total_penalties_outstanding -= penalty_paid
    loan.outstanding_balance -= interest_paid + principal_paid
    loan.outstanding_principal -= principal_paid
    loan.total_paid += amount
    if loan.status == LoanStatus.DISBURSED:
        loan.status = LoanStatus.ACTIVE
    _maybe_close(loan, payment_date)
    await db.flush()

    logger.info(
        "Loan %s payment %d: penalty=%d interest=%d principal=%d (balance=%d)",
        loan.loan_number, amount, penalty_paid, interest_paid, principal_paid,
        loan.outstanding_balance,
    )
    return LoanPaymentResult(
        payment=payment,
        penalty_paid=penalty_paid,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        lines=lines,
    )


async def reverse_loan_payment(
    db: AsyncSession,
    tenant_id: int,
    payment_id: int,
    *,
    on: date,
    reason: str,
) -> LoanPayment:
    """Undo a payment from its lines: penalties, interest and principal reopen.

    The payment and its lines stay on file flagged ``is_reversed``; a paid-off
    loan goes back to active.
    """
    result = await db.execute(select(LoanPayment.loan_id).where(LoanPayment.id == payment_id))
    loan_id = result.scalar_one_or_none()
    if loan_id is None:
        raise NotFoundError("Loan payment", payment_id)
    try:
        loan = await _lock_loan(db, tenant_id, loan_id)
    except NotFoundError:
        raise NotFoundError("Loan payment", payment_id) from None

    payment = await db.get(LoanPayment, payment_id, populate_existing=True)
    if payment.is_reversed:
        raise ValidationRejection(
            f"Loan payment {payment_id} is already reversed", constraint="reversal"
        )
    _expect_status(loan, "reverse payment", LoanStatus.ACTIVE, LoanStatus.PAID)
    if on < payment.payment_date:
        raise ValidationRejection(
            "Reversal cannot precede the payment it reverses", constraint="posting_date"
        )
    if not reason or not reason.strip():
        raise ValidationRejection("A reversal reason is required", constraint="reason")

    lines = (await db.execute(
        select(LoanPaymentLine)
        .where(LoanPaymentLine.payment_id == payment.id)
        .order_by(LoanPaymentLine.id)
    )).scalars().all()
    restored = {component: 0 for component in PaymentComponent}
    for line in lines:
        restored[line.component] += line.amount
        if line.component == PaymentComponent.PENALTY:
            penalty = await db.get(LoanPenalty, line.penalty_id)
            penalty.amount_paid -= line.amount
            penalty.is_paid = False
            penalty.paid_date = None

    if (
        restored[PaymentComponent.PENALTY] != payment.penalty_paid
        or restored[PaymentComponent.INTEREST] != payment.interest_paid
        or restored[PaymentComponent.PRINCIPAL] != payment.principal_paid
    ):
        context = {
            "payment_id": payment.id,
            "lines": {c.value: v for c, v in restored.items()},
            "penalty_paid": payment.penalty_paid,
            "interest_paid": payment.interest_paid,
            "principal_paid": payment.principal_paid,
        }
        logger.error("Loan payment lines disagree with the payment: %s", context)
        raise InvariantViolation("Loan payment lines disagree with the payment", context=context)

    payment.is_reversed = True
    payment.reversed_date = on
    payment.reversal_reason = reason

    loan.total_penalties_outstanding += payment.penalty_paid
    loan.outstanding_balance += payment.interest_paid + payment.principal_paid
    loan.outstanding_principal += payment.principal_paid
    loan.total_paid -= payment.amount
    if loan.status == LoanStatus.PAID:
        loan.status = LoanStatus.ACTIVE
        loan.closed_date = None
    await db.flush()

    logger.info(
        "Reversed loan %s payment %d of %d (balance=%d): %s",
        loan.loan_number, payment.id, payment.amount, loan.outstanding_balance, reason,
    )
    return payment


# ---------------------------------------------------------------------------
# Penalties
# ---------------------------------------------------------------------------

async def compute_penalties(
    db: AsyncSession,
    tenant_id: int,
    loan_id: int,
    *,
    as_of: date,
    rate: RateLike | None = None,
) -> list[LoanPenalty]:
    """Attach late-payment penalties to installments overdue as of *as_of*.

    Each overdue installment is charged for the days since its due date or
    since its previous penalty, whichever is later, so running this daily
    never charges the same day twice.
    """
    loan = await _lock_loan(db, tenant_id, loan_id)
    _expect_status(loan, "compute penalties", *PENALTY_STATUSES)
    rate = to_rate(settings.loan_penalty_rate if rate is None else rate)

    installments = await _installments(db, loan.id)
    last_applied = dict((await db.execute(
        select(LoanPenalty.amortization_entry_id, sa_func.max(LoanPenalty.applied_date))
        .where(LoanPenalty.loan_id == loan.id)
        .group_by(LoanPenalty.amortization_entry_id)
    )).all())

    created: list[LoanPenalty] = []
    for inst in installments:
        entry = inst.entry
        if inst.is_paid or entry.due_date >= as_of:
            continue
        since = max(entry.due_date, last_applied.get(entry.id, entry.due_date))
        days = (as_of - since).days
        amount = penalty_amount(inst.remaining, rate, days, settings.penalty_day_basis)
        if amount <= 0:
            continue
        penalty = LoanPenalty(
            loan_id=loan.id,
            amortization_entry_id=entry.id,
            applied_date=as_of,
            days_overdue=(as_of - entry.due_date).days,
            overdue_amount=inst.remaining,
            rate=rate,
            net_penalty=amount,
        )
        db.add(penalty)
        created.append(penalty)

    loan.total_penalties_outstanding += sum(p.net_penalty for p in created)
    await db.flush()
    if created:
        logger.info(
            "Loan %s: %d penalties totalling %d as of %s",
            loan.loan_number, len(created), sum(p.net_penalty for p in created), as_of,
        )
    return created


async def waive_penalty(
    db: AsyncSession,
    tenant_id: int,
    penalty_id: int,
    waived_amount: Money,
    *,
    reason: str,
    on: date,
) -> LoanPenalty:
    result = await db.execute(select(LoanPenalty.loan_id).where(LoanPenalty.id == penalty_id))
    loan_id = result.scalar_one_or_none()
    if loan_id is None:
        raise NotFoundError("Penalty", penalty_id)
    try:
        loan = await _lock_loan(db, tenant_id, loan_id)
    except NotFoundError:
        raise NotFoundError("Penalty", penalty_id) from None

    penalty = await db.get(LoanPenalty, penalty_id, populate_existing=True)
    guards.check_positive_amount(waived_amount, "Waived amount")
    if penalty.is_paid:
        raise ValidationRejection("Cannot waive a paid penalty", constraint="penalty_paid")
    if waived_amount > penalty.collectible:
        raise ValidationRejection(
            "Waived amount exceeds net penalty", constraint="waiver_amount"
        )

    penalty.waived_amount += waived_amount
    penalty.waiver_reason = reason
    penalty.waived_date = on
    loan.total_penalties_outstanding -= waived_amount
    _maybe_close(loan, penalty.waived_date)
    await db.flush()

    logger.info(
        "Waived %d of penalty %d on loan %s: %s",
        waived_amount, penalty.id, loan.loan_number, reason,
    )
    return penalty


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

async def loan_schedule(db: AsyncSession, tenant_id: int, loan_id: int) -> list[AmortizationEntry]:
    await get_loan(db, tenant_id, loan_id)
    result = await db.execute(
        select(AmortizationEntry)
        .where(AmortizationEntry.loan_id == loan_id)
        .order_by(AmortizationEntry.sequence)
    )
    return list(result.scalars().all())


async def loan_statement(db: AsyncSession, tenant_id: int, loan_id: int) -> LoanStatement:
    loan = await get_loan(db, tenant_id, loan_id)
    penalties = (await db.execute(
        select(LoanPenalty)
        .where(LoanPenalty.loan_id == loan.id)
        .order_by(LoanPenalty.applied_date, LoanPenalty.id)
    )).scalars().all()
    payments = (await db.execute(
        select(LoanPayment)
        .where(LoanPayment.loan_id == loan.id)
        .order_by(LoanPayment.payment_date, LoanPayment.id)
    )).scalars().all()
    return LoanStatement(
        loan=loan,
        installments=await _installments(db, loan.id),
        penalties=list(penalties),
        payments=list(payments),
    )


async def loans_for_party(
    db: AsyncSession, tenant_id: int, party_id: int, statuses: Sequence[LoanStatus] | None = None
) -> list[LoanAccount]:
    stmt = select(LoanAccount).where(
        LoanAccount.tenant_id == tenant_id, LoanAccount.party_id == party_id
    )
    if statuses:
        stmt = stmt.where(LoanAccount.status.in_(statuses))
    result = await db.execute(stmt.order_by(LoanAccount.id))
    return list(result.scalars().all())
