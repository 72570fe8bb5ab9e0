"""Savings accounts and time deposits.

Every balance change goes through ``_post_savings`` / ``_post_time_deposit``,
which append a transaction carrying ``balance_after`` and update the account
balance in the same flush.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import settings
from coopledger.models.savings import (
    SavingsAccount,
    SavingsTransaction,
    SavingsTransactionType,
    AccountStatus,
    TimeDeposit,
    TimeDepositTransaction,
    TimeDepositTransactionType,
    TimeDepositStatus,
    InterestMethod,
    PaymentFrequency,
)
from coopledger.money import Money, RateLike, to_rate
from coopledger.services import guards
from coopledger.services.exceptions import InvariantViolation, NotFoundError, ValidationRejection
from coopledger.services.ledger_store import get_party, lock_account
from coopledger.services.schedules import (
    InterestPeriod,
    PreTermination,
    maturity_date,
    periodic_savings_interest,
    pre_termination_terms,
    time_deposit_schedule,
)
from coopledger.services.sequences import next_document_number

logger = logging.getLogger(__name__)


@dataclass
class SavingsStatement:
    account_id: int
    date_from: date
    date_to: date
    opening_balance: Money
    transactions: list[SavingsTransaction]
    total_deposits: Money
    total_withdrawals: Money
    total_interest: Money
    closing_balance: Money


@dataclass
class PreTerminationResult:
    deposit: TimeDeposit
    terms: PreTermination
    transactions: list[TimeDepositTransaction]


# ---------------------------------------------------------------------------
# Savings
# ---------------------------------------------------------------------------

async def _lock_savings(db: AsyncSession, tenant_id: int, account_id: int) -> SavingsAccount:
    return await lock_account(db, SavingsAccount, tenant_id, account_id, "Savings account")


async def _last_savings_transaction(db: AsyncSession, account_id: int) -> SavingsTransaction | None:
    result = await db.execute(
        select(SavingsTransaction)
        .where(SavingsTransaction.account_id == account_id)
        .order_by(SavingsTransaction.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _post_savings(
    db: AsyncSession,
    account: SavingsAccount,
    transaction_type: SavingsTransactionType,
    amount: Money,
    on: date,
    reference: str | None = None,
) -> SavingsTransaction:
    previous = await _last_savings_transaction(db, account.id)
    if previous is not None and on < previous.transaction_date:
        raise ValidationRejection(
            f"Transaction date {on} is earlier than the last transaction "
            f"({previous.transaction_date})",
            constraint="posting_date",
        )
    after = account.current_balance + amount
    if after < 0:
        context = {"account_id": account.id, "amount": amount, "balance": account.current_balance}
        logger.error("Savings posting would overdraw account: %s", context)
        raise InvariantViolation("Savings balance would become negative", context=context)

    txn = SavingsTransaction(
        account_id=account.id,
        transaction_type=transaction_type,
        amount=amount,
        balance_after=after,
        transaction_date=on,
        reference_number=reference,
    )
    db.add(txn)
    account.current_balance = after
    await db.flush()
    logger.info(
        "Savings %s %s %d (balance=%d)",
        account.account_number, transaction_type.value, amount, after,
    )
    return txn


async def open_savings_account(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    *,
    opened_on: date,
    minimum_balance: Money = 0,
    annual_interest_rate: RateLike = Decimal("0"),
    initial_deposit: Money = 0,
) -> SavingsAccount:
    party = await get_party(db, tenant_id, party_id)
    rate = to_rate(annual_interest_rate)
    if minimum_balance < 0 or rate < 0:
        raise ValidationRejection(
            "Minimum balance and interest rate must not be negative", constraint="savings_terms"
        )
    if initial_deposit < minimum_balance:
        raise ValidationRejection(
            f"Initial deposit {initial_deposit} is below the minimum balance {minimum_balance}",
            constraint="initial_deposit",
        )

    account = SavingsAccount(
        tenant_id=tenant_id,
        party_id=party.id,
        account_number=await next_document_number(db, tenant_id, "SA", opened_on),
        annual_interest_rate=rate,
        minimum_balance=minimum_balance,
        current_balance=0,
        status=AccountStatus.ACTIVE,
        opened_date=opened_on,
    )
    db.add(account)
    await db.flush()
    if initial_deposit:
        await _post_savings(db, account, SavingsTransactionType.DEPOSIT, initial_deposit, opened_on)
    logger.info("Opened savings account %s for party %d", account.account_number, party.id)
    return account


async def deposit(
    db: AsyncSession,
    tenant_id: int,
    account_id: int,
    amount: Money,
    *,
    on: date,
    reference: str | None = None,
) -> SavingsTransaction:
    account = await _lock_savings(db, tenant_id, account_id)
    guards.check_account_active(account.status, f"Savings account {account.account_number}")
    guards.check_positive_amount(amount, "Deposit amount")
    return await _post_savings(db, account, SavingsTransactionType.DEPOSIT, amount, on, reference)


async def withdraw(
    db: AsyncSession,
    tenant_id: int,
    account_id: int,
    amount: Money,
    *,
    on: date,
    reference: str | None = None,
) -> SavingsTransaction:
    account = await _lock_savings(db, tenant_id, account_id)
    guards.check_account_active(account.status, f"Savings account {account.account_number}")
    guards.check_positive_amount(amount, "Withdrawal amount")
    guards.check_withdrawal(account.current_balance, account.minimum_balance, amount)
    return await _post_savings(
        db, account, SavingsTransactionType.WITHDRAWAL, -amount, on, reference
    )


async def credit_interest(
    db: AsyncSession, tenant_id: int, account_id: int, *, on: date
) -> SavingsTransaction | None:
    """Credit one period of interest on the current balance.

    At most one credit per calendar month; returns None when the computed
    interest rounds to zero.
    """
    account = await _lock_savings(db, tenant_id, account_id)
    guards.check_account_active(account.status, f"Savings account {account.account_number}")
    last = account.last_interest_date
    if last is not None and (last.year, last.month) == (on.year, on.month):
        raise ValidationRejection(
            f"Interest already credited for {on:%Y-%m}", constraint="interest_period"
        )

    interest = periodic_savings_interest(
        account.current_balance,
        account.annual_interest_rate,
        settings.savings_interest_periods_per_year,
    )
    if interest == 0:
        return None
    txn = await _post_savings(db, account, SavingsTransactionType.INTEREST, interest, on)
    account.last_interest_date = on
    await db.flush()
    return txn


async def close_savings_account(
    db: AsyncSession, tenant_id: int, account_id: int, *, on: date
) -> SavingsTransaction | None:
    """Pay out the full balance and close.  Returns the payout, if any."""
    account = await _lock_savings(db, tenant_id, account_id)
    guards.check_account_active(account.status, f"Savings account {account.account_number}")
    txn = None
    if account.current_balance:
        txn = await _post_savings(
            db, account, SavingsTransactionType.CLOSING, -account.current_balance, on
        )
    account.status = AccountStatus.CLOSED
    account.closed_date = on
    await db.flush()
    logger.info("Closed savings account %s", account.account_number)
    return txn


async def savings_statement(
    db: AsyncSession, tenant_id: int, account_id: int, date_from: date, date_to: date
) -> SavingsStatement:
    result = await db.execute(
        select(SavingsAccount.id).where(
            SavingsAccount.id == account_id, SavingsAccount.tenant_id == tenant_id
        )
    )
    if result.scalar_one_or_none() is None:
        raise NotFoundError("Savings account", account_id)
    if date_to < date_from:
        raise ValidationRejection("Statement end precedes its start", constraint="date_range")

    opening = (await db.execute(
        select(SavingsTransaction.balance_after)
        .where(
            SavingsTransaction.account_id == account_id,
            SavingsTransaction.transaction_date < date_from,
        )
        .order_by(SavingsTransaction.transaction_date.desc(), SavingsTransaction.id.desc())
        .limit(1)
    )).scalar_one_or_none() or 0

    txns = list((await db.execute(
        select(SavingsTransaction)
        .where(
            SavingsTransaction.account_id == account_id,
            SavingsTransaction.transaction_date >= date_from,
            SavingsTransaction.transaction_date <= date_to,
        )
        .order_by(SavingsTransaction.id)
    )).scalars().all())

    def _sum(kind: SavingsTransactionType) -> Money:
        return sum(abs(t.amount) for t in txns if t.transaction_type == kind)

    return SavingsStatement(
        account_id=account_id,
        date_from=date_from,
        date_to=date_to,
        opening_balance=int(opening),
        transactions=txns,
        total_deposits=_sum(SavingsTransactionType.DEPOSIT),
        total_withdrawals=_sum(SavingsTransactionType.WITHDRAWAL)
        + _sum(SavingsTransactionType.CLOSING),
        total_interest=_sum(SavingsTransactionType.INTEREST),
        closing_balance=txns[-1].balance_after if txns else int(opening),
    )


# ---------------------------------------------------------------------------
# Time deposits
# ---------------------------------------------------------------------------

async def _lock_time_deposit(db: AsyncSession, tenant_id: int, deposit_id: int) -> TimeDeposit:
    return await lock_account(db, TimeDeposit, tenant_id, deposit_id, "Time deposit")


def _expect_active(td: TimeDeposit, action: str) -> None:
    if td.status != TimeDepositStatus.ACTIVE:
        raise ValidationRejection(
            f"Cannot {action}: time deposit {td.account_number} is {td.status.value}",
            constraint="account_status",
        )


def _schedule_for(td: TimeDeposit) -> list[InterestPeriod]:
    return time_deposit_schedule(
        td.principal,
        td.annual_rate,
        td.term_months,
        td.placement_date,
        td.interest_method,
        td.payment_frequency,
    )


async def _post_time_deposit(
    db: AsyncSession,
    td: TimeDeposit,
    transaction_type: TimeDepositTransactionType,
    amount: Money,
    on: date,
    period_number: int | None = None,
) -> TimeDepositTransaction:
    after = td.current_balance + amount
    if after < 0:
        context = {"time_deposit_id": td.id, "amount": amount, "balance": td.current_balance}
        logger.error("Time deposit posting would overdraw: %s", context)
        raise InvariantViolation("Time deposit balance would become negative", context=context)
    txn = TimeDepositTransaction(
        time_deposit_id=td.id,
        transaction_type=transaction_type,
        period_number=period_number,
        amount=amount,
        balance_after=after,
        transaction_date=on,
    )
    db.add(txn)
    td.current_balance = after
    if transaction_type == TimeDepositTransactionType.INTEREST:
        td.interest_earned += amount
    await db.flush()
    return txn


async def _credited_periods(db: AsyncSession, deposit_id: int) -> set[int]:
    result = await db.execute(
        select(TimeDepositTransaction.period_number).where(
            TimeDepositTransaction.time_deposit_id == deposit_id,
            TimeDepositTransaction.transaction_type == TimeDepositTransactionType.INTEREST,
            TimeDepositTransaction.period_number.is_not(None),
        )
    )
    return set(result.scalars().all())


async def place_time_deposit(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    *,
    principal: Money,
    annual_rate: RateLike,
    term_months: int,
    placement_date: date,
    interest_method: InterestMethod = InterestMethod.SIMPLE_ON_MATURITY,
    payment_frequency: PaymentFrequency | None = None,
    early_withdrawal_penalty_rate: RateLike | None = None,
    minimum_balance: Money = 0,
) -> TimeDeposit:
    party = await get_party(db, tenant_id, party_id)
    guards.check_positive_amount(principal, "Placement amount")
    rate = to_rate(annual_rate)
    penalty_rate = to_rate(
        settings.time_deposit_early_withdrawal_penalty_rate
        if early_withdrawal_penalty_rate is None else early_withdrawal_penalty_rate
    )
    if rate < 0 or not (0 <= penalty_rate <= 1):
        raise ValidationRejection("Time deposit rates are out of range", constraint="rate")
    if principal < minimum_balance:
        raise ValidationRejection(
            f"Placement {principal} is below the minimum balance {minimum_balance}",
            constraint="minimum_balance",
        )
    method = InterestMethod(interest_method)
    if method == InterestMethod.SIMPLE_ON_MATURITY:
        payment_frequency = None
    # rejects bad terms before anything is written
    time_deposit_schedule(principal, rate, term_months, placement_date, method, payment_frequency)

    td = TimeDeposit(
        tenant_id=tenant_id,
        party_id=party.id,
        account_number=await next_document_number(db, tenant_id, "TD", placement_date),
        principal=principal,
        annual_rate=rate,
        term_months=term_months,
        placement_date=placement_date,
        maturity_date=maturity_date(placement_date, term_months),
        interest_method=method,
        payment_frequency=payment_frequency,
        early_withdrawal_penalty_rate=penalty_rate,
        current_balance=0,
        minimum_balance=minimum_balance,
        status=TimeDepositStatus.ACTIVE,
    )
    db.add(td)
    await db.flush()
    await _post_time_deposit(
        db, td, TimeDepositTransactionType.PLACEMENT, principal, placement_date
    )
    logger.info(
        "Placed time deposit %s: %d at %s for %d months (matures %s)",
        td.account_number, principal, rate, term_months, td.maturity_date,
    )
    return td


async def time_deposit_interest_schedule(
    db: AsyncSession, tenant_id: int, deposit_id: int
) -> list[InterestPeriod]:
    result = await db.execute(
        select(TimeDeposit).where(TimeDeposit.id == deposit_id, TimeDeposit.tenant_id == tenant_id)
    )
    td = result.scalar_one_or_none()
    if td is None:
        raise NotFoundError("Time deposit", deposit_id)
    return _schedule_for(td)


async def _credit_due_periods(
    db: AsyncSession, td: TimeDeposit, as_of: date
) -> list[TimeDepositTransaction]:
    credited = await _credited_periods(db, td.id)
    txns = []
    for period in _schedule_for(td):
        if period.end_date > as_of or period.period_number in credited:
            continue
        if period.interest:
            txns.append(await _post_time_deposit(
                db, td, TimeDepositTransactionType.INTEREST, period.interest,
                period.end_date, period.period_number,
            ))
    return txns


async def accrue_time_deposit_interest(
    db: AsyncSession, tenant_id: int, deposit_id: int, *, as_of: date
) -> list[TimeDepositTransaction]:
    """Credit every periodic interest period that has ended by *as_of*."""
    td = await _lock_time_deposit(db, tenant_id, deposit_id)
    _expect_active(td, "accrue interest")
    if td.interest_method != InterestMethod.PERIODIC:
        raise ValidationRejection(
            f"Time deposit {td.account_number} earns interest only at maturity",
            constraint="interest_method",
        )
    txns = await _credit_due_periods(db, td, min(as_of, td.maturity_date))
    if txns:
        logger.info(
            "Time deposit %s: credited %d period(s) of interest",
            td.account_number, len(txns),
        )
    return txns


async def mature_time_deposit(
    db: AsyncSession, tenant_id: int, deposit_id: int, *, on: date
) -> TimeDepositTransaction:
    """Credit outstanding interest and pay out principal plus interest."""
    td = await _lock_time_deposit(db, tenant_id, deposit_id)
    _expect_active(td, "mature")
    if on < td.maturity_date:
        raise ValidationRejection(
            f"Time deposit {td.account_number} matures on {td.maturity_date}",
            constraint="maturity_date",
        )

    await _credit_due_periods(db, td, td.maturity_date)
    expected = td.principal + sum(p.interest for p in _schedule_for(td))
    if td.current_balance != expected:
        context = {"time_deposit_id": td.id, "balance": td.current_balance, "expected": expected}
        logger.error("Time deposit balance mismatch at maturity: %s", context)
        raise InvariantViolation("Time deposit balance mismatch at maturity", context=context)

    payout = td.current_balance
    txn = await _post_time_deposit(
        db, td, TimeDepositTransactionType.MATURITY_PAYOUT, -payout, on
    )
    td.payout_amount = payout
    td.status = TimeDepositStatus.MATURED
    td.closed_date = on
    await db.flush()
    logger.info("Time deposit %s matured: payout %d", td.account_number, payout)
    return txn


async def pre_terminate_time_deposit(
    db: AsyncSession, tenant_id: int, deposit_id: int, *, on: date
) -> PreTerminationResult:
    """Early withdrawal; the penalty applies to accrued interest only."""
    td = await _lock_time_deposit(db, tenant_id, deposit_id)
    _expect_active(td, "pre-terminate")
    terms = pre_termination_terms(
        td.principal,
        td.annual_rate,
        td.early_withdrawal_penalty_rate,
        td.placement_date,
        td.maturity_date,
        on,
        interest_already_credited=td.interest_earned,
        day_basis=settings.day_count_basis,
    )

    txns = []
    top_up = terms.accrued_interest - td.interest_earned
    if top_up:
        txns.append(await _post_time_deposit(
            db, td, TimeDepositTransactionType.INTEREST, top_up, on
        ))
    if terms.penalty:
        txns.append(await _post_time_deposit(
            db, td, TimeDepositTransactionType.PENALTY, -terms.penalty, on
        ))
    if td.current_balance != terms.payout:
        context = {"time_deposit_id": td.id, "balance": td.current_balance, "payout": terms.payout}
        logger.error("Pre-termination payout mismatch: %s", context)
        raise InvariantViolation("Pre-termination payout mismatch", context=context)
    txns.append(await _post_time_deposit(
        db, td, TimeDepositTransactionType.PRE_TERMINATION_PAYOUT, -terms.payout, on
    ))

    td.penalty_amount = terms.penalty
    td.payout_amount = terms.payout
    td.status = TimeDepositStatus.PRE_TERMINATED
    td.closed_date = on
    await db.flush()
    logger.info(
        "Time deposit %s pre-terminated after %d days: interest=%d penalty=%d payout=%d",
        td.account_number, terms.days_held, terms.accrued_interest, terms.penalty, terms.payout,
    )
    return PreTerminationResult(deposit=td, terms=terms, transactions=txns)
