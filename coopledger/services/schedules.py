"""Schedule generation: loan amortization, time-deposit interest, penalties.

Everything here is a pure function of its arguments.  Amounts are integer
centavos; rates are ``Decimal`` fractions and every product of an amount and a
rate is rounded half-up exactly once.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from coopledger.models.loan import PaymentInterval
from coopledger.models.savings import InterestMethod, PaymentFrequency, FREQUENCY_MONTHS
from coopledger.money import Money, RateLike, round_half_up, to_rate
from coopledger.services.exceptions import InvariantViolation, ValidationRejection

logger = logging.getLogger(__name__)

PERIODS_PER_MONTH = {
    PaymentInterval.MONTHLY: 1,
    PaymentInterval.SEMI_MONTHLY: 2,
    PaymentInterval.WEEKLY: 4,
}


@dataclass(frozen=True)
class LoanTerms:
    principal: Money
    monthly_rate: Decimal
    term_months: int
    first_payment_date: date
    interval: PaymentInterval = PaymentInterval.MONTHLY


@dataclass(frozen=True)
class ScheduleEntry:
    sequence: int
    due_date: date
    principal: Money
    interest: Money
    total: Money
    balance_after: Money


@dataclass(frozen=True)
class InterestPeriod:
    period_number: int
    start_date: date
    end_date: date
    interest: Money


@dataclass(frozen=True)
class PreTermination:
    days_held: int
    accrued_interest: Money
    penalty: Money
    payout: Money


# ---------------------------------------------------------------------------
# Loan amortization
# ---------------------------------------------------------------------------

def number_of_periods(term_months: int, interval: PaymentInterval) -> int:
    return term_months * PERIODS_PER_MONTH[PaymentInterval(interval)]


def periodic_rate(monthly_rate: RateLike, interval: PaymentInterval) -> Decimal:
    """Monthly rate scaled to the interval's fraction of a month."""
    return to_rate(monthly_rate) / PERIODS_PER_MONTH[PaymentInterval(interval)]


def level_payment(principal: Money, rate: RateLike, periods: int) -> Money:
    """Standard annuity installment, rounded half-up to a centavo."""
    if periods <= 0:
        raise ValidationRejection("Loan term must be at least one period", constraint="term")
    rate = to_rate(rate)
    if rate == 0:
        return round_half_up(Decimal(principal) / periods)
    factor = 1 - (1 + rate) ** -periods
    return round_half_up(Decimal(principal) * rate / factor)


def installment_due_dates(first: date, interval: PaymentInterval, count: int) -> list[date]:
    interval = PaymentInterval(interval)
    if interval == PaymentInterval.MONTHLY:
        # offset from the first date so a 31st does not drift to the 28th
        return [first + relativedelta(months=i) for i in range(count)]
    step = 15 if interval == PaymentInterval.SEMI_MONTHLY else 7
    return [first + timedelta(days=step * i) for i in range(count)]


def generate_loan_schedule(terms: LoanTerms) -> list[ScheduleEntry]:
    """Diminishing-balance amortization schedule.

    Interest for each installment is charged on the balance before it.  The
    last installment takes whatever principal remains, so the principal
    column always sums to ``terms.principal``.
    """
    if terms.principal <= 0:
        raise ValidationRejection("Loan principal must be positive", constraint="principal")
    if terms.term_months <= 0:
        raise ValidationRejection("Loan term must be at least one month", constraint="term")
    rate = periodic_rate(terms.monthly_rate, terms.interval)
    if rate < 0:
        raise ValidationRejection("Interest rate must not be negative", constraint="rate")

    periods = number_of_periods(terms.term_months, terms.interval)
    payment = level_payment(terms.principal, rate, periods)
    dates = installment_due_dates(terms.first_payment_date, terms.interval, periods)

    entries: list[ScheduleEntry] = []
    balance = terms.principal
    for seq, due in enumerate(dates, start=1):
        interest = round_half_up(Decimal(balance) * rate)
        if seq == periods:
            principal = balance
        else:
            principal = min(max(payment - interest, 0), balance)
        balance -= principal
        entries.append(ScheduleEntry(
            sequence=seq,
            due_date=due,
            principal=principal,
            interest=interest,
            total=principal + interest,
            balance_after=balance,
        ))

    scheduled = sum(e.principal for e in entries)
    if scheduled != terms.principal:
        raise InvariantViolation(
            "Amortization principal does not sum to loan principal",
            context={"principal": terms.principal, "scheduled": scheduled},
        )
    logger.debug(
        "Generated %d-period %s schedule for principal %d (level payment %d)",
        periods, PaymentInterval(terms.interval).value, terms.principal, payment,
    )
    return entries


def penalty_amount(
    overdue_amount: Money, rate: RateLike, days_overdue: int, day_basis: int = 30
) -> Money:
    """Late-payment penalty: overdue × monthly rate × days / day basis."""
    if overdue_amount <= 0 or days_overdue <= 0:
        return 0
    return round_half_up(
        Decimal(overdue_amount) * to_rate(rate) * days_overdue / day_basis
    )


# ---------------------------------------------------------------------------
# Savings and time deposits
# ---------------------------------------------------------------------------

def maturity_date(placement: date, term_months: int) -> date:
    return placement + relativedelta(months=term_months)


def simple_interest(principal: Money, annual_rate: RateLike, term_months: int) -> Money:
    return round_half_up(Decimal(principal) * to_rate(annual_rate) * term_months / 12)


def periodic_savings_interest(
    balance: Money, annual_rate: RateLike, periods_per_year: int = 12
) -> Money:
    if balance <= 0:
        return 0
    return round_half_up(Decimal(balance) * to_rate(annual_rate) / periods_per_year)


def accrued_interest(
    principal: Money, annual_rate: RateLike, start: date, end: date, day_basis: int = 365
) -> Money:
    days = max((end - start).days, 0)
    return round_half_up(Decimal(principal) * to_rate(annual_rate) * days / day_basis)


def time_deposit_schedule(
    principal: Money,
    annual_rate: RateLike,
    term_months: int,
    placement: date,
    method: InterestMethod,
    frequency: PaymentFrequency | None = None,
) -> list[InterestPeriod]:
    """Interest credit points for a time deposit.

    ``simple_on_maturity`` yields one period ending at maturity.  ``periodic``
    yields one period per frequency boundary; the final period absorbs the
    rounding residue so the periods always sum to the simple interest over
    the whole term.
    """
    if principal <= 0 or term_months <= 0:
        raise ValidationRejection(
            "Time deposit principal and term must be positive", constraint="time_deposit_terms"
        )
    matures = maturity_date(placement, term_months)
    full_interest = simple_interest(principal, annual_rate, term_months)

    if InterestMethod(method) == InterestMethod.SIMPLE_ON_MATURITY:
        return [InterestPeriod(1, placement, matures, full_interest)]

    if frequency is None:
        raise ValidationRejection(
            "Periodic time deposits need a payment frequency", constraint="payment_frequency"
        )
    step = FREQUENCY_MONTHS[PaymentFrequency(frequency)]

    periods: list[InterestPeriod] = []
    credited = 0
    month = 0
    number = 0
    while month < term_months:
        months_in_period = min(step, term_months - month)
        number += 1
        start = placement + relativedelta(months=month)
        month += months_in_period
        end = placement + relativedelta(months=month)
        if month == term_months:
            interest = full_interest - credited
        else:
            interest = simple_interest(principal, annual_rate, months_in_period)
        credited += interest
        periods.append(InterestPeriod(number, start, end, interest))
    return periods


def pre_termination_terms(
    principal: Money,
    annual_rate: RateLike,
    penalty_rate: RateLike,
    placement: date,
    matures: date,
    on: date,
    interest_already_credited: Money = 0,
    day_basis: int = 365,
) -> PreTermination:
    """Payout when a deposit is withdrawn before maturity.

    The penalty applies to accrued interest only, never to principal.
    Interest already credited periodically counts toward the accrual.
    """
    if not placement < on < matures:
        raise ValidationRejection(
            "Pre-termination is only allowed strictly between placement and maturity",
            constraint="pre_termination_window",
        )
    accrued = accrued_interest(principal, annual_rate, placement, on, day_basis)
    accrued = max(accrued, interest_already_credited)
    penalty = round_half_up(Decimal(accrued) * to_rate(penalty_rate))
    return PreTermination(
        days_held=(on - placement).days,
        accrued_interest=accrued,
        penalty=penalty,
        payout=principal + accrued - penalty,
    )
