"""Aging classification of open obligations.

``classify`` is a pure function of its inputs and the explicit reference date;
nothing here reads the clock.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Sequence

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.models.loan import (
    LoanAccount, LoanStatus, AmortizationEntry, LoanPayment, LoanPaymentLine,
)
from coopledger.models.party import Party, PartySide
from coopledger.money import Money
from coopledger.services.allocation import OpenObligation, open_obligations

logger = logging.getLogger(__name__)

BUCKETS = ("current", "d31_60", "d61_90", "over_90")


@dataclass
class Bucket:
    count: int = 0
    amount: Money = 0
    party_ids: set[int] = field(default_factory=set)

    def add(self, party_id: int, amount: Money) -> None:
        self.count += 1
        self.amount += amount
        self.party_ids.add(party_id)


@dataclass
class AgingBuckets:
    reference_date: date
    current: Bucket = field(default_factory=Bucket)
    d31_60: Bucket = field(default_factory=Bucket)
    d61_90: Bucket = field(default_factory=Bucket)
    over_90: Bucket = field(default_factory=Bucket)

    @property
    def total_amount(self) -> Money:
        return sum(getattr(self, name).amount for name in BUCKETS)

    @property
    def total_count(self) -> int:
        return sum(getattr(self, name).count for name in BUCKETS)

    def as_dict(self) -> dict:
        return {
            name: {
                "count": getattr(self, name).count,
                "amount": getattr(self, name).amount,
                "party_ids": sorted(getattr(self, name).party_ids),
            }
            for name in BUCKETS
        }


@dataclass
class PartyAging:
    party_id: int
    current: Money = 0
    d31_60: Money = 0
    d61_90: Money = 0
    over_90: Money = 0
    oldest_days_overdue: int = 0

    @property
    def total(self) -> Money:
        return self.current + self.d31_60 + self.d61_90 + self.over_90


@dataclass
class AgingReport:
    buckets: AgingBuckets
    parties: list[PartyAging]


def days_overdue(due_date: date, reference_date: date) -> int:
    """Whole days past due; not-yet-due obligations count as zero."""
    return max((reference_date - due_date).days, 0)


def bucket_for(days: int) -> str:
    if days <= 30:
        return "current"
    if days <= 60:
        return "d31_60"
    if days <= 90:
        return "d61_90"
    return "over_90"


def classify(obligations: Iterable[OpenObligation], reference_date: date) -> AgingBuckets:
    buckets = AgingBuckets(reference_date=reference_date)
    for ob in obligations:
        if ob.outstanding <= 0:
            continue
        name = bucket_for(days_overdue(ob.due_date, reference_date))
        getattr(buckets, name).add(ob.party_id, ob.outstanding)
    return buckets


def breakdown_by_party(
    obligations: Iterable[OpenObligation], reference_date: date
) -> list[PartyAging]:
    rows: dict[int, PartyAging] = {}
    for ob in obligations:
        if ob.outstanding <= 0:
            continue
        days = days_overdue(ob.due_date, reference_date)
        row = rows.setdefault(ob.party_id, PartyAging(party_id=ob.party_id))
        name = bucket_for(days)
        setattr(row, name, getattr(row, name) + ob.outstanding)
        row.oldest_days_overdue = max(row.oldest_days_overdue, days)
    return [rows[pid] for pid in sorted(rows)]


async def aging_report(
    db: AsyncSession,
    tenant_id: int,
    side: PartySide,
    reference_date: date,
    party_ids: Sequence[int] | None = None,
) -> AgingReport:
    """Receivable or payable aging for a tenant, optionally for some parties."""
    stmt = select(Party.id).where(Party.tenant_id == tenant_id, Party.side == PartySide(side))
    if party_ids is not None:
        stmt = stmt.where(Party.id.in_(party_ids))
    result = await db.execute(stmt.order_by(Party.id))
    scoped = list(result.scalars().all())

    obligations = await open_obligations(db, scoped)
    report = AgingReport(
        buckets=classify(obligations, reference_date),
        parties=breakdown_by_party(obligations, reference_date),
    )
    logger.debug(
        "Aged %d open %s obligation(s) as of %s",
        report.buckets.total_count, PartySide(side).value, reference_date,
    )
    return report


async def loan_aging_report(
    db: AsyncSession,
    tenant_id: int,
    reference_date: date,
    loan_ids: Sequence[int] | None = None,
) -> AgingReport:
    """Ages unpaid amortization installments of active loans.

    Only installments already due before *reference_date* are aged; each
    one's unpaid remainder is treated as an open obligation of the borrowing
    party.
    """
    stmt = select(AmortizationEntry, LoanAccount.party_id).join(
        LoanAccount, LoanAccount.id == AmortizationEntry.loan_id
    ).where(
        LoanAccount.tenant_id == tenant_id,
        LoanAccount.status.in_([LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.DEFAULTED]),
        AmortizationEntry.due_date < reference_date,
    )
    if loan_ids is not None:
        stmt = stmt.where(LoanAccount.id.in_(loan_ids))
    result = await db.execute(stmt.order_by(AmortizationEntry.due_date, AmortizationEntry.id))
    rows = result.all()

    paid = await _paid_per_entry(db, [entry.id for entry, _ in rows])
    obligations = [
        OpenObligation(
            obligation_id=entry.id,
            party_id=party_id,
            due_date=entry.due_date,
            amount=entry.total_due,
            outstanding=entry.total_due - paid.get(entry.id, 0),
        )
        for entry, party_id in rows
    ]
    return AgingReport(
        buckets=classify(obligations, reference_date),
        parties=breakdown_by_party(obligations, reference_date),
    )


async def _paid_per_entry(db: AsyncSession, entry_ids: Sequence[int]) -> dict[int, Money]:
    """Interest plus principal paid so far against each installment."""
    if not entry_ids:
        return {}
    result = await db.execute(
        select(
            LoanPaymentLine.amortization_entry_id,
            sa_func.sum(LoanPaymentLine.amount),
        )
        .join(LoanPayment, LoanPayment.id == LoanPaymentLine.payment_id)
        .where(
            LoanPaymentLine.amortization_entry_id.in_(entry_ids),
            LoanPayment.is_reversed.is_(False),
        )
        .group_by(LoanPaymentLine.amortization_entry_id)
    )
    return {entry_id: int(total) for entry_id, total in result.all()}
