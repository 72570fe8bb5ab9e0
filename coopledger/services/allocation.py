"""Payment allocation across a party's open obligations.

Planning is pure: ``allocate`` turns a list of open obligations and a payment
amount into a list of planned lines, or raises ``ValidationRejection`` without
side effects.  ``write_allocations`` persists an accepted plan against an
already-posted payment.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Sequence

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.models.ledger import LedgerPosting, Allocation, PostingKind
from coopledger.money import Money
from coopledger.services.exceptions import InvariantViolation, ValidationRejection

logger = logging.getLogger(__name__)

# (obligation_id, amount); ``None`` takes as much as the obligation needs
Target = tuple[int, Money | None]


@dataclass
class OpenObligation:
    obligation_id: int
    party_id: int
    due_date: date
    amount: Money
    outstanding: Money
    posting: LedgerPosting | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class PlannedAllocation:
    obligation_id: int
    amount: Money
    settles: bool


def _fifo_order(obligations: Iterable[OpenObligation]) -> list[OpenObligation]:
    return sorted(obligations, key=lambda o: (o.due_date, o.obligation_id))


def plan_fifo(
    obligations: Sequence[OpenObligation], payment_amount: Money
) -> list[PlannedAllocation]:
    """Oldest due date first, ties by creation order, filled greedily."""
    open_total = sum(o.outstanding for o in obligations)
    if payment_amount > open_total:
        raise ValidationRejection(
            f"Payment of {payment_amount} exceeds total open obligations {open_total}",
            constraint="unapplied_payment",
        )

    plan: list[PlannedAllocation] = []
    remaining = payment_amount
    for ob in _fifo_order(obligations):
        if remaining == 0:
            break
        if ob.outstanding <= 0:
            continue
        applied = min(remaining, ob.outstanding)
        plan.append(PlannedAllocation(ob.obligation_id, applied, applied == ob.outstanding))
        remaining -= applied
    return plan


def plan_manual(
    obligations: Sequence[OpenObligation],
    payment_amount: Money,
    targets: Sequence[Target],
) -> list[PlannedAllocation]:
    """Caller-ordered allocation.  Any invalid line rejects the whole plan."""
    by_id = {o.obligation_id: o for o in obligations}
    seen: set[int] = set()
    plan: list[PlannedAllocation] = []
    remaining = payment_amount

    for obligation_id, requested in targets:
        ob = by_id.get(obligation_id)
        if ob is None:
            raise ValidationRejection(
                f"Obligation {obligation_id} is not open for this party",
                constraint="allocation_target",
            )
        if obligation_id in seen:
            raise ValidationRejection(
                f"Obligation {obligation_id} is targeted more than once",
                constraint="allocation_target",
            )
        seen.add(obligation_id)

        amount = min(remaining, ob.outstanding) if requested is None else requested
        if amount <= 0:
            raise ValidationRejection(
                f"Allocation to obligation {obligation_id} must be positive",
                constraint="allocation_amount",
            )
        if amount > ob.outstanding:
            raise ValidationRejection(
                f"Allocation of {amount} exceeds outstanding {ob.outstanding} "
                f"on obligation {obligation_id}",
                constraint="allocation_amount",
            )
        if amount > remaining:
            raise ValidationRejection(
                f"Allocations exceed the payment amount {payment_amount}",
                constraint="allocation_amount",
            )
        plan.append(PlannedAllocation(obligation_id, amount, amount == ob.outstanding))
        remaining -= amount

    if remaining:
        raise ValidationRejection(
            f"{remaining} of the payment is not allocated to any obligation",
            constraint="unapplied_payment",
        )
    return plan


def allocate(
    obligations: Sequence[OpenObligation],
    payment_amount: Money,
    targets: Sequence[Target] | None = None,
) -> list[PlannedAllocation]:
    if payment_amount <= 0:
        raise ValidationRejection("Payment amount must be positive", constraint="amount_positive")
    if targets:
        return plan_manual(obligations, payment_amount, targets)
    return plan_fifo(obligations, payment_amount)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

async def open_obligations(
    db: AsyncSession, party_ids: int | Sequence[int]
) -> list[OpenObligation]:
    """Open obligations with their outstanding remainder, in FIFO order."""
    if isinstance(party_ids, int):
        party_ids = [party_ids]
    if not party_ids:
        return []

    allocated = (
        select(
            Allocation.obligation_id,
            sa_func.sum(Allocation.amount).label("allocated"),
        )
        .group_by(Allocation.obligation_id)
        .subquery()
    )
    result = await db.execute(
        select(LedgerPosting, sa_func.coalesce(allocated.c.allocated, 0))
        .outerjoin(allocated, allocated.c.obligation_id == LedgerPosting.id)
        .where(
            LedgerPosting.party_id.in_(party_ids),
            LedgerPosting.kind == PostingKind.OBLIGATION,
            LedgerPosting.paid_date.is_(None),
            LedgerPosting.is_reversed.is_(False),
        )
        .order_by(LedgerPosting.due_date, LedgerPosting.id)
    )
    return [
        OpenObligation(
            obligation_id=posting.id,
            party_id=posting.party_id,
            due_date=posting.due_date,
            amount=posting.amount,
            outstanding=posting.amount - int(allocated_sum),
            posting=posting,
        )
        for posting, allocated_sum in result.all()
    ]


async def allocated_total(db: AsyncSession, obligation_id: int) -> Money:
    result = await db.execute(
        select(sa_func.coalesce(sa_func.sum(Allocation.amount), 0))
        .where(Allocation.obligation_id == obligation_id)
    )
    return int(result.scalar_one())


async def write_allocations(
    db: AsyncSession,
    payment: LedgerPosting,
    plan: Sequence[PlannedAllocation],
    obligations: Sequence[OpenObligation],
) -> list[Allocation]:
    by_id = {o.obligation_id: o for o in obligations}
    applied = sum(p.amount for p in plan)
    if applied > -payment.amount:
        logger.error(
            "Allocation total %d exceeds payment %d (posting %d)",
            applied, -payment.amount, payment.id,
        )
        raise InvariantViolation(
            "Allocations exceed payment amount",
            context={"payment_id": payment.id, "allocated": applied},
        )

    rows: list[Allocation] = []
    for line in plan:
        ob = by_id[line.obligation_id]
        if line.amount > ob.outstanding:
            logger.error(
                "Allocation %d exceeds outstanding %d on obligation %d",
                line.amount, ob.outstanding, ob.obligation_id,
            )
            raise InvariantViolation(
                "Allocation exceeds obligation outstanding",
                context={"obligation_id": ob.obligation_id, "amount": line.amount},
            )
        row = Allocation(
            payment_id=payment.id,
            obligation_id=ob.obligation_id,
            amount=line.amount,
        )
        db.add(row)
        rows.append(row)
        ob.outstanding -= line.amount
        if ob.outstanding == 0 and ob.posting is not None:
            ob.posting.paid_date = payment.transaction_date

    await db.flush()
    logger.info(
        "Allocated payment %d across %d obligation(s)", payment.id, len(rows)
    )
    return rows
