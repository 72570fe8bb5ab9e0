"""Patronage refunds: sharing surplus back to members by what they bought.

Batch flow::

    draft -> approved -> distributing -> completed

A draft batch can be recomputed any number of times; approval freezes its
allocations.  Each allocation is then either paid out or forfeited, and the
batch completes once none are pending.

Member purchases default to the member's credit sales and wallet purchases on
the ledger for the period; a caller with point-of-sale totals can pass them in
instead.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Mapping

from sqlalchemy import select, func as sa_func
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.models.ledger import LedgerPosting, OriginType, PostingKind
from coopledger.models.party import Party, PartySide
from coopledger.models.patronage import (
    BatchStatus,
    PatronageRefundAllocation,
    PatronageRefundBatch,
    RefundAllocationStatus,
    RefundMethod,
)
from coopledger.money import (
    Money,
    RateLike,
    allocate_proportionally,
    apply_rate,
    format_money,
    to_rate,
    total,
)
from coopledger.services import guards
from coopledger.services.exceptions import NotFoundError, ValidationRejection
from coopledger.services.ledger_store import lock_account, lock_party

logger = logging.getLogger(__name__)

PATRONAGE_ORIGINS = (OriginType.SALE, OriginType.WALLET)
PERCENT = Decimal("0.000001")


@dataclass
class BatchSummary:
    batch: PatronageRefundBatch
    allocations: list[PatronageRefundAllocation]

    @property
    def pending_count(self) -> int:
        return sum(1 for a in self.allocations if a.status == RefundAllocationStatus.PENDING)

    @property
    def forfeited_amount(self) -> Money:
        return total(
            a.allocation_amount for a in self.allocations
            if a.status == RefundAllocationStatus.FORFEITED
        )


def _expect_batch_status(batch: PatronageRefundBatch, action: str, *expected: BatchStatus) -> None:
    if batch.status not in expected:
        wanted = " or ".join(s.value for s in expected)
        raise ValidationRejection(
            f"Cannot {action}: batch {batch.period_label} is {batch.status.value}, expected {wanted}",
            constraint="batch_status",
        )


async def _lock_batch(db: AsyncSession, tenant_id: int, batch_id: int) -> PatronageRefundBatch:
    return await lock_account(db, PatronageRefundBatch, tenant_id, batch_id, "Patronage batch")


async def _locked_allocation(
    db: AsyncSession, tenant_id: int, allocation_id: int
) -> tuple[PatronageRefundBatch, PatronageRefundAllocation]:
    result = await db.execute(
        select(PatronageRefundAllocation.batch_id)
        .where(PatronageRefundAllocation.id == allocation_id)
    )
    batch_id = result.scalar_one_or_none()
    if batch_id is None:
        raise NotFoundError("Patronage allocation", allocation_id)
    try:
        batch = await _lock_batch(db, tenant_id, batch_id)
    except NotFoundError:
        raise NotFoundError("Patronage allocation", allocation_id) from None
    allocation = await db.get(PatronageRefundAllocation, allocation_id, populate_existing=True)
    return batch, allocation


async def _batch_allocations(db: AsyncSession, batch_id: int) -> list[PatronageRefundAllocation]:
    result = await db.execute(
        select(PatronageRefundAllocation)
        .where(PatronageRefundAllocation.batch_id == batch_id)
        .order_by(PatronageRefundAllocation.party_id)
    )
    return list(result.scalars().all())


async def _settle_batch_status(db: AsyncSession, batch: PatronageRefundBatch) -> None:
    allocations = await _batch_allocations(db, batch.id)
    pending = any(a.status == RefundAllocationStatus.PENDING for a in allocations)
    batch.status = BatchStatus.DISTRIBUTING if pending else BatchStatus.COMPLETED
    if batch.status == BatchStatus.COMPLETED:
        logger.info(
            "Patronage batch %s completed: %s distributed",
            batch.period_label, format_money(batch.total_distributed),
        )


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

async def create_batch(
    db: AsyncSession,
    tenant_id: int,
    *,
    period_label: str,
    period_from: date,
    period_to: date,
    method: RefundMethod = RefundMethod.RATE_BASED,
    rate: RateLike = Decimal("0"),
    pool: Money = 0,
    notes: str | None = None,
) -> PatronageRefundBatch:
    if period_to < period_from:
        raise ValidationRejection("Batch period ends before it starts", constraint="date_range")
    method = RefundMethod(method)
    rate = to_rate(rate)
    if method == RefundMethod.RATE_BASED and not (0 < rate < 1):
        raise ValidationRejection("Refund rate must be between 0 and 1", constraint="rate")
    if method == RefundMethod.POOL_BASED:
        guards.check_positive_amount(pool, "Refund pool")

    batch = PatronageRefundBatch(
        tenant_id=tenant_id,
        period_label=period_label,
        period_from=period_from,
        period_to=period_to,
        method=method,
        rate=rate,
        pool=pool,
        notes=notes,
    )
    db.add(batch)
    await db.flush()
    logger.info("Patronage batch %s created (%s)", period_label, method.value)
    return batch


async def member_purchases(
    db: AsyncSession, tenant_id: int, period_from: date, period_to: date
) -> dict[int, Money]:
    """Per-member purchase totals from the ledger; reversed charges are excluded."""
    result = await db.execute(
        select(LedgerPosting.party_id, sa_func.sum(LedgerPosting.amount))
        .join(Party, Party.id == LedgerPosting.party_id)
        .where(
            Party.tenant_id == tenant_id,
            Party.side == PartySide.RECEIVABLE,
            Party.is_member.is_(True),
            LedgerPosting.kind == PostingKind.OBLIGATION,
            LedgerPosting.is_reversed.is_(False),
            LedgerPosting.origin_type.in_(PATRONAGE_ORIGINS),
            LedgerPosting.transaction_date >= period_from,
            LedgerPosting.transaction_date <= period_to,
        )
        .group_by(LedgerPosting.party_id)
    )
    return {party_id: int(amount) for party_id, amount in result.all() if amount}


async def compute_batch(
    db: AsyncSession,
    tenant_id: int,
    batch_id: int,
    *,
    purchases: Mapping[int, Money] | None = None,
) -> list[PatronageRefundAllocation]:
    """(Re)build a draft batch's allocations.

    Rate-based batches refund ``purchases × rate`` to each member.  Pool-based
    batches share the fixed pool by largest remainder, so the allocations add
    up to the pool exactly.
    """
    batch = await _lock_batch(db, tenant_id, batch_id)
    _expect_batch_status(batch, "compute", BatchStatus.DRAFT)

    if purchases is None:
        purchases = await member_purchases(db, tenant_id, batch.period_from, batch.period_to)
    else:
        purchases = {pid: amount for pid, amount in purchases.items() if amount}
        for amount in purchases.values():
            guards.check_positive_amount(amount, "Member purchases")
        if purchases:
            result = await db.execute(
                select(Party.id).where(
                    Party.id.in_(list(purchases)),
                    Party.tenant_id == tenant_id,
                    Party.is_member.is_(True),
                )
            )
            unknown = set(purchases) - set(result.scalars().all())
            if unknown:
                raise ValidationRejection(
                    f"Not members of this cooperative: {sorted(unknown)}", constraint="membership"
                )

    for stale in await _batch_allocations(db, batch.id):
        await db.delete(stale)
    await db.flush()

    party_ids = sorted(purchases)
    weights = [purchases[pid] for pid in party_ids]
    member_total = total(weights)
    if batch.method == RefundMethod.POOL_BASED:
        amounts = allocate_proportionally(batch.pool, weights)
    else:
        amounts = [apply_rate(w, batch.rate) for w in weights]

    allocations = [
        PatronageRefundAllocation(
            batch_id=batch.id,
            party_id=pid,
            member_purchases=weight,
            allocation_percentage=(Decimal(weight * 100) / Decimal(member_total)).quantize(PERCENT),
            allocation_amount=amount,
        )
        for pid, weight, amount in zip(party_ids, weights, amounts)
    ]
    db.add_all(allocations)

    batch.total_member_purchases = member_total
    batch.total_allocated = total(amounts)
    batch.member_count = len(allocations)
    await db.flush()

    logger.info(
        "Patronage batch %s computed: %d member(s), %s allocated on %s of purchases",
        batch.period_label, batch.member_count,
        format_money(batch.total_allocated), format_money(member_total),
    )
    return allocations


async def approve_batch(
    db: AsyncSession, tenant_id: int, batch_id: int, *, on: date, notes: str | None = None
) -> PatronageRefundBatch:
    batch = await _lock_batch(db, tenant_id, batch_id)
    _expect_batch_status(batch, "approve", BatchStatus.DRAFT)
    if batch.member_count == 0:
        raise ValidationRejection(
            "Cannot approve a batch with no allocations", constraint="batch_empty"
        )
    batch.status = BatchStatus.APPROVED
    batch.approved_date = on
    if notes is not None:
        batch.notes = notes
    await db.flush()
    logger.info("Patronage batch %s approved on %s", batch.period_label, on)
    return batch


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------

async def record_distribution(
    db: AsyncSession,
    tenant_id: int,
    allocation_id: int,
    *,
    on: date,
    method: str,
    reference: str | None = None,
    notes: str | None = None,
) -> PatronageRefundAllocation:
    """Pay out one member's refund and add it to their lifetime patronage."""
    batch, allocation = await _locked_allocation(db, tenant_id, allocation_id)
    _expect_batch_status(batch, "distribute", BatchStatus.APPROVED, BatchStatus.DISTRIBUTING)
    if allocation.status != RefundAllocationStatus.PENDING:
        raise ValidationRejection(
            f"Allocation {allocation_id} is already {allocation.status.value}",
            constraint="allocation_status",
        )
    party = await lock_party(db, tenant_id, allocation.party_id)

    allocation.status = RefundAllocationStatus.PAID
    allocation.payment_method = method
    allocation.reference_number = reference
    allocation.paid_date = on
    allocation.notes = notes
    batch.total_distributed += allocation.allocation_amount
    party.accumulated_patronage += allocation.allocation_amount
    await db.flush()
    await _settle_batch_status(db, batch)
    await db.flush()

    logger.info(
        "Patronage refund %s paid to party %d (%s)",
        format_money(allocation.allocation_amount), party.id, method,
    )
    return allocation


async def forfeit_allocation(
    db: AsyncSession,
    tenant_id: int,
    allocation_id: int,
    *,
    notes: str | None = None,
) -> PatronageRefundAllocation:
    batch, allocation = await _locked_allocation(db, tenant_id, allocation_id)
    _expect_batch_status(batch, "forfeit", BatchStatus.APPROVED, BatchStatus.DISTRIBUTING)
    if allocation.status != RefundAllocationStatus.PENDING:
        raise ValidationRejection(
            f"Allocation {allocation_id} is already {allocation.status.value}",
            constraint="allocation_status",
        )
    allocation.status = RefundAllocationStatus.FORFEITED
    allocation.notes = notes
    await db.flush()
    await _settle_batch_status(db, batch)
    await db.flush()

    logger.info(
        "Patronage refund %s for party %d forfeited",
        format_money(allocation.allocation_amount), allocation.party_id,
    )
    return allocation


async def batch_summary(db: AsyncSession, tenant_id: int, batch_id: int) -> BatchSummary:
    result = await db.execute(
        select(PatronageRefundBatch).where(
            PatronageRefundBatch.id == batch_id, PatronageRefundBatch.tenant_id == tenant_id
        )
    )
    batch = result.scalar_one_or_none()
    if batch is None:
        raise NotFoundError("Patronage batch", batch_id)
    return BatchSummary(batch=batch, allocations=await _batch_allocations(db, batch.id))
