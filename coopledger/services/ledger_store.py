"""Receivable / payable ledger store.

Every posting for a party is appended through ``post``, which chains
``balance_after`` from the previous posting and rewrites the party's
``outstanding_total`` in the same flush.  That is the only code path that
writes either value, so the invariant

    party.outstanding_total == last posting.balance_after
                            == sum(amount of all postings)

holds after every successful call.  Reversals append a mirror posting and flag
both legs ``is_reversed``; the pair nets to zero, so the sum over non-reversed
postings equals the same balance.

Callers own the transaction.  Functions here ``flush`` but never commit, and
every guard runs before the first write.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Sequence

from sqlalchemy import select, text, func as sa_func
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.config import settings
from coopledger.models.ledger import LedgerPosting, Allocation, PostingKind, OriginType
from coopledger.models.party import Party, PartySide, CustomerWallet
from coopledger.money import Money, total
from coopledger.services import guards
from coopledger.services.allocation import (
    Target,
    allocate,
    allocated_total,
    open_obligations,
    write_allocations,
)
from coopledger.services.exceptions import (
    ConcurrencyConflict,
    InvariantViolation,
    NotFoundError,
    ValidationRejection,
)

logger = logging.getLogger(__name__)

LOCK_NOT_AVAILABLE = "55P03"


@dataclass
class PaymentResult:
    payment: LedgerPosting
    allocations: list[Allocation] = field(default_factory=list)


@dataclass
class PartyStatement:
    party_id: int
    date_from: date
    date_to: date
    opening_balance: Money
    postings: list[LedgerPosting]
    total_charges: Money
    total_payments: Money
    total_reversals: Money
    closing_balance: Money


@dataclass(frozen=True)
class CreditAvailability:
    credit_limit: Money
    outstanding: Money
    available: Money
    requested: Money
    shortfall: Money

    @property
    def is_available(self) -> bool:
        return self.shortfall == 0


# ---------------------------------------------------------------------------
# Row locking
# ---------------------------------------------------------------------------

async def _set_lock_timeout(db: AsyncSession) -> None:
    if db.get_bind().dialect.name == "postgresql":
        timeout_ms = int(settings.ledger_lock_timeout_ms)
        await db.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


async def lock_row(db: AsyncSession, stmt, label: str, identifier):
    """Execute *stmt* ``FOR UPDATE`` and return the single row or None.

    Lock waits that time out surface as ``ConcurrencyConflict`` so the caller
    can retry the whole logical operation.
    """
    await _set_lock_timeout(db)
    try:
        result = await db.execute(stmt.with_for_update())
    except DBAPIError as exc:
        sqlstate = getattr(exc.orig, "sqlstate", None)
        if not isinstance(exc, OperationalError) and sqlstate != LOCK_NOT_AVAILABLE:
            raise
        logger.warning("Lock wait on %s %s failed: %s", label, identifier, exc)
        raise ConcurrencyConflict(
            f"Could not lock {label} {identifier} within "
            f"{settings.ledger_lock_timeout_ms} ms"
        ) from exc
    return result.scalar_one_or_none()


async def lock_party(db: AsyncSession, tenant_id: int, party_id: int) -> Party:
    party = await lock_row(
        db,
        select(Party).where(Party.id == party_id, Party.tenant_id == tenant_id),
        "party", party_id,
    )
    if party is None:
        raise NotFoundError("Party", party_id)
    return party


async def lock_account(db: AsyncSession, model, tenant_id: int, account_id: int, label: str):
    """Lock a tenant-scoped account row (loan, savings, time deposit, shares)."""
    account = await lock_row(
        db,
        select(model).where(model.id == account_id, model.tenant_id == tenant_id),
        label, account_id,
    )
    if account is None:
        raise NotFoundError(label, account_id)
    return account


async def get_party(db: AsyncSession, tenant_id: int, party_id: int) -> Party:
    result = await db.execute(
        select(Party).where(Party.id == party_id, Party.tenant_id == tenant_id)
    )
    party = result.scalar_one_or_none()
    if party is None:
        raise NotFoundError("Party", party_id)
    return party


# ---------------------------------------------------------------------------
# Core append
# ---------------------------------------------------------------------------

async def last_posting(db: AsyncSession, party_id: int) -> LedgerPosting | None:
    result = await db.execute(
        select(LedgerPosting)
        .where(LedgerPosting.party_id == party_id)
        .order_by(LedgerPosting.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def post(
    db: AsyncSession,
    party: Party,
    *,
    kind: PostingKind,
    amount: Money,
    transaction_date: date,
    **attrs,
) -> LedgerPosting:
    """Append one signed posting to *party*'s ledger.

    *party* must already be locked by the caller.
    """
    previous = await last_posting(db, party.id)
    before = previous.balance_after if previous else 0

    if party.outstanding_total != before:
        logger.error(
            "Outstanding cache drift on party %d: cached=%d ledger=%d",
            party.id, party.outstanding_total, before,
        )
        raise InvariantViolation(
            "Party outstanding total does not match its ledger",
            context={"party_id": party.id, "cached": party.outstanding_total, "ledger": before},
        )
    if previous is not None and transaction_date < previous.transaction_date:
        raise ValidationRejection(
            f"Posting date {transaction_date} is earlier than the last posting "
            f"({previous.transaction_date}) for this party",
            constraint="posting_date",
        )

    after = before + amount
    if after < -settings.outstanding_tolerance:
        context = {
            "party_id": party.id,
            "kind": kind.value,
            "amount": amount,
            "balance_before": before,
            "balance_after": after,
            **{k: v for k, v in attrs.items() if isinstance(v, (int, str, date))},
        }
        logger.error("Posting would drive outstanding negative: %s", context)
        raise InvariantViolation("Outstanding total would become negative", context=context)

    posting = LedgerPosting(
        party_id=party.id,
        kind=kind,
        amount=amount,
        balance_before=before,
        balance_after=after,
        transaction_date=transaction_date,
        **attrs,
    )
    db.add(posting)
    party.outstanding_total = after
    await db.flush()

    logger.info(
        "Posted %s %d for party %d (balance_after=%d)",
        kind.value, amount, party.id, after,
    )
    return posting


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def post_obligation(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    amount: Money,
    *,
    transaction_date: date,
    due_date: date | None = None,
    terms_days: int | None = None,
    origin_type: OriginType = OriginType.MANUAL,
    origin_reference: str | None = None,
    description: str | None = None,
    enforce_credit_limit: bool = False,
    wallet_id: int | None = None,
) -> LedgerPosting:
    """Record a charge (receivable) or invoice (payable) against a party.

    Without an explicit *due_date* the obligation falls due after
    *terms_days*, then the party's own credit terms, then the configured
    default.
    """
    guards.check_positive_amount(amount, "Obligation amount")
    party = await lock_party(db, tenant_id, party_id)

    if enforce_credit_limit and party.side == PartySide.RECEIVABLE:
        guards.check_credit_limit(party, amount)

    if due_date is None:
        days = terms_days
        if days is None:
            days = party.credit_terms_days
        if days is None:
            days = settings.default_credit_terms_days
        due_date = transaction_date + timedelta(days=days)
    if due_date < transaction_date:
        raise ValidationRejection(
            "Due date cannot be earlier than the transaction date", constraint="due_date"
        )

    return await post(
        db, party,
        kind=PostingKind.OBLIGATION,
        amount=amount,
        transaction_date=transaction_date,
        due_date=due_date,
        origin_type=OriginType(origin_type),
        origin_reference=origin_reference,
        description=description,
        wallet_id=wallet_id,
    )


async def charge_sale(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    *,
    sale_total: Money,
    tendered: Sequence[Money],
    credit_amount: Money,
    on: date,
    sale_reference: str | None = None,
) -> tuple[LedgerPosting | None, Money]:
    """Settle a point-of-sale total from cash tenders plus customer credit.

    The credit portion becomes a receivable obligation, checked against the
    customer's credit limit.  Returns the obligation (if any) and change due.
    """
    if credit_amount < 0:
        raise ValidationRejection("Credit amount must not be negative", constraint="amount_positive")
    change = guards.check_tender_total(sale_total, [*tendered, credit_amount])
    if credit_amount and change:
        raise ValidationRejection(
            "Change cannot be given on a sale charged to credit", constraint="tender_total"
        )
    if not credit_amount:
        return None, change
    posting = await post_obligation(
        db, tenant_id, party_id, credit_amount,
        transaction_date=on,
        origin_type=OriginType.SALE,
        origin_reference=sale_reference,
        enforce_credit_limit=True,
    )
    return posting, change


async def record_payment(
    db: AsyncSession,
    tenant_id: int,
    party_id: int,
    amount: Money,
    *,
    payment_date: date,
    method: str,
    reference: str | None = None,
    targets: Sequence[Target] | None = None,
) -> PaymentResult:
    """Post a payment and allocate it across open obligations.

    Without *targets* the payment is applied FIFO by due date.  The
    allocation plan is validated in full before anything is written.
    """
    guards.check_positive_amount(amount, "Payment amount")
    party = await lock_party(db, tenant_id, party_id)

    obligations = await open_obligations(db, party.id)
    if not targets:
        guards.check_payment_ceiling(sum(o.outstanding for o in obligations), amount)
    plan = allocate(obligations, amount, targets)

    payment = await post(
        db, party,
        kind=PostingKind.PAYMENT,
        amount=-amount,
        transaction_date=payment_date,
        payment_method=method,
        reference_number=reference,
    )
    allocations = await write_allocations(db, payment, plan, obligations)
    return PaymentResult(payment=payment, allocations=allocations)


async def reverse_obligation(
    db: AsyncSession,
    tenant_id: int,
    obligation_id: int,
    *,
    on: date,
    reason: str | None = None,
) -> LedgerPosting:
    """Cancel an unpaid, unallocated obligation with a mirror posting."""
    result = await db.execute(
        select(LedgerPosting.party_id).where(LedgerPosting.id == obligation_id)
    )
    party_id = result.scalar_one_or_none()
    if party_id is None:
        raise NotFoundError("Obligation", obligation_id)
    try:
        party = await lock_party(db, tenant_id, party_id)
    except NotFoundError:
        raise NotFoundError("Obligation", obligation_id) from None

    obligation = await db.get(LedgerPosting, obligation_id, populate_existing=True)
    if not obligation.is_open:
        if obligation.kind != PostingKind.OBLIGATION:
            problem = f"is a {obligation.kind.value}, not an obligation"
        elif obligation.is_reversed:
            problem = "is already reversed"
        else:
            problem = "is already paid"
        raise ValidationRejection(f"Posting {obligation_id} {problem}", constraint="reversal")
    if await allocated_total(db, obligation_id):
        raise ValidationRejection(
            f"Obligation {obligation_id} has payments allocated to it",
            constraint="reversal",
        )

    mirror = await post(
        db, party,
        kind=PostingKind.REVERSAL,
        amount=-obligation.amount,
        transaction_date=on,
        is_reversed=True,
        reversal_of_id=obligation.id,
        origin_type=obligation.origin_type,
        origin_reference=obligation.origin_reference,
        description=reason or f"Reversal of obligation {obligation.id}",
    )
    obligation.is_reversed = True
    await db.flush()
    logger.info("Reversed obligation %d for party %d", obligation.id, party.id)
    return mirror


async def opening_balance(
    db: AsyncSession, tenant_id: int, party_id: int, before: date
) -> Money:
    """``balance_after`` of the latest posting dated strictly before *before*."""
    await get_party(db, tenant_id, party_id)
    result = await db.execute(
        select(LedgerPosting.balance_after)
        .where(
            LedgerPosting.party_id == party_id,
            LedgerPosting.transaction_date < before,
        )
        .order_by(LedgerPosting.transaction_date.desc(), LedgerPosting.id.desc())
        .limit(1)
    )
    balance = result.scalar_one_or_none()
    return int(balance) if balance is not None else 0


async def party_statement(
    db: AsyncSession, tenant_id: int, party_id: int, date_from: date, date_to: date
) -> PartyStatement:
    if date_to < date_from:
        raise ValidationRejection("Statement end precedes its start", constraint="date_range")
    opening = await opening_balance(db, tenant_id, party_id, date_from)

    result = await db.execute(
        select(LedgerPosting)
        .where(
            LedgerPosting.party_id == party_id,
            LedgerPosting.transaction_date >= date_from,
            LedgerPosting.transaction_date <= date_to,
        )
        .order_by(LedgerPosting.id)
    )
    postings = list(result.scalars().all())

    charges = sum(p.amount for p in postings if p.kind == PostingKind.OBLIGATION)
    payments = -sum(p.amount for p in postings if p.kind == PostingKind.PAYMENT)
    reversals = -sum(p.amount for p in postings if p.kind == PostingKind.REVERSAL)
    closing = postings[-1].balance_after if postings else opening

    return PartyStatement(
        party_id=party_id,
        date_from=date_from,
        date_to=date_to,
        opening_balance=opening,
        postings=postings,
        total_charges=charges,
        total_payments=payments,
        total_reversals=reversals,
        closing_balance=closing,
    )


async def credit_availability(
    db: AsyncSession, tenant_id: int, party_id: int, amount: Money = 0
) -> CreditAvailability:
    party = await get_party(db, tenant_id, party_id)
    if party.side != PartySide.RECEIVABLE:
        raise ValidationRejection(
            "Credit limits apply to customers only", constraint="party_side"
        )
    available = max(party.credit_limit - party.outstanding_total, 0)
    return CreditAvailability(
        credit_limit=party.credit_limit,
        outstanding=party.outstanding_total,
        available=available,
        requested=amount,
        shortfall=max(amount - available, 0),
    )


async def recompute_outstanding(db: AsyncSession, tenant_id: int, party_id: int) -> Money:
    """Rebuild the outstanding total from postings and verify the cache."""
    party = await lock_party(db, tenant_id, party_id)

    result = await db.execute(
        select(sa_func.coalesce(sa_func.sum(LedgerPosting.amount), 0))
        .where(LedgerPosting.party_id == party.id)
    )
    ledger_sum = int(result.scalar_one())
    previous = await last_posting(db, party.id)
    chained = previous.balance_after if previous else 0
    open_sum = sum(o.outstanding for o in await open_obligations(db, party.id))

    if not (ledger_sum == chained == open_sum == party.outstanding_total):
        context = {
            "party_id": party.id,
            "cached": party.outstanding_total,
            "ledger_sum": ledger_sum,
            "balance_after": chained,
            "open_outstanding": open_sum,
        }
        logger.error("Ledger drift detected: %s", context)
        raise InvariantViolation("Party ledger totals disagree", context=context)
    return ledger_sum


async def pay_with_wallet(
    db: AsyncSession,
    tenant_id: int,
    wallet_id: int,
    lines: Sequence[guards.PurchaseLine],
    *,
    on: date,
    reference: str | None = None,
    amount: Money | None = None,
) -> LedgerPosting:
    """Charge a purchase to a customer's restricted-use wallet.

    The wallet is debited and the purchase is posted as an obligation on the
    wallet holder's ledger with ``origin_type=wallet``.
    """
    result = await db.execute(
        select(CustomerWallet.party_id).where(CustomerWallet.id == wallet_id)
    )
    party_id = result.scalar_one_or_none()
    if party_id is None:
        raise NotFoundError("Wallet", wallet_id)
    party = await lock_party(db, tenant_id, party_id)
    wallet = await lock_row(
        db, select(CustomerWallet).where(CustomerWallet.id == wallet_id), "wallet", wallet_id
    )

    priced = total(line.amount for line in lines)
    if amount is None:
        amount = priced
    elif priced and amount != priced:
        raise ValidationRejection(
            f"Wallet payment of {amount} does not match the purchase lines ({priced})",
            constraint="wallet_amount",
        )
    guards.check_positive_amount(amount, "Wallet payment")
    guards.check_wallet_category(wallet, lines)
    guards.check_wallet_balance(wallet, amount)

    # debit only once the obligation is on the ledger
    posting = await post(
        db, party,
        kind=PostingKind.OBLIGATION,
        amount=amount,
        transaction_date=on,
        due_date=on,
        origin_type=OriginType.WALLET,
        origin_reference=reference,
        wallet_id=wallet.id,
        description=f"Wallet purchase: {wallet.name}",
    )
    wallet.balance -= amount
    await db.flush()
    logger.info("Wallet %d charged %d (balance now %d)", wallet.id, amount, wallet.balance)
    return posting
