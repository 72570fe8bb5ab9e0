"""Ledger store: posting chain, payments, reversals, statements and wallets."""

import pytest
from datetime import date
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from coopledger.models.ledger import Allocation, LedgerPosting, OriginType, PostingKind
from coopledger.models.party import Party
from coopledger.services import ledger_store
from coopledger.services.exceptions import (
    ConcurrencyConflict,
    InvariantViolation,
    NotFoundError,
    ValidationRejection,
    WalletRestrictionError,
)
from coopledger.services.guards import PurchaseLine

from conftest import OTHER_TENANT, TENANT, make_party


async def _postings(db, party_id):
    result = await db.execute(
        select(LedgerPosting).where(LedgerPosting.party_id == party_id).order_by(LedgerPosting.id)
    )
    return list(result.scalars().all())


async def _two_obligations(db, party):
    first = await ledger_store.post_obligation(
        db, TENANT, party.id, 500,
        transaction_date=date(2026, 5, 11), due_date=date(2026, 6, 10),
    )
    second = await ledger_store.post_obligation(
        db, TENANT, party.id, 300,
        transaction_date=date(2026, 6, 10), due_date=date(2026, 7, 10),
    )
    return first, second


# ===================================================================
# Posting chain
# ===================================================================


class TestPostingChain:

    @pytest.mark.asyncio
    async def test_balance_after_chains(self, db, customer):
        first, second = await _two_obligations(db, customer)
        assert first.balance_before == 0
        assert first.balance_after == 500
        assert second.balance_before == 500
        assert second.balance_after == 800
        assert customer.outstanding_total == 800

    @pytest.mark.asyncio
    async def test_outstanding_equals_sum_of_live_postings(self, db, customer):
        first, second = await _two_obligations(db, customer)
        await ledger_store.reverse_obligation(db, TENANT, second.id, on=date(2026, 6, 11))
        await ledger_store.record_payment(
            db, TENANT, customer.id, 200, payment_date=date(2026, 6, 12), method="cash"
        )

        postings = await _postings(db, customer.id)
        live = sum(p.amount for p in postings if not p.is_reversed)
        assert customer.outstanding_total == postings[-1].balance_after == live == 300
        assert await ledger_store.recompute_outstanding(db, TENANT, customer.id) == 300

    @pytest.mark.asyncio
    async def test_default_due_date_from_party_terms(self, db, supplier):
        posting = await ledger_store.post_obligation(
            db, TENANT, supplier.id, 1_000, transaction_date=date(2026, 6, 1)
        )
        assert posting.due_date == date(2026, 7, 16)

    @pytest.mark.asyncio
    async def test_explicit_terms_override_party(self, db, supplier):
        posting = await ledger_store.post_obligation(
            db, TENANT, supplier.id, 1_000, transaction_date=date(2026, 6, 1), terms_days=10
        )
        assert posting.due_date == date(2026, 6, 11)

    @pytest.mark.asyncio
    async def test_due_before_transaction_rejected(self, db, customer):
        with pytest.raises(ValidationRejection) as exc:
            await ledger_store.post_obligation(
                db, TENANT, customer.id, 100,
                transaction_date=date(2026, 6, 1), due_date=date(2026, 5, 1),
            )
        assert exc.value.constraint == "due_date"

    @pytest.mark.asyncio
    async def test_backdated_posting_rejected(self, db, customer):
        await ledger_store.post_obligation(db, TENANT, customer.id, 100, transaction_date=date(2026, 3, 1))
        with pytest.raises(ValidationRejection) as exc:
            await ledger_store.post_obligation(
                db, TENANT, customer.id, 100, transaction_date=date(2026, 2, 1)
            )
        assert exc.value.constraint == "posting_date"
        assert customer.outstanding_total == 100

    @pytest.mark.asyncio
    async def test_non_positive_obligation_rejected(self, db, customer):
        with pytest.raises(ValidationRejection):
            await ledger_store.post_obligation(db, TENANT, customer.id, 0, transaction_date=date(2026, 3, 1))

    @pytest.mark.asyncio
    async def test_cache_drift_detected(self, db, customer):
        await ledger_store.post_obligation(db, TENANT, customer.id, 100, transaction_date=date(2026, 3, 1))
        customer.outstanding_total = 999
        with pytest.raises(InvariantViolation):
            await ledger_store.post_obligation(
                db, TENANT, customer.id, 100, transaction_date=date(2026, 3, 2)
            )

    @pytest.mark.asyncio
    async def test_recompute_reports_drift(self, db, customer):
        await ledger_store.post_obligation(db, TENANT, customer.id, 100, transaction_date=date(2026, 3, 1))
        customer.outstanding_total = 50
        with pytest.raises(InvariantViolation) as exc:
            await ledger_store.recompute_outstanding(db, TENANT, customer.id)
        assert exc.value.context["ledger_sum"] == 100

    @pytest.mark.asyncio
    async def test_negative_balance_is_an_invariant_violation(self, db, customer):
        party = await db.get(Party, customer.id)
        with pytest.raises(InvariantViolation, match="negative"):
            await ledger_store.post(
                db, party, kind=PostingKind.PAYMENT, amount=-1, transaction_date=date(2026, 3, 1)
            )

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_post(self, db, customer):
        with pytest.raises(NotFoundError):
            await ledger_store.post_obligation(
                db, OTHER_TENANT, customer.id, 100, transaction_date=date(2026, 3, 1)
            )


# ===================================================================
# Payments
# ===================================================================


class TestPayments:

    @pytest.mark.asyncio
    async def test_fifo_settles_oldest_then_partial(self, db, customer):
        first, second = await _two_obligations(db, customer)
        result = await ledger_store.record_payment(
            db, TENANT, customer.id, 600, payment_date=date(2026, 6, 30), method="cash"
        )

        assert result.payment.amount == -600
        assert [(a.obligation_id, a.amount) for a in result.allocations] == [
            (first.id, 500),
            (second.id, 100),
        ]
        assert first.paid_date == date(2026, 6, 30)
        assert second.paid_date is None
        assert customer.outstanding_total == 200

        open_obs = await ledger_store.open_obligations(db, customer.id)
        assert [(o.obligation_id, o.outstanding) for o in open_obs] == [(second.id, 200)]

    @pytest.mark.asyncio
    async def test_payment_above_outstanding_rejected(self, db, customer):
        await _two_obligations(db, customer)
        with pytest.raises(ValidationRejection) as exc:
            await ledger_store.record_payment(
                db, TENANT, customer.id, 801, payment_date=date(2026, 6, 30), method="cash"
            )
        assert exc.value.constraint == "payment_ceiling"
        assert customer.outstanding_total == 800

    @pytest.mark.asyncio
    async def test_invalid_target_writes_nothing(self, db, customer):
        first, second = await _two_obligations(db, customer)
        with pytest.raises(ValidationRejection):
            await ledger_store.record_payment(
                db, TENANT, customer.id, 800,
                payment_date=date(2026, 6, 30), method="cash",
                targets=[(first.id, 500), (second.id, 400)],
            )

        postings = await _postings(db, customer.id)
        assert [p.kind for p in postings] == [PostingKind.OBLIGATION, PostingKind.OBLIGATION]
        allocations = (await db.execute(select(Allocation))).scalars().all()
        assert allocations == []
        assert customer.outstanding_total == 800

    @pytest.mark.asyncio
    async def test_targeted_payment(self, db, customer):
        first, second = await _two_obligations(db, customer)
        result = await ledger_store.record_payment(
            db, TENANT, customer.id, 300,
            payment_date=date(2026, 6, 30), method="check", reference="CHK-1",
            targets=[(second.id, None)],
        )
        assert [(a.obligation_id, a.amount) for a in result.allocations] == [(second.id, 300)]
        assert second.paid_date == date(2026, 6, 30)
        assert result.payment.reference_number == "CHK-1"

    @pytest.mark.asyncio
    async def test_allocations_never_exceed_obligation(self, db, customer):
        first, _ = await _two_obligations(db, customer)
        for day in (1, 2, 3):
            await ledger_store.record_payment(
                db, TENANT, customer.id, 200, payment_date=date(2026, 7, day), method="cash"
            )
        assert await ledger_store.allocated_total(db, first.id) == 500

    @pytest.mark.asyncio
    async def test_payable_side_payment(self, db, supplier):
        invoice = await ledger_store.post_obligation(
            db, TENANT, supplier.id, 5_000, transaction_date=date(2026, 6, 1)
        )
        await ledger_store.record_payment(
            db, TENANT, supplier.id, 5_000, payment_date=date(2026, 6, 20), method="bank_transfer"
        )
        assert invoice.paid_date == date(2026, 6, 20)
        assert supplier.outstanding_total == 0


# ===================================================================
# Reversals
# ===================================================================


class TestReversal:

    @pytest.mark.asyncio
    async def test_mirror_posting(self, db, customer):
        _, second = await _two_obligations(db, customer)
        mirror = await ledger_store.reverse_obligation(
            db, TENANT, second.id, on=date(2026, 6, 11), reason="Returned goods"
        )
        assert mirror.kind == PostingKind.REVERSAL
        assert mirror.amount == -300
        assert mirror.reversal_of_id == second.id
        assert mirror.is_reversed and second.is_reversed
        assert mirror.description == "Returned goods"
        assert customer.outstanding_total == 500

    @pytest.mark.asyncio
    async def test_reversal_is_dated_by_caller(self, db, customer):
        future = await ledger_store.post_obligation(
            db, TENANT, customer.id, 400, transaction_date=date(2027, 1, 10)
        )
        mirror = await ledger_store.reverse_obligation(db, TENANT, future.id, on=date(2027, 1, 12))
        assert mirror.transaction_date == date(2027, 1, 12)
        with pytest.raises(TypeError):
            await ledger_store.reverse_obligation(db, TENANT, future.id)

    @pytest.mark.asyncio
    async def test_second_reversal_rejected_without_effect(self, db, customer):
        _, second = await _two_obligations(db, customer)
        await ledger_store.reverse_obligation(db, TENANT, second.id, on=date(2026, 6, 11))
        with pytest.raises(ValidationRejection, match="already reversed"):
            await ledger_store.reverse_obligation(db, TENANT, second.id, on=date(2026, 6, 12))
        assert customer.outstanding_total == 500
        assert len(await _postings(db, customer.id)) == 3

    @pytest.mark.asyncio
    async def test_reverse_then_repost_restores_total(self, db, customer):
        _, second = await _two_obligations(db, customer)
        before = customer.outstanding_total
        await ledger_store.reverse_obligation(db, TENANT, second.id, on=date(2026, 6, 11))
        await ledger_store.post_obligation(
            db, TENANT, customer.id, 300,
            transaction_date=date(2026, 6, 11), due_date=date(2026, 7, 10),
        )
        assert customer.outstanding_total == before

    @pytest.mark.asyncio
    async def test_allocated_obligation_cannot_be_reversed(self, db, customer):
        first, _ = await _two_obligations(db, customer)
        await ledger_store.record_payment(
            db, TENANT, customer.id, 100, payment_date=date(2026, 6, 30), method="cash"
        )
        with pytest.raises(ValidationRejection, match="allocated"):
            await ledger_store.reverse_obligation(db, TENANT, first.id, on=date(2026, 6, 30))

    @pytest.mark.asyncio
    async def test_settled_obligation_cannot_be_reversed(self, db, customer):
        first, _ = await _two_obligations(db, customer)
        await ledger_store.record_payment(
            db, TENANT, customer.id, 500, payment_date=date(2026, 6, 30), method="cash"
        )
        assert first.is_open is False
        with pytest.raises(ValidationRejection, match="already paid"):
            await ledger_store.reverse_obligation(db, TENANT, first.id, on=date(2026, 6, 30))
        assert customer.outstanding_total == 300

    @pytest.mark.asyncio
    async def test_payment_posting_cannot_be_reversed(self, db, customer):
        await _two_obligations(db, customer)
        result = await ledger_store.record_payment(
            db, TENANT, customer.id, 100, payment_date=date(2026, 6, 30), method="cash"
        )
        with pytest.raises(ValidationRejection, match="not an obligation"):
            await ledger_store.reverse_obligation(db, TENANT, result.payment.id, on=date(2026, 6, 30))

    @pytest.mark.asyncio
    async def test_unknown_obligation(self, db, customer):
        with pytest.raises(NotFoundError):
            await ledger_store.reverse_obligation(db, TENANT, 9_999, on=date(2026, 6, 30))


# ===================================================================
# Reads
# ===================================================================


class TestStatements:

    async def _history(self, db, party):
        await ledger_store.post_obligation(db, TENANT, party.id, 500, transaction_date=date(2026, 1, 5))
        await ledger_store.post_obligation(db, TENANT, party.id, 300, transaction_date=date(2026, 2, 10))
        await ledger_store.record_payment(
            db, TENANT, party.id, 200, payment_date=date(2026, 3, 1), method="cash"
        )

    @pytest.mark.asyncio
    async def test_opening_balance(self, db, customer):
        await self._history(db, customer)
        assert await ledger_store.opening_balance(db, TENANT, customer.id, date(2026, 1, 5)) == 0
        assert await ledger_store.opening_balance(db, TENANT, customer.id, date(2026, 2, 10)) == 500
        assert await ledger_store.opening_balance(db, TENANT, customer.id, date(2026, 3, 2)) == 600

    @pytest.mark.asyncio
    async def test_statement_totals(self, db, customer):
        await self._history(db, customer)
        stmt = await ledger_store.party_statement(
            db, TENANT, customer.id, date(2026, 2, 1), date(2026, 3, 31)
        )
        assert stmt.opening_balance == 500
        assert stmt.total_charges == 300
        assert stmt.total_payments == 200
        assert stmt.total_reversals == 0
        assert stmt.closing_balance == 600
        assert len(stmt.postings) == 2

    @pytest.mark.asyncio
    async def test_empty_statement_carries_opening(self, db, customer):
        await self._history(db, customer)
        stmt = await ledger_store.party_statement(
            db, TENANT, customer.id, date(2026, 4, 1), date(2026, 4, 30)
        )
        assert stmt.postings == []
        assert stmt.closing_balance == stmt.opening_balance == 600

    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, db, customer):
        with pytest.raises(ValidationRejection):
            await ledger_store.party_statement(
                db, TENANT, customer.id, date(2026, 4, 30), date(2026, 4, 1)
            )


class TestCredit:

    @pytest.mark.asyncio
    async def test_availability(self, db):
        party = await make_party(db, "C-010", credit_limit=1_000)
        await ledger_store.post_obligation(db, TENANT, party.id, 800, transaction_date=date(2026, 6, 1))
        availability = await ledger_store.credit_availability(db, TENANT, party.id, 300)
        assert availability.available == 200
        assert availability.shortfall == 100
        assert not availability.is_available

    @pytest.mark.asyncio
    async def test_suppliers_have_no_credit_limit(self, db, supplier):
        with pytest.raises(ValidationRejection):
            await ledger_store.credit_availability(db, TENANT, supplier.id)

    @pytest.mark.asyncio
    async def test_sale_on_credit_posts_obligation(self, db, customer):
        posting, change = await ledger_store.charge_sale(
            db, TENANT, customer.id,
            sale_total=1_000, tendered=[400], credit_amount=600,
            on=date(2026, 6, 1), sale_reference="SALE-2026-000001",
        )
        assert change == 0
        assert posting.amount == 600
        assert posting.origin_type == OriginType.SALE
        assert customer.outstanding_total == 600

    @pytest.mark.asyncio
    async def test_sale_over_credit_limit_rejected(self, db):
        party = await make_party(db, "C-011", credit_limit=500)
        with pytest.raises(ValidationRejection) as exc:
            await ledger_store.charge_sale(
                db, TENANT, party.id,
                sale_total=1_000, tendered=[], credit_amount=1_000, on=date(2026, 6, 1),
            )
        assert exc.value.constraint == "credit_limit"
        assert party.outstanding_total == 0

    @pytest.mark.asyncio
    async def test_cash_sale_returns_change(self, db, customer):
        posting, change = await ledger_store.charge_sale(
            db, TENANT, customer.id,
            sale_total=1_000, tendered=[2_000], credit_amount=0, on=date(2026, 6, 1),
        )
        assert posting is None
        assert change == 1_000


# ===================================================================
# Wallets
# ===================================================================


class TestWalletPayments:

    @pytest.mark.asyncio
    async def test_disallowed_category_leaves_wallet_untouched(self, db, customer, rice_wallet):
        lines = [PurchaseLine("Cooking Oil", 4, "Groceries", 500)]
        with pytest.raises(WalletRestrictionError) as exc:
            await ledger_store.pay_with_wallet(db, TENANT, rice_wallet.id, lines, on=date(2026, 6, 1))
        assert exc.value.product_name == "Cooking Oil"
        assert exc.value.category_id == 4
        assert rice_wallet.balance == 10_000
        assert await _postings(db, customer.id) == []

    @pytest.mark.asyncio
    async def test_allowed_purchase_debits_wallet(self, db, customer, rice_wallet):
        lines = [
            PurchaseLine("Rice 25kg", 1, "Rice", 6_000),
            PurchaseLine("Rice 5kg", 2, "Rice", 1_500),
        ]
        posting = await ledger_store.pay_with_wallet(
            db, TENANT, rice_wallet.id, lines, on=date(2026, 6, 1), reference="SALE-9"
        )
        assert posting.amount == 7_500
        assert posting.origin_type == OriginType.WALLET
        assert posting.wallet_id == rice_wallet.id
        assert rice_wallet.balance == 2_500
        assert customer.outstanding_total == 7_500

    @pytest.mark.asyncio
    async def test_insufficient_wallet_balance(self, db, customer, rice_wallet):
        lines = [PurchaseLine("Rice 50kg", 1, "Rice", 12_000)]
        with pytest.raises(ValidationRejection, match="Insufficient"):
            await ledger_store.pay_with_wallet(db, TENANT, rice_wallet.id, lines, on=date(2026, 6, 1))

    @pytest.mark.asyncio
    async def test_backdated_purchase_leaves_wallet_untouched(self, db, customer, rice_wallet):
        await ledger_store.post_obligation(
            db, TENANT, customer.id, 300, transaction_date=date(2026, 6, 10)
        )
        lines = [PurchaseLine("Rice 5kg", 2, "Rice", 500)]
        with pytest.raises(ValidationRejection) as exc:
            await ledger_store.pay_with_wallet(db, TENANT, rice_wallet.id, lines, on=date(2026, 6, 1))
        assert exc.value.constraint == "posting_date"
        assert rice_wallet.balance == 10_000
        assert customer.outstanding_total == 300

    @pytest.mark.asyncio
    async def test_amount_must_match_priced_lines(self, db, customer, rice_wallet):
        lines = [PurchaseLine("Rice 5kg", 2, "Rice", 1_500)]
        with pytest.raises(ValidationRejection) as exc:
            await ledger_store.pay_with_wallet(
                db, TENANT, rice_wallet.id, lines, on=date(2026, 6, 1), amount=2_000
            )
        assert exc.value.constraint == "wallet_amount"
        assert rice_wallet.balance == 10_000

    @pytest.mark.asyncio
    async def test_explicit_amount_for_unpriced_lines(self, db, customer, rice_wallet):
        lines = [PurchaseLine("Rice (bulk)", 1, "Rice")]
        posting = await ledger_store.pay_with_wallet(
            db, TENANT, rice_wallet.id, lines, on=date(2026, 6, 1), amount=2_000
        )
        assert posting.amount == 2_000
        assert rice_wallet.balance == 8_000


# ===================================================================
# Locking
# ===================================================================


class TestLocking:

    @pytest.mark.asyncio
    async def test_lock_timeout_becomes_conflict(self):
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "postgresql"
        db.execute = AsyncMock(side_effect=[
            None,  # SET LOCAL lock_timeout
            OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout")),
        ])
        with pytest.raises(ConcurrencyConflict):
            await ledger_store.lock_party(db, TENANT, 1)
        assert db.execute.await_count == 2
