"""Allocation planning: FIFO and caller-targeted plans (no DB)."""

import pytest
from datetime import date

from coopledger.services.allocation import OpenObligation, allocate, plan_fifo, plan_manual
from coopledger.services.exceptions import ValidationRejection


def _ob(obligation_id, due, outstanding, amount=None, party_id=1):
    return OpenObligation(
        obligation_id=obligation_id,
        party_id=party_id,
        due_date=due,
        amount=amount if amount is not None else outstanding,
        outstanding=outstanding,
    )


@pytest.fixture
def obligations():
    # due twenty days ago and in ten days, relative to 2026-06-30
    return [
        _ob(1, date(2026, 6, 10), 500),
        _ob(2, date(2026, 7, 10), 300),
    ]


class TestFifo:

    def test_oldest_first_partial_on_second(self, obligations):
        plan = plan_fifo(obligations, 600)
        assert [(p.obligation_id, p.amount, p.settles) for p in plan] == [
            (1, 500, True),
            (2, 100, False),
        ]

    def test_order_ignores_input_order(self, obligations):
        plan = plan_fifo(list(reversed(obligations)), 200)
        assert plan[0].obligation_id == 1

    def test_ties_broken_by_creation(self):
        due = date(2026, 6, 1)
        plan = plan_fifo([_ob(7, due, 100), _ob(3, due, 100)], 150)
        assert [(p.obligation_id, p.amount) for p in plan] == [(3, 100), (7, 50)]

    def test_exact_payment_settles_everything(self, obligations):
        plan = plan_fifo(obligations, 800)
        assert all(p.settles for p in plan)
        assert sum(p.amount for p in plan) == 800

    def test_overpayment_rejected(self, obligations):
        with pytest.raises(ValidationRejection) as exc:
            plan_fifo(obligations, 801)
        assert exc.value.constraint == "unapplied_payment"

    def test_skips_settled_remainders(self):
        plan = plan_fifo([_ob(1, date(2026, 1, 1), 0, amount=500), _ob(2, date(2026, 2, 1), 300)], 300)
        assert [(p.obligation_id, p.amount) for p in plan] == [(2, 300)]


class TestManualTargets:

    def test_caller_order_is_kept(self, obligations):
        plan = plan_manual(obligations, 400, [(2, 300), (1, 100)])
        assert [(p.obligation_id, p.amount, p.settles) for p in plan] == [
            (2, 300, True),
            (1, 100, False),
        ]

    def test_open_ended_target_takes_what_is_needed(self, obligations):
        plan = plan_manual(obligations, 500, [(2, None), (1, None)])
        assert [(p.obligation_id, p.amount) for p in plan] == [(2, 300), (1, 200)]

    def test_line_above_outstanding_rejects_whole_plan(self, obligations):
        with pytest.raises(ValidationRejection, match="exceeds outstanding"):
            plan_manual(obligations, 800, [(1, 500), (2, 301)])

    def test_unknown_obligation_rejected(self, obligations):
        with pytest.raises(ValidationRejection) as exc:
            plan_manual(obligations, 100, [(99, 100)])
        assert exc.value.constraint == "allocation_target"

    def test_duplicate_target_rejected(self, obligations):
        with pytest.raises(ValidationRejection, match="more than once"):
            plan_manual(obligations, 200, [(1, 100), (1, 100)])

    def test_lines_above_payment_rejected(self, obligations):
        with pytest.raises(ValidationRejection, match="exceed the payment"):
            plan_manual(obligations, 100, [(1, 100), (2, 50)])

    def test_unallocated_remainder_rejected(self, obligations):
        with pytest.raises(ValidationRejection) as exc:
            plan_manual(obligations, 500, [(1, 400)])
        assert exc.value.constraint == "unapplied_payment"


class TestAllocate:

    def test_non_positive_payment_rejected(self, obligations):
        with pytest.raises(ValidationRejection):
            allocate(obligations, 0)

    def test_dispatches_to_manual_when_targeted(self, obligations):
        plan = allocate(obligations, 300, [(2, 300)])
        assert plan[0].obligation_id == 2

    def test_dispatches_to_fifo_otherwise(self, obligations):
        plan = allocate(obligations, 300)
        assert plan[0].obligation_id == 1
