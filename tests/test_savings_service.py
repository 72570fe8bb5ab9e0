"""Savings accounts and time deposits."""

import pytest
from datetime import date
from decimal import Decimal

from coopledger.models.savings import (
    AccountStatus,
    InterestMethod,
    PaymentFrequency,
    SavingsTransactionType,
    TimeDepositStatus,
    TimeDepositTransactionType,
)
from coopledger.services import savings_service
from coopledger.services.exceptions import NotFoundError, ValidationRejection

from conftest import OTHER_TENANT, TENANT


async def _savings(db, party, **overrides):
    values = dict(
        opened_on=date(2026, 1, 5),
        minimum_balance=1_000,
        annual_interest_rate=Decimal("0.06"),
        initial_deposit=5_000,
    )
    values.update(overrides)
    return await savings_service.open_savings_account(db, TENANT, party.id, **values)


async def _time_deposit(db, party, **overrides):
    values = dict(
        principal=100_000,
        annual_rate=Decimal("0.06"),
        term_months=12,
        placement_date=date(2026, 1, 15),
        early_withdrawal_penalty_rate=Decimal("0.25"),
    )
    values.update(overrides)
    return await savings_service.place_time_deposit(db, TENANT, party.id, **values)


# ===================================================================
# Savings
# ===================================================================


class TestSavings:

    @pytest.mark.asyncio
    async def test_open_with_initial_deposit(self, db, customer):
        account = await _savings(db, customer)
        assert account.account_number == "SA-2026-000001"
        assert account.current_balance == 5_000
        assert account.status == AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_initial_deposit_below_minimum_rejected(self, db, customer):
        with pytest.raises(ValidationRejection) as exc:
            await _savings(db, customer, initial_deposit=500)
        assert exc.value.constraint == "initial_deposit"

    @pytest.mark.asyncio
    async def test_withdrawal_cannot_breach_minimum(self, db, customer):
        account = await _savings(db, customer)
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.withdraw(db, TENANT, account.id, 4_500, on=date(2026, 2, 1))
        assert exc.value.constraint == "withdrawal_limit"
        assert account.current_balance == 5_000

    @pytest.mark.asyncio
    async def test_withdrawal_down_to_minimum(self, db, customer):
        account = await _savings(db, customer)
        txn = await savings_service.withdraw(db, TENANT, account.id, 4_000, on=date(2026, 2, 1))
        assert txn.amount == -4_000
        assert txn.balance_after == 1_000
        assert account.current_balance == 1_000

    @pytest.mark.asyncio
    async def test_monthly_interest_once_per_month(self, db, customer):
        account = await _savings(db, customer, initial_deposit=120_000)
        txn = await savings_service.credit_interest(db, TENANT, account.id, on=date(2026, 1, 31))
        assert txn.amount == 600
        assert txn.transaction_type == SavingsTransactionType.INTEREST
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.credit_interest(db, TENANT, account.id, on=date(2026, 1, 31))
        assert exc.value.constraint == "interest_period"

    @pytest.mark.asyncio
    async def test_backdated_transaction_rejected(self, db, customer):
        account = await _savings(db, customer)
        await savings_service.deposit(db, TENANT, account.id, 1_000, on=date(2026, 3, 1))
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.deposit(db, TENANT, account.id, 1_000, on=date(2026, 2, 1))
        assert exc.value.constraint == "posting_date"

    @pytest.mark.asyncio
    async def test_closed_account_refuses_deposits(self, db, customer):
        account = await _savings(db, customer)
        payout = await savings_service.close_savings_account(db, TENANT, account.id, on=date(2026, 3, 1))
        assert payout.amount == -5_000
        assert account.status == AccountStatus.CLOSED
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.deposit(db, TENANT, account.id, 100, on=date(2026, 3, 2))
        assert exc.value.constraint == "account_status"

    @pytest.mark.asyncio
    async def test_statement(self, db, customer):
        account = await _savings(db, customer)
        await savings_service.deposit(db, TENANT, account.id, 2_000, on=date(2026, 2, 10))
        await savings_service.withdraw(db, TENANT, account.id, 1_500, on=date(2026, 2, 20))
        stmt = await savings_service.savings_statement(
            db, TENANT, account.id, date(2026, 2, 1), date(2026, 2, 28)
        )
        assert stmt.opening_balance == 5_000
        assert stmt.total_deposits == 2_000
        assert stmt.total_withdrawals == 1_500
        assert stmt.closing_balance == 5_500

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_deposit(self, db, customer):
        account = await _savings(db, customer)
        with pytest.raises(NotFoundError):
            await savings_service.deposit(db, OTHER_TENANT, account.id, 100, on=date(2026, 2, 1))


# ===================================================================
# Time deposits
# ===================================================================


class TestTimeDeposits:

    @pytest.mark.asyncio
    async def test_placement(self, db, customer):
        td = await _time_deposit(db, customer)
        assert td.maturity_date == date(2027, 1, 15)
        assert td.current_balance == 100_000
        assert td.status == TimeDepositStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_maturity_pays_principal_and_interest(self, db, customer):
        td = await _time_deposit(db, customer)
        txn = await savings_service.mature_time_deposit(db, TENANT, td.id, on=date(2027, 1, 15))
        assert txn.transaction_type == TimeDepositTransactionType.MATURITY_PAYOUT
        assert td.payout_amount == 106_000
        assert td.interest_earned == 6_000
        assert td.current_balance == 0
        assert td.status == TimeDepositStatus.MATURED

    @pytest.mark.asyncio
    async def test_early_maturity_rejected(self, db, customer):
        td = await _time_deposit(db, customer)
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.mature_time_deposit(db, TENANT, td.id, on=date(2027, 1, 14))
        assert exc.value.constraint == "maturity_date"

    @pytest.mark.asyncio
    async def test_pre_termination(self, db, customer):
        td = await _time_deposit(db, customer)
        result = await savings_service.pre_terminate_time_deposit(
            db, TENANT, td.id, on=date(2026, 7, 15)
        )
        assert result.terms.accrued_interest == 2_975
        assert result.terms.penalty == 744
        assert result.terms.payout == 102_231
        assert td.status == TimeDepositStatus.PRE_TERMINATED
        assert td.current_balance == 0

    @pytest.mark.asyncio
    async def test_pre_termination_on_maturity_date_rejected(self, db, customer):
        td = await _time_deposit(db, customer)
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.pre_terminate_time_deposit(db, TENANT, td.id, on=date(2027, 1, 15))
        assert exc.value.constraint == "pre_termination_window"

    @pytest.mark.asyncio
    async def test_periodic_accrual_is_idempotent(self, db, customer):
        td = await _time_deposit(
            db, customer,
            interest_method=InterestMethod.PERIODIC,
            payment_frequency=PaymentFrequency.QUARTERLY,
        )
        credited = await savings_service.accrue_time_deposit_interest(
            db, TENANT, td.id, as_of=date(2026, 7, 15)
        )
        assert [t.period_number for t in credited] == [1, 2]
        assert td.interest_earned == 3_000

        again = await savings_service.accrue_time_deposit_interest(
            db, TENANT, td.id, as_of=date(2026, 7, 15)
        )
        assert again == []

    @pytest.mark.asyncio
    async def test_periodic_deposit_matures_with_remaining_periods(self, db, customer):
        td = await _time_deposit(
            db, customer,
            interest_method=InterestMethod.PERIODIC,
            payment_frequency=PaymentFrequency.QUARTERLY,
        )
        await savings_service.accrue_time_deposit_interest(db, TENANT, td.id, as_of=date(2026, 7, 15))
        await savings_service.mature_time_deposit(db, TENANT, td.id, on=date(2027, 1, 20))
        assert td.payout_amount == 106_000

    @pytest.mark.asyncio
    async def test_simple_deposits_do_not_accrue(self, db, customer):
        td = await _time_deposit(db, customer)
        with pytest.raises(ValidationRejection) as exc:
            await savings_service.accrue_time_deposit_interest(db, TENANT, td.id, as_of=date(2026, 7, 15))
        assert exc.value.constraint == "interest_method"

    @pytest.mark.asyncio
    async def test_schedule_read(self, db, customer):
        td = await _time_deposit(db, customer)
        periods = await savings_service.time_deposit_interest_schedule(db, TENANT, td.id)
        assert [p.interest for p in periods] == [6_000]
