"""Pre-write predicates for every ledger mutation.

Each check either returns ``None`` or raises ``ValidationRejection``.  None
of them touch the database, so callers run all relevant checks before the
first write of a transaction and a rejection never leaves partial state.
"""

from dataclasses import dataclass
from typing import Iterable

from coopledger.config import settings
from coopledger.money import Money
from coopledger.services.exceptions import ValidationRejection, WalletRestrictionError


@dataclass(frozen=True)
class PurchaseLine:
    """An item being paid for, as seen by the wallet category check."""
    product_name: str
    category_id: int
    category_name: str
    amount: Money = 0


def check_positive_amount(amount: Money, label: str = "Amount") -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationRejection(
            f"{label} must be an integer number of centavos", constraint="amount_type"
        )
    if amount <= 0:
        raise ValidationRejection(f"{label} must be positive", constraint="amount_positive")


def check_account_active(status, account_label: str) -> None:
    """Accounts outside ``active`` accept no postings at all."""
    value = getattr(status, "value", status)
    if value != "active":
        raise ValidationRejection(
            f"{account_label} is {value}; only active accounts accept postings",
            constraint="account_status",
        )


# ---------------------------------------------------------------------------
# Restricted-use wallets
# ---------------------------------------------------------------------------

def check_wallet_category(wallet, lines: Iterable[PurchaseLine]) -> None:
    allowed = set(wallet.allowed_category_ids or [])
    for line in lines:
        if line.category_id not in allowed:
            raise WalletRestrictionError(
                wallet_name=wallet.name,
                product_name=line.product_name,
                category_name=line.category_name,
                category_id=line.category_id,
            )


def check_wallet_balance(wallet, amount: Money) -> None:
    if not wallet.is_active:
        raise ValidationRejection(
            f'Wallet "{wallet.name}" is inactive', constraint="wallet_status"
        )
    if amount > wallet.balance:
        raise ValidationRejection(
            f'Insufficient balance in wallet "{wallet.name}": '
            f"available {wallet.balance}, requested {amount}",
            constraint="wallet_balance",
        )


# ---------------------------------------------------------------------------
# Balance ceilings
# ---------------------------------------------------------------------------

def check_withdrawal(current_balance: Money, minimum_balance: Money, amount: Money) -> None:
    available = current_balance - minimum_balance
    if amount > available:
        raise ValidationRejection(
            f"Withdrawal of {amount} exceeds available balance {available} "
            f"(minimum maintaining balance {minimum_balance})",
            constraint="withdrawal_limit",
        )


def check_share_payment(account, amount: Money) -> None:
    remaining = account.total_subscribed_amount - account.total_paid_up_amount
    if amount > remaining:
        raise ValidationRejection(
            f"Payment of {amount} exceeds unpaid subscription {remaining}",
            constraint="share_subscription",
        )


def check_loan_payment(loan, amount: Money) -> None:
    ceiling = loan.outstanding_balance + loan.total_penalties_outstanding
    if amount > ceiling:
        raise ValidationRejection(
            f"Payment of {amount} exceeds loan balance plus penalties {ceiling}",
            constraint="loan_payment_ceiling",
        )


def check_payment_ceiling(total_outstanding: Money, amount: Money) -> None:
    if amount > total_outstanding:
        raise ValidationRejection(
            f"Payment of {amount} exceeds total outstanding {total_outstanding}",
            constraint="payment_ceiling",
        )


def check_credit_limit(party, amount: Money) -> None:
    available = party.credit_limit - party.outstanding_total
    if amount > available:
        raise ValidationRejection(
            f"Charge of {amount} exceeds available credit {max(available, 0)} "
            f"(limit {party.credit_limit}, outstanding {party.outstanding_total})",
            constraint="credit_limit",
        )


def check_tender_total(
    sale_total: Money, tendered_amounts: Iterable[Money], tolerance: Money | None = None
) -> Money:
    """Summed tender may fall short of the sale total by at most *tolerance*.

    *tolerance* defaults to ``settings.payment_total_tolerance``.  Returns the
    change due (zero when tender is short within tolerance).
    """
    if tolerance is None:
        tolerance = settings.payment_total_tolerance
    tendered = sum(tendered_amounts, 0)
    if tendered < sale_total - tolerance:
        raise ValidationRejection(
            f"Total payment {tendered} is less than sale total {sale_total}",
            constraint="tender_total",
        )
    return max(tendered - sale_total, 0)
