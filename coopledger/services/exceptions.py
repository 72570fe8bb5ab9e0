"""Error taxonomy shared by every ledger service.

ValidationRejection  – a guard failed; the caller may retry with other inputs.
InvariantViolation   – a computed state would break a stored invariant (defect).
NotFoundError        – entity missing or outside the caller's tenant scope.
ConcurrencyConflict  – the ledger row lock could not be acquired in time.
"""

from typing import Any


class LedgerError(Exception):
    """Base exception for ledger engine errors."""


class ValidationRejection(LedgerError):
    """A mutation guard rejected the request."""

    def __init__(self, message: str, *, constraint: str = "validation"):
        super().__init__(message)
        self.message = message
        self.constraint = constraint


class WalletRestrictionError(ValidationRejection):
    """A restricted-use wallet was offered for a product outside its categories."""

    def __init__(
        self,
        *,
        wallet_name: str,
        product_name: str,
        category_name: str,
        category_id: int,
    ):
        super().__init__(
            f'Wallet "{wallet_name}" cannot be used for "{product_name}" '
            f"(category: {category_name}).",
            constraint="wallet_category",
        )
        self.wallet_name = wallet_name
        self.product_name = product_name
        self.category_name = category_name
        self.category_id = category_id


class InvariantViolation(LedgerError):
    """A stored invariant would be broken.  Never retried."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class NotFoundError(LedgerError):
    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class ConcurrencyConflict(LedgerError):
    """Lock on a party or account ledger not acquired within the timeout."""
