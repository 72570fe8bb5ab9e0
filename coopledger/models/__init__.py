"""SQLAlchemy models for the cooperative ledger."""

from coopledger.models.party import Party, PartySide, CustomerWallet, DocumentSequence
from coopledger.models.ledger import LedgerPosting, Allocation, PostingKind, OriginType
from coopledger.models.loan import (
    LoanAccount, LoanStatus, PaymentInterval, AmortizationEntry, LoanPenalty,
    LoanPayment, LoanPaymentLine, PaymentComponent,
)
from coopledger.models.savings import (
    SavingsAccount, SavingsTransaction, SavingsTransactionType, AccountStatus,
    TimeDeposit, TimeDepositTransaction, TimeDepositTransactionType, TimeDepositStatus,
    InterestMethod, PaymentFrequency,
)
from coopledger.models.share import ShareAccount, SharePayment, ShareCertificate
from coopledger.models.patronage import (
    PatronageRefundBatch, PatronageRefundAllocation, RefundMethod, BatchStatus,
    RefundAllocationStatus,
)

__all__ = [
    # Parties
    "Party", "PartySide", "CustomerWallet", "DocumentSequence",
    # Receivable / payable ledger
    "LedgerPosting", "Allocation", "PostingKind", "OriginType",
    # Loans
    "LoanAccount", "LoanStatus", "PaymentInterval", "AmortizationEntry",
    "LoanPenalty", "LoanPayment", "LoanPaymentLine", "PaymentComponent",
    # Savings & time deposits
    "SavingsAccount", "SavingsTransaction", "SavingsTransactionType", "AccountStatus",
    "TimeDeposit", "TimeDepositTransaction", "TimeDepositTransactionType",
    "TimeDepositStatus", "InterestMethod", "PaymentFrequency",
    # Share capital
    "ShareAccount", "SharePayment", "ShareCertificate",
    # Patronage refunds
    "PatronageRefundBatch", "PatronageRefundAllocation", "RefundMethod", "BatchStatus",
    "RefundAllocationStatus",
]
