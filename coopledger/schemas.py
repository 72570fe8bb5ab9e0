"""Pydantic schemas for request/response validation.

All money fields are integers in centavos.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from coopledger.models.ledger import PostingKind, OriginType
from coopledger.models.loan import LoanStatus, PaymentInterval, PaymentComponent
from coopledger.models.party import PartySide
from coopledger.models.patronage import BatchStatus, RefundAllocationStatus, RefundMethod
from coopledger.models.savings import (
    AccountStatus,
    InterestMethod,
    PaymentFrequency,
    SavingsTransactionType,
    TimeDepositStatus,
    TimeDepositTransactionType,
)


# ── Parties ──────────────────────────────────────────

class PartyCreate(BaseModel):
    side: PartySide
    code: str = Field(min_length=1, max_length=30)
    name: str = Field(min_length=1, max_length=200)
    is_member: bool = False
    credit_limit: int = Field(0, ge=0)
    credit_terms_days: Optional[int] = Field(None, ge=0)


class PartyResponse(BaseModel):
    id: int
    side: PartySide
    code: str
    name: str
    is_member: bool
    credit_limit: int
    credit_terms_days: Optional[int] = None
    outstanding_total: int
    accumulated_patronage: int = 0

    model_config = {"from_attributes": True}


class WalletCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    balance: int = Field(0, ge=0)
    allowed_category_ids: list[int] = []


class WalletResponse(BaseModel):
    id: int
    party_id: int
    name: str
    balance: int
    allowed_category_ids: list[int]
    is_active: bool

    model_config = {"from_attributes": True}


class PurchaseLineIn(BaseModel):
    product_name: str
    category_id: int
    category_name: str
    amount: int = Field(ge=0)


class WalletPaymentRequest(BaseModel):
    lines: list[PurchaseLineIn] = Field(min_length=1)
    on: date
    reference: Optional[str] = None
    amount: Optional[int] = Field(None, gt=0)


# ── Ledger ───────────────────────────────────────────

class ObligationCreate(BaseModel):
    party_id: int
    amount: int = Field(gt=0)
    transaction_date: date
    due_date: Optional[date] = None
    terms_days: Optional[int] = Field(None, ge=0)
    origin_type: OriginType = OriginType.MANUAL
    origin_reference: Optional[str] = None
    description: Optional[str] = None
    enforce_credit_limit: bool = False


class PostingResponse(BaseModel):
    id: int
    party_id: int
    kind: PostingKind
    amount: int
    balance_before: int
    balance_after: int
    transaction_date: date
    due_date: Optional[date] = None
    paid_date: Optional[date] = None
    is_reversed: bool
    reversal_of_id: Optional[int] = None
    origin_type: Optional[OriginType] = None
    origin_reference: Optional[str] = None
    payment_method: Optional[str] = None
    reference_number: Optional[str] = None
    description: Optional[str] = None

    model_config = {"from_attributes": True}


class SaleChargeRequest(BaseModel):
    party_id: int
    sale_total: int = Field(gt=0)
    tendered: list[int] = []
    credit_amount: int = Field(0, ge=0)
    on: date
    sale_reference: Optional[str] = None


class SaleChargeResponse(BaseModel):
    sale_reference: str
    obligation: Optional[PostingResponse] = None
    change_due: int


class AllocationTargetIn(BaseModel):
    obligation_id: int
    amount: Optional[int] = Field(None, gt=0)


class PaymentCreate(BaseModel):
    party_id: int
    amount: int = Field(gt=0)
    payment_date: date
    method: str = "cash"
    reference: Optional[str] = None
    targets: Optional[list[AllocationTargetIn]] = None


class AllocationResponse(BaseModel):
    id: int
    payment_id: int
    obligation_id: int
    amount: int

    model_config = {"from_attributes": True}


class PaymentResponse(BaseModel):
    payment: PostingResponse
    allocations: list[AllocationResponse]


class ReversalRequest(BaseModel):
    on: date
    reason: Optional[str] = None


class OpeningBalanceResponse(BaseModel):
    party_id: int
    before: date
    balance: int


class StatementResponse(BaseModel):
    party_id: int
    date_from: date
    date_to: date
    opening_balance: int
    postings: list[PostingResponse]
    total_charges: int
    total_payments: int
    total_reversals: int
    closing_balance: int

    model_config = {"from_attributes": True}


class CreditAvailabilityResponse(BaseModel):
    credit_limit: int
    outstanding: int
    available: int
    requested: int
    shortfall: int
    is_available: bool

    model_config = {"from_attributes": True}


class AgingBucketResponse(BaseModel):
    count: int
    amount: int
    party_ids: list[int]


class PartyAgingResponse(BaseModel):
    party_id: int
    current: int
    d31_60: int
    d61_90: int
    over_90: int
    total: int
    oldest_days_overdue: int

    model_config = {"from_attributes": True}


class AgingResponse(BaseModel):
    reference_date: date
    current: AgingBucketResponse
    d31_60: AgingBucketResponse
    d61_90: AgingBucketResponse
    over_90: AgingBucketResponse
    total_amount: int
    parties: list[PartyAgingResponse]

    @classmethod
    def from_report(cls, report) -> "AgingResponse":
        buckets = report.buckets.as_dict()
        return cls(
            reference_date=report.buckets.reference_date,
            total_amount=report.buckets.total_amount,
            parties=[PartyAgingResponse.model_validate(p) for p in report.parties],
            **{name: AgingBucketResponse(**bucket) for name, bucket in buckets.items()},
        )


# ── Loans ────────────────────────────────────────────

class LoanTermsIn(BaseModel):
    principal: int = Field(gt=0)
    monthly_rate: Decimal = Field(ge=0)
    term_months: int = Field(gt=0, le=360)
    first_payment_date: date
    interval: PaymentInterval = PaymentInterval.MONTHLY


class LoanApplicationCreate(BaseModel):
    party_id: int
    principal: int = Field(gt=0)
    monthly_rate: Decimal = Field(ge=0)
    term_months: int = Field(gt=0, le=360)
    interval: PaymentInterval = PaymentInterval.MONTHLY
    processing_fee_rate: Decimal = Field(Decimal("0"), ge=0, lt=1)
    application_date: date
    purpose: Optional[str] = None


class LoanResponse(BaseModel):
    id: int
    party_id: int
    loan_number: str
    principal: int
    monthly_rate: Decimal
    term_months: int
    payment_interval: PaymentInterval
    status: LoanStatus
    application_date: date
    approved_date: Optional[date] = None
    disbursement_date: Optional[date] = None
    maturity_date: Optional[date] = None
    rejection_reason: Optional[str] = None
    processing_fee: int
    net_proceeds: int
    level_payment: int
    outstanding_principal: int
    outstanding_balance: int
    total_penalties_outstanding: int
    total_paid: int

    model_config = {"from_attributes": True}


class ScheduleEntryResponse(BaseModel):
    sequence: int
    due_date: date
    principal: int
    interest: int
    total: int
    balance_after: int

    model_config = {"from_attributes": True}


class AmortizationEntryResponse(BaseModel):
    id: int
    sequence: int
    due_date: date
    principal_due: int
    interest_due: int
    total_due: int
    balance_after: int

    model_config = {"from_attributes": True}


class LoanDecisionRequest(BaseModel):
    on: date
    reason: Optional[str] = None


class DisbursementRequest(BaseModel):
    on: date
    first_payment_date: Optional[date] = None


class LoanPaymentCreate(BaseModel):
    amount: int = Field(gt=0)
    payment_date: date
    method: str = "cash"
    reference: Optional[str] = None


class LoanPaymentLineResponse(BaseModel):
    component: PaymentComponent
    penalty_id: Optional[int] = None
    amortization_entry_id: Optional[int] = None
    amount: int

    model_config = {"from_attributes": True}


class LoanPaymentResponse(BaseModel):
    payment_id: int
    amount: int
    penalty_paid: int
    interest_paid: int
    principal_paid: int
    balance_after: int
    loan_status: LoanStatus
    lines: list[LoanPaymentLineResponse]


class LoanPaymentReversalRequest(BaseModel):
    on: date
    reason: str = Field(min_length=1)


class LoanPaymentRecord(BaseModel):
    id: int
    loan_id: int
    payment_date: date
    amount: int
    penalty_paid: int
    interest_paid: int
    principal_paid: int
    is_reversed: bool
    reversed_date: Optional[date] = None
    reversal_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class PenaltyComputeRequest(BaseModel):
    as_of: date
    rate: Optional[Decimal] = Field(None, ge=0)


class PenaltyResponse(BaseModel):
    id: int
    loan_id: int
    amortization_entry_id: int
    applied_date: date
    days_overdue: int
    overdue_amount: int
    net_penalty: int
    waived_amount: int
    waiver_reason: Optional[str] = None
    amount_paid: int
    is_paid: bool
    collectible: int

    model_config = {"from_attributes": True}


class PenaltyWaiverRequest(BaseModel):
    waived_amount: int = Field(gt=0)
    reason: str = Field(min_length=1)
    on: date


# ── Savings & time deposits ──────────────────────────

class SavingsAccountCreate(BaseModel):
    party_id: int
    opened_on: date
    minimum_balance: int = Field(0, ge=0)
    annual_interest_rate: Decimal = Field(Decimal("0"), ge=0)
    initial_deposit: int = Field(0, ge=0)


class SavingsAccountResponse(BaseModel):
    id: int
    party_id: int
    account_number: str
    annual_interest_rate: Decimal
    current_balance: int
    minimum_balance: int
    status: AccountStatus
    opened_date: date
    closed_date: Optional[date] = None

    model_config = {"from_attributes": True}


class AmountRequest(BaseModel):
    amount: int = Field(gt=0)
    on: date
    reference: Optional[str] = None


class DateRequest(BaseModel):
    on: date


class SavingsTransactionResponse(BaseModel):
    id: int
    transaction_type: SavingsTransactionType
    amount: int
    balance_after: int
    transaction_date: date
    reference_number: Optional[str] = None

    model_config = {"from_attributes": True}


class TimeDepositCreate(BaseModel):
    party_id: int
    principal: int = Field(gt=0)
    annual_rate: Decimal = Field(ge=0)
    term_months: int = Field(gt=0, le=120)
    placement_date: date
    interest_method: InterestMethod = InterestMethod.SIMPLE_ON_MATURITY
    payment_frequency: Optional[PaymentFrequency] = None
    early_withdrawal_penalty_rate: Optional[Decimal] = Field(None, ge=0, le=1)
    minimum_balance: int = Field(0, ge=0)


class TimeDepositResponse(BaseModel):
    id: int
    party_id: int
    account_number: str
    principal: int
    annual_rate: Decimal
    term_months: int
    placement_date: date
    maturity_date: date
    interest_method: InterestMethod
    payment_frequency: Optional[PaymentFrequency] = None
    current_balance: int
    interest_earned: int
    penalty_amount: int
    payout_amount: Optional[int] = None
    status: TimeDepositStatus

    model_config = {"from_attributes": True}


class InterestPeriodResponse(BaseModel):
    period_number: int
    start_date: date
    end_date: date
    interest: int

    model_config = {"from_attributes": True}


class TimeDepositTransactionResponse(BaseModel):
    id: int
    transaction_type: TimeDepositTransactionType
    period_number: Optional[int] = None
    amount: int
    balance_after: int
    transaction_date: date

    model_config = {"from_attributes": True}


# ── Share capital ────────────────────────────────────

class ShareAccountCreate(BaseModel):
    party_id: int
    subscribed_shares: int = Field(gt=0)
    par_value_per_share: int = Field(gt=0)
    opened_on: date


class ShareAccountResponse(BaseModel):
    id: int
    party_id: int
    account_number: str
    subscribed_shares: int
    par_value_per_share: int
    total_subscribed_amount: int
    total_paid_up_amount: int
    certified_shares: int
    eligible_shares: int
    status: AccountStatus

    model_config = {"from_attributes": True}


class SharePaymentResponse(BaseModel):
    id: int
    amount: int
    paid_up_after: int
    payment_date: date
    is_reversed: bool = False
    reversed_date: Optional[date] = None

    model_config = {"from_attributes": True}


class CertificateRequest(BaseModel):
    on: date
    shares: Optional[int] = Field(None, gt=0)


class CertificateCancelRequest(BaseModel):
    on: date
    reason: str = Field(min_length=1)


class CertificateResponse(BaseModel):
    id: int
    certificate_number: str
    shares: int
    amount: int
    issued_date: date
    is_cancelled: bool = False
    cancelled_date: Optional[date] = None
    cancellation_reason: Optional[str] = None

    model_config = {"from_attributes": True}


# ── Patronage refunds ────────────────────────────────

class PatronageBatchCreate(BaseModel):
    period_label: str = Field(min_length=1, max_length=50)
    period_from: date
    period_to: date
    method: RefundMethod = RefundMethod.RATE_BASED
    rate: Decimal = Field(Decimal("0"), ge=0, lt=1)
    pool: int = Field(0, ge=0)
    notes: Optional[str] = None


class PatronageComputeRequest(BaseModel):
    purchases: Optional[dict[int, int]] = None


class PatronageApproveRequest(BaseModel):
    on: date
    notes: Optional[str] = None


class PatronageBatchResponse(BaseModel):
    id: int
    period_label: str
    period_from: date
    period_to: date
    method: RefundMethod
    rate: Decimal
    pool: int
    total_member_purchases: int
    total_allocated: int
    total_distributed: int
    member_count: int
    status: BatchStatus
    approved_date: Optional[date] = None
    notes: Optional[str] = None

    model_config = {"from_attributes": True}


class PatronageAllocationResponse(BaseModel):
    id: int
    batch_id: int
    party_id: int
    member_purchases: int
    allocation_percentage: Decimal
    allocation_amount: int
    status: RefundAllocationStatus
    payment_method: Optional[str] = None
    reference_number: Optional[str] = None
    paid_date: Optional[date] = None

    model_config = {"from_attributes": True}


class PatronageDistributionRequest(BaseModel):
    on: date
    method: str = "cash"
    reference: Optional[str] = None
    notes: Optional[str] = None


class PatronageForfeitRequest(BaseModel):
    notes: Optional[str] = None


class PatronageSummaryResponse(BaseModel):
    batch: PatronageBatchResponse
    allocations: list[PatronageAllocationResponse]
    pending_count: int
    forfeited_amount: int

    model_config = {"from_attributes": True}
