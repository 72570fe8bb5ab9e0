"""Member loan endpoints."""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.schemas import (
    AgingResponse,
    AmortizationEntryResponse,
    DisbursementRequest,
    LoanApplicationCreate,
    LoanDecisionRequest,
    LoanPaymentCreate,
    LoanPaymentLineResponse,
    LoanPaymentRecord,
    LoanPaymentResponse,
    LoanPaymentReversalRequest,
    LoanResponse,
    LoanTermsIn,
    PenaltyComputeRequest,
    PenaltyResponse,
    PenaltyWaiverRequest,
    ScheduleEntryResponse,
)
from coopledger.services import aging, loan_service
from coopledger.services.schedules import LoanTerms, generate_loan_schedule
from coopledger.tenancy import get_tenant_id

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/schedule-preview", response_model=list[ScheduleEntryResponse])
async def preview_schedule(data: LoanTermsIn):
    """Amortization table for the given terms; nothing is stored."""
    schedule = generate_loan_schedule(LoanTerms(**data.model_dump()))
    return [ScheduleEntryResponse.model_validate(row) for row in schedule]


@router.post("", response_model=LoanResponse, status_code=201)
async def apply_for_loan(
    data: LoanApplicationCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    fields = data.model_dump()
    party_id = fields.pop("party_id")
    return await loan_service.apply_for_loan(db, tenant_id, party_id, **fields)


@router.get("/aging", response_model=AgingResponse)
async def loan_aging(
    reference_date: date,
    loan_ids: Optional[list[int]] = Query(None),
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    report = await aging.loan_aging_report(db, tenant_id, reference_date, loan_ids)
    return AgingResponse.from_report(report)


@router.get("/{loan_id}", response_model=LoanResponse)
async def get_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.get_loan(db, tenant_id, loan_id)


@router.post("/{loan_id}/approve", response_model=LoanResponse)
async def approve_loan(
    loan_id: int,
    data: LoanDecisionRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.approve_loan(db, tenant_id, loan_id, on=data.on)


@router.post("/{loan_id}/reject", response_model=LoanResponse)
async def reject_loan(
    loan_id: int,
    data: LoanDecisionRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    if not data.reason:
        raise HTTPException(status_code=422, detail="A rejection reason is required")
    return await loan_service.reject_loan(db, tenant_id, loan_id, reason=data.reason, on=data.on)


@router.post("/{loan_id}/disburse", response_model=list[AmortizationEntryResponse])
async def disburse_loan(
    loan_id: int,
    data: DisbursementRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.disburse_loan(
        db, tenant_id, loan_id, on=data.on, first_payment_date=data.first_payment_date
    )


@router.get("/{loan_id}/schedule", response_model=list[AmortizationEntryResponse])
async def loan_schedule(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.loan_schedule(db, tenant_id, loan_id)


@router.post("/{loan_id}/payments", response_model=LoanPaymentResponse, status_code=201)
async def apply_loan_payment(
    loan_id: int,
    data: LoanPaymentCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    result = await loan_service.apply_loan_payment(
        db, tenant_id, loan_id, data.amount,
        payment_date=data.payment_date, method=data.method, reference=data.reference,
    )
    loan = await loan_service.get_loan(db, tenant_id, loan_id)
    return LoanPaymentResponse(
        payment_id=result.payment.id,
        amount=result.payment.amount,
        penalty_paid=result.penalty_paid,
        interest_paid=result.interest_paid,
        principal_paid=result.principal_paid,
        balance_after=result.payment.balance_after,
        loan_status=loan.status,
        lines=[LoanPaymentLineResponse.model_validate(line) for line in result.lines],
    )


@router.post("/{loan_id}/penalties", response_model=list[PenaltyResponse])
async def compute_penalties(
    loan_id: int,
    data: PenaltyComputeRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.compute_penalties(
        db, tenant_id, loan_id, as_of=data.as_of, rate=data.rate
    )


@router.post("/penalties/{penalty_id}/waive", response_model=PenaltyResponse)
async def waive_penalty(
    penalty_id: int,
    data: PenaltyWaiverRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.waive_penalty(
        db, tenant_id, penalty_id, data.waived_amount, reason=data.reason, on=data.on
    )


@router.post("/{loan_id}/default", response_model=LoanResponse)
async def mark_defaulted(
    loan_id: int,
    data: LoanDecisionRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    if not data.reason:
        raise HTTPException(status_code=422, detail="A default reason is required")
    return await loan_service.mark_defaulted(db, tenant_id, loan_id, reason=data.reason, on=data.on)


@router.post("/payments/{payment_id}/reverse", response_model=LoanPaymentRecord)
async def reverse_loan_payment(
    payment_id: int,
    data: LoanPaymentReversalRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await loan_service.reverse_loan_payment(
        db, tenant_id, payment_id, on=data.on, reason=data.reason
    )
