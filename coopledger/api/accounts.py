"""Savings, time-deposit and share capital endpoints."""

import logging
from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.schemas import (
    AmountRequest,
    CertificateCancelRequest,
    CertificateRequest,
    CertificateResponse,
    DateRequest,
    InterestPeriodResponse,
    SavingsAccountCreate,
    SavingsAccountResponse,
    SavingsTransactionResponse,
    ShareAccountCreate,
    ShareAccountResponse,
    SharePaymentResponse,
    TimeDepositCreate,
    TimeDepositResponse,
    TimeDepositTransactionResponse,
)
from coopledger.services import savings_service, share_service
from coopledger.tenancy import get_tenant_id

logger = logging.getLogger(__name__)
router = APIRouter()


# ===================================================================
# Savings
# ===================================================================

@router.post("/savings", response_model=SavingsAccountResponse, status_code=201)
async def open_savings_account(
    data: SavingsAccountCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    fields = data.model_dump()
    party_id = fields.pop("party_id")
    return await savings_service.open_savings_account(db, tenant_id, party_id, **fields)


@router.post("/savings/{account_id}/deposits", response_model=SavingsTransactionResponse, status_code=201)
async def deposit(
    account_id: int,
    data: AmountRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await savings_service.deposit(
        db, tenant_id, account_id, data.amount, on=data.on, reference=data.reference
    )


@router.post("/savings/{account_id}/withdrawals", response_model=SavingsTransactionResponse, status_code=201)
async def withdraw(
    account_id: int,
    data: AmountRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await savings_service.withdraw(
        db, tenant_id, account_id, data.amount, on=data.on, reference=data.reference
    )


@router.post("/savings/{account_id}/interest")
async def credit_interest(
    account_id: int,
    data: DateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    txn = await savings_service.credit_interest(db, tenant_id, account_id, on=data.on)
    if txn is None:
        return {"credited": 0}
    return {"credited": txn.amount, "balance_after": txn.balance_after}


@router.post("/savings/{account_id}/close")
async def close_savings_account(
    account_id: int,
    data: DateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    txn = await savings_service.close_savings_account(db, tenant_id, account_id, on=data.on)
    return {"account_id": account_id, "payout": -txn.amount if txn else 0}


@router.get("/savings/{account_id}/statement")
async def savings_statement(
    account_id: int,
    date_from: date,
    date_to: date,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    stmt = await savings_service.savings_statement(db, tenant_id, account_id, date_from, date_to)
    return {
        "account_id": stmt.account_id,
        "date_from": stmt.date_from,
        "date_to": stmt.date_to,
        "opening_balance": stmt.opening_balance,
        "transactions": [
            SavingsTransactionResponse.model_validate(t).model_dump() for t in stmt.transactions
        ],
        "total_deposits": stmt.total_deposits,
        "total_withdrawals": stmt.total_withdrawals,
        "total_interest": stmt.total_interest,
        "closing_balance": stmt.closing_balance,
    }


# ===================================================================
# Time deposits
# ===================================================================

@router.post("/time-deposits", response_model=TimeDepositResponse, status_code=201)
async def place_time_deposit(
    data: TimeDepositCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    fields = data.model_dump()
    party_id = fields.pop("party_id")
    return await savings_service.place_time_deposit(db, tenant_id, party_id, **fields)


@router.get("/time-deposits/{deposit_id}/schedule", response_model=list[InterestPeriodResponse])
async def time_deposit_schedule(
    deposit_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    periods = await savings_service.time_deposit_interest_schedule(db, tenant_id, deposit_id)
    return [InterestPeriodResponse.model_validate(p) for p in periods]


@router.post("/time-deposits/{deposit_id}/accrue", response_model=list[TimeDepositTransactionResponse])
async def accrue_interest(
    deposit_id: int,
    data: DateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await savings_service.accrue_time_deposit_interest(
        db, tenant_id, deposit_id, as_of=data.on
    )


@router.post("/time-deposits/{deposit_id}/mature", response_model=TimeDepositTransactionResponse)
async def mature_time_deposit(
    deposit_id: int,
    data: DateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await savings_service.mature_time_deposit(db, tenant_id, deposit_id, on=data.on)


@router.post("/time-deposits/{deposit_id}/pre-terminate")
async def pre_terminate_time_deposit(
    deposit_id: int,
    data: DateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    result = await savings_service.pre_terminate_time_deposit(
        db, tenant_id, deposit_id, on=data.on
    )
    return {
        "deposit": TimeDepositResponse.model_validate(result.deposit).model_dump(),
        "days_held": result.terms.days_held,
        "accrued_interest": result.terms.accrued_interest,
        "penalty": result.terms.penalty,
        "payout": result.terms.payout,
    }


# ===================================================================
# Share capital
# ===================================================================

@router.post("/shares", response_model=ShareAccountResponse, status_code=201)
async def open_share_account(
    data: ShareAccountCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    fields = data.model_dump()
    party_id = fields.pop("party_id")
    return await share_service.open_share_account(db, tenant_id, party_id, **fields)


@router.post("/shares/{account_id}/payments", response_model=SharePaymentResponse, status_code=201)
async def record_share_payment(
    account_id: int,
    data: AmountRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await share_service.record_share_payment(
        db, tenant_id, account_id, data.amount, on=data.on, reference=data.reference
    )


@router.post("/shares/{account_id}/certificates", response_model=CertificateResponse, status_code=201)
async def issue_certificate(
    account_id: int,
    data: CertificateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await share_service.issue_certificate(
        db, tenant_id, account_id, shares=data.shares, on=data.on
    )


@router.get("/shares/{account_id}/certificates", response_model=list[CertificateResponse])
async def list_certificates(
    account_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await share_service.share_certificates(db, tenant_id, account_id)


@router.post("/shares/payments/{payment_id}/reverse", response_model=SharePaymentResponse)
async def reverse_share_payment(
    payment_id: int,
    data: DateRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await share_service.reverse_share_payment(db, tenant_id, payment_id, on=data.on)


@router.post("/shares/certificates/{certificate_id}/cancel", response_model=CertificateResponse)
async def cancel_certificate(
    certificate_id: int,
    data: CertificateCancelRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await share_service.cancel_certificate(
        db, tenant_id, certificate_id, on=data.on, reason=data.reason
    )
