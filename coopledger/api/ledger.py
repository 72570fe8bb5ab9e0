"""Receivable / payable ledger endpoints.

Parties, obligations, payments with allocation, reversals, statements and
aging.  Ledger errors propagate to the application-level handlers.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.models.ledger import OriginType
from coopledger.models.party import Party, PartySide, CustomerWallet
from coopledger.schemas import (
    AgingResponse,
    AllocationResponse,
    CreditAvailabilityResponse,
    ObligationCreate,
    OpeningBalanceResponse,
    PartyCreate,
    PartyResponse,
    PaymentCreate,
    PaymentResponse,
    PostingResponse,
    ReversalRequest,
    SaleChargeRequest,
    SaleChargeResponse,
    StatementResponse,
    WalletCreate,
    WalletPaymentRequest,
    WalletResponse,
)
from coopledger.services import aging, ledger_store
from coopledger.services.guards import PurchaseLine
from coopledger.services.sequences import next_document_number
from coopledger.tenancy import get_tenant_id

logger = logging.getLogger(__name__)
router = APIRouter()


# ===================================================================
# Parties & wallets
# ===================================================================

@router.post("/parties", response_model=PartyResponse, status_code=201)
async def create_party(
    data: PartyCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    party = Party(tenant_id=tenant_id, outstanding_total=0, **data.model_dump())
    db.add(party)
    try:
        await db.flush()
    except IntegrityError:
        raise HTTPException(status_code=409, detail=f"Party code {data.code} already exists")
    logger.info("Created %s party %s", data.side.value, data.code)
    return party


@router.get("/parties/{party_id}", response_model=PartyResponse)
async def get_party(
    party_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await ledger_store.get_party(db, tenant_id, party_id)


@router.post("/parties/{party_id}/wallets", response_model=WalletResponse, status_code=201)
async def create_wallet(
    party_id: int,
    data: WalletCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    party = await ledger_store.get_party(db, tenant_id, party_id)
    if party.side != PartySide.RECEIVABLE:
        raise HTTPException(status_code=422, detail="Wallets belong to customers only")
    wallet = CustomerWallet(party_id=party.id, is_active=True, **data.model_dump())
    db.add(wallet)
    await db.flush()
    return wallet


@router.post("/wallets/{wallet_id}/payments", response_model=PostingResponse, status_code=201)
async def pay_with_wallet(
    wallet_id: int,
    data: WalletPaymentRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    lines = [PurchaseLine(**line.model_dump()) for line in data.lines]
    return await ledger_store.pay_with_wallet(
        db, tenant_id, wallet_id, lines,
        on=data.on, reference=data.reference, amount=data.amount,
    )


# ===================================================================
# Postings
# ===================================================================

@router.post("/obligations", response_model=PostingResponse, status_code=201)
async def post_obligation(
    data: ObligationCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    reference = data.origin_reference
    if reference is None and data.origin_type == OriginType.PURCHASE_ORDER:
        reference = await next_document_number(db, tenant_id, "PO", data.transaction_date)
    return await ledger_store.post_obligation(
        db, tenant_id, data.party_id, data.amount,
        transaction_date=data.transaction_date,
        due_date=data.due_date,
        terms_days=data.terms_days,
        origin_type=data.origin_type,
        origin_reference=reference,
        description=data.description,
        enforce_credit_limit=data.enforce_credit_limit,
    )


@router.post("/sales", response_model=SaleChargeResponse, status_code=201)
async def charge_sale(
    data: SaleChargeRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    reference = data.sale_reference or await next_document_number(db, tenant_id, "SALE", data.on)
    posting, change = await ledger_store.charge_sale(
        db, tenant_id, data.party_id,
        sale_total=data.sale_total,
        tendered=data.tendered,
        credit_amount=data.credit_amount,
        on=data.on,
        sale_reference=reference,
    )
    return SaleChargeResponse(
        sale_reference=reference,
        obligation=PostingResponse.model_validate(posting) if posting else None,
        change_due=change,
    )


@router.post("/payments", response_model=PaymentResponse, status_code=201)
async def record_payment(
    data: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    targets = [(t.obligation_id, t.amount) for t in data.targets] if data.targets else None
    result = await ledger_store.record_payment(
        db, tenant_id, data.party_id, data.amount,
        payment_date=data.payment_date,
        method=data.method,
        reference=data.reference,
        targets=targets,
    )
    return PaymentResponse(
        payment=PostingResponse.model_validate(result.payment),
        allocations=[AllocationResponse.model_validate(a) for a in result.allocations],
    )


@router.post("/obligations/{obligation_id}/reverse", response_model=PostingResponse)
async def reverse_obligation(
    obligation_id: int,
    data: ReversalRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await ledger_store.reverse_obligation(
        db, tenant_id, obligation_id, on=data.on, reason=data.reason
    )


# ===================================================================
# Reads
# ===================================================================

@router.get("/parties/{party_id}/opening-balance", response_model=OpeningBalanceResponse)
async def opening_balance(
    party_id: int,
    before: date,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    balance = await ledger_store.opening_balance(db, tenant_id, party_id, before)
    return OpeningBalanceResponse(party_id=party_id, before=before, balance=balance)


@router.get("/parties/{party_id}/statement", response_model=StatementResponse)
async def party_statement(
    party_id: int,
    date_from: date,
    date_to: date,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    statement = await ledger_store.party_statement(db, tenant_id, party_id, date_from, date_to)
    return StatementResponse.model_validate(statement)


@router.get("/parties/{party_id}/credit-availability", response_model=CreditAvailabilityResponse)
async def credit_availability(
    party_id: int,
    amount: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    availability = await ledger_store.credit_availability(db, tenant_id, party_id, amount)
    return CreditAvailabilityResponse.model_validate(availability)


@router.post("/parties/{party_id}/recompute")
async def recompute_outstanding(
    party_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    total = await ledger_store.recompute_outstanding(db, tenant_id, party_id)
    return {"party_id": party_id, "outstanding_total": total}


@router.get("/aging", response_model=AgingResponse)
async def aging_report(
    side: PartySide,
    reference_date: date,
    party_ids: Optional[list[int]] = Query(None),
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    report = await aging.aging_report(db, tenant_id, side, reference_date, party_ids)
    return AgingResponse.from_report(report)
