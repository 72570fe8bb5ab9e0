"""Patronage refund batch endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from coopledger.database import get_db
from coopledger.schemas import (
    PatronageAllocationResponse,
    PatronageApproveRequest,
    PatronageBatchCreate,
    PatronageBatchResponse,
    PatronageComputeRequest,
    PatronageDistributionRequest,
    PatronageForfeitRequest,
    PatronageSummaryResponse,
)
from coopledger.services import patronage_service
from coopledger.tenancy import get_tenant_id

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/batches", response_model=PatronageBatchResponse, status_code=201)
async def create_batch(
    data: PatronageBatchCreate,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await patronage_service.create_batch(db, tenant_id, **data.model_dump())


@router.get("/batches/{batch_id}", response_model=PatronageSummaryResponse)
async def batch_summary(
    batch_id: int,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    summary = await patronage_service.batch_summary(db, tenant_id, batch_id)
    return PatronageSummaryResponse.model_validate(summary)


@router.post("/batches/{batch_id}/compute", response_model=list[PatronageAllocationResponse])
async def compute_batch(
    batch_id: int,
    data: PatronageComputeRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await patronage_service.compute_batch(
        db, tenant_id, batch_id, purchases=data.purchases
    )


@router.post("/batches/{batch_id}/approve", response_model=PatronageBatchResponse)
async def approve_batch(
    batch_id: int,
    data: PatronageApproveRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await patronage_service.approve_batch(
        db, tenant_id, batch_id, on=data.on, notes=data.notes
    )


@router.post("/allocations/{allocation_id}/distribute", response_model=PatronageAllocationResponse)
async def record_distribution(
    allocation_id: int,
    data: PatronageDistributionRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await patronage_service.record_distribution(
        db, tenant_id, allocation_id,
        on=data.on, method=data.method, reference=data.reference, notes=data.notes,
    )


@router.post("/allocations/{allocation_id}/forfeit", response_model=PatronageAllocationResponse)
async def forfeit_allocation(
    allocation_id: int,
    data: PatronageForfeitRequest,
    db: AsyncSession = Depends(get_db),
    tenant_id: int = Depends(get_tenant_id),
):
    return await patronage_service.forfeit_allocation(
        db, tenant_id, allocation_id, notes=data.notes
    )
