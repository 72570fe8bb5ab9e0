"""Tenant scoping for API requests."""

from fastapi import Header, HTTPException, status


async def get_tenant_id(x_tenant_id: int | None = Header(None)) -> int:
    """Every ledger request is scoped to the tenant in ``X-Tenant-ID``."""
    if x_tenant_id is None or x_tenant_id <= 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    return x_tenant_id
