"""Feature flag management endpoints."""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional
from uuid import UUID

from flaglab.api.dependencies import get_flag_service, get_tenant_id
from flaglab.models.feature_flag import FlagStatus
from flaglab.schemas.flags import FlagCreateRequest, FlagUpdateRequest, FlagResponse
from flaglab.services.feature_flags import FeatureFlagService

router = APIRouter()


@router.post("/flags", response_model=FlagResponse, status_code=201)
def create_flag(
    request: FlagCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """Create a feature flag in draft status."""
    return service.create_flag(tenant_id, **request.model_dump())


@router.get("/flags", response_model=List[FlagResponse])
def list_flags(
    status: Optional[FlagStatus] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """List the tenant's flags, optionally filtered by status."""
    return service.list_flags(tenant_id, status)


@router.get("/flags/{flag_id}", response_model=FlagResponse)
def get_flag(
    flag_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    return service.get_flag(tenant_id, flag_id)


@router.patch("/flags/{flag_id}", response_model=FlagResponse)
def update_flag(
    flag_id: UUID,
    request: FlagUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """Update definition fields; only fields present in the body change."""
    return service.update_flag(tenant_id, flag_id, request.model_dump(exclude_unset=True))


@router.post("/flags/{flag_id}/activate", response_model=FlagResponse)
def activate_flag(
    flag_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    return service.activate_flag(tenant_id, flag_id)


@router.post("/flags/{flag_id}/deactivate", response_model=FlagResponse)
def deactivate_flag(
    flag_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    return service.deactivate_flag(tenant_id, flag_id)


@router.post("/flags/{flag_id}/archive", response_model=FlagResponse)
def archive_flag(
    flag_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    return service.archive_flag(tenant_id, flag_id)


@router.get("/flags/{flag_id}/analytics")
def get_flag_analytics(
    flag_id: UUID,
    days: int = Query(30, ge=1, le=365),
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """
    Evaluation analytics from the audit trail.

    Returns totals, positive and targeted rates, per-variant counts and
    daily evaluation counts for the last `days` days.
    """
    return service.get_flag_analytics(tenant_id, flag_id, days=days)
