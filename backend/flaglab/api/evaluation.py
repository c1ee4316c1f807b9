"""Flag evaluation and cache endpoints."""
from fastapi import APIRouter, Depends

from flaglab.api.dependencies import get_flag_service, get_tenant_id
from flaglab.schemas.flags import (
    EvaluationRequest, EvaluationResponse, BulkEvaluationRequest, BulkEvaluationResponse
)
from flaglab.services.feature_flags import FeatureFlagService, FlagEvaluationRequest

router = APIRouter()


@router.post("/evaluate", response_model=EvaluationResponse)
def evaluate_flag(
    request: EvaluationRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """
    Evaluate one flag for one context.

    Always answers: unknown flags and store failures resolve to the
    fallback (or type default) value.
    """
    result = service.evaluate(
        tenant_id,
        request.flag_key,
        request.context_type,
        request.context_id,
        context_data=request.context_data,
        fallback_value=request.fallback_value
    )
    return EvaluationResponse(**result.to_dict())


@router.post("/evaluate/bulk", response_model=BulkEvaluationResponse)
def evaluate_flags(
    request: BulkEvaluationRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """Evaluate several flags; each evaluation is independent."""
    results = service.evaluate_many(
        tenant_id,
        [
            FlagEvaluationRequest(
                flag_key=item.flag_key,
                context_type=item.context_type,
                context_id=item.context_id,
                context_data=item.context_data,
                fallback_value=item.fallback_value
            )
            for item in request.requests
        ]
    )
    return BulkEvaluationResponse(
        results={key: EvaluationResponse(**result.to_dict()) for key, result in results.items()}
    )


@router.post("/cache/clear")
def clear_cache(service: FeatureFlagService = Depends(get_flag_service)):
    """Drop every cached evaluation."""
    service.clear_cache()
    return {"status": "success", "message": "Evaluation cache cleared"}


@router.post("/cache/clear-tenant")
def clear_tenant_cache(
    tenant_id: str = Depends(get_tenant_id),
    service: FeatureFlagService = Depends(get_flag_service)
):
    """Drop the calling tenant's cached evaluations."""
    service.clear_cache_for_tenant(tenant_id)
    return {"status": "success", "message": f"Evaluation cache cleared for tenant {tenant_id}"}
