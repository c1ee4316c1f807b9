"""Experiment lifecycle, assignment and results endpoints."""
from fastapi import APIRouter, Depends, Query
from typing import Any, Dict, List, Optional
from uuid import UUID

from flaglab.api.dependencies import get_experiment_manager, get_tenant_id
from flaglab.models.experiment import ExperimentStatus
from flaglab.schemas.experiments import (
    ExperimentCreateRequest,
    ExperimentResponse,
    AssignmentRequest,
    ParticipantResponse,
    ConversionRequest,
    ConversionResponse,
    ParticipantStatsResponse,
)
from flaglab.services.assignment import SessionInfo
from flaglab.services.experiments import ExperimentManager

router = APIRouter()


@router.post("/experiments", response_model=ExperimentResponse, status_code=201)
def create_experiment(
    request: ExperimentCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    """Create an experiment in draft status after validating variants and traffic."""
    return manager.create_experiment(tenant_id, **request.model_dump())


@router.get("/experiments", response_model=List[ExperimentResponse])
def list_experiments(
    status: Optional[ExperimentStatus] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.list_experiments(tenant_id, status)


@router.get("/experiments/{experiment_id}", response_model=ExperimentResponse)
def get_experiment(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.get_experiment(tenant_id, experiment_id)


@router.post("/experiments/{experiment_id}/start", response_model=ExperimentResponse)
def start_experiment(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.start_experiment(tenant_id, experiment_id)


@router.post("/experiments/{experiment_id}/stop", response_model=ExperimentResponse)
def stop_experiment(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    """Complete the experiment and freeze its results."""
    return manager.stop_experiment(tenant_id, experiment_id)


@router.post("/experiments/{experiment_id}/pause", response_model=ExperimentResponse)
def pause_experiment(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.pause_experiment(tenant_id, experiment_id)


@router.post("/experiments/{experiment_id}/resume", response_model=ExperimentResponse)
def resume_experiment(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.resume_experiment(tenant_id, experiment_id)


@router.post("/experiments/{experiment_id}/cancel", response_model=ExperimentResponse)
def cancel_experiment(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.cancel_experiment(tenant_id, experiment_id)


@router.post("/experiments/{experiment_id}/assign", response_model=ParticipantResponse)
def assign_participant(
    experiment_id: UUID,
    request: AssignmentRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    """
    Assign a subject to a variant.

    - Returns the existing assignment unchanged on repeated calls
    - 409 if the experiment is not running, 403 if targeting excludes the subject
    """
    manager.get_experiment(tenant_id, experiment_id)
    return manager.assign_participant(
        experiment_id,
        request.subject_id,
        SessionInfo(
            session_id=request.session_id,
            device_id=request.device_id,
            user_attributes=request.user_attributes,
            device_info=request.device_info
        )
    )


@router.post("/experiments/{experiment_id}/convert", response_model=ConversionResponse)
def track_conversion(
    experiment_id: UUID,
    request: ConversionRequest,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    """Record a conversion; repeated conversions leave the first one in place."""
    manager.get_experiment(tenant_id, experiment_id)
    participant = manager.track_conversion(
        experiment_id,
        request.subject_id,
        event_data=request.event_data,
        at=request.timestamp
    )
    if participant is None:
        return ConversionResponse(status="ignored")
    return ConversionResponse(
        status="recorded",
        participant=ParticipantResponse.model_validate(participant)
    )


@router.get("/experiments/{experiment_id}/results")
def get_experiment_results(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
) -> Dict[str, Any]:
    """Per-variant conversion rates, confidence intervals, winner and significance."""
    return manager.get_experiment_results(tenant_id, experiment_id)


@router.get("/experiments/{experiment_id}/participants/stats", response_model=ParticipantStatsResponse)
def get_participant_stats(
    experiment_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    manager: ExperimentManager = Depends(get_experiment_manager)
):
    return manager.get_participant_stats(tenant_id, experiment_id)
