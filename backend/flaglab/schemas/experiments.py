"""Experiment request/response schemas."""
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime
from uuid import UUID

from flaglab.models.experiment import ExperimentStatus
from flaglab.models.participant import ParticipantStatus
from flaglab.schemas.flags import to_naive_utc


class ExperimentCreateRequest(BaseModel):
    """Request to create an experiment (created in draft status)."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    variants: Dict[str, Any] = Field(..., min_length=1, description="Variant name -> payload; must include control")
    traffic_allocation: Optional[Dict[str, float]] = Field(None, description="Variant name -> percentage; equal split if omitted")
    targeting_rules: Optional[Dict[str, Any]] = None
    success_metrics: Optional[Dict[str, Any]] = None
    significance_level: float = Field(0.05, gt=0, lt=1)
    minimum_sample_size: Optional[int] = Field(None, ge=1)
    maximum_duration_days: Optional[int] = Field(None, ge=1)
    auto_stop_on_significance: bool = False
    auto_apply_winner: bool = False

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Checkout button copy",
                "variants": {"control": {"label": "Buy"}, "treatment": {"label": "Buy now"}},
                "traffic_allocation": {"control": 50, "treatment": 50},
                "auto_stop_on_significance": True
            }
        }


class ExperimentResponse(BaseModel):
    """Experiment definition and latest results snapshot."""

    id: UUID
    tenant_id: str
    name: str
    description: Optional[str] = None
    status: ExperimentStatus
    variants: Dict[str, Any]
    variant_order: List[str]
    traffic_allocation: Dict[str, float]
    targeting_rules: Optional[Dict[str, Any]] = None
    success_metrics: Optional[Dict[str, Any]] = None
    significance_level: float
    minimum_sample_size: Optional[int] = None
    maximum_duration_days: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    planned_end_date: Optional[datetime] = None
    auto_stop_on_significance: bool
    auto_apply_winner: bool
    results: Dict[str, Any]
    created_at: datetime

    class Config:
        from_attributes = True


class AssignmentRequest(BaseModel):
    """Request to assign a subject to an experiment variant."""

    subject_id: str = Field(..., min_length=1, max_length=255)
    session_id: Optional[str] = Field(None, max_length=255)
    device_id: Optional[str] = Field(None, max_length=255)
    user_attributes: Optional[Dict[str, Any]] = None
    device_info: Optional[Dict[str, Any]] = None


class ParticipantResponse(BaseModel):
    """Participant row."""

    id: UUID
    experiment_id: UUID
    subject_id: str
    variant: str
    status: ParticipantStatus
    assigned_at: datetime
    converted_at: Optional[datetime] = None
    conversion_data: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class ConversionRequest(BaseModel):
    """Conversion event for a subject."""

    subject_id: str = Field(..., min_length=1, max_length=255)
    event_data: Optional[Dict[str, Any]] = None
    timestamp: Optional[datetime] = None

    @field_validator('timestamp')
    @classmethod
    def normalize_timestamp(cls, v):
        return to_naive_utc(v)


class ConversionResponse(BaseModel):
    """Outcome of a conversion event."""

    status: str = Field(..., description="recorded, or ignored when the subject never joined")
    participant: Optional[ParticipantResponse] = None


class ParticipantStatsResponse(BaseModel):
    """Participant counts by status and variant."""

    total: int
    active: int
    converted: int
    dropped: int
    by_variant: Dict[str, int]
