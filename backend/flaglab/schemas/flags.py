"""Feature flag request/response schemas."""
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from uuid import UUID

from flaglab.models.evaluation import ContextType
from flaglab.models.feature_flag import FlagStatus, FlagValueType, RolloutStrategy


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class FlagCreateRequest(BaseModel):
    """Request to create a feature flag (created in draft status)."""

    key: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.\-]+$")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    value_type: FlagValueType = FlagValueType.BOOLEAN
    default_value: Any = None
    rollout_strategy: RolloutStrategy = RolloutStrategy.IMMEDIATE
    rollout_config: Dict[str, Any] = Field(default_factory=dict)
    targeting_rules: Optional[Dict[str, Any]] = None
    variants: Optional[Dict[str, Any]] = None
    experiment_id: Optional[UUID] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator('start_date', 'end_date')
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_utc(v)

    class Config:
        json_schema_extra = {
            "example": {
                "key": "dark-mode",
                "name": "Dark mode",
                "value_type": "boolean",
                "default_value": False,
                "rollout_strategy": "percentage",
                "rollout_config": {"percentage": 25},
                "targeting_rules": {"subjects": ["user_1"], "variant": "beta"},
                "variants": {"beta": True}
            }
        }


class FlagUpdateRequest(BaseModel):
    """Partial update of a flag definition."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    value_type: Optional[FlagValueType] = None
    default_value: Any = None
    rollout_strategy: Optional[RolloutStrategy] = None
    rollout_config: Optional[Dict[str, Any]] = None
    targeting_rules: Optional[Dict[str, Any]] = None
    variants: Optional[Dict[str, Any]] = None
    experiment_id: Optional[UUID] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator('start_date', 'end_date')
    @classmethod
    def normalize_dates(cls, v):
        return to_naive_utc(v)


class FlagResponse(BaseModel):
    """Feature flag definition."""

    id: UUID
    tenant_id: str
    key: str
    name: str
    description: Optional[str] = None
    value_type: FlagValueType
    status: FlagStatus
    rollout_strategy: RolloutStrategy
    default_value: Any = None
    rollout_config: Dict[str, Any]
    targeting_rules: Optional[Dict[str, Any]] = None
    variants: Optional[Dict[str, Any]] = None
    experiment_id: Optional[UUID] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    evaluation_count: int
    positive_evaluation_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class EvaluationRequest(BaseModel):
    """Request to evaluate one flag for one context."""

    flag_key: str = Field(..., min_length=1, max_length=100)
    context_type: ContextType = ContextType.USER
    context_id: str = Field(..., min_length=1, max_length=255)
    context_data: Optional[Dict[str, Any]] = None
    fallback_value: Any = None

    class Config:
        json_schema_extra = {
            "example": {
                "flag_key": "dark-mode",
                "context_type": "user",
                "context_id": "user_123",
                "context_data": {"plan": "pro"}
            }
        }


class BulkEvaluationRequest(BaseModel):
    """Several independent evaluations in one call."""

    requests: List[EvaluationRequest] = Field(..., min_length=1, max_length=100)


class EvaluationResponse(BaseModel):
    """Resolved flag value."""

    flag_key: str
    value: Any = None
    variant: Optional[str] = None
    is_targeted: bool
    rollout_percentage: float
    evaluation_context: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "flag_key": "dark-mode",
                "value": True,
                "variant": None,
                "is_targeted": False,
                "rollout_percentage": 25.0,
                "evaluation_context": {"plan": "pro"}
            }
        }


class BulkEvaluationResponse(BaseModel):
    """Evaluation results keyed by flag key."""

    results: Dict[str, EvaluationResponse]
