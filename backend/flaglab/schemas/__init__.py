"""Pydantic schemas for request/response validation."""
from flaglab.schemas.flags import (
    FlagCreateRequest,
    FlagUpdateRequest,
    FlagResponse,
    EvaluationRequest,
    BulkEvaluationRequest,
    EvaluationResponse,
    BulkEvaluationResponse,
)
from flaglab.schemas.experiments import (
    ExperimentCreateRequest,
    ExperimentResponse,
    AssignmentRequest,
    ParticipantResponse,
    ConversionRequest,
    ConversionResponse,
    ParticipantStatsResponse,
)

__all__ = [
    "FlagCreateRequest",
    "FlagUpdateRequest",
    "FlagResponse",
    "EvaluationRequest",
    "BulkEvaluationRequest",
    "EvaluationResponse",
    "BulkEvaluationResponse",
    "ExperimentCreateRequest",
    "ExperimentResponse",
    "AssignmentRequest",
    "ParticipantResponse",
    "ConversionRequest",
    "ConversionResponse",
    "ParticipantStatsResponse",
]
