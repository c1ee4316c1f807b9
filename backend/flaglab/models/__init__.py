"""Database models."""
from flaglab.models.feature_flag import FeatureFlag, FlagValueType, FlagStatus, RolloutStrategy
from flaglab.models.evaluation import FeatureFlagEvaluation, ContextType
from flaglab.models.experiment import Experiment, ExperimentStatus
from flaglab.models.participant import Participant, ParticipantStatus

__all__ = [
    "FeatureFlag",
    "FlagValueType",
    "FlagStatus",
    "RolloutStrategy",
    "FeatureFlagEvaluation",
    "ContextType",
    "Experiment",
    "ExperimentStatus",
    "Participant",
    "ParticipantStatus",
]
