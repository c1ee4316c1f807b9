"""Deterministic experiment variant assignment."""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from flaglab.exceptions import DefinitionNotFound, NotEligible, NotRunning, StoreUnavailable
from flaglab.models.experiment import Experiment, ExperimentStatus
from flaglab.models.participant import Participant, ParticipantStatus
from flaglab.services.hashing import bucket
from flaglab.services.stores import DefinitionStore, ParticipantExists, ParticipationStore
from flaglab.services.targeting import matches_subject_attributes

logger = structlog.get_logger()


@dataclass
class SessionInfo:
    """Optional subject details captured at assignment time."""

    session_id: Optional[str] = None
    device_id: Optional[str] = None
    user_attributes: Optional[Dict[str, Any]] = None
    device_info: Optional[Dict[str, Any]] = None


def select_variant(experiment: Experiment, subject_id: str) -> str:
    """
    Pick a variant by walking the cumulative traffic allocation.

    Uses consistent hashing so the same subject always lands in the same
    variant, and the stored definition order so the walk is identical on
    every runtime.

    Example:
        >>> # allocation {"control": 50, "treatment": 50}, bucket 73
        >>> select_variant(experiment, "user_123")
        'treatment'
    """
    order = experiment.ordered_variants
    allocation = experiment.traffic_allocation or {}
    hash_value = bucket(subject_id + str(experiment.id))

    cumulative = 0.0
    for variant in order:
        cumulative += float(allocation.get(variant, 0))
        if hash_value < cumulative:
            return variant

    # Only reachable through floating point rounding of the allocation
    return order[0]


class ParticipantAssigner:
    """Creates participant rows; a repeated request returns the existing row."""

    def __init__(self, definitions: DefinitionStore, participations: ParticipationStore):
        self.definitions = definitions
        self.participations = participations

    def assign(
        self,
        experiment_id,
        subject_id: str,
        session_info: Optional[SessionInfo] = None,
        now: Optional[datetime] = None
    ) -> Participant:
        """
        Assign a subject to an experiment variant.

        Raises:
            DefinitionNotFound: Experiment does not exist
            NotRunning: Experiment is not running
            NotEligible: Subject fails the experiment's targeting rules
            StoreUnavailable: Participation store failure
        """
        existing = self.participations.find_participant(experiment_id, subject_id)
        if existing:
            return existing

        experiment = self.definitions.get_experiment(experiment_id)
        if not experiment:
            raise DefinitionNotFound("Experiment", str(experiment_id))

        if experiment.status != ExperimentStatus.RUNNING:
            raise NotRunning(f"Experiment {experiment.id} is not running")

        session_info = session_info or SessionInfo()
        if experiment.targeting_rules and not matches_subject_attributes(
            experiment.targeting_rules, session_info.user_attributes, session_info.device_info
        ):
            raise NotEligible(f"Subject {subject_id} does not match targeting rules")

        participant = Participant(
            experiment_id=experiment.id,
            subject_id=subject_id,
            variant=select_variant(experiment, subject_id),
            status=ParticipantStatus.ACTIVE,
            assigned_at=now or datetime.utcnow(),
            session_id=session_info.session_id,
            device_id=session_info.device_id,
            user_attributes=session_info.user_attributes,
            device_info=session_info.device_info
        )

        try:
            participant = self.participations.create_participant(participant)
        except ParticipantExists:
            # Concurrent first assignment won the insert
            existing = self.participations.find_participant(experiment_id, subject_id)
            if existing is None:
                raise StoreUnavailable(f"Participant {subject_id} vanished after a duplicate insert")
            return existing

        logger.info(
            "participant_assigned",
            experiment_id=str(experiment.id),
            subject_id=subject_id,
            variant=participant.variant
        )
        return participant
