"""Conversion tracking for experiment participants."""
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from flaglab.models.experiment import Experiment
from flaglab.models.participant import Participant, ParticipantStatus
from flaglab.services.stores import DefinitionStore, ParticipationStore

logger = structlog.get_logger()


class ConversionTracker:
    """Marks participants converted, once, and triggers the auto-stop check."""

    def __init__(
        self,
        definitions: DefinitionStore,
        participations: ParticipationStore,
        check_auto_stop: Callable[[Experiment], Any]
    ):
        self.definitions = definitions
        self.participations = participations
        self.check_auto_stop = check_auto_stop

    def track(
        self,
        experiment_id,
        subject_id: str,
        event_data: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> Optional[Participant]:
        """
        Record a conversion for a subject.

        Unknown subjects and participants that are no longer active are
        ignored; conversions count once per participant.

        Returns:
            The participant row, or None if the subject never joined
        """
        participant = self.participations.find_participant(experiment_id, subject_id)
        if not participant:
            logger.warning(
                "conversion_without_participant",
                experiment_id=str(experiment_id),
                subject_id=subject_id
            )
            return None

        if participant.status != ParticipantStatus.ACTIVE:
            logger.debug(
                "conversion_ignored",
                experiment_id=str(experiment_id),
                subject_id=subject_id,
                status=participant.status.value
            )
            return participant

        participant.status = ParticipantStatus.CONVERTED
        participant.converted_at = at or datetime.utcnow()
        participant.conversion_data = event_data
        participant = self.participations.save_participant(participant)

        logger.info(
            "conversion_tracked",
            experiment_id=str(experiment_id),
            subject_id=subject_id,
            variant=participant.variant
        )

        experiment = self.definitions.get_experiment(experiment_id)
        if experiment and experiment.auto_stop_on_significance:
            self.check_auto_stop(experiment)

        return participant
