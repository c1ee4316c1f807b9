"""Experimentation service for A/B testing."""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from flaglab.exceptions import DefinitionNotFound, NotEligible, NotRunning, ValidationError
from flaglab.models.experiment import Experiment, ExperimentStatus, TERMINAL_STATUSES, empty_results
from flaglab.models.feature_flag import FeatureFlag
from flaglab.models.participant import Participant, ParticipantStatus
from flaglab.services.assignment import ParticipantAssigner, SessionInfo
from flaglab.services.conversions import ConversionTracker
from flaglab.services.rollout import hashed_variant
from flaglab.services.statistics import StatisticsEngine, find_control
from flaglab.services.stores import DefinitionStore, ParticipationStore
from flaglab.services.winner import WinnerApplier

logger = structlog.get_logger()

ALLOCATION_TOLERANCE = 0.01


def validate_variants(variants: Dict[str, Any]) -> None:
    """Variants must be non-empty and include a control (any case)."""
    if not variants:
        raise ValidationError("At least one variant must be provided")
    if find_control(variants.keys()) is None:
        raise ValidationError("A control variant must be provided")


def equal_traffic_allocation(variant_names: List[str]) -> Dict[str, float]:
    """
    Split 100% equally across variants.

    The floating point remainder goes to the first variant so the values
    sum to exactly 100.
    """
    share = 100 / len(variant_names)
    allocation = {name: share for name in variant_names}
    allocation[variant_names[0]] += 100 - sum(allocation.values())
    return allocation


def validate_traffic_allocation(allocation: Dict[str, float], variant_names: List[str]) -> None:
    """Keys must equal the variant set, values lie in [0, 100] and sum to 100."""
    missing = [name for name in variant_names if name not in allocation]
    if missing:
        raise ValidationError(f"Traffic allocation missing for variant: {', '.join(missing)}")

    extra = [name for name in allocation if name not in variant_names]
    if extra:
        raise ValidationError(f"Traffic allocation for unknown variant: {', '.join(extra)}")

    for name, value in allocation.items():
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0 or value > 100:
            raise ValidationError(f"Invalid traffic allocation for {name}: {value}%")

    total = sum(allocation.values())
    if abs(total - 100) > ALLOCATION_TOLERANCE:
        raise ValidationError(f"Traffic allocation must sum to 100%, got {total}%")


class ExperimentManager:
    """Service for managing A/B experiments."""

    def __init__(
        self,
        db: Session,
        winner_applier: Optional[WinnerApplier] = None,
        statistics: Optional[StatisticsEngine] = None
    ):
        self.definitions = DefinitionStore(db)
        self.participations = ParticipationStore(db)
        self.statistics = statistics or StatisticsEngine()
        self.winner_applier = winner_applier or WinnerApplier()
        self.assigner = ParticipantAssigner(self.definitions, self.participations)
        self.tracker = ConversionTracker(
            self.definitions,
            self.participations,
            check_auto_stop=self.check_and_stop_if_significant
        )

    # Lifecycle

    def create_experiment(
        self,
        tenant_id: str,
        name: str,
        variants: Dict[str, Any],
        traffic_allocation: Optional[Dict[str, float]] = None,
        description: Optional[str] = None,
        targeting_rules: Optional[Dict[str, Any]] = None,
        success_metrics: Optional[Dict[str, Any]] = None,
        significance_level: float = 0.05,
        minimum_sample_size: Optional[int] = None,
        maximum_duration_days: Optional[int] = None,
        auto_stop_on_significance: bool = False,
        auto_apply_winner: bool = False
    ) -> Experiment:
        """
        Create a new experiment in draft status.

        Args:
            tenant_id: Owning tenant
            name: Human-readable name
            variants: Variant name -> payload, in definition order
            traffic_allocation: Variant name -> percentage; equal split if omitted

        Returns:
            Created Experiment instance

        Raises:
            ValidationError: Missing control, or allocation not covering
                exactly the variants and summing to 100
        """
        validate_variants(variants)
        variant_order = list(variants.keys())

        allocation = traffic_allocation or equal_traffic_allocation(variant_order)
        validate_traffic_allocation(allocation, variant_order)

        if not 0 < significance_level < 1:
            raise ValidationError(f"significance_level must be in (0, 1), got {significance_level}")

        experiment = Experiment(
            tenant_id=tenant_id,
            name=name,
            description=description,
            status=ExperimentStatus.DRAFT,
            variants=variants,
            variant_order=variant_order,
            traffic_allocation=allocation,
            targeting_rules=targeting_rules,
            success_metrics=success_metrics or {},
            significance_level=significance_level,
            minimum_sample_size=minimum_sample_size,
            maximum_duration_days=maximum_duration_days,
            auto_stop_on_significance=auto_stop_on_significance,
            auto_apply_winner=auto_apply_winner,
            results=empty_results()
        )
        experiment = self.definitions.save_experiment(experiment)
        logger.info("experiment_created", tenant_id=tenant_id, experiment_id=str(experiment.id))
        return experiment

    def get_experiment(self, tenant_id: str, experiment_id) -> Experiment:
        experiment = self.definitions.get_experiment(experiment_id, tenant_id)
        if not experiment:
            raise DefinitionNotFound("Experiment", str(experiment_id))
        return experiment

    def list_experiments(self, tenant_id: str, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        return self.definitions.list_experiments(tenant_id, status)

    def start_experiment(self, tenant_id: str, experiment_id, now: Optional[datetime] = None) -> Experiment:
        """draft -> running; sets start_date and the planned end date."""
        experiment = self.get_experiment(tenant_id, experiment_id)
        if experiment.status != ExperimentStatus.DRAFT:
            raise NotRunning("Experiment can only be started from draft status")

        now = now or datetime.utcnow()
        experiment.status = ExperimentStatus.RUNNING
        experiment.start_date = now
        if experiment.maximum_duration_days:
            experiment.planned_end_date = now + timedelta(days=experiment.maximum_duration_days)

        experiment = self.definitions.save_experiment(experiment)
        logger.info("experiment_started", experiment_id=str(experiment.id))
        return experiment

    def stop_experiment(self, tenant_id: str, experiment_id, now: Optional[datetime] = None) -> Experiment:
        """Any non-terminal state -> completed, freezing the final results."""
        experiment = self.get_experiment(tenant_id, experiment_id)
        if experiment.status in TERMINAL_STATUSES:
            raise NotRunning(f"Experiment is already {experiment.status.value}")
        return self._complete(experiment, now or datetime.utcnow())

    def cancel_experiment(self, tenant_id: str, experiment_id, now: Optional[datetime] = None) -> Experiment:
        experiment = self.get_experiment(tenant_id, experiment_id)
        if experiment.status in TERMINAL_STATUSES:
            raise NotRunning(f"Experiment is already {experiment.status.value}")

        experiment.status = ExperimentStatus.CANCELLED
        experiment.end_date = now or datetime.utcnow()
        experiment = self.definitions.save_experiment(experiment)
        logger.info("experiment_cancelled", experiment_id=str(experiment.id))
        return experiment

    def pause_experiment(self, tenant_id: str, experiment_id) -> Experiment:
        experiment = self.get_experiment(tenant_id, experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            raise NotRunning("Only running experiments can be paused")
        experiment.status = ExperimentStatus.PAUSED
        return self.definitions.save_experiment(experiment)

    def resume_experiment(self, tenant_id: str, experiment_id) -> Experiment:
        experiment = self.get_experiment(tenant_id, experiment_id)
        if experiment.status != ExperimentStatus.PAUSED:
            raise NotRunning("Only paused experiments can be resumed")
        experiment.status = ExperimentStatus.RUNNING
        return self.definitions.save_experiment(experiment)

    def _complete(self, experiment: Experiment, now: datetime, results=None) -> Experiment:
        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_date = now
        if results is None:
            participants = self.participations.list_participants(experiment.id)
            results = self.statistics.compute_results(experiment, participants, now)
        experiment.results = results.to_dict()
        experiment = self.definitions.save_experiment(experiment)
        logger.info(
            "experiment_completed",
            experiment_id=str(experiment.id),
            winner=experiment.results.get("winner"),
            significant=experiment.results.get("is_statistically_significant")
        )
        return experiment

    # Participation

    def assign_participant(
        self,
        experiment_id,
        subject_id: str,
        session_info: Optional[SessionInfo] = None,
        now: Optional[datetime] = None
    ) -> Participant:
        return self.assigner.assign(experiment_id, subject_id, session_info, now)

    def track_conversion(
        self,
        experiment_id,
        subject_id: str,
        event_data: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None
    ) -> Optional[Participant]:
        return self.tracker.track(experiment_id, subject_id, event_data, at)

    def check_and_stop_if_significant(self, experiment: Experiment, now: Optional[datetime] = None) -> bool:
        """
        Complete a running experiment once results are significant with a winner.

        Only significance gates the stop; `sample_size_reached` and
        `duration_elapsed` are reported in the results but not enforced.

        Returns:
            True if the experiment was stopped
        """
        if experiment.status != ExperimentStatus.RUNNING:
            return False

        now = now or datetime.utcnow()
        participants = self.participations.list_participants(experiment.id)
        results = self.statistics.compute_results(experiment, participants, now)
        if not (results.is_statistically_significant and results.winner):
            return False

        logger.info(
            "experiment_auto_stopped",
            experiment_id=str(experiment.id),
            winner=results.winner,
            sample_size_reached=results.sample_size_reached,
            duration_elapsed=results.duration_elapsed
        )
        experiment = self._complete(experiment, now, results)

        if experiment.auto_apply_winner:
            self.winner_applier.apply_winner(experiment, experiment.results["winner"])
        return True

    # Reporting

    def get_experiment_results(self, tenant_id: str, experiment_id, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Frozen snapshot for completed experiments, a fresh computation otherwise."""
        experiment = self.get_experiment(tenant_id, experiment_id)
        if experiment.status == ExperimentStatus.COMPLETED:
            return experiment.results
        participants = self.participations.list_participants(experiment.id)
        return self.statistics.compute_results(experiment, participants, now).to_dict()

    def get_participant_stats(self, tenant_id: str, experiment_id) -> Dict[str, Any]:
        experiment = self.get_experiment(tenant_id, experiment_id)
        participants = self.participations.list_participants(experiment.id)

        by_variant: Dict[str, int] = {}
        for participant in participants:
            by_variant[participant.variant] = by_variant.get(participant.variant, 0) + 1

        return {
            "total": len(participants),
            "active": sum(1 for p in participants if p.status == ParticipantStatus.ACTIVE),
            "converted": sum(1 for p in participants if p.status == ParticipantStatus.CONVERTED),
            "dropped": sum(1 for p in participants if p.status == ParticipantStatus.DROPPED),
            "by_variant": by_variant,
        }


def experiment_variant_assigner(manager: ExperimentManager):
    """
    Variant selection for `ab_test` flags.

    Flags linked to an experiment assign the subject through it; subjects the
    experiment cannot take, or whose experiment belongs to another
    tenant, get no variant. Unlinked flags hash over their own
    variants.
    """
    def assign(flag: FeatureFlag, context_id: str, context_data=None) -> Optional[str]:
        if not flag.experiment_id:
            return hashed_variant(flag, context_id, context_data)
        if manager.definitions.get_experiment(flag.experiment_id, flag.tenant_id) is None:
            return None
        try:
            participant = manager.assign_participant(
                flag.experiment_id,
                context_id,
                SessionInfo(user_attributes=context_data)
            )
        except (DefinitionNotFound, NotRunning, NotEligible):
            return None
        return participant.variant

    return assign
