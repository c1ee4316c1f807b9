"""SQLAlchemy-backed definition, participation, and audit stores.

Every store call translates database failures into `StoreUnavailable`;
callers decide whether that is recoverable.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional
import uuid

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from flaglab.exceptions import StoreUnavailable
from flaglab.models.evaluation import FeatureFlagEvaluation
from flaglab.models.experiment import Experiment, ExperimentStatus
from flaglab.models.feature_flag import FeatureFlag, FlagStatus
from flaglab.models.participant import Participant


class ParticipantExists(Exception):
    """Raised when a participant row for the subject was written concurrently."""
    pass


def as_uuid(value) -> Optional[uuid.UUID]:
    """Coerce an id to UUID; None for values that are not valid UUIDs."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class _Store:
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def _guard(self, operation: str):
        try:
            yield
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailable(f"{operation} failed: {e}") from e


class DefinitionStore(_Store):
    """Flag and experiment definitions."""

    def get_flag(self, tenant_id: str, key: str) -> Optional[FeatureFlag]:
        with self._guard("get_flag"):
            return self.db.query(FeatureFlag).filter(
                FeatureFlag.tenant_id == tenant_id,
                FeatureFlag.key == key
            ).first()

    def get_flag_by_id(self, tenant_id: str, flag_id) -> Optional[FeatureFlag]:
        flag_uuid = as_uuid(flag_id)
        if flag_uuid is None:
            return None
        with self._guard("get_flag_by_id"):
            return self.db.query(FeatureFlag).filter(
                FeatureFlag.id == flag_uuid,
                FeatureFlag.tenant_id == tenant_id
            ).first()

    def list_flags(self, tenant_id: str, status: Optional[FlagStatus] = None) -> List[FeatureFlag]:
        with self._guard("list_flags"):
            query = self.db.query(FeatureFlag).filter(FeatureFlag.tenant_id == tenant_id)
            if status:
                query = query.filter(FeatureFlag.status == status)
            return query.order_by(FeatureFlag.created_at.asc()).all()

    def list_flags_for_experiment(self, tenant_id: str, experiment_id) -> List[FeatureFlag]:
        with self._guard("list_flags_for_experiment"):
            return self.db.query(FeatureFlag).filter(
                FeatureFlag.tenant_id == tenant_id,
                FeatureFlag.experiment_id == as_uuid(experiment_id)
            ).all()

    def save_flag(self, flag: FeatureFlag) -> FeatureFlag:
        with self._guard("save_flag"):
            self.db.add(flag)
            self.db.commit()
            self.db.refresh(flag)
            return flag

    def increment_flag_counters(self, flag_id, positive: bool) -> None:
        """Atomic `count = count + 1` updates; never decrements."""
        with self._guard("increment_flag_counters"):
            self.db.query(FeatureFlag).filter(FeatureFlag.id == flag_id).update(
                {
                    FeatureFlag.evaluation_count: FeatureFlag.evaluation_count + 1,
                    FeatureFlag.positive_evaluation_count:
                        FeatureFlag.positive_evaluation_count + (1 if positive else 0),
                },
                synchronize_session=False
            )
            self.db.commit()

    def get_experiment(self, experiment_id, tenant_id: Optional[str] = None) -> Optional[Experiment]:
        experiment_uuid = as_uuid(experiment_id)
        if experiment_uuid is None:
            return None
        with self._guard("get_experiment"):
            query = self.db.query(Experiment).filter(Experiment.id == experiment_uuid)
            if tenant_id is not None:
                query = query.filter(Experiment.tenant_id == tenant_id)
            return query.first()

    def save_experiment(self, experiment: Experiment) -> Experiment:
        with self._guard("save_experiment"):
            self.db.add(experiment)
            self.db.commit()
            self.db.refresh(experiment)
            return experiment

    def list_experiments(self, tenant_id: str, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        with self._guard("list_experiments"):
            query = self.db.query(Experiment).filter(Experiment.tenant_id == tenant_id)
            if status:
                query = query.filter(Experiment.status == status)
            return query.order_by(Experiment.created_at.desc()).all()


class ParticipationStore(_Store):
    """Experiment participant rows."""

    def find_participant(self, experiment_id, subject_id: str) -> Optional[Participant]:
        with self._guard("find_participant"):
            return self.db.query(Participant).filter(
                Participant.experiment_id == as_uuid(experiment_id),
                Participant.subject_id == subject_id
            ).first()

    def create_participant(self, participant: Participant) -> Participant:
        """
        Insert a new participant row.

        Raises:
            ParticipantExists: the (experiment, subject) row already exists
            StoreUnavailable: any other database failure
        """
        try:
            self.db.add(participant)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ParticipantExists(str(e)) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise StoreUnavailable(f"create_participant failed: {e}") from e
        with self._guard("create_participant"):
            self.db.refresh(participant)
        return participant

    def save_participant(self, participant: Participant) -> Participant:
        with self._guard("save_participant"):
            self.db.add(participant)
            self.db.commit()
            self.db.refresh(participant)
            return participant

    def list_participants(self, experiment_id) -> List[Participant]:
        with self._guard("list_participants"):
            return self.db.query(Participant).filter(
                Participant.experiment_id == as_uuid(experiment_id)
            ).order_by(Participant.assigned_at.asc()).all()


class AuditStore(_Store):
    """Flag evaluation audit records."""

    def save_evaluation_record(self, record: FeatureFlagEvaluation) -> bool:
        """
        Write a record unless an unexpired one exists for the same subject.

        Returns:
            True if a new record was written
        """
        with self._guard("save_evaluation_record"):
            now = record.evaluated_at or datetime.utcnow()
            current = self.db.query(FeatureFlagEvaluation.id).filter(
                FeatureFlagEvaluation.feature_flag_id == record.feature_flag_id,
                FeatureFlagEvaluation.context_type == record.context_type,
                FeatureFlagEvaluation.context_id == record.context_id,
                FeatureFlagEvaluation.expires_at > now
            ).first()
            if current:
                return False
            self.db.add(record)
            self.db.commit()
            return True

    def list_evaluation_records(self, flag_id, since: Optional[datetime] = None) -> List[FeatureFlagEvaluation]:
        with self._guard("list_evaluation_records"):
            query = self.db.query(FeatureFlagEvaluation).filter(
                FeatureFlagEvaluation.feature_flag_id == flag_id
            )
            if since is not None:
                query = query.filter(FeatureFlagEvaluation.evaluated_at >= since)
            return query.order_by(FeatureFlagEvaluation.evaluated_at.asc()).all()
