"""Experiment participant model."""
from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint, Uuid, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum

from flaglab.database import Base, JSONType


class ParticipantStatus(str, enum.Enum):
    """Participant status within an experiment."""
    ACTIVE = "active"
    CONVERTED = "converted"
    DROPPED = "dropped"
    EXCLUDED = "excluded"


class Participant(Base):
    """Durable binding of a subject to an experiment variant."""

    __tablename__ = "experiment_participants"
    __table_args__ = (
        UniqueConstraint("experiment_id", "subject_id", name="uq_experiment_participants_subject"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    experiment_id = Column(Uuid(as_uuid=True), ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True)
    subject_id = Column(String(255), nullable=False)
    variant = Column(String(100), nullable=False)
    status = Column(SQLEnum(ParticipantStatus), default=ParticipantStatus.ACTIVE, nullable=False)

    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    converted_at = Column(DateTime)
    dropped_at = Column(DateTime)
    conversion_data = Column(JSONType)

    session_id = Column(String(255))
    device_id = Column(String(255))
    user_attributes = Column(JSONType)
    device_info = Column(JSONType)

    # Relationships
    experiment = relationship("Experiment")

    def __repr__(self):
        return f"<Participant {self.subject_id} variant={self.variant} status={self.status.value}>"
