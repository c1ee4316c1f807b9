"""Flag evaluation audit record model."""
from sqlalchemy import Column, String, Boolean, Float, DateTime, ForeignKey, Index, Uuid, Enum as SQLEnum
from datetime import datetime
import uuid
import enum

from flaglab.database import Base, JSONType


class ContextType(str, enum.Enum):
    """Kind of subject a flag is evaluated for."""
    USER = "user"
    SESSION = "session"
    REQUEST = "request"
    SYSTEM = "system"


class FeatureFlagEvaluation(Base):
    """Write-once audit record of a single flag evaluation."""

    __tablename__ = "feature_flag_evaluations"
    __table_args__ = (
        Index("ix_flag_evaluations_subject", "feature_flag_id", "context_type", "context_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    feature_flag_id = Column(Uuid(as_uuid=True), ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False)
    context_type = Column(SQLEnum(ContextType), nullable=False)
    context_id = Column(String(255), nullable=False)

    evaluated_value = Column(JSONType)
    variant = Column(String(100))
    rollout_percentage = Column(Float, default=0.0)
    is_targeted = Column(Boolean, default=False, nullable=False)
    evaluation_context = Column(JSONType)

    evaluated_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    expires_at = Column(DateTime)

    def __repr__(self):
        return f"<FeatureFlagEvaluation {self.feature_flag_id} {self.context_type.value}:{self.context_id}>"
