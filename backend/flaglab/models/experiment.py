"""Experiment model."""
from sqlalchemy import Column, String, Text, Boolean, Integer, Float, DateTime, Uuid, Enum as SQLEnum
from datetime import datetime
import uuid
import enum

from flaglab.database import Base, JSONType


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle status."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


def empty_results() -> dict:
    """Results snapshot for an experiment nobody has joined yet."""
    return {
        "total_participants": 0,
        "variant_stats": {},
        "winner": None,
        "is_statistically_significant": False,
        "test_duration_days": 0,
    }


class Experiment(Base):
    """A/B experiment definition and its latest results snapshot."""

    __tablename__ = "experiments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(100), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(SQLEnum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)

    variants = Column(JSONType, nullable=False)  # {"control": {...}, "treatment": {...}}
    # Definition order of variant names; JSONB does not preserve key order
    variant_order = Column(JSONType, nullable=False)  # ["control", "treatment"]
    traffic_allocation = Column(JSONType, nullable=False)  # {"control": 50, "treatment": 50}
    targeting_rules = Column(JSONType)  # {"user_attributes": {...}, "device_info": {...}}
    success_metrics = Column(JSONType, default=dict)

    significance_level = Column(Float, default=0.05, nullable=False)
    minimum_sample_size = Column(Integer)
    maximum_duration_days = Column(Integer)

    start_date = Column(DateTime)
    end_date = Column(DateTime)
    planned_end_date = Column(DateTime)

    auto_stop_on_significance = Column(Boolean, default=False, nullable=False)
    auto_apply_winner = Column(Boolean, default=False, nullable=False)

    results = Column(JSONType, default=empty_results, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def ordered_variants(self) -> list:
        """Variant names in definition order."""
        return list(self.variant_order or self.variants.keys())

    def __repr__(self):
        return f"<Experiment {self.id} status={self.status.value if self.status else None}>"
