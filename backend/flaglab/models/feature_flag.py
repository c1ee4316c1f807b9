"""Feature flag model."""
from sqlalchemy import Column, String, Text, Integer, DateTime, UniqueConstraint, Uuid, Enum as SQLEnum
from datetime import datetime
import uuid
import enum

from flaglab.database import Base, JSONType


class FlagValueType(str, enum.Enum):
    """Type of value a flag resolves to."""
    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    JSON = "json"


class FlagStatus(str, enum.Enum):
    """Flag lifecycle status."""
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class RolloutStrategy(str, enum.Enum):
    """Policy deciding which subjects receive a flag's non-default value."""
    IMMEDIATE = "immediate"
    PERCENTAGE = "percentage"
    GRADUAL = "gradual"
    TARGETED = "targeted"
    AB_TEST = "ab_test"


TYPE_DEFAULTS = {
    FlagValueType.BOOLEAN: False,
    FlagValueType.STRING: "",
    FlagValueType.NUMBER: 0,
    FlagValueType.JSON: {},
}


def type_default(value_type) -> object:
    """Zero value for a flag value type (boolean when unknown)."""
    default = TYPE_DEFAULTS.get(value_type, False)
    return dict(default) if isinstance(default, dict) else default


class FeatureFlag(Base):
    """Tenant-scoped feature flag definition."""

    __tablename__ = "feature_flags"
    __table_args__ = (
        UniqueConstraint("tenant_id", "key", name="uq_feature_flags_tenant_key"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(100), nullable=False, index=True)
    key = Column(String(100), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)

    value_type = Column(SQLEnum(FlagValueType), default=FlagValueType.BOOLEAN, nullable=False)
    status = Column(SQLEnum(FlagStatus), default=FlagStatus.DRAFT, nullable=False)
    rollout_strategy = Column(SQLEnum(RolloutStrategy), default=RolloutStrategy.IMMEDIATE, nullable=False)

    default_value = Column(JSONType)
    rollout_config = Column(JSONType, default=dict, nullable=False)  # {"percentage": 25} or {"start_date", "end_date", "max_percentage"}
    targeting_rules = Column(JSONType)  # {"subjects": [...], "attributes": {...}, "percentage": 10, "variant": "beta"}
    variants = Column(JSONType)  # {"beta": true, "legacy": false}

    # Experiment an ab_test flag delegates variant selection to
    experiment_id = Column(Uuid(as_uuid=True), nullable=True)

    start_date = Column(DateTime)
    end_date = Column(DateTime)

    # Analytics counters, only ever incremented
    evaluation_count = Column(Integer, default=0, nullable=False)
    positive_evaluation_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<FeatureFlag {self.tenant_id}:{self.key} status={self.status.value if self.status else None}>"
