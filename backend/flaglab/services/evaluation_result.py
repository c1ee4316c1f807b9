"""Evaluation result value object."""
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


@dataclass
class EvaluationResult:
    """Resolved value of one flag for one context."""

    flag_key: str
    value: Any
    variant: Optional[str] = None
    is_targeted: bool = False
    rollout_percentage: float = 0.0
    evaluation_context: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_positive(self) -> bool:
        """Subject received the feature (targeted or inside the rollout)."""
        return self.is_targeted or self.rollout_percentage > 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluationResult":
        return cls(
            flag_key=data["flag_key"],
            value=data.get("value"),
            variant=data.get("variant"),
            is_targeted=bool(data.get("is_targeted", False)),
            rollout_percentage=float(data.get("rollout_percentage", 0.0)),
            evaluation_context=data.get("evaluation_context") or {},
        )
