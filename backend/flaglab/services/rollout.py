"""Rollout strategy evaluation."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from flaglab.models.evaluation import ContextType
from flaglab.models.feature_flag import FeatureFlag, RolloutStrategy
from flaglab.services.hashing import bucket
from flaglab.services.targeting import TargetingRuleEvaluator

# (flag, context_id, context_data) -> assigned variant, or None if not assigned
ExperimentAssignFn = Callable[[FeatureFlag, str, Optional[Dict[str, Any]]], Optional[str]]

DEFAULT_GRADUAL_DURATION = timedelta(days=7)


@dataclass
class RolloutResult:
    """Effective rollout percentage for a subject after the bucket gate."""

    percentage: float
    variant: Optional[str] = None

    @property
    def included(self) -> bool:
        return self.percentage > 0


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO string (or pass a datetime through) as naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def gradual_percentage(config: Dict[str, Any], now: datetime) -> float:
    """
    Linear ramp from 0 to `max_percentage` between `start_date` and `end_date`.

    Missing dates default to a ramp starting now and lasting seven days.
    """
    max_percentage = float(config.get("max_percentage", 100))
    start = parse_datetime(config.get("start_date")) or now
    end = parse_datetime(config.get("end_date")) or start + DEFAULT_GRADUAL_DURATION

    if now < start:
        return 0.0
    if now >= end:
        return max_percentage

    progress = (now - start).total_seconds() / (end - start).total_seconds()
    return min(max(progress * max_percentage, 0.0), max_percentage)


def hashed_variant(flag: FeatureFlag, context_id: str, context_data=None) -> Optional[str]:
    """Pick one of the flag's variants by bucket when no experiment is wired in."""
    names = list((flag.variants or {}).keys())
    if not names:
        return "control"
    return names[bucket(context_id + flag.key) % len(names)]


class RolloutStrategyEvaluator:
    """
    Computes a flag's rollout percentage and gates it per subject.

    A subject is inside the rollout only when its salted bucket is below the
    strategy's percentage, so raising the percentage only ever adds subjects.
    """

    def __init__(
        self,
        targeting: Optional[TargetingRuleEvaluator] = None,
        assign_experiment_variant: Optional[ExperimentAssignFn] = None
    ):
        self.targeting = targeting or TargetingRuleEvaluator()
        self.assign_experiment_variant = assign_experiment_variant or hashed_variant

    def strategy_percentage(
        self,
        flag: FeatureFlag,
        context_type: ContextType,
        context_id: str,
        context_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> RolloutResult:
        """Percentage (and variant) the strategy grants before the bucket gate."""
        config = flag.rollout_config or {}
        strategy = RolloutStrategy(flag.rollout_strategy)

        if strategy == RolloutStrategy.IMMEDIATE:
            return RolloutResult(percentage=100.0)

        if strategy == RolloutStrategy.PERCENTAGE:
            percentage = float(config.get("percentage", 0) or 0)
            return RolloutResult(percentage=min(max(percentage, 0.0), 100.0))

        if strategy == RolloutStrategy.GRADUAL:
            return RolloutResult(percentage=gradual_percentage(config, now or datetime.utcnow()))

        if strategy == RolloutStrategy.TARGETED:
            matched = self.targeting.evaluate(
                flag.targeting_rules, flag.key, context_type, context_id, context_data
            )
            return RolloutResult(percentage=100.0 if matched.is_targeted else 0.0)

        if strategy == RolloutStrategy.AB_TEST:
            variant = self.assign_experiment_variant(flag, context_id, context_data)
            if variant is None:
                return RolloutResult(percentage=0.0)
            return RolloutResult(percentage=100.0, variant=variant)

        return RolloutResult(percentage=0.0)

    def evaluate(
        self,
        flag: FeatureFlag,
        context_type: ContextType,
        context_id: str,
        context_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> RolloutResult:
        """Strategy percentage followed by the per-subject bucket gate."""
        granted = self.strategy_percentage(flag, context_type, context_id, context_data, now)
        if bucket(context_id + flag.key) < granted.percentage:
            return granted
        return RolloutResult(percentage=0.0)
