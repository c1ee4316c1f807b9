"""Feature flag management and evaluation service."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from flaglab.exceptions import DefinitionNotFound, StoreUnavailable, ValidationError
from flaglab.models.evaluation import ContextType, FeatureFlagEvaluation
from flaglab.models.feature_flag import (
    FeatureFlag, FlagStatus, FlagValueType, RolloutStrategy, type_default
)
from flaglab.services.evaluation_cache import EvaluationCache, cache_key
from flaglab.services.evaluation_result import EvaluationResult
from flaglab.services.rollout import ExperimentAssignFn, RolloutStrategyEvaluator, parse_datetime
from flaglab.services.stores import AuditStore, DefinitionStore
from flaglab.services.targeting import TargetingRuleEvaluator

logger = structlog.get_logger()

UPDATABLE_FIELDS = {
    "name", "description", "value_type", "rollout_strategy", "default_value",
    "rollout_config", "targeting_rules", "variants", "experiment_id",
    "start_date", "end_date",
}


@dataclass
class FlagEvaluationRequest:
    """One entry of a bulk evaluation call."""

    flag_key: str
    context_type: ContextType
    context_id: str
    context_data: Optional[Dict[str, Any]] = None
    fallback_value: Any = None


class FeatureFlagService:
    """
    Resolves flag values for evaluation contexts and manages flag definitions.

    Evaluation never raises: store failures and broken definitions degrade to
    the fallback or default value and are logged.
    """

    def __init__(
        self,
        db: Session,
        cache: EvaluationCache,
        assign_experiment_variant: Optional[ExperimentAssignFn] = None,
        record_ttl_hours: int = 24
    ):
        self.definitions = DefinitionStore(db)
        self.audit = AuditStore(db)
        self.cache = cache
        self.targeting = TargetingRuleEvaluator()
        self.rollout = RolloutStrategyEvaluator(self.targeting, assign_experiment_variant)
        self.record_ttl = timedelta(hours=record_ttl_hours)

    # Flag management

    def create_flag(
        self,
        tenant_id: str,
        key: str,
        name: str,
        value_type: FlagValueType = FlagValueType.BOOLEAN,
        default_value: Any = None,
        rollout_strategy: RolloutStrategy = RolloutStrategy.IMMEDIATE,
        rollout_config: Optional[Dict[str, Any]] = None,
        targeting_rules: Optional[Dict[str, Any]] = None,
        variants: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        experiment_id=None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> FeatureFlag:
        """
        Create a flag in draft status.

        Raises:
            ValidationError: If the key is already used by this tenant, the
                dates are inverted, or the experiment belongs to another tenant
        """
        if self.definitions.get_flag(tenant_id, key):
            raise ValidationError(f"Feature flag key already exists: {key}")
        self._validate_dates(start_date, end_date)
        self._validate_experiment_link(tenant_id, experiment_id)

        flag = FeatureFlag(
            tenant_id=tenant_id,
            key=key,
            name=name,
            description=description,
            value_type=value_type,
            status=FlagStatus.DRAFT,
            rollout_strategy=rollout_strategy,
            default_value=default_value if default_value is not None else type_default(value_type),
            rollout_config=rollout_config or {},
            targeting_rules=targeting_rules,
            variants=variants,
            experiment_id=experiment_id,
            start_date=start_date,
            end_date=end_date,
            evaluation_count=0,
            positive_evaluation_count=0
        )
        flag = self.definitions.save_flag(flag)
        logger.info("feature_flag_created", tenant_id=tenant_id, flag_key=key)
        return flag

    def get_flag(self, tenant_id: str, flag_id) -> FeatureFlag:
        flag = self.definitions.get_flag_by_id(tenant_id, flag_id)
        if not flag:
            raise DefinitionNotFound("Feature flag", str(flag_id))
        return flag

    def list_flags(self, tenant_id: str, status: Optional[FlagStatus] = None) -> List[FeatureFlag]:
        return self.definitions.list_flags(tenant_id, status)

    def update_flag(self, tenant_id: str, flag_id, changes: Dict[str, Any]) -> FeatureFlag:
        """Apply definition changes; counters and status are not updatable here."""
        flag = self.get_flag(tenant_id, flag_id)
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        self._validate_dates(
            changes.get("start_date", flag.start_date),
            changes.get("end_date", flag.end_date)
        )
        self._validate_experiment_link(tenant_id, changes.get("experiment_id"))

        for field_name, value in changes.items():
            setattr(flag, field_name, value)

        flag = self.definitions.save_flag(flag)
        self.cache.clear_for_tenant(tenant_id)
        logger.info("feature_flag_updated", tenant_id=tenant_id, flag_key=flag.key, fields=sorted(changes))
        return flag

    @staticmethod
    def _validate_dates(start_date, end_date) -> None:
        start = parse_datetime(start_date)
        end = parse_datetime(end_date)
        if start and end and end <= start:
            raise ValidationError("end_date must be after start_date")

    def _validate_experiment_link(self, tenant_id: str, experiment_id) -> None:
        """An ab_test flag may only delegate to an experiment of its own tenant."""
        if experiment_id is None:
            return
        if self.definitions.get_experiment(experiment_id, tenant_id) is None:
            raise ValidationError(f"Experiment not found for tenant: {experiment_id}")

    def _set_status(self, tenant_id: str, flag_id, status: FlagStatus) -> FeatureFlag:
        flag = self.get_flag(tenant_id, flag_id)
        flag.status = status
        flag = self.definitions.save_flag(flag)
        self.cache.clear_for_tenant(tenant_id)
        logger.info("feature_flag_status_changed", tenant_id=tenant_id, flag_key=flag.key, status=status.value)
        return flag

    def activate_flag(self, tenant_id: str, flag_id) -> FeatureFlag:
        return self._set_status(tenant_id, flag_id, FlagStatus.ACTIVE)

    def deactivate_flag(self, tenant_id: str, flag_id) -> FeatureFlag:
        return self._set_status(tenant_id, flag_id, FlagStatus.INACTIVE)

    def archive_flag(self, tenant_id: str, flag_id) -> FeatureFlag:
        return self._set_status(tenant_id, flag_id, FlagStatus.ARCHIVED)

    # Evaluation

    def evaluate(
        self,
        tenant_id: str,
        flag_key: str,
        context_type: ContextType,
        context_id: str,
        context_data: Optional[Dict[str, Any]] = None,
        fallback_value: Any = None,
        now: Optional[datetime] = None
    ) -> EvaluationResult:
        """
        Resolve a flag's value for one context.

        Order: cache, definition load, status and date window, targeting
        rules, rollout strategy with the per-subject bucket gate. Resolved
        results are audited (best-effort) and cached.

        Example:
            >>> result = service.evaluate("tenant_1", "dark-mode", ContextType.USER, "user_123")
            >>> result.value, result.rollout_percentage
            (True, 100.0)
        """
        context_type = ContextType(context_type)
        key = cache_key(tenant_id, flag_key, context_type.value, context_id)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            flag = self.definitions.get_flag(tenant_id, flag_key)
        except StoreUnavailable as e:
            logger.warning("flag_definition_unavailable", tenant_id=tenant_id, flag_key=flag_key, error=str(e))
            return self._fallback_result(flag_key, None, fallback_value, context_data)

        if flag is None:
            return self._fallback_result(flag_key, None, fallback_value, context_data)

        if flag.status != FlagStatus.ACTIVE:
            return self._build_result(flag, context_data, False, 0.0)

        now = now or datetime.utcnow()
        try:
            if not self._within_window(flag, now):
                return self._build_result(flag, context_data, False, 0.0)
            result = self._decide(flag, context_type, context_id, context_data, now)
        except Exception as e:
            logger.error(
                "flag_evaluation_failed",
                tenant_id=tenant_id,
                flag_key=flag_key,
                error=str(e),
                error_type=type(e).__name__
            )
            return self._fallback_result(flag_key, flag, fallback_value, context_data)

        self._record_evaluation(flag, context_type, context_id, context_data, result, now)
        self.cache.put(key, result)
        return result

    def evaluate_many(
        self,
        tenant_id: str,
        requests: List[FlagEvaluationRequest],
        now: Optional[datetime] = None
    ) -> Dict[str, EvaluationResult]:
        """Evaluate several flags independently; results keyed by flag key."""
        results = {}
        for request in requests:
            results[request.flag_key] = self.evaluate(
                tenant_id,
                request.flag_key,
                request.context_type,
                request.context_id,
                context_data=request.context_data,
                fallback_value=request.fallback_value,
                now=now
            )
        return results

    def _decide(
        self,
        flag: FeatureFlag,
        context_type: ContextType,
        context_id: str,
        context_data: Optional[Dict[str, Any]],
        now: datetime
    ) -> EvaluationResult:
        targeting = self.targeting.evaluate(
            flag.targeting_rules, flag.key, context_type, context_id, context_data
        )
        if targeting.is_targeted:
            return self._build_result(flag, context_data, True, 100.0, targeting.variant)

        rollout = self.rollout.evaluate(flag, context_type, context_id, context_data, now)
        return self._build_result(flag, context_data, False, rollout.percentage, rollout.variant)

    @staticmethod
    def _within_window(flag: FeatureFlag, now: datetime) -> bool:
        start = parse_datetime(flag.start_date)
        end = parse_datetime(flag.end_date)
        if start and now < start:
            return False
        if end and now >= end:
            return False
        return True

    @staticmethod
    def resolve_variant_value(flag: FeatureFlag, variant: Optional[str]) -> Any:
        """Value of the named variant, or the flag default when it has none."""
        variants = flag.variants or {}
        if variant and variant in variants:
            return variants[variant]
        return flag.default_value

    def _build_result(
        self,
        flag: FeatureFlag,
        context_data: Optional[Dict[str, Any]],
        is_targeted: bool,
        rollout_percentage: float,
        variant: Optional[str] = None
    ) -> EvaluationResult:
        return EvaluationResult(
            flag_key=flag.key,
            value=self.resolve_variant_value(flag, variant),
            variant=variant,
            is_targeted=is_targeted,
            rollout_percentage=float(rollout_percentage),
            evaluation_context=dict(context_data or {})
        )

    @staticmethod
    def _fallback_result(
        flag_key: str,
        flag: Optional[FeatureFlag],
        fallback_value: Any,
        context_data: Optional[Dict[str, Any]]
    ) -> EvaluationResult:
        if fallback_value is not None:
            value = fallback_value
        else:
            value = type_default(flag.value_type if flag else FlagValueType.BOOLEAN)
        return EvaluationResult(
            flag_key=flag_key,
            value=value,
            is_targeted=False,
            rollout_percentage=0.0,
            evaluation_context=dict(context_data or {})
        )

    def _record_evaluation(
        self,
        flag: FeatureFlag,
        context_type: ContextType,
        context_id: str,
        context_data: Optional[Dict[str, Any]],
        result: EvaluationResult,
        now: datetime
    ) -> None:
        """Persist the audit record and bump counters; failures are only logged."""
        flag_id = flag.id
        record = FeatureFlagEvaluation(
            feature_flag_id=flag_id,
            context_type=context_type,
            context_id=context_id,
            evaluated_value=result.value,
            variant=result.variant,
            rollout_percentage=result.rollout_percentage,
            is_targeted=result.is_targeted,
            evaluation_context=context_data,
            evaluated_at=now,
            expires_at=now + self.record_ttl
        )
        try:
            self.audit.save_evaluation_record(record)
        except StoreUnavailable as e:
            logger.warning("flag_evaluation_record_failed", flag_key=result.flag_key, error=str(e))

        try:
            self.definitions.increment_flag_counters(flag_id, result.is_positive)
        except StoreUnavailable as e:
            logger.warning("flag_counter_update_failed", flag_key=result.flag_key, error=str(e))

    # Analytics

    def get_flag_analytics(
        self,
        tenant_id: str,
        flag_id,
        days: int = 30,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Aggregate audit records of the last `days` days for one flag."""
        flag = self.get_flag(tenant_id, flag_id)
        since = (now or datetime.utcnow()) - timedelta(days=days)
        records = self.audit.list_evaluation_records(flag.id, since)

        total = len(records)
        positive = sum(1 for r in records if r.is_targeted or (r.rollout_percentage or 0) > 0)
        targeted = sum(1 for r in records if r.is_targeted)

        variant_stats: Dict[str, Dict[str, Any]] = {}
        daily_stats: Dict[str, int] = {}
        for record in records:
            stats = variant_stats.setdefault(record.variant or "default", {"count": 0, "positive_count": 0})
            stats["count"] += 1
            if record.is_targeted or (record.rollout_percentage or 0) > 0:
                stats["positive_count"] += 1
            day = record.evaluated_at.date().isoformat()
            daily_stats[day] = daily_stats.get(day, 0) + 1

        for stats in variant_stats.values():
            stats["positive_rate"] = stats["positive_count"] / stats["count"] if stats["count"] else 0

        return {
            "flag_id": str(flag.id),
            "flag_key": flag.key,
            "total_evaluations": total,
            "positive_evaluations": positive,
            "positive_rate": positive / total if total else 0,
            "targeted_evaluations": targeted,
            "targeted_rate": targeted / total if total else 0,
            "lifetime_evaluation_count": flag.evaluation_count,
            "lifetime_positive_evaluation_count": flag.positive_evaluation_count,
            "variants": variant_stats,
            "daily_stats": daily_stats,
        }

    # Cache management

    def clear_cache(self) -> None:
        self.cache.clear_all()
        logger.info("evaluation_cache_cleared")

    def clear_cache_for_tenant(self, tenant_id: str) -> None:
        removed = self.cache.clear_for_tenant(tenant_id)
        logger.info("evaluation_cache_cleared_for_tenant", tenant_id=tenant_id, removed=removed)
