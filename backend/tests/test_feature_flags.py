"""Tests for feature flag management and evaluation."""
import pytest
from datetime import datetime, timedelta
from unittest.mock import patch
from sqlalchemy.orm import Session

from flaglab.exceptions import DefinitionNotFound, StoreUnavailable, ValidationError
from flaglab.models.evaluation import ContextType, FeatureFlagEvaluation
from flaglab.models.feature_flag import FeatureFlag, FlagStatus, FlagValueType, RolloutStrategy
from flaglab.services.feature_flags import FeatureFlagService, FlagEvaluationRequest
from flaglab.services.hashing import bucket

TENANT = "tenant_a"
NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def service(db: Session, cache):
    return FeatureFlagService(db, cache)


def active_flag(service, key="dark-mode", **kwargs):
    kwargs.setdefault("name", key)
    flag = service.create_flag(TENANT, key=key, **kwargs)
    return service.activate_flag(TENANT, flag.id)


def test_create_flag_starts_in_draft_with_type_default(service):
    flag = service.create_flag(TENANT, key="banner", name="Banner", value_type=FlagValueType.STRING)

    assert flag.status == FlagStatus.DRAFT
    assert flag.default_value == ""
    assert flag.evaluation_count == 0
    assert flag.positive_evaluation_count == 0


def test_duplicate_key_is_rejected_within_tenant_only(service):
    """Test that flag keys are unique per tenant."""
    service.create_flag(TENANT, key="banner", name="Banner")

    with pytest.raises(ValidationError):
        service.create_flag(TENANT, key="banner", name="Banner again")

    other = service.create_flag("tenant_b", key="banner", name="Banner")
    assert other.tenant_id == "tenant_b"


def test_create_flag_rejects_inverted_dates(service):
    with pytest.raises(ValidationError):
        service.create_flag(TENANT, key="banner", name="Banner", start_date=NOW, end_date=NOW - timedelta(days=1))


def test_update_flag_rejects_end_date_before_existing_start(service):
    flag = service.create_flag(TENANT, key="banner", name="Banner", start_date=NOW)

    with pytest.raises(ValidationError):
        service.update_flag(TENANT, flag.id, {"name": "Renamed", "end_date": NOW - timedelta(days=1)})

    unchanged = service.get_flag(TENANT, flag.id)
    assert unchanged.name == "Banner"
    assert unchanged.end_date is None


def test_get_flag_is_tenant_scoped(service):
    flag = service.create_flag(TENANT, key="banner", name="Banner")

    assert service.get_flag(TENANT, flag.id).key == "banner"
    with pytest.raises(DefinitionNotFound):
        service.get_flag("tenant_b", flag.id)


def test_update_flag_rejects_unknown_fields(service):
    flag = service.create_flag(TENANT, key="banner", name="Banner")

    updated = service.update_flag(TENANT, flag.id, {"name": "New banner", "rollout_config": {"percentage": 10}})
    assert updated.name == "New banner"
    assert updated.rollout_config == {"percentage": 10}

    with pytest.raises(ValidationError):
        service.update_flag(TENANT, flag.id, {"evaluation_count": 99})


def test_percentage_zero_returns_default_for_everyone(service):
    """Test a 0% rollout: nobody is targeted or included."""
    active_flag(
        service,
        default_value=False,
        rollout_strategy=RolloutStrategy.PERCENTAGE,
        rollout_config={"percentage": 0}
    )

    for i in range(50):
        result = service.evaluate(TENANT, "dark-mode", ContextType.USER, f"user_{i}", now=NOW)
        assert result.is_targeted is False
        assert result.rollout_percentage == 0.0
        assert result.value is False


def test_percentage_hundred_includes_everyone(service):
    active_flag(service, rollout_strategy=RolloutStrategy.PERCENTAGE, rollout_config={"percentage": 100})

    for i in range(50):
        result = service.evaluate(TENANT, "dark-mode", ContextType.USER, f"user_{i}", now=NOW)
        assert result.rollout_percentage == 100.0
        assert result.is_positive


def test_subject_targeting_overrides_empty_rollout(service):
    """Test that a listed subject is targeted while others stay out."""
    active_flag(
        service,
        rollout_strategy=RolloutStrategy.PERCENTAGE,
        rollout_config={"percentage": 0},
        targeting_rules={"subjects": ["u1"], "variant": "beta"},
        variants={"beta": True}
    )

    targeted = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)
    other = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u2", now=NOW)

    assert targeted.is_targeted is True
    assert targeted.variant == "beta"
    assert targeted.value is True
    assert targeted.rollout_percentage == 100.0
    assert other.is_targeted is False
    assert other.rollout_percentage == 0.0


def test_evaluation_is_deterministic_without_cache(db, cache):
    """Test that a cold cache recomputes the same decision."""
    service = FeatureFlagService(db, cache)
    active_flag(service, rollout_strategy=RolloutStrategy.PERCENTAGE, rollout_config={"percentage": 40})

    first = {
        f"user_{i}": service.evaluate(TENANT, "dark-mode", ContextType.USER, f"user_{i}", now=NOW).rollout_percentage
        for i in range(100)
    }
    cache.clear_all()
    second = {
        f"user_{i}": service.evaluate(TENANT, "dark-mode", ContextType.USER, f"user_{i}", now=NOW).rollout_percentage
        for i in range(100)
    }

    assert first == second
    for subject, percentage in first.items():
        assert (percentage > 0) == (bucket(subject + "dark-mode") < 40)


def test_unknown_flag_returns_fallback_without_caching(service, cache):
    """Test that missing flags never raise and are not cached."""
    result = service.evaluate(TENANT, "missing", ContextType.USER, "u1", fallback_value="blue")

    assert result.value == "blue"
    assert result.is_targeted is False
    assert result.rollout_percentage == 0.0
    assert len(cache) == 0

    assert service.evaluate(TENANT, "missing", ContextType.USER, "u1").value is False


def test_inactive_flag_returns_default(service):
    flag = service.create_flag(TENANT, key="banner", name="Banner", default_value="off", value_type=FlagValueType.STRING)

    result = service.evaluate(TENANT, "banner", ContextType.USER, "u1", now=NOW)
    assert result.value == "off"
    assert result.rollout_percentage == 0.0

    service.activate_flag(TENANT, flag.id)
    service.deactivate_flag(TENANT, flag.id)
    assert service.evaluate(TENANT, "banner", ContextType.USER, "u1", now=NOW).rollout_percentage == 0.0


def test_flag_outside_date_window_returns_default(service):
    active_flag(service, start_date=NOW + timedelta(days=1))
    result = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)

    assert result.rollout_percentage == 0.0
    assert result.is_positive is False


def test_evaluation_results_are_cached_per_context(service, cache):
    active_flag(service)

    first = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)
    assert service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW) is first
    assert len(cache) == 1

    service.evaluate(TENANT, "dark-mode", ContextType.SESSION, "u1", now=NOW)
    assert len(cache) == 2


def test_status_change_invalidates_tenant_cache(service, cache):
    """Test that deactivation is visible immediately."""
    flag = active_flag(service)
    assert service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW).rollout_percentage == 100.0

    service.deactivate_flag(TENANT, flag.id)

    assert service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW).rollout_percentage == 0.0


def test_evaluation_updates_counters_and_audit(service, db):
    """Test counters and write-once audit records."""
    flag = active_flag(service, rollout_strategy=RolloutStrategy.PERCENTAGE, rollout_config={"percentage": 0})

    service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)
    service.clear_cache()
    service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)
    service.evaluate(TENANT, "dark-mode", ContextType.USER, "u2", now=NOW)

    db.expire_all()
    stored = db.query(FeatureFlag).filter(FeatureFlag.id == flag.id).one()
    assert stored.evaluation_count == 3
    assert stored.positive_evaluation_count == 0

    records = db.query(FeatureFlagEvaluation).filter(FeatureFlagEvaluation.feature_flag_id == flag.id).all()
    assert sorted(r.context_id for r in records) == ["u1", "u2"]
    assert all(r.expires_at == NOW + timedelta(hours=24) for r in records)


def test_positive_counter_counts_included_subjects(service, db):
    flag = active_flag(service)

    for i in range(5):
        service.evaluate(TENANT, "dark-mode", ContextType.USER, f"user_{i}", now=NOW)

    db.expire_all()
    stored = db.query(FeatureFlag).filter(FeatureFlag.id == flag.id).one()
    assert stored.evaluation_count == 5
    assert stored.positive_evaluation_count == 5


def test_audit_failure_does_not_break_evaluation(service):
    """Test that audit and counter writes are best-effort."""
    active_flag(service)

    with patch.object(service.audit, "save_evaluation_record", side_effect=StoreUnavailable("down")), \
            patch.object(service.definitions, "increment_flag_counters", side_effect=StoreUnavailable("down")):
        result = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)

    assert result.rollout_percentage == 100.0


def test_definition_store_failure_returns_fallback(service):
    with patch.object(service.definitions, "get_flag", side_effect=StoreUnavailable("timeout")):
        result = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", fallback_value=True)

    assert result.value is True
    assert result.rollout_percentage == 0.0


def test_broken_definition_falls_back(service, cache):
    """Test that an unexpected evaluation error degrades to the fallback."""
    active_flag(service, value_type=FlagValueType.NUMBER, default_value=5)

    with patch.object(service.rollout, "evaluate", side_effect=KeyError("boom")):
        result = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)

    assert result.value == 0
    assert len(cache) == 0


def test_evaluate_many_is_keyed_by_flag(service):
    active_flag(service, key="a")
    result = service.evaluate_many(TENANT, [
        FlagEvaluationRequest(flag_key="a", context_type=ContextType.USER, context_id="u1"),
        FlagEvaluationRequest(flag_key="missing", context_type=ContextType.USER, context_id="u1", fallback_value=7),
    ], now=NOW)

    assert result["a"].rollout_percentage == 100.0
    assert result["missing"].value == 7


def test_ab_test_flag_without_experiment_hashes_own_variants(service):
    active_flag(
        service,
        rollout_strategy=RolloutStrategy.AB_TEST,
        variants={"red": "#f00", "blue": "#00f"}
    )

    result = service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)
    assert result.variant in {"red", "blue"}
    assert result.value == {"red": "#f00", "blue": "#00f"}[result.variant]


def test_flag_analytics_aggregates_audit_records(service):
    flag = active_flag(
        service,
        rollout_strategy=RolloutStrategy.PERCENTAGE,
        rollout_config={"percentage": 0},
        targeting_rules={"subjects": ["vip"], "variant": "beta"}
    )
    service.evaluate(TENANT, "dark-mode", ContextType.USER, "vip", now=NOW)
    service.evaluate(TENANT, "dark-mode", ContextType.USER, "u1", now=NOW)

    analytics = service.get_flag_analytics(TENANT, flag.id, days=7, now=NOW + timedelta(hours=1))

    assert analytics["total_evaluations"] == 2
    assert analytics["targeted_evaluations"] == 1
    assert analytics["positive_rate"] == 0.5
    assert analytics["variants"]["beta"]["count"] == 1
    assert analytics["daily_stats"] == {"2024-03-01": 2}
