"""Tests for experimentation service."""
import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock
from sqlalchemy.orm import Session

from flaglab.exceptions import DefinitionNotFound, NotEligible, NotRunning, ValidationError
from flaglab.models.evaluation import ContextType
from flaglab.models.experiment import ExperimentStatus
from flaglab.models.feature_flag import FlagStatus, RolloutStrategy
from flaglab.models.participant import ParticipantStatus
from flaglab.services.assignment import SessionInfo
from flaglab.services.experiments import (
    ExperimentManager,
    equal_traffic_allocation,
    experiment_variant_assigner,
    validate_traffic_allocation,
)
from flaglab.services.feature_flags import FeatureFlagService
from flaglab.services.stores import DefinitionStore
from flaglab.services.winner import FlagWinnerApplier

TENANT = "tenant_a"
NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def manager(db: Session):
    return ExperimentManager(db)


def running_experiment(manager, **kwargs):
    kwargs.setdefault("name", "Checkout copy")
    kwargs.setdefault("variants", {"control": {}, "treatment": {}})
    experiment = manager.create_experiment(TENANT, **kwargs)
    return manager.start_experiment(TENANT, experiment.id, now=NOW)


def test_equal_allocation_sums_to_exactly_100():
    allocation = equal_traffic_allocation(["control", "a", "b"])
    assert sum(allocation.values()) == 100
    assert list(allocation) == ["control", "a", "b"]


@pytest.mark.parametrize("allocation", [
    {"control": 50},
    {"control": 50, "treatment": 40},
    {"control": 50, "treatment": 50, "other": 0},
    {"control": -10, "treatment": 110},
    {"control": True, "treatment": 99},
])
def test_invalid_allocations_are_rejected(allocation):
    with pytest.raises(ValidationError):
        validate_traffic_allocation(allocation, ["control", "treatment"])


def test_allocation_tolerates_rounding():
    validate_traffic_allocation({"control": 33.34, "b": 33.33, "c": 33.33}, ["control", "b", "c"])


def test_create_experiment_requires_control(manager):
    with pytest.raises(ValidationError):
        manager.create_experiment(TENANT, name="No control", variants={"a": {}, "b": {}})


def test_create_experiment_defaults_to_equal_split_in_draft(manager):
    experiment = manager.create_experiment(TENANT, name="Split", variants={"Control": {}, "b": {}})

    assert experiment.status == ExperimentStatus.DRAFT
    assert experiment.traffic_allocation == {"Control": 50, "b": 50}
    assert experiment.variant_order == ["Control", "b"]
    assert experiment.results["total_participants"] == 0


def test_start_sets_dates_and_only_from_draft(manager):
    experiment = manager.create_experiment(TENANT, name="Dated", variants={"control": {}}, maximum_duration_days=14)
    started = manager.start_experiment(TENANT, experiment.id, now=NOW)

    assert started.status == ExperimentStatus.RUNNING
    assert started.start_date == NOW
    assert started.planned_end_date == NOW + timedelta(days=14)

    with pytest.raises(NotRunning):
        manager.start_experiment(TENANT, experiment.id)


def test_assignment_distribution_follows_allocation(manager):
    """Test that 10,000 subjects split roughly 50/50."""
    experiment = running_experiment(manager)

    counts = {"control": 0, "treatment": 0}
    for i in range(10000):
        participant = manager.assign_participant(experiment.id, f"subject_{i}")
        counts[participant.variant] += 1

    for variant, count in counts.items():
        assert 4500 <= count <= 5500, f"{variant} should be ~50%, got {count / 100}%"


def test_assignment_is_idempotent(manager):
    """Test that repeated assignment returns the original row."""
    experiment = running_experiment(manager)

    first = manager.assign_participant(experiment.id, "user_123", SessionInfo(session_id="s1"))
    second = manager.assign_participant(experiment.id, "user_123", SessionInfo(session_id="s2"))

    assert first.id == second.id
    assert second.variant == first.variant
    assert second.session_id == "s1"
    assert manager.get_participant_stats(TENANT, experiment.id)["total"] == 1


def test_assignment_keeps_existing_participant_after_pause(manager):
    experiment = running_experiment(manager)
    first = manager.assign_participant(experiment.id, "user_123")

    manager.pause_experiment(TENANT, experiment.id)

    assert manager.assign_participant(experiment.id, "user_123").id == first.id
    with pytest.raises(NotRunning):
        manager.assign_participant(experiment.id, "user_456")


def test_assignment_to_draft_or_missing_experiment_fails(manager):
    experiment = manager.create_experiment(TENANT, name="Draft", variants={"control": {}})

    with pytest.raises(NotRunning):
        manager.assign_participant(experiment.id, "user_123")
    with pytest.raises(DefinitionNotFound):
        manager.assign_participant("00000000-0000-0000-0000-000000000000", "user_123")


def test_assignment_respects_targeting(manager):
    """Test that ineligible subjects are refused."""
    experiment = running_experiment(manager, targeting_rules={"user_attributes": {"plan": "pro"}})

    with pytest.raises(NotEligible):
        manager.assign_participant(experiment.id, "free_user", SessionInfo(user_attributes={"plan": "free"}))

    participant = manager.assign_participant(experiment.id, "pro_user", SessionInfo(user_attributes={"plan": "pro"}))
    assert participant.user_attributes == {"plan": "pro"}


def test_concurrent_first_assignment_returns_existing_row(manager):
    """Test the duplicate-insert path of a racing assignment."""
    experiment = running_experiment(manager)
    winner = manager.assign_participant(experiment.id, "user_123")

    original_find = manager.participations.find_participant
    calls = []

    def find_after_race(experiment_id, subject_id):
        calls.append(subject_id)
        # First lookup misses, as if the other request had not committed yet
        if len(calls) == 1:
            return None
        return original_find(experiment_id, subject_id)

    manager.participations.find_participant = find_after_race
    participant = manager.assign_participant(experiment.id, "user_123")

    assert participant.id == winner.id
    assert len(calls) == 2


def test_conversion_is_one_way(manager):
    """Test that a second conversion leaves the first in place."""
    experiment = running_experiment(manager)
    manager.assign_participant(experiment.id, "user_123")

    first = manager.track_conversion(experiment.id, "user_123", {"value": 10}, at=NOW)
    second = manager.track_conversion(experiment.id, "user_123", {"value": 99}, at=NOW + timedelta(hours=1))

    assert first.status == ParticipantStatus.CONVERTED
    assert second.converted_at == NOW
    assert second.conversion_data == {"value": 10}


def test_conversion_for_unknown_subject_is_ignored(manager):
    experiment = running_experiment(manager)
    assert manager.track_conversion(experiment.id, "stranger") is None


def test_stop_freezes_results(manager):
    experiment = running_experiment(manager)
    for i in range(20):
        manager.assign_participant(experiment.id, f"user_{i}")

    stopped = manager.stop_experiment(TENANT, experiment.id, now=NOW + timedelta(days=3))

    assert stopped.status == ExperimentStatus.COMPLETED
    assert stopped.end_date == NOW + timedelta(days=3)
    assert stopped.results["total_participants"] == 20
    assert stopped.results["test_duration_days"] == 3
    assert manager.get_experiment_results(TENANT, experiment.id) == stopped.results

    with pytest.raises(NotRunning):
        manager.stop_experiment(TENANT, experiment.id)


def test_cancel_and_lifecycle_transitions(manager):
    experiment = running_experiment(manager)

    with pytest.raises(NotRunning):
        manager.resume_experiment(TENANT, experiment.id)

    assert manager.pause_experiment(TENANT, experiment.id).status == ExperimentStatus.PAUSED
    assert manager.resume_experiment(TENANT, experiment.id).status == ExperimentStatus.RUNNING

    cancelled = manager.cancel_experiment(TENANT, experiment.id)
    assert cancelled.status == ExperimentStatus.CANCELLED
    with pytest.raises(NotRunning):
        manager.cancel_experiment(TENANT, experiment.id)


def test_experiments_are_tenant_scoped(manager):
    experiment = running_experiment(manager)
    with pytest.raises(DefinitionNotFound):
        manager.get_experiment("tenant_b", experiment.id)
    assert manager.list_experiments("tenant_b") == []


def convert_treatment_until_stopped(manager, experiment, subjects=300):
    for i in range(subjects):
        manager.assign_participant(experiment.id, f"user_{i}")
    for participant in manager.participations.list_participants(experiment.id):
        if participant.variant == "treatment":
            manager.track_conversion(experiment.id, participant.subject_id, at=NOW)


def test_auto_stop_on_significance_applies_winner(manager):
    """Test that significant results complete the experiment and call the winner hook."""
    applier = MagicMock()
    manager.winner_applier = applier
    experiment = running_experiment(manager, auto_stop_on_significance=True, auto_apply_winner=True)

    convert_treatment_until_stopped(manager, experiment)

    stored = manager.get_experiment(TENANT, experiment.id)
    assert stored.status == ExperimentStatus.COMPLETED
    assert stored.results["winner"] == "treatment"
    assert stored.results["is_statistically_significant"] is True
    applier.apply_winner.assert_called_once()
    assert applier.apply_winner.call_args[0][1] == "treatment"


def test_no_auto_stop_without_flag(manager):
    experiment = running_experiment(manager)
    convert_treatment_until_stopped(manager, experiment)

    assert manager.get_experiment(TENANT, experiment.id).status == ExperimentStatus.RUNNING
    results = manager.get_experiment_results(TENANT, experiment.id, now=NOW)
    assert results["winner"] == "treatment"


def test_flag_winner_applier_rolls_out_winner(db, cache):
    """Test that applying a winner updates linked flags and drops cached evaluations."""
    manager = ExperimentManager(db, winner_applier=FlagWinnerApplier(DefinitionStore(db), cache))
    flags = FeatureFlagService(db, cache, assign_experiment_variant=experiment_variant_assigner(manager))

    experiment = running_experiment(
        manager,
        variants={"control": "Buy", "treatment": "Buy now"},
        auto_stop_on_significance=True,
        auto_apply_winner=True
    )
    flag = flags.create_flag(
        TENANT,
        key="checkout-copy",
        name="Checkout copy",
        default_value="Buy",
        rollout_strategy=RolloutStrategy.AB_TEST,
        variants={"control": "Buy", "treatment": "Buy now"},
        experiment_id=experiment.id
    )
    flags.activate_flag(TENANT, flag.id)

    # Evaluating the flag assigns the subject through the experiment
    result = flags.evaluate(TENANT, "checkout-copy", ContextType.USER, "user_0", now=NOW)
    participant = manager.participations.find_participant(experiment.id, "user_0")
    assert result.variant == participant.variant
    assert len(cache) == 1

    convert_treatment_until_stopped(manager, experiment)

    updated = flags.get_flag(TENANT, flag.id)
    assert updated.status == FlagStatus.ACTIVE
    assert updated.rollout_strategy == RolloutStrategy.IMMEDIATE
    assert updated.default_value == "Buy now"
    assert len(cache) == 0
    assert flags.evaluate(TENANT, "checkout-copy", ContextType.USER, "user_9999").value == "Buy now"


def test_ab_flag_for_experiment_not_running_is_not_included(db, cache):
    manager = ExperimentManager(db)
    flags = FeatureFlagService(db, cache, assign_experiment_variant=experiment_variant_assigner(manager))
    experiment = manager.create_experiment(TENANT, name="Draft", variants={"control": 1, "treatment": 2})

    flag = flags.create_flag(
        TENANT, key="ab", name="AB", rollout_strategy=RolloutStrategy.AB_TEST, experiment_id=experiment.id
    )
    flags.activate_flag(TENANT, flag.id)

    result = flags.evaluate(TENANT, "ab", ContextType.USER, "user_1", now=NOW)
    assert result.rollout_percentage == 0.0
    assert result.variant is None


def test_participant_stats(manager):
    experiment = running_experiment(manager)
    for i in range(10):
        manager.assign_participant(experiment.id, f"user_{i}")
    manager.track_conversion(experiment.id, "user_0")

    stats = manager.get_participant_stats(TENANT, experiment.id)
    assert stats["total"] == 10
    assert stats["converted"] == 1
    assert stats["active"] == 9
    assert sum(stats["by_variant"].values()) == 10


def test_ab_flag_cannot_link_experiment_of_other_tenant(db, cache):
    manager = ExperimentManager(db)
    flags = FeatureFlagService(db, cache, assign_experiment_variant=experiment_variant_assigner(manager))
    experiment = running_experiment(manager)

    with pytest.raises(ValidationError):
        flags.create_flag(
            "tenant_b", key="ab", name="AB", rollout_strategy=RolloutStrategy.AB_TEST, experiment_id=experiment.id
        )

    flag = flags.create_flag("tenant_b", key="ab", name="AB", rollout_strategy=RolloutStrategy.AB_TEST)
    with pytest.raises(ValidationError):
        flags.update_flag("tenant_b", flag.id, {"experiment_id": experiment.id})
    assert flags.get_flag("tenant_b", flag.id).experiment_id is None


def test_ab_flag_linked_to_other_tenant_experiment_assigns_nobody(db, cache):
    """Test that a stored cross-tenant link never writes participants."""
    manager = ExperimentManager(db)
    flags = FeatureFlagService(db, cache, assign_experiment_variant=experiment_variant_assigner(manager))
    experiment = running_experiment(manager)

    flag = flags.create_flag("tenant_b", key="ab", name="AB", rollout_strategy=RolloutStrategy.AB_TEST)
    flags.activate_flag("tenant_b", flag.id)
    flag.experiment_id = experiment.id
    db.commit()

    for i in range(5):
        result = flags.evaluate("tenant_b", "ab", ContextType.USER, f"user_{i}", now=NOW)
        assert result.variant is None
        assert result.rollout_percentage == 0.0

    assert manager.get_participant_stats(TENANT, experiment.id)["total"] == 0
