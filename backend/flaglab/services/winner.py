"""Hooks applying an experiment's winning variant."""
import structlog

from flaglab.models.experiment import Experiment
from flaglab.models.feature_flag import RolloutStrategy
from flaglab.services.stores import DefinitionStore

logger = structlog.get_logger()


class WinnerApplier:
    """Default hook: records the decision and changes nothing."""

    def apply_winner(self, experiment: Experiment, winning_variant: str) -> None:
        logger.info(
            "experiment_winner_not_applied",
            experiment_id=str(experiment.id),
            winner=winning_variant
        )


class FlagWinnerApplier(WinnerApplier):
    """
    Rolls the winning variant out on every flag delegating to the experiment.

    Each linked flag gets the winner's value as its default and switches to
    the immediate strategy; the tenant's cached evaluations are dropped.
    """

    def __init__(self, definitions: DefinitionStore, cache):
        self.definitions = definitions
        self.cache = cache

    def apply_winner(self, experiment: Experiment, winning_variant: str) -> None:
        flags = self.definitions.list_flags_for_experiment(experiment.tenant_id, experiment.id)
        for flag in flags:
            flag_variants = flag.variants or {}
            if winning_variant in flag_variants:
                flag.default_value = flag_variants[winning_variant]
            else:
                flag.default_value = experiment.variants.get(winning_variant)
            flag.rollout_strategy = RolloutStrategy.IMMEDIATE
            self.definitions.save_flag(flag)
            logger.info(
                "experiment_winner_applied",
                experiment_id=str(experiment.id),
                flag_key=flag.key,
                winner=winning_variant
            )

        if flags:
            self.cache.clear_for_tenant(experiment.tenant_id)
