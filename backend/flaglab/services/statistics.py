"""Experiment results: conversion rates, confidence intervals, significance.

The default significance rule is a simple heuristic (more than
100 participants and a conversion-rate gap above five points). It sits
behind the `significance_test` seam so a proper test can replace it without
touching callers; `TwoProportionZTest` is one such replacement.
"""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from math import erf, floor, sqrt
from typing import Dict, Iterable, List, Optional, Tuple

from flaglab.models.experiment import Experiment
from flaglab.models.participant import Participant, ParticipantStatus

Z_95 = 1.96


@dataclass
class VariantStats:
    participants: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    confidence_interval: Tuple[float, float] = (0.0, 0.0)
    is_winner: bool = False
    statistical_significance: float = 0.0


@dataclass
class ResultsSnapshot:
    total_participants: int
    variant_stats: Dict[str, VariantStats] = field(default_factory=dict)
    winner: Optional[str] = None
    is_statistically_significant: bool = False
    test_duration_days: int = 0
    sample_size_reached: bool = False
    duration_elapsed: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        for stats in data["variant_stats"].values():
            stats["confidence_interval"] = list(stats["confidence_interval"])
        return data


def confidence_interval(rate: float, sample_size: int, z: float = Z_95) -> Tuple[float, float]:
    """Wald interval for a proportion, clamped to [0, 1]."""
    if sample_size == 0:
        return (0.0, 0.0)
    margin = z * sqrt(rate * (1 - rate) / sample_size)
    return (max(0.0, rate - margin), min(1.0, rate + margin))


def _norm_cdf(x: float) -> float:
    return 0.5 * (1.0 + erf(x / sqrt(2.0)))


def two_proportion_p_value(conv_a: int, n_a: int, conv_b: int, n_b: int) -> float:
    """Two-sided p-value of a pooled two-proportion z-test."""
    if n_a == 0 or n_b == 0:
        return 1.0
    pooled = (conv_a + conv_b) / (n_a + n_b)
    se = sqrt(pooled * (1 - pooled) * (1 / n_a + 1 / n_b))
    if se == 0:
        return 1.0
    z = (conv_b / n_b - conv_a / n_a) / se
    return 2.0 * (1.0 - _norm_cdf(abs(z)))


class RateGapHeuristic:
    """Significant when total participants > 100 and max-min rate gap > 0.05."""

    min_total_participants = 100
    min_rate_gap = 0.05

    def is_significant(
        self,
        stats: Dict[str, VariantStats],
        order: List[str],
        control: Optional[str],
        significance_level: float
    ) -> bool:
        if len(order) < 2:
            return False
        rates = [stats[v].conversion_rate for v in order]
        total = sum(stats[v].participants for v in order)
        return total > self.min_total_participants and (max(rates) - min(rates)) > self.min_rate_gap


class TwoProportionZTest:
    """Each treatment against control; significant if the best p-value < alpha."""

    def annotate(self, stats: Dict[str, VariantStats], order: List[str], control: str) -> None:
        """Store 1 - p against control on every treatment variant."""
        base = stats[control]
        for variant in order:
            if variant == control:
                continue
            p = two_proportion_p_value(
                base.conversions, base.participants,
                stats[variant].conversions, stats[variant].participants
            )
            stats[variant].statistical_significance = 1.0 - p

    def is_significant(
        self,
        stats: Dict[str, VariantStats],
        order: List[str],
        control: Optional[str],
        significance_level: float
    ) -> bool:
        if control is None or len(order) < 2:
            return False
        self.annotate(stats, order, control)
        return any(
            (1.0 - stats[v].statistical_significance) < significance_level
            for v in order if v != control
        )


def find_control(variant_names: Iterable[str]) -> Optional[str]:
    """Variant whose name is `control`, case-insensitively."""
    for name in variant_names:
        if name.lower() == "control":
            return name
    return None


class StatisticsEngine:
    """Computes a results snapshot from an experiment and its participants."""

    def __init__(self, significance_test=None):
        self.significance_test = significance_test or RateGapHeuristic()

    def compute_results(
        self,
        experiment: Experiment,
        participants: List[Participant],
        now: Optional[datetime] = None
    ) -> ResultsSnapshot:
        order = experiment.ordered_variants
        stats: Dict[str, VariantStats] = {}

        for variant in order:
            members = [p for p in participants if p.variant == variant]
            conversions = sum(1 for p in members if p.status == ParticipantStatus.CONVERTED)
            rate = conversions / len(members) if members else 0.0
            stats[variant] = VariantStats(
                participants=len(members),
                conversions=conversions,
                conversion_rate=rate,
                confidence_interval=confidence_interval(rate, len(members))
            )

        total = sum(s.participants for s in stats.values())

        # Strictly greater keeps the first-defined variant on ties
        winner = None
        if total > 0:
            for variant in order:
                if winner is None or stats[variant].conversion_rate > stats[winner].conversion_rate:
                    winner = variant
            stats[winner].is_winner = True

        control = find_control(order)
        significant = self.significance_test.is_significant(
            stats, order, control, experiment.significance_level or 0.05
        )

        now = now or datetime.utcnow()
        duration_days = 0
        if experiment.start_date:
            end = experiment.end_date or now
            duration_days = max(0, floor((end - experiment.start_date).total_seconds() / 86400))

        return ResultsSnapshot(
            total_participants=total,
            variant_stats=stats,
            winner=winner,
            is_statistically_significant=significant,
            test_duration_days=duration_days,
            sample_size_reached=bool(
                experiment.minimum_sample_size
                and all(s.participants >= experiment.minimum_sample_size for s in stats.values())
            ),
            duration_elapsed=bool(experiment.planned_end_date and now >= experiment.planned_end_date)
        )
