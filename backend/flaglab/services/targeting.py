"""Targeting rule matching for flags and experiments."""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from flaglab.models.evaluation import ContextType
from flaglab.services.hashing import bucket


@dataclass
class TargetingResult:
    """Outcome of matching an evaluation context against targeting rules."""

    is_targeted: bool
    variant: Optional[str] = None


NOT_TARGETED = TargetingResult(is_targeted=False)


def matches_attributes(expected: Optional[Dict[str, Any]], actual: Optional[Dict[str, Any]]) -> bool:
    """True when every expected key is present in `actual` with an equal value."""
    if not expected:
        return True
    actual = actual or {}
    for key, value in expected.items():
        if key not in actual or actual[key] != value:
            return False
    return True


def matches_subject_attributes(
    rules: Optional[Dict[str, Any]],
    user_attributes: Optional[Dict[str, Any]] = None,
    device_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Experiment eligibility check.

    Rules may carry `user_attributes` and `device_info` maps; a subject is
    eligible when it matches all of both.
    """
    if not rules:
        return True
    return (
        matches_attributes(rules.get("user_attributes"), user_attributes)
        and matches_attributes(rules.get("device_info"), device_info)
    )


class TargetingRuleEvaluator:
    """
    Matches an evaluation context against a flag's targeting rules.

    Precedence, first match wins:
    1. explicit subject list (user contexts only)
    2. attribute equality against context data
    3. percentage gate on the salted subject bucket
    """

    def evaluate(
        self,
        rules: Optional[Dict[str, Any]],
        flag_key: str,
        context_type: ContextType,
        context_id: str,
        context_data: Optional[Dict[str, Any]] = None
    ) -> TargetingResult:
        if not rules:
            return NOT_TARGETED

        rule_variant = rules.get("variant")

        subjects = rules.get("subjects", rules.get("users"))
        if subjects and ContextType(context_type) == ContextType.USER and context_id in subjects:
            return TargetingResult(is_targeted=True, variant=rule_variant or "targeted")

        attributes = rules.get("attributes")
        if attributes and context_data is not None and matches_attributes(attributes, context_data):
            return TargetingResult(is_targeted=True, variant=rule_variant or "targeted")

        percentage = rules.get("percentage")
        if percentage and bucket(context_id + flag_key) < percentage:
            return TargetingResult(is_targeted=True, variant=rule_variant or "percentage")

        return NOT_TARGETED
