"""Rule Validator - OR across rules, AND across each rule's conditions"""
from typing import Dict, List, Mapping, Optional, Sequence

from .condition_evaluator import ConditionEvaluator
from ..domain.models import RuleDefinition, ConditionDefinition, RuleContext


class RuleValidator:
    """
    Decide whether an item's rules are satisfied by a rule context

    - An item with no rules is never valid
    - A rule with no conditions is never satisfied
    - A rule is satisfied when all of its conditions hold
    - The item is valid when at least one rule is satisfied
    """

    def __init__(self, evaluator: Optional[ConditionEvaluator] = None):
        self.evaluator = evaluator or ConditionEvaluator()

    def is_rule_valid(
        self,
        rules: Sequence[RuleDefinition],
        conditions_by_rule: Mapping[str, Sequence[ConditionDefinition]],
        context: RuleContext
    ) -> bool:
        """
        Evaluate a set of rules

        Args:
            rules: Rules attached to one item
            conditions_by_rule: Conditions keyed by rule_id
            context: Business object and constants

        Returns:
            True if at least one rule has conditions that all hold
        """
        for rule in rules:
            if self.is_rule_satisfied(conditions_by_rule.get(rule.rule_id, ()), context):
                return True
        return False

    def is_rule_satisfied(
        self,
        conditions: Sequence[ConditionDefinition],
        context: RuleContext
    ) -> bool:
        if not conditions:
            return False
        return self.evaluator.evaluate_all(conditions, context)

    def is_item_valid(
        self,
        item_id: str,
        rules_by_item: Mapping[str, Sequence[RuleDefinition]],
        conditions_by_rule: Mapping[str, Sequence[ConditionDefinition]],
        context: RuleContext
    ) -> bool:
        """Pure form over pre-fetched dictionaries keyed by item id"""
        return self.is_rule_valid(rules_by_item.get(item_id, ()), conditions_by_rule, context)


def group_by_rule(conditions: Sequence[ConditionDefinition]) -> Dict[str, List[ConditionDefinition]]:
    """Index conditions by rule_id"""
    grouped: Dict[str, List[ConditionDefinition]] = {}
    for condition in conditions:
        grouped.setdefault(condition.rule_id, []).append(condition)
    return grouped
