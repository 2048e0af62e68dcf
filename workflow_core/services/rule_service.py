"""Rule Service - Rules, selectors and constants management with storage-backed evaluation"""
from typing import Dict, Iterable, List, Optional, Sequence

from ..domain.models import (
    RuleDefinition, ConditionDefinition, SelectorDefinition, FilterDefinition,
    RuleConstants, RuleContext, RuleCriteria, AccountUser, AccountGroup
)
from ..domain.errors import RuleNotFoundError, SelectorNotFoundError
from ..engine.condition_evaluator import ConditionEvaluator
from ..engine.rule_validator import RuleValidator, group_by_rule
from ..engine.account_selector import AccountSelector, group_by_selector
from ..middleware import ReadThroughCache, log_call, transactional
from ..repositories.base import RuleStore, AccountStore
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RuleService:
    """
    Service for rule and selector operations

    Reads of rule configuration go through a read-through cache that every
    write clears.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        account_store: AccountStore,
        cache_enabled: bool = True,
        evaluator: Optional[ConditionEvaluator] = None
    ):
        self.rule_store = rule_store
        self.account_store = account_store
        self.evaluator = evaluator or ConditionEvaluator()
        self.validator = RuleValidator(self.evaluator)
        self.selector = AccountSelector(account_store, self.evaluator)
        self._cache = ReadThroughCache("rules", enabled=cache_enabled)

    # =========================================================================
    # Rules & Conditions
    # =========================================================================

    @transactional("rule_store")
    def add_rule(
        self,
        rule: RuleDefinition,
        conditions: Sequence[ConditionDefinition] = ()
    ) -> RuleDefinition:
        """Store a rule with its conditions"""
        created = self.rule_store.add_rule(rule)
        for condition in conditions:
            self.rule_store.add_condition(condition.model_copy(update={"rule_id": created.rule_id}))
        self._cache.clear()
        logger.info(f"Added rule {created.rule_id} on item {created.item_id} with {len(conditions)} conditions")
        return created

    def update_rule(self, rule: RuleDefinition) -> RuleDefinition:
        updated = self.rule_store.update_rule(rule)
        self._cache.clear()
        return updated

    def get_rule(self, rule_id: str) -> RuleDefinition:
        rule = self.rule_store.read_rule(rule_id)
        if rule is None:
            raise RuleNotFoundError(f"Rule {rule_id} not found", details={"rule_id": rule_id})
        return rule

    def add_condition(self, condition: ConditionDefinition) -> ConditionDefinition:
        self.get_rule(condition.rule_id)
        created = self.rule_store.add_condition(condition)
        self._cache.clear()
        return created

    def update_condition(self, condition: ConditionDefinition) -> ConditionDefinition:
        updated = self.rule_store.update_condition(condition)
        self._cache.clear()
        return updated

    def remove_condition(self, condition_id: str) -> None:
        self.rule_store.remove_condition(condition_id)
        self._cache.clear()

    def remove_rules(self, rule_ids: Iterable[str]) -> None:
        self.rule_store.remove_rules(list(rule_ids))
        self._cache.clear()

    def get_rules_for_item_id(self, item_id: str) -> List[RuleDefinition]:
        return self._cache.get(("rules", item_id), lambda: self.rule_store.find_rules_by_item(item_id))

    def get_conditions_for_rule_id(self, rule_id: str) -> List[ConditionDefinition]:
        return self._cache.get(("conditions", rule_id), lambda: self.rule_store.find_conditions_by_rule(rule_id))

    # =========================================================================
    # Selectors & Filters
    # =========================================================================

    @transactional("rule_store")
    def add_selector(
        self,
        selector: SelectorDefinition,
        filters: Sequence[FilterDefinition] = ()
    ) -> SelectorDefinition:
        """Store a selector with its filters"""
        created = self.rule_store.add_selector(selector)
        for filter_definition in filters:
            self.rule_store.add_filter(filter_definition.model_copy(update={"selector_id": created.selector_id}))
        self._cache.clear()
        logger.info(
            f"Added selector {created.selector_id} on item {created.item_id} "
            f"for group {created.account_group_id} with {len(filters)} filters"
        )
        return created

    def update_selector(self, selector: SelectorDefinition) -> SelectorDefinition:
        updated = self.rule_store.update_selector(selector)
        self._cache.clear()
        return updated

    def get_selector(self, selector_id: str) -> SelectorDefinition:
        selector = self.rule_store.read_selector(selector_id)
        if selector is None:
            raise SelectorNotFoundError(f"Selector {selector_id} not found", details={"selector_id": selector_id})
        return selector

    def add_filter(self, filter_definition: FilterDefinition) -> FilterDefinition:
        self.get_selector(filter_definition.selector_id)
        created = self.rule_store.add_filter(filter_definition)
        self._cache.clear()
        return created

    def update_filter(self, filter_definition: FilterDefinition) -> FilterDefinition:
        updated = self.rule_store.update_filter(filter_definition)
        self._cache.clear()
        return updated

    def remove_filter(self, filter_id: str) -> None:
        self.rule_store.remove_filter(filter_id)
        self._cache.clear()

    def remove_selectors(self, selector_ids: Iterable[str]) -> None:
        self.rule_store.remove_selectors(list(selector_ids))
        self._cache.clear()

    @log_call("rules.remove_selectors_by_group")
    def remove_selectors_filters_by_group_id(self, group_id: str) -> int:
        """Remove every selector tagged with group_id, with its filters"""
        removed = self.rule_store.remove_selectors_filters_by_group_id(group_id)
        self._cache.clear()
        return removed

    def get_selectors_for_item_id(self, item_id: str) -> List[SelectorDefinition]:
        return self._cache.get(("selectors", item_id), lambda: self.rule_store.find_selectors_by_item(item_id))

    def get_filters_for_selector_id(self, selector_id: str) -> List[FilterDefinition]:
        return self._cache.get(("filters", selector_id), lambda: self.rule_store.find_filters_by_selector(selector_id))

    # =========================================================================
    # Constants
    # =========================================================================

    def add_constants(self, key: str, constants: RuleConstants) -> None:
        self.rule_store.add_constants(key, constants)
        self._cache.clear()

    def get_constants(self, key: str) -> RuleConstants:
        return self._cache.get(("constants", key), lambda: self.rule_store.read_constants(key))

    # =========================================================================
    # Evaluation
    # =========================================================================

    def is_rule_valid(self, item_id: str, context: RuleContext) -> bool:
        """
        Storage-backed rule validity of an item

        Args:
            item_id: Item the rules are attached to (an activity definition id)
            context: Business object and constants

        Returns:
            True if at least one rule of the item has conditions that all hold
        """
        rules = self.get_rules_for_item_id(item_id)
        conditions_by_rule = {rule.rule_id: self.get_conditions_for_rule_id(rule.rule_id) for rule in rules}
        return self.validator.is_rule_valid(rules, conditions_by_rule, context)

    def select_accounts(self, item_id: str, context: RuleContext) -> List[AccountUser]:
        """Union of the accounts of the item's matching selectors"""
        selectors, filters_by_selector = self._selectors_with_filters(item_id)
        return self.selector.select_accounts(selectors, filters_by_selector, context)

    def select_groups(self, item_id: str, context: RuleContext) -> List[AccountGroup]:
        selectors, filters_by_selector = self._selectors_with_filters(item_id)
        return self.selector.select_groups(selectors, filters_by_selector, context)

    def _selectors_with_filters(self, item_id: str):
        selectors = self.get_selectors_for_item_id(item_id)
        filters_by_selector = {
            selector.selector_id: self.get_filters_for_selector_id(selector.selector_id)
            for selector in selectors
        }
        return selectors, filters_by_selector

    # =========================================================================
    # Bulk loading & criteria
    # =========================================================================

    def load_rules(self, item_ids: Iterable[str]):
        """Rules keyed by item id and conditions keyed by rule id, in two store reads"""
        item_ids = list(item_ids)
        rules = self.rule_store.find_rules_by_items(item_ids)
        rules_by_item: Dict[str, List[RuleDefinition]] = {item_id: [] for item_id in item_ids}
        for rule in rules:
            rules_by_item.setdefault(rule.item_id, []).append(rule)
        conditions = self.rule_store.find_conditions_by_rules([rule.rule_id for rule in rules])
        return rules_by_item, group_by_rule(conditions)

    def load_selectors(self, item_ids: Iterable[str]):
        """Selectors keyed by item id and filters keyed by selector id, in two store reads"""
        item_ids = list(item_ids)
        selectors = self.rule_store.find_selectors_by_items(item_ids)
        selectors_by_item: Dict[str, List[SelectorDefinition]] = {item_id: [] for item_id in item_ids}
        for selector in selectors:
            selectors_by_item.setdefault(selector.item_id, []).append(selector)
        filters = self.rule_store.find_filters_by_selectors([selector.selector_id for selector in selectors])
        return selectors_by_item, group_by_selector(filters)

    def find_rules_by_criteria(
        self,
        criteria: RuleCriteria,
        item_ids: Iterable[str],
        constants: Optional[RuleConstants] = None
    ) -> List[RuleDefinition]:
        """
        Rules among the given items that accept the criteria

        A rule accepts a criterion when it has no condition on the criterion's
        field, or when every condition it has on that field holds for the
        criterion's value.
        """
        rules_by_item, conditions_by_rule = self.load_rules(item_ids)
        candidate = RuleContext(
            business_object={c.field: c.value for c in criteria.criteria},
            constants=constants or RuleConstants(),
        )
        fields = set(candidate.business_object)

        matching: List[RuleDefinition] = []
        for rules in rules_by_item.values():
            for rule in rules:
                constrained = [c for c in conditions_by_rule.get(rule.rule_id, ()) if c.field in fields]
                if self.evaluator.evaluate_all(constrained, candidate):
                    matching.append(rule)
        return matching

    def find_items_by_criteria(
        self,
        criteria: RuleCriteria,
        item_ids: Iterable[str],
        constants: Optional[RuleConstants] = None
    ) -> List[str]:
        """Items having at least one rule that accepts the criteria, in input order"""
        item_ids = list(item_ids)
        matched = {rule.item_id for rule in self.find_rules_by_criteria(criteria, item_ids, constants)}
        return [item_id for item_id in item_ids if item_id in matched]
