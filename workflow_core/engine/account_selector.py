"""Account Selector - Resolve the accounts and groups allowed to act on an item"""
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, TYPE_CHECKING

from .condition_evaluator import ConditionEvaluator
from ..domain.models import (
    SelectorDefinition, FilterDefinition, RuleContext, AccountUser, AccountGroup
)

if TYPE_CHECKING:
    from ..repositories.base import AccountStore


class AccountSelector:
    """
    Resolve eligible accounts for an item

    A selector matches when all of its filters hold (a selector without
    filters always matches). The result is the union of the accounts of every
    matching selector's target group, without duplicates.
    """

    def __init__(
        self,
        account_store: Optional["AccountStore"] = None,
        evaluator: Optional[ConditionEvaluator] = None
    ):
        self.account_store = account_store
        self.evaluator = evaluator or ConditionEvaluator()

    def matching_selectors(
        self,
        selectors: Sequence[SelectorDefinition],
        filters_by_selector: Mapping[str, Sequence[FilterDefinition]],
        context: RuleContext
    ) -> List[SelectorDefinition]:
        """Selectors whose filters all hold for the context"""
        return [
            selector for selector in selectors
            if self.evaluator.evaluate_all(filters_by_selector.get(selector.selector_id, ()), context)
        ]

    def select_account_ids(
        self,
        selectors: Sequence[SelectorDefinition],
        filters_by_selector: Mapping[str, Sequence[FilterDefinition]],
        context: RuleContext,
        accounts_by_group: Mapping[str, Iterable[str]]
    ) -> Set[str]:
        """
        Pure form over a pre-loaded group membership map

        Used by recalculation so a batch never touches the account store.
        """
        account_ids: Set[str] = set()
        for selector in self.matching_selectors(selectors, filters_by_selector, context):
            account_ids.update(accounts_by_group.get(selector.account_group_id, ()))
        return account_ids

    def select_accounts(
        self,
        selectors: Sequence[SelectorDefinition],
        filters_by_selector: Mapping[str, Sequence[FilterDefinition]],
        context: RuleContext
    ) -> List[AccountUser]:
        """
        Union of the accounts of all matching selectors' groups

        Returns:
            Accounts in first-seen order, de-duplicated by account_id
        """
        store = self._require_store()
        seen: Set[str] = set()
        accounts: List[AccountUser] = []
        for selector in self.matching_selectors(selectors, filters_by_selector, context):
            for account_id in sorted(store.get_account_ids(selector.account_group_id)):
                if account_id in seen:
                    continue
                seen.add(account_id)
                accounts.append(store.get_account(account_id))
        return accounts

    def select_groups(
        self,
        selectors: Sequence[SelectorDefinition],
        filters_by_selector: Mapping[str, Sequence[FilterDefinition]],
        context: RuleContext
    ) -> List[AccountGroup]:
        """Target groups of all matching selectors, de-duplicated"""
        store = self._require_store()
        groups: Dict[str, AccountGroup] = {}
        for selector in self.matching_selectors(selectors, filters_by_selector, context):
            if selector.account_group_id not in groups:
                groups[selector.account_group_id] = store.get_group(selector.account_group_id)
        return list(groups.values())

    def _require_store(self) -> "AccountStore":
        if self.account_store is None:
            raise RuntimeError("AccountSelector needs an account store to resolve accounts")
        return self.account_store


def group_by_selector(filters: Sequence[FilterDefinition]) -> Dict[str, List[FilterDefinition]]:
    """Index filters by selector_id"""
    grouped: Dict[str, List[FilterDefinition]] = {}
    for filter_definition in filters:
        grouped.setdefault(filter_definition.selector_id, []).append(filter_definition)
    return grouped
