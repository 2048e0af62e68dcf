"""Rule Repository - MongoDB data access for rules, selectors, constants, items and accounts"""
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from pymongo import UpdateOne

from .base import RuleStore, ItemStore, AccountStore
from .mongo_client import MongoConnection, MongoRepository
from ..domain.models import (
    RuleDefinition, ConditionDefinition, SelectorDefinition, FilterDefinition,
    RuleConstants, AccountUser, AccountGroup
)
from ..domain.errors import (
    NotFoundError, RuleNotFoundError, SelectorNotFoundError, AccountGroupNotFoundError
)
from ..utils import idgen
from ..utils.logger import get_logger

logger = get_logger(__name__)

RULES = "rules"
CONDITIONS = "conditions"
SELECTORS = "selectors"
FILTERS = "filters"
CONSTANTS = "rule_constants"
ITEMS = "items"
ACCOUNTS = "accounts"
ACCOUNT_GROUPS = "account_groups"


class MongoRuleStore(MongoRepository, RuleStore):
    """Rule store backed by MongoDB"""

    def __init__(self, connection: MongoConnection):
        super().__init__(connection)

    # =========================================================================
    # Rules & Conditions
    # =========================================================================

    def add_rule(self, rule: RuleDefinition) -> RuleDefinition:
        return self._insert(RULES, "rule_id", rule, idgen.generate_rule_id)

    def read_rule(self, rule_id: str) -> Optional[RuleDefinition]:
        return self._find_one(RULES, RuleDefinition, {"_id": rule_id})

    def update_rule(self, rule: RuleDefinition) -> RuleDefinition:
        return self._replace(RULES, "rule_id", rule, RuleNotFoundError)

    def remove_rule(self, rule_id: str) -> None:
        with self.transaction():
            self._delete(CONDITIONS, {"rule_id": rule_id})
            self._delete(RULES, {"_id": rule_id})

    def find_rules_by_item(self, item_id: str) -> List[RuleDefinition]:
        return self._find(RULES, RuleDefinition, {"item_id": item_id})

    def find_rules_by_items(self, item_ids: Iterable[str]) -> List[RuleDefinition]:
        return self._find(RULES, RuleDefinition, {"item_id": {"$in": list(item_ids)}})

    def add_condition(self, condition: ConditionDefinition) -> ConditionDefinition:
        return self._insert(CONDITIONS, "condition_id", condition, idgen.generate_condition_id)

    def update_condition(self, condition: ConditionDefinition) -> ConditionDefinition:
        return self._replace(CONDITIONS, "condition_id", condition)

    def remove_condition(self, condition_id: str) -> None:
        self._delete(CONDITIONS, {"_id": condition_id})

    def find_conditions_by_rule(self, rule_id: str) -> List[ConditionDefinition]:
        return self._find(CONDITIONS, ConditionDefinition, {"rule_id": rule_id})

    def find_conditions_by_rules(self, rule_ids: Iterable[str]) -> List[ConditionDefinition]:
        return self._find(CONDITIONS, ConditionDefinition, {"rule_id": {"$in": list(rule_ids)}})

    def remove_rules(self, rule_ids: Iterable[str]) -> None:
        rule_ids = list(rule_ids)
        with self.transaction():
            self._delete(CONDITIONS, {"rule_id": {"$in": rule_ids}})
            self._delete(RULES, {"_id": {"$in": rule_ids}})

    # =========================================================================
    # Selectors & Filters
    # =========================================================================

    def add_selector(self, selector: SelectorDefinition) -> SelectorDefinition:
        return self._insert(SELECTORS, "selector_id", selector, idgen.generate_selector_id)

    def read_selector(self, selector_id: str) -> Optional[SelectorDefinition]:
        return self._find_one(SELECTORS, SelectorDefinition, {"_id": selector_id})

    def update_selector(self, selector: SelectorDefinition) -> SelectorDefinition:
        return self._replace(SELECTORS, "selector_id", selector, SelectorNotFoundError)

    def remove_selector(self, selector_id: str) -> None:
        with self.transaction():
            self._delete(FILTERS, {"selector_id": selector_id})
            self._delete(SELECTORS, {"_id": selector_id})

    def find_selectors_by_item(self, item_id: str) -> List[SelectorDefinition]:
        return self._find(SELECTORS, SelectorDefinition, {"item_id": item_id})

    def find_selectors_by_items(self, item_ids: Iterable[str]) -> List[SelectorDefinition]:
        return self._find(SELECTORS, SelectorDefinition, {"item_id": {"$in": list(item_ids)}})

    def find_selectors_by_group_id(self, group_id: str) -> List[SelectorDefinition]:
        return self._find(SELECTORS, SelectorDefinition, {"group_id": group_id})

    def add_filter(self, filter_definition: FilterDefinition) -> FilterDefinition:
        return self._insert(FILTERS, "filter_id", filter_definition, idgen.generate_filter_id)

    def update_filter(self, filter_definition: FilterDefinition) -> FilterDefinition:
        return self._replace(FILTERS, "filter_id", filter_definition)

    def remove_filter(self, filter_id: str) -> None:
        self._delete(FILTERS, {"_id": filter_id})

    def find_filters_by_selector(self, selector_id: str) -> List[FilterDefinition]:
        return self._find(FILTERS, FilterDefinition, {"selector_id": selector_id})

    def find_filters_by_selectors(self, selector_ids: Iterable[str]) -> List[FilterDefinition]:
        return self._find(FILTERS, FilterDefinition, {"selector_id": {"$in": list(selector_ids)}})

    def remove_selectors_filters_by_group_id(self, group_id: str) -> int:
        with self.transaction():
            selector_ids = [s.selector_id for s in self.find_selectors_by_group_id(group_id)]
            self._delete(FILTERS, {"selector_id": {"$in": selector_ids}})
            removed = self._delete(SELECTORS, {"_id": {"$in": selector_ids}})
        logger.info(f"Removed {removed} selectors tagged {group_id}", extra={"group_id": group_id})
        return removed

    # =========================================================================
    # Constants
    # =========================================================================

    def add_constants(self, key: str, constants: RuleConstants) -> None:
        self._collection(CONSTANTS).replace_one(
            {"_id": key},
            {"_id": key, **constants.model_dump(mode="json")},
            upsert=True,
            session=self.connection.session()
        )

    def read_constants(self, key: str) -> RuleConstants:
        constants = self._find_one(CONSTANTS, RuleConstants, {"_id": key})
        return constants if constants is not None else RuleConstants()


class MongoItemStore(MongoRepository, ItemStore):
    """
    Business objects stored as plain documents keyed by item id

    Items are returned as dicts, which rules read by key.
    """

    def __init__(self, connection: MongoConnection, collection: str = ITEMS):
        super().__init__(connection)
        self.collection_name = collection

    def read_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        doc = self._collection(self.collection_name).find_one({"_id": item_id}, session=self.connection.session())
        if doc is None:
            return None
        doc.pop("_id", None)
        return doc

    def read_items(self, item_ids: Iterable[str]) -> Dict[str, Any]:
        cursor = self._collection(self.collection_name).find(
            {"_id": {"$in": list(item_ids)}},
            session=self.connection.session()
        )
        return {doc.pop("_id"): doc for doc in cursor}


class MongoAccountStore(MongoRepository, AccountStore):
    """Accounts and groups backed by MongoDB; group documents carry their member ids"""

    def __init__(self, connection: MongoConnection):
        super().__init__(connection)

    def save_group(self, group: AccountGroup) -> None:
        self._collection(ACCOUNT_GROUPS).update_one(
            {"_id": group.group_id},
            {"$set": group.model_dump(mode="json"), "$setOnInsert": {"member_ids": []}},
            upsert=True,
            session=self.connection.session()
        )

    def save_accounts(self, accounts: Sequence[AccountUser]) -> None:
        if not accounts:
            return
        ops = [
            UpdateOne({"_id": a.account_id}, {"$set": a.model_dump(mode="json")}, upsert=True)
            for a in accounts
        ]
        self._collection(ACCOUNTS).bulk_write(ops, session=self.connection.session())

    def attach(self, account_ids: Iterable[str], group_id: str) -> None:
        account_ids = list(account_ids)
        known = {
            doc["_id"]
            for doc in self._collection(ACCOUNTS).find(
                {"_id": {"$in": account_ids}}, {"_id": 1}, session=self.connection.session()
            )
        }
        missing = [a for a in account_ids if a not in known]
        if missing:
            raise NotFoundError(f"Account {missing[0]} not found", details={"account_ids": missing})

        result = self._collection(ACCOUNT_GROUPS).update_one(
            {"_id": group_id},
            {"$addToSet": {"member_ids": {"$each": account_ids}}},
            session=self.connection.session()
        )
        if result.matched_count == 0:
            raise AccountGroupNotFoundError(f"Account group {group_id} not found", details={"group_id": group_id})

    def get_account_ids(self, group_id: str) -> Set[str]:
        doc = self._collection(ACCOUNT_GROUPS).find_one(
            {"_id": group_id}, {"member_ids": 1}, session=self.connection.session()
        )
        return set(doc.get("member_ids", ())) if doc else set()

    def get_accounts_by_groups(self, group_ids: Iterable[str]) -> Dict[str, Set[str]]:
        group_ids = set(group_ids)
        found = {
            doc["_id"]: set(doc.get("member_ids", ()))
            for doc in self._collection(ACCOUNT_GROUPS).find(
                {"_id": {"$in": list(group_ids)}}, {"member_ids": 1}, session=self.connection.session()
            )
        }
        return {group_id: found.get(group_id, set()) for group_id in group_ids}

    def get_account(self, account_id: str) -> AccountUser:
        account = self._find_one(ACCOUNTS, AccountUser, {"_id": account_id})
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", details={"account_id": account_id})
        return account

    def get_group(self, group_id: str) -> AccountGroup:
        doc = self._collection(ACCOUNT_GROUPS).find_one(
            {"_id": group_id}, {"member_ids": 0}, session=self.connection.session()
        )
        if doc is None:
            raise AccountGroupNotFoundError(f"Account group {group_id} not found", details={"group_id": group_id})
        return self._decode(ACCOUNT_GROUPS, AccountGroup, doc)
