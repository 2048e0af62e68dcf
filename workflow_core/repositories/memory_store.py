"""In-Memory Stores - Thread-safe implementations of the store contracts"""
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, TypeVar

from pydantic import BaseModel

from .base import WorkflowStore, RuleStore, ItemStore, AccountStore
from ..domain.models import (
    WorkflowDefinition, ActivityDefinition, TransitionDefinition,
    WorkflowInstance, Activity, Decision,
    RuleDefinition, ConditionDefinition, SelectorDefinition, FilterDefinition,
    RuleConstants, AccountUser, AccountGroup
)
from ..domain.enums import WorkflowStatus
from ..domain.errors import (
    AlreadyExistsError, NotFoundError, WorkflowNotFoundError, ActivityNotFoundError,
    AccountGroupNotFoundError
)
from ..utils import idgen
from ..utils.logger import get_logger

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class _MemoryTables:
    """
    Keyed tables of pydantic models with snapshot rollback

    Models are copied on the way in and on the way out, so callers never
    share state with the store. Tables are only ever replaced entry by entry,
    which keeps a shallow snapshot per table sufficient for rollback.
    """

    def __init__(self, *names: str):
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in names}
        self._lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = self._snapshot() if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except BaseException:
                if snapshot is not None:
                    self._tables = snapshot
                    logger.debug("In-memory transaction rolled back")
                raise
            finally:
                self._depth -= 1

    def _snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {name: dict(rows) for name, rows in self._tables.items()}

    def insert(self, table: str, key_attr: str, model: M, new_id: Callable[[], str]) -> M:
        with self._lock:
            stored = model.model_copy(deep=True)
            key = getattr(stored, key_attr) or new_id()
            if key in self._tables[table]:
                raise AlreadyExistsError(f"{table} {key} already exists", details={key_attr: key})
            setattr(stored, key_attr, key)
            self._tables[table][key] = stored
            return stored.model_copy(deep=True)

    def replace(self, table: str, key_attr: str, model: M, not_found: type = NotFoundError) -> M:
        with self._lock:
            key = getattr(model, key_attr)
            if key not in self._tables[table]:
                raise not_found(f"{table} {key} not found", details={key_attr: key})
            self._tables[table][key] = model.model_copy(deep=True)
            return model

    def get(self, table: str, key: Optional[str]) -> Optional[Any]:
        with self._lock:
            row = self._tables[table].get(key)
            return row.model_copy(deep=True) if row is not None else None

    def delete(self, table: str, key: str) -> None:
        with self._lock:
            self._tables[table].pop(key, None)

    def select(self, table: str, predicate: Callable[[Any], bool]) -> List[Any]:
        with self._lock:
            return [row.model_copy(deep=True) for row in self._tables[table].values() if predicate(row)]

    def delete_where(self, table: str, predicate: Callable[[Any], bool]) -> List[str]:
        with self._lock:
            keys = [key for key, row in self._tables[table].items() if predicate(row)]
            for key in keys:
                del self._tables[table][key]
            return keys


class MemoryWorkflowStore(WorkflowStore):
    """Workflow store kept in process memory"""

    def __init__(self):
        self._db = _MemoryTables(
            "definitions", "activity_definitions", "transitions",
            "workflows", "activities", "decisions"
        )

    def transaction(self):
        return self._db.transaction()

    # =========================================================================
    # Workflow Definitions
    # =========================================================================

    def create_workflow_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        if self.find_workflow_definition_by_name(definition.name) is not None:
            raise AlreadyExistsError(
                f"Workflow definition '{definition.name}' already exists",
                details={"name": definition.name}
            )
        return self._db.insert("definitions", "definition_id", definition, idgen.generate_definition_id)

    def read_workflow_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self._db.get("definitions", definition_id)

    def find_workflow_definition_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        found = self._db.select("definitions", lambda d: d.name == name)
        return found[0] if found else None

    def update_workflow_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self._db.replace("definitions", "definition_id", definition)

    # =========================================================================
    # Activity Definitions & Transitions
    # =========================================================================

    def create_activity_definition(self, activity_definition: ActivityDefinition) -> ActivityDefinition:
        return self._db.insert(
            "activity_definitions", "activity_definition_id", activity_definition,
            idgen.generate_activity_definition_id
        )

    def read_activity_definition(self, activity_definition_id: str) -> Optional[ActivityDefinition]:
        return self._db.get("activity_definitions", activity_definition_id)

    def update_activity_definition(self, activity_definition: ActivityDefinition) -> ActivityDefinition:
        return self._db.replace("activity_definitions", "activity_definition_id", activity_definition)

    def delete_activity_definition(self, activity_definition_id: str) -> None:
        self._db.delete("activity_definitions", activity_definition_id)

    def find_activity_definitions(self, definition_id: str) -> List[ActivityDefinition]:
        return self._db.select("activity_definitions", lambda ad: ad.definition_id == definition_id)

    def add_transition(self, transition: TransitionDefinition) -> TransitionDefinition:
        return self._db.insert("transitions", "transition_id", transition, idgen.generate_transition_id)

    def update_transition(self, transition: TransitionDefinition) -> TransitionDefinition:
        return self._db.replace("transitions", "transition_id", transition)

    def remove_transition(self, transition_id: str) -> None:
        self._db.delete("transitions", transition_id)

    def find_transition(self, from_activity_id: str, name: str) -> Optional[TransitionDefinition]:
        found = self._db.select(
            "transitions",
            lambda t: t.from_activity_id == from_activity_id and t.name == name
        )
        return found[0] if found else None

    def find_transitions(self, definition_id: str) -> List[TransitionDefinition]:
        return self._db.select("transitions", lambda t: t.definition_id == definition_id)

    # =========================================================================
    # Workflow Instances
    # =========================================================================

    def create_workflow_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        return self._db.insert("workflows", "workflow_id", workflow, idgen.generate_workflow_id)

    def read_workflow_instance(self, workflow_id: str) -> Optional[WorkflowInstance]:
        return self._db.get("workflows", workflow_id)

    def find_workflow_instance_by_item(self, definition_id: str, item_id: str) -> Optional[WorkflowInstance]:
        found = self._db.select(
            "workflows",
            lambda w: w.definition_id == definition_id and w.item_id == item_id
        )
        return found[0] if found else None

    def update_workflow_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        return self._db.replace("workflows", "workflow_id", workflow, WorkflowNotFoundError)

    def update_workflow_current_activity(self, workflow_id: str, activity_id: Optional[str]) -> None:
        with self._db.transaction():
            workflow = self.read_workflow_instance_or_raise(workflow_id)
            workflow.current_activity_id = activity_id
            self._db.replace("workflows", "workflow_id", workflow, WorkflowNotFoundError)

    def delete_workflow_instance(self, workflow_id: str) -> None:
        with self._db.transaction():
            activity_ids = set(self._db.delete_where("activities", lambda a: a.workflow_id == workflow_id))
            self._db.delete_where("decisions", lambda d: d.activity_id in activity_ids)
            self._db.delete("workflows", workflow_id)

    def find_workflow_instances(
        self,
        definition_id: str,
        statuses: Optional[Sequence[WorkflowStatus]] = None
    ) -> List[WorkflowInstance]:
        return self._db.select(
            "workflows",
            lambda w: w.definition_id == definition_id and (statuses is None or w.status in statuses)
        )

    # =========================================================================
    # Activities
    # =========================================================================

    def create_activity(self, activity: Activity) -> Activity:
        return self._db.insert("activities", "activity_id", activity, idgen.generate_activity_id)

    def read_activity(self, activity_id: str) -> Optional[Activity]:
        return self._db.get("activities", activity_id)

    def update_activity(self, activity: Activity) -> Activity:
        return self._db.replace("activities", "activity_id", activity, ActivityNotFoundError)

    def find_activities_by_workflow(self, workflow_id: str) -> List[Activity]:
        return self._db.select("activities", lambda a: a.workflow_id == workflow_id)

    def find_activities_by_workflows(self, workflow_ids: Iterable[str]) -> List[Activity]:
        wanted = set(workflow_ids)
        return self._db.select("activities", lambda a: a.workflow_id in wanted)

    def find_activities_by_activity_definition(self, activity_definition_id: str) -> List[Activity]:
        return self._db.select("activities", lambda a: a.activity_definition_id == activity_definition_id)

    def delete_activities_by_activity_definition(self, activity_definition_id: str) -> None:
        with self._db.transaction():
            activity_ids = set(self._db.delete_where(
                "activities", lambda a: a.activity_definition_id == activity_definition_id
            ))
            self._db.delete_where("decisions", lambda d: d.activity_id in activity_ids)

    # =========================================================================
    # Decisions
    # =========================================================================

    def create_decision(self, decision: Decision) -> Decision:
        return self._db.insert("decisions", "decision_id", decision, idgen.generate_decision_id)

    def read_decision(self, decision_id: str) -> Optional[Decision]:
        return self._db.get("decisions", decision_id)

    def delete_decision(self, decision_id: str) -> None:
        self._db.delete("decisions", decision_id)

    def find_decisions_by_activity(self, activity_id: str) -> List[Decision]:
        return self._db.select("decisions", lambda d: d.activity_id == activity_id)

    def find_decisions_by_activities(self, activity_ids: Iterable[str]) -> List[Decision]:
        wanted = set(activity_ids)
        return self._db.select("decisions", lambda d: d.activity_id in wanted)


class MemoryRuleStore(RuleStore):
    """Rule store kept in process memory"""

    def __init__(self):
        self._db = _MemoryTables("rules", "conditions", "selectors", "filters")
        self._constants: Dict[str, RuleConstants] = {}

    def transaction(self):
        return self._db.transaction()

    # =========================================================================
    # Rules & Conditions
    # =========================================================================

    def add_rule(self, rule: RuleDefinition) -> RuleDefinition:
        return self._db.insert("rules", "rule_id", rule, idgen.generate_rule_id)

    def read_rule(self, rule_id: str) -> Optional[RuleDefinition]:
        return self._db.get("rules", rule_id)

    def update_rule(self, rule: RuleDefinition) -> RuleDefinition:
        return self._db.replace("rules", "rule_id", rule)

    def remove_rule(self, rule_id: str) -> None:
        with self._db.transaction():
            self._db.delete_where("conditions", lambda c: c.rule_id == rule_id)
            self._db.delete("rules", rule_id)

    def find_rules_by_item(self, item_id: str) -> List[RuleDefinition]:
        return self._db.select("rules", lambda r: r.item_id == item_id)

    def find_rules_by_items(self, item_ids: Iterable[str]) -> List[RuleDefinition]:
        wanted = set(item_ids)
        return self._db.select("rules", lambda r: r.item_id in wanted)

    def add_condition(self, condition: ConditionDefinition) -> ConditionDefinition:
        return self._db.insert("conditions", "condition_id", condition, idgen.generate_condition_id)

    def update_condition(self, condition: ConditionDefinition) -> ConditionDefinition:
        return self._db.replace("conditions", "condition_id", condition)

    def remove_condition(self, condition_id: str) -> None:
        self._db.delete("conditions", condition_id)

    def find_conditions_by_rule(self, rule_id: str) -> List[ConditionDefinition]:
        return self._db.select("conditions", lambda c: c.rule_id == rule_id)

    def find_conditions_by_rules(self, rule_ids: Iterable[str]) -> List[ConditionDefinition]:
        wanted = set(rule_ids)
        return self._db.select("conditions", lambda c: c.rule_id in wanted)

    # =========================================================================
    # Selectors & Filters
    # =========================================================================

    def add_selector(self, selector: SelectorDefinition) -> SelectorDefinition:
        return self._db.insert("selectors", "selector_id", selector, idgen.generate_selector_id)

    def read_selector(self, selector_id: str) -> Optional[SelectorDefinition]:
        return self._db.get("selectors", selector_id)

    def update_selector(self, selector: SelectorDefinition) -> SelectorDefinition:
        return self._db.replace("selectors", "selector_id", selector)

    def remove_selector(self, selector_id: str) -> None:
        with self._db.transaction():
            self._db.delete_where("filters", lambda f: f.selector_id == selector_id)
            self._db.delete("selectors", selector_id)

    def find_selectors_by_item(self, item_id: str) -> List[SelectorDefinition]:
        return self._db.select("selectors", lambda s: s.item_id == item_id)

    def find_selectors_by_items(self, item_ids: Iterable[str]) -> List[SelectorDefinition]:
        wanted = set(item_ids)
        return self._db.select("selectors", lambda s: s.item_id in wanted)

    def find_selectors_by_group_id(self, group_id: str) -> List[SelectorDefinition]:
        return self._db.select("selectors", lambda s: s.group_id == group_id)

    def add_filter(self, filter_definition: FilterDefinition) -> FilterDefinition:
        return self._db.insert("filters", "filter_id", filter_definition, idgen.generate_filter_id)

    def update_filter(self, filter_definition: FilterDefinition) -> FilterDefinition:
        return self._db.replace("filters", "filter_id", filter_definition)

    def remove_filter(self, filter_id: str) -> None:
        self._db.delete("filters", filter_id)

    def find_filters_by_selector(self, selector_id: str) -> List[FilterDefinition]:
        return self._db.select("filters", lambda f: f.selector_id == selector_id)

    def find_filters_by_selectors(self, selector_ids: Iterable[str]) -> List[FilterDefinition]:
        wanted = set(selector_ids)
        return self._db.select("filters", lambda f: f.selector_id in wanted)

    # =========================================================================
    # Constants
    # =========================================================================

    def add_constants(self, key: str, constants: RuleConstants) -> None:
        self._constants[key] = constants.model_copy(deep=True)

    def read_constants(self, key: str) -> RuleConstants:
        constants = self._constants.get(key)
        return constants.model_copy(deep=True) if constants is not None else RuleConstants()


class MemoryItemStore(ItemStore):
    """Business objects kept in process memory"""

    def __init__(self, items: Optional[Dict[str, Any]] = None):
        self._items: Dict[str, Any] = dict(items or {})

    def add_item(self, item_id: str, item: Any) -> None:
        self._items[item_id] = item

    def remove_item(self, item_id: str) -> None:
        self._items.pop(item_id, None)

    def read_item(self, item_id: str) -> Optional[Any]:
        return self._items.get(item_id)


class MemoryAccountStore(AccountStore):
    """Accounts and groups kept in process memory"""

    def __init__(self):
        self._groups: Dict[str, AccountGroup] = {}
        self._accounts: Dict[str, AccountUser] = {}
        self._members: Dict[str, Set[str]] = {}
        self._lock = threading.RLock()

    def save_group(self, group: AccountGroup) -> None:
        with self._lock:
            self._groups[group.group_id] = group
            self._members.setdefault(group.group_id, set())

    def save_accounts(self, accounts: Sequence[AccountUser]) -> None:
        with self._lock:
            for account in accounts:
                self._accounts[account.account_id] = account

    def attach(self, account_ids: Iterable[str], group_id: str) -> None:
        with self._lock:
            if group_id not in self._groups:
                raise AccountGroupNotFoundError(f"Account group {group_id} not found", details={"group_id": group_id})
            for account_id in account_ids:
                if account_id not in self._accounts:
                    raise NotFoundError(f"Account {account_id} not found", details={"account_id": account_id})
                self._members[group_id].add(account_id)

    def get_account_ids(self, group_id: str) -> Set[str]:
        with self._lock:
            return set(self._members.get(group_id, ()))

    def get_account(self, account_id: str) -> AccountUser:
        with self._lock:
            account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found", details={"account_id": account_id})
        return account

    def get_group(self, group_id: str) -> AccountGroup:
        with self._lock:
            group = self._groups.get(group_id)
        if group is None:
            raise AccountGroupNotFoundError(f"Account group {group_id} not found", details={"group_id": group_id})
        return group
