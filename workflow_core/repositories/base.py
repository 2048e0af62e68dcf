"""Store Contracts - Abstract persistence interfaces used by the engine and services"""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from ..domain.models import (
    WorkflowDefinition, ActivityDefinition, TransitionDefinition,
    WorkflowInstance, Activity, Decision,
    RuleDefinition, ConditionDefinition, SelectorDefinition, FilterDefinition,
    RuleConstants, AccountUser, AccountGroup, RecalculationOutput
)
from ..domain.enums import WorkflowStatus
from ..domain.errors import (
    WorkflowDefinitionNotFoundError, ActivityDefinitionNotFoundError,
    WorkflowNotFoundError, ActivityNotFoundError
)
from ..utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowStore(ABC):
    """Persistence of definitions, instances, activities and decisions"""

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Context manager grouping writes; nested calls join the outer transaction"""

    # =========================================================================
    # Workflow Definitions
    # =========================================================================

    @abstractmethod
    def create_workflow_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition: ...

    @abstractmethod
    def read_workflow_definition(self, definition_id: str) -> Optional[WorkflowDefinition]: ...

    @abstractmethod
    def find_workflow_definition_by_name(self, name: str) -> Optional[WorkflowDefinition]: ...

    @abstractmethod
    def update_workflow_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition: ...

    def read_workflow_definition_or_raise(self, definition_id: str) -> WorkflowDefinition:
        definition = self.read_workflow_definition(definition_id)
        if definition is None:
            raise WorkflowDefinitionNotFoundError(
                f"Workflow definition {definition_id} not found",
                details={"definition_id": definition_id}
            )
        return definition

    # =========================================================================
    # Activity Definitions & Transitions
    # =========================================================================

    @abstractmethod
    def create_activity_definition(self, activity_definition: ActivityDefinition) -> ActivityDefinition: ...

    @abstractmethod
    def read_activity_definition(self, activity_definition_id: str) -> Optional[ActivityDefinition]: ...

    @abstractmethod
    def update_activity_definition(self, activity_definition: ActivityDefinition) -> ActivityDefinition: ...

    @abstractmethod
    def delete_activity_definition(self, activity_definition_id: str) -> None: ...

    @abstractmethod
    def find_activity_definitions(self, definition_id: str) -> List[ActivityDefinition]:
        """All activity definitions of a workflow definition, in no particular order"""

    @abstractmethod
    def add_transition(self, transition: TransitionDefinition) -> TransitionDefinition: ...

    @abstractmethod
    def update_transition(self, transition: TransitionDefinition) -> TransitionDefinition: ...

    @abstractmethod
    def remove_transition(self, transition_id: str) -> None: ...

    @abstractmethod
    def find_transition(self, from_activity_id: str, name: str) -> Optional[TransitionDefinition]: ...

    @abstractmethod
    def find_transitions(self, definition_id: str) -> List[TransitionDefinition]: ...

    def read_activity_definition_or_raise(self, activity_definition_id: str) -> ActivityDefinition:
        activity_definition = self.read_activity_definition(activity_definition_id)
        if activity_definition is None:
            raise ActivityDefinitionNotFoundError(
                f"Activity definition {activity_definition_id} not found",
                details={"activity_definition_id": activity_definition_id}
            )
        return activity_definition

    # =========================================================================
    # Workflow Instances
    # =========================================================================

    @abstractmethod
    def create_workflow_instance(self, workflow: WorkflowInstance) -> WorkflowInstance: ...

    @abstractmethod
    def read_workflow_instance(self, workflow_id: str) -> Optional[WorkflowInstance]: ...

    @abstractmethod
    def find_workflow_instance_by_item(self, definition_id: str, item_id: str) -> Optional[WorkflowInstance]: ...

    @abstractmethod
    def update_workflow_instance(self, workflow: WorkflowInstance) -> WorkflowInstance: ...

    @abstractmethod
    def update_workflow_current_activity(self, workflow_id: str, activity_id: Optional[str]) -> None: ...

    @abstractmethod
    def delete_workflow_instance(self, workflow_id: str) -> None:
        """Delete an instance with its activities and decisions"""

    @abstractmethod
    def find_workflow_instances(
        self,
        definition_id: str,
        statuses: Optional[Sequence[WorkflowStatus]] = None
    ) -> List[WorkflowInstance]: ...

    def read_workflow_instance_or_raise(self, workflow_id: str) -> WorkflowInstance:
        workflow = self.read_workflow_instance(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(
                f"Workflow {workflow_id} not found",
                details={"workflow_id": workflow_id}
            )
        return workflow

    # =========================================================================
    # Activities
    # =========================================================================

    @abstractmethod
    def create_activity(self, activity: Activity) -> Activity: ...

    @abstractmethod
    def read_activity(self, activity_id: str) -> Optional[Activity]: ...

    @abstractmethod
    def update_activity(self, activity: Activity) -> Activity: ...

    @abstractmethod
    def find_activities_by_workflow(self, workflow_id: str) -> List[Activity]:
        """Activities of one instance, oldest first"""

    @abstractmethod
    def find_activities_by_workflows(self, workflow_ids: Iterable[str]) -> List[Activity]: ...

    @abstractmethod
    def find_activities_by_activity_definition(self, activity_definition_id: str) -> List[Activity]: ...

    @abstractmethod
    def delete_activities_by_activity_definition(self, activity_definition_id: str) -> None:
        """Delete the activities of a definition with their decisions"""

    def read_activity_or_raise(self, activity_id: str) -> Activity:
        activity = self.read_activity(activity_id)
        if activity is None:
            raise ActivityNotFoundError(
                f"Activity {activity_id} not found",
                details={"activity_id": activity_id}
            )
        return activity

    # =========================================================================
    # Decisions
    # =========================================================================

    @abstractmethod
    def create_decision(self, decision: Decision) -> Decision: ...

    @abstractmethod
    def read_decision(self, decision_id: str) -> Optional[Decision]: ...

    @abstractmethod
    def delete_decision(self, decision_id: str) -> None: ...

    @abstractmethod
    def find_decisions_by_activity(self, activity_id: str) -> List[Decision]:
        """Decisions on one activity, oldest first"""

    @abstractmethod
    def find_decisions_by_activities(self, activity_ids: Iterable[str]) -> List[Decision]: ...

    # =========================================================================
    # Recalculation batch
    # =========================================================================

    def apply_recalculation(self, output: RecalculationOutput) -> None:
        """
        Apply a recalculation diff in one transaction

        Activities created as the new current activity are inserted before the
        owning workflow's pointer is moved to them.
        """
        with self.transaction():
            for workflow in output.workflows_update_current_activity:
                self.update_workflow_current_activity(workflow.workflow_id, workflow.current_activity_id)
            for activity in output.activities_update_is_auto:
                self.update_activity(activity)
            for activity in output.activities_create:
                self.create_activity(activity)
            for activity in output.activities_create_update_current_activity:
                created = self.create_activity(activity)
                self.update_workflow_current_activity(created.workflow_id, created.activity_id)
        logger.info("Applied recalculation output", extra={"summary": output.summary()})


class RuleStore(ABC):
    """Persistence of rules, conditions, selectors, filters and constants"""

    @abstractmethod
    def transaction(self) -> AbstractContextManager: ...

    # =========================================================================
    # Rules & Conditions
    # =========================================================================

    @abstractmethod
    def add_rule(self, rule: RuleDefinition) -> RuleDefinition: ...

    @abstractmethod
    def read_rule(self, rule_id: str) -> Optional[RuleDefinition]: ...

    @abstractmethod
    def update_rule(self, rule: RuleDefinition) -> RuleDefinition: ...

    @abstractmethod
    def remove_rule(self, rule_id: str) -> None:
        """Remove a rule with its conditions"""

    @abstractmethod
    def find_rules_by_item(self, item_id: str) -> List[RuleDefinition]: ...

    @abstractmethod
    def find_rules_by_items(self, item_ids: Iterable[str]) -> List[RuleDefinition]: ...

    @abstractmethod
    def add_condition(self, condition: ConditionDefinition) -> ConditionDefinition: ...

    @abstractmethod
    def update_condition(self, condition: ConditionDefinition) -> ConditionDefinition: ...

    @abstractmethod
    def remove_condition(self, condition_id: str) -> None: ...

    @abstractmethod
    def find_conditions_by_rule(self, rule_id: str) -> List[ConditionDefinition]: ...

    @abstractmethod
    def find_conditions_by_rules(self, rule_ids: Iterable[str]) -> List[ConditionDefinition]: ...

    def remove_rules(self, rule_ids: Iterable[str]) -> None:
        with self.transaction():
            for rule_id in rule_ids:
                self.remove_rule(rule_id)

    # =========================================================================
    # Selectors & Filters
    # =========================================================================

    @abstractmethod
    def add_selector(self, selector: SelectorDefinition) -> SelectorDefinition: ...

    @abstractmethod
    def read_selector(self, selector_id: str) -> Optional[SelectorDefinition]: ...

    @abstractmethod
    def update_selector(self, selector: SelectorDefinition) -> SelectorDefinition: ...

    @abstractmethod
    def remove_selector(self, selector_id: str) -> None:
        """Remove a selector with its filters"""

    @abstractmethod
    def find_selectors_by_item(self, item_id: str) -> List[SelectorDefinition]: ...

    @abstractmethod
    def find_selectors_by_items(self, item_ids: Iterable[str]) -> List[SelectorDefinition]: ...

    @abstractmethod
    def find_selectors_by_group_id(self, group_id: str) -> List[SelectorDefinition]: ...

    @abstractmethod
    def add_filter(self, filter_definition: FilterDefinition) -> FilterDefinition: ...

    @abstractmethod
    def update_filter(self, filter_definition: FilterDefinition) -> FilterDefinition: ...

    @abstractmethod
    def remove_filter(self, filter_id: str) -> None: ...

    @abstractmethod
    def find_filters_by_selector(self, selector_id: str) -> List[FilterDefinition]: ...

    @abstractmethod
    def find_filters_by_selectors(self, selector_ids: Iterable[str]) -> List[FilterDefinition]: ...

    def remove_selectors(self, selector_ids: Iterable[str]) -> None:
        with self.transaction():
            for selector_id in selector_ids:
                self.remove_selector(selector_id)

    def remove_selectors_filters_by_group_id(self, group_id: str) -> int:
        """Remove every selector tagged with group_id, with its filters"""
        with self.transaction():
            selectors = self.find_selectors_by_group_id(group_id)
            for selector in selectors:
                self.remove_selector(selector.selector_id)
        logger.info(f"Removed {len(selectors)} selectors tagged {group_id}")
        return len(selectors)

    # =========================================================================
    # Constants
    # =========================================================================

    @abstractmethod
    def add_constants(self, key: str, constants: RuleConstants) -> None: ...

    @abstractmethod
    def read_constants(self, key: str) -> RuleConstants:
        """Constants stored under key, empty when none were added"""


class ItemStore(ABC):
    """Resolver of the business objects workflows run for"""

    @abstractmethod
    def read_item(self, item_id: str) -> Optional[Any]: ...

    def read_items(self, item_ids: Iterable[str]) -> Dict[str, Any]:
        """Business objects keyed by item id; missing items are left out"""
        items: Dict[str, Any] = {}
        for item_id in item_ids:
            item = self.read_item(item_id)
            if item is not None:
                items[item_id] = item
        return items


class AccountStore(ABC):
    """Accounts, groups and membership"""

    @abstractmethod
    def save_group(self, group: AccountGroup) -> None: ...

    @abstractmethod
    def save_accounts(self, accounts: Sequence[AccountUser]) -> None: ...

    @abstractmethod
    def attach(self, account_ids: Iterable[str], group_id: str) -> None: ...

    @abstractmethod
    def get_account_ids(self, group_id: str) -> Set[str]: ...

    @abstractmethod
    def get_account(self, account_id: str) -> AccountUser: ...

    @abstractmethod
    def get_group(self, group_id: str) -> AccountGroup: ...

    def get_accounts_by_groups(self, group_ids: Iterable[str]) -> Dict[str, Set[str]]:
        return {group_id: set(self.get_account_ids(group_id)) for group_id in set(group_ids)}
