"""Workflow Service - Workflow definition management business logic"""
from typing import List, Optional, Sequence

from .rule_service import RuleService
from ..domain.models import (
    WorkflowDefinition, ActivityDefinition, RuleDefinition, ConditionDefinition,
    SelectorDefinition, FilterDefinition, RuleConstants, RuleCriteria
)
from ..domain.enums import Multiplicity
from ..domain.errors import WorkflowDefinitionNotFoundError, WorkflowValidationError
from ..engine.definition_graph import DefinitionGraph, new_activity_definition
from ..middleware import log_call, transactional
from ..repositories.base import WorkflowStore
from ..utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowService:
    """Service for workflow definition operations"""

    def __init__(self, workflow_store: WorkflowStore, rule_service: RuleService):
        self.workflow_store = workflow_store
        self.rule_service = rule_service
        self.graph = DefinitionGraph(workflow_store)

    # =========================================================================
    # Workflow Definitions
    # =========================================================================

    @log_call("definition.create")
    def create_workflow_definition(self, name: str) -> WorkflowDefinition:
        """Create an empty workflow definition"""
        if not name or not name.strip():
            raise WorkflowValidationError("Workflow definition name is required")
        definition = self.workflow_store.create_workflow_definition(WorkflowDefinition(name=name.strip()))
        logger.info(
            f"Created workflow definition {definition.name}",
            extra={"definition_id": definition.definition_id}
        )
        return definition

    def get_workflow_definition(self, definition_id: str) -> WorkflowDefinition:
        return self.workflow_store.read_workflow_definition_or_raise(definition_id)

    def get_workflow_definition_by_name(self, name: str) -> WorkflowDefinition:
        definition = self.workflow_store.find_workflow_definition_by_name(name)
        if definition is None:
            raise WorkflowDefinitionNotFoundError(
                f"Workflow definition '{name}' not found",
                details={"name": name}
            )
        return definition

    # =========================================================================
    # Activity Definitions
    # =========================================================================

    @log_call("definition.add_activity")
    @transactional("workflow_store")
    def add_activity(
        self,
        definition: WorkflowDefinition,
        activity_definition: ActivityDefinition,
        position: Optional[int] = None
    ) -> ActivityDefinition:
        """Insert an activity at a 1-based position, or append it"""
        return self.graph.add_activity(definition, activity_definition, position)

    def add_activity_named(
        self,
        definition: WorkflowDefinition,
        name: str,
        multiplicity: Multiplicity = Multiplicity.SINGLE,
        position: Optional[int] = None
    ) -> ActivityDefinition:
        return self.add_activity(definition, new_activity_definition(name, multiplicity), position)

    @log_call("definition.remove_activity")
    @transactional("workflow_store")
    def remove_activity(self, definition: WorkflowDefinition, activity_definition: ActivityDefinition) -> None:
        """Remove an activity along with its rules and selectors"""
        self.graph.remove_activity(definition, activity_definition)
        item_id = activity_definition.activity_definition_id
        self.rule_service.remove_rules(r.rule_id for r in self.rule_service.get_rules_for_item_id(item_id))
        self.rule_service.remove_selectors(s.selector_id for s in self.rule_service.get_selectors_for_item_id(item_id))

    @log_call("definition.move_activity")
    @transactional("workflow_store")
    def move_activity(
        self,
        definition: WorkflowDefinition,
        src_position: int,
        dst_position: int,
        after: bool = True
    ) -> None:
        self.graph.move_activity(definition, src_position, dst_position, after)

    @log_call("definition.move_activity")
    @transactional("workflow_store")
    def move_activity_definition(
        self,
        definition: WorkflowDefinition,
        activity_definition: ActivityDefinition,
        referential: ActivityDefinition,
        after: bool = True
    ) -> None:
        self.graph.move_activity_definition(definition, activity_definition, referential, after)

    def rename_activity(self, activity_definition: ActivityDefinition, name: str) -> ActivityDefinition:
        return self.graph.rename_activity(activity_definition, name)

    def get_all_default_activities(self, definition: WorkflowDefinition) -> List[ActivityDefinition]:
        """Activity definitions on the default chain, in order"""
        return self.graph.find_all_default_activity_definitions(definition)

    def get_activity_definition_by_position(
        self,
        definition: WorkflowDefinition,
        position: int
    ) -> Optional[ActivityDefinition]:
        return self.graph.find_activity_definition_by_position(definition, position)

    # =========================================================================
    # Rules & Selectors on activities
    # =========================================================================

    def add_rule(
        self,
        activity_definition: ActivityDefinition,
        rule: RuleDefinition,
        conditions: Sequence[ConditionDefinition] = ()
    ) -> RuleDefinition:
        """Attach a rule with its conditions to an activity definition"""
        self.workflow_store.read_activity_definition_or_raise(activity_definition.activity_definition_id)
        rule = rule.model_copy(update={"item_id": activity_definition.activity_definition_id})
        return self.rule_service.add_rule(rule, conditions)

    def add_selector(
        self,
        activity_definition: ActivityDefinition,
        selector: SelectorDefinition,
        filters: Sequence[FilterDefinition] = ()
    ) -> SelectorDefinition:
        """Attach a selector with its filters to an activity definition"""
        self.workflow_store.read_activity_definition_or_raise(activity_definition.activity_definition_id)
        selector = selector.model_copy(update={"item_id": activity_definition.activity_definition_id})
        return self.rule_service.add_selector(selector, filters)

    def get_rules(self, activity_definition: ActivityDefinition) -> List[RuleDefinition]:
        return self.rule_service.get_rules_for_item_id(activity_definition.activity_definition_id)

    def get_selectors(self, activity_definition: ActivityDefinition) -> List[SelectorDefinition]:
        return self.rule_service.get_selectors_for_item_id(activity_definition.activity_definition_id)

    def get_conditions_for_rule_id(self, rule_id: str) -> List[ConditionDefinition]:
        return self.rule_service.get_conditions_for_rule_id(rule_id)

    def get_filters_for_selector_id(self, selector_id: str) -> List[FilterDefinition]:
        return self.rule_service.get_filters_for_selector_id(selector_id)

    def remove_rules(self, rule_ids: Sequence[str]) -> None:
        self.rule_service.remove_rules(rule_ids)

    def remove_selectors(self, selector_ids: Sequence[str]) -> None:
        self.rule_service.remove_selectors(selector_ids)

    def remove_selectors_filters_by_group_id(self, group_id: str) -> int:
        return self.rule_service.remove_selectors_filters_by_group_id(group_id)

    def find_activities_by_criteria(
        self,
        definition: WorkflowDefinition,
        criteria: RuleCriteria
    ) -> List[ActivityDefinition]:
        """
        Activity definitions of a workflow whose rules accept the criteria

        Args:
            definition: Workflow definition to search
            criteria: Field/value pairs the rules must accept

        Returns:
            Matching activity definitions in chain order
        """
        chain = self.graph.find_all_default_activity_definitions(definition)
        matched = set(self.rule_service.find_items_by_criteria(
            criteria,
            [ad.activity_definition_id for ad in chain],
            self.get_constants(definition),
        ))
        return [ad for ad in chain if ad.activity_definition_id in matched]

    # =========================================================================
    # Constants
    # =========================================================================

    def add_constants(self, definition: WorkflowDefinition, constants: RuleConstants) -> None:
        """Store the constants substituted into this definition's expressions"""
        self.rule_service.add_constants(definition.definition_id, constants)

    def get_constants(self, definition: WorkflowDefinition) -> RuleConstants:
        return self.rule_service.get_constants(definition.definition_id)
