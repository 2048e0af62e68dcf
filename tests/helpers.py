"""Test helpers shared by the unit tests"""
from typing import List, Optional

from workflow_core.context import WorkflowContext
from workflow_core.domain.enums import Multiplicity
from workflow_core.domain.models import (
    ActivityDefinition, ConditionDefinition, Decision, FilterDefinition,
    RuleDefinition, SelectorDefinition, WorkflowDefinition
)


MANAGERS = "G-MANAGERS"
BOARD = "G-BOARD"


class ChainBuilder:
    """Builds activity chains whose steps need a person or not"""

    def __init__(self, context: WorkflowContext, definition: WorkflowDefinition):
        self.context = context
        self.definition = definition

    def add(self, name: str, multiplicity: Multiplicity = Multiplicity.SINGLE) -> ActivityDefinition:
        return self.context.workflow_service.add_activity_named(self.definition, name, multiplicity)

    def chain(self, *names: str) -> List[ActivityDefinition]:
        return [self.add(name) for name in names]

    def require_person(
        self,
        activity_definition: ActivityDefinition,
        threshold: int = 100,
        group_id: str = MANAGERS,
        filters: Optional[List[FilterDefinition]] = None
    ) -> None:
        """Step needs a decision from group_id when amount is above threshold"""
        service = self.context.workflow_service
        service.add_rule(
            activity_definition,
            RuleDefinition(label=f"amount above {threshold}"),
            [ConditionDefinition(field="amount", operator=">", expression=str(threshold))],
        )
        service.add_selector(
            activity_definition,
            SelectorDefinition(account_group_id=group_id),
            filters or [],
        )

    def manual_chain(self, *names: str) -> List[ActivityDefinition]:
        activity_definitions = self.chain(*names)
        for activity_definition in activity_definitions:
            self.require_person(activity_definition)
        return activity_definitions


def decision(username: str, choice: int = 1, comments: Optional[str] = None) -> Decision:
    return Decision(username=username, choice=choice, comments=comments)
