"""Definition Graph - Build and traverse the activity/transition chain of a workflow definition"""
from typing import List, Optional

from ..domain.models import WorkflowDefinition, ActivityDefinition, TransitionDefinition
from ..domain.enums import DEFAULT_TRANSITION, Multiplicity, LIVE_STATUSES
from ..domain.errors import (
    WorkflowValidationError, TransitionNotFoundError, InvalidStateError
)
from ..repositories.base import WorkflowStore
from ..utils.logger import get_logger

logger = get_logger(__name__)


def new_activity_definition(
    name: str,
    multiplicity: Multiplicity = Multiplicity.SINGLE
) -> ActivityDefinition:
    """Build an activity definition; multiplicity defaults to Single"""
    return ActivityDefinition(name=name, multiplicity=multiplicity)


def new_transition(
    from_activity_id: str,
    to_activity_id: str,
    name: str = DEFAULT_TRANSITION,
    definition_id: Optional[str] = None
) -> TransitionDefinition:
    """Build a transition; the name defaults to the default transition"""
    return TransitionDefinition(
        from_activity_id=from_activity_id,
        to_activity_id=to_activity_id,
        name=name,
        definition_id=definition_id,
    )


class DefinitionGraph:
    """
    Activity chain of workflow definitions

    The default chain starts at the definition's first activity and follows
    transitions named "Default". Positions are 1-based and mirrored in each
    activity definition's level. Structural edits rebuild the default chain
    from the new ordering; custom-named transitions are left untouched.
    """

    def __init__(self, store: WorkflowStore):
        self.store = store

    # =========================================================================
    # Traversal
    # =========================================================================

    def find_all_default_activity_definitions(self, definition: WorkflowDefinition) -> List[ActivityDefinition]:
        """
        Ordered activity definitions reached from the first activity through default transitions

        Raises:
            WorkflowValidationError: If the default chain loops
        """
        chain: List[ActivityDefinition] = []
        seen = set()
        current_id = definition.first_activity_id
        while current_id is not None:
            if current_id in seen:
                raise WorkflowValidationError(
                    f"Default transitions of {definition.name} form a cycle",
                    details={"definition_id": definition.definition_id, "activity_definition_id": current_id}
                )
            seen.add(current_id)
            chain.append(self.store.read_activity_definition_or_raise(current_id))
            transition = self.store.find_transition(current_id, DEFAULT_TRANSITION)
            current_id = transition.to_activity_id if transition else None
        return chain

    def find_activity_definition_by_position(
        self,
        definition: WorkflowDefinition,
        position: int
    ) -> Optional[ActivityDefinition]:
        """Activity definition at a 1-based position on the default chain"""
        chain = self.find_all_default_activity_definitions(definition)
        if 1 <= position <= len(chain):
            return chain[position - 1]
        return None

    def find_next_activity(
        self,
        activity_definition_id: str,
        transition_name: str = DEFAULT_TRANSITION
    ) -> ActivityDefinition:
        """
        Target of the named transition leaving an activity definition

        Raises:
            TransitionNotFoundError: If no such transition exists
        """
        transition = self.store.find_transition(activity_definition_id, transition_name)
        if transition is None:
            raise TransitionNotFoundError(
                f"No transition '{transition_name}' from activity definition {activity_definition_id}",
                details={"activity_definition_id": activity_definition_id, "transition": transition_name}
            )
        return self.store.read_activity_definition_or_raise(transition.to_activity_id)

    def has_next_activity(
        self,
        activity_definition_id: str,
        transition_name: str = DEFAULT_TRANSITION
    ) -> bool:
        return self.store.find_transition(activity_definition_id, transition_name) is not None

    # =========================================================================
    # Structural edits
    # =========================================================================

    def add_activity(
        self,
        definition: WorkflowDefinition,
        activity_definition: ActivityDefinition,
        position: Optional[int] = None
    ) -> ActivityDefinition:
        """
        Insert an activity definition on the default chain

        Args:
            definition: Workflow definition to edit
            activity_definition: New activity definition (not yet stored)
            position: 1-based position; appended when omitted

        Returns:
            The stored activity definition
        """
        self._sync(definition)
        chain = self.find_all_default_activity_definitions(definition)
        if position is None:
            position = len(chain) + 1
        if not 1 <= position <= len(chain) + 1:
            raise WorkflowValidationError(
                f"Position {position} is outside 1..{len(chain) + 1}",
                details={"definition_id": definition.definition_id, "position": position}
            )

        activity_definition = activity_definition.model_copy(
            update={"definition_id": definition.definition_id, "level": position}
        )
        created = self.store.create_activity_definition(activity_definition)
        chain.insert(position - 1, created)
        self._relink(definition, chain)

        logger.info(
            f"Added activity {created.name} at position {position}",
            extra={"definition_id": definition.definition_id, "activity_definition_id": created.activity_definition_id}
        )
        return self.store.read_activity_definition_or_raise(created.activity_definition_id)

    def remove_activity(self, definition: WorkflowDefinition, activity_definition: ActivityDefinition) -> None:
        """
        Remove an activity definition, splicing its predecessor to its successor

        Raises:
            InvalidStateError: If a started or paused workflow still has activities for it
        """
        self._sync(definition)
        activity_definition_id = activity_definition.activity_definition_id
        chain = self.find_all_default_activity_definitions(definition)
        index = self._index_of(chain, activity_definition_id)

        for activity in self.store.find_activities_by_activity_definition(activity_definition_id):
            workflow = self.store.read_workflow_instance(activity.workflow_id)
            if workflow is not None and workflow.status in LIVE_STATUSES:
                raise InvalidStateError(
                    f"Activity definition {activity_definition.name} is used by live workflow {workflow.workflow_id}",
                    details={"activity_definition_id": activity_definition_id, "workflow_id": workflow.workflow_id}
                )

        del chain[index]
        for transition in self.store.find_transitions(definition.definition_id):
            if activity_definition_id in (transition.from_activity_id, transition.to_activity_id):
                self.store.remove_transition(transition.transition_id)
        self.store.delete_activities_by_activity_definition(activity_definition_id)
        self.store.delete_activity_definition(activity_definition_id)
        self._relink(definition, chain)

        logger.info(
            f"Removed activity {activity_definition.name}",
            extra={"definition_id": definition.definition_id, "activity_definition_id": activity_definition_id}
        )

    def move_activity(
        self,
        definition: WorkflowDefinition,
        src_position: int,
        dst_position: int,
        after: bool = True
    ) -> None:
        """Move the activity at src_position before or after the one at dst_position"""
        chain = self.find_all_default_activity_definitions(definition)
        for position in (src_position, dst_position):
            if not 1 <= position <= len(chain):
                raise WorkflowValidationError(
                    f"Position {position} is outside 1..{len(chain)}",
                    details={"definition_id": definition.definition_id, "position": position}
                )
        self.move_activity_definition(definition, chain[src_position - 1], chain[dst_position - 1], after)

    def move_activity_definition(
        self,
        definition: WorkflowDefinition,
        activity_definition: ActivityDefinition,
        referential: ActivityDefinition,
        after: bool = True
    ) -> None:
        """Move an activity definition before or after a referential activity definition"""
        if activity_definition.activity_definition_id == referential.activity_definition_id:
            return
        self._sync(definition)
        chain = self.find_all_default_activity_definitions(definition)
        moved = chain.pop(self._index_of(chain, activity_definition.activity_definition_id))
        target = self._index_of(chain, referential.activity_definition_id)
        chain.insert(target + 1 if after else target, moved)
        self._relink(definition, chain)

    def rename_activity(self, activity_definition: ActivityDefinition, name: str) -> ActivityDefinition:
        if not name:
            raise WorkflowValidationError("Activity name is required")
        stored = self.store.read_activity_definition_or_raise(activity_definition.activity_definition_id)
        stored.name = name
        return self.store.update_activity_definition(stored)

    # =========================================================================
    # Internals
    # =========================================================================

    def _sync(self, definition: WorkflowDefinition) -> None:
        """Refresh the first activity pointer from the store before editing"""
        stored = self.store.read_workflow_definition_or_raise(definition.definition_id)
        definition.first_activity_id = stored.first_activity_id

    @staticmethod
    def _index_of(chain: List[ActivityDefinition], activity_definition_id: str) -> int:
        for index, item in enumerate(chain):
            if item.activity_definition_id == activity_definition_id:
                return index
        raise WorkflowValidationError(
            f"Activity definition {activity_definition_id} is not on the default chain",
            details={"activity_definition_id": activity_definition_id}
        )

    def _relink(self, definition: WorkflowDefinition, chain: List[ActivityDefinition]) -> None:
        """Rewrite default transitions, levels and the first activity to follow the chain order"""
        for index, activity_definition in enumerate(chain):
            successor = chain[index + 1] if index + 1 < len(chain) else None
            transition = self.store.find_transition(activity_definition.activity_definition_id, DEFAULT_TRANSITION)
            if successor is None:
                if transition is not None:
                    self.store.remove_transition(transition.transition_id)
            elif transition is None:
                self.store.add_transition(new_transition(
                    activity_definition.activity_definition_id,
                    successor.activity_definition_id,
                    definition_id=definition.definition_id,
                ))
            elif transition.to_activity_id != successor.activity_definition_id:
                transition.to_activity_id = successor.activity_definition_id
                self.store.update_transition(transition)

            if activity_definition.level != index + 1:
                activity_definition.level = index + 1
                self.store.update_activity_definition(activity_definition)

        first_activity_id = chain[0].activity_definition_id if chain else None
        if definition.first_activity_id != first_activity_id:
            definition.first_activity_id = first_activity_id
            self.store.update_workflow_definition(definition)
