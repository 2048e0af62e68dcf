"""
Workflow Engine - Instance state machine

This module contains the WorkflowEngine class that drives workflow instances
through their lifecycle and along the activity chain of their definition.

=============================================================================
MODULE STRUCTURE
=============================================================================

1. INSTANCES
   - create_workflow_instance / create_workflow_instance_by_name
   - get_workflow_instance / get_workflow_instance_by_item_id / remove_workflow

2. LIFECYCLE
   - start_instance: Created -> Started, then auto-validate from the first activity
   - pause_instance / resume_instance: Started <-> Paused
   - end_instance: Started|Paused -> Ended (terminal)

3. DECISIONS
   - save_decision / get_decision / get_decisions / delete_decision
   - can_go_to_next_activity / go_to_next_activity
   - save_decision_and_go_to_next_activity

4. AUTO-VALIDATION
   - can_auto_validate_activity: no valid rule or no selected account
   - auto_validate_next_activities: walk default transitions while steps are automatic

5. QUERIES
   - get_activity / get_activity_for_definition / get_activity_definitions
   - get_workflow_decisions / get_all_workflow_decisions

=============================================================================
STATE MACHINE
=============================================================================

    CREATED --start--> STARTED --pause--> PAUSED
                          ^                  |
                          +-----resume-------+
    STARTED|PAUSED --end--> ENDED

Advancing past the last activity, or auto-validating to the end of the chain,
also ends the workflow.
"""
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel

from .definition_graph import DefinitionGraph
from ..domain.models import (
    ActivityDefinition, WorkflowInstance, Activity, Decision, WorkflowDecision,
    RuleConstants, RuleContext
)
from ..domain.enums import DEFAULT_TRANSITION, WorkflowStatus, Multiplicity
from ..domain.errors import (
    AlreadyExistsError, DecisionNotFoundError, InvalidStateError, ItemNotFoundError,
    WorkflowDefinitionNotFoundError
)
from ..middleware import with_correlation_id, log_call, transactional
from ..repositories.base import WorkflowStore, ItemStore
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..services.rule_service import RuleService

logger = get_logger(__name__)


@contextmanager
def _restore_on_error(model: BaseModel) -> Iterator[BaseModel]:
    """Put back the fields of a caller's model when the block raises"""
    saved = model.model_copy()
    try:
        yield model
    except Exception:
        for name in type(model).model_fields:
            setattr(model, name, getattr(saved, name))
        raise


class WorkflowEngine:
    """
    Main workflow engine - drives workflow instances

    Responsibilities:
    - Instance lifecycle and status transitions
    - Decision recording on the current activity
    - Walking transitions and auto-validating automatic steps
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        rule_service: "RuleService",
        item_store: ItemStore,
        auto_user: str = "auto"
    ):
        self.workflow_store = workflow_store
        self.rule_service = rule_service
        self.item_store = item_store
        self.graph = DefinitionGraph(workflow_store)
        self.auto_user = auto_user

    def get_user_auto(self) -> str:
        """Username recorded for automatic validation"""
        return self.auto_user

    # =========================================================================
    # Instances
    # =========================================================================

    @with_correlation_id
    @log_call("workflow.create")
    @transactional("workflow_store")
    def create_workflow_instance(
        self,
        definition_id: str,
        item_id: Optional[str],
        username: Optional[str] = None,
        user_logic: bool = False
    ) -> WorkflowInstance:
        """
        Create a workflow instance for a business item

        Raises:
            WorkflowDefinitionNotFoundError: Unknown definition
            AlreadyExistsError: The item already has a workflow for this definition
        """
        definition = self.workflow_store.read_workflow_definition_or_raise(definition_id)
        if item_id is not None and self.workflow_store.find_workflow_instance_by_item(definition_id, item_id):
            raise AlreadyExistsError(
                f"Item {item_id} already has a workflow for {definition.name}",
                details={"definition_id": definition_id, "item_id": item_id}
            )

        workflow = self.workflow_store.create_workflow_instance(WorkflowInstance(
            definition_id=definition.definition_id,
            item_id=item_id,
            username=username,
            user_logic=user_logic,
        ))
        logger.info(
            f"Created workflow {workflow.workflow_id} for item {item_id}",
            extra={"workflow_id": workflow.workflow_id, "definition_id": definition_id, "item_id": item_id}
        )
        return workflow

    def create_workflow_instance_by_name(
        self,
        definition_name: str,
        item_id: Optional[str],
        username: Optional[str] = None,
        user_logic: bool = False
    ) -> WorkflowInstance:
        definition = self.workflow_store.find_workflow_definition_by_name(definition_name)
        if definition is None:
            raise WorkflowDefinitionNotFoundError(
                f"Workflow definition '{definition_name}' not found",
                details={"name": definition_name}
            )
        return self.create_workflow_instance(definition.definition_id, item_id, username, user_logic)

    def get_workflow_instance(self, workflow_id: str) -> WorkflowInstance:
        return self.workflow_store.read_workflow_instance_or_raise(workflow_id)

    def get_workflow_instance_by_item_id(self, definition_id: str, item_id: str) -> Optional[WorkflowInstance]:
        return self.workflow_store.find_workflow_instance_by_item(definition_id, item_id)

    @log_call("workflow.remove")
    def remove_workflow(self, workflow_id: str) -> None:
        """Delete a workflow with its activities and decisions"""
        self.workflow_store.read_workflow_instance_or_raise(workflow_id)
        self.workflow_store.delete_workflow_instance(workflow_id)
        logger.info(f"Removed workflow {workflow_id}", extra={"workflow_id": workflow_id})

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @with_correlation_id
    @log_call("workflow.start")
    @transactional("workflow_store")
    def start_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        """
        Start a created workflow

        Automatic steps from the first activity are validated; the workflow
        stops on the first step needing a decision, or ends when none does.
        """
        self._require_status(workflow, (WorkflowStatus.CREATED,), "start")
        with _restore_on_error(workflow):
            workflow.status = WorkflowStatus.STARTED

            definition = self.workflow_store.read_workflow_definition_or_raise(workflow.definition_id)
            if definition.first_activity_id is not None:
                first = self.workflow_store.read_activity_definition_or_raise(definition.first_activity_id)
                self._advance_to(workflow, first)

            self.workflow_store.update_workflow_instance(workflow)
        self._log_status(workflow)
        return workflow

    @log_call("workflow.pause")
    def pause_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        return self._change_status(workflow, (WorkflowStatus.STARTED,), WorkflowStatus.PAUSED, "pause")

    @log_call("workflow.resume")
    def resume_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        return self._change_status(workflow, (WorkflowStatus.PAUSED,), WorkflowStatus.STARTED, "resume")

    @log_call("workflow.end")
    def end_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        return self._change_status(
            workflow, (WorkflowStatus.STARTED, WorkflowStatus.PAUSED), WorkflowStatus.ENDED, "end"
        )

    def _change_status(
        self,
        workflow: WorkflowInstance,
        allowed: Iterable[WorkflowStatus],
        target: WorkflowStatus,
        action: str
    ) -> WorkflowInstance:
        self._require_status(workflow, allowed, action)
        with _restore_on_error(workflow):
            workflow.status = target
            self.workflow_store.update_workflow_instance(workflow)
        self._log_status(workflow)
        return workflow

    @staticmethod
    def _require_status(workflow: WorkflowInstance, allowed: Iterable[WorkflowStatus], action: str) -> None:
        allowed = tuple(allowed)
        if workflow.status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} workflow {workflow.workflow_id} in status {workflow.status.value}",
                details={
                    "workflow_id": workflow.workflow_id,
                    "status": workflow.status.value,
                    "allowed": [s.value for s in allowed],
                }
            )

    # =========================================================================
    # Decisions
    # =========================================================================

    @with_correlation_id
    @log_call("workflow.save_decision")
    @transactional("workflow_store")
    def save_decision(
        self,
        workflow: WorkflowInstance,
        decision: Decision,
        force_valid: bool = False
    ) -> Decision:
        """
        Record a decision on the current activity without advancing

        Args:
            workflow: Started workflow
            decision: Decision to record; its activity is set to the current one
            force_valid: Also mark the current activity valid

        Raises:
            InvalidStateError: Workflow is not started or has no current activity
            AlreadyExistsError: The user already decided on this activity
        """
        self._require_status(workflow, (WorkflowStatus.STARTED,), "save a decision on")
        activity = self._current_activity(workflow)

        existing = self.workflow_store.find_decisions_by_activity(activity.activity_id)
        if any(d.username == decision.username for d in existing):
            raise AlreadyExistsError(
                f"{decision.username} already decided on activity {activity.activity_id}",
                details={"activity_id": activity.activity_id, "username": decision.username}
            )

        created = self.workflow_store.create_decision(
            decision.model_copy(update={"activity_id": activity.activity_id})
        )
        if force_valid and not activity.is_valid:
            activity.is_valid = True
            self.workflow_store.update_activity(activity)

        logger.info(
            f"Decision {created.decision_id} saved by {created.username}",
            extra={"workflow_id": workflow.workflow_id, "activity_id": activity.activity_id}
        )
        return created

    def get_decision(self, activity: Activity) -> Optional[Decision]:
        """Latest decision on an activity"""
        decisions = self.get_decisions(activity)
        return decisions[-1] if decisions else None

    def get_decisions(self, activity: Activity) -> List[Decision]:
        return self.workflow_store.find_decisions_by_activity(activity.activity_id)

    @log_call("workflow.delete_decision")
    def delete_decision(self, decision: Decision) -> None:
        if self.workflow_store.read_decision(decision.decision_id) is None:
            raise DecisionNotFoundError(
                f"Decision {decision.decision_id} not found",
                details={"decision_id": decision.decision_id}
            )
        self.workflow_store.delete_decision(decision.decision_id)

    def can_go_to_next_activity(self, workflow: WorkflowInstance) -> bool:
        """
        Whether the current activity may be left

        A valid activity may always be left. Otherwise a Single activity needs
        one decision and a Multiple activity needs a decision from every
        account selected for it.
        """
        activity = self._current_activity(workflow)
        if activity.is_valid:
            return True

        decisions = self.workflow_store.find_decisions_by_activity(activity.activity_id)
        if not decisions:
            return False

        activity_definition = self.workflow_store.read_activity_definition_or_raise(activity.activity_definition_id)
        if activity_definition.multiplicity == Multiplicity.MULTIPLE:
            context = self._build_context(workflow)
            selected = {a.account_id for a in self.rule_service.select_accounts(
                activity_definition.activity_definition_id, context
            )}
            return selected <= {d.username for d in decisions}
        return True

    @with_correlation_id
    @log_call("workflow.go_to_next_activity")
    @transactional("workflow_store")
    def go_to_next_activity(
        self,
        workflow: WorkflowInstance,
        transition_name: str = DEFAULT_TRANSITION
    ) -> WorkflowInstance:
        """
        Validate the current activity and follow the named transition

        Without a default transition the workflow ends.

        Raises:
            InvalidStateError: Workflow is not started
            TransitionNotFoundError: A custom transition name does not exist
        """
        self._require_status(workflow, (WorkflowStatus.STARTED,), "advance")
        activity = self._current_activity(workflow)
        if not activity.is_valid:
            activity.is_valid = True
            self.workflow_store.update_activity(activity)

        with _restore_on_error(workflow):
            if transition_name == DEFAULT_TRANSITION and not self.graph.has_next_activity(
                activity.activity_definition_id
            ):
                workflow.status = WorkflowStatus.ENDED
            else:
                next_definition = self.graph.find_next_activity(activity.activity_definition_id, transition_name)
                self._advance_to(workflow, next_definition)

            self.workflow_store.update_workflow_instance(workflow)
        self._log_status(workflow)
        return workflow

    @with_correlation_id
    @log_call("workflow.save_decision_and_go_to_next_activity")
    @transactional("workflow_store")
    def save_decision_and_go_to_next_activity(
        self,
        workflow: WorkflowInstance,
        decision: Decision,
        transition_name: str = DEFAULT_TRANSITION
    ) -> Decision:
        """
        Record a decision and advance when the current activity is complete

        A Multiple activity only advances once every selected account decided;
        until then the workflow stays on it.
        """
        created = self.save_decision(workflow, decision)
        if self.can_go_to_next_activity(workflow):
            self.go_to_next_activity(workflow, transition_name)
        return created

    # =========================================================================
    # Auto-validation
    # =========================================================================

    def can_auto_validate_activity(
        self,
        activity_definition: ActivityDefinition,
        business_object: Any,
        constants: Optional[RuleConstants] = None
    ) -> bool:
        """
        True when the step has no valid rule or no account to decide on it

        Without explicit constants, those stored for the step's workflow
        definition are used.
        """
        if constants is None:
            constants = self.rule_service.get_constants(activity_definition.definition_id)
        context = RuleContext(business_object=business_object, constants=constants)
        return self._can_auto_validate(activity_definition, context)

    def _can_auto_validate(self, activity_definition: ActivityDefinition, context: RuleContext) -> bool:
        item_id = activity_definition.activity_definition_id
        if not self.rule_service.is_rule_valid(item_id, context):
            return True
        return not self.rule_service.select_accounts(item_id, context)

    @transactional("workflow_store")
    def auto_validate_next_activities(
        self,
        workflow: WorkflowInstance,
        from_activity_definition_id: str
    ) -> Optional[ActivityDefinition]:
        """
        Validate automatic steps along default transitions

        Each automatic step gets an activity marked automatic and valid, and
        becomes the workflow's current activity. The moved pointer is saved
        with the new activities.

        Returns:
            The first step needing a decision, or None when the chain ended
        """
        previous = workflow.current_activity_id
        with _restore_on_error(workflow):
            stop = self._auto_validate_from(workflow, from_activity_definition_id)
            if workflow.current_activity_id != previous:
                self.workflow_store.update_workflow_current_activity(
                    workflow.workflow_id, workflow.current_activity_id
                )
        return stop

    def _auto_validate_from(
        self,
        workflow: WorkflowInstance,
        from_activity_definition_id: str
    ) -> Optional[ActivityDefinition]:
        context = self._build_context(workflow)
        activity_definition: Optional[ActivityDefinition] = (
            self.workflow_store.read_activity_definition_or_raise(from_activity_definition_id)
        )
        while activity_definition is not None:
            if not self._can_auto_validate(activity_definition, context):
                return activity_definition

            activity = self._open_activity(workflow, activity_definition, automatic=True)
            workflow.current_activity_id = activity.activity_id
            logger.debug(
                f"Auto-validated {activity_definition.name} as {self.auto_user}",
                extra={"workflow_id": workflow.workflow_id, "activity_id": activity.activity_id}
            )

            if self.graph.has_next_activity(activity_definition.activity_definition_id):
                activity_definition = self.graph.find_next_activity(activity_definition.activity_definition_id)
            else:
                activity_definition = None
        return None

    def _advance_to(self, workflow: WorkflowInstance, activity_definition: ActivityDefinition) -> None:
        stop = self.auto_validate_next_activities(workflow, activity_definition.activity_definition_id)
        if stop is None:
            workflow.status = WorkflowStatus.ENDED
            return
        activity = self._open_activity(workflow, stop, automatic=False)
        workflow.current_activity_id = activity.activity_id

    def _open_activity(
        self,
        workflow: WorkflowInstance,
        activity_definition: ActivityDefinition,
        automatic: bool
    ) -> Activity:
        """Reuse the open activity of a definition or create one"""
        activity = self.get_activity_for_definition(workflow, activity_definition)
        if activity is not None and not activity.is_valid:
            if activity.is_auto != automatic or activity.is_valid != automatic:
                activity.is_auto = automatic
                activity.is_valid = automatic
                self.workflow_store.update_activity(activity)
            return activity

        return self.workflow_store.create_activity(Activity(
            activity_definition_id=activity_definition.activity_definition_id,
            workflow_id=workflow.workflow_id,
            is_auto=automatic,
            is_valid=automatic,
        ))

    # =========================================================================
    # Queries
    # =========================================================================

    def get_activity(self, activity_id: str) -> Activity:
        return self.workflow_store.read_activity_or_raise(activity_id)

    def get_activity_for_definition(
        self,
        workflow: WorkflowInstance,
        activity_definition: ActivityDefinition
    ) -> Optional[Activity]:
        """The open activity of a definition in a workflow, else its latest one"""
        activities = [
            a for a in self.workflow_store.find_activities_by_workflow(workflow.workflow_id)
            if a.activity_definition_id == activity_definition.activity_definition_id
        ]
        for activity in reversed(activities):
            if not activity.is_valid:
                return activity
        return activities[-1] if activities else None

    def get_activity_definitions(self, workflow: WorkflowInstance) -> List[ActivityDefinition]:
        """Default path of the workflow's definition, independent of its state"""
        definition = self.workflow_store.read_workflow_definition_or_raise(workflow.definition_id)
        return self.graph.find_all_default_activity_definitions(definition)

    def get_workflow_decisions(self, workflow_id: str) -> List[WorkflowDecision]:
        """Each activity definition on the default path with its activity and decisions"""
        workflow = self.workflow_store.read_workflow_instance_or_raise(workflow_id)
        result: List[WorkflowDecision] = []
        for activity_definition in self.get_activity_definitions(workflow):
            activity = self.get_activity_for_definition(workflow, activity_definition)
            decisions = self.get_decisions(activity) if activity else []
            result.append(WorkflowDecision(
                activity_definition=activity_definition,
                activity=activity,
                decisions=decisions,
            ))
        return result

    def get_all_workflow_decisions(self, definition_id: str) -> Dict[str, List[WorkflowDecision]]:
        """Workflow decisions of every instance of a definition, keyed by workflow id"""
        return {
            workflow.workflow_id: self.get_workflow_decisions(workflow.workflow_id)
            for workflow in self.workflow_store.find_workflow_instances(definition_id)
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    def _current_activity(self, workflow: WorkflowInstance) -> Activity:
        if workflow.current_activity_id is None:
            raise InvalidStateError(
                f"Workflow {workflow.workflow_id} has no current activity",
                details={"workflow_id": workflow.workflow_id}
            )
        return self.workflow_store.read_activity_or_raise(workflow.current_activity_id)

    def _build_context(self, workflow: WorkflowInstance) -> RuleContext:
        business_object = None
        if workflow.item_id is not None:
            business_object = self.item_store.read_item(workflow.item_id)
            if business_object is None:
                raise ItemNotFoundError(
                    f"Item {workflow.item_id} of workflow {workflow.workflow_id} not found",
                    details={"workflow_id": workflow.workflow_id, "item_id": workflow.item_id}
                )
        return RuleContext(
            business_object=business_object,
            constants=self.rule_service.get_constants(workflow.definition_id),
        )

    @staticmethod
    def _log_status(workflow: WorkflowInstance) -> None:
        logger.info(
            f"Workflow {workflow.workflow_id} is {workflow.status.value}",
            extra={
                "workflow_id": workflow.workflow_id,
                "status": workflow.status.value,
                "activity_id": workflow.current_activity_id,
            }
        )
