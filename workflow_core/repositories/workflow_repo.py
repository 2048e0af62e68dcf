"""Workflow Repository - MongoDB data access for definitions, instances, activities and decisions"""
from typing import Iterable, List, Optional, Sequence

from pymongo import ASCENDING, InsertOne, ReplaceOne, UpdateOne

from .base import WorkflowStore
from .mongo_client import MongoConnection, MongoRepository
from ..domain.models import (
    WorkflowDefinition, ActivityDefinition, TransitionDefinition,
    WorkflowInstance, Activity, Decision, RecalculationOutput
)
from ..domain.enums import WorkflowStatus
from ..domain.errors import (
    AlreadyExistsError, WorkflowDefinitionNotFoundError, ActivityDefinitionNotFoundError,
    WorkflowNotFoundError, ActivityNotFoundError
)
from ..utils import idgen
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFINITIONS = "workflow_definitions"
ACTIVITY_DEFINITIONS = "activity_definitions"
TRANSITIONS = "transitions"
WORKFLOWS = "workflows"
ACTIVITIES = "activities"
DECISIONS = "decisions"


class MongoWorkflowStore(MongoRepository, WorkflowStore):
    """Workflow store backed by MongoDB"""

    def __init__(self, connection: MongoConnection):
        super().__init__(connection)

    # =========================================================================
    # Workflow Definitions
    # =========================================================================

    def create_workflow_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        if self.find_workflow_definition_by_name(definition.name) is not None:
            raise AlreadyExistsError(
                f"Workflow definition '{definition.name}' already exists",
                details={"name": definition.name}
            )
        created = self._insert(DEFINITIONS, "definition_id", definition, idgen.generate_definition_id)
        logger.info(f"Created workflow definition: {created.definition_id}", extra={"definition_id": created.definition_id})
        return created

    def read_workflow_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        return self._find_one(DEFINITIONS, WorkflowDefinition, {"_id": definition_id})

    def find_workflow_definition_by_name(self, name: str) -> Optional[WorkflowDefinition]:
        return self._find_one(DEFINITIONS, WorkflowDefinition, {"name": name})

    def update_workflow_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self._replace(DEFINITIONS, "definition_id", definition, WorkflowDefinitionNotFoundError)

    # =========================================================================
    # Activity Definitions & Transitions
    # =========================================================================

    def create_activity_definition(self, activity_definition: ActivityDefinition) -> ActivityDefinition:
        return self._insert(
            ACTIVITY_DEFINITIONS, "activity_definition_id", activity_definition,
            idgen.generate_activity_definition_id
        )

    def read_activity_definition(self, activity_definition_id: str) -> Optional[ActivityDefinition]:
        return self._find_one(ACTIVITY_DEFINITIONS, ActivityDefinition, {"_id": activity_definition_id})

    def update_activity_definition(self, activity_definition: ActivityDefinition) -> ActivityDefinition:
        return self._replace(
            ACTIVITY_DEFINITIONS, "activity_definition_id", activity_definition,
            ActivityDefinitionNotFoundError
        )

    def delete_activity_definition(self, activity_definition_id: str) -> None:
        self._delete(ACTIVITY_DEFINITIONS, {"_id": activity_definition_id})

    def find_activity_definitions(self, definition_id: str) -> List[ActivityDefinition]:
        return self._find(ACTIVITY_DEFINITIONS, ActivityDefinition, {"definition_id": definition_id})

    def add_transition(self, transition: TransitionDefinition) -> TransitionDefinition:
        return self._insert(TRANSITIONS, "transition_id", transition, idgen.generate_transition_id)

    def update_transition(self, transition: TransitionDefinition) -> TransitionDefinition:
        return self._replace(TRANSITIONS, "transition_id", transition)

    def remove_transition(self, transition_id: str) -> None:
        self._delete(TRANSITIONS, {"_id": transition_id})

    def find_transition(self, from_activity_id: str, name: str) -> Optional[TransitionDefinition]:
        return self._find_one(TRANSITIONS, TransitionDefinition, {"from_activity_id": from_activity_id, "name": name})

    def find_transitions(self, definition_id: str) -> List[TransitionDefinition]:
        return self._find(TRANSITIONS, TransitionDefinition, {"definition_id": definition_id})

    # =========================================================================
    # Workflow Instances
    # =========================================================================

    def create_workflow_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        created = self._insert(WORKFLOWS, "workflow_id", workflow, idgen.generate_workflow_id)
        logger.info(f"Created workflow: {created.workflow_id}", extra={"workflow_id": created.workflow_id})
        return created

    def read_workflow_instance(self, workflow_id: str) -> Optional[WorkflowInstance]:
        return self._find_one(WORKFLOWS, WorkflowInstance, {"_id": workflow_id})

    def find_workflow_instance_by_item(self, definition_id: str, item_id: str) -> Optional[WorkflowInstance]:
        return self._find_one(WORKFLOWS, WorkflowInstance, {"definition_id": definition_id, "item_id": item_id})

    def update_workflow_instance(self, workflow: WorkflowInstance) -> WorkflowInstance:
        return self._replace(WORKFLOWS, "workflow_id", workflow, WorkflowNotFoundError)

    def update_workflow_current_activity(self, workflow_id: str, activity_id: Optional[str]) -> None:
        result = self._collection(WORKFLOWS).update_one(
            {"_id": workflow_id},
            {"$set": {"current_activity_id": activity_id}},
            session=self.connection.session()
        )
        if result.matched_count == 0:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found", details={"workflow_id": workflow_id})

    def delete_workflow_instance(self, workflow_id: str) -> None:
        with self.transaction():
            activity_ids = [a.activity_id for a in self.find_activities_by_workflow(workflow_id)]
            self._delete(DECISIONS, {"activity_id": {"$in": activity_ids}})
            self._delete(ACTIVITIES, {"workflow_id": workflow_id})
            self._delete(WORKFLOWS, {"_id": workflow_id})
        logger.info(f"Deleted workflow: {workflow_id}", extra={"workflow_id": workflow_id})

    def find_workflow_instances(
        self,
        definition_id: str,
        statuses: Optional[Sequence[WorkflowStatus]] = None
    ) -> List[WorkflowInstance]:
        query = {"definition_id": definition_id}
        if statuses is not None:
            query["status"] = {"$in": [WorkflowStatus(s).value for s in statuses]}
        return self._find(WORKFLOWS, WorkflowInstance, query)

    # =========================================================================
    # Activities
    # =========================================================================

    def create_activity(self, activity: Activity) -> Activity:
        return self._insert(ACTIVITIES, "activity_id", activity, idgen.generate_activity_id)

    def read_activity(self, activity_id: str) -> Optional[Activity]:
        return self._find_one(ACTIVITIES, Activity, {"_id": activity_id})

    def update_activity(self, activity: Activity) -> Activity:
        return self._replace(ACTIVITIES, "activity_id", activity, ActivityNotFoundError)

    def find_activities_by_workflow(self, workflow_id: str) -> List[Activity]:
        return self._find(ACTIVITIES, Activity, {"workflow_id": workflow_id}, sort=[("created_at", ASCENDING)])

    def find_activities_by_workflows(self, workflow_ids: Iterable[str]) -> List[Activity]:
        return self._find(
            ACTIVITIES, Activity,
            {"workflow_id": {"$in": list(workflow_ids)}},
            sort=[("created_at", ASCENDING)]
        )

    def find_activities_by_activity_definition(self, activity_definition_id: str) -> List[Activity]:
        return self._find(ACTIVITIES, Activity, {"activity_definition_id": activity_definition_id})

    def delete_activities_by_activity_definition(self, activity_definition_id: str) -> None:
        with self.transaction():
            activity_ids = [a.activity_id for a in self.find_activities_by_activity_definition(activity_definition_id)]
            self._delete(DECISIONS, {"activity_id": {"$in": activity_ids}})
            self._delete(ACTIVITIES, {"activity_definition_id": activity_definition_id})

    # =========================================================================
    # Decisions
    # =========================================================================

    def create_decision(self, decision: Decision) -> Decision:
        return self._insert(DECISIONS, "decision_id", decision, idgen.generate_decision_id)

    def read_decision(self, decision_id: str) -> Optional[Decision]:
        return self._find_one(DECISIONS, Decision, {"_id": decision_id})

    def delete_decision(self, decision_id: str) -> None:
        self._delete(DECISIONS, {"_id": decision_id})

    def find_decisions_by_activity(self, activity_id: str) -> List[Decision]:
        return self._find(DECISIONS, Decision, {"activity_id": activity_id}, sort=[("decided_at", ASCENDING)])

    def find_decisions_by_activities(self, activity_ids: Iterable[str]) -> List[Decision]:
        return self._find(
            DECISIONS, Decision,
            {"activity_id": {"$in": list(activity_ids)}},
            sort=[("decided_at", ASCENDING)]
        )

    # =========================================================================
    # Recalculation batch
    # =========================================================================

    def apply_recalculation(self, output: RecalculationOutput) -> None:
        """Apply a recalculation diff with one bulk write per collection"""
        activity_ops = []
        workflow_ops = []

        for activity in output.activities_update_is_auto:
            activity_ops.append(ReplaceOne({"_id": activity.activity_id}, self._document(activity)))
        for activity in output.activities_create:
            activity_ops.append(InsertOne(self._document(activity)))
        for activity in output.activities_create_update_current_activity:
            activity_ops.append(InsertOne(self._document(activity)))
            workflow_ops.append(UpdateOne(
                {"_id": activity.workflow_id},
                {"$set": {"current_activity_id": activity.activity_id}}
            ))
        for workflow in output.workflows_update_current_activity:
            workflow_ops.append(UpdateOne(
                {"_id": workflow.workflow_id},
                {"$set": {"current_activity_id": workflow.current_activity_id}}
            ))

        with self.transaction():
            session = self.connection.session()
            if activity_ops:
                self._collection(ACTIVITIES).bulk_write(activity_ops, ordered=True, session=session)
            if workflow_ops:
                self._collection(WORKFLOWS).bulk_write(workflow_ops, ordered=True, session=session)
        logger.info("Applied recalculation output", extra={"summary": output.summary()})

    @staticmethod
    def _document(activity: Activity) -> dict:
        doc = activity.model_dump(mode="json")
        doc["_id"] = activity.activity_id
        return doc
