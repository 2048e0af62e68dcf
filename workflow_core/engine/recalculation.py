"""Recalculation Engine - Pure batch reconciliation of workflow instances with rules and business data"""
import contextvars
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .rule_validator import RuleValidator
from .account_selector import AccountSelector
from ..domain.models import (
    ActivityDefinition, WorkflowInstance, Activity, Decision,
    RuleDefinition, ConditionDefinition, SelectorDefinition, FilterDefinition,
    RuleConstants, RuleContext, RecalculationOutput
)
from ..domain.enums import Multiplicity, LIVE_STATUSES
from ..domain.errors import ItemNotFoundError, RecalculationError
from ..utils.idgen import generate_activity_id
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RecalculationSnapshot(BaseModel):
    """
    Read-only inputs of one recalculation batch

    Every map is pre-loaded for all workflows of the batch. The snapshot is
    shared by the worker threads and must not be modified while a batch runs.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    activity_definitions: List[ActivityDefinition] = Field(
        default_factory=list, description="Default chain of the workflow definition, in order"
    )
    constants: RuleConstants = Field(default_factory=RuleConstants)
    rules_by_item: Dict[str, List[RuleDefinition]] = Field(default_factory=dict)
    conditions_by_rule: Dict[str, List[ConditionDefinition]] = Field(default_factory=dict)
    selectors_by_item: Dict[str, List[SelectorDefinition]] = Field(default_factory=dict)
    filters_by_selector: Dict[str, List[FilterDefinition]] = Field(default_factory=dict)
    accounts_by_group: Dict[str, Set[str]] = Field(default_factory=dict)
    activities_by_workflow: Dict[str, List[Activity]] = Field(default_factory=dict)
    decisions_by_activity: Dict[str, List[Decision]] = Field(default_factory=dict)
    items: Dict[str, Any] = Field(default_factory=dict, description="Business objects keyed by item id")

    def activities_by_definition(self, workflow_id: str) -> Dict[str, List[Activity]]:
        """This workflow's activities keyed by activity definition id, oldest first"""
        grouped: Dict[str, List[Activity]] = {}
        for activity in self.activities_by_workflow.get(workflow_id, ()):
            grouped.setdefault(activity.activity_definition_id, []).append(activity)
        return grouped


class CustomRecalculation:
    """
    Extension hook around the generic recalculation pass

    Subclasses add entries to the output for business logic that cannot be
    written as rule conditions. Both methods receive the output of the
    workflow being recalculated and must not perform I/O.
    """

    def before(
        self,
        workflow: WorkflowInstance,
        snapshot: RecalculationSnapshot,
        output: RecalculationOutput
    ) -> None:
        pass

    def after(
        self,
        workflow: WorkflowInstance,
        snapshot: RecalculationSnapshot,
        output: RecalculationOutput
    ) -> None:
        pass


class RecalculationEngine:
    """
    Recompute which activities exist, which are automatic and where each
    workflow's current pointer must be

    Walks the default chain from the workflow's current activity definition
    (or from the start when it has none):

    - A step needs a person when its rules are valid and its selectors
      resolve at least one account; otherwise it is automatic.
    - Automatic steps are created or updated as automatic and valid.
    - A step needing a person stays valid when a person validated it or
      every required decision exists; the walk stops at the first one that
      is not valid, creating it when missing, and points the workflow at it.
    - When the chain is exhausted the workflow points at the last activity.

    At most one activity is kept per definition, including Multiple
    definitions; an existing open activity is reused, never duplicated.
    Running the engine again on the applied output yields an empty diff.
    """

    def __init__(
        self,
        rule_validator: Optional[RuleValidator] = None,
        account_selector: Optional[AccountSelector] = None,
        hooks: Sequence[CustomRecalculation] = ()
    ):
        self.rule_validator = rule_validator or RuleValidator()
        self.account_selector = account_selector or AccountSelector(evaluator=self.rule_validator.evaluator)
        self.hooks = list(hooks)

    # =========================================================================
    # Batch
    # =========================================================================

    def recalculate_batch(
        self,
        snapshot: RecalculationSnapshot,
        workflows: Sequence[WorkflowInstance],
        max_workers: int = 1,
        isolate_failures: bool = False
    ) -> RecalculationOutput:
        """
        Recalculate many workflows against one snapshot

        Args:
            snapshot: Pre-loaded read-only inputs
            workflows: Workflows to recalculate
            max_workers: Worker threads; 1 runs inline
            isolate_failures: Record failing workflows in failed_workflow_ids instead of raising

        Raises:
            RecalculationError: A workflow failed and failures are not isolated

        Returns:
            Outputs of all workflows merged in input order
        """
        def run(workflow: WorkflowInstance) -> RecalculationOutput:
            try:
                return self.recalculate_workflow(snapshot, workflow)
            except Exception as e:
                if not isolate_failures:
                    raise RecalculationError(workflow.workflow_id, e) from e
                logger.error(
                    f"Recalculation failed for workflow {workflow.workflow_id}: {e}",
                    extra={"workflow_id": workflow.workflow_id},
                    exc_info=True
                )
                return RecalculationOutput(failed_workflow_ids=[workflow.workflow_id])

        merged = RecalculationOutput()
        if max_workers <= 1 or len(workflows) <= 1:
            for workflow in workflows:
                merged.merge(run(workflow))
        else:
            # Workers run in copies of the caller's context
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="recalc") as executor:
                futures = [
                    executor.submit(contextvars.copy_context().run, run, workflow)
                    for workflow in workflows
                ]
                for future in futures:
                    merged.merge(future.result())

        logger.info(
            f"Recalculated {len(workflows)} workflows",
            extra={"summary": merged.summary()}
        )
        return merged

    # =========================================================================
    # Single workflow
    # =========================================================================

    def recalculate_workflow(
        self,
        snapshot: RecalculationSnapshot,
        workflow: WorkflowInstance
    ) -> RecalculationOutput:
        """
        Recalculate one workflow

        Raises:
            ItemNotFoundError: The workflow's business object is not in the snapshot
            RuleConfigurationError: A condition or filter cannot be evaluated
        """
        output = RecalculationOutput()
        if workflow.status not in LIVE_STATUSES:
            logger.debug(
                f"Skipping workflow {workflow.workflow_id} in status {workflow.status.value}",
                extra={"workflow_id": workflow.workflow_id, "status": workflow.status.value}
            )
            return output

        item = snapshot.items.get(workflow.item_id)
        if item is None:
            raise ItemNotFoundError(
                f"Item {workflow.item_id} of workflow {workflow.workflow_id} not found",
                details={"workflow_id": workflow.workflow_id, "item_id": workflow.item_id}
            )
        context = RuleContext(business_object=item, constants=snapshot.constants)

        for hook in self.hooks:
            hook.before(workflow, snapshot, output)
        self._walk_chain(snapshot, workflow, context, output)
        for hook in self.hooks:
            hook.after(workflow, snapshot, output)
        return output

    def _walk_chain(
        self,
        snapshot: RecalculationSnapshot,
        workflow: WorkflowInstance,
        context: RuleContext,
        output: RecalculationOutput
    ) -> None:
        chain = snapshot.activity_definitions
        existing_by_definition = snapshot.activities_by_definition(workflow.workflow_id)
        last: Optional[Activity] = None
        last_is_new = False

        for activity_definition in chain[self._start_index(chain, workflow, snapshot):]:
            needs_person, account_ids = self.requires_decision(activity_definition, context, snapshot)
            existing = self._live_activity(existing_by_definition.get(activity_definition.activity_definition_id, ()))

            if needs_person:
                if existing is None:
                    created = self._new_activity(workflow, activity_definition, automatic=False)
                    output.activities_create_update_current_activity.append(created)
                    return

                is_valid = self._is_decided(activity_definition, existing, account_ids, snapshot)
                self._update_flags(existing, False, is_valid, output)
                if not is_valid:
                    self._point_to(workflow, existing, output)
                    return
                last, last_is_new = existing, False
            else:
                if existing is None:
                    created = self._new_activity(workflow, activity_definition, automatic=True)
                    output.activities_create.append(created)
                    last, last_is_new = created, True
                else:
                    self._update_flags(existing, True, True, output)
                    last, last_is_new = existing, False

        # Chain exhausted: point at the last activity reached
        if last is None:
            return
        if last_is_new:
            output.activities_create.remove(last)
            output.activities_create_update_current_activity.append(last)
        else:
            self._point_to(workflow, last, output)

    # =========================================================================
    # Step evaluation
    # =========================================================================

    def requires_decision(
        self,
        activity_definition: ActivityDefinition,
        context: RuleContext,
        snapshot: RecalculationSnapshot
    ) -> Tuple[bool, Set[str]]:
        """
        Whether a step needs a person, with the accounts selected for it

        Returns:
            (True, accounts) when the rules are valid and accounts were selected,
            (False, accounts) otherwise
        """
        item_id = activity_definition.activity_definition_id
        if not self.rule_validator.is_item_valid(item_id, snapshot.rules_by_item, snapshot.conditions_by_rule, context):
            return False, set()
        account_ids = self.account_selector.select_account_ids(
            snapshot.selectors_by_item.get(item_id, ()),
            snapshot.filters_by_selector,
            context,
            snapshot.accounts_by_group,
        )
        return bool(account_ids), account_ids

    @staticmethod
    def _is_decided(
        activity_definition: ActivityDefinition,
        activity: Activity,
        account_ids: Set[str],
        snapshot: RecalculationSnapshot
    ) -> bool:
        if activity.is_valid and not activity.is_auto:
            # Validated by a person
            return True
        decisions = snapshot.decisions_by_activity.get(activity.activity_id, ())
        if activity_definition.multiplicity == Multiplicity.MULTIPLE:
            return account_ids <= {decision.username for decision in decisions}
        return bool(decisions)

    @staticmethod
    def _start_index(
        chain: Sequence[ActivityDefinition],
        workflow: WorkflowInstance,
        snapshot: RecalculationSnapshot
    ) -> int:
        if workflow.current_activity_id is None:
            return 0
        current = next(
            (a for a in snapshot.activities_by_workflow.get(workflow.workflow_id, ())
             if a.activity_id == workflow.current_activity_id),
            None
        )
        if current is None:
            return 0
        for index, activity_definition in enumerate(chain):
            if activity_definition.activity_definition_id == current.activity_definition_id:
                return index
        return 0

    @staticmethod
    def _live_activity(activities: Sequence[Activity]) -> Optional[Activity]:
        """The open activity of a definition if any, else the latest one"""
        for activity in reversed(activities):
            if not activity.is_valid:
                return activity
        return activities[-1] if activities else None

    # =========================================================================
    # Output helpers
    # =========================================================================

    @staticmethod
    def _new_activity(
        workflow: WorkflowInstance,
        activity_definition: ActivityDefinition,
        automatic: bool
    ) -> Activity:
        return Activity(
            activity_id=generate_activity_id(),
            activity_definition_id=activity_definition.activity_definition_id,
            workflow_id=workflow.workflow_id,
            is_auto=automatic,
            is_valid=automatic,
        )

    @staticmethod
    def _update_flags(activity: Activity, is_auto: bool, is_valid: bool, output: RecalculationOutput) -> None:
        if activity.is_auto != is_auto or activity.is_valid != is_valid:
            output.activities_update_is_auto.append(
                activity.model_copy(update={"is_auto": is_auto, "is_valid": is_valid})
            )

    @staticmethod
    def _point_to(workflow: WorkflowInstance, activity: Activity, output: RecalculationOutput) -> None:
        if workflow.current_activity_id != activity.activity_id:
            output.workflows_update_current_activity.append(
                workflow.model_copy(update={"current_activity_id": activity.activity_id})
            )
