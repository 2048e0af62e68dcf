"""Recalculation Service - Load snapshots, run the recalculation engine and apply its output"""
from typing import Dict, List, Sequence, Set

from .rule_service import RuleService
from ..domain.models import WorkflowDefinition, WorkflowInstance, Activity, Decision, RecalculationOutput
from ..domain.enums import LIVE_STATUSES
from ..engine.definition_graph import DefinitionGraph
from ..engine.recalculation import RecalculationEngine, RecalculationSnapshot, CustomRecalculation
from ..middleware import with_correlation_id, log_call
from ..repositories.base import WorkflowStore, ItemStore, AccountStore
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RecalculationService:
    """
    Service for bulk recalculation of workflow instances

    Loads everything a batch needs with a fixed number of store reads, runs
    the pure engine over the snapshot and applies the resulting diff in one
    store transaction.
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        rule_service: RuleService,
        item_store: ItemStore,
        account_store: AccountStore,
        max_workers: int = 1,
        isolate_failures: bool = False,
        hooks: Sequence[CustomRecalculation] = ()
    ):
        self.workflow_store = workflow_store
        self.rule_service = rule_service
        self.item_store = item_store
        self.account_store = account_store
        self.max_workers = max_workers
        self.isolate_failures = isolate_failures
        self.graph = DefinitionGraph(workflow_store)
        self.engine = RecalculationEngine(
            rule_validator=rule_service.validator,
            hooks=hooks,
        )

    @with_correlation_id
    @log_call("recalculation.workflow")
    def recalculate_workflow(self, workflow: WorkflowInstance, dry_run: bool = False) -> RecalculationOutput:
        """Recalculate a single workflow and apply the diff"""
        definition = self.workflow_store.read_workflow_definition_or_raise(workflow.definition_id)
        return self._run(definition, [workflow], dry_run)

    @with_correlation_id
    @log_call("recalculation.definition")
    def recalculate_workflow_definition(
        self,
        definition: WorkflowDefinition,
        dry_run: bool = False
    ) -> RecalculationOutput:
        """Recalculate every started or paused workflow of a definition and apply the diff"""
        workflows = self.workflow_store.find_workflow_instances(definition.definition_id, LIVE_STATUSES)
        return self._run(definition, workflows, dry_run)

    def _run(
        self,
        definition: WorkflowDefinition,
        workflows: List[WorkflowInstance],
        dry_run: bool
    ) -> RecalculationOutput:
        snapshot = self.build_snapshot(definition, workflows)
        output = self.engine.recalculate_batch(
            snapshot,
            workflows,
            max_workers=self.max_workers,
            isolate_failures=self.isolate_failures,
        )

        summary = output.summary()
        if dry_run:
            logger.info(
                f"Dry run for {definition.name}, nothing applied",
                extra={"definition_id": definition.definition_id, "summary": summary}
            )
        elif not output.is_empty():
            self.workflow_store.apply_recalculation(output)
        return output

    def build_snapshot(
        self,
        definition: WorkflowDefinition,
        workflows: Sequence[WorkflowInstance]
    ) -> RecalculationSnapshot:
        """
        Pre-load every input the engine needs for a batch

        Args:
            definition: Definition shared by all workflows of the batch
            workflows: Workflows to recalculate

        Returns:
            Read-only snapshot for the batch
        """
        chain = self.graph.find_all_default_activity_definitions(definition)
        item_ids = [ad.activity_definition_id for ad in chain]

        rules_by_item, conditions_by_rule = self.rule_service.load_rules(item_ids)
        selectors_by_item, filters_by_selector = self.rule_service.load_selectors(item_ids)
        group_ids: Set[str] = {
            selector.account_group_id
            for selectors in selectors_by_item.values()
            for selector in selectors
        }

        workflow_ids = [w.workflow_id for w in workflows]
        activities = self.workflow_store.find_activities_by_workflows(workflow_ids)
        activities_by_workflow: Dict[str, List[Activity]] = {}
        for activity in activities:
            activities_by_workflow.setdefault(activity.workflow_id, []).append(activity)

        decisions_by_activity: Dict[str, List[Decision]] = {}
        for decision in self.workflow_store.find_decisions_by_activities(a.activity_id for a in activities):
            decisions_by_activity.setdefault(decision.activity_id, []).append(decision)

        item_keys = {w.item_id for w in workflows if w.item_id is not None}

        return RecalculationSnapshot(
            activity_definitions=chain,
            constants=self.rule_service.get_constants(definition.definition_id),
            rules_by_item=rules_by_item,
            conditions_by_rule=conditions_by_rule,
            selectors_by_item=selectors_by_item,
            filters_by_selector=filters_by_selector,
            accounts_by_group=self.account_store.get_accounts_by_groups(group_ids),
            activities_by_workflow=activities_by_workflow,
            decisions_by_activity=decisions_by_activity,
            items=self.item_store.read_items(item_keys),
        )
