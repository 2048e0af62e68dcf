"""Tests for the workflow instance state machine"""
import pytest

from workflow_core.domain.enums import Multiplicity, WorkflowStatus
from workflow_core.domain.errors import (
    AlreadyExistsError, DecisionNotFoundError, InvalidStateError, ItemNotFoundError,
    TransitionNotFoundError, UnknownOperatorError, WorkflowDefinitionNotFoundError, WorkflowNotFoundError
)
from workflow_core.domain.models import ConditionDefinition, RuleConstants, RuleDefinition, SelectorDefinition
from workflow_core.engine.definition_graph import new_transition

from tests.helpers import MANAGERS, decision


def current_definition_id(engine, workflow):
    return engine.get_activity(workflow.current_activity_id).activity_definition_id


@pytest.fixture
def steps(builder, accounts, purchase_order):
    return builder.manual_chain("Review", "Approve", "Sign", "Archive")


@pytest.fixture
def workflow(engine, definition, steps):
    return engine.create_workflow_instance(definition.definition_id, "PO-1", username="dana")


class TestInstances:

    def test_created_workflow(self, engine, workflow, definition):
        assert workflow.workflow_id.startswith("WFW-")
        assert workflow.status == WorkflowStatus.CREATED
        assert workflow.current_activity_id is None
        assert engine.get_workflow_instance_by_item_id(definition.definition_id, "PO-1") == workflow

    def test_one_workflow_per_item(self, engine, workflow, definition):
        with pytest.raises(AlreadyExistsError):
            engine.create_workflow_instance(definition.definition_id, "PO-1")

    def test_create_by_name(self, engine, steps):
        workflow = engine.create_workflow_instance_by_name("Purchase approval", "PO-2", user_logic=True)
        assert workflow.user_logic is True
        with pytest.raises(WorkflowDefinitionNotFoundError):
            engine.create_workflow_instance_by_name("Unknown process", "PO-3")

    def test_remove_workflow(self, engine, workflow):
        engine.start_instance(workflow)
        engine.remove_workflow(workflow.workflow_id)
        with pytest.raises(WorkflowNotFoundError):
            engine.get_workflow_instance(workflow.workflow_id)
        assert engine.workflow_store.find_activities_by_workflow(workflow.workflow_id) == []

    def test_auto_user(self, engine):
        assert engine.get_user_auto() == "auto"


class TestStateChanges:

    def test_start_points_at_first_manual_step(self, engine, workflow, steps):
        engine.start_instance(workflow)

        assert workflow.status == WorkflowStatus.STARTED
        assert current_definition_id(engine, workflow) == steps[0].activity_definition_id
        activity = engine.get_activity(workflow.current_activity_id)
        assert activity.is_auto is False
        assert activity.is_valid is False
        assert engine.get_workflow_instance(workflow.workflow_id).status == WorkflowStatus.STARTED

    def test_pause_resume_end(self, engine, workflow):
        engine.start_instance(workflow)
        engine.pause_instance(workflow)
        assert engine.get_workflow_instance(workflow.workflow_id).status == WorkflowStatus.PAUSED

        engine.resume_instance(workflow)
        assert workflow.status == WorkflowStatus.STARTED

        engine.end_instance(workflow)
        assert engine.get_workflow_instance(workflow.workflow_id).status == WorkflowStatus.ENDED

    def test_paused_workflow_can_end(self, engine, workflow):
        engine.start_instance(workflow)
        engine.pause_instance(workflow)
        engine.end_instance(workflow)
        assert workflow.status == WorkflowStatus.ENDED

    @pytest.mark.parametrize("action", ["pause_instance", "resume_instance", "end_instance"])
    def test_illegal_changes_from_created(self, engine, workflow, action):
        with pytest.raises(InvalidStateError):
            getattr(engine, action)(workflow)

    def test_ended_is_terminal(self, engine, workflow):
        engine.start_instance(workflow)
        engine.end_instance(workflow)
        for action in (engine.start_instance, engine.pause_instance, engine.resume_instance, engine.end_instance):
            with pytest.raises(InvalidStateError):
                action(workflow)

    def test_paused_workflow_takes_no_decision(self, engine, workflow):
        engine.start_instance(workflow)
        engine.pause_instance(workflow)
        with pytest.raises(InvalidStateError):
            engine.save_decision(workflow, decision("alice"))
        with pytest.raises(InvalidStateError):
            engine.go_to_next_activity(workflow)

    def test_missing_item_rolls_back_start(self, engine, definition, steps):
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-404")
        with pytest.raises(ItemNotFoundError):
            engine.start_instance(workflow)
        assert engine.get_workflow_instance(workflow.workflow_id).status == WorkflowStatus.CREATED

    def test_failed_start_leaves_the_workflow_created(
        self, engine, definition, builder, workflow_service, rule_service, purchase_order
    ):
        review = builder.add("Review")
        workflow_service.add_rule(
            review, RuleDefinition(), [ConditionDefinition(field="amount", operator="LIKE", expression="5")]
        )
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")

        with pytest.raises(UnknownOperatorError):
            engine.start_instance(workflow)

        assert workflow.status == WorkflowStatus.CREATED
        assert workflow.current_activity_id is None
        assert engine.get_workflow_instance(workflow.workflow_id).status == WorkflowStatus.CREATED

        condition = rule_service.get_conditions_for_rule_id(workflow_service.get_rules(review)[0].rule_id)[0]
        rule_service.update_condition(condition.model_copy(update={"operator": ">"}))
        engine.start_instance(workflow)
        assert workflow.status == WorkflowStatus.ENDED


class TestManualValidation:

    def test_four_step_chain(self, engine, workflow, steps):
        engine.start_instance(workflow)

        for index, step in enumerate(steps):
            assert current_definition_id(engine, workflow) == step.activity_definition_id
            assert workflow.status == WorkflowStatus.STARTED
            engine.save_decision_and_go_to_next_activity(workflow, decision("alice", comments=f"step {index + 1}"))

        assert workflow.status == WorkflowStatus.ENDED
        assert current_definition_id(engine, workflow) == steps[-1].activity_definition_id

        history = engine.get_workflow_decisions(workflow.workflow_id)
        assert [h.activity_definition.name for h in history] == ["Review", "Approve", "Sign", "Archive"]
        assert all(h.activity.is_valid and not h.activity.is_auto for h in history)
        assert [len(h.decisions) for h in history] == [1, 1, 1, 1]

    def test_decision_without_advancing(self, engine, workflow, steps):
        engine.start_instance(workflow)
        saved = engine.save_decision(workflow, decision("bob", choice=2))

        activity = engine.get_activity(workflow.current_activity_id)
        assert saved.activity_id == activity.activity_id
        assert engine.get_decision(activity).username == "bob"
        assert activity.is_valid is False
        assert engine.can_go_to_next_activity(workflow)
        assert current_definition_id(engine, workflow) == steps[0].activity_definition_id

    def test_no_decision_no_advance(self, engine, workflow):
        engine.start_instance(workflow)
        assert not engine.can_go_to_next_activity(workflow)

    def test_force_valid(self, engine, workflow):
        engine.start_instance(workflow)
        engine.save_decision(workflow, decision("alice"), force_valid=True)
        assert engine.get_activity(workflow.current_activity_id).is_valid

    def test_same_user_cannot_decide_twice(self, engine, workflow):
        engine.start_instance(workflow)
        engine.save_decision(workflow, decision("alice"))
        with pytest.raises(AlreadyExistsError):
            engine.save_decision(workflow, decision("alice", choice=0))
        assert len(engine.get_decisions(engine.get_activity(workflow.current_activity_id))) == 1

    def test_delete_decision(self, engine, workflow):
        engine.start_instance(workflow)
        saved = engine.save_decision(workflow, decision("alice"))
        activity = engine.get_activity(workflow.current_activity_id)

        engine.delete_decision(saved)
        assert engine.get_decision(activity) is None
        with pytest.raises(DecisionNotFoundError):
            engine.delete_decision(saved)

    def test_go_to_next_validates_current(self, engine, workflow, steps):
        engine.start_instance(workflow)
        first_activity_id = workflow.current_activity_id
        engine.go_to_next_activity(workflow)

        assert engine.get_activity(first_activity_id).is_valid
        assert current_definition_id(engine, workflow) == steps[1].activity_definition_id


class TestTransitions:

    @pytest.fixture
    def rework(self, context, definition, steps):
        context.workflow_store.add_transition(new_transition(
            steps[1].activity_definition_id,
            steps[0].activity_definition_id,
            "Rework",
            definition.definition_id,
        ))

    def test_custom_transition_opens_a_new_activity(self, engine, workflow, steps, rework):
        engine.start_instance(workflow)
        first_review = workflow.current_activity_id
        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))
        engine.save_decision_and_go_to_next_activity(workflow, decision("bob"), transition_name="Rework")

        assert current_definition_id(engine, workflow) == steps[0].activity_definition_id
        assert workflow.current_activity_id != first_review
        reviews = [
            a for a in engine.workflow_store.find_activities_by_workflow(workflow.workflow_id)
            if a.activity_definition_id == steps[0].activity_definition_id
        ]
        assert len(reviews) == 2

    def test_unknown_transition_rolls_back(self, engine, workflow):
        engine.start_instance(workflow)
        with pytest.raises(TransitionNotFoundError):
            engine.go_to_next_activity(workflow, "Escalate")
        assert engine.get_activity(workflow.current_activity_id).is_valid is False


class TestAutoValidation:

    def test_steps_without_accounts_or_valid_rules_are_automatic(
        self, engine, builder, definition, accounts, purchase_order, workflow_service
    ):
        review, approve, sign, archive = builder.chain("Review", "Approve", "Sign", "Archive")
        builder.require_person(review)
        # Valid rule, nobody to decide
        workflow_service.add_rule(
            approve, RuleDefinition(), [ConditionDefinition(field="amount", operator=">", expression="100")]
        )
        # Accounts available, rule not met
        builder.require_person(sign, threshold=1000)
        builder.require_person(archive)

        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")
        engine.start_instance(workflow)
        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))

        assert current_definition_id(engine, workflow) == archive.activity_definition_id
        for step in (approve, sign):
            activity = engine.get_activity_for_definition(workflow, step)
            assert activity.is_auto and activity.is_valid

    def test_all_automatic_chain_ends_on_start(self, engine, builder, definition, purchase_order):
        steps = builder.chain("Check", "Record", "Notify")
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")
        engine.start_instance(workflow)

        assert workflow.status == WorkflowStatus.ENDED
        assert current_definition_id(engine, workflow) == steps[-1].activity_definition_id
        activities = engine.workflow_store.find_activities_by_workflow(workflow.workflow_id)
        assert len(activities) == 3
        assert all(a.is_auto and a.is_valid for a in activities)

    def test_reaching_the_end_through_automatic_steps_ends(
        self, engine, builder, definition, accounts, purchase_order
    ):
        review, record = builder.chain("Review", "Record")
        builder.require_person(review)
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")
        engine.start_instance(workflow)
        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))

        assert workflow.status == WorkflowStatus.ENDED
        assert current_definition_id(engine, workflow) == record.activity_definition_id

    def test_can_auto_validate_activity(self, engine, steps):
        assert engine.can_auto_validate_activity(steps[0], {"amount": 50})
        assert not engine.can_auto_validate_activity(steps[0], {"amount": 500})

    def test_can_auto_validate_activity_reads_stored_constants(
        self, engine, builder, definition, accounts, workflow_service
    ):
        review = builder.add("Review")
        workflow_service.add_rule(
            review, RuleDefinition(), [ConditionDefinition(field="amount", operator=">", expression="$LIMIT")]
        )
        workflow_service.add_selector(review, SelectorDefinition(account_group_id=MANAGERS), [])
        workflow_service.add_constants(definition, RuleConstants(values={"LIMIT": "100"}))

        assert not engine.can_auto_validate_activity(review, {"amount": 500})
        assert engine.can_auto_validate_activity(review, {"amount": 50})
        assert not engine.can_auto_validate_activity(review, {"amount": 50}, RuleConstants(values={"LIMIT": "10"}))

    def test_auto_validating_directly_saves_the_pointer(
        self, engine, builder, definition, accounts, purchase_order
    ):
        check, record, approve = builder.chain("Check", "Record", "Approve")
        builder.require_person(approve)
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")

        stop = engine.auto_validate_next_activities(workflow, check.activity_definition_id)

        assert stop.activity_definition_id == approve.activity_definition_id
        stored = engine.get_workflow_instance(workflow.workflow_id)
        assert stored.current_activity_id == workflow.current_activity_id
        assert current_definition_id(engine, stored) == record.activity_definition_id
        assert len(engine.workflow_store.find_activities_by_workflow(workflow.workflow_id)) == 2


class TestMultiple:

    @pytest.fixture
    def committee_flow(self, builder, accounts, purchase_order):
        review = builder.add("Review")
        committee = builder.add("Committee", Multiplicity.MULTIPLE)
        archive = builder.add("Archive")
        for step in (review, committee, archive):
            builder.require_person(step)
        return review, committee, archive

    def test_every_selected_account_must_decide(self, engine, definition, committee_flow):
        review, committee, archive = committee_flow
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")
        engine.start_instance(workflow)
        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))
        assert current_definition_id(engine, workflow) == committee.activity_definition_id

        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))
        assert current_definition_id(engine, workflow) == committee.activity_definition_id
        assert not engine.can_go_to_next_activity(workflow)

        engine.save_decision_and_go_to_next_activity(workflow, decision("bob"))
        assert current_definition_id(engine, workflow) == archive.activity_definition_id

        decided = engine.get_decisions(engine.get_activity_for_definition(workflow, committee))
        assert sorted(d.username for d in decided) == ["alice", "bob"]

    def test_no_duplicate_activity_for_multiple(self, engine, definition, committee_flow):
        review, committee, archive = committee_flow
        workflow = engine.create_workflow_instance(definition.definition_id, "PO-1")
        engine.start_instance(workflow)
        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))
        engine.save_decision_and_go_to_next_activity(workflow, decision("alice"))

        committees = [
            a for a in engine.workflow_store.find_activities_by_workflow(workflow.workflow_id)
            if a.activity_definition_id == committee.activity_definition_id
        ]
        assert len(committees) == 1


def test_all_workflow_decisions(engine, definition, steps):
    first = engine.create_workflow_instance(definition.definition_id, "PO-1")
    engine.start_instance(first)
    engine.save_decision(first, decision("alice"))
    second = engine.create_workflow_instance(definition.definition_id, "PO-2")

    everything = engine.get_all_workflow_decisions(definition.definition_id)
    assert set(everything) == {first.workflow_id, second.workflow_id}
    assert len(everything[first.workflow_id][0].decisions) == 1
    assert everything[second.workflow_id][0].activity is None
