"""Tests for the MongoDB stores against mocked collections"""
from collections import defaultdict
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from pymongo import ASCENDING, InsertOne, ReplaceOne, UpdateOne
from pymongo.errors import DuplicateKeyError

from workflow_core.domain.enums import WorkflowStatus
from workflow_core.domain.errors import (
    AccountGroupNotFoundError, ActivityNotFoundError, AlreadyExistsError, NotFoundError
)
from workflow_core.domain.models import (
    Activity, AccountGroup, RecalculationOutput, RuleConstants, WorkflowDefinition, WorkflowInstance
)
from workflow_core.repositories.mongo_client import MongoConnection
from workflow_core.repositories.rule_repo import MongoAccountStore, MongoItemStore, MongoRuleStore
from workflow_core.repositories.workflow_repo import MongoWorkflowStore


@pytest.fixture
def collections():
    return defaultdict(MagicMock)


@pytest.fixture
def client(collections):
    client = MagicMock()
    db = MagicMock()
    client.__getitem__.return_value = db
    db.__getitem__.side_effect = lambda name: collections[name]
    return client


@pytest.fixture
def connection(settings, client):
    return MongoConnection(settings, client=client)


@pytest.fixture
def store(connection):
    return MongoWorkflowStore(connection)


def workflow_doc(workflow_id="WFW-1", status="STARTED"):
    return {
        "_id": workflow_id,
        "workflow_id": workflow_id,
        "definition_id": "WFD-1",
        "item_id": "PO-1",
        "status": status,
        "current_activity_id": None,
        "created_at": "2024-03-01T10:00:00Z",
    }


class TestDocuments:

    def test_insert_uses_the_id_as_document_key(self, store, collections):
        created = store.create_workflow_instance(WorkflowInstance(definition_id="WFD-1", item_id="PO-1"))

        doc = collections["workflows"].insert_one.call_args.args[0]
        assert doc["_id"] == created.workflow_id
        assert doc["status"] == "CREATED"
        assert collections["workflows"].insert_one.call_args.kwargs["session"] is None

    def test_read_decodes_without_the_document_key(self, store, collections):
        collections["workflows"].find_one.return_value = workflow_doc()

        workflow = store.read_workflow_instance("WFW-1")

        assert workflow.workflow_id == "WFW-1"
        assert workflow.status == WorkflowStatus.STARTED
        collections["workflows"].find_one.assert_called_once_with({"_id": "WFW-1"}, session=None)

    def test_read_missing(self, store, collections):
        collections["workflows"].find_one.return_value = None
        assert store.read_workflow_instance("WFW-404") is None

    def test_corrupted_document(self, store, collections):
        collections["workflows"].find_one.return_value = {"_id": "WFW-1", "status": "LOST"}
        with pytest.raises(ValidationError):
            store.read_workflow_instance("WFW-1")

    def test_duplicate_key(self, store, collections):
        collections["activities"].insert_one.side_effect = DuplicateKeyError("E11000")
        with pytest.raises(AlreadyExistsError):
            store.create_activity(Activity(activity_id="ACT-1", activity_definition_id="WFAD-1", workflow_id="WFW-1"))

    def test_duplicate_definition_name(self, store, collections):
        collections["workflow_definitions"].find_one.return_value = {
            "_id": "WFD-1", "definition_id": "WFD-1", "name": "Expense claim",
        }
        with pytest.raises(AlreadyExistsError):
            store.create_workflow_definition(WorkflowDefinition(name="Expense claim"))
        collections["workflow_definitions"].insert_one.assert_not_called()

    def test_replace_missing_document(self, store, collections):
        collections["activities"].replace_one.return_value.matched_count = 0
        with pytest.raises(ActivityNotFoundError):
            store.update_activity(Activity(activity_id="ACT-404", activity_definition_id="WFAD-1", workflow_id="WFW-1"))


class TestQueries:

    def test_status_filter(self, store, collections):
        collections["workflows"].find.return_value = [workflow_doc("WFW-1"), workflow_doc("WFW-2", "PAUSED")]

        found = store.find_workflow_instances("WFD-1", [WorkflowStatus.STARTED, WorkflowStatus.PAUSED])

        assert [w.workflow_id for w in found] == ["WFW-1", "WFW-2"]
        collections["workflows"].find.assert_called_once_with(
            {"definition_id": "WFD-1", "status": {"$in": ["STARTED", "PAUSED"]}},
            session=None,
        )

    def test_activities_are_sorted_by_creation(self, store, collections):
        cursor = collections["activities"].find.return_value
        cursor.sort.return_value = [{
            "_id": "ACT-1", "activity_id": "ACT-1", "activity_definition_id": "WFAD-1",
            "workflow_id": "WFW-1", "created_at": "2024-03-01T10:00:00Z",
        }]

        activities = store.find_activities_by_workflow("WFW-1")

        assert [a.activity_id for a in activities] == ["ACT-1"]
        cursor.sort.assert_called_once_with([("created_at", ASCENDING)])

    def test_current_activity_update_on_missing_workflow(self, store, collections):
        collections["workflows"].update_one.return_value.matched_count = 0
        with pytest.raises(NotFoundError):
            store.update_workflow_current_activity("WFW-404", "ACT-1")


class TestApplyRecalculation:

    def test_one_bulk_write_per_collection(self, store, collections):
        workflow = WorkflowInstance(workflow_id="WFW-1", definition_id="WFD-1")
        output = RecalculationOutput(
            workflows_update_current_activity=[workflow.model_copy(update={"current_activity_id": "ACT-1"})],
            activities_update_is_auto=[
                Activity(activity_id="ACT-1", activity_definition_id="WFAD-1", workflow_id="WFW-1", is_auto=True)
            ],
            activities_create=[Activity(activity_id="ACT-2", activity_definition_id="WFAD-2", workflow_id="WFW-2")],
            activities_create_update_current_activity=[
                Activity(activity_id="ACT-3", activity_definition_id="WFAD-3", workflow_id="WFW-2")
            ],
        )

        store.apply_recalculation(output)

        activity_call = collections["activities"].bulk_write.call_args
        assert [type(op) for op in activity_call.args[0]] == [ReplaceOne, InsertOne, InsertOne]
        assert activity_call.kwargs["ordered"] is True
        workflow_ops = collections["workflows"].bulk_write.call_args.args[0]
        assert [type(op) for op in workflow_ops] == [UpdateOne, UpdateOne]

    def test_empty_lists_are_not_written(self, store, collections):
        store.apply_recalculation(RecalculationOutput(
            workflows_update_current_activity=[WorkflowInstance(workflow_id="WFW-1", definition_id="WFD-1")]
        ))
        collections["activities"].bulk_write.assert_not_called()
        collections["workflows"].bulk_write.assert_called_once()


class TestTransactions:

    @pytest.fixture
    def session(self, client):
        session = MagicMock()
        client.start_session.return_value.__enter__.return_value = session
        return session

    @pytest.fixture
    def transactional(self, settings, client):
        return MongoConnection(settings.model_copy(update={"mongo_use_transactions": True}), client=client)

    def test_nested_blocks_share_one_session(self, transactional, client, session):
        with transactional.transaction():
            assert transactional.session() is session
            with transactional.transaction():
                assert transactional.session() is session
        assert transactional.session() is None
        client.start_session.assert_called_once()
        session.start_transaction.assert_called_once()

    def test_writes_use_the_transaction_session(self, transactional, collections, session):
        store = MongoWorkflowStore(transactional)
        store.apply_recalculation(RecalculationOutput(
            activities_create=[Activity(activity_id="ACT-1", activity_definition_id="WFAD-1", workflow_id="WFW-1")]
        ))
        assert collections["activities"].bulk_write.call_args.kwargs["session"] is session

    def test_disabled_transactions_run_without_session(self, connection, client):
        with connection.transaction():
            assert connection.session() is None
        client.start_session.assert_not_called()


class TestRuleAndAccountStores:

    def test_constants_are_upserted_and_read_back(self, connection, collections):
        store = MongoRuleStore(connection)
        store.add_constants("WFD-1", RuleConstants(values={"LIMIT": 100}))

        args, kwargs = collections["rule_constants"].replace_one.call_args
        assert args == ({"_id": "WFD-1"}, {"_id": "WFD-1", "values": {"LIMIT": 100}})
        assert kwargs["upsert"] is True

        collections["rule_constants"].find_one.return_value = {"_id": "WFD-1", "values": {"LIMIT": 100}}
        assert store.read_constants("WFD-1").values == {"LIMIT": 100}
        collections["rule_constants"].find_one.return_value = None
        assert store.read_constants("WFD-2").values == {}

    def test_group_tag_removal_counts_selectors(self, connection, collections):
        store = MongoRuleStore(connection)
        collections["selectors"].find.return_value = [
            {"_id": "SEL-1", "selector_id": "SEL-1", "item_id": "WFAD-1", "account_group_id": "G1", "group_id": "T"},
        ]
        collections["selectors"].delete_many.return_value.deleted_count = 1

        assert store.remove_selectors_filters_by_group_id("T") == 1
        collections["filters"].delete_many.assert_called_once_with({"selector_id": {"$in": ["SEL-1"]}}, session=None)

    def test_items_are_plain_documents(self, connection, collections):
        store = MongoItemStore(connection, collection="purchase_orders")
        collections["purchase_orders"].find_one.return_value = {"_id": "PO-1", "amount": 500}
        collections["purchase_orders"].find.return_value = [{"_id": "PO-1", "amount": 500}]

        assert store.read_item("PO-1") == {"amount": 500}
        assert store.read_items(["PO-1", "PO-2"]) == {"PO-1": {"amount": 500}}

    def test_attach_checks_accounts_and_group(self, connection, collections):
        store = MongoAccountStore(connection)
        collections["accounts"].find.return_value = [{"_id": "alice"}]

        with pytest.raises(NotFoundError):
            store.attach(["alice", "mallory"], "G1")

        collections["account_groups"].update_one.return_value.matched_count = 0
        with pytest.raises(AccountGroupNotFoundError):
            store.attach(["alice"], "G404")

        collections["account_groups"].update_one.return_value.matched_count = 1
        store.attach(["alice"], "G1")
        assert collections["account_groups"].update_one.call_args.args == (
            {"_id": "G1"}, {"$addToSet": {"member_ids": {"$each": ["alice"]}}}
        )

    def test_membership_and_group(self, connection, collections):
        store = MongoAccountStore(connection)
        collections["account_groups"].find.return_value = [{"_id": "G1", "member_ids": ["alice", "bob"]}]
        collections["account_groups"].find_one.return_value = {"_id": "G1", "group_id": "G1", "display_name": "Buyers"}

        assert store.get_accounts_by_groups(["G1", "G2"]) == {"G1": {"alice", "bob"}, "G2": set()}
        assert store.get_group("G1") == AccountGroup(group_id="G1", display_name="Buyers")
