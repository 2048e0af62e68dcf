"""
Pytest Configuration and Fixtures

This file contains shared fixtures and configuration for all tests.
Every fixture runs on the in-memory stores; MongoDB stores are tested
against mocked collections in tests/unit/test_repositories.
"""

import pytest
from workflow_core.config.settings import Settings
from workflow_core.context import WorkflowContext
from workflow_core.domain.models import AccountGroup, AccountUser, WorkflowDefinition

from .helpers import BOARD, MANAGERS, ChainBuilder


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment's log files and database"""
    return Settings(
        mongo_db="workflow_core_test",
        log_to_file=False,
        recalculation_max_workers=1,
        _env_file=None,
    )


@pytest.fixture
def context(settings: Settings) -> WorkflowContext:
    return WorkflowContext.in_memory(settings)


@pytest.fixture
def workflow_service(context):
    return context.workflow_service


@pytest.fixture
def rule_service(context):
    return context.rule_service


@pytest.fixture
def engine(context):
    return context.workflow_engine


@pytest.fixture
def recalculation_service(context):
    return context.recalculation_service


@pytest.fixture
def accounts(context):
    """Two groups: managers (alice, bob) and board (carol)"""
    store = context.account_store
    store.save_accounts([
        AccountUser(account_id="alice", display_name="Alice Martin", email="alice.martin@contoso.com"),
        AccountUser(account_id="bob", display_name="Bob Durand"),
        AccountUser(account_id="carol", display_name="Carol Petit"),
    ])
    store.save_group(AccountGroup(group_id=MANAGERS, display_name="Managers"))
    store.save_group(AccountGroup(group_id=BOARD, display_name="Board"))
    store.attach(["alice", "bob"], MANAGERS)
    store.attach(["carol"], BOARD)
    return store


@pytest.fixture
def purchase_order(context):
    """Business object the workflows run for"""
    item = {"amount": 500, "country": "FR", "category": "hardware"}
    context.item_store.add_item("PO-1", item)
    return item


@pytest.fixture
def definition(workflow_service) -> WorkflowDefinition:
    return workflow_service.create_workflow_definition("Purchase approval")


@pytest.fixture
def builder(context, definition) -> ChainBuilder:
    return ChainBuilder(context, definition)
