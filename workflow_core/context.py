"""
Workflow Core - Application context

Wires settings, stores and services together. This is the entry point for
anything embedding the workflow core: build a context once per process and
use its services.
"""
from typing import Optional, Sequence

from .config.settings import Settings, get_settings
from .engine.engine import WorkflowEngine
from .engine.recalculation import CustomRecalculation
from .repositories.base import WorkflowStore, RuleStore, ItemStore, AccountStore
from .repositories.memory_store import MemoryWorkflowStore, MemoryRuleStore, MemoryItemStore, MemoryAccountStore
from .repositories.mongo_client import MongoConnection
from .repositories.workflow_repo import MongoWorkflowStore
from .repositories.rule_repo import MongoRuleStore, MongoItemStore, MongoAccountStore
from .services.rule_service import RuleService
from .services.workflow_service import WorkflowService
from .services.recalculation_service import RecalculationService
from .utils.logger import get_logger

logger = get_logger(__name__)


class WorkflowContext:
    """Stores and services sharing one configuration"""

    def __init__(
        self,
        settings: Settings,
        workflow_store: WorkflowStore,
        rule_store: RuleStore,
        item_store: ItemStore,
        account_store: AccountStore,
        hooks: Sequence[CustomRecalculation] = (),
        connection: Optional[MongoConnection] = None
    ):
        self.settings = settings
        self.workflow_store = workflow_store
        self.rule_store = rule_store
        self.item_store = item_store
        self.account_store = account_store
        self.connection = connection

        self.rule_service = RuleService(
            rule_store,
            account_store,
            cache_enabled=settings.rule_cache_enabled,
        )
        self.workflow_service = WorkflowService(workflow_store, self.rule_service)
        self.workflow_engine = WorkflowEngine(
            workflow_store,
            self.rule_service,
            item_store,
            auto_user=settings.auto_user,
        )
        self.recalculation_service = RecalculationService(
            workflow_store,
            self.rule_service,
            item_store,
            account_store,
            max_workers=settings.recalculation_max_workers,
            isolate_failures=settings.recalculation_isolate_failures,
            hooks=hooks,
        )

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def in_memory(
        cls,
        settings: Optional[Settings] = None,
        hooks: Sequence[CustomRecalculation] = ()
    ) -> "WorkflowContext":
        """Context over process-memory stores"""
        return cls(
            settings or get_settings(),
            MemoryWorkflowStore(),
            MemoryRuleStore(),
            MemoryItemStore(),
            MemoryAccountStore(),
            hooks=hooks,
        )

    @classmethod
    def mongo(
        cls,
        settings: Optional[Settings] = None,
        hooks: Sequence[CustomRecalculation] = (),
        connection: Optional[MongoConnection] = None
    ) -> "WorkflowContext":
        """
        Context over MongoDB stores

        Args:
            settings: Settings to use, defaults to the environment
            hooks: Recalculation hooks run around every workflow
            connection: Existing connection, created from settings when omitted

        Returns:
            Context whose stores share one connection
        """
        settings = settings or get_settings()
        connection = connection or MongoConnection(settings)
        logger.info(f"Building MongoDB workflow context on {settings.mongo_db}")
        return cls(
            settings,
            MongoWorkflowStore(connection),
            MongoRuleStore(connection),
            MongoItemStore(connection),
            MongoAccountStore(connection),
            hooks=hooks,
            connection=connection,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def startup(self) -> None:
        """Create MongoDB indexes when running on MongoDB"""
        if self.connection is not None:
            self.connection.create_indexes()

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()

    def __enter__(self) -> "WorkflowContext":
        self.startup()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
