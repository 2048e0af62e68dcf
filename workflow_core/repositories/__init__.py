"""Repository modules - Data access layer"""
from .base import WorkflowStore, RuleStore, ItemStore, AccountStore
from .memory_store import MemoryWorkflowStore, MemoryRuleStore, MemoryItemStore, MemoryAccountStore
from .mongo_client import MongoConnection
from .workflow_repo import MongoWorkflowStore
from .rule_repo import MongoRuleStore, MongoItemStore, MongoAccountStore

__all__ = [
    "WorkflowStore",
    "RuleStore",
    "ItemStore",
    "AccountStore",
    "MemoryWorkflowStore",
    "MemoryRuleStore",
    "MemoryItemStore",
    "MemoryAccountStore",
    "MongoConnection",
    "MongoWorkflowStore",
    "MongoRuleStore",
    "MongoItemStore",
    "MongoAccountStore",
]
