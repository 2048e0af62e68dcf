"""Service modules - Business logic layer"""
from .rule_service import RuleService
from .workflow_service import WorkflowService
from .recalculation_service import RecalculationService

__all__ = [
    "RuleService",
    "WorkflowService",
    "RecalculationService",
]
