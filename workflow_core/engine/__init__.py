"""Workflow Engine - Rule evaluation, account selection and the instance state machine"""
from .condition_evaluator import ConditionEvaluator
from .rule_validator import RuleValidator
from .account_selector import AccountSelector
from .definition_graph import DefinitionGraph
from .recalculation import RecalculationEngine, RecalculationSnapshot, CustomRecalculation
from .engine import WorkflowEngine

__all__ = [
    "ConditionEvaluator",
    "RuleValidator",
    "AccountSelector",
    "DefinitionGraph",
    "RecalculationEngine",
    "RecalculationSnapshot",
    "CustomRecalculation",
    "WorkflowEngine",
]
