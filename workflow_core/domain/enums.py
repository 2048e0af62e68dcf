"""Domain Enumerations - Status, multiplicity and operator definitions"""
from enum import Enum


DEFAULT_TRANSITION = "Default"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow instance"""
    CREATED = "CREATED"
    STARTED = "STARTED"
    PAUSED = "PAUSED"
    ENDED = "ENDED"  # Terminal


class Multiplicity(str, Enum):
    """How many live activities an activity definition allows per instance"""
    SINGLE = "SINGLE"
    MULTIPLE = "MULTIPLE"


class RuleOperator(str, Enum):
    """Operators supported by conditions and filters"""
    EQUALS = "="
    IN = "IN"
    LESS_THAN = "<"
    LESS_THAN_OR_EQUALS = "<="
    GREATER_THAN = ">"
    GREATER_THAN_OR_EQUALS = ">="


# Statuses that recalculation and interactive advancing operate on
LIVE_STATUSES = (WorkflowStatus.STARTED, WorkflowStatus.PAUSED)
