"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'WFW', 'ACT', 'RUL')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('WFW')
        'WFW-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_definition_id() -> str:
    """Generate workflow definition ID"""
    return generate_id("WFD")


def generate_activity_definition_id() -> str:
    """Generate activity definition ID"""
    return generate_id("WFAD")


def generate_transition_id() -> str:
    """Generate transition definition ID"""
    return generate_id("WFT")


def generate_workflow_id() -> str:
    """Generate workflow instance ID"""
    return generate_id("WFW")


def generate_activity_id() -> str:
    """Generate activity ID"""
    return generate_id("ACT")


def generate_decision_id() -> str:
    """Generate decision ID"""
    return generate_id("DEC")


def generate_rule_id() -> str:
    """Generate rule ID"""
    return generate_id("RUL")


def generate_condition_id() -> str:
    """Generate condition ID"""
    return generate_id("CND")


def generate_selector_id() -> str:
    """Generate selector ID"""
    return generate_id("SEL")


def generate_filter_id() -> str:
    """Generate filter ID"""
    return generate_id("FLT")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for tracing a call or batch

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
