"""Domain Models - Pydantic schemas for definitions, instances, rules and selectors"""
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, EmailStr, ConfigDict

from .enums import DEFAULT_TRANSITION, WorkflowStatus, Multiplicity
from .errors import UnknownFieldError, UnknownConstantError
from ..utils.time import utc_now


# ============================================================================
# Definitions
# ============================================================================

class WorkflowDefinition(BaseModel):
    """A process template"""
    model_config = ConfigDict(extra="forbid")

    definition_id: Optional[str] = None
    name: str = Field(..., min_length=1, description="Unique definition name")
    created_at: datetime = Field(default_factory=utc_now)
    first_activity_id: Optional[str] = Field(None, description="First activity definition on the default chain")


class ActivityDefinition(BaseModel):
    """A step template positioned on the default chain"""
    model_config = ConfigDict(extra="forbid")

    activity_definition_id: Optional[str] = None
    definition_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    level: Optional[int] = Field(None, description="1-based position on the default chain")
    multiplicity: Multiplicity = Multiplicity.SINGLE


class TransitionDefinition(BaseModel):
    """A named edge between two activity definitions"""
    model_config = ConfigDict(extra="forbid")

    transition_id: Optional[str] = None
    definition_id: Optional[str] = None
    from_activity_id: str
    to_activity_id: str
    name: str = DEFAULT_TRANSITION


# ============================================================================
# Instances
# ============================================================================

class WorkflowInstance(BaseModel):
    """A running process bound to one business item"""
    model_config = ConfigDict(extra="forbid")

    workflow_id: Optional[str] = None
    definition_id: str
    item_id: Optional[str] = Field(None, description="Business object this workflow runs for")
    status: WorkflowStatus = WorkflowStatus.CREATED
    current_activity_id: Optional[str] = None
    username: Optional[str] = Field(None, description="User who created the workflow")
    user_logic: bool = Field(False, description="True when the creating user is a business user")
    created_at: datetime = Field(default_factory=utc_now)


class Activity(BaseModel):
    """One occurrence of a step within a workflow instance"""
    model_config = ConfigDict(extra="forbid")

    activity_id: Optional[str] = None
    activity_definition_id: str
    workflow_id: str
    created_at: datetime = Field(default_factory=utc_now)
    is_auto: bool = False
    is_valid: bool = False


class Decision(BaseModel):
    """A recorded human choice on an activity"""
    model_config = ConfigDict(extra="forbid")

    decision_id: Optional[str] = None
    activity_id: Optional[str] = None
    username: str = Field(..., min_length=1)
    choice: Optional[int] = None
    comments: Optional[str] = None
    decided_at: datetime = Field(default_factory=utc_now)


class WorkflowDecision(BaseModel):
    """Activity definition on the default path with its activity and decisions"""
    model_config = ConfigDict(extra="forbid")

    activity_definition: ActivityDefinition
    activity: Optional[Activity] = None
    decisions: List[Decision] = Field(default_factory=list)


# ============================================================================
# Rules & Selectors
# ============================================================================

class RuleDefinition(BaseModel):
    """A rule attached to an item (an activity definition)"""
    model_config = ConfigDict(extra="forbid")

    rule_id: Optional[str] = None
    item_id: Optional[str] = None
    label: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class ConditionDefinition(BaseModel):
    """One AND-combined predicate of a rule"""
    model_config = ConfigDict(extra="forbid")

    condition_id: Optional[str] = None
    rule_id: Optional[str] = None
    field: str = Field(..., min_length=1)
    operator: str = Field(..., description="One of =, IN, <, <=, >, >=")
    expression: str


class SelectorDefinition(BaseModel):
    """Binds an item to the accounts of a group, gated by filters"""
    model_config = ConfigDict(extra="forbid")

    selector_id: Optional[str] = None
    item_id: Optional[str] = None
    account_group_id: str = Field(..., description="Group whose accounts are selected")
    group_id: Optional[str] = Field(None, description="Tag used for bulk removal")
    created_at: datetime = Field(default_factory=utc_now)


class FilterDefinition(BaseModel):
    """One AND-combined predicate of a selector"""
    model_config = ConfigDict(extra="forbid")

    filter_id: Optional[str] = None
    selector_id: Optional[str] = None
    field: str = Field(..., min_length=1)
    operator: str
    expression: str


class ConditionCriteria(BaseModel):
    """A field/value pair searched for in rule conditions"""
    model_config = ConfigDict(extra="forbid")

    field: str
    value: str


class RuleCriteria(BaseModel):
    """Reverse-lookup criteria: every entry must be accepted by a rule"""
    model_config = ConfigDict(extra="forbid")

    criteria: List[ConditionCriteria] = Field(default_factory=list)


# ============================================================================
# Accounts
# ============================================================================

class AccountUser(BaseModel):
    """An account that may act on an activity"""
    model_config = ConfigDict(extra="forbid")

    account_id: str
    display_name: str
    email: Optional[EmailStr] = None


class AccountGroup(BaseModel):
    """A named set of accounts"""
    model_config = ConfigDict(extra="forbid")

    group_id: str
    display_name: str


# ============================================================================
# Evaluation Context
# ============================================================================

class RuleConstants(BaseModel):
    """Named constants substituted into expressions written as $KEY"""
    model_config = ConfigDict(extra="forbid")

    values: Dict[str, Any] = Field(default_factory=dict)

    def resolve(self, expression: str) -> Any:
        """Return the constant for a $KEY expression, or the expression unchanged"""
        if not expression.startswith("$"):
            return expression
        key = expression[1:]
        if key not in self.values:
            raise UnknownConstantError(
                f"Constant '{key}' is not defined",
                details={"constant": key}
            )
        return self.values[key]


class RuleContext(BaseModel):
    """Business object and constants passed to every condition and filter check"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    business_object: Any = None
    constants: RuleConstants = Field(default_factory=RuleConstants)

    def get_field(self, field_path: str) -> Any:
        """
        Resolve a field on the business object using dot notation

        Mappings have no declared schema, so a missing key reads as None.
        Attribute-bearing objects must declare the field.

        Raises:
            UnknownFieldError: If an object in the path has no such attribute
        """
        value = self.business_object
        for part in field_path.split("."):
            if value is None:
                return None
            if isinstance(value, Mapping):
                value = value.get(part)
            elif hasattr(value, part):
                value = getattr(value, part)
            else:
                raise UnknownFieldError(
                    f"Field '{field_path}' not found on {type(value).__name__}",
                    details={"field": field_path}
                )
        return value


# ============================================================================
# Recalculation Output
# ============================================================================

class RecalculationOutput(BaseModel):
    """Diff produced by recalculation and applied by the store in one batch"""
    model_config = ConfigDict(extra="forbid")

    workflows_update_current_activity: List[WorkflowInstance] = Field(default_factory=list)
    activities_update_is_auto: List[Activity] = Field(default_factory=list)
    activities_create: List[Activity] = Field(default_factory=list)
    activities_create_update_current_activity: List[Activity] = Field(default_factory=list)
    failed_workflow_ids: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.workflows_update_current_activity
            or self.activities_update_is_auto
            or self.activities_create
            or self.activities_create_update_current_activity
        )

    def merge(self, other: "RecalculationOutput") -> "RecalculationOutput":
        """Append another output's entries to this one"""
        self.workflows_update_current_activity.extend(other.workflows_update_current_activity)
        self.activities_update_is_auto.extend(other.activities_update_is_auto)
        self.activities_create.extend(other.activities_create)
        self.activities_create_update_current_activity.extend(other.activities_create_update_current_activity)
        self.failed_workflow_ids.extend(other.failed_workflow_ids)
        return self

    def summary(self) -> Dict[str, int]:
        return {
            "workflows_update_current_activity": len(self.workflows_update_current_activity),
            "activities_update_is_auto": len(self.activities_update_is_auto),
            "activities_create": len(self.activities_create),
            "activities_create_update_current_activity": len(self.activities_create_update_current_activity),
            "failed": len(self.failed_workflow_ids),
        }
