"""Domain Errors - Centralized Exception Hierarchy"""
from typing import Any, Dict, Optional


class DomainError(Exception):
    """Base domain error - all errors extend this"""

    error_code: str = "DOMAIN_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a serializable dict"""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details
            }
        }


# Validation Errors
class ValidationError(DomainError):
    """Input validation failed"""
    error_code = "VALIDATION_ERROR"
    http_status = 400


class WorkflowValidationError(ValidationError):
    """Workflow definition validation failed"""
    error_code = "WORKFLOW_VALIDATION_ERROR"


# Not Found Errors
class NotFoundError(DomainError):
    """Resource not found"""
    error_code = "NOT_FOUND"
    http_status = 404


class WorkflowDefinitionNotFoundError(NotFoundError):
    """Workflow definition not found"""
    error_code = "WORKFLOW_DEFINITION_NOT_FOUND"


class ActivityDefinitionNotFoundError(NotFoundError):
    """Activity definition not found"""
    error_code = "ACTIVITY_DEFINITION_NOT_FOUND"


class WorkflowNotFoundError(NotFoundError):
    """Workflow instance not found"""
    error_code = "WORKFLOW_NOT_FOUND"


class ActivityNotFoundError(NotFoundError):
    """Activity not found"""
    error_code = "ACTIVITY_NOT_FOUND"


class DecisionNotFoundError(NotFoundError):
    """Decision not found"""
    error_code = "DECISION_NOT_FOUND"


class RuleNotFoundError(NotFoundError):
    """Rule definition not found"""
    error_code = "RULE_NOT_FOUND"


class SelectorNotFoundError(NotFoundError):
    """Selector definition not found"""
    error_code = "SELECTOR_NOT_FOUND"


class ItemNotFoundError(NotFoundError):
    """Business object behind a workflow could not be resolved"""
    error_code = "ITEM_NOT_FOUND"


class AccountGroupNotFoundError(NotFoundError):
    """Account group not found"""
    error_code = "ACCOUNT_GROUP_NOT_FOUND"


# Conflict Errors
class ConflictError(DomainError):
    """Resource conflict"""
    error_code = "CONFLICT"
    http_status = 409


class InvalidStateError(ConflictError):
    """Action not valid for current state"""
    error_code = "INVALID_STATE"


class AlreadyExistsError(ConflictError):
    """Resource already exists"""
    error_code = "ALREADY_EXISTS"


# Engine Errors
class EngineError(DomainError):
    """Workflow engine error"""
    error_code = "ENGINE_ERROR"
    http_status = 500


class TransitionNotFoundError(EngineError):
    """No transition with the requested name leaves the activity"""
    error_code = "TRANSITION_NOT_FOUND"
    http_status = 400


class RecalculationError(EngineError):
    """Recalculation of a single workflow failed inside a batch"""
    error_code = "RECALCULATION_ERROR"

    def __init__(self, workflow_id: str, cause: Exception):
        super().__init__(
            f"Recalculation failed for workflow {workflow_id}: {cause}",
            details={"workflow_id": workflow_id, "cause": type(cause).__name__}
        )
        self.workflow_id = workflow_id
        self.cause = cause


# Rule Configuration Errors - fatal, never retried
class RuleConfigurationError(DomainError):
    """Rule, condition or filter configuration cannot be evaluated"""
    error_code = "RULE_CONFIGURATION_ERROR"
    http_status = 422


class UnknownOperatorError(RuleConfigurationError):
    """Condition or filter uses an unsupported operator"""
    error_code = "UNKNOWN_OPERATOR"


class UnknownFieldError(RuleConfigurationError):
    """Condition or filter references a field the business object does not have"""
    error_code = "UNKNOWN_FIELD"


class InvalidExpressionError(RuleConfigurationError):
    """Expression cannot be compared with the field value"""
    error_code = "INVALID_EXPRESSION"


class UnknownConstantError(RuleConfigurationError):
    """Expression references a constant that is not defined"""
    error_code = "UNKNOWN_CONSTANT"
