"""Condition Evaluator - Evaluation of rule conditions and selector filters"""
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence, Union

from ..domain.models import ConditionDefinition, FilterDefinition, RuleConstants, RuleContext
from ..domain.enums import RuleOperator
from ..domain.errors import UnknownOperatorError, InvalidExpressionError
from ..utils.time import parse_iso


Predicate = Union[ConditionDefinition, FilterDefinition]

_COLLECTION_TYPES = (list, tuple, set, frozenset)


class ConditionEvaluator:
    """
    Evaluate conditions and filters against a rule context

    Uses a simple operator DSL - no eval() or exec(). Conditions and filters
    share the same field/operator/expression model. Configuration errors
    (unknown operator, unknown field, malformed expression) are raised, never
    swallowed.
    """

    def evaluate_all(self, predicates: Sequence[Predicate], context: RuleContext) -> bool:
        """
        Evaluate AND-combined predicates

        An empty sequence is true; callers decide what an empty rule means.
        """
        return all(self.evaluate(predicate, context) for predicate in predicates)

    def evaluate(self, predicate: Predicate, context: RuleContext) -> bool:
        """
        Evaluate a single condition or filter

        Args:
            predicate: Condition or filter definition
            context: Business object and constants

        Returns:
            True if the field value satisfies the operator and expression.
            A field with no value never satisfies a predicate.

        Raises:
            UnknownOperatorError: Operator is not supported
            UnknownFieldError: Business object has no such field
            InvalidExpressionError: Expression cannot be compared with the value
            UnknownConstantError: Expression references an undefined constant
        """
        operator = self.parse_operator(predicate.operator)
        field_value = context.get_field(predicate.field)
        if field_value is None:
            return False

        if operator == RuleOperator.IN:
            candidates = self._resolve_list(predicate.expression, context.constants)
            return self._compare_in(field_value, candidates)

        expected = context.constants.resolve(predicate.expression)
        if operator == RuleOperator.EQUALS:
            return self._compare_equals(field_value, expected)

        return self._compare_ordered(field_value, operator, expected, predicate.field)

    @staticmethod
    def parse_operator(operator: str) -> RuleOperator:
        """Parse an operator string, raising a configuration error when unknown"""
        try:
            return RuleOperator(operator.strip().upper())
        except (ValueError, AttributeError):
            raise UnknownOperatorError(
                f"Unsupported operator '{operator}'",
                details={"operator": operator}
            )

    # =========================================================================
    # Expression resolution
    # =========================================================================

    def _resolve_list(self, expression: str, constants: RuleConstants) -> List[str]:
        """Split an IN expression on commas, substituting constants per element"""
        values: List[str] = []
        for part in expression.split(","):
            part = part.strip()
            if not part:
                continue
            resolved = constants.resolve(part)
            if isinstance(resolved, _COLLECTION_TYPES):
                values.extend(self._as_text(v) for v in resolved)
            else:
                values.append(self._as_text(resolved))
        return values

    # =========================================================================
    # Comparisons
    # =========================================================================

    def _compare_in(self, field_value: Any, candidates: Iterable[str]) -> bool:
        candidates = set(candidates)
        if isinstance(field_value, _COLLECTION_TYPES):
            # Multi-valued field: any shared value matches
            return any(self._as_text(v) in candidates for v in field_value)
        return self._as_text(field_value) in candidates

    def _compare_equals(self, field_value: Any, expected: Any) -> bool:
        if isinstance(field_value, (date, datetime)):
            return self._as_datetime(field_value) == self._parse_date(expected, "=")
        if self._is_number(field_value):
            return self._to_decimal(field_value, "=") == self._to_decimal(expected, "=")
        return self._as_text(field_value) == self._as_text(expected)

    def _compare_ordered(
        self,
        field_value: Any,
        operator: RuleOperator,
        expected: Any,
        field: str
    ) -> bool:
        if isinstance(field_value, (date, datetime)):
            left: Any = self._as_datetime(field_value)
            right: Any = self._parse_date(expected, operator.value)
        else:
            left = self._to_decimal(field_value, operator.value, field=field)
            right = self._to_decimal(expected, operator.value)

        if operator == RuleOperator.LESS_THAN:
            return left < right
        elif operator == RuleOperator.LESS_THAN_OR_EQUALS:
            return left <= right
        elif operator == RuleOperator.GREATER_THAN:
            return left > right
        return left >= right

    # =========================================================================
    # Coercion helpers
    # =========================================================================

    @staticmethod
    def _is_number(value: Any) -> bool:
        return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)

    @staticmethod
    def _as_text(value: Any) -> str:
        if isinstance(value, Enum):
            return str(value.value)
        return str(value)

    @staticmethod
    def _to_decimal(value: Any, operator: str, field: Optional[str] = None) -> Decimal:
        try:
            return Decimal(str(value).strip())
        except InvalidOperation:
            target = f"field '{field}'" if field else "expression"
            raise InvalidExpressionError(
                f"Operator '{operator}' needs a number, {target} is '{value}'",
                details={"operator": operator, "value": str(value), "field": field}
            )

    @staticmethod
    def _as_datetime(value: Any) -> datetime:
        if not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value

    def _parse_date(self, value: Any, operator: str) -> datetime:
        if isinstance(value, (date, datetime)):
            return self._as_datetime(value)
        try:
            return parse_iso(str(value).strip())
        except ValueError:
            raise InvalidExpressionError(
                f"Operator '{operator}' on a date field needs an ISO date, got '{value}'",
                details={"operator": operator, "value": str(value)}
            )
