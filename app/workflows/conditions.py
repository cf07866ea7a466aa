"""Branch condition evaluation."""

from typing import Any, Mapping, Optional

from loguru import logger

from ..models.workflow import Comparator, StepCondition
from .references import is_unresolved, resolve_value


def evaluate_condition(
    condition: Optional[StepCondition], context: Mapping[str, Any]
) -> bool:
    """Evaluate a step condition against the run context. ``None`` is true."""
    if condition is None:
        return True

    value = resolve_value(condition.if_expr, context)
    operand = resolve_value(condition.operand, context)

    if condition.comparator == Comparator.EQUALS:
        return value == operand
    if condition.comparator == Comparator.NOT_EQUALS:
        return value != operand
    if condition.comparator == Comparator.CONTAINS:
        if isinstance(value, (list, tuple, set)):
            return operand in value
        return str(operand) in str(value)

    if is_unresolved(value):
        logger.debug(f"Condition reference unresolved, treating as false: {value}")
        return False
    return bool(value)
