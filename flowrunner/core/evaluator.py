"""Decision condition evaluation against an execution context."""

from typing import Any, Mapping, Optional
from pydantic import BaseModel, Field

from ..models.execution import NodeOutput
from .exceptions import ExpressionError
from .expression import evaluate_expression, is_truthy
from .logging import get_logger
from .resolver import resolve_variables, has_unresolved_variables


logger = get_logger(__name__)

UNRESOLVED_VARIABLES_MESSAGE = "Unresolved variables in condition"


class ConditionResult(BaseModel):
    """Outcome of evaluating one condition template."""
    ok: bool = Field(..., description="Whether evaluation succeeded")
    result: Optional[bool] = Field(None, description="Truthiness of the evaluated value")
    error: Optional[str] = Field(None, description="Failure message")
    resolved: str = Field("", description="Condition text after variable substitution")


def evaluate_condition(template: str, context: Mapping[str, NodeOutput]) -> ConditionResult:
    """Resolve variables in ``template`` then evaluate it.

    Never raises; failures are reported through ``ok=False``.
    """
    resolved = resolve_variables(template or "", context)

    if has_unresolved_variables(resolved):
        return ConditionResult(ok=False, error=UNRESOLVED_VARIABLES_MESSAGE, resolved=resolved)

    try:
        value: Any = evaluate_expression(resolved)
    except ExpressionError as e:
        logger.debug(f"Condition evaluation failed for '{resolved}': {e.message}")
        return ConditionResult(ok=False, error=e.message, resolved=resolved)
    except (RecursionError, OverflowError) as e:
        return ConditionResult(ok=False, error=str(e) or type(e).__name__, resolved=resolved)

    return ConditionResult(ok=True, result=is_truthy(value), resolved=resolved)
