"""Condition and weighted-split evaluation for branching nodes."""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from ..models.core import ConditionClause, ConditionConfig, ExecutionContext, SplitConfig
from .logging import get_logger
from .template_renderer import resolve_path

logger = get_logger(__name__)

_MISSING = object()


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if value is None:
        return []
    return [value]


def _compare(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def evaluate(actual: Any, expected: Any) -> bool:
        left, right = _to_float(actual), _to_float(expected)
        if left is None or right is None:
            return False
        return op(left, right)
    return evaluate


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        return expected in actual
    return str(expected).lower() in str(actual).lower()


def _in(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    candidates = _as_list(expected)
    return actual in candidates or str(actual) in [str(item) for item in candidates]


def _is_empty(actual: Any, expected: Any) -> bool:
    if actual is None:
        return True
    if isinstance(actual, (str, list, tuple, dict, set)):
        return len(actual) == 0
    return False


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda actual, expected: actual == expected,
    "not_equals": lambda actual, expected: actual != expected,
    "contains": _contains,
    "not_contains": lambda actual, expected: actual is not None and not _contains(actual, expected),
    "gt": _compare(lambda left, right: left > right),
    "lt": _compare(lambda left, right: left < right),
    "gte": _compare(lambda left, right: left >= right),
    "lte": _compare(lambda left, right: left <= right),
    "in": _in,
    "not_in": lambda actual, expected: not _in(actual, expected),
    "is_empty": _is_empty,
    "is_not_empty": lambda actual, expected: not _is_empty(actual, expected),
}

OPERATOR_ALIASES = {
    "greater_than": "gt",
    "less_than": "lt",
    "greater_than_or_equal": "gte",
    "less_than_or_equal": "lte",
    "eq": "equals",
    "neq": "not_equals",
}


def build_condition_data(context: ExecutionContext) -> Dict[str, Any]:
    """Data view a condition is evaluated against.

    Flat contact attributes (custom fields included) are available by name;
    ``contact.*``, ``event.*`` and ``context.*`` give the contact, the trigger
    payload and the execution scratch space.
    """
    data: Dict[str, Any] = {}
    if context.contact is not None:
        attributes = context.contact.attributes()
        data.update(attributes)
        data["contact"] = attributes
    data["event"] = dict(context.input_data)
    data["context"] = dict(context.data)
    data["trigger_type"] = context.trigger_type
    return data


class ConditionEvaluator:
    """Evaluates a condition node's configuration to a boolean."""

    def evaluate(self, config: Mapping[str, Any], data: Mapping[str, Any]) -> bool:
        """
        Evaluate a single condition or an AND/OR chain of conditions.

        Malformed configuration evaluates to False rather than raising.

        Args:
            config: Condition node configuration
            data: Values the condition fields are resolved against

        Returns:
            Result of the condition
        """
        try:
            condition = ConditionConfig.model_validate(config or {})
        except ValidationError as e:
            logger.warning(f"Malformed condition configuration: {e}")
            return False

        if condition.conditions:
            return self.evaluate_chain(condition.conditions, data)
        return self.evaluate_clause(condition, data)

    def evaluate_chain(self, clauses: Sequence[ConditionClause], data: Mapping[str, Any]) -> bool:
        """Fold clauses left to right; each clause's operator joins it to the next one."""
        result = self.evaluate_clause(clauses[0], data)
        for previous, clause in zip(clauses, clauses[1:]):
            outcome = self.evaluate_clause(clause, data)
            if previous.logical_operator.upper() == "OR":
                result = result or outcome
            else:
                result = result and outcome
        return result

    def evaluate_clause(self, clause: ConditionClause, data: Mapping[str, Any]) -> bool:
        if not clause.field or not clause.operator:
            logger.warning("Condition is missing its field or operator, treating as false")
            return False

        operator_name = clause.operator.strip().lower()
        operator_name = OPERATOR_ALIASES.get(operator_name, operator_name)
        operator = OPERATORS.get(operator_name)
        if operator is None:
            logger.warning(f"Unsupported condition operator '{clause.operator}', treating as false")
            return False

        actual = self.resolve_field(clause.field, data)
        try:
            return bool(operator(actual, clause.value))
        except Exception as e:
            logger.warning(f"Condition '{clause.field} {operator_name}' raised {type(e).__name__}: {e}")
            return False

    @staticmethod
    def resolve_field(field: str, data: Mapping[str, Any]) -> Any:
        value = data.get(field, _MISSING)
        if value is not _MISSING:
            return value
        return resolve_path(data, field)


class WeightedSplitSelector:
    """Chooses a split branch with probability proportional to its weight."""

    def choose(self, config: Mapping[str, Any], rng) -> Optional[str]:
        """
        Pick a branch id.

        Args:
            config: Split node configuration with a ``branches`` list
            rng: Object with a ``random()`` method returning a float in [0, 1)

        Returns:
            Chosen branch id, or None when no branches are configured
        """
        try:
            split = SplitConfig.model_validate(config or {})
        except ValidationError as e:
            logger.warning(f"Malformed split configuration: {e}")
            return None

        branches = split.branches
        if not branches:
            return None

        weights = [max(branch.weight, 0.0) for branch in branches]
        total = sum(weights)
        if total <= 0:
            logger.warning("Split branches have no positive weight, using the first branch")
            return branches[0].id

        draw = rng.random() * total
        cumulative = 0.0
        for branch, weight in zip(branches, weights):
            cumulative += weight
            if draw < cumulative:
                return branch.id

        # Float rounding can leave the draw on the upper boundary
        return branches[-1].id
