"""Condition evaluators for branch selection and operation applicability."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_MISSING = object()


class ConditionType(str, Enum):
    """Built-in condition types."""
    ALWAYS = "always"  # Unconditional advancement
    FIELD_EQUALS = "field_equals"
    FIELD_NOT_EQUALS = "field_not_equals"
    FIELD_IN_SET = "field_in_set"
    FIELD_NOT_IN_SET = "field_not_in_set"
    FIELD_PRESENT = "field_present"


@dataclass(frozen=True)
class ConditionOutcome:
    """Result of evaluating one condition; ``error`` is set when it failed closed."""
    matched: bool
    error: Optional[ConfigurationError] = None


def lookup_field(context: Mapping[str, Any], field: str) -> Any:
    """Resolve a dotted field path against the context, or _MISSING."""
    if field in context:
        return context[field]
    current: Any = context
    for part in field.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def exact_equals(left: Any, right: Any) -> bool:
    """Equality without Python's bool/int coercion (True != 1 here)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _contains(allowed: List[Any], value: Any) -> bool:
    return any(exact_equals(candidate, value) for candidate in allowed)


class ConditionEvaluator(ABC):
    """Base class for condition evaluators.

    Evaluators raise ConfigurationError for malformed operand data; the
    registry turns that into a fail-closed outcome.
    """

    @abstractmethod
    def evaluate(self, data: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
        """Evaluate whether the condition holds for the context."""
        pass


class AlwaysCondition(ConditionEvaluator):
    """Unconditional branch (always true)."""

    def evaluate(self, data, context) -> bool:
        return True


class FieldEqualsCondition(ConditionEvaluator):
    """True if every ``field: value`` pair in the data equals the context value."""

    def evaluate(self, data, context) -> bool:
        if not data:
            raise ConfigurationError(ConditionType.FIELD_EQUALS.value, "no fields to compare")
        for field, expected in data.items():
            actual = lookup_field(context, field)
            if actual is _MISSING or not exact_equals(actual, expected):
                return False
        return True


class FieldNotEqualsCondition(ConditionEvaluator):
    """True if no ``field: value`` pair in the data matches the context.

    A missing field counts as not equal.
    """

    def evaluate(self, data, context) -> bool:
        if not data:
            raise ConfigurationError(ConditionType.FIELD_NOT_EQUALS.value, "no fields to compare")
        for field, unexpected in data.items():
            actual = lookup_field(context, field)
            if actual is not _MISSING and exact_equals(actual, unexpected):
                return False
        return True


class FieldInSetCondition(ConditionEvaluator):
    """True if each field's context value is contained in its allowed set.

    A list-valued context field must be wholly contained (order ignored).
    """

    condition_type = ConditionType.FIELD_IN_SET

    def evaluate(self, data, context) -> bool:
        if not data:
            raise ConfigurationError(self.condition_type.value, "no fields to compare")
        for field, allowed in data.items():
            if not isinstance(allowed, (list, tuple, set, frozenset)):
                raise ConfigurationError(
                    self.condition_type.value,
                    f"expected a list of allowed values for '{field}', got {type(allowed).__name__}",
                )
            if not self._field_matches(list(allowed), lookup_field(context, field)):
                return False
        return True

    def _field_matches(self, allowed: List[Any], actual: Any) -> bool:
        if actual is _MISSING:
            return False
        if isinstance(actual, (list, tuple, set, frozenset)):
            return all(_contains(allowed, item) for item in actual)
        return _contains(allowed, actual)


class FieldNotInSetCondition(FieldInSetCondition):
    """True if no field's context value falls in its excluded set."""

    condition_type = ConditionType.FIELD_NOT_IN_SET

    def _field_matches(self, allowed: List[Any], actual: Any) -> bool:
        if actual is _MISSING:
            return True
        if isinstance(actual, (list, tuple, set, frozenset)):
            return not any(_contains(allowed, item) for item in actual)
        return not _contains(allowed, actual)


class FieldPresentCondition(ConditionEvaluator):
    """True if each ``field: bool`` expectation about presence holds."""

    def evaluate(self, data, context) -> bool:
        if not data:
            raise ConfigurationError(ConditionType.FIELD_PRESENT.value, "no fields to check")
        for field, should_exist in data.items():
            if not isinstance(should_exist, bool):
                raise ConfigurationError(
                    ConditionType.FIELD_PRESENT.value,
                    f"expected true/false for '{field}'",
                )
            value = lookup_field(context, field)
            present = value is not _MISSING and value is not None
            if present != should_exist:
                return False
        return True


def _default_evaluators() -> Dict[str, ConditionEvaluator]:
    """Build a fresh evaluator map so ConditionRegistry.register() in tests
    doesn't pollute global state."""
    return {
        ConditionType.ALWAYS.value: AlwaysCondition(),
        ConditionType.FIELD_EQUALS.value: FieldEqualsCondition(),
        ConditionType.FIELD_NOT_EQUALS.value: FieldNotEqualsCondition(),
        ConditionType.FIELD_IN_SET.value: FieldInSetCondition(),
        ConditionType.FIELD_NOT_IN_SET.value: FieldNotInSetCondition(),
        ConditionType.FIELD_PRESENT.value: FieldPresentCondition(),
    }


class ConditionRegistry:
    """Registry mapping condition type tags to evaluators."""

    _evaluators: Dict[str, ConditionEvaluator] = _default_evaluators()

    @classmethod
    def check(
        cls,
        condition_type: str,
        condition_data: Optional[Mapping[str, Any]],
        context: Optional[Mapping[str, Any]],
    ) -> ConditionOutcome:
        """Evaluate a condition, failing closed with a ConfigurationError attached."""
        key = condition_type.value if isinstance(condition_type, Enum) else str(condition_type)
        evaluator = cls._evaluators.get(key)
        if not evaluator:
            logger.warning(f"No evaluator found for condition type: {key} (treated as false)")
            return ConditionOutcome(False, ConfigurationError(key))

        try:
            matched = bool(evaluator.evaluate(condition_data or {}, context or {}))
        except ConfigurationError as e:
            logger.warning(f"Malformed condition {key}: {e} (treated as false)")
            return ConditionOutcome(False, e)
        except Exception as e:
            logger.error(f"Error evaluating condition {key}: {e}")
            return ConditionOutcome(False, ConfigurationError(key, str(e)))

        logger.debug(f"Condition {key} {condition_data!r} -> {matched}")
        return ConditionOutcome(matched)

    @classmethod
    def evaluate(
        cls,
        condition_type: str,
        condition_data: Optional[Mapping[str, Any]],
        context: Optional[Mapping[str, Any]],
    ) -> bool:
        """Evaluate a condition; unknown or malformed conditions are false."""
        return cls.check(condition_type, condition_data, context).matched

    @classmethod
    def is_known(cls, condition_type: str) -> bool:
        key = condition_type.value if isinstance(condition_type, Enum) else str(condition_type)
        return key in cls._evaluators

    @classmethod
    def register(cls, condition_type: str, evaluator: ConditionEvaluator):
        """Register a custom condition evaluator."""
        key = condition_type.value if isinstance(condition_type, Enum) else str(condition_type)
        cls._evaluators[key] = evaluator

    @classmethod
    def reset(cls):
        """Restore default evaluators (useful in tests)."""
        cls._evaluators = _default_evaluators()


def evaluate(
    condition_type: str,
    condition_data: Optional[Mapping[str, Any]],
    context: Optional[Mapping[str, Any]],
) -> bool:
    """Module-level shorthand for ConditionRegistry.evaluate."""
    return ConditionRegistry.evaluate(condition_type, condition_data, context)


def _normalize_rules(rules: Any) -> List[Dict[str, Any]]:
    """Expand operation condition_rules into a list of {type, data} entries.

    Accepted shapes: empty, ``{"type": ..., "data": {...}}``, a list of
    those, or a bare ``{field: value}`` mapping (field_equals shorthand).
    """
    if not rules:
        return []
    if isinstance(rules, list):
        expanded: List[Dict[str, Any]] = []
        for entry in rules:
            expanded.extend(_normalize_rules(entry))
        return expanded
    if isinstance(rules, Mapping):
        if "type" in rules and set(rules) <= {"type", "data"}:
            return [{"type": rules["type"], "data": rules.get("data") or {}}]
        return [{"type": ConditionType.FIELD_EQUALS.value, "data": dict(rules)}]
    raise ConfigurationError("condition_rules", f"unsupported rules shape {type(rules).__name__}")


def evaluate_rules(rules: Any, context: Optional[Mapping[str, Any]]) -> ConditionOutcome:
    """Decide whether an operation is taken at all; every rule must hold."""
    try:
        entries = _normalize_rules(rules)
    except ConfigurationError as e:
        logger.warning(f"Malformed condition_rules: {e} (treated as false)")
        return ConditionOutcome(False, e)

    for entry in entries:
        outcome = ConditionRegistry.check(entry["type"], entry["data"], context)
        if not outcome.matched:
            return outcome
    return ConditionOutcome(True)
