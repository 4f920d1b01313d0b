# Expression Evaluator for TokenFlow Engine
# Evaluates decision step expressions against parameter values

import re
import logging
from typing import Any, Dict, Optional, Tuple

from tokenflow.core.process import NO_VALUE

logger = logging.getLogger(__name__)


class ConditionEvaluator:
    """
    Default evaluator for decision expressions.

    Any object with an ``evaluate(expression, values)`` method can be given
    to the engine instead. The result selects the exit port of the decision:
    True/False map to ``Yes``/``No``, a string names the exit port.

    Supported forms:
    - ``${name op value}`` - JUEL-style comparison
    - ``name op value`` - simple comparison
    - ``name`` - the value itself (bool or exit port name)
    - ``true`` / ``false`` - constants

    Supported operators:
    - == or eq, != or neq
    - > or gt, >= or gte, < or lt, <= or lte
    """

    CONDITION_PATTERN_JUEL = re.compile(
        r"^\$\{\s*(\w+)\s*(>=|<=|!=|==|gte|lte|neq|eq|gt|lt|>|<|=)\s*(.+?)\s*\}$"
    )
    CONDITION_PATTERN_SIMPLE = re.compile(
        r"^(\w+)\s*(>=|<=|!=|==|gte|lte|neq|eq|gt|lt|>|<|=)\s*(.+)$"
    )
    NAME_PATTERN = re.compile(r"^(?:\$\{\s*(\w+)\s*\}|(\w+))$")

    OPERATOR_MAP = {
        "==": "=",
        "=": "=",
        "eq": "=",
        "!=": "!=",
        "neq": "!=",
        ">": ">",
        "gt": ">",
        ">=": ">=",
        "gte": ">=",
        "<": "<",
        "lt": "<",
        "<=": "<=",
        "lte": "<=",
    }

    def evaluate(self, expression: str, values: Dict[str, Any]) -> Any:
        """
        Evaluate an expression.

        Args:
            expression: The expression text
            values: Parameter and variable values visible to the decision

        Returns:
            A bool or an exit port name

        Raises:
            ValueError: If the expression is not supported
        """
        text = expression.strip()
        constant = self._to_bool(text)
        if constant is not None:
            return constant

        parsed = self._parse_condition(text)
        if parsed is not None:
            name, operator, expected = parsed
            actual = values.get(name, NO_VALUE)
            if actual is NO_VALUE or actual is None:
                logger.debug(f"Condition '{text}': '{name}' is unset")
                return False
            return self._compare_values(actual, expected, operator)

        match = self.NAME_PATTERN.match(text)
        if match:
            name = match.group(1) or match.group(2)
            value = values.get(name, NO_VALUE)
            if value is NO_VALUE:
                raise ValueError(f"Decision value '{name}' is unset")
            if isinstance(value, str):
                as_bool = self._to_bool(value)
                return as_bool if as_bool is not None else value
            return bool(value)

        raise ValueError(f"Unsupported decision expression: {expression}")

    def _parse_condition(self, text: str) -> Optional[Tuple[str, str, str]]:
        match = self.CONDITION_PATTERN_JUEL.match(text)
        if not match:
            match = self.CONDITION_PATTERN_SIMPLE.match(text)
        if not match:
            return None

        name, operator, expected = match.group(1), match.group(2), match.group(3).strip()
        if (expected.startswith("'") and expected.endswith("'")) or (
            expected.startswith('"') and expected.endswith('"')
        ):
            expected = expected[1:-1]
        return name, operator, expected

    def _compare_values(self, actual: Any, expected: str, operator: str) -> bool:
        """
        Compare a parameter value with the literal of a condition.

        Booleans compare as booleans, numbers numerically, anything else
        as strings.
        """
        op = self.OPERATOR_MAP.get(operator, operator)

        actual_bool = actual if isinstance(actual, bool) else self._to_bool(str(actual))
        expected_bool = self._to_bool(expected)
        if actual_bool is not None and expected_bool is not None and op in ("=", "!="):
            return actual_bool == expected_bool if op == "=" else actual_bool != expected_bool

        try:
            return self._apply(float(actual), float(expected), op)
        except (TypeError, ValueError):
            pass

        return self._apply(str(actual), expected, op)

    @staticmethod
    def _apply(left: Any, right: Any, op: str) -> bool:
        if op == "=":
            return left == right
        if op == "!=":
            return left != right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        raise ValueError(f"Unsupported operator: {op}")

    @staticmethod
    def _to_bool(value: str) -> Optional[bool]:
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
        return None
