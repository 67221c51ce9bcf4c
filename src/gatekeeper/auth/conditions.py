"""
Condition evaluation primitives.

Dotted-path value resolution, the comparison operators shared by permission
and policy conditions, and "${user.<path>}" placeholder substitution.
"""

import re
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional

from loguru import logger

from .models import Operator

if TYPE_CHECKING:
    from .models import AuthContext


_PLACEHOLDER = re.compile(r"\$\{(user|context)\.([\w.]+)\}")
_SEQUENCE_TYPES = (list, tuple, set, frozenset)


def get_nested_value(obj: Any, path: str) -> Any:
    """
    Resolve a dotted path against dicts and objects.

    A missing segment anywhere along the path resolves to None.

    Examples:
        >>> get_nested_value({"owner": {"id": "u1"}}, "owner.id")
        'u1'
        >>> get_nested_value({"owner": {}}, "owner.id") is None
        True
    """
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        else:
            current = getattr(current, part, None)
    return current


def compare_values(actual: Any, operator: Operator, expected: Any) -> bool:
    """
    Apply a condition operator.

    Args:
        actual: Resolved value (None when the field is missing)
        operator: Operator to apply
        expected: Value from the condition

    Returns:
        True if the condition holds
    """
    op = Operator(operator)

    if op is Operator.EQUALS:
        return actual == expected
    if op is Operator.NOT_EQUALS:
        return actual != expected
    if op is Operator.IN:
        return isinstance(expected, _SEQUENCE_TYPES) and actual in expected
    if op is Operator.NOT_IN:
        return isinstance(expected, _SEQUENCE_TYPES) and actual not in expected
    if op is Operator.CONTAINS:
        return isinstance(actual, str) and isinstance(expected, str) and expected in actual
    if op is Operator.REGEX:
        if not isinstance(actual, str):
            return False
        try:
            return re.search(str(expected), actual) is not None
        except re.error as e:
            logger.warning(f"Invalid regex in condition '{expected}': {e}")
            return False
    if op is Operator.GREATER_THAN:
        try:
            return actual > expected
        except TypeError:
            return False
    if op is Operator.LESS_THAN:
        try:
            return actual < expected
        except TypeError:
            return False

    return False


def compare_membership(values: Iterable[Any], operator: Operator, expected: Any) -> bool:
    """
    Apply an operator to a set of values (e.g. a user's role names).

    ``in`` holds when any value is listed, ``not_in`` when none is,
    ``equals``/``contains`` when the expected value is present and
    ``not_equals`` when it is absent. Other operators hold if any value
    satisfies them.
    """
    values = list(values)
    op = Operator(operator)

    if op is Operator.IN:
        return isinstance(expected, _SEQUENCE_TYPES) and any(v in expected for v in values)
    if op is Operator.NOT_IN:
        return isinstance(expected, _SEQUENCE_TYPES) and not any(v in expected for v in values)
    if op in (Operator.EQUALS, Operator.CONTAINS):
        return expected in values
    if op is Operator.NOT_EQUALS:
        return expected not in values

    return any(compare_values(v, op, expected) for v in values)


def substitute_placeholders(value: Any, context: Optional["AuthContext"]) -> Any:
    """
    Replace "${user.<path>}" and "${context.<path>}" with values from the context.

    A string that is exactly one placeholder is replaced by the raw resolved
    value (keeping its type); placeholders embedded in longer strings are
    replaced by their string form. Lists are substituted element-wise.
    """
    if context is None:
        return value

    if isinstance(value, list):
        return [substitute_placeholders(v, context) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    def _resolve(root: str, path: str) -> Any:
        source = context.user if root == "user" else context
        return get_nested_value(source, path)

    whole = _PLACEHOLDER.fullmatch(value)
    if whole:
        return _resolve(whole.group(1), whole.group(2))

    return _PLACEHOLDER.sub(lambda m: str(_resolve(m.group(1), m.group(2))), value)
