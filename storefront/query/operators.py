"""
Filter operators and raw-value coercion for the query engine.

Query-string values arrive as strings; ``coerce_value`` turns them into the
booleans, numbers, nulls and lists they denote. Operator names from untrusted
input are mapped through ``FilterOperator.parse``, which only knows the
supported set.
"""
import re
from enum import Enum
from typing import Any, Optional

MAX_LIST_OPERANDS = 1000

_NUMBER_RE = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?\s*$")
_INTEGER_RE = re.compile(r"^\s*[+-]?\d+\s*$")


class FilterOperator(str, Enum):
    """Comparison operators accepted inside ``field[op]=value`` objects."""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    REGEX = "regex"
    EXISTS = "exists"

    @classmethod
    def parse(cls, name: Any) -> Optional["FilterOperator"]:
        """Return the operator for ``name`` or None when it is not supported."""
        if not isinstance(name, str):
            return None
        try:
            return cls(name)
        except ValueError:
            return None

    @property
    def takes_list(self) -> bool:
        return self in (FilterOperator.IN, FilterOperator.NIN)


def coerce_value(value: Any) -> Any:
    """
    Coerce a raw query-string value.

    "true"/"false" -> bool, "null" -> None, numeric strings -> int/float,
    comma-separated strings -> list of coerced items, lists element-wise.
    Anything that is not a string is returned unchanged, so coercion is
    idempotent.
    """
    if isinstance(value, (list, tuple)):
        return [coerce_value(v) for v in value]
    if not isinstance(value, str):
        return value
    if value == "true":
        return True
    if value == "false":
        return False
    if value == "null":
        return None
    if _NUMBER_RE.match(value):
        if _INTEGER_RE.match(value):
            return int(value)
        return float(value)
    if "," in value:
        return [coerce_value(part.strip()) for part in value.split(",")]
    return value


def as_list(value: Any) -> list:
    if isinstance(value, list):
        return value
    return [value]


def is_truthy(value: Any) -> bool:
    """Interpret an ``exists`` operand; strings like "0" or "no" count as false."""
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)
