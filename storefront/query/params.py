"""
Decode bracket-notation query strings into the raw parameter bag the query
builder consumes.

    price[gte]=10&price[lte]=50   -> {"price": {"gte": "10", "lte": "50"}}
    tags[]=a&tags[]=b             -> {"tags": ["a", "b"]}
    status=active&status=pending  -> {"status": ["active", "pending"]}

Values are left as strings; coercion happens in the builder.
"""
import re
from typing import Any, Dict, Iterable, Tuple

_BRACKET_RE = re.compile(r"^([^\[\]]+)\[([^\[\]]*)\]$")


def decode_query_params(items: Iterable[Tuple[str, str]]) -> Dict[str, Any]:
    """Build the parameter bag from (key, value) pairs, e.g. ``request.query_params.multi_items()``."""
    params: Dict[str, Any] = {}
    for key, value in items:
        match = _BRACKET_RE.match(key)
        if match is None:
            if not isinstance(params.get(key), dict):
                _append(params, key, value)
            continue

        field, operator = match.group(1), match.group(2)
        if operator == "":
            existing = params.get(field)
            if isinstance(existing, list):
                existing.append(value)
            elif existing is None or isinstance(existing, dict):
                params[field] = [value]
            else:
                params[field] = [existing, value]
            continue

        operators = params.get(field)
        if not isinstance(operators, dict):
            # field=x followed by field[op]=y: the operator object wins
            operators = {}
            params[field] = operators
        _append(operators, operator, value)
    return params


def _append(target: Dict[str, Any], key: str, value: str) -> None:
    if key not in target:
        target[key] = value
    elif isinstance(target[key], list):
        target[key].append(value)
    else:
        target[key] = [target[key], value]
