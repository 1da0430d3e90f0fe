"""
Immutable predicate tree produced by the query parser, and its compilation
to SQLAlchemy expressions against a mapped model.

The tree is database-independent so parsing can be tested (and inspected)
without a session. Compilation drops any condition whose field is not a
mapped column of the model.
"""
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Set, Tuple

from sqlalchemy import String, and_, cast, func, inspect as sa_inspect, literal_column, or_
from sqlalchemy.sql.elements import ColumnElement

from storefront.query.operators import FilterOperator, as_list, is_truthy

LIKE_ESCAPE = "\\"


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user text only ever matches literally."""
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


@dataclass(frozen=True)
class Condition:
    field: str
    op: FilterOperator
    value: Any


@dataclass(frozen=True)
class AllOf:
    clauses: Tuple[Any, ...]


@dataclass(frozen=True)
class AnyOf:
    clauses: Tuple[Any, ...]


@dataclass(frozen=True)
class SubstringMatch:
    """Case-insensitive substring match of ``term`` against ``field``."""
    field: str
    term: str

    @property
    def pattern(self) -> str:
        return f"%{escape_like(self.term)}%"


@dataclass(frozen=True)
class TextSearch:
    """
    Indexed full-text search, used when the model and database support it;
    ``fallback`` (substring matching) is compiled otherwise.
    """
    term: str
    fallback: Optional[AnyOf] = None


@dataclass(frozen=True)
class Expression:
    """A trusted, caller-supplied SQLAlchemy boolean expression."""
    clause: Any


def combine(*nodes: Any) -> Optional[Any]:
    """AND together the non-empty nodes; never wraps a single node."""
    present = tuple(n for n in nodes if n is not None)
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return AllOf(present)


def referenced_fields(node: Any) -> Set[str]:
    """Every field name a predicate tree mentions."""
    if node is None or isinstance(node, Expression):
        return set()
    if isinstance(node, (Condition, SubstringMatch)):
        return {node.field}
    if isinstance(node, TextSearch):
        return referenced_fields(node.fallback)
    fields: Set[str] = set()
    for child in node.clauses:
        fields |= referenced_fields(child)
    return fields


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------

def column_for(model: Any, field: str) -> Optional[Any]:
    """Mapped column attribute for ``field``, or None if the model has no such column."""
    mapper = sa_inspect(model)
    if field not in mapper.column_attrs:
        return None
    return getattr(model, field)


def compile_filter(node: Any, model: Any, dialect: str = "default") -> Optional[ColumnElement]:
    """Compile a predicate tree to a WHERE clause, or None for "no constraint"."""
    if node is None:
        return None
    if isinstance(node, Expression):
        return node.clause
    if isinstance(node, Condition):
        return _compile_condition(node, model)
    if isinstance(node, SubstringMatch):
        return _compile_substring(node, model)
    if isinstance(node, TextSearch):
        return _compile_text_search(node, model, dialect)
    if isinstance(node, AllOf):
        parts = _compile_children(node.clauses, model, dialect)
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else and_(*parts)
    if isinstance(node, AnyOf):
        parts = _compile_children(node.clauses, model, dialect)
        if not parts:
            return None
        return parts[0] if len(parts) == 1 else or_(*parts)
    raise TypeError(f"Unknown filter node: {node!r}")


def _compile_children(children: Iterable[Any], model: Any, dialect: str) -> list:
    compiled = (compile_filter(child, model, dialect) for child in children)
    return [c for c in compiled if c is not None]


def _bind(column: Any, value: Any) -> Any:
    # Numbers compared to text columns are bound as text (e.g. name=123)
    if isinstance(column.type, String) and isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _compile_condition(cond: Condition, model: Any) -> Optional[ColumnElement]:
    column = column_for(model, cond.field)
    if column is None:
        return None
    op, value = cond.op, cond.value

    if op is FilterOperator.EXISTS:
        return column.is_not(None) if is_truthy(value) else column.is_(None)
    if op is FilterOperator.IN:
        return column.in_([_bind(column, v) for v in as_list(value)])
    if op is FilterOperator.NIN:
        return or_(column.not_in([_bind(column, v) for v in as_list(value)]), column.is_(None))
    if op is FilterOperator.REGEX:
        return column.regexp_match(str(value))
    if op is FilterOperator.EQ:
        return column.is_(None) if value is None else column == _bind(column, value)
    if op is FilterOperator.NE:
        if value is None:
            return column.is_not(None)
        return or_(column != _bind(column, value), column.is_(None))

    value = _bind(column, value)
    if op is FilterOperator.GT:
        return column > value
    if op is FilterOperator.GTE:
        return column >= value
    if op is FilterOperator.LT:
        return column < value
    if op is FilterOperator.LTE:
        return column <= value
    raise ValueError(f"Unhandled operator {op}")


def _compile_substring(match: SubstringMatch, model: Any) -> Optional[ColumnElement]:
    column = column_for(model, match.field)
    if column is None:
        return None
    if not isinstance(column.type, String):
        column = cast(column, String)
    return column.ilike(match.pattern, escape=LIKE_ESCAPE)


def supports_text_search(model: Any, dialect: str) -> bool:
    return dialect == "postgresql" and bool(getattr(model, "__text_search_index__", None))


def _compile_text_search(search: TextSearch, model: Any, dialect: str) -> Optional[ColumnElement]:
    if not supports_text_search(model, dialect):
        return compile_filter(search.fallback, model, dialect)

    # Must mirror the expression of the model's GIN index for the planner to use it
    document = None
    for name in model.__text_search_columns__:
        part = func.coalesce(getattr(model, name), literal_column("''"))
        document = part if document is None else document + literal_column("' '") + part
    config = literal_column("'simple'")
    return func.to_tsvector(config, document).op("@@")(func.plainto_tsquery(config, search.term))
