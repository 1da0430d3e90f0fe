"""
Generic query builder shared by every list endpoint.

Turns an untrusted parameter bag (usually a decoded query string) into a
filtered, searched, sorted, projected and paginated SQLAlchemy query.

Usage:
    PRODUCT_QUERY = QueryBuilder(EntityQueryConfig(search_fields=("name",), ...))

    page = (
        PRODUCT_QUERY.query(db, Product, params)
        .populate(["category"])
        .paginate()
        .lean()
        .execute()
    )

``QueryBuilder.query`` returns a new bound builder each time, so one template
can be shared by concurrent requests.
"""
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from sqlalchemy import func, inspect as sa_inspect, select
from sqlalchemy.orm import Session, load_only, selectinload, sessionmaker
from sqlalchemy.sql.elements import ClauseElement

from storefront.core.errors import LimitExceededError, QueryNotBoundError, QueryValidationError
from storefront.data.database import apply_statement_timeout, dialect_name, storage_errors
from storefront.query.filters import (
    AnyOf, Condition, Expression, SubstringMatch, TextSearch, column_for, combine, compile_filter,
)
from storefront.query.operators import MAX_LIST_OPERANDS, FilterOperator, as_list, coerce_value
from storefront.query.types import (
    MAX_SEARCH_LENGTH, RESERVED_PARAMS, EntityQueryConfig, PaginatedData, Pagination,
    PaginationInfo, ParsedQuery,
)
from storefront.utils.logger import get_logger

logger = get_logger("query.builder")

QueryParams = Mapping[str, Any]

# Offsets past this overflow the 64-bit integers SQLite and Postgres accept
MAX_OFFSET = 2 ** 62


# ---------------------------------------------------------------------------
# Parsing (pure, no database)
# ---------------------------------------------------------------------------

def build(config: EntityQueryConfig, raw_params: Optional[QueryParams] = None) -> ParsedQuery:
    """Parse raw parameters into filter, sort, pagination and select."""
    params = dict(raw_params or {})
    validate_limit(config, params)
    structured = parse_filters(params, config.filterable_fields)
    search = _build_search(config, params)
    return ParsedQuery(
        filter=combine(structured, search),
        sort=_build_sort(config, params),
        pagination=_build_pagination(config, params),
        select=_build_select(config, params),
    )


def validate_limit(config: EntityQueryConfig, params: QueryParams) -> None:
    """Reject a requested limit above the configured maximum."""
    requested = _to_number(params.get("limit"))
    if requested is not None and requested > config.max_limit:
        raise LimitExceededError(
            f"Limit exceeds maximum allowed: {config.max_limit}",
            details={"limit": params.get("limit"), "max_limit": config.max_limit},
        )


def parse_filters(params: QueryParams, filterable_fields: Iterable[str] = ()) -> Optional[Any]:
    """
    Structured filter for every non-reserved key. With a non-empty
    ``filterable_fields`` whitelist, other keys are dropped without error.
    """
    whitelist = tuple(filterable_fields)
    conditions: List[Condition] = []
    for key, value in params.items():
        if key in RESERVED_PARAMS:
            continue
        if whitelist and key not in whitelist:
            continue
        conditions.extend(_conditions_for(key, value))
    if not conditions:
        return None
    return combine(*conditions)


def _conditions_for(key: str, value: Any) -> List[Condition]:
    if isinstance(value, dict):
        return _operator_conditions(key, value)

    parsed = coerce_value(value)
    if isinstance(parsed, dict):
        return []
    if isinstance(parsed, list):
        _check_list_size(key, "in", parsed)
        return [Condition(key, FilterOperator.IN, parsed)]
    return [Condition(key, FilterOperator.EQ, parsed)]


def _operator_conditions(key: str, operators: Dict[str, Any]) -> List[Condition]:
    conditions = []
    for name, raw in operators.items():
        op = FilterOperator.parse(name)
        if op is None:
            continue
        parsed = coerce_value(raw)
        if isinstance(parsed, dict):
            continue
        if op.takes_list:
            parsed = as_list(parsed)
            _check_list_size(key, name, parsed)
        elif isinstance(parsed, list):
            # Scalar comparison against a list is malformed; drop it
            continue
        if op is FilterOperator.REGEX and not _compiles(parsed):
            logger.debug("query: method=parse_filters field=%s result=invalid_regex", key)
            continue
        conditions.append(Condition(key, op, parsed))
    return conditions


def _compiles(pattern: Any) -> bool:
    try:
        re.compile(str(pattern))
    except re.error:
        return False
    return True


def _check_list_size(key: str, op_name: str, values: list) -> None:
    if len(values) > MAX_LIST_OPERANDS:
        raise QueryValidationError(
            f"{op_name} operator array size exceeds maximum of {MAX_LIST_OPERANDS}",
            details={"field": key, "size": len(values)},
        )


def _build_search(config: EntityQueryConfig, params: QueryParams) -> Optional[Any]:
    raw = params.get("search")
    if raw is None or raw == "":
        return None
    term = str(raw)[:MAX_SEARCH_LENGTH]
    if not term.strip():
        return None

    substring = None
    if config.search_fields:
        substring = AnyOf(tuple(SubstringMatch(field, term) for field in config.search_fields))
    if config.enable_text_search:
        return TextSearch(term, fallback=substring)
    return substring


def _build_sort(config: EntityQueryConfig, params: QueryParams) -> Dict[str, int]:
    raw = params.get("sort") or config.default_sort or ""
    if isinstance(raw, (list, tuple)):
        raw = ",".join(str(part) for part in raw)

    sort: Dict[str, int] = {}
    for part in str(raw).split(","):
        trimmed = part.strip()
        if not trimmed:
            continue
        descending = trimmed.startswith("-")
        field = trimmed[1:] if descending else trimmed
        if not field:
            continue
        if config.sortable_fields and field not in config.sortable_fields:
            continue
        sort[field] = -1 if descending else 1
    return sort


def _build_pagination(config: EntityQueryConfig, params: QueryParams) -> Pagination:
    limit = min(max(_to_int(params.get("limit")) or config.default_limit, 1), config.max_limit)
    page = min(max(_to_int(params.get("page")) or 1, 1), MAX_OFFSET // limit)
    return Pagination.of(page, limit)


def _build_select(config: EntityQueryConfig, params: QueryParams) -> Tuple[str, ...]:
    raw = params.get("select")
    if not raw:
        return ()
    fields = _split_fields(raw)
    if config.selectable_fields:
        fields = [f for f in fields if f in config.selectable_fields]
    return tuple(fields)


def _split_fields(raw: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(raw, str):
        parts = raw.split(",")
    else:
        parts = [p for item in raw for p in str(item).split(",")]
    return [p.strip() for p in parts if p.strip()]


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_number(value)
    if number is None or number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number)


# ---------------------------------------------------------------------------
# Fluent builder
# ---------------------------------------------------------------------------

class QueryBuilder:
    """
    Fluent, per-entity query builder.

    Construct once per entity with its static ``EntityQueryConfig``; call
    ``query(session, Model, params)`` per request to get a bound builder,
    chain modifiers, then call a terminal: ``execute()``, ``count()``,
    ``exists()`` or ``find_one()``.

    When a ``session_factory`` is supplied, the page read and the count read
    of a paginated ``execute()`` run concurrently, each in its own session.
    """

    def __init__(
        self,
        config: Optional[EntityQueryConfig] = None,
        session_factory: Optional[sessionmaker] = None,
    ) -> None:
        self.config = config or EntityQueryConfig()
        self._session_factory = session_factory
        self._session: Optional[Session] = None
        self._model: Any = None
        self._params: Dict[str, Any] = {}
        self._populate: List[str] = []
        self._lean = False
        self._custom_select: Optional[Tuple[str, ...]] = None
        self._paginated = False
        self._extra_filters: List[Any] = []

    # -- binding and modifiers ------------------------------------------

    def query(
        self,
        session: Session,
        model: Any,
        params: Optional[QueryParams] = None,
        session_factory: Optional[sessionmaker] = None,
    ) -> "QueryBuilder":
        """Start a new query chain for ``model`` (leaves this builder untouched)."""
        bound = QueryBuilder(self.config, session_factory or self._session_factory)
        bound._session = session
        bound._model = model
        bound._params = dict(params or {})
        return bound

    def populate(self, relations: Union[str, Iterable[str]]) -> "QueryBuilder":
        """Eager-load relationships; dotted paths (``items.product``) load nested ones."""
        self._populate.extend(_split_fields(relations))
        return self

    def select(self, fields: Union[str, Iterable[str]]) -> "QueryBuilder":
        """Trusted projection that overrides the ``select`` parameter."""
        self._custom_select = tuple(_split_fields(fields))
        return self

    def lean(self, use_lean: bool = True) -> "QueryBuilder":
        """Return plain dicts instead of ORM instances."""
        self._lean = use_lean
        return self

    def where(self, extra: Union[Dict[str, Any], ClauseElement]) -> "QueryBuilder":
        """
        AND an extra trusted filter: an operator dict (same syntax as the
        query string, no whitelist) or a SQLAlchemy boolean expression.
        """
        if isinstance(extra, ClauseElement):
            self._extra_filters.append(Expression(extra))
        else:
            node = parse_filters(extra or {})
            if node is not None:
                self._extra_filters.append(node)
        return self

    def paginate(self) -> "QueryBuilder":
        self._paginated = True
        return self

    # -- terminals --------------------------------------------------------

    def get_query(self) -> ParsedQuery:
        """The parsed query (including ``where`` filters) without executing it."""
        parsed = build(self.config, self._params)
        return ParsedQuery(
            filter=combine(parsed.filter, *self._extra_filters),
            sort=parsed.sort,
            pagination=parsed.pagination,
            select=parsed.select,
        )

    def execute(self) -> Union[List[Any], PaginatedData]:
        parsed = self._prepare()
        if not self._paginated:
            return self._fetch_page(self._session, parsed)

        if self._session_factory is None:
            items = self._fetch_page(self._session, parsed)
            total = self._count(self._session, parsed)
        else:
            with ThreadPoolExecutor(max_workers=2) as pool:
                items_future = pool.submit(self._in_new_session, self._fetch_page, parsed)
                count_future = pool.submit(self._in_new_session, self._count, parsed)
                items, total = items_future.result(), count_future.result()

        info = PaginationInfo.compute(parsed.pagination.page, parsed.pagination.limit, total)
        logger.debug(
            "query: method=execute model=%s page=%s limit=%s total=%s",
            self._model.__name__, info.page, info.limit, total,
        )
        return PaginatedData(items=items, pagination=info)

    def count(self) -> int:
        parsed = self._prepare()
        return self._count(self._session, parsed)

    def exists(self) -> bool:
        parsed = self._prepare()
        session = self._session
        primary_key = sa_inspect(self._model).primary_key[0]
        stmt = select(primary_key)
        clause = compile_filter(parsed.filter, self._model, dialect_name(session))
        if clause is not None:
            stmt = stmt.where(clause)
        with storage_errors(f"{self._model.__name__}.exists"):
            apply_statement_timeout(session, self.config.query_timeout_seconds)
            return session.execute(stmt.limit(1)).first() is not None

    def find_one(self) -> Optional[Any]:
        parsed = self._prepare()
        session = self._session
        stmt = self._select_statement(session, parsed).limit(1)
        with storage_errors(f"{self._model.__name__}.find_one"):
            apply_statement_timeout(session, self.config.query_timeout_seconds)
            row = session.execute(stmt).scalars().first()
            if row is None:
                return None
            return self._present([row], parsed)[0]

    # -- internals --------------------------------------------------------

    def _prepare(self) -> ParsedQuery:
        if self._model is None or self._session is None:
            raise QueryNotBoundError("Model not initialized. Call .query(session, model, params) first.")
        return self.get_query()

    def _in_new_session(self, fn: Callable[[Session, ParsedQuery], Any], parsed: ParsedQuery) -> Any:
        with self._session_factory() as session:
            return fn(session, parsed)

    def _fetch_page(self, session: Session, parsed: ParsedQuery) -> List[Any]:
        stmt = (
            self._select_statement(session, parsed)
            .offset(parsed.pagination.skip)
            .limit(parsed.pagination.limit)
        )
        with storage_errors(f"{self._model.__name__}.find"):
            apply_statement_timeout(session, self.config.query_timeout_seconds)
            rows = session.execute(stmt).scalars().all()
            return self._present(rows, parsed)

    def _count(self, session: Session, parsed: ParsedQuery) -> int:
        stmt = select(func.count()).select_from(self._model)
        clause = compile_filter(parsed.filter, self._model, dialect_name(session))
        if clause is not None:
            stmt = stmt.where(clause)
        with storage_errors(f"{self._model.__name__}.count"):
            apply_statement_timeout(session, self.config.query_timeout_seconds)
            return int(session.scalar(stmt) or 0)

    def _select_statement(self, session: Session, parsed: ParsedQuery):
        model = self._model
        stmt = select(model)
        clause = compile_filter(parsed.filter, model, dialect_name(session))
        if clause is not None:
            stmt = stmt.where(clause)

        populate_paths = self._valid_populate_paths()
        projection = self._projection_columns(parsed, populate_paths)
        if projection:
            stmt = stmt.options(load_only(*projection))
        for path in populate_paths:
            stmt = stmt.options(_loader_for_path(model, path))
        return stmt.order_by(*self._order_by(parsed))

    def _projection_columns(self, parsed: ParsedQuery, populate_paths: List[List[str]]) -> List[Any]:
        fields = self._custom_select if self._custom_select is not None else parsed.select
        columns = [c for c in (column_for(self._model, f) for f in fields) if c is not None]
        if not columns:
            return []
        # Many-to-one loads need the foreign key columns on the parent row
        mapper = sa_inspect(self._model)
        for path in populate_paths:
            relationship = mapper.relationships[path[0]]
            for local in relationship.local_columns:
                if local.key in mapper.column_attrs:
                    columns.append(getattr(self._model, local.key))
        return columns

    def _order_by(self, parsed: ParsedQuery) -> List[Any]:
        clauses = []
        for field, direction in parsed.sort.items():
            column = column_for(self._model, field)
            if column is None:
                continue
            clauses.append(column.desc() if direction < 0 else column.asc())
        # Primary key as final tiebreaker keeps page boundaries stable
        for pk in sa_inspect(self._model).primary_key:
            if pk.key not in parsed.sort:
                clauses.append(getattr(self._model, pk.key).asc())
        return clauses

    def _valid_populate_paths(self) -> List[List[str]]:
        paths = []
        for raw in dict.fromkeys(self._populate):
            segments = raw.split(".")
            if _resolve_path(self._model, segments) is None:
                logger.warning("query: method=populate model=%s unknown_relation=%s", self._model.__name__, raw)
                continue
            paths.append(segments)
        return paths

    def _present(self, rows: List[Any], parsed: ParsedQuery) -> List[Any]:
        if not self._lean:
            return list(rows)
        paths = self._valid_populate_paths()
        projection = self._projection_columns(parsed, paths)
        fields = None
        if projection:
            fields = {c.key for c in projection} | {pk.key for pk in sa_inspect(self._model).primary_key}
        tree = _populate_tree(paths)
        return [to_plain(row, tree, fields) for row in rows]


def _resolve_path(model: Any, segments: List[str]) -> Optional[List[Any]]:
    """Relationship attributes along ``segments``, or None if any segment is unknown."""
    attributes = []
    current = model
    for segment in segments:
        mapper = sa_inspect(current)
        if segment not in mapper.relationships:
            return None
        attributes.append(getattr(current, segment))
        current = mapper.relationships[segment].mapper.class_
    return attributes


def _loader_for_path(model: Any, segments: List[str]):
    attributes = _resolve_path(model, segments)
    option = selectinload(attributes[0])
    for attribute in attributes[1:]:
        option = option.selectinload(attribute)
    return option


def _populate_tree(paths: List[List[str]]) -> Dict[str, Dict]:
    tree: Dict[str, Dict] = {}
    for segments in paths:
        node = tree
        for segment in segments:
            node = node.setdefault(segment, {})
    return tree


def to_plain(
    instance: Any,
    populate: Optional[Dict[str, Dict]] = None,
    fields: Optional[Set[str]] = None,
) -> Dict[str, Any]:
    """
    Column values of an ORM instance (only ``fields`` when given, never
    unloaded ones), plus the populated relationships.
    """
    state = sa_inspect(instance)
    unloaded = state.unloaded
    data = {
        attr.key: getattr(instance, attr.key)
        for attr in state.mapper.column_attrs
        if attr.key not in unloaded and (fields is None or attr.key in fields)
    }
    for name, children in (populate or {}).items():
        value = getattr(instance, name)
        if value is None:
            data[name] = None
        elif isinstance(value, list):
            data[name] = [to_plain(v, children) for v in value]
        else:
            data[name] = to_plain(value, children)
    return data
