"""
Tests for query parsing (no database).

Tests verify:
- Sort / pagination / select parsing and defaults
- Operator filters with numeric coercion
- Whitelists drop unknown keys without raising
- Search truncation, wildcard escaping and text search selection
- Limit policy: a limit above max_limit is rejected
- Builder binding rules
"""
import pytest

from storefront.core.errors import LimitExceededError, QueryNotBoundError, QueryValidationError
from storefront.query.builder import MAX_OFFSET, QueryBuilder, build, parse_filters
from storefront.query.filters import AllOf, AnyOf, Condition, SubstringMatch, TextSearch, referenced_fields
from storefront.query.operators import FilterOperator
from storefront.query.types import EntityQueryConfig, Pagination


#
# Test: sort and pagination
#

def test_basic_list_sort_and_pagination():
    config = EntityQueryConfig(sortable_fields=["name", "created_at"], default_limit=20)
    parsed = build(config, {"sort": "-created_at", "page": "2", "limit": "5"})

    assert parsed.pagination == Pagination(page=2, limit=5, skip=5)
    assert dict(parsed.sort) == {"created_at": -1}


def test_defaults_when_params_missing():
    config = EntityQueryConfig(default_sort="-created_at", default_limit=20)
    parsed = build(config, {})

    assert parsed.filter is None
    assert parsed.pagination == Pagination(page=1, limit=20, skip=0)
    assert dict(parsed.sort) == {"created_at": -1}
    assert parsed.select == ()


def test_multi_field_sort_keeps_order():
    config = EntityQueryConfig(sortable_fields=("name", "price", "created_at"))
    parsed = build(config, {"sort": "price, -name,,created_at"})
    assert list(parsed.sort.items()) == [("price", 1), ("name", -1), ("created_at", 1)]


@pytest.mark.parametrize("page, limit, expected", [
    ("0", "10", Pagination(1, 10, 0)),
    ("-3", "10", Pagination(1, 10, 0)),
    ("abc", "xyz", Pagination(1, 20, 0)),
    ("3", "-5", Pagination(3, 1, 2)),
    ("2", "100", Pagination(2, 100, 100)),
])
def test_pagination_clamping(page, limit, expected):
    config = EntityQueryConfig(default_limit=20, max_limit=100)
    assert build(config, {"page": page, "limit": limit}).pagination == expected


def test_huge_page_is_capped_below_integer_overflow():
    config = EntityQueryConfig(default_limit=20, max_limit=100)
    pagination = build(config, {"page": "1e30", "limit": "100"}).pagination
    assert pagination.page == MAX_OFFSET // 100
    assert pagination.skip < 2 ** 63


def test_limit_above_max_is_rejected():
    config = EntityQueryConfig(max_limit=100)
    with pytest.raises(LimitExceededError) as exc_info:
        build(config, {"limit": "101"})
    assert exc_info.value.kind == "client_input"
    assert exc_info.value.status_code == 400
    assert "100" in exc_info.value.message


def test_parsed_sort_is_read_only():
    parsed = build(EntityQueryConfig(), {"sort": "name"})
    with pytest.raises(TypeError):
        parsed.sort["name"] = -1


#
# Test: structured filters
#

def test_operator_filter_coerces_numbers():
    config = EntityQueryConfig(filterable_fields=["price"])
    parsed = build(config, {"price": {"gte": "10", "lte": "50"}})

    assert parsed.filter == AllOf((
        Condition("price", FilterOperator.GTE, 10),
        Condition("price", FilterOperator.LTE, 50),
    ))
    for condition in parsed.filter.clauses:
        assert isinstance(condition.value, int)


def test_single_condition_is_not_wrapped():
    parsed = build(EntityQueryConfig(), {"status": "active"})
    assert parsed.filter == Condition("status", FilterOperator.EQ, "active")


def test_comma_value_becomes_in_filter():
    parsed = build(EntityQueryConfig(), {"status": "active,pending"})
    assert parsed.filter == Condition("status", FilterOperator.IN, ["active", "pending"])


def test_unknown_operators_are_dropped():
    parsed = build(EntityQueryConfig(), {"price": {"$where": "1", "near": "2", "gt": "3"}})
    assert parsed.filter == Condition("price", FilterOperator.GT, 3)


def test_invalid_regex_is_dropped():
    assert parse_filters({"name": {"regex": "("}}) is None
    assert parse_filters({"name": {"regex": "[a-", "ne": "x"}}) == Condition("name", FilterOperator.NE, "x")


def test_reserved_params_are_not_filters():
    parsed = build(EntityQueryConfig(), {
        "search": "", "sort": "name", "page": "1", "limit": "5", "select": "name", "populate": "category",
    })
    assert parsed.filter is None


def test_in_operator_wraps_scalar():
    assert parse_filters({"id": {"in": "abc"}}) == Condition("id", FilterOperator.IN, ["abc"])


def test_in_operator_size_guard():
    values = ",".join(str(i) for i in range(1001))
    with pytest.raises(QueryValidationError):
        build(EntityQueryConfig(), {"id": {"in": values}})
    with pytest.raises(QueryValidationError):
        build(EntityQueryConfig(), {"id": {"nin": [str(i) for i in range(1001)]}})
    with pytest.raises(QueryValidationError):
        build(EntityQueryConfig(), {"id": [str(i) for i in range(1001)]})

    # Exactly at the limit is fine
    parsed = build(EntityQueryConfig(), {"id": {"in": [str(i) for i in range(1000)]}})
    assert len(parsed.filter.value) == 1000


#
# Test: whitelists
#

def test_whitelists_contain_every_key():
    config = EntityQueryConfig(
        search_fields=["name"],
        sortable_fields=["name", "created_at"],
        selectable_fields=["name", "price"],
        filterable_fields=["price", "status"],
    )
    parsed = build(config, {
        "price": {"gte": "1"},
        "status": "active",
        "password": "x",
        "role": {"ne": "admin"},
        "sort": "-password,name,secret",
        "select": "name,password,price,internal",
        "search": "phone",
    })

    assert referenced_fields(parsed.filter) <= {"price", "status", "name"}
    assert "password" not in referenced_fields(parsed.filter)
    assert set(parsed.sort) <= set(config.sortable_fields)
    assert set(parsed.select) <= set(config.selectable_fields)
    assert parsed.select == ("name", "price")


def test_empty_whitelist_is_fail_open():
    parsed = build(EntityQueryConfig(), {"anything": "1", "sort": "whatever", "select": "a,b"})
    assert parsed.filter == Condition("anything", FilterOperator.EQ, 1)
    assert dict(parsed.sort) == {"whatever": 1}
    assert parsed.select == ("a", "b")


def test_sort_with_only_unknown_fields_is_empty():
    config = EntityQueryConfig(sortable_fields=["name"])
    assert dict(build(config, {"sort": "-secret"}).sort) == {}


#
# Test: search
#

def test_search_is_or_across_fields():
    config = EntityQueryConfig(search_fields=["name", "description"])
    parsed = build(config, {"search": "phone"})
    assert parsed.filter == AnyOf((SubstringMatch("name", "phone"), SubstringMatch("description", "phone")))


def test_search_and_filters_are_combined():
    config = EntityQueryConfig(search_fields=["name"], filterable_fields=["status"])
    parsed = build(config, {"search": "phone", "status": "active"})
    assert isinstance(parsed.filter, AllOf)
    assert parsed.filter.clauses[0] == Condition("status", FilterOperator.EQ, "active")
    assert parsed.filter.clauses[1] == AnyOf((SubstringMatch("name", "phone"),))


def test_search_is_truncated_to_100_characters():
    config = EntityQueryConfig(search_fields=["name"])
    parsed = build(config, {"search": "x" * 250})
    (match,) = parsed.filter.clauses
    assert len(match.term) == 100


def test_search_escapes_like_wildcards():
    match = SubstringMatch("name", "50%_off\\")
    assert match.pattern == "%50\\%\\_off\\\\%"


def test_blank_search_is_ignored():
    config = EntityQueryConfig(search_fields=["name"])
    assert build(config, {"search": "   "}).filter is None


def test_text_search_keeps_substring_fallback():
    config = EntityQueryConfig(search_fields=["name"], enable_text_search=True)
    parsed = build(config, {"search": "phone"})
    assert parsed.filter == TextSearch("phone", fallback=AnyOf((SubstringMatch("name", "phone"),)))


#
# Test: builder binding
#

def test_query_returns_independent_bound_builder():
    template = QueryBuilder(EntityQueryConfig())
    first = template.query(object(), object(), {"a": "1"}).paginate()
    second = template.query(object(), object(), {"b": "2"})

    assert first is not template and second is not first
    assert first._paginated and not second._paginated
    assert template._model is None


def test_terminal_on_unbound_builder_raises():
    builder = QueryBuilder(EntityQueryConfig())
    for terminal in (builder.execute, builder.count, builder.exists, builder.find_one):
        with pytest.raises(QueryNotBoundError) as exc_info:
            terminal()
        assert exc_info.value.kind == "programming"


def test_get_query_includes_where_filters():
    builder = QueryBuilder(EntityQueryConfig(filterable_fields=["status"]))
    parsed = builder.query(object(), object(), {"status": "active", "secret": "1"}).where({"owner": "u1"}).get_query()
    assert parsed.filter == AllOf((
        Condition("status", FilterOperator.EQ, "active"),
        Condition("owner", FilterOperator.EQ, "u1"),
    ))
