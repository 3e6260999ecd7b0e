"""
Unit tests for FilterExpression.

Tests construction rules, compilation to continuous queries, and that
the record store and the continuous-query evaluator select the same
records for the same filter.
"""

import pytest
from sqlalchemy import select

from mobile_backend.src.models import CloudEntity
from mobile_backend.src.utils.filter_expression import (
    FilterExpression,
    FilterOperator,
    compile_kind_query,
    detect_field_type,
    format_operand,
)
from mobile_backend.src.utils.query_language import FieldType, parse_query


# ============================================================================
# Test: construction
# ============================================================================


class TestConstruction:
    """Tests for operand-count validation."""

    @pytest.mark.parametrize("operator,values", [
        (FilterOperator.EQ, ("priority",)),
        (FilterOperator.GE, ("priority", 1, 2)),
        (FilterOperator.IN, ("tag",)),
        (FilterOperator.EQ, (3, 3)),
        (FilterOperator.EQ, ("", 3)),
        (FilterOperator.EQ, ("meta", {"nested": True})),
        (FilterOperator.EQ, ("score", float("nan"))),
    ])
    def test_invalid_leaves(self, operator, values):
        with pytest.raises(ValueError):
            FilterExpression(operator, values)

    def test_logical_needs_subfilters(self):
        with pytest.raises(ValueError):
            FilterExpression(FilterOperator.AND)

    def test_logical_takes_no_values(self):
        with pytest.raises(ValueError):
            FilterExpression(FilterOperator.OR, ("a", 1), (FilterExpression.eq("a", 1),))

    def test_leaf_takes_no_subfilters(self):
        with pytest.raises(ValueError):
            FilterExpression(FilterOperator.EQ, ("a", 1), (FilterExpression.eq("a", 1),))

    def test_from_dict_and_to_dict(self):
        data = {
            "operator": "AND",
            "subfilters": [
                {"operator": "EQ", "values": ["status", "open"]},
                {"operator": "IN", "values": ["tag", "red", "blue"]},
            ],
        }
        expression = FilterExpression.from_dict(data)
        assert expression.subfilters[1] == FilterExpression.in_("tag", "red", "blue")
        assert expression.to_dict() == data


# ============================================================================
# Test: continuous-query compilation
# ============================================================================


class TestOperandFormatting:
    """Tests for field type detection and literal rendering."""

    @pytest.mark.parametrize("value,expected", [
        (True, FieldType.BOOLEAN),
        (3, FieldType.INT32),
        (2 ** 31 - 1, FieldType.INT32),
        (-(2 ** 31), FieldType.INT32),
        (2 ** 31, FieldType.DOUBLE),
        (1704067200000, FieldType.DOUBLE),
        (2.5, FieldType.DOUBLE),
        ("2024-01-01", FieldType.DOUBLE),
        ("open", FieldType.STRING),
    ])
    def test_detect_field_type(self, value, expected):
        assert detect_field_type(value) == expected

    @pytest.mark.parametrize("value,expected", [
        (False, "false"),
        (3, "3"),
        (2.5, "2.5"),
        ("2024-01-01T00:00:00Z", "1704067200000"),
        ('a"b', '"a\\"b"'),
    ])
    def test_format_operand(self, value, expected):
        assert format_operand(value) == expected


class TestCompileToContinuousQuery:
    """Tests for compile_to_continuous_query() and compile_kind_query()."""

    def test_kind_query_with_ge_filter(self):
        query, schema = compile_kind_query(
            "Message", FilterExpression.compare(FilterOperator.GE, "priority", 3)
        )
        assert query == '(_kindName:"Message") AND ( priority >= 3 )'
        assert schema == {"_kindName": FieldType.STRING, "priority": FieldType.INT32}

    def test_integer_beyond_32_bits_is_declared_double(self):
        query, schema = compile_kind_query(
            "Message", FilterExpression.compare(FilterOperator.GT, "sentAt", 1704067200000)
        )
        assert query == '(_kindName:"Message") AND ( sentAt > 1704067200000 )'
        assert schema["sentAt"] == FieldType.DOUBLE

    def test_kind_query_without_filter(self):
        assert compile_kind_query("Message") == (
            '(_kindName:"Message")',
            {"_kindName": FieldType.STRING},
        )

    def test_templates(self):
        assert FilterExpression.eq("status", "open").compile_to_continuous_query()[0] == \
            '( status : "open")'
        ne = FilterExpression.compare(FilterOperator.NE, "status", "open")
        assert ne.compile_to_continuous_query()[0] == '(NOT status : "open")'
        lt = FilterExpression.compare(FilterOperator.LT, "priority", 2)
        assert lt.compile_to_continuous_query()[0] == "( priority < 2 )"

    def test_in_becomes_or_of_equalities(self):
        query, schema = FilterExpression.in_("tag", "red", "blue").compile_to_continuous_query()
        assert query == '((tag : "red" ) OR (tag : "blue" ))'
        assert schema == {"tag": FieldType.STRING}

    def test_nested_logical(self):
        expression = FilterExpression.and_(
            FilterExpression.eq("a", 1),
            FilterExpression.or_(
                FilterExpression.eq("b", True),
                FilterExpression.compare(FilterOperator.LE, "c", 2.5),
            ),
        )
        query, schema = expression.compile_to_continuous_query()
        assert query == "(( a : 1) AND (( b : true) OR ( c <= 2.5 )))"
        assert schema == {
            "a": FieldType.INT32,
            "b": FieldType.BOOLEAN,
            "c": FieldType.DOUBLE,
        }

    @pytest.mark.parametrize("name", ["AND", "not", "has space", "1st"])
    def test_unusable_property_names(self, name):
        with pytest.raises(ValueError):
            FilterExpression.eq(name, 1).compile_to_continuous_query()


# ============================================================================
# Test: store and evaluator agree
# ============================================================================

DOCUMENTS = {
    "e1": {"status": "open", "priority": 5, "tags": ["red", "blue"], "done": False,
           "due": "2024-03-01"},
    "e2": {"status": "closed", "priority": 1, "tags": ["green"], "done": True},
    "e3": {"status": "open", "priority": 3.5, "due": "2024-01-15T12:00:00Z"},
    "e4": {"priority": "5", "tags": "red"},
    "e5": {"status": "Open", "done": 1},
}

CASES = [
    (FilterExpression.eq("status", "open"), {"e1", "e3"}),
    (FilterExpression.compare(FilterOperator.NE, "status", "open"), {"e2", "e4", "e5"}),
    (FilterExpression.compare(FilterOperator.GE, "priority", 3), {"e1", "e3"}),
    (FilterExpression.compare(FilterOperator.LT, "priority", 3), {"e2"}),
    (FilterExpression.eq("done", True), {"e2"}),
    (FilterExpression.eq("priority", "5"), {"e4"}),
    (FilterExpression.in_("tags", "red", "green"), {"e1", "e2", "e4"}),
    (FilterExpression.compare(FilterOperator.GT, "due", "2024-02-01"), {"e1"}),
    (FilterExpression.compare(FilterOperator.LE, "status", "m"), {"e2", "e5"}),
    (
        FilterExpression.and_(
            FilterExpression.eq("status", "open"),
            FilterExpression.compare(FilterOperator.GE, "priority", 4),
        ),
        {"e1"},
    ),
    (
        FilterExpression.or_(
            FilterExpression.eq("done", True),
            FilterExpression.compare(FilterOperator.LT, "due", "2024-02-01"),
        ),
        {"e2", "e3"},
    ),
]


class TestStoreAndEvaluatorAgree:
    """The SQL filter and the continuous query select the same records."""

    @pytest.fixture
    def entities(self, sample_entity):
        return [sample_entity(entity_id, doc) for entity_id, doc in DOCUMENTS.items()]

    @pytest.mark.parametrize("expression,expected", CASES)
    def test_same_selection(self, test_db_session, entities, expression, expected):
        statement = select(CloudEntity).where(expression.compile_to_store_filter())
        from_store = {e.entity_id for e in test_db_session.execute(statement).scalars()}

        predicate = parse_query(expression.compile_to_continuous_query()[0])
        from_evaluator = {e.entity_id for e in entities if predicate.matches(e.to_document())}

        assert from_store == expected
        assert from_evaluator == expected
