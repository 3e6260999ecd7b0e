"""
Filter expression tree with dual compilation.

A ``FilterExpression`` is the query filter a client sends with a list
request. The same tree compiles to:

- a SQLAlchemy clause over ``CloudEntity`` for past queries, and
- a continuous-query string plus field-type schema for future queries.

Both compilations select the same records for any data set without
date-ambiguous strings (see ``utils/query_language.py`` for the shared
comparison rules).

Wire format (as accepted from clients):
    {"operator": "AND", "subfilters": [
        {"operator": "EQ", "values": ["status", "open"]},
        {"operator": "IN", "values": ["tag", "red", "blue"]}
    ]}
"""

import enum
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import and_, or_, select

from mobile_backend.src.models import CloudEntity, EntityProperty
from mobile_backend.src.utils.query_language import (
    FieldType,
    KEYWORDS,
    parse_date_millis,
    quote_string,
)


KIND_NAME_PROPERTY = "_kindName"

_PROPERTY_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.\-]*$")


class FilterOperator(str, enum.Enum):
    """Filter operators; EQ through NE are leaf comparisons."""
    EQ = "EQ"
    LT = "LT"
    LE = "LE"
    GT = "GT"
    GE = "GE"
    NE = "NE"
    IN = "IN"
    AND = "AND"
    OR = "OR"


COMPARISON_OPERATORS = frozenset({
    FilterOperator.EQ, FilterOperator.LT, FilterOperator.LE,
    FilterOperator.GT, FilterOperator.GE, FilterOperator.NE,
})
LOGICAL_OPERATORS = frozenset({FilterOperator.AND, FilterOperator.OR})

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

# Continuous-query templates for comparison operators
_QUERY_TEMPLATES = {
    FilterOperator.EQ: "( {name} : {value})",
    FilterOperator.LT: "( {name} < {value} )",
    FilterOperator.LE: "( {name} <= {value} )",
    FilterOperator.GT: "( {name} > {value} )",
    FilterOperator.GE: "( {name} >= {value} )",
    FilterOperator.NE: "(NOT {name} : {value})",
}


def detect_field_type(value: Any) -> FieldType:
    """
    Infer the continuous-query field type of an operand.

    bool -> BOOLEAN, int within 32 bits -> INT32, wider int or float ->
    DOUBLE, date-like string -> DOUBLE (epoch millis), other -> STRING.
    """
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, int):
        if INT32_MIN <= value <= INT32_MAX:
            return FieldType.INT32
        return FieldType.DOUBLE
    if isinstance(value, float):
        return FieldType.DOUBLE
    if parse_date_millis(value) is not None:
        return FieldType.DOUBLE
    return FieldType.STRING


def format_operand(value: Any) -> str:
    """Render an operand as a continuous-query literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    millis = parse_date_millis(value)
    if millis is not None:
        return str(millis)
    return quote_string(value)


def _store_operand(value: Any) -> Tuple[str, Any]:
    """Return the projection column name and bound value an operand compares with."""
    if isinstance(value, bool):
        return "bool_value", value
    if isinstance(value, (int, float)):
        return "num_value", float(value)
    millis = parse_date_millis(value)
    if millis is not None:
        return "num_value", float(millis)
    return "str_value", value


def _has_value(name: str, *criteria):
    """EXISTS over the property rows of the enclosing CloudEntity."""
    return (
        select(EntityProperty.id)
        .where(
            EntityProperty.entity_pk == CloudEntity.id,
            EntityProperty.name == name,
            *criteria,
        )
        .exists()
    )


def _check_operand(value: Any) -> None:
    if isinstance(value, bool) or isinstance(value, int) or isinstance(value, str):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Filter operand must be finite, got {value!r}")
        return
    raise ValueError(f"Unsupported filter operand type: {type(value).__name__}")


@dataclass(frozen=True)
class FilterExpression:
    """
    Immutable filter tree node.

    Attributes:
        operator: FilterOperator
        values: Leaf operands; the property name first, then the value(s)
        subfilters: Child expressions of AND / OR

    Raises:
        ValueError: On construction when the operand counts do not fit the
            operator. These are programming errors, not user input errors;
            request payloads are validated before they reach this class.
    """
    operator: FilterOperator
    values: Tuple[Any, ...] = field(default_factory=tuple)
    subfilters: Tuple["FilterExpression", ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "operator", FilterOperator(self.operator))
        object.__setattr__(self, "values", tuple(self.values or ()))
        object.__setattr__(self, "subfilters", tuple(self.subfilters or ()))

        if self.operator in LOGICAL_OPERATORS:
            if self.values:
                raise ValueError(f"{self.operator.value} takes no values")
            if not self.subfilters:
                raise ValueError(f"{self.operator.value} needs at least one sub-expression")
            for sub in self.subfilters:
                if not isinstance(sub, FilterExpression):
                    raise ValueError("Sub-expressions must be FilterExpression instances")
            return

        if self.subfilters:
            raise ValueError(f"{self.operator.value} takes no sub-expressions")
        if self.operator == FilterOperator.IN:
            if len(self.values) < 2:
                raise ValueError("IN needs a property name and at least one value")
        elif len(self.values) != 2:
            raise ValueError(
                f"{self.operator.value} needs exactly 2 values (property name, value), "
                f"got {len(self.values)}"
            )

        name = self.values[0]
        if not isinstance(name, str) or not name:
            raise ValueError("Property name must be a non-empty string")
        for operand in self.values[1:]:
            _check_operand(operand)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def compare(cls, operator: FilterOperator, name: str, value: Any) -> "FilterExpression":
        return cls(FilterOperator(operator), (name, value))

    @classmethod
    def eq(cls, name: str, value: Any) -> "FilterExpression":
        return cls(FilterOperator.EQ, (name, value))

    @classmethod
    def in_(cls, name: str, *values: Any) -> "FilterExpression":
        return cls(FilterOperator.IN, (name,) + values)

    @classmethod
    def and_(cls, *subfilters: "FilterExpression") -> "FilterExpression":
        return cls(FilterOperator.AND, subfilters=subfilters)

    @classmethod
    def or_(cls, *subfilters: "FilterExpression") -> "FilterExpression":
        return cls(FilterOperator.OR, subfilters=subfilters)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FilterExpression":
        """Build a tree from its wire representation."""
        return cls(
            FilterOperator(data["operator"]),
            tuple(data.get("values") or ()),
            tuple(cls.from_dict(sub) for sub in data.get("subfilters") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"operator": self.operator.value}
        if self.values:
            result["values"] = list(self.values)
        if self.subfilters:
            result["subfilters"] = [sub.to_dict() for sub in self.subfilters]
        return result

    @property
    def property_name(self) -> Optional[str]:
        if self.operator in LOGICAL_OPERATORS:
            return None
        return self.values[0]

    # ------------------------------------------------------------------
    # Store compilation
    # ------------------------------------------------------------------

    def compile_to_store_filter(self):
        """
        Compile to a SQLAlchemy boolean clause over CloudEntity.

        Comparisons test the entity's indexed property rows; a record
        matches when any value of the property satisfies the comparison.
        NE matches records with no value equal to the operand, including
        records that lack the property.
        """
        if self.operator == FilterOperator.AND:
            return and_(*(sub.compile_to_store_filter() for sub in self.subfilters))
        if self.operator == FilterOperator.OR:
            return or_(*(sub.compile_to_store_filter() for sub in self.subfilters))

        name = self.property_name
        if self.operator == FilterOperator.IN:
            grouped: Dict[str, List[Any]] = {}
            for operand in self.values[1:]:
                column_name, bound = _store_operand(operand)
                grouped.setdefault(column_name, []).append(bound)
            return _has_value(
                name,
                or_(*(
                    getattr(EntityProperty, column_name).in_(bounds)
                    for column_name, bounds in grouped.items()
                )),
            )

        column_name, bound = _store_operand(self.values[1])
        column = getattr(EntityProperty, column_name)
        if self.operator == FilterOperator.EQ:
            return _has_value(name, column == bound)
        if self.operator == FilterOperator.NE:
            return ~_has_value(name, column == bound)
        if self.operator == FilterOperator.LT:
            return _has_value(name, column < bound)
        if self.operator == FilterOperator.LE:
            return _has_value(name, column <= bound)
        if self.operator == FilterOperator.GT:
            return _has_value(name, column > bound)
        return _has_value(name, column >= bound)

    # ------------------------------------------------------------------
    # Continuous-query compilation
    # ------------------------------------------------------------------

    def compile_to_continuous_query(self) -> Tuple[str, Dict[str, FieldType]]:
        """
        Compile to a continuous-query string and its schema.

        Returns:
            (query_string, schema) where schema maps property names to
            FieldType.

        Raises:
            ValueError: If a property name cannot be expressed in the
                continuous-query language
        """
        return self._build_query(), self._build_schema()

    def _build_query(self) -> str:
        if self.operator in LOGICAL_OPERATORS:
            joiner = f" {self.operator.value} "
            return "(" + joiner.join(sub._build_query() for sub in self.subfilters) + ")"

        name = _query_property_name(self.property_name)
        if self.operator == FilterOperator.IN:
            clauses = [
                f"({name} : {format_operand(operand)} )"
                for operand in self.values[1:]
            ]
            return "(" + " OR ".join(clauses) + ")"

        return _QUERY_TEMPLATES[self.operator].format(
            name=name, value=format_operand(self.values[1])
        )

    def _build_schema(self) -> Dict[str, FieldType]:
        if self.operator in LOGICAL_OPERATORS:
            schema: Dict[str, FieldType] = {}
            for sub in self.subfilters:
                schema.update(sub._build_schema())
            return schema
        if self.operator == FilterOperator.IN:
            return {self.property_name: FieldType.STRING}
        return {self.property_name: detect_field_type(self.values[1])}


def _query_property_name(name: str) -> str:
    if not _PROPERTY_NAME_PATTERN.match(name) or name.upper() in KEYWORDS:
        raise ValueError(f"Property name {name!r} cannot be used in a continuous query")
    return name


def compile_kind_query(
    kind_name: str,
    expression: Optional[FilterExpression] = None,
) -> Tuple[str, Dict[str, FieldType]]:
    """
    Build the continuous query for a kind, optionally narrowed by a filter.

    The query always starts with the ``_kindName`` clause so subscriptions
    only ever match records of their own kind.

    Example:
        >>> compile_kind_query("Message", FilterExpression.compare("GE", "priority", 3))
        ('(_kindName:"Message") AND ( priority >= 3 )', {'_kindName': STRING, 'priority': INT32})
    """
    query = f"({KIND_NAME_PROPERTY}:{quote_string(kind_name)})"
    schema: Dict[str, FieldType] = {KIND_NAME_PROPERTY: FieldType.STRING}
    if expression is not None:
        filter_query, filter_schema = expression.compile_to_continuous_query()
        query = f"{query} AND {filter_query}"
        schema.update(filter_schema)
    return query, schema
