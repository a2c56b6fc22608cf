"""
Filter DSL

A FilterSpec maps column names to exactly one FilterCondition. All conditions
are AND-ed. Every adapter translates the same FilterSpec into its own native
query form; `matches()` is the in-process reference predicate they must agree
with.

NULL follows SQL three-valued logic: a NULL or missing column satisfies only
IsNull, never Eq, Neq, In, Like or a comparison.

Wire shape accepted by `parse_filters()`:

    {"status": "active"}                 -> Eq("active")
    {"id": [1, 2, 3]}                    -> In([1, 2, 3])
    {"deleted_at": None}                 -> IsNull()
    {"age": {"gte": 18}}                 -> Gte(18)
    {"name": {"ilike": "ann"}}           -> Ilike("ann")
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from .errors import ValidationError


class FilterCondition:
    """Base for the tagged condition types. `op` is the wire operator name."""

    op: ClassVar[str] = ""

    def test(self, value: Any, present: bool = True) -> bool:
        raise NotImplementedError


@dataclass(frozen=True)
class Eq(FilterCondition):
    value: Any
    op: ClassVar[str] = "eq"

    def test(self, value: Any, present: bool = True) -> bool:
        return present and value is not None and _strict_eq(value, self.value)


@dataclass(frozen=True)
class Neq(FilterCondition):
    value: Any
    op: ClassVar[str] = "neq"

    def test(self, value: Any, present: bool = True) -> bool:
        if not present or value is None or self.value is None:
            return False
        return not _strict_eq(value, self.value)


@dataclass(frozen=True)
class Gt(FilterCondition):
    value: Any
    op: ClassVar[str] = "gt"

    def test(self, value: Any, present: bool = True) -> bool:
        return _compare(value, self.value, lambda a, b: a > b)


@dataclass(frozen=True)
class Gte(FilterCondition):
    value: Any
    op: ClassVar[str] = "gte"

    def test(self, value: Any, present: bool = True) -> bool:
        return _compare(value, self.value, lambda a, b: a >= b)


@dataclass(frozen=True)
class Lt(FilterCondition):
    value: Any
    op: ClassVar[str] = "lt"

    def test(self, value: Any, present: bool = True) -> bool:
        return _compare(value, self.value, lambda a, b: a < b)


@dataclass(frozen=True)
class Lte(FilterCondition):
    value: Any
    op: ClassVar[str] = "lte"

    def test(self, value: Any, present: bool = True) -> bool:
        return _compare(value, self.value, lambda a, b: a <= b)


@dataclass(frozen=True)
class Like(FilterCondition):
    """Literal substring containment (no wildcard expansion)."""

    pattern: str
    op: ClassVar[str] = "like"

    def test(self, value: Any, present: bool = True) -> bool:
        if value is None:
            return False
        return str(self.pattern) in str(value)


@dataclass(frozen=True)
class Ilike(FilterCondition):
    """Case-insensitive literal substring containment."""

    pattern: str
    op: ClassVar[str] = "ilike"

    def test(self, value: Any, present: bool = True) -> bool:
        if value is None:
            return False
        return str(self.pattern).casefold() in str(value).casefold()


@dataclass(frozen=True, init=False)
class In(FilterCondition):
    values: tuple[Any, ...]
    op: ClassVar[str] = "in"

    def __init__(self, values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))

    def test(self, value: Any, present: bool = True) -> bool:
        return present and value is not None and any(_strict_eq(value, v) for v in self.values)


@dataclass(frozen=True)
class IsNull(FilterCondition):
    op: ClassVar[str] = "is"

    def test(self, value: Any, present: bool = True) -> bool:
        return not present or value is None


FilterSpec = dict[str, FilterCondition]

_OPERATORS: dict[str, type[FilterCondition]] = {
    "eq": Eq,
    "neq": Neq,
    "gt": Gt,
    "gte": Gte,
    "lt": Lt,
    "lte": Lte,
    "like": Like,
    "ilike": Ilike,
    "in": In,
}


def _strict_eq(a: Any, b: Any) -> bool:
    # True == 1 in Python; keep booleans distinct from numbers.
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    return a == b


def _compare(value: Any, operand: Any, cmp) -> bool:
    if value is None or operand is None:
        return False
    if isinstance(value, bool) != isinstance(operand, bool):
        return False
    try:
        return bool(cmp(value, operand))
    except TypeError:
        return False


def parse_condition(column: str, raw: Any) -> FilterCondition:
    """Convert one wire value into a FilterCondition."""
    if isinstance(raw, FilterCondition):
        return raw
    if raw is None:
        return IsNull()
    if isinstance(raw, (list, tuple)):
        return In(raw)
    if isinstance(raw, Mapping):
        if len(raw) != 1:
            raise ValidationError(
                f"Filter for column '{column}' must have exactly one operator, got {sorted(raw)}"
            )
        (op, operand), = raw.items()
        cls = _OPERATORS.get(op)
        if cls is None:
            raise ValidationError(f"Unknown filter operator '{op}' for column '{column}'")
        if cls is In:
            if not isinstance(operand, (list, tuple)):
                raise ValidationError(f"'in' filter for column '{column}' requires a list")
            return In(operand)
        return cls(operand)
    return Eq(raw)


def parse_filters(filters: Mapping[str, Any] | None) -> FilterSpec:
    """Normalize a wire-shaped filter object into a FilterSpec."""
    if not filters:
        return {}
    if not isinstance(filters, Mapping):
        raise ValidationError(f"Filters must be a mapping, got {type(filters).__name__}")
    spec: FilterSpec = {}
    for column, raw in filters.items():
        if not isinstance(column, str) or not column:
            raise ValidationError(f"Invalid filter column: {column!r}")
        spec[column] = parse_condition(column, raw)
    return spec


def matches(record: Mapping[str, Any], spec: FilterSpec) -> bool:
    """Reference predicate: True iff `record` satisfies every condition in `spec`."""
    for column, condition in spec.items():
        present = column in record
        if not condition.test(record.get(column), present):
            return False
    return True


def escape_like(pattern: str) -> str:
    """Escape LIKE wildcards so `pattern` matches literally inside %...%."""
    return str(pattern).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def substring_pattern(pattern: str) -> str:
    return f"%{escape_like(pattern)}%"
