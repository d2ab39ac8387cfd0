"""
Composable query predicates.

Optional request parameters are collected as a small tree of predicate
variants and translated to SQLAlchemy in one place:

    Equals(field, value)        field = value  (IS NULL when value is None)
    Contains(field, text)       case-insensitive substring match
    Range(field, gt=, lt=)      exclusive bounds, either may be omitted
    InSet(field, values)        field IN (...)
    And(...), Or(...)           combinators

A field is named by its ORM attribute name on the model passed to
``to_clause``.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple, Union

from sqlalchemy import and_, false, or_, true


@dataclass(frozen=True)
class Equals:
    field: str
    value: Any


@dataclass(frozen=True)
class Contains:
    field: str
    text: str


@dataclass(frozen=True)
class Range:
    field: str
    gt: Optional[Any] = None
    lt: Optional[Any] = None


@dataclass(frozen=True)
class InSet:
    field: str
    values: Tuple[Any, ...]

    def __init__(self, field: str, values: Sequence[Any]):
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class And:
    predicates: Tuple["Predicate", ...] = field(default_factory=tuple)

    def __init__(self, *predicates: "Predicate"):
        object.__setattr__(self, "predicates", tuple(p for p in predicates if p is not None))


@dataclass(frozen=True)
class Or:
    predicates: Tuple["Predicate", ...] = field(default_factory=tuple)

    def __init__(self, *predicates: "Predicate"):
        object.__setattr__(self, "predicates", tuple(p for p in predicates if p is not None))


Predicate = Union[Equals, Contains, Range, InSet, And, Or]


def _column(model, name: str):
    try:
        return getattr(model, name)
    except AttributeError:
        raise ValueError(f"{model.__name__} has no field '{name}'")


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def to_clause(predicate: Predicate, model):
    """Translate a predicate tree into a SQLAlchemy boolean expression."""
    if isinstance(predicate, Equals):
        column = _column(model, predicate.field)
        if predicate.value is None:
            return column.is_(None)
        return column == predicate.value

    if isinstance(predicate, Contains):
        column = _column(model, predicate.field)
        return column.ilike(f"%{_escape_like(predicate.text)}%", escape="\\")

    if isinstance(predicate, Range):
        column = _column(model, predicate.field)
        bounds = []
        if predicate.gt is not None:
            bounds.append(column > predicate.gt)
        if predicate.lt is not None:
            bounds.append(column < predicate.lt)
        return and_(true(), *bounds)

    if isinstance(predicate, InSet):
        if not predicate.values:
            return false()
        return _column(model, predicate.field).in_(predicate.values)

    if isinstance(predicate, And):
        return and_(true(), *(to_clause(p, model) for p in predicate.predicates))

    if isinstance(predicate, Or):
        if not predicate.predicates:
            return false()
        return or_(*(to_clause(p, model) for p in predicate.predicates))

    raise TypeError(f"Unsupported predicate: {predicate!r}")
