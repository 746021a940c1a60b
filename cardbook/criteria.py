"""Contact search criteria produced by the natural-language query interpreter.

Criteria form a closed set of predicate kinds over a fixed set of contact
fields. Raw JSON from the language model is parsed leniently: anything that
does not fit (unknown field, unknown operator, wrong value type) is dropped
instead of raising, so a partially malformed answer still narrows the search.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)


class CriteriaField(str, Enum):
    """Contact fields that can appear in search criteria."""
    NAME = "name"
    EMAIL = "email"
    COMPANY = "company"
    TITLE = "title"
    INDUSTRY = "industry"
    CREATED_AT = "createdAt"


TEXT_FIELDS = frozenset({
    CriteriaField.NAME,
    CriteriaField.EMAIL,
    CriteriaField.COMPANY,
    CriteriaField.TITLE,
    CriteriaField.INDUSTRY,
})


@dataclass(frozen=True)
class Equals:
    """Exact match on a text field."""
    field: CriteriaField
    value: str


@dataclass(frozen=True)
class Contains:
    """Case-insensitive substring match on a text field."""
    field: CriteriaField
    value: str


@dataclass(frozen=True)
class AtLeast:
    """Timestamp field greater than or equal to a bound."""
    field: CriteriaField
    value: datetime


@dataclass(frozen=True)
class AtMost:
    """Timestamp field less than or equal to a bound."""
    field: CriteriaField
    value: datetime


@dataclass(frozen=True)
class AllOf:
    """Conjunction of predicates."""
    predicates: tuple[Predicate, ...]


@dataclass(frozen=True)
class AnyOf:
    """Disjunction of predicates."""
    predicates: tuple[Predicate, ...]


Predicate = Union[Equals, Contains, AtLeast, AtMost, AllOf, AnyOf]


@dataclass(frozen=True)
class SortSpec:
    """Result ordering."""
    field: CriteriaField
    descending: bool = False


@dataclass(frozen=True)
class SearchCriteria:
    """Filter and ordering for a contact search. Empty criteria match everything."""
    where: Predicate | None = None
    order_by: SortSpec | None = None

    @property
    def is_empty(self) -> bool:
        return self.where is None and self.order_by is None


@dataclass
class _ParseStats:
    dropped: list[str] = field(default_factory=list)


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
        # Stored timestamps are naive UTC.
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError):
        return None
    return parsed


def _parse_field_condition(
    criteria_field: CriteriaField,
    condition: dict[str, Any],
    stats: _ParseStats,
) -> list[Predicate]:
    predicates: list[Predicate] = []
    for operator, operand in condition.items():
        if criteria_field in TEXT_FIELDS and operator in ("eq", "ilike"):
            if not isinstance(operand, str) or not operand.strip():
                stats.dropped.append(f"{criteria_field.value}.{operator}")
                continue
            kind = Equals if operator == "eq" else Contains
            predicates.append(kind(criteria_field, operand.strip()))
        elif criteria_field is CriteriaField.CREATED_AT and operator in ("gte", "lte"):
            bound = _parse_timestamp(operand)
            if bound is None:
                stats.dropped.append(f"{criteria_field.value}.{operator}")
                continue
            kind = AtLeast if operator == "gte" else AtMost
            predicates.append(kind(criteria_field, bound))
        else:
            stats.dropped.append(f"{criteria_field.value}.{operator}")
    return predicates


def _combine(predicates: list[Predicate], kind: type[AllOf] | type[AnyOf]) -> Predicate | None:
    if not predicates:
        return None
    if len(predicates) == 1:
        return predicates[0]
    return kind(tuple(predicates))


def _parse_where(where: Any, stats: _ParseStats) -> Predicate | None:
    """Parse a where-object; its keys are combined with AND."""
    if not isinstance(where, dict):
        return None

    conjuncts: list[Predicate] = []
    for key, condition in where.items():
        if key in ("and", "or"):
            if not isinstance(condition, list):
                stats.dropped.append(key)
                continue
            nested = [p for p in (_parse_where(c, stats) for c in condition) if p is not None]
            combined = _combine(nested, AllOf if key == "and" else AnyOf)
            if combined is not None:
                conjuncts.append(combined)
            continue

        try:
            criteria_field = CriteriaField(key)
        except ValueError:
            stats.dropped.append(str(key))
            continue

        if not isinstance(condition, dict):
            stats.dropped.append(str(key))
            continue
        conjuncts.extend(_parse_field_condition(criteria_field, condition, stats))

    return _combine(conjuncts, AllOf)


def _parse_order_by(order_by: Any, stats: _ParseStats) -> SortSpec | None:
    if not isinstance(order_by, dict):
        return None
    try:
        criteria_field = CriteriaField(order_by.get("column"))
    except ValueError:
        stats.dropped.append("orderBy")
        return None
    order = str(order_by.get("order", "asc")).lower()
    return SortSpec(criteria_field, descending=order == "desc")


def parse_criteria(raw: Any) -> SearchCriteria:
    """Build SearchCriteria from loosely structured JSON.

    Expected shape::

        {"where": {"industry": {"ilike": "construction"},
                   "or": [{"name": {"ilike": "john"}}, {"company": {"eq": "Acme"}}]},
         "orderBy": {"column": "createdAt", "order": "desc"}}

    Never raises; input that cannot be understood yields empty criteria.
    """
    if not isinstance(raw, dict):
        return SearchCriteria()

    stats = _ParseStats()
    criteria = SearchCriteria(
        where=_parse_where(raw.get("where"), stats),
        order_by=_parse_order_by(raw.get("orderBy"), stats),
    )
    if stats.dropped:
        logger.debug(f"Ignored unrecognized criteria entries: {', '.join(stats.dropped)}")
    return criteria
