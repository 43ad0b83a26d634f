"""
Rule Expression Interpreter

Evaluates the tagged expression trees of ``iou.models.rules`` against one
information object and its domain. Every failure (unknown field, type
mismatch, unparsable date) surfaces as ``RuleFault`` carrying the node
that failed, so the engine can record it on the rule's execution.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from iou.errors import RuleFault
from iou.models import DERIVABLE_FIELDS, InformationDomain, InformationObject
from iou.models.rules import (
    BoolExpr,
    CompareExpr,
    ContainsExpr,
    DateAddExpr,
    ExistsExpr,
    FieldExpr,
    InExpr,
    NotExpr,
    NowExpr,
    ValueExpr,
)

DOMAIN_PREFIX = "domain."

_COMPARATORS = {
    "eq": lambda a, b: a == b,
    "ne": lambda a, b: a != b,
    "lt": lambda a, b: a < b,
    "le": lambda a, b: a <= b,
    "gt": lambda a, b: a > b,
    "ge": lambda a, b: a >= b,
}


@dataclass
class EvaluationContext:
    """Everything a rule may read: the object, its domain and "now"."""
    obj: InformationObject
    domain: InformationDomain
    now: datetime


def _plain(value: Any) -> Any:
    """Enums compare by their value so literals can be plain strings."""
    return value.value if isinstance(value, Enum) else value


def _lookup(path: str, ctx: EvaluationContext) -> Any:
    if path.startswith(DOMAIN_PREFIX):
        target: Any = ctx.domain
        rest = path[len(DOMAIN_PREFIX):]
    else:
        target, rest = ctx.obj, path

    head, _, tail = rest.partition(".")
    if head not in type(target).model_fields:
        raise RuleFault(f"unknown field '{path}'", node="field")
    value = getattr(target, head)
    for part in tail.split(".") if tail else []:
        if not isinstance(value, dict) or part not in value:
            raise RuleFault(f"missing field '{path}'", node="field")
        value = value[part]
    return value


def _as_date_like(value: Any, other: Any) -> Any:
    """Align dates, datetimes and ISO strings so they can be ordered."""
    if isinstance(other, datetime) and isinstance(value, str):
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None and other.tzinfo is not None:
            parsed = parsed.replace(tzinfo=other.tzinfo)
        return parsed
    if isinstance(other, date) and not isinstance(other, datetime):
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return date.fromisoformat(value)
    return value


def _compare(op: str, left: Any, right: Any) -> bool:
    left, right = _plain(left), _plain(right)
    try:
        left = _as_date_like(left, right)
        right = _as_date_like(right, left)
        return bool(_COMPARATORS[op](left, right))
    except (TypeError, ValueError) as e:
        raise RuleFault(f"cannot compare {left!r} {op} {right!r}: {e}", node=op) from e


def _contains(collection: Any, item: Any) -> bool:
    item = _plain(item)
    if collection is None:
        return False
    if isinstance(collection, str):
        if not isinstance(item, str):
            raise RuleFault("text can only contain text", node="contains")
        return item.casefold() in collection.casefold()
    if isinstance(collection, (list, tuple, set, frozenset)):
        if isinstance(item, str):
            return any(
                isinstance(v, str) and v.casefold() == item.casefold() for v in collection
            )
        return item in [_plain(v) for v in collection]
    if isinstance(collection, dict):
        return item in collection
    raise RuleFault(f"{type(collection).__name__} is not a collection", node="contains")


def add_years(moment: date, years: int) -> date:
    """Shift by whole years; 29 February falls back to the 28th."""
    year = moment.year + years
    day = min(moment.day, calendar.monthrange(year, moment.month)[1])
    return moment.replace(year=year, day=day)


def _date_add(node: DateAddExpr, ctx: EvaluationContext) -> Any:
    base = evaluate(node.base, ctx)
    if isinstance(base, str):
        try:
            base = datetime.fromisoformat(base)
        except ValueError as e:
            raise RuleFault(f"not a date: {base!r}", node="date_add") from e
    if not isinstance(base, date):
        raise RuleFault(f"date_add needs a date, got {base!r}", node="date_add")

    years = node.years
    if node.years_field:
        extra = _lookup(node.years_field, ctx)
        if extra is None:
            raise RuleFault(f"'{node.years_field}' is not set", node="date_add")
        if isinstance(extra, bool) or not isinstance(extra, (int, float)):
            raise RuleFault(f"'{node.years_field}' is not a number", node="date_add")
        years += int(extra)

    try:
        return add_years(base, years) + timedelta(days=node.days)
    except (OverflowError, ValueError) as e:
        raise RuleFault(f"date out of range: {e}", node="date_add") from e


def evaluate(node: Any, ctx: EvaluationContext) -> Any:
    """Evaluate one expression node."""
    if isinstance(node, ValueExpr):
        return node.value
    if isinstance(node, FieldExpr):
        return _lookup(node.path, ctx)
    if isinstance(node, NowExpr):
        return ctx.now
    if isinstance(node, ExistsExpr):
        try:
            return _lookup(node.path, ctx) is not None
        except RuleFault:
            return False
    if isinstance(node, CompareExpr):
        return _compare(node.op, evaluate(node.left, ctx), evaluate(node.right, ctx))
    if isinstance(node, BoolExpr):
        if node.op == "and":
            return all(truthy(arg, ctx) for arg in node.args)
        return any(truthy(arg, ctx) for arg in node.args)
    if isinstance(node, NotExpr):
        return not truthy(node.arg, ctx)
    if isinstance(node, InExpr):
        value = _plain(evaluate(node.value, ctx))
        return value in [_plain(o) for o in node.options]
    if isinstance(node, ContainsExpr):
        return _contains(evaluate(node.collection, ctx), evaluate(node.item, ctx))
    if isinstance(node, DateAddExpr):
        return _date_add(node, ctx)
    raise RuleFault(f"unsupported expression {type(node).__name__}", node="?")


def truthy(node: Any, ctx: EvaluationContext) -> bool:
    value = evaluate(node, ctx)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise RuleFault(f"expected a boolean, got {value!r}", node=getattr(node, "op", "?"))
    return value


# Field name -> validator for values a rule wants to write
_FIELD_ADAPTERS: dict[str, TypeAdapter] = {
    name: TypeAdapter(InformationObject.model_fields[name].annotation)
    for name in DERIVABLE_FIELDS
}


def coerce_field_value(field: str, value: Any) -> Any:
    """Validate a derived value against the object's field type."""
    adapter = _FIELD_ADAPTERS.get(field)
    if adapter is None:
        raise RuleFault(f"'{field}' cannot be derived by rules", node="set_field")
    if isinstance(value, datetime) and field in ("destruction_date", "woo_publication_date"):
        value = value.date()
    try:
        return adapter.validate_python(value)
    except PydanticValidationError as e:
        raise RuleFault(f"invalid value for '{field}': {value!r}", node="set_field") from e
