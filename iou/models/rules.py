"""
Business rules and their execution records.

``rule_logic`` is stored as plain JSON and parsed into a tagged
expression tree (``RuleLogic``) at evaluation time, so a rule whose
stored logic no longer parses is recorded as a failed execution rather
than breaking the engine.

Expression nodes are discriminated on ``op``, actions on ``kind``::

    {
      "when": {"op": "eq",
               "left": {"op": "field", "path": "classification"},
               "right": {"op": "literal", "value": "public"}},
      "actions": [{"kind": "set_field", "field": "is_woo_relevant",
                   "value": {"op": "literal", "value": true}}]
    }
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from iou.models.enums import DomainType, IssueSeverity, ObjectType


# -----------------------------------------------------------------------------
# Expression tree
# -----------------------------------------------------------------------------

class FieldExpr(BaseModel):
    """Value of an object field; ``domain.*`` paths read the owning domain."""
    op: Literal["field"] = "field"
    path: str = Field(..., min_length=1)


class ValueExpr(BaseModel):
    op: Literal["literal"] = "literal"
    value: Any = None


class NowExpr(BaseModel):
    """Evaluation instant (the date part when compared with dates)."""
    op: Literal["now"] = "now"


class CompareExpr(BaseModel):
    op: Literal["eq", "ne", "lt", "le", "gt", "ge"]
    left: "Expr"
    right: "Expr"


class BoolExpr(BaseModel):
    op: Literal["and", "or"]
    args: list["Expr"] = Field(..., min_length=1)


class NotExpr(BaseModel):
    op: Literal["not"] = "not"
    arg: "Expr"


class InExpr(BaseModel):
    """True when ``value`` is one of ``options``."""
    op: Literal["in"] = "in"
    value: "Expr"
    options: list[Any]


class ContainsExpr(BaseModel):
    """True when the collection (tags, list or text) contains ``item``."""
    op: Literal["contains"] = "contains"
    collection: "Expr"
    item: "Expr"


class ExistsExpr(BaseModel):
    """True when the field is present and not None."""
    op: Literal["exists"] = "exists"
    path: str = Field(..., min_length=1)


class DateAddExpr(BaseModel):
    """Shift a date or datetime by whole days and years.

    ``years_field`` adds the (numeric) value of another field on top of
    ``years``, e.g. ``retention_period``.
    """
    op: Literal["date_add"] = "date_add"
    base: "Expr"
    days: int = 0
    years: int = 0
    years_field: Optional[str] = None


Expr = Annotated[
    Union[
        FieldExpr,
        ValueExpr,
        NowExpr,
        CompareExpr,
        BoolExpr,
        NotExpr,
        InExpr,
        ContainsExpr,
        ExistsExpr,
        DateAddExpr,
    ],
    Field(discriminator="op"),
]

for _node in (CompareExpr, BoolExpr, NotExpr, InExpr, ContainsExpr, DateAddExpr):
    _node.model_rebuild()


# -----------------------------------------------------------------------------
# Actions
# -----------------------------------------------------------------------------

class SetFieldAction(BaseModel):
    """Set a derived object field (a hard fact, applied directly)."""
    kind: Literal["set_field"] = "set_field"
    field: str = Field(..., min_length=1)
    value: Expr


class SuggestAction(BaseModel):
    """Propose a value; applied only when confident enough."""
    kind: Literal["suggest"] = "suggest"
    field: str = Field(..., min_length=1)
    value: Expr
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""


class FlagAction(BaseModel):
    """Flag non-compliance."""
    kind: Literal["flag"] = "flag"
    severity: IssueSeverity = IssueSeverity.MEDIUM
    category: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    recommended_action: str = ""


Action = Annotated[
    Union[SetFieldAction, SuggestAction, FlagAction],
    Field(discriminator="kind"),
]


class RuleLogic(BaseModel):
    """Predicate plus the actions fired when it holds."""
    when: Expr
    actions: list[Action] = Field(..., min_length=1)


# -----------------------------------------------------------------------------
# Rules and executions
# -----------------------------------------------------------------------------

class BusinessRule(BaseModel):
    """
    A declarative compliance rule.

    Versionless: changing logic means creating a new rule and
    deactivating the old one.
    """

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=256)
    description: str = ""
    rule_logic: dict[str, Any]
    applies_to_domain_types: list[DomainType] = Field(
        default_factory=list,
        description="Empty means every domain type",
    )
    applies_to_object_types: list[ObjectType] = Field(
        default_factory=list,
        description="Empty means every object type",
    )
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True
    created_by: Optional[UUID] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def parsed_logic(self) -> RuleLogic:
        return RuleLogic.model_validate(self.rule_logic)

    def applies_to(self, domain_type: DomainType, object_type: ObjectType) -> bool:
        if self.applies_to_domain_types and domain_type not in self.applies_to_domain_types:
            return False
        if self.applies_to_object_types and object_type not in self.applies_to_object_types:
            return False
        return True

    def is_valid_at(self, moment: datetime) -> bool:
        if self.valid_from is not None and moment < self.valid_from:
            return False
        if self.valid_until is not None and moment >= self.valid_until:
            return False
        return True

    def specificity(self) -> tuple[int, int]:
        """Higher sorts as more specific.

        First the number of restricted filter dimensions, then the
        negated count of values allowed across those dimensions (a
        filter on one object type beats a filter on three).
        """
        restricted = [
            dim for dim in (self.applies_to_domain_types, self.applies_to_object_types)
            if dim
        ]
        return len(restricted), -sum(len(dim) for dim in restricted)


class RuleCreate(BaseModel):
    """Input for creating a rule. ``rule_logic`` must parse."""

    name: str = Field(..., min_length=1, max_length=256)
    description: str = ""
    rule_logic: RuleLogic
    applies_to_domain_types: list[DomainType] = Field(default_factory=list)
    applies_to_object_types: list[ObjectType] = Field(default_factory=list)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    created_by: Optional[UUID] = None

    @model_validator(mode="after")
    def window_is_ordered(self) -> "RuleCreate":
        if self.valid_from and self.valid_until and self.valid_until <= self.valid_from:
            raise ValueError("valid_until must be after valid_from")
        return self

    def to_rule(self) -> BusinessRule:
        return BusinessRule(
            name=self.name,
            description=self.description,
            rule_logic=self.rule_logic.model_dump(mode="json"),
            applies_to_domain_types=self.applies_to_domain_types,
            applies_to_object_types=self.applies_to_object_types,
            valid_from=self.valid_from,
            valid_until=self.valid_until,
            created_by=self.created_by,
        )


class RuleExecution(BaseModel):
    """
    Immutable record of one rule evaluated against one object.

    Re-evaluation appends a new record; existing records are never
    updated.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    rule_id: UUID
    object_id: UUID
    domain_id: UUID
    success: bool
    result: dict[str, Any] = Field(default_factory=dict)
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
