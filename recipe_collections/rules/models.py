from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

# Relation fields match against reference ids, numeric fields against attributes.
RELATION_FIELDS = ("tag", "cuisine", "location")
NUMERIC_FIELDS = ("cookTime", "prepTime", "difficulty", "servings")
AUTO_FIELDS = RELATION_FIELDS

FIELD_ALIASES = {
    "cuisineId": "cuisine",
    "locationId": "location",
}

RELATION_OPERATORS = ("eq", "neq", "in", "nin")
NUMERIC_OPERATORS = ("eq", "neq", "lt", "lte", "gt", "gte")

TAG_SUB_CATEGORIES = ("scene", "taste", "method", "crowd", "occasion", "ingredient")

GROUP_LOGICS = ("AND", "OR")

RULE_TYPE_AUTO = "auto"
RULE_TYPE_CUSTOM = "custom"

ITEM_PUBLISHED = "published"
ITEM_PENDING = "pending"
ITEM_DRAFT = "draft"
COUNTED_ITEM_STATES = (ITEM_PUBLISHED, ITEM_PENDING, ITEM_DRAFT)

Scalar = Union[str, int, float]
ConditionValue = Union[Scalar, tuple[Scalar, ...]]


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: ConditionValue
    sub_category: str | None = None

    @property
    def is_numeric(self) -> bool:
        return self.field in NUMERIC_FIELDS

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        out: dict[str, Any] = {"field": self.field, "operator": self.operator, "value": value}
        if self.sub_category:
            out["subCategory"] = self.sub_category
        return out


@dataclass(frozen=True)
class RuleGroup:
    logic: str
    conditions: tuple[Condition, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"logic": self.logic, "conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class AutoRule:
    """Single linked reference: one cuisine, one location or one tag."""

    field: str
    value: str
    sub_category: str | None = None

    mode = RULE_TYPE_AUTO

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"mode": self.mode, "field": self.field, "value": self.value}
        if self.sub_category:
            out["subCategory"] = self.sub_category
        return out


@dataclass(frozen=True)
class CustomRule:
    """Groups combine by AND; exclude conditions combine by OR and always win."""

    groups: tuple[RuleGroup, ...] = ()
    exclude: tuple[Condition, ...] = ()

    mode = RULE_TYPE_CUSTOM

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "groups": [g.to_dict() for g in self.groups],
            "exclude": [c.to_dict() for c in self.exclude],
        }


RuleConfig = Union[AutoRule, CustomRule]

MATCH_ALL = CustomRule()


@dataclass(frozen=True)
class ContentFacts:
    """Evaluator-facing projection of one content item."""

    item_id: str
    status: str
    tags: Mapping[str, frozenset[str]] = field(default_factory=dict)
    cuisine: str | None = None
    location: str | None = None
    cook_time: float | None = None
    prep_time: float | None = None
    difficulty: float | None = None
    servings: float | None = None

    def numeric(self, name: str) -> float | None:
        return {
            "cookTime": self.cook_time,
            "prepTime": self.prep_time,
            "difficulty": self.difficulty,
            "servings": self.servings,
        }.get(name)

    def all_tags(self) -> frozenset[str]:
        out: set[str] = set()
        for ids in self.tags.values():
            out.update(ids)
        return frozenset(out)


@dataclass(frozen=True)
class ConditionResult:
    scope: str
    index: int
    condition: Condition | AutoRule
    matched: bool


@dataclass(frozen=True)
class EvaluationResult:
    matched: bool
    trace: tuple[ConditionResult, ...] = ()
    reason: str = "rule"
