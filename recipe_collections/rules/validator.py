from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from .errors import RulesValidationError
from .models import (
    AUTO_FIELDS,
    FIELD_ALIASES,
    GROUP_LOGICS,
    MATCH_ALL,
    NUMERIC_FIELDS,
    NUMERIC_OPERATORS,
    RELATION_FIELDS,
    RELATION_OPERATORS,
    RULE_TYPE_AUTO,
    RULE_TYPE_CUSTOM,
    TAG_SUB_CATEGORIES,
    AutoRule,
    Condition,
    CustomRule,
    RuleConfig,
    RuleGroup,
)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    rule: RuleConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "rules": self.rule.to_dict() if self.rule is not None else None,
        }


def _number(value: Any) -> int | float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        raw = value.strip()
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            num = float(raw)
        except ValueError:
            return None
        # "nan" and "inf" parse as floats but cannot be compared or stored as JSON.
        return num if math.isfinite(num) else None
    return None


def _identifier(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        s = str(value).strip()
        return s or None
    return None


def _canonical_field(raw: Any) -> str:
    name = str(raw or "").strip()
    return FIELD_ALIASES.get(name, name)


def _check_condition(raw: Any) -> tuple[Condition | None, list[str]]:
    if isinstance(raw, Condition):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return None, ["条件必须是对象"]

    errors: list[str] = []
    fld = _canonical_field(raw.get("field"))
    op = str(raw.get("operator") or "").strip()
    value = raw.get("value")
    sub = raw.get("subCategory", raw.get("tagType"))
    sub = str(sub).strip() if sub not in (None, "") else None

    if not fld:
        return None, ["必须指定 field"]
    if fld not in RELATION_FIELDS and fld not in NUMERIC_FIELDS:
        return None, [f"无效的 field: {fld}"]
    if not op:
        return None, ["必须指定 operator"]

    numeric = fld in NUMERIC_FIELDS
    allowed = NUMERIC_OPERATORS if numeric else RELATION_OPERATORS
    if op not in allowed:
        kind = "数值字段" if numeric else "关联字段"
        return None, [f"{kind} {fld} 不支持 {op} 操作符"]

    if fld == "tag":
        if not sub:
            errors.append("tag 字段必须指定 subCategory")
        elif sub not in TAG_SUB_CATEGORIES:
            errors.append(f"无效的 subCategory: {sub}")
    else:
        sub = None

    norm_value: Any = None
    if numeric:
        norm_value = _number(value)
        if norm_value is None:
            errors.append(f"{fld} 的 value 必须是数字")
    elif op in ("in", "nin"):
        items = value if isinstance(value, (list, tuple)) else [value]
        ids = [_identifier(v) for v in items]
        if not ids or any(v is None for v in ids):
            errors.append(f"{op} 操作符的 value 必须是非空标识列表")
        else:
            norm_value = tuple(ids)
    else:
        norm_value = _identifier(value)
        if norm_value is None:
            errors.append("value 必须是非空标识")

    if errors:
        return None, errors
    return Condition(field=fld, operator=op, value=norm_value, sub_category=sub), []


def _check_auto(raw: dict[str, Any]) -> tuple[AutoRule | None, list[str]]:
    errors: list[str] = []
    fld = _canonical_field(raw.get("field"))
    if fld == "tagId":
        fld = "tag"
    value = _identifier(raw.get("value"))
    sub = raw.get("subCategory", raw.get("tagType"))
    sub = str(sub).strip() if sub not in (None, "") else None
    if not fld:
        errors.append("Auto 规则必须指定 field")
    elif fld not in AUTO_FIELDS:
        errors.append(f"无效的 field: {fld}")
    if value is None:
        errors.append("Auto 规则必须指定 value")
    if sub is not None and sub not in TAG_SUB_CATEGORIES:
        errors.append(f"无效的 subCategory: {sub}")
    if errors:
        return None, errors
    return AutoRule(field=fld, value=str(value), sub_category=sub if fld == "tag" else None), []


def _check_custom(raw: dict[str, Any]) -> tuple[CustomRule | None, list[str]]:
    errors: list[str] = []
    raw_groups = raw.get("groups") or []
    raw_exclude = raw.get("exclude") or []
    if not isinstance(raw_groups, list):
        return None, ["groups 必须是数组"]
    if not isinstance(raw_exclude, list):
        return None, ["exclude 必须是数组"]

    groups: list[RuleGroup] = []
    for gi, g in enumerate(raw_groups, start=1):
        if isinstance(g, RuleGroup):
            g = g.to_dict()
        if not isinstance(g, dict):
            errors.append(f"规则组 {gi} 必须是对象")
            continue
        conditions = g.get("conditions") or []
        if not isinstance(conditions, list):
            errors.append(f"规则组 {gi} 的 conditions 必须是数组")
            continue
        # Empty groups are dropped, not rejected.
        if not conditions:
            continue
        logic = str(g.get("logic") or "AND").strip().upper()
        if logic not in GROUP_LOGICS:
            errors.append(f"规则组 {gi} 的 logic 必须是 AND 或 OR")
        parsed: list[Condition] = []
        for ci, c in enumerate(conditions, start=1):
            cond, errs = _check_condition(c)
            errors.extend(f"规则组 {gi} 条件 {ci}: {e}" for e in errs)
            if cond is not None:
                parsed.append(cond)
        groups.append(RuleGroup(logic=logic, conditions=tuple(parsed)))

    exclude: list[Condition] = []
    for ei, c in enumerate(raw_exclude, start=1):
        cond, errs = _check_condition(c)
        errors.extend(f"排除条件 {ei}: {e}" for e in errs)
        if cond is not None:
            exclude.append(cond)

    if errors:
        return None, errors
    return CustomRule(groups=tuple(groups), exclude=tuple(exclude)), []


def validate(rules: RuleConfig | dict[str, Any] | None) -> ValidationResult:
    """
    Statically check a rule set before it is evaluated or persisted.

    Accepts either the JSON payload sent by the editor or an already built
    rule tree. On success ``rule`` holds the normalized tree: empty groups
    dropped, aliases resolved, numeric strings converted.
    """
    if rules is None:
        return ValidationResult(valid=True, rule=MATCH_ALL)
    if isinstance(rules, (AutoRule, CustomRule)):
        rules = rules.to_dict()
    if not isinstance(rules, dict):
        return ValidationResult(valid=False, errors=["规则必须是对象"])
    if not rules:
        return ValidationResult(valid=True, rule=MATCH_ALL)

    mode = str(rules.get("mode") or "").strip().lower()
    if not mode:
        mode = RULE_TYPE_CUSTOM if ("groups" in rules or "exclude" in rules) else ""
    if mode == RULE_TYPE_AUTO:
        rule, errors = _check_auto(rules)
    elif mode == RULE_TYPE_CUSTOM:
        rule, errors = _check_custom(rules)
    else:
        return ValidationResult(valid=False, errors=["无效的规则类型"])
    return ValidationResult(valid=not errors, errors=errors, rule=rule)


def parse_rule_config(rules: RuleConfig | dict[str, Any] | None) -> RuleConfig:
    result = validate(rules)
    if not result.valid or result.rule is None:
        raise RulesValidationError(result.errors)
    return result.rule
