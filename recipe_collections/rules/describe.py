from __future__ import annotations

from .models import AutoRule, Condition, RuleConfig

FIELD_LABELS = {
    "cuisine": "菜系",
    "location": "地区",
    "tag": "标签",
    "cookTime": "烹饪时间",
    "prepTime": "准备时间",
    "difficulty": "难度",
    "servings": "份量",
}

OPERATOR_LABELS = {
    "eq": "等于",
    "neq": "不等于",
    "in": "包含",
    "nin": "不包含",
    "lt": "小于",
    "lte": "小于等于",
    "gt": "大于",
    "gte": "大于等于",
}


def describe_condition(cond: Condition) -> str:
    label = FIELD_LABELS.get(cond.field, cond.field)
    if cond.field == "tag" and cond.sub_category:
        label = f"{label}({cond.sub_category})"
    op = OPERATOR_LABELS.get(cond.operator, cond.operator)
    value = ", ".join(str(v) for v in cond.value) if isinstance(cond.value, tuple) else str(cond.value)
    return f"{label} {op} {value}"


def describe_rule(rule: RuleConfig) -> str:
    """Human-readable one-liner shown next to the rule editor."""
    if isinstance(rule, AutoRule):
        return f"自动匹配 {FIELD_LABELS.get(rule.field, rule.field)} {rule.value}"
    if not rule.groups:
        desc = "无规则（匹配所有）"
    else:
        parts = []
        for group in rule.groups:
            joiner = " 或 " if group.logic == "OR" else " 且 "
            parts.append("(" + joiner.join(describe_condition(c) for c in group.conditions) + ")")
        desc = " 且 ".join(parts)
    if rule.exclude:
        desc += " 排除: " + ", ".join(describe_condition(c) for c in rule.exclude)
    return desc
