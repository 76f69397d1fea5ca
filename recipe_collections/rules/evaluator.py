from __future__ import annotations

from collections.abc import Collection as _Ids
from typing import Any

from .models import (
    AutoRule,
    Condition,
    ConditionResult,
    ContentFacts,
    CustomRule,
    EvaluationResult,
    RuleConfig,
)


def _as_values(value: Any) -> tuple[Any, ...]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(value)
    return (value,)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _relation_ids(cond: Condition, item: ContentFacts) -> frozenset[str] | None:
    if cond.field == "tag":
        if cond.sub_category is None:
            return item.all_tags()
        return item.tags.get(cond.sub_category)
    ref = item.cuisine if cond.field == "cuisine" else item.location
    if ref is None:
        return None
    return frozenset({ref})


def _eval_relation(cond: Condition, item: ContentFacts) -> bool:
    ids = _relation_ids(cond, item)
    if ids is None:
        # Missing tag taxonomy is a plain non-match; a missing scalar reference
        # only satisfies neq.
        return cond.operator == "neq" and cond.field != "tag"
    wanted = {str(v) for v in _as_values(cond.value)}
    hit = bool(ids & wanted)
    if cond.operator in ("eq", "in"):
        return hit
    if cond.operator in ("neq", "nin"):
        return not hit
    return False


def _eval_numeric(cond: Condition, item: ContentFacts) -> bool:
    actual = item.numeric(cond.field)
    if actual is None:
        return cond.operator == "neq"
    expected = _as_number(cond.value)
    if expected is None:
        return False
    op = cond.operator
    if op == "eq":
        return actual == expected
    if op == "neq":
        return actual != expected
    if op == "lt":
        return actual < expected
    if op == "lte":
        return actual <= expected
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    return False


def evaluate_condition(cond: Condition, item: ContentFacts) -> bool:
    if cond.is_numeric:
        return _eval_numeric(cond, item)
    return _eval_relation(cond, item)


def _eval_auto(rule: AutoRule, item: ContentFacts) -> EvaluationResult:
    if rule.field == "tag":
        ids = item.tags.get(rule.sub_category, frozenset()) if rule.sub_category else item.all_tags()
        matched = rule.value in ids
    elif rule.field == "cuisine":
        matched = item.cuisine is not None and item.cuisine == rule.value
    elif rule.field == "location":
        matched = item.location is not None and item.location == rule.value
    else:
        matched = False
    return EvaluationResult(matched=matched, trace=(ConditionResult("auto", 0, rule, matched),))


def _eval_custom(rule: CustomRule, item: ContentFacts) -> EvaluationResult:
    trace: list[ConditionResult] = []
    groups_ok = True
    for gi, group in enumerate(rule.groups):
        results = []
        for ci, cond in enumerate(group.conditions):
            ok = evaluate_condition(cond, item)
            trace.append(ConditionResult(f"group[{gi}]", ci, cond, ok))
            results.append(ok)
        if not results:
            continue
        group_ok = any(results) if group.logic == "OR" else all(results)
        groups_ok = groups_ok and group_ok

    excluded = False
    for ei, cond in enumerate(rule.exclude):
        ok = evaluate_condition(cond, item)
        trace.append(ConditionResult("exclude", ei, cond, ok))
        excluded = excluded or ok

    if excluded:
        return EvaluationResult(matched=False, trace=tuple(trace), reason="exclude")
    return EvaluationResult(matched=groups_ok, trace=tuple(trace), reason="rule")


def evaluate(rule: RuleConfig, item: ContentFacts) -> EvaluationResult:
    """
    Match one content item against a rule set.

    Every condition is evaluated (no short-circuit), so the trace always
    lists one entry per condition.
    """
    if isinstance(rule, AutoRule):
        return _eval_auto(rule, item)
    return _eval_custom(rule, item)


def evaluate_item(
    rule: RuleConfig,
    item: ContentFacts,
    *,
    excluded_ids: _Ids[str] = (),
    pinned_ids: _Ids[str] = (),
) -> EvaluationResult:
    """Rule match with the manual override layer: excluded ids never match, pinned ids always do."""
    if item.item_id in excluded_ids:
        return EvaluationResult(matched=False, reason="excluded_id")
    result = evaluate(rule, item)
    if not result.matched and item.item_id in pinned_ids:
        return EvaluationResult(matched=True, trace=result.trace, reason="pinned")
    return result
