from __future__ import annotations

from typing import Callable

from flagvault.flags.attributes import EvaluationContext, resolve, stringify
from flagvault.flags.models import AttributeRule, Rule, RuleOperator, SegmentRule
from flagvault.flags.segments import in_segment


def _in_list(value: str, expected: str) -> bool:
    return value in [item.strip() for item in expected.split(",")]


_OPERATORS: dict[str, Callable[[str, str], bool]] = {
    RuleOperator.EQUALS.value: lambda value, expected: value == expected,
    RuleOperator.NOT_EQUALS.value: lambda value, expected: value != expected,
    RuleOperator.CONTAINS.value: lambda value, expected: expected in value,
    RuleOperator.STARTS_WITH.value: lambda value, expected: value.startswith(expected),
    RuleOperator.ENDS_WITH.value: lambda value, expected: value.endswith(expected),
    RuleOperator.IN.value: _in_list,
}

SUPPORTED_OPERATORS = frozenset(_OPERATORS)


def is_supported_operator(operator: str | None) -> bool:
    return operator in SUPPORTED_OPERATORS


def match_attribute(rule: AttributeRule, context: EvaluationContext) -> bool:
    compare = _OPERATORS.get(rule.operator)
    if compare is None:
        return False
    value = stringify(resolve(context, rule.attr))
    return compare(value, rule.value or "")


def match(rule: Rule, context: EvaluationContext) -> bool:
    if isinstance(rule, SegmentRule):
        return in_segment(rule.segment_id, context)
    if isinstance(rule, AttributeRule):
        return match_attribute(rule, context)
    return False


def match_all(rules, context: EvaluationContext) -> bool:
    return all(match(rule, context) for rule in rules)


def rule_from_payload(payload) -> Rule:
    """Build a rule from its stored JSON form.

    Stored rules are not re-validated here. A malformed entry becomes an
    attribute rule with no operator, which never matches.
    """
    if not isinstance(payload, dict):
        return AttributeRule(attr="", operator="")
    if payload.get("type") == "segment":
        return SegmentRule(segment_id=str(payload.get("segmentId") or ""))
    if payload.get("type", "attribute") != "attribute":
        return AttributeRule(attr="", operator="")
    value = payload.get("val")
    return AttributeRule(
        attr=str(payload.get("attr") or ""),
        operator=str(payload.get("op") or ""),
        value="" if value is None else stringify(value),
    )


def rule_to_payload(rule: Rule) -> dict:
    if isinstance(rule, SegmentRule):
        return {"type": "segment", "segmentId": rule.segment_id}
    return {"type": "attribute", "attr": rule.attr, "op": rule.operator, "val": rule.value}
