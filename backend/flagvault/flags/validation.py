from __future__ import annotations

from typing import Any, Iterable

from flagvault.core.config import settings
from flagvault.flags.attributes import stringify
from flagvault.flags.errors import InvalidArgument
from flagvault.flags.models import FlagStatus
from flagvault.flags.rules import is_supported_operator
from flagvault.flags.segments import is_known_segment


def validate_environment(environment: str | None) -> str:
    if environment not in settings.FLAG_ENVIRONMENTS:
        allowed = "|".join(settings.FLAG_ENVIRONMENTS)
        raise InvalidArgument(f"Unknown environment '{environment}', expected one of {allowed}", field="environment")
    return environment


def validate_status(status: str | FlagStatus | None) -> FlagStatus:
    try:
        return FlagStatus(status)
    except ValueError as exc:
        raise InvalidArgument(f"Unsupported flag status: {status}", field="status") from exc


def validate_rollout(rollout: Any) -> int:
    if isinstance(rollout, bool):
        raise InvalidArgument("rollout must be an integer between 0 and 100", field="rollout")
    try:
        value = int(rollout)
    except (TypeError, ValueError) as exc:
        raise InvalidArgument("rollout must be an integer between 0 and 100", field="rollout") from exc
    if value != rollout and not isinstance(rollout, str):
        raise InvalidArgument("rollout must be an integer between 0 and 100", field="rollout")
    if value < 0 or value > 100:
        raise InvalidArgument("rollout must be an integer between 0 and 100", field="rollout")
    return value


def validate_required_text(value: str | None, field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise InvalidArgument(f"{field} is required", field=field)
    return text


def validate_force_switches(force_on: bool | None, force_off: bool | None) -> None:
    if force_on and force_off:
        raise InvalidArgument("force_on and force_off are mutually exclusive", field="force_on")


def normalize_identifiers(values: Iterable[str] | None) -> list[str]:
    seen: list[str] = []
    for value in values or []:
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


def normalize_tenants(tenants: Iterable[str] | None) -> list[str]:
    values = normalize_identifiers(tenants)
    if not values:
        raise InvalidArgument("A targeting config needs at least one tenant", field="tenants")
    unknown = [tenant for tenant in values if tenant not in settings.TENANT_LABELS]
    if unknown:
        raise InvalidArgument(f"Unknown tenant(s): {', '.join(unknown)}", field="tenants")
    return values


def toggle_tenant(tenants: Iterable[str], tenant: str) -> list[str]:
    """Flip one tenant in or out; the last tenant can never be removed."""
    current = list(tenants or [])
    if tenant in current:
        updated = [value for value in current if value != tenant]
    else:
        updated = current + [tenant]
    if not updated:
        updated.append(tenant)
    return updated


def validate_rules(rules: Iterable[dict] | None) -> list[dict]:
    validated: list[dict] = []
    for index, rule in enumerate(rules or []):
        field = f"rules[{index}]"
        if not isinstance(rule, dict):
            raise InvalidArgument("Rule must be an object", field=field)
        rule_type = rule.get("type", "attribute")
        if rule_type == "segment":
            segment_id = rule.get("segmentId")
            if not is_known_segment(segment_id):
                raise InvalidArgument(f"Unknown segment: {segment_id}", field=field)
            validated.append({"type": "segment", "segmentId": segment_id})
            continue
        if rule_type != "attribute":
            raise InvalidArgument(f"Unsupported rule type: {rule_type}", field=field)
        attr = (rule.get("attr") or "").strip()
        if not attr:
            raise InvalidArgument("Attribute rule needs an attribute path", field=field)
        operator = rule.get("op")
        if not is_supported_operator(operator):
            raise InvalidArgument(f"Unsupported operator: {operator}", field=field)
        validated.append(
            {
                "type": "attribute",
                "attr": attr,
                "op": operator,
                "val": stringify(rule.get("val")),
            }
        )
    return validated
