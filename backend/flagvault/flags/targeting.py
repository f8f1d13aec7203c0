from __future__ import annotations

from datetime import datetime

from flagvault.core.config import settings
from flagvault.core.time import normalize_ts, utcnow
from flagvault.flags.attributes import EvaluationContext, resolve, stringify
from flagvault.flags.hashing import bucket as rollout_bucket
from flagvault.flags.models import EvaluationResult, Reason, Schedule, TargetingConfig
from flagvault.flags.rules import match_all


def resolve_tenant(context: EvaluationContext) -> str:
    return context.user.tenant or settings.DEFAULT_TENANT


def within_schedule(schedule: Schedule | None, now: datetime) -> bool:
    # Both ends are inclusive: only strictly before start or after end is out.
    if schedule is None:
        return True
    start = normalize_ts(schedule.start)
    end = normalize_ts(schedule.end)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def evaluate_config(
    config: TargetingConfig,
    context: EvaluationContext,
    *,
    flag_key: str = "",
    now: datetime | None = None,
) -> EvaluationResult:
    """Run one environment's gates in order: active, tenant, schedule, rules, rollout."""
    environment = config.environment

    def _result(enabled: bool, reason: Reason, bucket: int | None = None) -> EvaluationResult:
        return EvaluationResult(
            flag_key=flag_key,
            enabled=enabled,
            reason=reason,
            environment=environment,
            bucket=bucket,
        )

    if not config.active:
        return _result(False, Reason.INACTIVE_ENVIRONMENT)

    if resolve_tenant(context) not in config.tenants:
        return _result(False, Reason.TENANT_NOT_PERMITTED)

    now_ts = normalize_ts(now) or utcnow()
    if not within_schedule(config.schedule, now_ts):
        return _result(False, Reason.OUTSIDE_SCHEDULE)

    has_rules = bool(config.rules)
    if has_rules and not match_all(config.rules, context):
        return _result(False, Reason.RULES_NOT_MATCHED)

    key = stringify(resolve(context, config.rollout_key))
    if not key:
        if has_rules:
            return _result(True, Reason.RULES_MATCHED_NO_ROLLOUT_GATE)
        return _result(False, Reason.ROLLOUT_EXCLUDED)

    bucket = rollout_bucket(key)
    if bucket < config.rollout:
        return _result(True, Reason.ROLLOUT_INCLUDED, bucket)
    return _result(False, Reason.ROLLOUT_EXCLUDED, bucket)
