from datetime import datetime, timedelta, timezone

from flagvault.flags.attributes import EvaluationContext
from flagvault.flags.hashing import bucket
from flagvault.flags.models import AttributeRule, Reason, Schedule, SegmentRule, TargetingConfig
from flagvault.flags.targeting import evaluate_config, resolve_tenant, within_schedule


NOW = datetime(2026, 3, 1, 12, 0, 0)


def _context(**user):
    return EvaluationContext.from_mapping({"user": user})


def _config(**overrides):
    values = {
        "environment": "prod",
        "tenants": frozenset({"Public", "Family", "Staff"}),
        "rollout": 100,
    }
    values.update(overrides)
    return TargetingConfig(**values)


def test_inactive_environment_is_off():
    result = evaluate_config(_config(active=False), _context(id="u1"), now=NOW)
    assert result.enabled is False
    assert result.reason == Reason.INACTIVE_ENVIRONMENT


def test_tenant_not_permitted():
    config = _config(tenants=frozenset({"Family", "Staff"}))
    result = evaluate_config(config, _context(id="u1", tenant="Public"), now=NOW)
    assert result.enabled is False
    assert result.reason == Reason.TENANT_NOT_PERMITTED


def test_missing_tenant_defaults_to_public():
    assert resolve_tenant(_context(id="u1")) == "Public"
    config = _config(tenants=frozenset({"Family"}))
    result = evaluate_config(config, _context(id="u1"), now=NOW)
    assert result.reason == Reason.TENANT_NOT_PERMITTED
    public_only = _config(tenants=frozenset({"Public"}))
    assert evaluate_config(public_only, _context(id="u1"), now=NOW).enabled is True


def test_schedule_bounds_are_inclusive():
    start = NOW - timedelta(hours=1)
    end = NOW + timedelta(hours=1)
    schedule = Schedule(start=start, end=end)
    assert within_schedule(schedule, start) is True
    assert within_schedule(schedule, end) is True
    assert within_schedule(schedule, start - timedelta(microseconds=1)) is False
    assert within_schedule(schedule, end + timedelta(microseconds=1)) is False
    assert within_schedule(Schedule(), NOW) is True
    assert within_schedule(Schedule(start=start), NOW + timedelta(days=365)) is True


def test_outside_schedule():
    config = _config(schedule=Schedule(start=NOW + timedelta(days=1)))
    result = evaluate_config(config, _context(id="u1"), now=NOW)
    assert result.enabled is False
    assert result.reason == Reason.OUTSIDE_SCHEDULE


def test_schedule_compares_aware_timestamps_in_utc():
    config = _config(schedule=Schedule(end=NOW))
    aware_now = NOW.replace(tzinfo=timezone.utc)
    assert evaluate_config(config, _context(id="u1"), now=aware_now).enabled is True
    later = (NOW + timedelta(hours=1)).replace(tzinfo=timezone(timedelta(hours=2)))
    # 13:00+02:00 is 11:00 UTC, still before the end.
    assert evaluate_config(config, _context(id="u1"), now=later).enabled is True


def test_rules_not_matched():
    config = _config(rules=(AttributeRule("user.email", "endsWith", "@co.com"),))
    result = evaluate_config(config, _context(id="u1", email="x@other.com"), now=NOW)
    assert result.enabled is False
    assert result.reason == Reason.RULES_NOT_MATCHED


def test_segment_rule_gates_rollout():
    config = _config(rules=(SegmentRule("high_value"),))
    assert evaluate_config(config, _context(id="u1", tier="Gold"), now=NOW).enabled is True
    assert evaluate_config(config, _context(id="u1", tier="Bronze"), now=NOW).reason == Reason.RULES_NOT_MATCHED


def test_rules_matched_without_rollout_key_is_on():
    config = _config(
        rules=(AttributeRule("user.tenant", "equals", "Family"),),
        rollout=0,
        rollout_key="session.id",
    )
    result = evaluate_config(config, _context(id="u1", tenant="Family"), now=NOW)
    assert result.enabled is True
    assert result.reason == Reason.RULES_MATCHED_NO_ROLLOUT_GATE
    assert result.bucket is None


def test_no_rules_and_no_rollout_key_is_off():
    config = _config(rollout=100, rollout_key="session.id")
    result = evaluate_config(config, _context(id="u1"), now=NOW)
    assert result.enabled is False
    assert result.reason == Reason.ROLLOUT_EXCLUDED


def test_zero_rollout_excludes_everyone():
    config = _config(rollout=0)
    for index in range(50):
        result = evaluate_config(config, _context(id=f"user-{index}"), now=NOW)
        assert result.enabled is False
        assert result.reason == Reason.ROLLOUT_EXCLUDED


def test_full_rollout_includes_everyone():
    config = _config(rollout=100)
    for index in range(50):
        result = evaluate_config(config, _context(id=f"user-{index}"), now=NOW)
        assert result.enabled is True
        assert result.reason == Reason.ROLLOUT_INCLUDED


def test_rules_and_partial_rollout_follow_the_bucket():
    config = _config(
        rules=(AttributeRule("user.email", "endsWith", "@co.com"),),
        rollout=25,
        rollout_key="user.id",
    )
    result = evaluate_config(config, _context(id="u1", email="x@co.com"), now=NOW)
    expected_bucket = (117 * 31 + 49) % 100
    assert result.bucket == expected_bucket == bucket("u1")
    assert result.enabled is (expected_bucket < 25)
    assert result.reason == (Reason.ROLLOUT_INCLUDED if expected_bucket < 25 else Reason.ROLLOUT_EXCLUDED)


def test_rollout_key_can_target_session():
    config = _config(rollout=50, rollout_key="session.id")
    context = EvaluationContext.from_mapping({"user": {"id": "u1"}, "session": {"id": "sess-7"}})
    result = evaluate_config(config, context, now=NOW)
    assert result.bucket == bucket("sess-7")
    assert result.enabled is (bucket("sess-7") < 50)
