"""Immutable snapshot records the evaluation engine reads.

These are plain frozen dataclasses rather than ORM rows: the registry
converts persisted rows into them once per snapshot, so an evaluation can
never observe a half-applied write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union


class FlagStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class RuleOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "notEquals"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"


class Reason(str, Enum):
    FORCED_ON = "forced-on"
    FORCED_OFF = "forced-off"
    ARCHIVED = "archived"
    BLOCKED = "blocked"
    ALLOWED = "allowed"
    INACTIVE_ENVIRONMENT = "inactive-environment"
    OUTSIDE_SCHEDULE = "outside-schedule"
    TENANT_NOT_PERMITTED = "tenant-not-permitted"
    RULES_NOT_MATCHED = "rules-not-matched"
    ROLLOUT_EXCLUDED = "rollout-excluded"
    ROLLOUT_INCLUDED = "rollout-included"
    RULES_MATCHED_NO_ROLLOUT_GATE = "rules-matched-no-rollout-gate"


@dataclass(frozen=True)
class AttributeRule:
    attr: str
    # Kept as the raw stored string: unknown operators must survive loading
    # and fail closed at match time.
    operator: str
    value: str = ""


@dataclass(frozen=True)
class SegmentRule:
    segment_id: str


Rule = Union[AttributeRule, SegmentRule]


@dataclass(frozen=True)
class Schedule:
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class TargetingConfig:
    environment: str
    active: bool = True
    tenants: frozenset[str] = frozenset({"Public", "Family", "Staff"})
    rules: tuple[Rule, ...] = ()
    rollout: int = 0
    rollout_key: str = "user.id"
    schedule: Schedule = field(default_factory=Schedule)
    updated_at: Optional[datetime] = None
    version: int = 1


@dataclass(frozen=True)
class Flag:
    id: str
    key: str
    name: str
    description: Optional[str] = None
    status: FlagStatus = FlagStatus.ACTIVE
    force_on: bool = False
    force_off: bool = False
    allow_user_ids: frozenset[str] = frozenset()
    block_user_ids: frozenset[str] = frozenset()
    allow_domains: frozenset[str] = frozenset()
    updated_at: Optional[datetime] = None
    version: int = 1

    @property
    def archived(self) -> bool:
        return self.status == FlagStatus.ARCHIVED


@dataclass(frozen=True)
class EvaluationResult:
    flag_key: str
    enabled: bool
    reason: Reason
    environment: Optional[str] = None
    # Only set when the rollout gate actually hashed a key.
    bucket: Optional[int] = None

    def to_payload(self) -> dict:
        return {
            "flag_key": self.flag_key,
            "environment": self.environment,
            "enabled": self.enabled,
            "reason": self.reason.value,
            "bucket": self.bucket,
        }


@dataclass(frozen=True, eq=False)
class FlagSnapshot:
    """A consistent view of every flag and targeting config."""

    flags: Mapping[str, Flag] = field(default_factory=lambda: MappingProxyType({}))
    configs: Mapping[tuple[str, str], TargetingConfig] = field(
        default_factory=lambda: MappingProxyType({})
    )
    revision: int = 0

    @classmethod
    def build(
        cls,
        flags: list[Flag],
        configs: list[tuple[str, TargetingConfig]],
        *,
        revision: int,
    ) -> "FlagSnapshot":
        flag_map = {flag.key: flag for flag in flags}
        config_map = {(flag_key, config.environment): config for flag_key, config in configs}
        return cls(
            flags=MappingProxyType(flag_map),
            configs=MappingProxyType(config_map),
            revision=revision,
        )

    def get_flag(self, flag_key: str) -> Flag | None:
        return self.flags.get(flag_key)

    def get_config(self, flag_key: str, environment: str) -> TargetingConfig | None:
        return self.configs.get((flag_key, environment))
