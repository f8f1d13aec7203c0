from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping

from flagvault.core.config import settings
from flagvault.core.metrics import record_flag_evaluation
from flagvault.flags.attributes import EvaluationContext
from flagvault.flags.errors import FlagNotFound
from flagvault.flags.models import EvaluationResult, Flag, FlagSnapshot, Reason
from flagvault.flags.registry import FlagRegistry
from flagvault.flags.targeting import evaluate_config


logger = logging.getLogger(__name__)


def _coerce_context(context: EvaluationContext | Mapping[str, Any] | None) -> EvaluationContext:
    if isinstance(context, EvaluationContext):
        return context
    return EvaluationContext.from_mapping(context)


def _email_domain_allowed(flag: Flag, email: str | None) -> bool:
    if not flag.allow_domains or not email:
        return False
    email_lower = email.lower()
    return any(domain and email_lower.endswith(domain.lower()) for domain in flag.allow_domains)


def build_preview_context(identifier: str) -> EvaluationContext:
    """Context for an admin "test this user" preview.

    The identifier stands in for both id and email; staff-domain addresses
    are treated as Staff tenant and role, everyone else as a Public user.
    """
    identifier = (identifier or "").strip()
    is_staff = bool(identifier) and identifier.endswith(settings.STAFF_EMAIL_DOMAIN)
    return EvaluationContext.from_mapping(
        {
            "user": {
                "id": identifier,
                "email": identifier,
                "tenant": "Staff" if is_staff else "Public",
                "role": "Staff" if is_staff else "User",
            }
        }
    )


def evaluate_flag(
    snapshot: FlagSnapshot,
    flag_key: str,
    environment: str,
    context: EvaluationContext,
    *,
    now: datetime | None = None,
) -> EvaluationResult:
    """Decide one flag against one snapshot. First matching step wins."""
    flag = snapshot.get_flag(flag_key)
    if flag is None:
        raise FlagNotFound(f"Flag not found: {flag_key}")

    def _result(enabled: bool, reason: Reason) -> EvaluationResult:
        return EvaluationResult(flag_key=flag_key, enabled=enabled, reason=reason, environment=environment)

    if flag.archived:
        return _result(False, Reason.ARCHIVED)

    identifiers = context.user.identifiers()
    # Block beats allow and force_on.
    if any(identifier in flag.block_user_ids for identifier in identifiers):
        return _result(False, Reason.BLOCKED)
    if any(identifier in flag.allow_user_ids for identifier in identifiers):
        return _result(True, Reason.ALLOWED)
    if _email_domain_allowed(flag, context.user.email):
        return _result(True, Reason.ALLOWED)

    if flag.force_off:
        return _result(False, Reason.FORCED_OFF)
    if flag.force_on:
        return _result(True, Reason.FORCED_ON)

    config = snapshot.get_config(flag_key, environment)
    if config is None:
        return _result(False, Reason.INACTIVE_ENVIRONMENT)
    return evaluate_config(config, context, flag_key=flag_key, now=now)


class FlagEvaluationEngine:
    """Evaluates flags against whatever snapshot the registry currently holds.

    Every public call reads the snapshot exactly once, so concurrent writes
    to the registry can't leak into the middle of a decision.
    """

    def __init__(self, registry: FlagRegistry) -> None:
        self._registry = registry

    def evaluate(
        self,
        flag_key: str,
        environment: str,
        context: EvaluationContext | Mapping[str, Any] | None,
        *,
        now: datetime | None = None,
    ) -> EvaluationResult:
        ctx = _coerce_context(context)
        result = evaluate_flag(self._registry.snapshot(), flag_key, environment, ctx, now=now)
        self._record(result)
        return result

    def is_enabled(
        self,
        flag_key: str,
        environment: str,
        context: EvaluationContext | Mapping[str, Any] | None,
        *,
        now: datetime | None = None,
    ) -> bool:
        return self.evaluate(flag_key, environment, context, now=now).enabled

    def evaluate_all(
        self,
        environment: str,
        context: EvaluationContext | Mapping[str, Any] | None,
        *,
        now: datetime | None = None,
    ) -> dict[str, bool]:
        ctx = _coerce_context(context)
        snapshot = self._registry.snapshot()
        decisions: dict[str, bool] = {}
        for flag_key in sorted(snapshot.flags):
            result = evaluate_flag(snapshot, flag_key, environment, ctx, now=now)
            self._record(result)
            decisions[flag_key] = result.enabled
        return decisions

    def evaluate_preview(
        self,
        flag_key: str,
        environment: str,
        identifier: str,
        *,
        now: datetime | None = None,
    ) -> EvaluationResult:
        return self.evaluate(flag_key, environment, build_preview_context(identifier), now=now)

    def _record(self, result: EvaluationResult) -> None:
        record_flag_evaluation(
            flag_key=result.flag_key,
            environment=result.environment,
            reason=result.reason.value,
        )
        logger.debug(
            "flag.evaluated",
            extra={
                "flag_key": result.flag_key,
                "environment": result.environment,
                "enabled": result.enabled,
                "reason": result.reason.value,
            },
        )
