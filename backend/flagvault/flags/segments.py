from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from flagvault.core.config import settings
from flagvault.flags.attributes import EvaluationContext


@dataclass(frozen=True)
class Segment:
    id: str
    name: str
    predicate: Callable[[EvaluationContext], bool]

    def contains(self, context: EvaluationContext) -> bool:
        return bool(self.predicate(context))


def _is_beta_tester(context: EvaluationContext) -> bool:
    return (context.user.email or "").endswith(settings.STAFF_EMAIL_DOMAIN)


def _is_internal_staff(context: EvaluationContext) -> bool:
    return (context.user.role or "") == "Staff"


def _is_family_portal(context: EvaluationContext) -> bool:
    return (context.user.tenant or "") == "Family"


def _is_high_value(context: EvaluationContext) -> bool:
    return (context.user.tier or "") == "Gold"


# Segments ship with the code. Adding one is a deploy, not a data change.
SEGMENTS: dict[str, Segment] = {
    segment.id: segment
    for segment in (
        Segment("beta_testers", "Beta Testers", _is_beta_tester),
        Segment("internal_staff", "Internal Staff", _is_internal_staff),
        Segment("family_portal", "Family Portal Users", _is_family_portal),
        Segment("high_value", "High Value Clients", _is_high_value),
    )
}


def list_segments() -> list[Segment]:
    return list(SEGMENTS.values())


def is_known_segment(segment_id: str | None) -> bool:
    return bool(segment_id) and segment_id in SEGMENTS


def in_segment(segment_id: str | None, context: EvaluationContext) -> bool:
    segment = SEGMENTS.get(segment_id or "")
    if segment is None:
        return False
    return segment.contains(context)
