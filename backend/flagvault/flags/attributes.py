"""Typed evaluation context and dotted-path attribute lookup.

The context schema is bounded: a ``user`` section with a handful of known
fields plus a flat mapping of extra scalar attributes, and a ``session``
section shaped the same way. Lookups never raise; anything that does not
resolve to a scalar comes back as an empty string.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

Scalar = str | int | float | bool

MISSING = ""

_USER_FIELDS = ("id", "email", "tenant", "role", "tier")
_SESSION_FIELDS = ("id",)


def _clean_scalar(value: Any) -> Optional[Scalar]:
    if isinstance(value, (str, int, float, bool)):
        return value
    return None


def _freeze_extras(raw: Mapping[str, Any] | None, known: tuple[str, ...]) -> Mapping[str, Scalar]:
    extras: dict[str, Scalar] = {}
    for key, value in (raw or {}).items():
        if not isinstance(key, str) or key in known:
            continue
        scalar = _clean_scalar(value)
        if scalar is not None:
            extras[key] = scalar
    return MappingProxyType(extras)


@dataclass(frozen=True)
class UserAttributes:
    id: Optional[str] = None
    email: Optional[str] = None
    tenant: Optional[str] = None
    role: Optional[str] = None
    tier: Optional[str] = None
    attributes: Mapping[str, Scalar] = field(default_factory=lambda: MappingProxyType({}))

    def identifiers(self) -> tuple[str, ...]:
        """Values a flag's allow/block lists are matched against."""
        return tuple(value for value in (self.id, self.email) if value)


@dataclass(frozen=True)
class SessionAttributes:
    id: Optional[str] = None
    attributes: Mapping[str, Scalar] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class EvaluationContext:
    user: UserAttributes = field(default_factory=UserAttributes)
    session: SessionAttributes = field(default_factory=SessionAttributes)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "EvaluationContext":
        data = data if isinstance(data, Mapping) else {}
        user_raw = data.get("user")
        user_raw = user_raw if isinstance(user_raw, Mapping) else {}
        session_raw = data.get("session")
        session_raw = session_raw if isinstance(session_raw, Mapping) else {}
        user_values = {name: _optional_str(user_raw.get(name)) for name in _USER_FIELDS}
        return cls(
            user=UserAttributes(
                **user_values,
                attributes=_freeze_extras(user_raw, _USER_FIELDS),
            ),
            session=SessionAttributes(
                id=_optional_str(session_raw.get("id")),
                attributes=_freeze_extras(session_raw, _SESSION_FIELDS),
            ),
        )


def _optional_str(value: Any) -> Optional[str]:
    scalar = _clean_scalar(value)
    if scalar is None:
        return None
    return stringify(scalar)


def stringify(value: Any) -> str:
    """Render a resolved value the way rule comparisons see it."""
    if value is None:
        return MISSING
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _section_value(section, known: tuple[str, ...], name: str) -> Optional[Scalar]:
    if name in known:
        return getattr(section, name)
    return section.attributes.get(name)


def resolve(context: EvaluationContext, path: str | None) -> Scalar:
    """Resolve ``section.name`` against the context, ``""`` when absent."""
    if not path or not isinstance(path, str):
        return MISSING
    parts = path.split(".")
    if len(parts) != 2:
        return MISSING
    section_name, name = parts
    if section_name == "user":
        value = _section_value(context.user, _USER_FIELDS, name)
    elif section_name == "session":
        value = _section_value(context.session, _SESSION_FIELDS, name)
    else:
        return MISSING
    if value is None:
        return MISSING
    return value
