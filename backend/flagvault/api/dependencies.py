"""
FastAPI dependencies for caller identity and the flag engine.

Authentication happens upstream; by the time a request reaches us the
gateway has put the caller's identity in trusted headers.
"""

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from flagvault.core.config import settings
from flagvault.core.db import get_db
from flagvault.flags.attributes import EvaluationContext
from flagvault.flags.engine import FlagEvaluationEngine
from flagvault.flags.registry import DatabaseFlagRegistry


def _header(request: Request, name: str) -> str | None:
    value = request.headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_caller_role(request: Request) -> str | None:
    return _header(request, settings.USER_ROLE_HEADER)


def is_admin(request: Request) -> bool:
    return get_caller_role(request) in settings.ADMIN_ROLES


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")


def get_caller_context(request: Request) -> EvaluationContext | None:
    user_id = _header(request, settings.USER_ID_HEADER)
    email = _header(request, settings.USER_EMAIL_HEADER)
    if not user_id and not email:
        return None
    return EvaluationContext.from_mapping(
        {
            "user": {
                "id": user_id,
                "email": email,
                "tenant": _header(request, settings.USER_TENANT_HEADER),
                "role": get_caller_role(request),
                "tier": _header(request, settings.USER_TIER_HEADER),
            },
            "session": {"id": _header(request, settings.SESSION_ID_HEADER)},
        }
    )


def require_caller_context(request: Request) -> EvaluationContext:
    context = get_caller_context(request)
    if context is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return context


def get_flag_registry(db: Session = Depends(get_db)) -> DatabaseFlagRegistry:
    return DatabaseFlagRegistry(db)


def get_flag_engine(registry: DatabaseFlagRegistry = Depends(get_flag_registry)) -> FlagEvaluationEngine:
    return FlagEvaluationEngine(registry)
