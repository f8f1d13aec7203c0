from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from flagvault.api.dependencies import (
    get_flag_engine,
    is_admin,
    require_admin,
    require_caller_context,
)
from flagvault.core.config import settings
from flagvault.core.db import get_db
from flagvault.crud.feature_flags import (
    archive_flag,
    create_flag,
    get_default_rollout,
    get_targeting_config,
    list_flags,
    require_flag_by_id,
    require_flag_by_key,
    toggle_targeting_tenant,
    update_flag,
    upsert_targeting_config,
)
from flagvault.flags.engine import FlagEvaluationEngine, build_preview_context
from flagvault.flags.segments import list_segments
from flagvault.flags.validation import validate_environment
from flagvault.schemas.feature_flags import (
    EnvironmentTargetingRead,
    EnvironmentTargetingWrite,
    EvaluationResultRead,
    FlagCreate,
    FlagRead,
    FlagUpdate,
    PreviewRequest,
    SegmentRead,
)


router = APIRouter(prefix="/flags", tags=["flags"])


def _serialize_flag(flag) -> dict:
    return {
        "id": flag.id,
        "key": flag.key,
        "name": flag.name,
        "description": flag.description,
        "status": flag.status,
        "force_on": bool(flag.force_on),
        "force_off": bool(flag.force_off),
        "targeting": {
            "percentage": get_default_rollout(flag),
            "allowDomains": list(flag.allow_domains or []),
            "allowUserIds": list(flag.allow_user_ids or []),
            "blockUserIds": list(flag.block_user_ids or []),
        },
        "version": flag.version,
        "created_at": flag.created_at,
        "updated_at": flag.updated_at,
    }


def _serialize_targeting(flag, environment: str, config) -> dict:
    if config is None:
        # Nothing stored yet; report the defaults a new config would get.
        body = {"active": True, "tenants": list(settings.TENANT_LABELS), "rules": []}
        return {"flagKey": flag.key, "environment": environment, "config": body}
    return {
        "flagKey": flag.key,
        "environment": environment,
        "config": {
            "active": bool(config.active),
            "tenants": list(config.tenants or []),
            "rules": list(config.rules or []),
            "rollout": config.rollout,
            "rolloutKey": config.rollout_key,
            "schedule": {"start": config.schedule_start, "end": config.schedule_end},
            "updatedAt": config.updated_at,
            "version": config.version,
        },
    }


def _targeting_changes(payload) -> dict:
    changes = {}
    if payload is None:
        return changes
    if payload.percentage is not None:
        changes["percentage"] = payload.percentage
    if payload.allowDomains is not None:
        changes["allow_domains"] = payload.allowDomains
    if payload.allowUserIds is not None:
        changes["allow_user_ids"] = payload.allowUserIds
    if payload.blockUserIds is not None:
        changes["block_user_ids"] = payload.blockUserIds
    return changes


@router.get("", response_model=list[FlagRead])
def list_flags_endpoint(db=Depends(get_db), _admin=Depends(require_admin)):
    return [_serialize_flag(flag) for flag in list_flags(db)]


@router.post("", response_model=FlagRead, status_code=status.HTTP_201_CREATED)
def create_flag_endpoint(
    payload: FlagCreate,
    request: Request,
    db=Depends(get_db),
    _admin=Depends(require_admin),
):
    targeting = _targeting_changes(payload.targeting)
    flag = create_flag(
        db,
        key=payload.key,
        name=payload.name,
        description=payload.description,
        status=payload.status,
        force_on=payload.force_on,
        force_off=payload.force_off,
        allow_user_ids=targeting.get("allow_user_ids"),
        block_user_ids=targeting.get("block_user_ids"),
        allow_domains=targeting.get("allow_domains"),
        percentage=targeting.get("percentage"),
        created_by=request.headers.get(settings.USER_ID_HEADER),
    )
    return _serialize_flag(flag)


@router.get("/mine")
def my_flags_endpoint(
    request: Request,
    environment: str = Query(default=None),
    engine: FlagEvaluationEngine = Depends(get_flag_engine),
):
    environment = validate_environment(environment or settings.DEFAULT_ENVIRONMENT)
    preview_identifier = (request.headers.get(settings.PREVIEW_HEADER_NAME) or "").strip()
    if preview_identifier:
        if not is_admin(request):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Preview requires an admin role")
        context = build_preview_context(preview_identifier)
    else:
        context = require_caller_context(request)
    return engine.evaluate_all(environment, context)


@router.get("/segments", response_model=list[SegmentRead])
def list_segments_endpoint(_admin=Depends(require_admin)):
    return [{"id": segment.id, "name": segment.name} for segment in list_segments()]


@router.get("/{flag_id}", response_model=FlagRead)
def get_flag_endpoint(flag_id: str, db=Depends(get_db), _admin=Depends(require_admin)):
    return _serialize_flag(require_flag_by_id(db, flag_id))


@router.patch("/{flag_id}", response_model=FlagRead)
def update_flag_endpoint(
    flag_id: str,
    payload: FlagUpdate,
    db=Depends(get_db),
    _admin=Depends(require_admin),
):
    flag = require_flag_by_id(db, flag_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"targeting", "version"})
    changes.update(_targeting_changes(payload.targeting))
    updated = update_flag(db, flag, changes, expected_version=payload.version)
    return _serialize_flag(updated)


@router.post("/{flag_id}/archive", response_model=FlagRead)
def archive_flag_endpoint(flag_id: str, db=Depends(get_db), _admin=Depends(require_admin)):
    flag = require_flag_by_id(db, flag_id)
    return _serialize_flag(archive_flag(db, flag))


@router.get("/{flag_key}/targeting/{environment}", response_model=EnvironmentTargetingRead)
def get_targeting_endpoint(
    flag_key: str,
    environment: str,
    db=Depends(get_db),
    _admin=Depends(require_admin),
):
    flag = require_flag_by_key(db, flag_key)
    config = get_targeting_config(db, flag, environment)
    return _serialize_targeting(flag, environment, config)


@router.put("/{flag_key}/targeting/{environment}", response_model=EnvironmentTargetingRead)
def put_targeting_endpoint(
    flag_key: str,
    environment: str,
    payload: EnvironmentTargetingWrite,
    db=Depends(get_db),
    _admin=Depends(require_admin),
):
    flag = require_flag_by_key(db, flag_key)
    body = payload.config
    changes = {
        "active": body.active,
        "tenants": body.tenants,
        "rules": [rule.model_dump(exclude_none=True) for rule in body.rules],
        "rollout": body.rollout,
        "rollout_key": body.rolloutKey,
        "schedule": {"start": body.schedule.start, "end": body.schedule.end},
    }
    expected_version = payload.version if payload.version is not None else body.version
    config = upsert_targeting_config(db, flag, environment, changes, expected_version=expected_version)
    return _serialize_targeting(flag, environment, config)


@router.post("/{flag_key}/targeting/{environment}/tenants/{tenant}", response_model=EnvironmentTargetingRead)
def toggle_tenant_endpoint(
    flag_key: str,
    environment: str,
    tenant: str,
    db=Depends(get_db),
    _admin=Depends(require_admin),
):
    flag = require_flag_by_key(db, flag_key)
    config = toggle_targeting_tenant(db, flag, environment, tenant)
    return _serialize_targeting(flag, environment, config)


@router.post("/{flag_key}/preview", response_model=EvaluationResultRead)
def preview_flag_endpoint(
    flag_key: str,
    payload: PreviewRequest,
    engine: FlagEvaluationEngine = Depends(get_flag_engine),
    _admin=Depends(require_admin),
):
    environment = validate_environment(payload.environment)
    result = engine.evaluate_preview(flag_key, environment, payload.identifier)
    return result.to_payload()
