import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from flagvault.core.config import settings
from flagvault.core.time import normalize_ts
from flagvault.flags.errors import Conflict, FlagNotFound, InvalidArgument
from flagvault.flags.models import FlagStatus
from flagvault.flags.registry import flag_write_lock, invalidate_snapshot_cache
from flagvault.flags.validation import (
    normalize_identifiers,
    normalize_tenants,
    toggle_tenant,
    validate_environment,
    validate_force_switches,
    validate_required_text,
    validate_rollout,
    validate_rules,
    validate_status,
)
from flagvault.models.feature_flags import FeatureFlag, FlagTargetingConfig


logger = logging.getLogger(__name__)

_LIST_FIELDS = ("allow_user_ids", "block_user_ids", "allow_domains")


def list_flags(db: Session) -> list[FeatureFlag]:
    return db.query(FeatureFlag).order_by(FeatureFlag.key).all()


def get_flag_by_id(db: Session, flag_id: str) -> FeatureFlag | None:
    return db.query(FeatureFlag).filter(FeatureFlag.id == flag_id).first()


def get_flag_by_key(db: Session, key: str) -> FeatureFlag | None:
    return db.query(FeatureFlag).filter(FeatureFlag.key == key).first()


def require_flag_by_id(db: Session, flag_id: str) -> FeatureFlag:
    flag = get_flag_by_id(db, flag_id)
    if flag is None:
        raise FlagNotFound(f"Flag not found: {flag_id}")
    return flag


def require_flag_by_key(db: Session, key: str) -> FeatureFlag:
    flag = get_flag_by_key(db, key)
    if flag is None:
        raise FlagNotFound(f"Flag not found: {key}")
    return flag


def get_targeting_config(db: Session, flag: FeatureFlag, environment: str) -> FlagTargetingConfig | None:
    validate_environment(environment)
    return (
        db.query(FlagTargetingConfig)
        .filter(
            FlagTargetingConfig.flag_id == flag.id,
            FlagTargetingConfig.environment == environment,
        )
        .first()
    )


def get_default_rollout(flag: FeatureFlag) -> int:
    for config in flag.targeting_configs:
        if config.environment == settings.DEFAULT_ENVIRONMENT:
            return int(config.rollout or 0)
    return 0


def _attach_targeting_config(flag: FeatureFlag, environment: str) -> FlagTargetingConfig:
    config = FlagTargetingConfig(
        environment=environment,
        active=True,
        tenants=list(settings.TENANT_LABELS),
        rules=[],
        rollout=0,
        rollout_key="user.id",
    )
    flag.targeting_configs.append(config)
    return config


def _commit(db: Session, *, conflict_message: str) -> None:
    try:
        db.commit()
    except (IntegrityError, StaleDataError) as exc:
        db.rollback()
        raise Conflict(conflict_message) from exc
    invalidate_snapshot_cache()


def create_flag(
    db: Session,
    *,
    key: str | None,
    name: str | None,
    description: str | None = None,
    status: str = FlagStatus.ACTIVE.value,
    force_on: bool | None = False,
    force_off: bool | None = False,
    allow_user_ids: list[str] | None = None,
    block_user_ids: list[str] | None = None,
    allow_domains: list[str] | None = None,
    percentage: int | None = None,
    created_by: str | None = None,
) -> FeatureFlag:
    key = validate_required_text(key, "key")
    name = validate_required_text(name, "name")
    flag_status = validate_status(status)
    validate_force_switches(force_on, force_off)
    rollout = validate_rollout(percentage) if percentage is not None else 0

    with flag_write_lock(key):
        if get_flag_by_key(db, key) is not None:
            raise Conflict(f"Flag key already exists: {key}")
        flag = FeatureFlag(
            key=key,
            name=name,
            description=description,
            status=flag_status.value,
            force_on=bool(force_on),
            force_off=bool(force_off),
            allow_user_ids=normalize_identifiers(allow_user_ids),
            block_user_ids=normalize_identifiers(block_user_ids),
            allow_domains=normalize_identifiers(allow_domains),
            created_by=created_by,
        )
        default_config = _attach_targeting_config(flag, settings.DEFAULT_ENVIRONMENT)
        default_config.rollout = rollout
        db.add(flag)
        _commit(db, conflict_message=f"Flag key already exists: {key}")
    db.refresh(flag)
    logger.info("flag.created", extra={"flag_key": flag.key, "flag_id": flag.id})
    return flag


def update_flag(
    db: Session,
    flag: FeatureFlag,
    changes: dict[str, Any],
    *,
    expected_version: int | None = None,
) -> FeatureFlag:
    if "key" in changes and changes["key"] is not None and changes["key"] != flag.key:
        raise InvalidArgument("Flag key is immutable", field="key")
    if expected_version is not None and expected_version != flag.version:
        raise Conflict(f"Flag {flag.key} was modified concurrently")

    updates: dict[str, Any] = {}
    if "name" in changes and changes["name"] is not None:
        updates["name"] = validate_required_text(changes["name"], "name")
    if "description" in changes:
        updates["description"] = changes["description"]
    if "status" in changes and changes["status"] is not None:
        updates["status"] = validate_status(changes["status"]).value

    # Switching one force flag on always clears the other.
    force_on = changes.get("force_on")
    force_off = changes.get("force_off")
    validate_force_switches(force_on, force_off)
    if force_on is not None:
        updates["force_on"] = bool(force_on)
        if force_on:
            updates["force_off"] = False
    if force_off is not None:
        updates["force_off"] = bool(force_off)
        if force_off:
            updates["force_on"] = False

    for field in _LIST_FIELDS:
        if field in changes and changes[field] is not None:
            updates[field] = normalize_identifiers(changes[field])

    rollout = None
    if "percentage" in changes and changes["percentage"] is not None:
        rollout = validate_rollout(changes["percentage"])

    with flag_write_lock(flag.key):
        for field, value in updates.items():
            setattr(flag, field, value)

        if rollout is not None:
            config = get_targeting_config(db, flag, settings.DEFAULT_ENVIRONMENT)
            if config is None:
                config = _attach_targeting_config(flag, settings.DEFAULT_ENVIRONMENT)
            config.rollout = rollout

        _commit(db, conflict_message=f"Flag {flag.key} was modified concurrently")
    db.refresh(flag)
    logger.info(
        "flag.updated",
        extra={"flag_key": flag.key, "flag_id": flag.id, "version": flag.version},
    )
    return flag


def archive_flag(db: Session, flag: FeatureFlag) -> FeatureFlag:
    if flag.status == FlagStatus.ARCHIVED.value:
        return flag
    with flag_write_lock(flag.key):
        flag.status = FlagStatus.ARCHIVED.value
        _commit(db, conflict_message=f"Flag {flag.key} was modified concurrently")
    db.refresh(flag)
    logger.info("flag.archived", extra={"flag_key": flag.key, "flag_id": flag.id})
    return flag


def upsert_targeting_config(
    db: Session,
    flag: FeatureFlag,
    environment: str,
    changes: dict[str, Any],
    *,
    expected_version: int | None = None,
) -> FlagTargetingConfig:
    validate_environment(environment)
    updates: dict[str, Any] = {}
    if "active" in changes and changes["active"] is not None:
        updates["active"] = bool(changes["active"])
    if "tenants" in changes and changes["tenants"] is not None:
        updates["tenants"] = normalize_tenants(changes["tenants"])
    if "rules" in changes and changes["rules"] is not None:
        updates["rules"] = validate_rules(changes["rules"])
    if "rollout" in changes and changes["rollout"] is not None:
        updates["rollout"] = validate_rollout(changes["rollout"])
    if "rollout_key" in changes and changes["rollout_key"] is not None:
        updates["rollout_key"] = validate_required_text(changes["rollout_key"], "rollout_key")
    if "schedule" in changes:
        schedule = changes["schedule"] or {}
        start = normalize_ts(schedule.get("start"))
        end = normalize_ts(schedule.get("end"))
        if start is not None and end is not None and end < start:
            raise InvalidArgument("schedule end must not be before start", field="schedule")
        updates["schedule_start"] = start
        updates["schedule_end"] = end

    with flag_write_lock(flag.key):
        config = get_targeting_config(db, flag, environment)
        if config is None:
            config = _attach_targeting_config(flag, environment)
        elif expected_version is not None and expected_version != config.version:
            raise Conflict(f"Targeting for {flag.key}/{environment} was modified concurrently")

        for field, value in updates.items():
            setattr(config, field, value)

        _commit(db, conflict_message=f"Targeting for {flag.key}/{environment} was modified concurrently")
    db.refresh(config)
    logger.info(
        "flag.targeting_updated",
        extra={"flag_key": flag.key, "environment": environment, "version": config.version},
    )
    return config


def toggle_targeting_tenant(
    db: Session,
    flag: FeatureFlag,
    environment: str,
    tenant: str,
) -> FlagTargetingConfig:
    if tenant not in settings.TENANT_LABELS:
        raise InvalidArgument(f"Unknown tenant: {tenant}", field="tenant")
    config = get_targeting_config(db, flag, environment)
    current = list(config.tenants or []) if config is not None else list(settings.TENANT_LABELS)
    return upsert_targeting_config(
        db,
        flag,
        environment,
        {"tenants": toggle_tenant(current, tenant)},
    )
