"""Flag registries: where the engine gets its snapshots from.

A registry publishes whole snapshots by swapping one reference. Readers
grab the current reference once and evaluate against it, so they never
block on writers and never see a mix of old and new configuration.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, Protocol

from sqlalchemy.orm import Session

from flagvault.core.config import settings
from flagvault.core.metrics import record_snapshot_load
from flagvault.core.time import utcnow
from flagvault.flags.errors import Conflict, FlagNotFound, InvalidArgument
from flagvault.flags.models import Flag, FlagSnapshot, FlagStatus, Schedule, TargetingConfig
from flagvault.flags.rules import rule_from_payload


logger = logging.getLogger(__name__)

_REVISIONS = itertools.count(1)


def next_revision() -> int:
    return next(_REVISIONS)


class FlagRegistry(Protocol):
    def snapshot(self) -> FlagSnapshot:
        ...


class KeyedLocks:
    """One lock per flag key so writes to a key are serialized."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield


_WRITE_LOCKS = KeyedLocks()


def flag_write_lock(flag_key: str):
    return _WRITE_LOCKS.hold(flag_key)


class InMemoryFlagRegistry:
    """Registry held entirely in process memory, for embedding and tests."""

    def __init__(
        self,
        flags: list[Flag] | None = None,
        configs: list[tuple[str, TargetingConfig]] | None = None,
    ) -> None:
        self._publish_lock = threading.Lock()
        self._locks = KeyedLocks()
        self._snapshot = FlagSnapshot.build(list(flags or []), list(configs or []), revision=next_revision())

    def snapshot(self) -> FlagSnapshot:
        return self._snapshot

    def _publish(self, flags: dict[str, Flag], configs: dict[tuple[str, str], TargetingConfig]) -> None:
        self._snapshot = FlagSnapshot.build(
            list(flags.values()),
            [(flag_key, config) for (flag_key, _env), config in configs.items()],
            revision=next_revision(),
        )

    def create_flag(self, flag: Flag) -> Flag:
        with self._locks.hold(flag.key), self._publish_lock:
            current = self._snapshot
            if flag.key in current.flags:
                raise Conflict(f"Flag key already exists: {flag.key}")
            if flag.force_on and flag.force_off:
                raise InvalidArgument("force_on and force_off are mutually exclusive", field="force_on")
            stored = replace(flag, version=1, updated_at=flag.updated_at or utcnow())
            flags = dict(current.flags)
            flags[flag.key] = stored
            self._publish(flags, dict(current.configs))
            return stored

    def update_flag(self, flag_key: str, *, expected_version: int | None = None, **changes) -> Flag:
        with self._locks.hold(flag_key), self._publish_lock:
            current = self._snapshot
            existing = current.get_flag(flag_key)
            if existing is None:
                raise FlagNotFound(f"Flag not found: {flag_key}")
            if expected_version is not None and expected_version != existing.version:
                raise Conflict(f"Flag {flag_key} was modified concurrently")
            for frozen_field in ("id", "key", "version", "updated_at"):
                changes.pop(frozen_field, None)
            if changes.get("force_on") and changes.get("force_off"):
                raise InvalidArgument("force_on and force_off are mutually exclusive", field="force_on")
            if changes.get("force_on"):
                changes["force_off"] = False
            elif changes.get("force_off"):
                changes["force_on"] = False
            for list_field in ("allow_user_ids", "block_user_ids", "allow_domains"):
                if list_field in changes:
                    changes[list_field] = frozenset(changes[list_field] or ())
            updated = replace(existing, **changes, version=existing.version + 1, updated_at=utcnow())
            flags = dict(current.flags)
            flags[flag_key] = updated
            self._publish(flags, dict(current.configs))
            return updated

    def put_config(
        self,
        flag_key: str,
        config: TargetingConfig,
        *,
        expected_version: int | None = None,
    ) -> TargetingConfig:
        with self._locks.hold(flag_key), self._publish_lock:
            current = self._snapshot
            if flag_key not in current.flags:
                raise FlagNotFound(f"Flag not found: {flag_key}")
            existing = current.get_config(flag_key, config.environment)
            if existing is not None and expected_version is not None and expected_version != existing.version:
                raise Conflict(f"Targeting for {flag_key}/{config.environment} was modified concurrently")
            version = existing.version + 1 if existing is not None else 1
            stored = replace(config, version=version, updated_at=utcnow())
            configs = dict(current.configs)
            configs[(flag_key, config.environment)] = stored
            self._publish(dict(current.flags), configs)
            return stored


# Snapshot cache for the database registry, keyed by database URL so
# separate test databases never share a snapshot.
_SNAPSHOT_CACHE: dict[str, tuple[float, FlagSnapshot]] = {}
_SNAPSHOT_CACHE_LOCK = threading.Lock()
# Bumped on every invalidation; a load that straddles a bump is not cached.
_CACHE_GENERATION = 0


def _cache_key(db: Session) -> str:
    bind = db.get_bind()
    if bind is None:
        return ""
    return str(bind.url)


def invalidate_snapshot_cache() -> None:
    global _CACHE_GENERATION
    with _SNAPSHOT_CACHE_LOCK:
        _CACHE_GENERATION += 1
        _SNAPSHOT_CACHE.clear()


def flag_from_row(row) -> Flag:
    return Flag(
        id=str(row.id),
        key=row.key,
        name=row.name,
        description=row.description,
        status=FlagStatus(row.status),
        force_on=bool(row.force_on),
        force_off=bool(row.force_off),
        allow_user_ids=frozenset(row.allow_user_ids or []),
        block_user_ids=frozenset(row.block_user_ids or []),
        allow_domains=frozenset(row.allow_domains or []),
        updated_at=row.updated_at,
        version=row.version or 1,
    )


def config_from_row(row) -> TargetingConfig:
    return TargetingConfig(
        environment=row.environment,
        active=bool(row.active),
        tenants=frozenset(row.tenants or []),
        rules=tuple(rule_from_payload(item) for item in (row.rules or [])),
        rollout=int(row.rollout or 0),
        rollout_key=row.rollout_key or "",
        schedule=Schedule(start=row.schedule_start, end=row.schedule_end),
        updated_at=row.updated_at,
        version=row.version or 1,
    )


def load_snapshot(db: Session) -> FlagSnapshot:
    from flagvault.models.feature_flags import FeatureFlag, FlagTargetingConfig

    started = time.monotonic()
    flag_rows = db.query(FeatureFlag).order_by(FeatureFlag.key).all()
    keys_by_id = {row.id: row.key for row in flag_rows}
    config_rows = db.query(FlagTargetingConfig).all()
    snapshot = FlagSnapshot.build(
        [flag_from_row(row) for row in flag_rows],
        [
            (keys_by_id[row.flag_id], config_from_row(row))
            for row in config_rows
            if row.flag_id in keys_by_id
        ],
        revision=next_revision(),
    )
    duration_ms = (time.monotonic() - started) * 1000.0
    record_snapshot_load("database", duration_ms)
    logger.debug(
        "flags.snapshot_loaded",
        extra={
            "revision": snapshot.revision,
            "flag_count": len(snapshot.flags),
            "duration_ms": round(duration_ms, 2),
        },
    )
    return snapshot


class DatabaseFlagRegistry:
    """Builds snapshots from the SQL tables and reuses them for a short TTL."""

    def __init__(self, db: Session, *, ttl_seconds: int | None = None) -> None:
        self._db = db
        self._ttl = settings.FLAG_SNAPSHOT_TTL_SECONDS if ttl_seconds is None else ttl_seconds

    def snapshot(self) -> FlagSnapshot:
        key = _cache_key(self._db)
        if self._ttl > 0:
            cached = _SNAPSHOT_CACHE.get(key)
            if cached is not None and time.monotonic() <= cached[0]:
                return cached[1]
        generation = _CACHE_GENERATION
        snapshot = load_snapshot(self._db)
        if self._ttl > 0:
            with _SNAPSHOT_CACHE_LOCK:
                if generation == _CACHE_GENERATION:
                    _SNAPSHOT_CACHE[key] = (time.monotonic() + self._ttl, snapshot)
        return snapshot
