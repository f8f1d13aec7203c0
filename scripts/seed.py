"""
Deterministic seed script for dev/demo environments.

Creates a handful of flags with targeting in each environment. Running it
twice is safe: flags that already exist are left alone.
"""

from __future__ import annotations

import os
import sys

from flagvault.core.db import SessionLocal, Base, engine
from flagvault.crud.feature_flags import create_flag, get_flag_by_key, upsert_targeting_config
import flagvault.models  # noqa: F401


DEMO_FLAGS = [
    {
        "key": "new-billing-ui",
        "name": "New billing UI",
        "description": "Redesigned billing and invoices screen",
        "force_off": True,
        "targeting": {},
    },
    {
        "key": "document-sharing-v2",
        "name": "Document sharing v2",
        "description": "Share folders with family members by link",
        "percentage": 25,
        "targeting": {
            "staging": {"rollout": 100, "tenants": ["Family", "Staff"]},
            "dev": {"rollout": 100},
        },
    },
    {
        "key": "vault-audit-timeline",
        "name": "Vault audit timeline",
        "description": "Per-document access history",
        "allow_domains": ["@familycirclesecure.com"],
        "targeting": {
            "prod": {
                "rules": [{"type": "segment", "segmentId": "high_value"}],
                "rollout": 50,
            },
        },
    },
]


def ensure_not_production():
    env = os.getenv("ENV", "").lower()
    allow_prod = os.getenv("ALLOW_SEED_PROD", "0").lower() in {"1", "true", "yes"}
    if env == "production" and not allow_prod:
        print("Refusing to seed in production. Set ALLOW_SEED_PROD=1 to override.", file=sys.stderr)
        sys.exit(1)


def seed():
    ensure_not_production()
    Base.metadata.create_all(bind=engine)

    created = 0
    with SessionLocal() as db:
        for demo in DEMO_FLAGS:
            if get_flag_by_key(db, demo["key"]) is not None:
                continue
            flag = create_flag(
                db,
                key=demo["key"],
                name=demo["name"],
                description=demo.get("description"),
                force_off=demo.get("force_off", False),
                allow_domains=demo.get("allow_domains"),
                percentage=demo.get("percentage"),
                created_by="seed",
            )
            for environment, changes in demo["targeting"].items():
                upsert_targeting_config(db, flag, environment, changes)
            created += 1
    print(f"Seed complete. Created {created} flag(s).")


if __name__ == "__main__":
    seed()
