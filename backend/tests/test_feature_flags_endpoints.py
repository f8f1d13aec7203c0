import os
from uuid import uuid4

from fastapi.testclient import TestClient
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from flagvault.main import app
import flagvault.core.db as db_module
from flagvault.core.db import Base
from flagvault.flags.hashing import bucket


client = TestClient(app)

ADMIN = {"X-User-ID": "admin-1", "X-User-Email": "admin@familycirclesecure.com", "X-User-Role": "Admin"}
MEMBER = {"X-User-ID": "u1", "X-User-Email": "x@co.com", "X-User-Tenant": "Public", "X-User-Role": "User"}


def _setup_db(db_url: str):
    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    db_module.engine = engine
    db_module.SessionLocal = SessionLocal
    Base.metadata.create_all(bind=engine)
    return SessionLocal


def _fresh_db():
    _setup_db(f"sqlite:///./flags_{uuid4().hex}.db")


def _create(key="new-billing-ui", **body):
    payload = {"key": key, "name": key.replace("-", " ").title()}
    payload.update(body)
    resp = client.post("/flags", json=payload, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_create_and_fetch_flag():
    _fresh_db()
    created = _create(targeting={"percentage": 20, "allowDomains": ["@co.com"]})
    assert created["version"] == 1
    assert created["targeting"]["percentage"] == 20
    assert created["targeting"]["allowDomains"] == ["@co.com"]

    resp = client.get(f"/flags/{created['id']}", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["key"] == "new-billing-ui"

    listing = client.get("/flags", headers=ADMIN)
    assert [flag["key"] for flag in listing.json()] == ["new-billing-ui"]


def test_admin_routes_require_admin_role():
    _fresh_db()
    assert client.get("/flags", headers=MEMBER).status_code == 403
    assert client.get("/flags").status_code == 403
    resp = client.post("/flags", json={"key": "k", "name": "n"}, headers=MEMBER)
    assert resp.status_code == 403


def test_duplicate_key_is_a_conflict():
    _fresh_db()
    _create()
    resp = client.post("/flags", json={"key": "new-billing-ui", "name": "Again"}, headers=ADMIN)
    assert resp.status_code == 409
    assert resp.headers["X-Error-Code"] == "conflict"
    assert resp.json()["code"] == "conflict"


def test_missing_name_is_invalid_argument():
    _fresh_db()
    resp = client.post("/flags", json={"key": "k"}, headers=ADMIN)
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "invalid_argument"
    assert body["field"] == "name"


def test_unknown_flag_is_not_found():
    _fresh_db()
    resp = client.get("/flags/does-not-exist", headers=ADMIN)
    assert resp.status_code == 404
    assert resp.headers["X-Error-Code"] == "not_found"


def test_patch_rejects_key_change_and_stale_version():
    _fresh_db()
    created = _create()
    resp = client.patch(f"/flags/{created['id']}", json={"key": "renamed"}, headers=ADMIN)
    assert resp.status_code == 400

    resp = client.patch(f"/flags/{created['id']}", json={"force_on": True, "version": 1}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["force_on"] is True
    assert resp.json()["version"] == 2

    resp = client.patch(f"/flags/{created['id']}", json={"force_off": True, "version": 1}, headers=ADMIN)
    assert resp.status_code == 409


def test_patch_updates_targeting_summary():
    _fresh_db()
    created = _create()
    resp = client.patch(
        f"/flags/{created['id']}",
        json={"targeting": {"percentage": 75, "blockUserIds": ["bad@co.com"]}},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    assert resp.json()["targeting"]["percentage"] == 75
    assert resp.json()["targeting"]["blockUserIds"] == ["bad@co.com"]


def test_archive_flag_turns_it_off():
    _fresh_db()
    created = _create(force_on=True)
    resp = client.post(f"/flags/{created['id']}/archive", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["status"] == "archived"

    preview = client.post("/flags/new-billing-ui/preview", json={"identifier": "x@co.com"}, headers=ADMIN)
    assert preview.json()["reason"] == "archived"
    assert preview.json()["enabled"] is False


def test_targeting_round_trip():
    _fresh_db()
    _create()
    body = {
        "config": {
            "active": True,
            "tenants": ["Family", "Staff"],
            "rules": [{"type": "attribute", "attr": "user.email", "op": "endsWith", "val": "@co.com"}],
            "rollout": 25,
            "rolloutKey": "user.id",
            "schedule": {"start": "2026-01-01T00:00:00Z", "end": None},
        }
    }
    resp = client.put("/flags/new-billing-ui/targeting/staging", json=body, headers=ADMIN)
    assert resp.status_code == 200, resp.text
    stored = resp.json()
    assert stored["flagKey"] == "new-billing-ui"
    assert stored["environment"] == "staging"
    assert stored["config"]["tenants"] == ["Family", "Staff"]
    assert stored["config"]["rules"][0]["op"] == "endsWith"
    assert stored["config"]["version"] == 1

    fetched = client.get("/flags/new-billing-ui/targeting/staging", headers=ADMIN).json()
    assert fetched["config"]["rollout"] == 25
    assert fetched["config"]["schedule"]["start"].startswith("2026-01-01T00:00:00")

    stale = dict(body, version=5)
    assert client.put("/flags/new-billing-ui/targeting/staging", json=stale, headers=ADMIN).status_code == 409


def test_targeting_rejects_bad_input():
    _fresh_db()
    _create()
    unknown_env = client.get("/flags/new-billing-ui/targeting/qa", headers=ADMIN)
    assert unknown_env.status_code == 400
    assert unknown_env.json()["field"] == "environment"

    empty_tenants = {"config": {"tenants": [], "rollout": 10}}
    resp = client.put("/flags/new-billing-ui/targeting/prod", json=empty_tenants, headers=ADMIN)
    assert resp.status_code == 400

    bad_segment = {"config": {"rules": [{"type": "segment", "segmentId": "nope"}]}}
    resp = client.put("/flags/new-billing-ui/targeting/prod", json=bad_segment, headers=ADMIN)
    assert resp.status_code == 400

    too_high = {"config": {"rollout": 101}}
    resp = client.put("/flags/new-billing-ui/targeting/prod", json=too_high, headers=ADMIN)
    assert resp.status_code == 400
    assert resp.json()["field"] == "rollout"


def test_tenant_toggle_endpoint():
    _fresh_db()
    _create()
    resp = client.post("/flags/new-billing-ui/targeting/prod/tenants/Public", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["config"]["tenants"] == ["Family", "Staff"]
    resp = client.post("/flags/new-billing-ui/targeting/prod/tenants/Public", headers=ADMIN)
    assert resp.json()["config"]["tenants"] == ["Family", "Staff", "Public"]


def test_preview_matches_rollout_hash():
    _fresh_db()
    _create()
    body = {
        "config": {
            "rules": [{"type": "attribute", "attr": "user.email", "op": "endsWith", "val": "@co.com"}],
            "rollout": 25,
        }
    }
    assert client.put("/flags/new-billing-ui/targeting/prod", json=body, headers=ADMIN).status_code == 200
    resp = client.post(
        "/flags/new-billing-ui/preview",
        json={"identifier": "x@co.com", "environment": "prod"},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    result = resp.json()
    assert result["bucket"] == bucket("x@co.com")
    assert result["enabled"] is (bucket("x@co.com") < 25)


def test_preview_unknown_flag_is_not_found():
    _fresh_db()
    resp = client.post("/flags/missing/preview", json={"identifier": "x@co.com"}, headers=ADMIN)
    assert resp.status_code == 404


def test_my_flags_for_the_calling_user():
    _fresh_db()
    _create("always-on", force_on=True)
    _create("always-off", force_off=True)
    _create("blocked-for-u1", force_on=True, targeting={"blockUserIds": ["u1"]})

    resp = client.get("/flags/mine", headers=MEMBER)
    assert resp.status_code == 200
    assert resp.json() == {"always-off": False, "always-on": True, "blocked-for-u1": False}
    assert resp.json()["always-on"] is True


def test_my_flags_requires_identity():
    _fresh_db()
    assert client.get("/flags/mine").status_code == 401


def test_my_flags_preview_header_is_admin_only():
    _fresh_db()
    _create("staff-only")
    body = {"config": {"tenants": ["Staff"], "rollout": 100}}
    assert client.put("/flags/staff-only/targeting/prod", json=body, headers=ADMIN).status_code == 200

    denied = client.get("/flags/mine", headers={**MEMBER, "X-Preview-User": "ops@familycirclesecure.com"})
    assert denied.status_code == 403

    resp = client.get("/flags/mine", headers={**ADMIN, "X-Preview-User": "ops@familycirclesecure.com"})
    assert resp.json() == {"staff-only": True}
    resp = client.get("/flags/mine", headers={**ADMIN, "X-Preview-User": "someone@gmail.com"})
    assert resp.json() == {"staff-only": False}


def test_segments_listing():
    _fresh_db()
    resp = client.get("/flags/segments", headers=ADMIN)
    assert resp.status_code == 200
    assert {segment["id"] for segment in resp.json()} == {
        "beta_testers",
        "internal_staff",
        "family_portal",
        "high_value",
    }


def test_metrics_report_flag_evaluations():
    _fresh_db()
    _create("metered-flag", force_on=True)
    client.get("/flags/mine", headers=MEMBER)
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "flag_evaluations_total" in resp.text
    evaluations = REGISTRY.get_sample_value(
        "flag_evaluations_total",
        {"flag_key": "metered-flag", "environment": "prod", "reason": "forced-on"},
    )
    assert evaluations is not None and evaluations >= 1


def test_ping():
    resp = client.get("/ping")
    assert resp.status_code == 200
    assert resp.json() == {"message": "pong"}
