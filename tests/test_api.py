import hashlib
import hmac
import json
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from tutorpay.config import LedgerSettings, get_current_time
from tutorpay.earnings import record_earning
from tutorpay.main import create_app
from tutorpay.models import RetentionStatus, TeacherEarning

from conftest import T0

ADMIN = {"X-Admin-Token": "test_admin_token"}


def signed(event):
    body = json.dumps(event).encode()
    signature = hmac.new(b"webhook_secret", body, hashlib.sha256).hexdigest()
    return body, {"X-Signature": signature, "Content-Type": "application/json"}


@pytest_asyncio.fixture
async def client(rail):
    app = create_app(
        rail=rail,
        settings=LedgerSettings(auto_demotion_enabled=False),
        webhook_secret="webhook_secret",
        manage_lifecycle=False,
    )
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_health_check(client):
    resp = await client.get("/health")
    assert resp.status == 200
    assert await resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_admin_routes_require_token(client):
    resp = await client.get("/admin/teachers/1/earnings")
    assert resp.status == 401

    resp = await client.get("/admin/teachers/1/earnings", headers={"X-Admin-Token": "wrong"})
    assert resp.status == 401


@pytest.mark.asyncio
async def test_register_and_ingest_lesson(client):
    resp = await client.post("/admin/teachers", json={
        "name": "Alice", "tier": "skilled", "payout_account_id": "acct_alice", "payout_account_verified": True,
    }, headers=ADMIN)
    assert resp.status == 201
    teacher = await resp.json()
    assert teacher["current_tier"] == "skilled"

    body, headers = signed({
        "lesson_id": "L-100",
        "teacher_id": teacher["id"],
        "duration_minutes": 60,
        "scheduled_time": (get_current_time() - timedelta(days=1)).isoformat(),
        "student_id": "s-1",
        "rating": 4.8,
    })
    resp = await client.post("/webhooks/lesson-completed", data=body, headers=headers)
    assert resp.status == 200
    earning = (await resp.json())["earning"]
    assert earning["amount_earned"] == "8.00"
    assert earning["status"] == "held"

    # Duplicate delivery is accepted and changes nothing
    resp = await client.post("/webhooks/lesson-completed", data=body, headers=headers)
    assert resp.status == 200
    assert await TeacherEarning.all().count() == 1

    resp = await client.get(f"/admin/teachers/{teacher['id']}/earnings", headers=ADMIN)
    summary = await resp.json()
    assert summary["totals"]["held"] == "8.00"
    assert summary["unpaid_balance"] == "8.00"


@pytest.mark.asyncio
async def test_lesson_webhook_rejects_bad_signature(client, make_teacher):
    teacher = await make_teacher()
    body, headers = signed({
        "lesson_id": "L-1", "teacher_id": teacher.id, "duration_minutes": 60, "scheduled_time": T0.isoformat(),
    })
    headers["X-Signature"] = "0" * 64

    resp = await client.post("/webhooks/lesson-completed", data=body, headers=headers)

    assert resp.status == 401
    assert await TeacherEarning.all().count() == 0


@pytest.mark.asyncio
async def test_lesson_webhook_errors(client):
    body, headers = signed({"lesson_id": "L-1", "teacher_id": 999, "duration_minutes": 60, "scheduled_time": T0.isoformat()})
    resp = await client.post("/webhooks/lesson-completed", data=body, headers=headers)
    assert resp.status == 404
    assert (await resp.json())["code"] == "NotFoundError"

    body, headers = signed({"lesson_id": "L-1"})
    resp = await client.post("/webhooks/lesson-completed", data=body, headers=headers)
    assert resp.status == 400
    assert (await resp.json())["details"]["missing"] == ["teacher_id", "duration_minutes", "scheduled_time"]


@pytest.mark.asyncio
async def test_assign_tier_endpoint(client, make_teacher):
    teacher = await make_teacher()

    resp = await client.post("/admin/tiers/assign", json={
        "teacher_id": teacher.id, "tier": "grandmaster", "reason": "typo",
    }, headers=ADMIN)
    assert resp.status == 400
    assert (await resp.json())["code"] == "ValidationError"

    resp = await client.post("/admin/tiers/assign", json={
        "teacher_id": teacher.id, "tier": "master", "reason": "Exceptional", "disable_auto_progression": True,
    }, headers=ADMIN)
    assert resp.status == 200
    data = await resp.json()
    assert data["new_tier"] == "master"
    assert data["new_hourly_rate"] == "10.00"
    assert data["manual_override"] is True


@pytest.mark.asyncio
async def test_tier_application_flow(client, make_teacher):
    teacher = await make_teacher(tier="skilled")
    teacher.hours_taught = 260
    teacher.average_rating = 4.6
    teacher.retention_rate = 0.72
    teacher.retention_sample_size = 12
    teacher.retention_status = RetentionStatus.VALID
    await teacher.save()

    resp = await client.post("/admin/tier-applications", json={
        "teacher_id": teacher.id, "requested_tier": "expert", "evidence": {"language_proficiency": "native"},
    }, headers=ADMIN)
    assert resp.status == 201
    application = await resp.json()
    assert application["status"] == "under_review"

    resp = await client.post("/admin/tier-applications", json={
        "teacher_id": teacher.id, "requested_tier": "master",
    }, headers=ADMIN)
    assert resp.status == 409

    resp = await client.post(f"/admin/tier-applications/{application['id']}/review", json={
        "decision": "approve", "notes": "Welcome", "actor": "reviewer",
    }, headers=ADMIN)
    assert resp.status == 200
    reviewed = await resp.json()
    assert reviewed["status"] == "approved"
    assert reviewed["granted_tier"] == "expert"
    assert Decimal(reviewed["granted_rate"]) == Decimal("8.50")


@pytest.mark.asyncio
async def test_settlement_endpoint(client, rail, make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher(tier="skilled")
    lesson = await make_lesson(teacher)
    await record_earning(lesson, registry, settings, now=T0 + timedelta(days=8))

    resp = await client.post("/admin/settlement/run", headers=ADMIN)

    assert resp.status == 200
    data = await resp.json()
    assert data["succeeded"] == 1
    assert data["total_transferred"] == "8.00"
    assert data["results"][0]["status"] == "completed"
    assert len(rail.calls) == 1


@pytest.mark.asyncio
async def test_teacher_payout_endpoint(client, make_teacher):
    teacher = await make_teacher()

    resp = await client.post(f"/admin/teachers/{teacher.id}/payout", headers=ADMIN)
    assert resp.status == 400

    resp = await client.post("/admin/teachers/abc/payout", headers=ADMIN)
    assert resp.status == 400

    resp = await client.post("/admin/teachers/999/payout", headers=ADMIN)
    assert resp.status == 404


@pytest.mark.asyncio
async def test_payout_account_endpoint(client, make_teacher):
    teacher = await make_teacher(account=None, verified=False)

    resp = await client.put(f"/admin/teachers/{teacher.id}/payout-account", json={"account_id": "acct_new"}, headers=ADMIN)

    assert resp.status == 200
    assert (await resp.json())["payout_account_verified"] is True


@pytest.mark.asyncio
async def test_upsert_tier_endpoint(client):
    resp = await client.put("/admin/tiers/skilled", json={
        "level": 3, "min_hours_taught": 150, "min_rating": 4.2, "min_retention_rate": 0.65,
        "teacher_hourly_rate": "8.25", "student_hourly_price": "15.00",
    }, headers=ADMIN)
    assert resp.status == 200
    assert (await resp.json())["teacher_hourly_rate"] == "8.25"

    resp = await client.put("/admin/tiers/skilled", json={
        "level": 3, "teacher_hourly_rate": "1.00", "student_hourly_price": "15.00",
    }, headers=ADMIN)
    assert resp.status == 400


@pytest.mark.asyncio
async def test_reports(client, make_teacher, make_lesson, registry, settings):
    teacher = await make_teacher()
    await record_earning(await make_lesson(teacher), registry, settings, now=T0)

    resp = await client.get("/admin/reports/revenue", params={
        "start": (T0 - timedelta(days=1)).isoformat(), "end": (T0 + timedelta(days=1)).isoformat(),
    }, headers=ADMIN)
    assert resp.status == 200
    assert (await resp.json())["total_lesson_revenue"] == "15.00"

    resp = await client.get("/admin/reports/revenue", headers=ADMIN)
    assert resp.status == 400

    resp = await client.get("/admin/reports/metrics", headers=ADMIN)
    assert resp.status == 200
    assert (await resp.json())["counts"]["earning_recorded"] == 1
