import asyncio
import json
import logging
from dataclasses import asdict
from functools import partial

import aiohttp_cors
from aiohttp import web
from dateutil.parser import isoparse

from .applications import review_application, submit_tier_application
from .config import (
    CLEARING_INTERVAL, LESSON_WEBHOOK_SECRET, LOG_LEVEL, NOTIFICATION_INTERVAL,
    SETTLEMENT_INTERVAL, STALE_BATCH_INTERVAL, UTC, WEBAPP_HOST, WEBAPP_PORT, load_settings
)
from .db import close_db, init_db
from .earnings import (
    clear_held_earnings, get_platform_revenue, get_teacher_earnings_summary, ingest_completed_lesson
)
from .errors import LedgerError, ValidationError
from .metrics import get_metrics_report
from .models import TeacherEarning
from .payment import PaymentRail
from .payouts import process_teacher_payout, run_settlement_cycle, set_payout_account
from .progression import assign_tier, register_teacher
from .security import require_admin, start_security_tasks, verify_webhook_signature, webhook_security_middleware
from .startup import run_startup
from .tasks import scheduled_tasks
from .tiers import load_tier_registry, upsert_tier

logger = logging.getLogger(__name__)

SETTINGS = web.AppKey("settings")
RAIL = web.AppKey("rail")
WEBHOOK_SECRET = web.AppKey("webhook_secret")
BACKGROUND_TASKS = web.AppKey("background_tasks", list)

dumps = partial(json.dumps, default=str)


def json_response(data, status=200):
    return web.json_response(data, status=status, dumps=dumps)


def earning_to_dict(earning: TeacherEarning) -> dict:
    return {
        "id": earning.id,
        "lesson_id": earning.lesson_id,
        "teacher_id": earning.teacher_id,
        "tier": earning.tier,
        "teacher_hourly_rate": earning.teacher_hourly_rate,
        "amount_earned": earning.amount_earned,
        "platform_fee": earning.platform_fee,
        "total_lesson_cost": earning.total_lesson_cost,
        "currency": earning.currency,
        "status": earning.status.value,
        "clear_at": earning.clear_at,
        "payout_batch_id": earning.payout_batch_id,
    }


async def read_json(request) -> dict:
    try:
        data = await request.json()
    except ValueError:
        raise ValidationError("Request body must be valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def int_param(value, name) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


@web.middleware
async def error_middleware(request, handler):
    """Translate ledger errors into JSON responses."""
    try:
        return await handler(request)
    except LedgerError as e:
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed: {e.message}")
        else:
            logger.info(f"{request.method} {request.path} rejected: {e.message}")
        return json_response(e.to_dict(), status=e.status_code)


# Health check endpoint
async def health_check(request):
    """Simple health check endpoint for monitoring"""
    return web.json_response({"status": "ok"})


async def handle_lesson_completed(request):
    """
    Handle lesson-completed events from the booking service
    """
    body = await request.read()
    signature = request.headers.get("X-Signature", "")
    if not verify_webhook_signature(body, signature, request.app[WEBHOOK_SECRET]):
        logger.warning(f"Invalid lesson webhook signature from {request.remote}")
        return web.json_response({"error": "Invalid signature"}, status=401)

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("Request body must be valid JSON")

    registry = await load_tier_registry()
    earning = await ingest_completed_lesson(event, registry, request.app[SETTINGS])
    return json_response({"status": "ok", "earning": earning_to_dict(earning)})


@require_admin
async def handle_upsert_tier(request):
    data = await read_json(request)
    data["tier"] = request.match_info["tier"]
    tier = await upsert_tier(data)
    return json_response(tier.as_dict())


@require_admin
async def handle_register_teacher(request):
    data = await read_json(request)
    if not data.get("name"):
        raise ValidationError("name is required")
    teacher = await register_teacher(
        data["name"],
        telegram_id=data.get("telegram_id"),
        payout_account_id=data.get("payout_account_id"),
        payout_account_verified=bool(data.get("payout_account_verified", False)),
        tier=data.get("tier"),
        actor=request.headers.get("X-Admin-Actor"),
    )
    return json_response({"id": teacher.id, "name": teacher.name, "current_tier": teacher.current_tier}, status=201)


@require_admin
async def handle_payout_account(request):
    teacher_id = int_param(request.match_info["teacher_id"], "teacher_id")
    data = await read_json(request)
    teacher = await set_payout_account(teacher_id, data.get("account_id"), bool(data.get("verified", True)))
    return json_response({
        "id": teacher.id,
        "payout_account_id": teacher.payout_account_id,
        "payout_account_verified": teacher.payout_account_verified,
    })


@require_admin
async def handle_assign_tier(request):
    data = await read_json(request)
    if "teacher_id" not in data or not data.get("tier"):
        raise ValidationError("teacher_id and tier are required")
    assignment = await assign_tier(
        int_param(data["teacher_id"], "teacher_id"),
        data["tier"],
        data.get("reason") or "Manual tier assignment",
        disable_auto_progression=bool(data.get("disable_auto_progression", False)),
        actor=data.get("actor") or request.headers.get("X-Admin-Actor"),
        application_id=data.get("application_id"),
    )
    return json_response(asdict(assignment))


@require_admin
async def handle_submit_application(request):
    data = await read_json(request)
    if "teacher_id" not in data or not data.get("requested_tier"):
        raise ValidationError("teacher_id and requested_tier are required")
    application = await submit_tier_application(
        int_param(data["teacher_id"], "teacher_id"),
        data["requested_tier"],
        data.get("evidence") or {},
    )
    return json_response({
        "id": application.id,
        "teacher_id": application.teacher_id,
        "requested_tier": application.requested_tier,
        "status": application.status.value,
        "reason": application.review_notes,
    }, status=201)


@require_admin
async def handle_review_application(request):
    application_id = int_param(request.match_info["application_id"], "application_id")
    data = await read_json(request)
    application = await review_application(
        application_id,
        data.get("decision"),
        notes=data.get("notes"),
        actor=data.get("actor") or request.headers.get("X-Admin-Actor"),
    )
    return json_response({
        "id": application.id,
        "status": application.status.value,
        "granted_tier": application.granted_tier,
        "granted_rate": application.granted_rate,
    })


@require_admin
async def handle_run_settlement(request):
    settings = request.app[SETTINGS]
    cleared = await clear_held_earnings()
    summary = await run_settlement_cycle(request.app[RAIL], settings)
    return json_response({"cleared": cleared, **asdict(summary)})


@require_admin
async def handle_teacher_payout(request):
    teacher_id = int_param(request.match_info["teacher_id"], "teacher_id")
    result = await process_teacher_payout(teacher_id, request.app[RAIL], request.app[SETTINGS])
    return json_response(asdict(result))


@require_admin
async def handle_teacher_earnings(request):
    teacher_id = int_param(request.match_info["teacher_id"], "teacher_id")
    return json_response(await get_teacher_earnings_summary(teacher_id))


@require_admin
async def handle_revenue_report(request):
    try:
        start = isoparse(request.query["start"])
        end = isoparse(request.query["end"])
    except KeyError:
        raise ValidationError("start and end query parameters are required")
    except ValueError:
        raise ValidationError("start and end must be ISO 8601 timestamps")
    if start.tzinfo is None:
        start = UTC.localize(start)
    if end.tzinfo is None:
        end = UTC.localize(end)
    return json_response(await get_platform_revenue(start, end))


@require_admin
async def handle_metrics_report(request):
    report = await get_metrics_report()
    return json_response(report)


async def periodic_task_runner(name, interval):
    """Run a scheduled task periodically"""
    while True:
        await scheduled_tasks[name]()
        await asyncio.sleep(interval)


async def on_startup(app):
    """Execute startup tasks"""
    await init_db()
    app[BACKGROUND_TASKS].append(await start_security_tasks())
    for name, interval in (
        ("clear_held_earnings", CLEARING_INTERVAL),
        ("settlement", SETTLEMENT_INTERVAL),
        ("recover_stale_batches", STALE_BATCH_INTERVAL),
        ("dispatch_notifications", NOTIFICATION_INTERVAL),
    ):
        app[BACKGROUND_TASKS].append(asyncio.create_task(periodic_task_runner(name, interval)))
    logger.info("Background tasks started")


async def on_shutdown(app):
    """Execute shutdown tasks"""
    for task in app[BACKGROUND_TASKS]:
        task.cancel()
    await app[RAIL].close()
    await close_db()


def create_app(rail=None, settings=None, webhook_secret=LESSON_WEBHOOK_SECRET, manage_lifecycle=True):
    """
    Build the admin and webhook API.

    Args:
        rail: Payment rail client, defaults to the HTTP rail
        settings: Ledger settings, defaults to the environment
        webhook_secret: Secret for lesson webhook signatures
        manage_lifecycle: Initialize the database and start background tasks with the app
    """
    app = web.Application(middlewares=[webhook_security_middleware, error_middleware])
    app[SETTINGS] = settings or load_settings()
    app[RAIL] = rail or PaymentRail()
    app[WEBHOOK_SECRET] = webhook_secret
    app[BACKGROUND_TASKS] = []

    app.router.add_get("/health", health_check)
    app.router.add_post("/webhooks/lesson-completed", handle_lesson_completed)

    # Set up CORS for the admin console
    cors = aiohttp_cors.setup(app, defaults={
        "*": aiohttp_cors.ResourceOptions(
            allow_credentials=True,
            expose_headers="*",
            allow_headers="*",
            max_age=3600,
        )
    })
    for method, path, handler in (
        ("PUT", "/admin/tiers/{tier}", handle_upsert_tier),
        ("POST", "/admin/tiers/assign", handle_assign_tier),
        ("POST", "/admin/teachers", handle_register_teacher),
        ("PUT", "/admin/teachers/{teacher_id}/payout-account", handle_payout_account),
        ("POST", "/admin/teachers/{teacher_id}/payout", handle_teacher_payout),
        ("GET", "/admin/teachers/{teacher_id}/earnings", handle_teacher_earnings),
        ("POST", "/admin/tier-applications", handle_submit_application),
        ("POST", "/admin/tier-applications/{application_id}/review", handle_review_application),
        ("POST", "/admin/settlement/run", handle_run_settlement),
        ("GET", "/admin/reports/revenue", handle_revenue_report),
        ("GET", "/admin/reports/metrics", handle_metrics_report),
    ):
        cors.add(app.router.add_route(method, path, handler))

    if manage_lifecycle:
        app.on_startup.append(on_startup)
        app.on_shutdown.append(on_shutdown)
    return app


def main():
    """Entry point for the admin API and scheduler"""
    logging.basicConfig(level=LOG_LEVEL)
    run_startup()
    logger.info(f"Starting tutorpay on {WEBAPP_HOST}:{WEBAPP_PORT}")
    web.run_app(create_app(), host=WEBAPP_HOST, port=WEBAPP_PORT)


if __name__ == "__main__":
    main()
