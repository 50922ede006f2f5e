import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

from tutorpay.models import Notification, NotificationStatus
from tutorpay.notifications import (
    MAX_ATTEMPTS, REVIEWERS, TelegramNotifier, dispatch_pending_notifications,
    enqueue_notification, render_message
)


@pytest.mark.asyncio
async def test_enqueue_stores_json_safe_payload():
    notification = await enqueue_notification("payout_completed", 7, {"amount": Decimal("8.00"), "currency": "GBP"})

    stored = await Notification.get(id=notification.id)
    assert stored.recipient_id == "7"
    assert stored.payload == {"amount": "8.00", "currency": "GBP"}
    assert stored.status == NotificationStatus.PENDING


def test_render_message():
    text = render_message("tier_promoted", {"to_tier": "Skilled", "hourly_rate": "8.00"})
    assert "Skilled" in text
    assert "8.00" in text

    # Missing keys or unknown events fall back to a plain rendering
    assert render_message("tier_promoted", {}).startswith("tier_promoted")
    assert render_message("something_else", {"a": 1}).startswith("something_else")


@pytest.mark.asyncio
async def test_dispatch_delivers_pending(notifier):
    await enqueue_notification("tier_assigned", 1, {"to_tier": "Expert"})
    await enqueue_notification("tier_assigned", 2, {"to_tier": "Master"})

    result = await dispatch_pending_notifications(notifier)

    assert result == {"sent": 2, "failed": 0, "skipped": 0}
    assert [recipient for _, recipient, _ in notifier.sent] == ["1", "2"]
    assert await Notification.filter(status=NotificationStatus.SENT).count() == 2

    # Nothing left to send
    assert (await dispatch_pending_notifications(notifier))["sent"] == 0


@pytest.mark.asyncio
async def test_dispatch_skips_unknown_recipients():
    class NoChat:
        async def notify(self, event_type, recipient_id, payload):
            raise LookupError("No Telegram chat")

    await enqueue_notification("tier_assigned", 1, {"to_tier": "Expert"})
    result = await dispatch_pending_notifications(NoChat())

    assert result["skipped"] == 1
    assert (await Notification.first()).status == NotificationStatus.SKIPPED


@pytest.mark.asyncio
async def test_dispatch_retries_then_gives_up():
    class Broken:
        async def notify(self, event_type, recipient_id, payload):
            raise RuntimeError("Telegram is down")

    await enqueue_notification("payout_failed", 1, {"amount": "5.00", "currency": "GBP", "reason": "x"})

    for _ in range(MAX_ATTEMPTS - 1):
        assert (await dispatch_pending_notifications(Broken()))["failed"] == 1
        assert (await Notification.first()).status == NotificationStatus.PENDING

    await dispatch_pending_notifications(Broken())
    notification = await Notification.first()
    assert notification.status == NotificationStatus.FAILED
    assert notification.attempts == MAX_ATTEMPTS
    assert notification.last_error == "Telegram is down"


@pytest.mark.asyncio
async def test_telegram_notifier_sends_to_teacher_chat(make_teacher):
    teacher = await make_teacher(telegram_id=555)
    bot = MagicMock()
    bot.send_message = AsyncMock()
    notifier = TelegramNotifier(bot=bot, admin_chat_id="12345")

    await notifier.notify("tier_assigned", str(teacher.id), {"to_tier": "Expert"})
    await notifier.notify("tier_application_received", REVIEWERS, {
        "requested_tier": "Expert", "application_id": 1, "teacher_id": teacher.id, "status": "under_review",
    })

    first, second = bot.send_message.call_args_list
    assert first.kwargs["chat_id"] == 555
    assert "Expert" in first.kwargs["text"]
    assert second.kwargs["chat_id"] == 12345


@pytest.mark.asyncio
async def test_telegram_notifier_without_chat(make_teacher):
    teacher = await make_teacher()
    notifier = TelegramNotifier(bot=MagicMock(), admin_chat_id=None)

    with pytest.raises(LookupError):
        await notifier.notify("tier_assigned", str(teacher.id), {"to_tier": "Expert"})
    with pytest.raises(LookupError):
        await notifier.notify("tier_application_received", REVIEWERS, {})
