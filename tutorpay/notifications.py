"""
Notification outbox.

Ledger operations append rows to ``notification_outbox``; a periodic task
delivers them through a notifier. Delivery never affects ledger state.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional, Protocol

from aiogram import Bot

from .config import ADMIN_CHAT_ID, BOT_TOKEN, get_current_time
from .models import Notification, NotificationStatus, TeacherProfile

logger = logging.getLogger(__name__)

REVIEWERS = "reviewers"
MAX_ATTEMPTS = 5

MESSAGE_TEMPLATES = {
    "payout_completed": "💸 Payout of {amount} {currency} sent ({earnings_count} lessons). Reference: {transfer_id}",
    "payout_failed": "⚠️ Payout of {amount} {currency} failed: {reason}. Your cleared balance will be retried automatically.",
    "tier_promoted": "🎉 Congratulations! You have been promoted to {to_tier}. New hourly rate: {hourly_rate}",
    "tier_demoted": "Your tier has changed from {from_tier} to {to_tier}.",
    "tier_assigned": "Your tier has been set to {to_tier} by an administrator.",
    "tier_eligible_for_review": "You now meet the requirements to apply for {tier}.",
    "tier_application_received": "New {requested_tier} application #{application_id} from teacher {teacher_id} ({status}).",
    "tier_application_reviewed": "Your {requested_tier} application was {status}. {notes}",
    "bonus_awarded": "🏅 Bonus earned: {amount} {currency} for {description}.",
}


class Notifier(Protocol):
    async def notify(self, event_type: str, recipient_id: str, payload: Dict) -> None:
        ...


def _jsonable(payload: Dict) -> Dict:
    return {key: str(value) if isinstance(value, Decimal) else value for key, value in payload.items()}


async def enqueue_notification(event_type: str, recipient_id, payload: Optional[Dict] = None) -> Optional[Notification]:
    """
    Append a notification to the outbox.

    Failures are logged and swallowed: callers have already committed their
    financial or tier state and must not be rolled back by a notification.
    """
    try:
        notification = await Notification.create(
            event_type=event_type,
            recipient_id=str(recipient_id),
            payload=_jsonable(payload or {}),
        )
        logger.info(f"Queued {event_type} notification for {recipient_id}")
        return notification
    except Exception as e:
        logger.error(f"Failed to queue {event_type} notification for {recipient_id}: {e}")
        return None


def render_message(event_type: str, payload: Dict) -> str:
    template = MESSAGE_TEMPLATES.get(event_type)
    if template is None:
        return f"{event_type}: {payload}"
    try:
        return template.format(**payload)
    except KeyError:
        return f"{event_type}: {payload}"


class TelegramNotifier:
    """Delivers notifications as Telegram messages."""

    def __init__(self, bot: Optional[Bot] = None, admin_chat_id: Optional[str] = ADMIN_CHAT_ID):
        self.bot = bot
        self.admin_chat_id = admin_chat_id

    def _get_bot(self) -> Bot:
        if self.bot is None:
            self.bot = Bot(token=BOT_TOKEN)
        return self.bot

    async def resolve_chat_id(self, recipient_id: str) -> Optional[int]:
        if recipient_id == REVIEWERS:
            return int(self.admin_chat_id) if self.admin_chat_id else None
        teacher = await TeacherProfile.get_or_none(id=int(recipient_id))
        return teacher.telegram_id if teacher else None

    async def notify(self, event_type: str, recipient_id: str, payload: Dict) -> None:
        chat_id = await self.resolve_chat_id(recipient_id)
        if chat_id is None:
            raise LookupError(f"No Telegram chat for recipient {recipient_id}")
        await self._get_bot().send_message(chat_id=chat_id, text=render_message(event_type, payload))

    async def close(self):
        if self.bot is not None:
            await self.bot.session.close()


async def dispatch_pending_notifications(notifier: Notifier, limit: int = 100) -> Dict[str, int]:
    """
    Deliver pending outbox rows.

    Returns:
        Counts of sent, failed and skipped notifications
    """
    result = {"sent": 0, "failed": 0, "skipped": 0}
    pending = await Notification.filter(status=NotificationStatus.PENDING).order_by("id").limit(limit)

    for notification in pending:
        notification.attempts += 1
        try:
            await notifier.notify(notification.event_type, notification.recipient_id, notification.payload)
            notification.status = NotificationStatus.SENT
            notification.sent_at = get_current_time()
            result["sent"] += 1
        except LookupError as e:
            notification.status = NotificationStatus.SKIPPED
            notification.last_error = str(e)
            result["skipped"] += 1
            logger.info(f"Skipped notification {notification.id}: {e}")
        except Exception as e:
            notification.last_error = str(e)
            if notification.attempts >= MAX_ATTEMPTS:
                notification.status = NotificationStatus.FAILED
            result["failed"] += 1
            logger.warning(f"Failed to deliver notification {notification.id} (attempt {notification.attempts}): {e}")
        await notification.save()

    if pending:
        logger.info(f"Notification dispatch: {result}")
    return result
