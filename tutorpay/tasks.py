import logging

from .config import load_settings
from .earnings import clear_held_earnings
from .notifications import TelegramNotifier, dispatch_pending_notifications
from .payment import PaymentRail
from .payouts import recover_stale_batches, run_settlement_cycle

logger = logging.getLogger(__name__)


async def clear_held_earnings_task():
    """
    Move earnings past their hold period to cleared.
    This task should run several times a day.
    """
    try:
        await clear_held_earnings()
    except Exception as e:
        logger.error(f"Error in clear_held_earnings task: {e}")


async def settlement_task(rail=None):
    """
    Run a settlement cycle: clear what is due, then pay out cleared earnings.
    """
    rail = rail or PaymentRail()
    try:
        await clear_held_earnings()
        summary = await run_settlement_cycle(rail, load_settings())
        logger.info(f"Scheduled settlement: {summary.succeeded} paid, {summary.failed} failed, {summary.skipped} skipped")
    except Exception as e:
        logger.error(f"Error in settlement task: {e}")
    finally:
        await rail.close()


async def recover_stale_batches_task(rail=None):
    """
    Finish payout batches left processing by an interrupted settlement.
    """
    rail = rail or PaymentRail()
    try:
        await recover_stale_batches(rail, load_settings())
    except Exception as e:
        logger.error(f"Error in recover_stale_batches task: {e}")
    finally:
        await rail.close()


async def dispatch_notifications_task(notifier=None):
    """
    Deliver queued notifications.
    """
    notifier = notifier or TelegramNotifier()
    try:
        await dispatch_pending_notifications(notifier)
    except Exception as e:
        logger.error(f"Error in dispatch_notifications task: {e}")
    finally:
        await notifier.close()


# Dictionary of scheduled tasks for easy access
scheduled_tasks = {
    "clear_held_earnings": clear_held_earnings_task,
    "settlement": settlement_task,
    "recover_stale_batches": recover_stale_batches_task,
    "dispatch_notifications": dispatch_notifications_task,
}
