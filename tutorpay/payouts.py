"""
Payout batching and processing.

A settlement cycle groups each teacher's cleared earnings into one payout
batch and transfers the total through the payment rail. A teacher has at
most one batch in flight; this is enforced by the unique ``open_slot``
column rather than by a read-then-insert check.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from .config import LedgerSettings, get_current_time
from .errors import ConflictError, NotFoundError, PaymentRailError, ValidationError
from .metrics import track_metric
from .models import EarningStatus, MetricType, PayoutBatch, PayoutStatus, TeacherEarning, TeacherProfile
from .notifications import enqueue_notification
from .payment import TransferRail

logger = logging.getLogger(__name__)


@dataclass
class PayoutResult:
    teacher_id: int
    status: str
    batch_id: Optional[int] = None
    amount: Decimal = Decimal("0.00")
    earnings_count: int = 0
    transfer_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class SettlementSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    total_transferred: Decimal = Decimal("0.00")
    results: List[PayoutResult] = field(default_factory=list)

    def add(self, result: PayoutResult):
        self.results.append(result)
        if result.status == "skipped":
            self.skipped += 1
            return
        self.processed += 1
        if result.status == PayoutStatus.COMPLETED.value:
            self.succeeded += 1
            self.total_transferred += result.amount
        else:
            self.failed += 1


async def _cleared_earnings_by_teacher(teacher_id: Optional[int] = None) -> Dict[int, List[TeacherEarning]]:
    """Cleared, unbatched earnings of teachers with a verified payout account."""
    query = TeacherEarning.filter(
        status=EarningStatus.CLEARED,
        payout_batch_id__isnull=True,
        teacher__payout_account_verified=True,
        teacher__payout_account_id__isnull=False,
    )
    if teacher_id is not None:
        query = query.filter(teacher_id=teacher_id)

    grouped: Dict[int, List[TeacherEarning]] = {}
    for earning in await query.order_by("teacher_id", "lesson_completed_at", "id"):
        grouped.setdefault(earning.teacher_id, []).append(earning)
    return grouped


async def _open_batch(
    teacher: TeacherProfile, earnings: List[TeacherEarning], now: datetime
) -> Optional[PayoutBatch]:
    """
    Create a processing batch for the teacher.

    ``earnings`` are candidates read before the teacher's slot was taken.
    Once the slot row exists they are re-read, and only those still cleared
    and unbatched go into the batch. Returns None when none are left.

    Raises:
        IntegrityError: another batch is already open for this teacher
    """
    currency = earnings[0].currency
    async with in_transaction() as conn:
        batch = await PayoutBatch.create(
            teacher_id=teacher.id,
            total_amount=Decimal("0.00"),
            currency=currency,
            earnings_count=0,
            earning_ids=[],
            destination_account=teacher.payout_account_id,
            status=PayoutStatus.PROCESSING,
            open_slot=teacher.id,
            created_at=now,
            using_db=conn,
        )

        payable = await TeacherEarning.filter(
            id__in=[e.id for e in earnings],
            teacher_id=teacher.id,
            currency=currency,
            status=EarningStatus.CLEARED,
            payout_batch_id__isnull=True,
        ).using_db(conn).order_by("lesson_completed_at", "id")
        if not payable:
            await batch.delete(using_db=conn)
            return None

        batch.total_amount = sum((e.amount_earned for e in payable), Decimal("0.00"))
        batch.earnings_count = len(payable)
        batch.earning_ids = [e.id for e in payable]
        batch.idempotency_key = f"payout-batch-{batch.id}"
        await batch.save(
            using_db=conn, update_fields=["total_amount", "earnings_count", "earning_ids", "idempotency_key"]
        )
    return batch


async def _complete_batch(batch: PayoutBatch, transfer_id: str, now: datetime) -> int:
    async with in_transaction() as conn:
        paid = await TeacherEarning.filter(
            id__in=batch.earning_ids,
            status=EarningStatus.CLEARED,
            payout_batch_id__isnull=True,
        ).using_db(conn).update(
            status=EarningStatus.PAID,
            payout_batch_id=batch.id,
            paid_at=now,
            updated_at=now,
        )
        mismatch = None
        if paid != batch.earnings_count:
            # Transfer went through; flag the batch for reconciliation
            mismatch = f"Transferred {batch.earnings_count} earnings but linked {paid}"
        await PayoutBatch.filter(id=batch.id).using_db(conn).update(
            status=PayoutStatus.COMPLETED,
            transfer_id=transfer_id,
            completed_at=now,
            failure_reason=mismatch,
            open_slot=None,
        )

    if mismatch:
        logger.error(f"Payout batch {batch.id} needs reconciliation: {mismatch}")
    return paid


async def _fail_batch(batch: PayoutBatch, reason: str, now: datetime):
    await PayoutBatch.filter(id=batch.id, status=PayoutStatus.PROCESSING).update(
        status=PayoutStatus.FAILED,
        failure_reason=reason,
        failed_at=now,
        open_slot=None,
    )


async def _transfer_batch(batch: PayoutBatch, rail: TransferRail, settings: LedgerSettings) -> PayoutResult:
    """Send the batch to the rail and record the outcome. No transaction is open during the call."""
    result = PayoutResult(
        teacher_id=batch.teacher_id,
        status=PayoutStatus.FAILED.value,
        batch_id=batch.id,
        amount=batch.total_amount,
        earnings_count=batch.earnings_count,
    )

    try:
        transfer_id = await asyncio.wait_for(
            rail.create_transfer(batch.total_amount, batch.currency, batch.destination_account, batch.idempotency_key),
            timeout=settings.transfer_timeout_seconds,
        )
    except asyncio.TimeoutError:
        result.reason = f"Payment rail timed out after {settings.transfer_timeout_seconds}s"
    except PaymentRailError as e:
        result.reason = e.message

    now = get_current_time()
    if result.reason is None:
        await _complete_batch(batch, transfer_id, now)
        result.status = PayoutStatus.COMPLETED.value
        result.transfer_id = transfer_id
        logger.info(
            f"Payout batch {batch.id} completed: {batch.total_amount} {batch.currency} to teacher "
            f"{batch.teacher_id} ({batch.earnings_count} earnings, transfer {transfer_id})"
        )
        await track_metric(
            metric_type=MetricType.PAYOUT_COMPLETED,
            entity_id=batch.id,
            teacher_id=batch.teacher_id,
            value=float(batch.total_amount),
            metadata={"earnings_count": batch.earnings_count, "transfer_id": transfer_id}
        )
        await enqueue_notification(
            "payout_completed",
            batch.teacher_id,
            {"amount": batch.total_amount, "currency": batch.currency.upper(),
             "earnings_count": batch.earnings_count, "transfer_id": transfer_id},
        )
    else:
        await _fail_batch(batch, result.reason, now)
        logger.error(f"Payout batch {batch.id} for teacher {batch.teacher_id} failed: {result.reason}")
        await track_metric(
            metric_type=MetricType.PAYOUT_FAILED,
            entity_id=batch.id,
            teacher_id=batch.teacher_id,
            value=float(batch.total_amount),
            metadata={"reason": result.reason}
        )
        await enqueue_notification(
            "payout_failed",
            batch.teacher_id,
            {"amount": batch.total_amount, "currency": batch.currency.upper(), "reason": result.reason},
        )
    return result


async def _settle_teacher(
    teacher_id: int,
    earnings: List[TeacherEarning],
    rail: TransferRail,
    settings: LedgerSettings,
    now: datetime
) -> PayoutResult:
    if await PayoutBatch.filter(teacher_id=teacher_id, status=PayoutStatus.PROCESSING).exists():
        logger.info(f"Teacher {teacher_id} already has a payout in progress, skipping")
        return PayoutResult(teacher_id, "skipped", reason="payout_in_progress")

    teacher = await TeacherProfile.get(id=teacher_id)
    try:
        # One batch per currency at a time; the rest wait for the next cycle
        batch = await _open_batch(teacher, earnings, now)
    except IntegrityError:
        logger.info(f"Another settlement opened a batch for teacher {teacher_id} first, skipping")
        return PayoutResult(teacher_id, "skipped", reason="payout_in_progress")
    if batch is None:
        logger.info(f"Earnings of teacher {teacher_id} were paid by another settlement, skipping")
        return PayoutResult(teacher_id, "skipped", reason="nothing_to_pay")

    logger.info(f"Opened payout batch {batch.id} for teacher {teacher_id}: {batch.total_amount} {batch.currency}")
    return await _transfer_batch(batch, rail, settings)


async def run_settlement_cycle(
    rail: TransferRail,
    settings: LedgerSettings,
    now: Optional[datetime] = None
) -> SettlementSummary:
    """
    Pay out every teacher's cleared earnings.

    Teachers are settled independently through a worker pool bounded by
    ``settings.payout_concurrency``; a payment rail failure for one teacher
    marks only that teacher's batch failed. Datastore errors abort the cycle.

    Args:
        rail: Payment rail client
        settings: Ledger settings (timeout, concurrency)
        now: Override for the current time

    Returns:
        SettlementSummary with per-teacher results
    """
    now = now or get_current_time()
    grouped = await _cleared_earnings_by_teacher()
    summary = SettlementSummary()
    if not grouped:
        logger.info("Settlement cycle: no cleared earnings to pay out")
        return summary

    semaphore = asyncio.Semaphore(max(1, settings.payout_concurrency))

    async def worker(teacher_id: int, earnings: List[TeacherEarning]) -> PayoutResult:
        async with semaphore:
            return await _settle_teacher(teacher_id, earnings, rail, settings, now)

    tasks = [asyncio.create_task(worker(tid, earnings)) for tid, earnings in grouped.items()]
    try:
        results = await asyncio.gather(*tasks)
    except Exception:
        # A datastore error aborts the whole cycle; stop the remaining workers too
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    for result in results:
        summary.add(result)

    logger.info(
        f"Settlement cycle finished: {summary.succeeded} succeeded, {summary.failed} failed, "
        f"{summary.skipped} skipped, {summary.total_transferred} transferred"
    )
    return summary


async def process_teacher_payout(
    teacher_id: int,
    rail: TransferRail,
    settings: LedgerSettings,
    now: Optional[datetime] = None
) -> PayoutResult:
    """
    Pay out one teacher's cleared earnings on demand.

    Raises:
        NotFoundError: unknown teacher
        ValidationError: no verified payout account or nothing cleared to pay
        ConflictError: a payout is already in progress for the teacher
    """
    now = now or get_current_time()
    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")
    if not teacher.payout_account_id or not teacher.payout_account_verified:
        raise ValidationError(f"Teacher {teacher_id} has no verified payout account")

    earnings = (await _cleared_earnings_by_teacher(teacher_id)).get(teacher_id)
    if not earnings:
        raise ValidationError(f"Teacher {teacher_id} has no cleared earnings to pay out")

    result = await _settle_teacher(teacher_id, earnings, rail, settings, now)
    if result.reason == "nothing_to_pay":
        raise ValidationError(f"Teacher {teacher_id} has no cleared earnings to pay out")
    if result.status == "skipped":
        raise ConflictError(f"A payout is already in progress for teacher {teacher_id}")
    return result


async def recover_stale_batches(
    rail: TransferRail,
    settings: LedgerSettings,
    now: Optional[datetime] = None
) -> SettlementSummary:
    """
    Finish batches left processing by an interrupted cycle.

    The transfer is re-issued with the batch's original idempotency key, so
    a transfer that did reach the rail is not sent twice.
    """
    now = now or get_current_time()
    cutoff = now - timedelta(minutes=settings.stale_batch_minutes)
    stale = await PayoutBatch.filter(status=PayoutStatus.PROCESSING, created_at__lt=cutoff).order_by("id")

    summary = SettlementSummary()
    for batch in stale:
        logger.warning(f"Recovering payout batch {batch.id} for teacher {batch.teacher_id} (created {batch.created_at})")
        summary.add(await _transfer_batch(batch, rail, settings))

    if stale:
        logger.info(f"Recovered {len(stale)} stale payout batches: {summary.succeeded} completed, {summary.failed} failed")
    return summary


async def set_payout_account(teacher_id: int, account_id: str, verified: bool = True) -> TeacherProfile:
    """Record the teacher's payment rail account."""
    teacher = await TeacherProfile.get_or_none(id=teacher_id)
    if teacher is None:
        raise NotFoundError(f"Teacher {teacher_id} not found")
    if not account_id:
        raise ValidationError("Payout account id is required")

    teacher.payout_account_id = account_id
    teacher.payout_account_verified = verified
    await teacher.save(update_fields=["payout_account_id", "payout_account_verified", "updated_at"])
    logger.info(f"Set payout account for teacher {teacher_id} (verified={verified})")
    return teacher
