import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from tortoise.expressions import Q

from .config import get_current_time
from .models import Metric, MetricType


logger = logging.getLogger(__name__)


async def track_metric(
    metric_type: MetricType,
    value: float = 1.0,
    entity_id: Optional[int] = None,
    teacher_id: Optional[int] = None,
    metadata: Optional[Dict] = None
) -> Optional[Metric]:
    """
    Track a metric event in the database.

    Args:
        metric_type: Type of metric being tracked
        value: Numeric value for the metric (default is 1.0 for count-based metrics)
        entity_id: Optional ID of the related entity (earning, batch, application)
        teacher_id: Optional teacher the event belongs to
        metadata: Optional additional contextual data as a dictionary

    Returns:
        The created Metric object, or None if tracking failed
    """
    try:
        metric = await Metric.create(
            metric_type=metric_type,
            value=value,
            entity_id=entity_id,
            teacher_id=teacher_id,
            metadata=metadata
        )
        logger.info(f"Tracked metric: {metric_type.value}, value: {value}, entity_id: {entity_id}, teacher_id: {teacher_id}")
        return metric
    except Exception as e:
        logger.error(f"Error tracking metric {metric_type.value}: {str(e)}")
        # We don't want to break the ledger flow if metrics tracking fails
        return None


async def get_metrics_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    metric_types: Optional[List[MetricType]] = None
) -> Dict:
    """
    Summarise tracked metrics for a time period.

    Args:
        start_date: Start of the period (defaults to 30 days before end_date)
        end_date: End of the period (defaults to now)
        metric_types: Optional list of metric types to include (defaults to all)

    Returns:
        Dictionary with event counts and summed values per metric type
    """
    if not end_date:
        end_date = get_current_time()
    if not start_date:
        start_date = end_date - timedelta(days=30)

    query = Q(timestamp__gte=start_date) & Q(timestamp__lte=end_date)
    if metric_types:
        query &= Q(metric_type__in=[m.value for m in metric_types])

    counts: Dict[str, int] = {}
    totals: Dict[str, float] = {}
    for metric in await Metric.filter(query).all():
        key = metric.metric_type.value
        counts[key] = counts.get(key, 0) + 1
        totals[key] = round(totals.get(key, 0.0) + metric.value, 2)

    payouts_done = counts.get(MetricType.PAYOUT_COMPLETED.value, 0)
    payouts_failed = counts.get(MetricType.PAYOUT_FAILED.value, 0)
    attempts = payouts_done + payouts_failed

    return {
        "time_period": {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        },
        "counts": counts,
        "totals": totals,
        "payout_success_rate": round(payouts_done / attempts * 100, 2) if attempts > 0 else 0,
    }
