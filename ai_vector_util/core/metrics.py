"""
Daily performance aggregation and log retention.

Aggregates are derived data: any day can be recomputed from the usage
ledger for as long as its raw records are retained.
"""

from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from loguru import logger

from ai_vector_util.storage.db import DEFAULT_DB_PATH
from ai_vector_util.storage.models import PerformanceMetric, UsageRecord
from ai_vector_util.storage.repository import (
    delete_usage_records_before,
    fetch_usage_records,
    replace_performance_metrics,
)

from .exceptions import InvalidArgument

DEFAULT_RETENTION_DAYS = 90


def compute_percentile(values: Sequence[float], percentile: float) -> float:
    """Compute a percentile using linear interpolation.

    Same method as numpy.percentile with method='linear' and SQL
    PERCENTILE_CONT.

    Args:
        values: Numeric values, in any order
        percentile: Percentile to compute (0-100)

    Returns:
        Interpolated percentile value
    """
    if not values:
        raise ValueError("Values list cannot be empty")

    if percentile < 0 or percentile > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    n = len(sorted_values)

    position = (percentile / 100.0) * (n - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]

    return lower_value + fraction * (upper_value - lower_value)


def _rounded(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


def summarize_records(
    model_name: str,
    metric_date: date,
    records: List[UsageRecord]
) -> PerformanceMetric:
    """Roll the records of one model and day into a PerformanceMetric.

    Latency statistics only consider records with a recorded execution
    time; failed attempts often have none.
    """
    latencies = [r.execution_time_ms for r in records if r.execution_time_ms is not None]
    successful = sum(1 for r in records if r.success)

    if latencies:
        avg_latency = sum(latencies) / len(latencies)
        min_latency = min(latencies)
        max_latency = max(latencies)
        p95 = compute_percentile(latencies, 95)
        p99 = compute_percentile(latencies, 99)
    else:
        avg_latency = min_latency = max_latency = p95 = p99 = None

    return PerformanceMetric(
        model_name=model_name,
        metric_date=metric_date,
        total_calls=len(records),
        successful_calls=successful,
        failed_calls=len(records) - successful,
        avg_latency_ms=_rounded(avg_latency),
        min_latency_ms=_rounded(min_latency),
        max_latency_ms=_rounded(max_latency),
        p95_latency_ms=_rounded(p95),
        p99_latency_ms=_rounded(p99),
        total_tokens=sum(r.tokens_processed or 0 for r in records),
        total_execution_ms=round(sum(latencies), 2),
        unique_schemas=len({r.calling_schema for r in records}),
        unique_users=len({r.calling_user for r in records if r.calling_user}),
    )


class MetricsAggregator:
    """Scheduled maintenance over the usage ledger.

    Meant to run from a scheduler or the CLI, not per request. Assumes a
    single writer per day being aggregated.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.db_path = db_path
        self.clock = clock

    def aggregate_day(self, day: Optional[date] = None) -> int:
        """Recompute the metrics of ``day`` (default: yesterday).

        Existing rows for the day are replaced, so re-running is safe.

        Returns:
            Number of metric rows written (one per model with activity)
        """
        if day is None:
            day = self.clock().date() - timedelta(days=1)

        start = datetime.combine(day, time.min)
        records = fetch_usage_records(
            start=start,
            end=start + timedelta(days=1),
            limit=None,
            db_path=self.db_path
        )

        by_model: Dict[str, List[UsageRecord]] = defaultdict(list)
        for record in records:
            by_model[record.model_name].append(record)

        metrics = [
            summarize_records(model_name, day, model_records)
            for model_name, model_records in sorted(by_model.items())
        ]
        replace_performance_metrics(day, metrics, db_path=self.db_path)

        logger.info("Aggregated metrics for {}: {} rows", day.isoformat(), len(metrics))
        return len(metrics)

    def cleanup(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete usage records older than the retention window.

        Aggregated metrics are kept.

        Returns:
            Number of usage records deleted
        """
        if retention_days < 0:
            raise InvalidArgument("retention_days cannot be negative")

        cutoff = self.clock() - timedelta(days=retention_days)
        deleted = delete_usage_records_before(cutoff, db_path=self.db_path)

        logger.info("Deleted {} usage records older than {}", deleted, cutoff.isoformat())
        return deleted
