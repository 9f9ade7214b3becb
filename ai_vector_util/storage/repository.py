"""
Repository pattern for data access.

Handles the usage ledger, the daily metrics table and the read-only
monitoring queries built on top of them.
"""

from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    MAX_ERROR_MESSAGE_LENGTH,
    OperationType,
    PerformanceMetric,
    UsageRecord,
    canonical_model_name,
)

_USAGE_COLUMNS = """
    log_timestamp, session_id, calling_schema, calling_user, model_name,
    operation_type, input_text_length, batch_size, execution_time_ms,
    tokens_processed, success_flag, error_message
"""

_METRIC_COLUMNS = """
    model_name, metric_date, total_calls, successful_calls, failed_calls,
    avg_latency_ms, min_latency_ms, max_latency_ms, p95_latency_ms,
    p99_latency_ms, total_tokens, total_execution_ms, unique_schemas,
    unique_users
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the registry, usage ledger and metrics tables if missing.

    The usage ledger is append-only; rows only ever leave it through
    retention cleanup.

    Args:
        db_path: Path to SQLite database file
    """
    operations = ", ".join(f"'{op.value}'" for op in OperationType)
    conn = get_connection(db_path)
    try:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS ai_model_registry (
                model_id INTEGER PRIMARY KEY AUTOINCREMENT,
                model_name TEXT NOT NULL UNIQUE,
                model_type TEXT NOT NULL,
                vector_dimensions INTEGER NOT NULL,
                max_tokens INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_date TEXT NOT NULL,
                last_used_date TEXT,
                usage_count INTEGER NOT NULL DEFAULT 0,
                avg_latency_ms REAL
            );

            CREATE TABLE IF NOT EXISTS ai_usage_log (
                log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                log_timestamp TEXT NOT NULL,
                session_id TEXT,
                calling_schema TEXT NOT NULL,
                calling_user TEXT,
                model_name TEXT NOT NULL,
                operation_type TEXT NOT NULL CHECK (operation_type IN ({operations})),
                input_text_length INTEGER,
                batch_size INTEGER,
                execution_time_ms REAL,
                tokens_processed INTEGER,
                success_flag INTEGER NOT NULL CHECK (success_flag IN (0, 1)),
                error_message TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_usage_schema_date
                ON ai_usage_log (calling_schema, log_timestamp);
            CREATE INDEX IF NOT EXISTS idx_usage_model_date
                ON ai_usage_log (model_name, log_timestamp);

            CREATE TABLE IF NOT EXISTS ai_performance_metrics (
                metric_id INTEGER PRIMARY KEY AUTOINCREMENT,
                model_name TEXT NOT NULL,
                metric_date TEXT NOT NULL,
                total_calls INTEGER NOT NULL DEFAULT 0,
                successful_calls INTEGER NOT NULL DEFAULT 0,
                failed_calls INTEGER NOT NULL DEFAULT 0,
                avg_latency_ms REAL,
                min_latency_ms REAL,
                max_latency_ms REAL,
                p95_latency_ms REAL,
                p99_latency_ms REAL,
                total_tokens INTEGER NOT NULL DEFAULT 0,
                total_execution_ms REAL NOT NULL DEFAULT 0,
                unique_schemas INTEGER NOT NULL DEFAULT 0,
                unique_users INTEGER NOT NULL DEFAULT 0,
                UNIQUE (model_name, metric_date)
            );
        """)
        conn.commit()
    finally:
        conn.close()


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage record to the ledger in its own transaction.

    Args:
        record: The usage record to store
        db_path: Path to SQLite database file
    """
    error_message = record.error_message
    if error_message is not None:
        error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH]

    conn = get_connection(db_path)
    try:
        conn.execute(f"""
            INSERT INTO ai_usage_log ({_USAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.timestamp.isoformat(),
            record.session_id,
            record.calling_schema,
            record.calling_user,
            record.model_name,
            record.operation_type.value,
            record.input_text_length,
            record.batch_size,
            record.execution_time_ms,
            record.tokens_processed,
            1 if record.success else 0,
            error_message,
        ))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _row_to_usage_record(row) -> UsageRecord:
    return UsageRecord(
        timestamp=datetime.fromisoformat(row[0]),
        session_id=row[1],
        calling_schema=row[2],
        calling_user=row[3],
        model_name=row[4],
        operation_type=OperationType(row[5]),
        input_text_length=row[6],
        batch_size=row[7],
        execution_time_ms=row[8],
        tokens_processed=row[9],
        success=bool(row[10]),
        error_message=row[11],
    )


def fetch_usage_records(
    calling_schema: Optional[str] = None,
    model: Optional[str] = None,
    operation: Optional[OperationType] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageRecord]:
    """Fetch usage records, newest first.

    Args:
        calling_schema: Optional filter on the calling schema
        model: Optional filter on model name
        operation: Optional filter on operation type
        start: Optional inclusive lower bound on the timestamp
        end: Optional exclusive upper bound on the timestamp
        limit: Maximum number of records to return (None for all)
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (newest first)
    """
    query = f"SELECT {_USAGE_COLUMNS} FROM ai_usage_log"
    conditions = []
    params: List[Any] = []

    if calling_schema:
        conditions.append("calling_schema = ?")
        params.append(calling_schema)
    if model:
        conditions.append("model_name = ?")
        params.append(canonical_model_name(model))
    if operation:
        conditions.append("operation_type = ?")
        params.append(operation.value)
    if start is not None:
        conditions.append("log_timestamp >= ?")
        params.append(start.isoformat())
    if end is not None:
        conditions.append("log_timestamp < ?")
        params.append(end.isoformat())

    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY log_timestamp DESC, log_id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(query, params)
        return [_row_to_usage_record(row) for row in cursor.fetchall()]
    finally:
        conn.close()


def delete_usage_records_before(cutoff: datetime, db_path: str = DEFAULT_DB_PATH) -> int:
    """Delete usage records older than ``cutoff``.

    Returns:
        Number of records deleted
    """
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "DELETE FROM ai_usage_log WHERE log_timestamp < ?",
            (cutoff.isoformat(),)
        )
        conn.commit()
        return cursor.rowcount
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def replace_performance_metrics(
    metric_date: date,
    metrics: List[PerformanceMetric],
    db_path: str = DEFAULT_DB_PATH
) -> None:
    """Replace every metric row of ``metric_date`` atomically.

    Existing rows for the day are deleted and ``metrics`` inserted in the
    same transaction, so a re-run leaves exactly one row per model.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        conn.execute(
            "DELETE FROM ai_performance_metrics WHERE metric_date = ?",
            (metric_date.isoformat(),)
        )
        for metric in metrics:
            conn.execute(f"""
                INSERT INTO ai_performance_metrics ({_METRIC_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                metric.model_name,
                metric.metric_date.isoformat(),
                metric.total_calls,
                metric.successful_calls,
                metric.failed_calls,
                metric.avg_latency_ms,
                metric.min_latency_ms,
                metric.max_latency_ms,
                metric.p95_latency_ms,
                metric.p99_latency_ms,
                metric.total_tokens,
                metric.total_execution_ms,
                metric.unique_schemas,
                metric.unique_users,
            ))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_performance_metrics(
    model: Optional[str] = None,
    start_date: Optional[date] = None,
    db_path: str = DEFAULT_DB_PATH
) -> List[PerformanceMetric]:
    """Fetch daily metrics, newest day first."""
    query = f"SELECT {_METRIC_COLUMNS} FROM ai_performance_metrics"
    conditions = []
    params: List[Any] = []
    if model:
        conditions.append("model_name = ?")
        params.append(canonical_model_name(model))
    if start_date is not None:
        conditions.append("metric_date >= ?")
        params.append(start_date.isoformat())
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY metric_date DESC, model_name"

    conn = get_connection(db_path)
    try:
        cursor = conn.execute(query, params)
        return [
            PerformanceMetric(
                model_name=row[0],
                metric_date=date.fromisoformat(row[1]),
                total_calls=row[2],
                successful_calls=row[3],
                failed_calls=row[4],
                avg_latency_ms=row[5],
                min_latency_ms=row[6],
                max_latency_ms=row[7],
                p95_latency_ms=row[8],
                p99_latency_ms=row[9],
                total_tokens=row[10],
                total_execution_ms=row[11],
                unique_schemas=row[12],
                unique_users=row[13],
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


class UsageRepository:
    """Read-only monitoring queries over the usage ledger and metrics.

    Dashboards use this class; every query that returns per-caller usage
    takes the calling schema so a tenant only sees its own records.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], datetime] = datetime.now
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            clock: Source of the current time for look-back windows
        """
        self.db_path = db_path
        self.clock = clock

    def _cutoff(self, days_back: float) -> str:
        return (self.clock() - timedelta(days=days_back)).isoformat()

    def get_usage_stats(
        self,
        calling_schema: Optional[str] = None,
        days_back: int = 7
    ) -> List[Dict[str, Any]]:
        """Daily usage grouped by operation and model.

        Args:
            calling_schema: Restrict to one caller (None for all callers)
            days_back: Number of days to look back

        Returns:
            One dictionary per (day, operation, model), newest day first
        """
        query = """
            SELECT
                substr(log_timestamp, 1, 10) AS usage_date,
                operation_type,
                model_name,
                COUNT(*) AS total_calls,
                SUM(success_flag) AS successful_calls,
                SUM(1 - success_flag) AS failed_calls,
                ROUND(AVG(execution_time_ms), 2) AS avg_latency_ms,
                SUM(tokens_processed) AS total_tokens
            FROM ai_usage_log
            WHERE log_timestamp >= ?
        """
        params: List[Any] = [self._cutoff(days_back)]
        if calling_schema:
            query += " AND calling_schema = ?"
            params.append(calling_schema)
        query += """
            GROUP BY usage_date, operation_type, model_name
            ORDER BY usage_date DESC, total_calls DESC
        """

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [
                {
                    "usage_date": date.fromisoformat(row[0]),
                    "operation_type": row[1],
                    "model_name": row[2],
                    "total_calls": row[3],
                    "successful_calls": row[4] or 0,
                    "failed_calls": row[5] or 0,
                    "avg_latency_ms": row[6],
                    "total_tokens": row[7] or 0,
                }
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_realtime_usage(
        self,
        calling_schema: Optional[str] = None,
        hours_back: float = 1
    ) -> List[Dict[str, Any]]:
        """Live call counts grouped by caller, model and operation.

        Args:
            calling_schema: Restrict to one caller (None for all callers)
            hours_back: Window size in hours, the last hour by default

        Returns:
            One dictionary per (caller, model, operation), busiest first
        """
        query = """
            SELECT
                calling_schema,
                model_name,
                operation_type,
                COUNT(*) AS calls,
                SUM(success_flag) AS successful_calls,
                SUM(1 - success_flag) AS failed_calls,
                ROUND(AVG(execution_time_ms), 2) AS avg_latency_ms,
                MAX(log_timestamp) AS last_call_time
            FROM ai_usage_log
            WHERE log_timestamp > ?
        """
        params: List[Any] = [self._cutoff(hours_back / 24)]
        if calling_schema:
            query += " AND calling_schema = ?"
            params.append(calling_schema)
        query += """
            GROUP BY calling_schema, model_name, operation_type
            ORDER BY calls DESC, last_call_time DESC
        """

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(query, params)
            return [
                {
                    "calling_schema": row[0],
                    "model_name": row[1],
                    "operation_type": row[2],
                    "calls": row[3],
                    "successful_calls": row[4] or 0,
                    "failed_calls": row[5] or 0,
                    "avg_latency_ms": row[6],
                    "last_call_time": datetime.fromisoformat(row[7]),
                }
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_performance_metrics(
        self,
        model: str,
        days_back: int = 7
    ) -> List[PerformanceMetric]:
        """Aggregated daily metrics of one model, newest day first."""
        start_date = self.clock().date() - timedelta(days=days_back)
        return fetch_performance_metrics(
            model=model,
            start_date=start_date,
            db_path=self.db_path
        )

    def get_error_summary(self, days_back: int = 7) -> List[Dict[str, Any]]:
        """Failed calls grouped by caller, model, operation and message."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT
                    calling_schema,
                    model_name,
                    operation_type,
                    error_message,
                    COUNT(*) AS error_count,
                    MIN(log_timestamp) AS first_occurrence,
                    MAX(log_timestamp) AS last_occurrence
                FROM ai_usage_log
                WHERE success_flag = 0 AND log_timestamp >= ?
                GROUP BY calling_schema, model_name, operation_type, error_message
                ORDER BY error_count DESC, last_occurrence DESC
            """, (self._cutoff(days_back),))
            return [
                {
                    "calling_schema": row[0],
                    "model_name": row[1],
                    "operation_type": row[2],
                    "error_message": row[3],
                    "error_count": row[4],
                    "first_occurrence": datetime.fromisoformat(row[5]),
                    "last_occurrence": datetime.fromisoformat(row[6]),
                }
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_model_health(self) -> List[Dict[str, Any]]:
        """Health of every registered model based on the last 24 hours.

        Status rules, first match wins:
        - IDLE: no calls
        - DEGRADED: more than 10% of calls failed
        - SLOW: current average latency above twice the historical average
        - HEALTHY: otherwise
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT
                    r.model_name,
                    r.is_active,
                    r.avg_latency_ms,
                    COUNT(l.log_id) AS calls,
                    COALESCE(SUM(l.success_flag), 0) AS successes,
                    COALESCE(SUM(1 - l.success_flag), 0) AS errors,
                    ROUND(AVG(l.execution_time_ms), 2) AS current_avg_latency
                FROM ai_model_registry r
                LEFT JOIN ai_usage_log l
                    ON l.model_name = r.model_name AND l.log_timestamp >= ?
                GROUP BY r.model_name, r.is_active, r.avg_latency_ms
                ORDER BY r.model_name
            """, (self._cutoff(1),))
            report = []
            for row in cursor.fetchall():
                name, active, historical, calls, successes, errors, current = row
                if calls == 0:
                    status = "IDLE"
                elif errors > calls * 0.1:
                    status = "DEGRADED"
                elif historical and current is not None and current > historical * 2:
                    status = "SLOW"
                else:
                    status = "HEALTHY"
                report.append({
                    "model_name": name,
                    "is_active": bool(active),
                    "calls_last_24h": calls,
                    "success_last_24h": successes,
                    "errors_last_24h": errors,
                    "historical_avg_latency": historical,
                    "current_avg_latency": current,
                    "health_status": status,
                })
            return report
        finally:
            conn.close()


# Global repository instance
_default_repository: Optional[UsageRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> UsageRepository:
    """Get a shared repository instance.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of UsageRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = UsageRepository(db_path)
    return _default_repository
