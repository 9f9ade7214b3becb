"""
Usage recording for vector service operations.

Writes one ledger record per operation attempt. Recording is best-effort:
a failed write is logged and dropped, never raised to the operation that
triggered it. Each write runs on its own connection and commits on its own,
so it survives whatever the caller does with its own transaction.
"""

import queue
import threading
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from ai_vector_util.storage.db import DEFAULT_DB_PATH
from ai_vector_util.storage.models import (
    CallerIdentity,
    OperationType,
    UsageRecord,
    canonical_model_name,
)
from ai_vector_util.storage.registry import ModelRegistry
from ai_vector_util.storage.repository import insert_usage_record

_STOP = object()


class UsageRecorder:
    """Append-only audit logger shared by every facade in a process.

    Args:
        db_path: Path to SQLite database file
        identity: Default caller identity for records that do not carry one
        clock: Source of record timestamps
        buffered: Queue records and write them from a background thread
        queue_size: Maximum queued records in buffered mode; further records
            are dropped with a warning rather than blocking the caller
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        identity: Optional[CallerIdentity] = None,
        clock: Callable[[], datetime] = datetime.now,
        buffered: bool = False,
        queue_size: int = 10000
    ):
        self.db_path = db_path
        self.identity = identity or CallerIdentity(schema="UNKNOWN")
        self.clock = clock
        self.registry = ModelRegistry(db_path, clock=clock)
        self.buffered = buffered
        self._queue: Optional[queue.Queue] = None
        self._worker: Optional[threading.Thread] = None
        if buffered:
            self._queue = queue.Queue(maxsize=queue_size)
            self._worker = threading.Thread(
                target=self._drain,
                name="usage-recorder",
                daemon=True
            )
            self._worker.start()

    def record(
        self,
        operation: OperationType,
        model: str,
        input_length: Optional[int] = None,
        batch_size: Optional[int] = None,
        execution_ms: Optional[float] = None,
        tokens: Optional[int] = None,
        success: bool = True,
        error: Optional[str] = None,
        identity: Optional[CallerIdentity] = None
    ) -> None:
        """Record one operation attempt. Never raises."""
        try:
            caller = identity or self.identity
            record = UsageRecord(
                timestamp=self.clock(),
                calling_schema=caller.schema,
                calling_user=caller.user,
                session_id=caller.session_id,
                model_name=canonical_model_name(model or "UNKNOWN"),
                operation_type=operation,
                input_text_length=input_length,
                batch_size=batch_size,
                execution_time_ms=execution_ms,
                tokens_processed=tokens,
                success=success,
                error_message=error,
            )
            if self._queue is not None:
                self._queue.put_nowait(record)
            else:
                self._write(record)
        except queue.Full:
            logger.warning("Usage queue full, dropping {} record for {}", operation.value, model)
        except Exception:
            logger.opt(exception=True).warning(
                "Failed to record {} usage for {}", getattr(operation, "value", operation), model
            )

    def record_model_call(self, model: str, execution_ms: float) -> None:
        """Update the registry statistics of a model. Never raises."""
        try:
            self.registry.record_call(model, execution_ms, when=self.clock())
        except Exception:
            logger.opt(exception=True).warning("Failed to update usage statistics of {}", model)

    def _write(self, record: UsageRecord) -> None:
        try:
            insert_usage_record(record, self.db_path)
        except Exception:
            logger.opt(exception=True).warning(
                "Failed to write {} usage record for {}",
                record.operation_type.value,
                record.model_name
            )

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued record has been written."""
        if self._queue is not None:
            self._queue.join()

    def close(self) -> None:
        """Flush pending records and stop the background writer."""
        if self._queue is None or self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join()
        self._worker = None
        self._queue = None
