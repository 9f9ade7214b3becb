"""
Model registry persistence.

Keeps one row per embedding model with its declared shape and rolling
usage statistics. Models are deactivated, never deleted.
"""

from datetime import datetime
from typing import Callable, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ModelDescriptor, ModelType, canonical_model_name

_REGISTRY_COLUMNS = """
    model_name, vector_dimensions, max_tokens, model_type, is_active,
    created_date, last_used_date, usage_count, avg_latency_ms
"""


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_descriptor(row) -> ModelDescriptor:
    return ModelDescriptor(
        model_name=row[0],
        vector_dimensions=row[1],
        max_tokens=row[2],
        model_type=ModelType(row[3]),
        is_active=bool(row[4]),
        created_date=_parse_timestamp(row[5]),
        last_used_date=_parse_timestamp(row[6]),
        usage_count=row[7],
        avg_latency_ms=row[8],
    )


class ModelRegistry:
    """Repository for registered embedding models."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.db_path = db_path
        self.clock = clock

    def register(self, descriptor: ModelDescriptor) -> ModelDescriptor:
        """Insert a new active model or refresh an existing one.

        Re-registering an existing model refreshes its shape and type but
        keeps its creation date, usage statistics and active flag; only
        ``set_active`` changes whether a model is served.

        Returns:
            The stored descriptor
        """
        name = canonical_model_name(descriptor.model_name)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ai_model_registry
                    (model_name, model_type, vector_dimensions, max_tokens,
                     is_active, created_date, usage_count)
                VALUES (?, ?, ?, ?, 1, ?, 0)
                ON CONFLICT (model_name) DO UPDATE SET
                    model_type = excluded.model_type,
                    vector_dimensions = excluded.vector_dimensions,
                    max_tokens = excluded.max_tokens
            """, (
                name,
                descriptor.model_type.value,
                descriptor.vector_dimensions,
                descriptor.max_tokens,
                (descriptor.created_date or self.clock()).isoformat(),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return self.get(name)

    def get(self, model_name: str) -> Optional[ModelDescriptor]:
        """Look up a model by name, active or not."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_REGISTRY_COLUMNS} FROM ai_model_registry WHERE model_name = ?",
                (canonical_model_name(model_name),)
            )
            row = cursor.fetchone()
            return _row_to_descriptor(row) if row else None
        finally:
            conn.close()

    def list_models(self, active_only: bool = False) -> List[ModelDescriptor]:
        """All registered models, most recently created first."""
        query = f"SELECT {_REGISTRY_COLUMNS} FROM ai_model_registry"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY created_date DESC, model_name"
        conn = get_connection(self.db_path)
        try:
            return [_row_to_descriptor(row) for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    def set_active(self, model_name: str, active: bool) -> bool:
        """Activate or deactivate a model.

        Returns:
            True if the model exists
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE ai_model_registry SET is_active = ? WHERE model_name = ?",
                (1 if active else 0, canonical_model_name(model_name))
            )
            conn.commit()
            return cursor.rowcount > 0
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def record_call(
        self,
        model_name: str,
        execution_ms: float,
        when: Optional[datetime] = None
    ) -> None:
        """Fold one successful call into the model's usage statistics."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE ai_model_registry SET
                    avg_latency_ms = (COALESCE(avg_latency_ms, 0) * usage_count + ?)
                                     / (usage_count + 1),
                    usage_count = usage_count + 1,
                    last_used_date = ?
                WHERE model_name = ?
            """, (
                execution_ms,
                (when or self.clock()).isoformat(),
                canonical_model_name(model_name),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
