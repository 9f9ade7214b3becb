"""
Vector storage backends.

A vector store owns the caller's tables and performs the ranked scan. The
facade validates parameters and shapes results; the store only answers
"which rows are closest to this vector".
"""

import json
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ai_vector_util.core import vector_math
from ai_vector_util.core.exceptions import InvalidArgument, InvalidVector
from ai_vector_util.storage.db import get_connection

COSINE = "COSINE"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,127}$")

ScanRow = Tuple[Any, float, Optional[str]]


def validate_identifier(name: str, what: str = "identifier") -> str:
    """Reject anything that is not a plain SQL identifier."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise InvalidArgument(f"Invalid {what}: {name!r}")
    return name


def validate_table_ref(table_ref: str) -> str:
    """Accept ``table`` or ``schema.table`` made of plain identifiers."""
    if not isinstance(table_ref, str):
        raise InvalidArgument(f"Invalid table reference: {table_ref!r}")
    parts = table_ref.split(".")
    if len(parts) > 2:
        raise InvalidArgument(f"Invalid table reference: {table_ref!r}")
    for part in parts:
        validate_identifier(part, "table reference")
    return table_ref


class VectorStore(Protocol):
    """Capability scanning and writing caller-owned vector tables."""

    def scan(
        self,
        table_ref: str,
        vector_column: str,
        query_vector: Sequence[float],
        id_column: str,
        text_column: Optional[str],
        top_k: int,
        threshold: float,
        metric: str = COSINE
    ) -> List[ScanRow]:
        """Rows as (id, similarity, text) ranked by similarity, best first."""
        ...

    def insert(self, table_ref: str, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert rows (column -> value) atomically; returns rows written."""
        ...

    def ping(self) -> bool:
        """True if the store is reachable."""
        ...


class SQLiteVectorStore:
    """Vector store over SQLite tables holding vectors as JSON arrays.

    Performs an exact scan: every row is compared with the query vector.
    Suitable for small tables and tests; index-backed stores should
    implement the same protocol.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def create_table(
        self,
        table_ref: str,
        id_column: str = "ID",
        text_column: Optional[str] = "TEXT_CONTENT",
        vector_column: str = "EMBEDDING"
    ) -> None:
        """Create a simple document table if it does not exist."""
        columns = [f"{validate_identifier(id_column)} TEXT PRIMARY KEY"]
        if text_column:
            columns.append(f"{validate_identifier(text_column)} TEXT")
        columns.append(f"{validate_identifier(vector_column)} TEXT")

        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {validate_table_ref(table_ref)} "
                f"({', '.join(columns)})"
            )
            conn.commit()
        finally:
            conn.close()

    def scan(
        self,
        table_ref: str,
        vector_column: str,
        query_vector: Sequence[float],
        id_column: str,
        text_column: Optional[str],
        top_k: int,
        threshold: float,
        metric: str = COSINE
    ) -> List[ScanRow]:
        """Exact cosine scan of ``table_ref``.

        Rows without a vector or with a zero vector never match.

        Raises:
            InvalidArgument: For an unsupported metric or bad identifiers
            InvalidVector: If a stored vector has a different dimension
        """
        if metric != COSINE:
            raise InvalidArgument(f"Unsupported distance metric: {metric}")

        text_select = validate_identifier(text_column) if text_column else "NULL"
        query = (
            f"SELECT {validate_identifier(id_column)}, {validate_identifier(vector_column)}, "
            f"{text_select} FROM {validate_table_ref(table_ref)} "
            f"WHERE {vector_column} IS NOT NULL"
        )

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query).fetchall()
        finally:
            conn.close()

        matches = []
        for row_id, raw_vector, text in rows:
            stored = json.loads(raw_vector)
            if len(stored) != len(query_vector):
                raise InvalidVector(
                    f"Row {row_id} has {len(stored)} dimensions, query has {len(query_vector)}"
                )
            if vector_math.vector_norm(stored) == 0:
                continue
            similarity = vector_math.cosine_similarity(query_vector, stored)
            if similarity >= threshold:
                matches.append((row_id, similarity, text))

        matches.sort(key=lambda m: m[1], reverse=True)
        return matches[:top_k]

    def insert(self, table_ref: str, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert rows in one transaction; list values are stored as JSON."""
        if not rows:
            return 0
        validate_table_ref(table_ref)

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for row in rows:
                columns = [validate_identifier(c, "column") for c in row]
                values = [
                    json.dumps(list(v)) if isinstance(v, (list, tuple)) else v
                    for v in row.values()
                ]
                conn.execute(
                    f"INSERT INTO {table_ref} ({', '.join(columns)}) "
                    f"VALUES ({', '.join('?' for _ in columns)})",
                    values
                )
            conn.commit()
            return len(rows)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ping(self) -> bool:
        conn = get_connection(self.db_path)
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        finally:
            conn.close()
