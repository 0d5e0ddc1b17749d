"""SQLite-backed model records with import status."""

from __future__ import annotations

import enum
import re
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any

_MODELS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS models (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    alias TEXT NOT NULL,
    size INTEGER,
    status TEXT NOT NULL,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

_MODELS_ALIAS_INDEX_SQL = "CREATE INDEX IF NOT EXISTS models_alias ON models (alias)"

_MODEL_INSERT_SQL = """
INSERT INTO models (id, name, alias, size, status, error, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
"""

_MODEL_COLUMNS = "id, name, alias, size, status, error, created_at, updated_at"
_MODEL_SELECT_ALL_SQL = f"SELECT {_MODEL_COLUMNS} FROM models ORDER BY created_at, id"
_MODEL_SELECT_ID_SQL = f"SELECT {_MODEL_COLUMNS} FROM models WHERE id = ?"
_MODEL_SELECT_ALIAS_SQL = (
    f"SELECT {_MODEL_COLUMNS} FROM models WHERE alias = ? ORDER BY created_at, id"
)
_MODEL_UPDATE_STATUS_SQL = "UPDATE models SET status = ?, error = ?, updated_at = ? WHERE id = ?"
_MODEL_DELETE_SQL = "DELETE FROM models WHERE id = ?"

_ALIAS_SEPARATOR = re.compile(r"[^a-z0-9]+")


class ModelStatus(str, enum.Enum):
    IMPORTING = "importing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ModelRecord:
    """One imported or importing model."""

    id: str
    name: str
    alias: str
    size: int | None
    status: ModelStatus
    created_at: str
    updated_at: str
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "alias": self.alias,
            "size": self.size,
            "status": self.status.value,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def derive_alias(name: str) -> str:
    """Derive the runtime alias: lowercase with non-alphanumeric runs collapsed to ``-``."""
    alias = _ALIAS_SEPARATOR.sub("-", name.strip().lower()).strip("-")
    return alias or "model"


class ModelRecordStore:
    """Thread-safe SQLite table of model records keyed by model id."""

    def __init__(self, *, db_path: Path) -> None:
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def create(
        self,
        *,
        name: str,
        size: int | None,
        model_id: str | None = None,
        alias: str | None = None,
    ) -> ModelRecord:
        """Insert a record in the ``importing`` state."""
        record_id = model_id or str(uuid.uuid4())
        now = _utc_now_iso()
        record = ModelRecord(
            id=record_id,
            name=name,
            alias=alias or derive_alias(name),
            size=size,
            status=ModelStatus.IMPORTING,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    _MODEL_INSERT_SQL,
                    (
                        record.id,
                        record.name,
                        record.alias,
                        record.size,
                        record.status.value,
                        record.created_at,
                        record.updated_at,
                    ),
                )
        return record

    def get(self, model_id: str) -> ModelRecord | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(_MODEL_SELECT_ID_SQL, (model_id,)).fetchone()
        return None if row is None else _coerce_row(row)

    def list_all(self) -> list[ModelRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(_MODEL_SELECT_ALL_SQL).fetchall()
        return [_coerce_row(row) for row in rows]

    def find_by_alias(self, alias: str) -> list[ModelRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(_MODEL_SELECT_ALIAS_SQL, (alias,)).fetchall()
        return [_coerce_row(row) for row in rows]

    def set_status(
        self,
        model_id: str,
        status: ModelStatus,
        *,
        error: str | None = None,
    ) -> ModelRecord | None:
        """Update the status; ``error`` is cleared unless the new status is ``failed``."""
        stored_error = error if status is ModelStatus.FAILED else None
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    _MODEL_UPDATE_STATUS_SQL,
                    (status.value, stored_error, _utc_now_iso(), model_id),
                )
        return self.get(model_id)

    def delete(self, model_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(_MODEL_DELETE_SQL, (model_id,))
        return cursor.rowcount > 0

    def _init_schema(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(_MODELS_TABLE_SQL)
                conn.execute(_MODELS_ALIAS_INDEX_SQL)

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        return connection


def _coerce_row(row: sqlite3.Row) -> ModelRecord:
    size = row["size"]
    return ModelRecord(
        id=row["id"],
        name=row["name"],
        alias=row["alias"],
        size=size if isinstance(size, int) else None,
        status=ModelStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        error=row["error"],
    )


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")
