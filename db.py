"""SQLite-backed key/value persistence for the Cipex offline cache."""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from core import app_paths

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Database path handling
# ---------------------------------------------------------------------------
_DEFAULT_DB_PATH = Path(
    os.environ.get("CIPEX_DB_PATH", str(app_paths.data_path("cipex.db")))
).resolve()
_DB_PATH = _DEFAULT_DB_PATH
DB_PATH = _DB_PATH

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY = False

KV_COLUMN_DEFINITIONS: Dict[str, str] = {
    "name": "TEXT PRIMARY KEY",
    "payload": "TEXT NOT NULL",
    "updated_at": "TEXT",
}


class StorageError(Exception):
    """Raised when the local cache cannot be read from or written to disk."""


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------

def set_database_path(path: Path) -> None:
    """Override the SQLite file used for storage."""

    global _DB_PATH, DB_PATH, _SCHEMA_READY
    _DB_PATH = Path(path).resolve()
    DB_PATH = _DB_PATH
    _SCHEMA_READY = False


def _ensure_schema(conn: sqlite3.Connection) -> None:
    columns = ",\n        ".join(
        f"{column} {definition}" for column, definition in KV_COLUMN_DEFINITIONS.items()
    )
    conn.execute(f"CREATE TABLE IF NOT EXISTS kv_entries (\n        {columns}\n    )")


def _ensure_database() -> None:
    global _SCHEMA_READY
    if _SCHEMA_READY:
        return
    with _SCHEMA_LOCK:
        if _SCHEMA_READY:
            return
        if _DB_PATH.parent:
            _DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(_DB_PATH)
        try:
            _ensure_schema(conn)
            conn.commit()
        finally:
            conn.close()
        _SCHEMA_READY = True


def get_connection() -> sqlite3.Connection:
    _ensure_database()
    conn = sqlite3.connect(_DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    conn = get_connection()
    try:
        conn.execute("BEGIN")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Key/value access
# ---------------------------------------------------------------------------

def read_value(key: str) -> Optional[str]:
    """Return the raw text stored under ``key`` or ``None`` when absent."""

    try:
        conn = get_connection()
        try:
            row = conn.execute("SELECT payload FROM kv_entries WHERE name = ?", (key,)).fetchone()
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"Unable to read '{key}': {exc}") from exc
    if row is None:
        return None
    return row["payload"]


def write_value(key: str, value: str) -> None:
    """Store ``value`` under ``key``; the change is committed before returning."""

    try:
        with transaction() as conn:
            conn.execute(
                "INSERT INTO kv_entries (name, payload, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET payload = excluded.payload, "
                "updated_at = excluded.updated_at",
                (key, value, _utc_now_iso()),
            )
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"Unable to write '{key}': {exc}") from exc


def delete_value(key: str) -> None:
    """Remove ``key``; missing keys are ignored."""

    try:
        with transaction() as conn:
            conn.execute("DELETE FROM kv_entries WHERE name = ?", (key,))
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"Unable to delete '{key}': {exc}") from exc


def list_keys() -> List[str]:
    try:
        conn = get_connection()
        try:
            rows = conn.execute("SELECT name FROM kv_entries ORDER BY name").fetchall()
        finally:
            conn.close()
    except (sqlite3.Error, OSError) as exc:
        raise StorageError(f"Unable to list keys: {exc}") from exc
    return [row["name"] for row in rows]


# ---------------------------------------------------------------------------
# Module exports
# ---------------------------------------------------------------------------

__all__ = [
    "DB_PATH",
    "KV_COLUMN_DEFINITIONS",
    "StorageError",
    "set_database_path",
    "get_connection",
    "transaction",
    "read_value",
    "write_value",
    "delete_value",
    "list_keys",
]
