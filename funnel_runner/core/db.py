"""SQLite storage: versioned key/value envelopes and the local media store."""

import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

DEFAULT_DB_PATH = Path("data/funnels.db")

SCHEMA_VERSION = 1

# migrations[n] upgrades a value stored at version n to version n + 1
MIGRATIONS: list[Callable[[Any], Any]] = [
    lambda value: value,
]


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize database with schema."""
    conn = get_connection(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS media (
            id TEXT PRIMARY KEY,
            data_url TEXT NOT NULL,
            mime_type TEXT,
            file_name TEXT,
            updated_at INTEGER NOT NULL
        );
    """)

    conn.commit()
    conn.close()


def _is_envelope(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and isinstance(raw.get("schemaVersion"), (int, float))
        and not isinstance(raw.get("schemaVersion"), bool)
        and "value" in raw
    )


def _normalize_version(version: Any) -> int:
    if not isinstance(version, (int, float)) or version < 0 or version != version:
        return 0
    return int(version)


def _apply_migrations(value: Any, from_version: int) -> Any:
    current = value
    for version in range(from_version, SCHEMA_VERSION):
        if version < len(MIGRATIONS):
            current = MIGRATIONS[version](current)
    return current


def _read_raw(db_path: Path, key: str) -> Optional[Any]:
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
    finally:
        conn.close()

    if row is None:
        return None

    try:
        return json.loads(row["value"])
    except json.JSONDecodeError:
        return None


def _write_raw(db_path: Path, key: str, raw: Any) -> None:
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
            """,
            (key, json.dumps(raw)),
        )
        conn.commit()
    finally:
        conn.close()


def load_data(db_path: Path, key: str, default: Any) -> Any:
    """Load a value, migrating older envelopes forward.

    Values written before envelopes existed count as version 0. Values from a
    newer schema are returned untouched.
    """
    raw = _read_raw(db_path, key)
    if raw is None:
        return default

    stored = raw
    version = 0
    if _is_envelope(raw):
        version = _normalize_version(raw["schemaVersion"])
        stored = raw["value"]

    if version > SCHEMA_VERSION:
        return stored

    if version < SCHEMA_VERSION:
        migrated = _apply_migrations(stored, version)
        _write_raw(db_path, key, {"schemaVersion": SCHEMA_VERSION, "value": migrated})
        return migrated

    return stored


def save_data(db_path: Path, key: str, value: Any) -> None:
    """Save a value wrapped in the current envelope."""
    _write_raw(db_path, key, {"schemaVersion": SCHEMA_VERSION, "value": value})


def put_media(
    db_path: Path,
    data_url: str,
    mime_type: Optional[str] = None,
    file_name: Optional[str] = None,
    media_id: Optional[str] = None,
) -> str:
    """Store a media record. Returns its id."""
    media_id = media_id or f"media-{int(time.time() * 1000)}-{uuid4().hex[:8]}"
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT OR REPLACE INTO media (id, data_url, mime_type, file_name, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (media_id, data_url, mime_type, file_name, int(time.time() * 1000)),
        )
        conn.commit()
    finally:
        conn.close()
    return media_id


def get_media(db_path: Path, media_id: str) -> Optional[dict]:
    """Get a media record by id, or None."""
    conn = get_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM media WHERE id = ?", (media_id,)).fetchone()
    finally:
        conn.close()
    return dict(row) if row else None


def delete_media(db_path: Path, media_id: str) -> bool:
    """Delete a media record. Returns True if something was removed."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute("DELETE FROM media WHERE id = ?", (media_id,))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


def list_media(db_path: Path) -> list[dict]:
    """List media records without their payloads."""
    conn = get_connection(db_path)
    try:
        rows = conn.execute(
            "SELECT id, mime_type, file_name, updated_at FROM media ORDER BY updated_at DESC"
        ).fetchall()
    finally:
        conn.close()
    return [dict(row) for row in rows]
