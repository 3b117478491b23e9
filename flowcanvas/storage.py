from __future__ import annotations

import asyncio
import sqlite3
import uuid
from datetime import datetime, timezone
from logging import getLogger
from pathlib import Path
from typing import Protocol

from .errors import StorageError
from .models import WorkflowDocument

logger = getLogger(__name__)

REFERENCE_PREFIX = "ref:"
LEGACY_PREFIXES = ("idb:", "s3:")
EPHEMERAL_PREFIX = "blob:"


def is_storage_reference(value: object) -> bool:
    return isinstance(value, str) and value.startswith((REFERENCE_PREFIX, *LEGACY_PREFIXES))


def is_ephemeral_url(value: object) -> bool:
    return isinstance(value, str) and value.startswith(EPHEMERAL_PREFIX)


def make_reference(key: str) -> str:
    return f"{REFERENCE_PREFIX}{key}"


def reference_key(reference: str) -> str:
    for prefix in (REFERENCE_PREFIX, *LEGACY_PREFIXES):
        if reference.startswith(prefix):
            return reference[len(prefix) :]
    return reference


class BlobStore(Protocol):
    async def save(self, key: str, payload: str) -> str: ...

    async def load(self, reference: str) -> str | None: ...


class MemoryBlobStore:
    def __init__(self) -> None:
        self._blobs: dict[str, str] = {}

    async def save(self, key: str, payload: str) -> str:
        self._blobs[key] = payload
        return make_reference(key)

    async def load(self, reference: str) -> str | None:
        return self._blobs.get(reference_key(reference))

    def __len__(self) -> int:
        return len(self._blobs)


class SQLiteBlobStore:
    """Large payloads and periodic graph snapshots in one SQLite file."""

    def __init__(self, db_path: str = "data/flowcanvas.db", max_snapshots: int = 3) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.max_snapshots = max_snapshots
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS blobs (
                    key TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS snapshots (
                    id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )

    def _save_sync(self, key: str, payload: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO blobs (key, payload, created_at) VALUES (?, ?, ?)",
                (key, payload, datetime.now(timezone.utc).isoformat()),
            )

    def _load_sync(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute("SELECT payload FROM blobs WHERE key = ?", (key,)).fetchone()
        return row["payload"] if row else None

    async def save(self, key: str, payload: str) -> str:
        try:
            await asyncio.to_thread(self._save_sync, key, payload)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to save blob {key}: {exc}") from exc
        return make_reference(key)

    async def load(self, reference: str) -> str | None:
        try:
            return await asyncio.to_thread(self._load_sync, reference_key(reference))
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to load {reference}: {exc}") from exc

    def save_snapshot(self, document: WorkflowDocument) -> str:
        snapshot_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO snapshots (id, document, created_at) VALUES (?, ?, ?)",
                    (
                        snapshot_id,
                        document.model_dump_json(by_alias=True),
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                stale = conn.execute(
                    "SELECT id FROM snapshots ORDER BY created_at DESC, rowid DESC LIMIT -1 OFFSET ?",
                    (self.max_snapshots,),
                ).fetchall()
                conn.executemany("DELETE FROM snapshots WHERE id = ?", [(row["id"],) for row in stale])
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to save snapshot: {exc}") from exc
        if stale:
            logger.debug("Pruned %d old snapshot(s)", len(stale))
        return snapshot_id

    def latest_snapshot(self) -> WorkflowDocument | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM snapshots ORDER BY created_at DESC, rowid DESC LIMIT 1"
            ).fetchone()
        if not row:
            return None
        return WorkflowDocument.model_validate_json(row["document"])

    def list_snapshots(self) -> list[dict[str, str]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, created_at FROM snapshots ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [{"id": row["id"], "created_at": row["created_at"]} for row in rows]
