# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
CaptureStore - durable local cache of capture records.

Records are keyed by the remote memory identifier. Filtering goes through
CaptureFilter, a declarative predicate that renders to SQL, so callers never
pass code into the store.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from .client import (
    FileAsset,
    MediaKind,
    MemoryContentEnvelope,
    format_timestamp,
    parse_timestamp,
)


class ProcessingStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SortKey(Enum):
    CREATED_AT = "created_at"
    MODIFIED_AT = "modified_at"


@dataclass
class CaptureRecord:
    """Local mirror of one capture."""

    identifier: str
    state: str
    kind: MediaKind
    is_favorite: bool
    created_at: datetime
    modified_at: datetime
    remote_type: str = ""
    thumbnail: Optional[FileAsset] = None
    locally_downloaded: bool = False
    last_sync_date: Optional[datetime] = None
    processing_status: ProcessingStatus = ProcessingStatus.PENDING

    @property
    def is_photo(self) -> bool:
        return self.kind is MediaKind.PHOTO

    @property
    def is_video(self) -> bool:
        return self.kind is MediaKind.VIDEO

    @classmethod
    def from_envelope(cls, envelope: MemoryContentEnvelope) -> Optional[CaptureRecord]:
        """Translate a capture envelope; None for payloads that are not captures."""
        capture = envelope.capture
        if capture is None:
            return None
        return cls(
            identifier=envelope.identifier,
            state=capture.state,
            kind=capture.kind,
            is_favorite=envelope.favorite,
            created_at=envelope.created_at,
            modified_at=envelope.modified_at,
            remote_type=capture.type,
            thumbnail=capture.thumbnail,
        )

    def to_row(self) -> tuple:
        return (
            self.identifier,
            self.state,
            self.kind.value,
            self.remote_type,
            int(self.is_favorite),
            format_timestamp(self.created_at),
            format_timestamp(self.modified_at),
            self.thumbnail.file_uuid if self.thumbnail else None,
            self.thumbnail.access_token if self.thumbnail else None,
            int(self.locally_downloaded),
            format_timestamp(self.last_sync_date) if self.last_sync_date else None,
            self.processing_status.value,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CaptureRecord:
        thumbnail = None
        if row["thumbnail_uuid"]:
            thumbnail = FileAsset(row["thumbnail_uuid"], row["thumbnail_token"] or "")
        return cls(
            identifier=row["uuid"],
            state=row["state"],
            kind=MediaKind(row["kind"]),
            remote_type=row["remote_type"] or "",
            is_favorite=bool(row["is_favorite"]),
            created_at=parse_timestamp(row["created_at"]),
            modified_at=parse_timestamp(row["modified_at"]),
            thumbnail=thumbnail,
            locally_downloaded=bool(row["locally_downloaded"]),
            last_sync_date=(
                parse_timestamp(row["last_sync_date"]) if row["last_sync_date"] else None
            ),
            processing_status=ProcessingStatus(row["processing_status"]),
        )


@dataclass(frozen=True)
class CaptureFilter:
    """
    Declarative predicate over capture records.

    Every field left as None is unconstrained; set fields are AND-ed.
    """

    ids: Optional[frozenset[str]] = None
    exclude_ids: Optional[frozenset[str]] = None
    kind: Optional[MediaKind] = None
    is_favorite: Optional[bool] = None
    locally_downloaded: Optional[bool] = None

    @classmethod
    def all(cls) -> CaptureFilter:
        return cls()

    @classmethod
    def photos(cls) -> CaptureFilter:
        return cls(kind=MediaKind.PHOTO)

    @classmethod
    def videos(cls) -> CaptureFilter:
        return cls(kind=MediaKind.VIDEO)

    @classmethod
    def favorites(cls) -> CaptureFilter:
        return cls(is_favorite=True)

    @classmethod
    def by_ids(cls, ids: Iterable[str]) -> CaptureFilter:
        return cls(ids=frozenset(ids))

    @classmethod
    def excluding(cls, ids: Iterable[str]) -> CaptureFilter:
        return cls(exclude_ids=frozenset(ids))

    def to_sql(self) -> tuple[str, list]:
        """Render as a WHERE clause body and its parameters."""
        clauses, params = [], []
        # Identifier sets travel as one JSON parameter to avoid the host
        # parameter limit on large passes.
        if self.ids is not None:
            clauses.append("uuid IN (SELECT value FROM json_each(?))")
            params.append(json.dumps(sorted(self.ids)))
        if self.exclude_ids is not None:
            clauses.append("uuid NOT IN (SELECT value FROM json_each(?))")
            params.append(json.dumps(sorted(self.exclude_ids)))
        if self.kind is not None:
            clauses.append("kind = ?")
            params.append(self.kind.value)
        if self.is_favorite is not None:
            clauses.append("is_favorite = ?")
            params.append(int(self.is_favorite))
        if self.locally_downloaded is not None:
            clauses.append("locally_downloaded = ?")
            params.append(int(self.locally_downloaded))
        return (" AND ".join(clauses) or "1"), params


# --- Local Store Interface ---


class LocalStoreInterface(ABC):
    """Durable keyed collection of capture records."""

    @abstractmethod
    def fetch(
        self,
        predicate: Optional[CaptureFilter] = None,
        sort_by: SortKey = SortKey.CREATED_AT,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> list[CaptureRecord]: ...
    @abstractmethod
    def upsert(self, record: CaptureRecord) -> None: ...
    @abstractmethod
    def delete(self, predicate: CaptureFilter) -> int: ...
    @abstractmethod
    def save(self) -> None: ...


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS captures (
        uuid TEXT NOT NULL PRIMARY KEY,
        state TEXT NOT NULL,
        kind TEXT NOT NULL,
        remote_type TEXT,
        is_favorite INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        modified_at TEXT NOT NULL,
        thumbnail_uuid TEXT,
        thumbnail_token TEXT,
        locally_downloaded INTEGER NOT NULL DEFAULT 0,
        last_sync_date TEXT,
        processing_status TEXT NOT NULL DEFAULT 'pending'
    );

    CREATE INDEX IF NOT EXISTS idx_captures_created ON captures (created_at);
    CREATE INDEX IF NOT EXISTS idx_captures_modified ON captures (modified_at);
"""

_COLUMNS = (
    "uuid, state, kind, remote_type, is_favorite, created_at, modified_at, "
    "thumbnail_uuid, thumbnail_token, locally_downloaded, last_sync_date, "
    "processing_status"
)


class CaptureStore(LocalStoreInterface):
    """
    SQLite-backed capture store.

    Usage:
        store = CaptureStore("/path/to/captures.db")
        store.upsert(record)
        store.save()

    One connection is shared by all sync workers; statements are serialized
    by an internal lock. Changes become durable on save().
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._db: Optional[sqlite3.Connection] = sqlite3.connect(
            self.db_path, check_same_thread=False
        )
        self._db.row_factory = sqlite3.Row
        self._db.executescript(_SCHEMA)
        self._db.commit()

    def close(self):
        """Close the database connection without saving pending changes."""
        with self._lock:
            if self._db:
                self._db.close()
                self._db = None

    def fetch(
        self,
        predicate: Optional[CaptureFilter] = None,
        sort_by: SortKey = SortKey.CREATED_AT,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> list[CaptureRecord]:
        where, params = (predicate or CaptureFilter.all()).to_sql()
        sql = (
            f"SELECT {_COLUMNS} FROM captures WHERE {where} "
            f"ORDER BY {SortKey(sort_by).value} {'DESC' if descending else 'ASC'}, uuid"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._db.execute(sql, params).fetchall()
        return [CaptureRecord.from_row(row) for row in rows]

    def get(self, identifier: str) -> Optional[CaptureRecord]:
        records = self.fetch(CaptureFilter.by_ids([identifier]), limit=1)
        return records[0] if records else None

    def count(self, predicate: Optional[CaptureFilter] = None) -> int:
        where, params = (predicate or CaptureFilter.all()).to_sql()
        with self._lock:
            row = self._db.execute(
                f"SELECT COUNT(*) FROM captures WHERE {where}", params
            ).fetchone()
        return row[0] if row else 0

    def upsert(self, record: CaptureRecord) -> None:
        with self._lock:
            self._db.execute(
                f"INSERT OR REPLACE INTO captures ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                record.to_row(),
            )

    def delete(self, predicate: CaptureFilter) -> int:
        where, params = predicate.to_sql()
        with self._lock:
            cur = self._db.execute(f"DELETE FROM captures WHERE {where}", params)
        return cur.rowcount

    def save(self) -> None:
        with self._lock:
            self._db.commit()
