"""
SQLite storage for shortened URLs.

Short codes are the base62 form of the row id the URL is about to receive,
so codes stay short and never repeat while rows exist.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS urls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    original TEXT NOT NULL,
    short_code TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    access_count INTEGER NOT NULL DEFAULT 0
)
"""

_COLUMNS = "id, original, short_code, created_at, updated_at, access_count"


class StoreError(Exception):
    """Raised when the underlying database operation fails."""


@dataclass
class ShortURL:
    id: int
    original: str
    short_code: str
    created_at: str
    updated_at: str
    access_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ShortURL":
        return cls(**{key: row[key] for key in row.keys()})

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "original": self.original,
            "shortCode": self.short_code,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "accessCount": self.access_count,
        }


def base62_encode(num: int) -> str:
    """Encode a non-negative integer with the a-z, A-Z, 0-9 alphabet."""
    if num < 0:
        raise ValueError(f"cannot encode negative number {num}")
    if num == 0:
        return ALPHABET[0]
    encoded = []
    while num > 0:
        num, remainder = divmod(num, 62)
        encoded.append(ALPHABET[remainder])
    return "".join(reversed(encoded))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class URLStore:
    """URL repository backed by a single SQLite file.

    The connection is shared between request threads; every statement runs
    under the store lock so readers never see another thread's uncommitted
    write.
    """

    def __init__(self, db_path: Path | str, max_urls: int = 100) -> None:
        self.db_path = Path(db_path)
        self.max_urls = max_urls
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.initialize()
        return self._conn

    def initialize(self) -> None:
        """Open the database and create the schema if needed."""
        with self._lock:
            if self._conn is not None:
                return
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                logger.info("Opening SQLite database: %s", self.db_path)
                conn = sqlite3.connect(
                    str(self.db_path), check_same_thread=False, timeout=10.0
                )
                conn.row_factory = sqlite3.Row
                conn.execute(_SCHEMA)
                conn.commit()
            except (sqlite3.Error, OSError) as exc:
                raise StoreError(f"could not open database {self.db_path}: {exc}") from exc
            self._conn = conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def create(self, original: str) -> ShortURL:
        """Store a URL under a new short code."""
        conn = self.conn
        timestamp = _now()
        with self._lock:
            try:
                last_id = conn.execute("SELECT MAX(id) FROM urls").fetchone()[0] or 0
                short_code = base62_encode(last_id + 1)
                cursor = conn.execute(
                    "INSERT INTO urls (original, short_code, created_at, updated_at, access_count) "
                    "VALUES (?, ?, ?, ?, 0)",
                    (original, short_code, timestamp, timestamp),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(f"failed to store URL: {exc}") from exc

            url = ShortURL(
                id=cursor.lastrowid,
                original=original,
                short_code=short_code,
                created_at=timestamp,
                updated_at=timestamp,
            )
            self._prune()
        logger.info("Created short code %s for %s", short_code, original)
        return url

    def _prune(self) -> None:
        # Caller holds the lock. A failed prune must not fail the insert.
        try:
            count = self.conn.execute("SELECT COUNT(*) FROM urls").fetchone()[0]
            if count <= self.max_urls:
                return
            self.conn.execute(
                "DELETE FROM urls WHERE id IN "
                "(SELECT id FROM urls ORDER BY created_at ASC, id ASC LIMIT ?)",
                (count - self.max_urls,),
            )
            self.conn.commit()
            logger.info("Pruned %d old URLs", count - self.max_urls)
        except sqlite3.Error:
            self.conn.rollback()
            logger.exception("Failed to clean up old URLs")

    def _fetch(self, conn: sqlite3.Connection, short_code: str) -> Optional[ShortURL]:
        # Caller holds the lock.
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM urls WHERE short_code = ?", (short_code,)
        ).fetchone()
        return ShortURL.from_row(row) if row else None

    def get(self, short_code: str) -> Optional[ShortURL]:
        conn = self.conn
        with self._lock:
            try:
                return self._fetch(conn, short_code)
            except sqlite3.Error as exc:
                raise StoreError(f"failed to look up {short_code}: {exc}") from exc

    def resolve(self, short_code: str) -> Optional[ShortURL]:
        """Look up a short code and count the access."""
        conn = self.conn
        with self._lock:
            try:
                cursor = conn.execute(
                    "UPDATE urls SET access_count = access_count + 1 WHERE short_code = ?",
                    (short_code,),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                url = self._fetch(conn, short_code)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(f"failed to update access count: {exc}") from exc
        return url

    def update(self, short_code: str, original: str) -> bool:
        return self._write(
            "UPDATE urls SET original = ?, updated_at = ? WHERE short_code = ?",
            (original, _now(), short_code),
        )

    def delete(self, short_code: str) -> bool:
        return self._write("DELETE FROM urls WHERE short_code = ?", (short_code,))

    def _write(self, sql: str, params: tuple) -> bool:
        conn = self.conn
        with self._lock:
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(f"write failed: {exc}") from exc
        return cursor.rowcount > 0

    def recent(self, limit: int = 7) -> list[ShortURL]:
        """Most recently updated URLs first."""
        conn = self.conn
        with self._lock:
            try:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM urls ORDER BY updated_at DESC, id DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"failed to list URLs: {exc}") from exc
        return [ShortURL.from_row(row) for row in rows]

    def count(self) -> int:
        conn = self.conn
        with self._lock:
            try:
                return conn.execute("SELECT COUNT(*) FROM urls").fetchone()[0]
            except sqlite3.Error as exc:
                raise StoreError(f"failed to count URLs: {exc}") from exc
