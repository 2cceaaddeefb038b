"""Directory-scoped cache of aggregated structural patterns."""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any

from .cache import _connect, format_timestamp, open_ledger_db, parse_timestamp, utc_now
from .ledger import Clock, TTLPolicy
from .models import WriteResult

logger = logging.getLogger(__name__)

PATTERN_KIND = "pattern"


class PatternLedger:
    """TTL-only cache keyed by directory path.

    Entries are not tied to file identity: a pattern summary goes stale only
    when its TTL runs out. Expired rows read as misses and are deleted by
    :meth:`sweep_expired` (or the ledger-wide sweep), never on read.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        ttl: TTLPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.ttl = ttl or TTLPolicy()
        self._clock: Clock = clock or utc_now
        self._lock = Lock()
        open_ledger_db(self.db_path)

    def get(self, directory_path: str) -> Any | None:
        try:
            conn = _connect(self.db_path)
            try:
                row = conn.execute(
                    "SELECT patterns, last_write_at FROM pattern_record WHERE directory_path = ?",
                    (directory_path,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("Pattern lookup failed for %s: %s", directory_path, exc)
            return None
        if row is None:
            return None
        written = parse_timestamp(row["last_write_at"])
        if written is None or self._clock() - written > self.ttl.pattern:
            return None
        try:
            return json.loads(row["patterns"])
        except ValueError as exc:
            logger.warning("Discarding cached patterns for %s: %s", directory_path, exc)
            return None

    def put(self, directory_path: str, patterns: Any, file_count: int) -> WriteResult:
        try:
            payload = json.dumps(patterns, sort_keys=True)
            with self._lock:
                conn = _connect(self.db_path)
                try:
                    with conn:
                        conn.execute(
                            """
                            INSERT INTO pattern_record (
                                directory_path, patterns, file_count, last_write_at
                            ) VALUES (?, ?, ?, ?)
                            ON CONFLICT(directory_path) DO UPDATE SET
                                patterns = excluded.patterns,
                                file_count = excluded.file_count,
                                last_write_at = excluded.last_write_at
                            """,
                            (
                                directory_path,
                                payload,
                                int(file_count),
                                format_timestamp(self._clock()),
                            ),
                        )
                finally:
                    conn.close()
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.warning("Failed to cache patterns for %s: %s", directory_path, exc)
            return WriteResult(ok=False, path=directory_path, kind=PATTERN_KIND, error=str(exc))
        return WriteResult(ok=True, path=directory_path, kind=PATTERN_KIND)

    def sweep_expired(self) -> int:
        cutoff = format_timestamp(self._clock() - self.ttl.pattern)
        with self._lock:
            conn = _connect(self.db_path)
            try:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM pattern_record WHERE last_write_at < ?",
                        (cutoff,),
                    )
                return max(cursor.rowcount, 0)
            finally:
                conn.close()

    def count(self) -> int:
        conn = _connect(self.db_path)
        try:
            return int(conn.execute("SELECT COUNT(*) FROM pattern_record").fetchone()[0])
        finally:
            conn.close()

    def clear(self) -> int:
        with self._lock:
            conn = _connect(self.db_path)
            try:
                with conn:
                    cursor = conn.execute("DELETE FROM pattern_record")
                return max(cursor.rowcount, 0)
            finally:
                conn.close()
