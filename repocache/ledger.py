"""Durable per-file cache state with per-kind TTL evaluation."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable, Mapping

from .blobs import ArtifactStore
from .cache import (
    _chunk_values,
    _connect,
    format_timestamp,
    open_ledger_db,
    parse_timestamp,
    utc_now,
)
from .errors import CorruptionError, TransientIOError
from .identity import FileIdentity, fingerprint, normalize_path
from .models import (
    ArtifactKind,
    CacheStats,
    EmbeddingRef,
    FileMetadata,
    SweepReport,
    WriteResult,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_ARTIFACT_TABLES: dict[ArtifactKind, str] = {
    ArtifactKind.AST: "ast_artifact",
    ArtifactKind.METADATA: "metadata_artifact",
    ArtifactKind.EMBEDDING: "embedding_artifact",
}
_FLAG_COLUMNS: dict[ArtifactKind, str] = {
    ArtifactKind.AST: "ast_cached",
    ArtifactKind.METADATA: "metadata_cached",
    ArtifactKind.EMBEDDING: "embedding_cached",
}
_SQLITE_MAX_VARS = 900


@dataclass(frozen=True, slots=True)
class TTLPolicy:
    file_identity: timedelta = timedelta(days=7)
    ast: timedelta = timedelta(days=30)
    metadata: timedelta = timedelta(days=7)
    embedding: timedelta = timedelta(days=30)
    pattern: timedelta = timedelta(days=3)

    def for_kind(self, kind: ArtifactKind) -> timedelta:
        kind = ArtifactKind(kind)
        if kind is ArtifactKind.AST:
            return self.ast
        if kind is ArtifactKind.METADATA:
            return self.metadata
        return self.embedding

    @classmethod
    def from_days(cls, overrides: Mapping[str, float] | None = None) -> "TTLPolicy":
        """Build a policy from ``{"file"|"ast"|"metadata"|"embedding"|"pattern": days}``."""

        defaults = cls()
        values = dict(overrides or {})

        def pick(key: str, fallback: timedelta) -> timedelta:
            days = values.get(key)
            if days is None:
                return fallback
            return timedelta(days=float(days))

        return cls(
            file_identity=pick("file", defaults.file_identity),
            ast=pick("ast", defaults.ast),
            metadata=pick("metadata", defaults.metadata),
            embedding=pick("embedding", defaults.embedding),
            pattern=pick("pattern", defaults.pattern),
        )


def serialize_tree(tree: Any) -> bytes:
    """Canonical JSON bytes for a syntax tree, identical for identical trees."""

    return json.dumps(tree, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode(
        "utf-8"
    )


def count_tree_nodes(tree: Any) -> int:
    total = 0
    stack = [tree]
    while stack:
        node = stack.pop()
        if isinstance(node, Mapping):
            total += 1
            stack.extend(node.get("children") or ())
        elif isinstance(node, (list, tuple)):
            stack.extend(node)
    return total


class CacheLedger:
    """SQLite ledger answering "is the cached artifact for this file still good?".

    Every lookup re-fingerprints the file, so validity never depends on a
    stored mtime alone. Mutations serialize on one ledger-wide lock and each
    operation opens its own WAL connection.
    """

    def __init__(
        self,
        db_path: Path,
        blob_store: ArtifactStore,
        *,
        ttl: TTLPolicy | None = None,
        clock: Clock | None = None,
        blob_grace_seconds: float = 0.0,
    ) -> None:
        self.db_path = Path(db_path)
        self.blobs = blob_store
        self.ttl = ttl or TTLPolicy()
        self.blob_grace_seconds = max(0.0, float(blob_grace_seconds))
        self._clock: Clock = clock or utc_now
        self._lock = Lock()
        open_ledger_db(self.db_path)

    # ------------------------------------------------------------------ reads

    def has_changed(self, path: Path | str) -> bool:
        try:
            identity = fingerprint(path)
        except TransientIOError as exc:
            logger.debug("Treating %s as changed: %s", path, exc)
            return True
        try:
            conn = _connect(self.db_path)
            try:
                record = self._load_record(conn, identity.path)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("Ledger read failed for %s: %s", identity.path, exc)
            return True
        return _record_changed(record, identity)

    def is_valid(
        self,
        path: Path | str,
        kind: ArtifactKind,
        identity: FileIdentity | None = None,
    ) -> bool:
        return self._lookup(path, ArtifactKind(kind), identity) is not None

    def get(
        self,
        path: Path | str,
        kind: ArtifactKind,
        identity: FileIdentity | None = None,
    ) -> Any | None:
        """Return the cached payload for *path* or None when it cannot be trusted.

        When *identity* is given it is used as the current fingerprint instead
        of re-reading the file, so callers holding the bytes get an artifact
        that matches exactly those bytes.
        """

        kind = ArtifactKind(kind)
        row = self._lookup(path, kind, identity)
        if row is None:
            return None
        if kind is ArtifactKind.AST:
            return self._load_tree(row)
        if kind is ArtifactKind.METADATA:
            return _metadata_from_row(row)
        return EmbeddingRef(
            embedding_id=row["embedding_id"],
            dimension=int(row["dimension"]),
            model_version=row["model_version"],
        )

    def _lookup(
        self,
        path: Path | str,
        kind: ArtifactKind,
        identity: FileIdentity | None = None,
    ) -> sqlite3.Row | None:
        if identity is None:
            try:
                identity = fingerprint(path)
            except TransientIOError as exc:
                logger.debug("Cache miss for %s: %s", path, exc)
                return None
        table = _ARTIFACT_TABLES[kind]
        try:
            conn = _connect(self.db_path)
            try:
                record = self._load_record(conn, identity.path)
                if _record_changed(record, identity):
                    return None
                row = conn.execute(
                    f"SELECT * FROM {table} WHERE path = ?",
                    (identity.path,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("Ledger read failed for %s: %s", identity.path, exc)
            return None
        if row is None:
            return None
        if self._is_expired(row["last_write_at"], self.ttl.for_kind(kind)):
            return None
        return row

    def _load_tree(self, row: sqlite3.Row) -> Any | None:
        ast_hash = row["ast_hash"]
        try:
            data = self.blobs.get(ast_hash)
            if data is None:
                raise CorruptionError(f"Blob {ast_hash} referenced by {row['path']} is missing")
            return json.loads(data.decode("utf-8"))
        except (CorruptionError, OSError, ValueError) as exc:
            logger.warning("Discarding cached syntax tree for %s: %s", row["path"], exc)
            return None

    @staticmethod
    def _load_record(conn: sqlite3.Connection, key: str) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT content_hash, modified_at FROM file_record WHERE path = ?",
            (key,),
        ).fetchone()

    def _is_expired(self, written: str | None, ttl: timedelta) -> bool:
        moment = parse_timestamp(written)
        if moment is None:
            return True
        return self._clock() - moment > ttl

    # ----------------------------------------------------------------- writes

    def put(
        self,
        path: Path | str,
        kind: ArtifactKind,
        payload: Any,
        identity: FileIdentity | None = None,
    ) -> WriteResult:
        """Record *payload* as the current *kind* artifact for *path*.

        Pass the *identity* observed when the payload was computed so the
        record describes exactly the bytes that produced it. Failures are
        logged and reported through the returned :class:`WriteResult`.
        """

        kind = ArtifactKind(kind)
        key = normalize_path(path)
        try:
            if identity is None:
                identity = fingerprint(key)
        except TransientIOError as exc:
            logger.warning("Skipping %s cache write for %s: %s", kind.value, key, exc)
            return WriteResult(ok=False, path=key, kind=kind.value, error=str(exc))
        try:
            with self._lock:
                columns = self._artifact_columns(kind, payload)
                self._write(identity, kind, columns)
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to cache %s for %s: %s", kind.value, key, exc)
            return WriteResult(
                ok=False,
                path=key,
                kind=kind.value,
                content_hash=identity.content_hash,
                error=str(exc),
            )
        return WriteResult(ok=True, path=key, kind=kind.value, content_hash=identity.content_hash)

    def _artifact_columns(self, kind: ArtifactKind, payload: Any) -> dict[str, Any]:
        if kind is ArtifactKind.AST:
            ast_hash = self.blobs.put(serialize_tree(payload))
            return {"ast_hash": ast_hash, "node_count": count_tree_nodes(payload)}
        if kind is ArtifactKind.METADATA:
            metadata = payload if isinstance(payload, FileMetadata) else FileMetadata.from_dict(payload)
            return {
                "class_name": metadata.class_name,
                "package_name": metadata.package_name,
                "file_type": metadata.file_type.value,
                "is_page_object": 1 if metadata.is_page_object else 0,
                "is_test": 1 if metadata.is_test else 0,
                "methods": json.dumps([method.to_dict() for method in metadata.methods]),
                "imports": json.dumps(list(metadata.imports)),
                "annotations": json.dumps(list(metadata.annotations)),
                "elements": json.dumps([element.to_dict() for element in metadata.elements]),
            }
        if not isinstance(payload, EmbeddingRef):
            raise TypeError(f"Embedding payload must be an EmbeddingRef, got {type(payload)!r}")
        return {
            "embedding_id": payload.embedding_id,
            "dimension": int(payload.dimension),
            "model_version": payload.model_version,
        }

    def _write(self, identity: FileIdentity, kind: ArtifactKind, columns: dict[str, Any]) -> None:
        written_at = format_timestamp(self._clock())
        flag = _FLAG_COLUMNS[kind]
        table = _ARTIFACT_TABLES[kind]
        conn = _connect(self.db_path)
        try:
            with conn:
                conn.execute("BEGIN IMMEDIATE;")
                existing = conn.execute(
                    "SELECT content_hash FROM file_record WHERE path = ?",
                    (identity.path,),
                ).fetchone()
                if existing is not None and existing["content_hash"] != identity.content_hash:
                    for other_kind, other_table in _ARTIFACT_TABLES.items():
                        if other_kind is kind:
                            continue
                        conn.execute(f"DELETE FROM {other_table} WHERE path = ?", (identity.path,))
                    conn.execute(
                        """
                        UPDATE file_record
                        SET ast_cached = 0, metadata_cached = 0, embedding_cached = 0
                        WHERE path = ?
                        """,
                        (identity.path,),
                    )
                # upsert keeps the row alive so cascading deletes do not fire
                conn.execute(
                    f"""
                    INSERT INTO file_record (
                        path, content_hash, modified_at, size, {flag}, last_write_at
                    ) VALUES (?, ?, ?, ?, 1, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        content_hash = excluded.content_hash,
                        modified_at = excluded.modified_at,
                        size = excluded.size,
                        {flag} = 1,
                        last_write_at = excluded.last_write_at
                    """,
                    (
                        identity.path,
                        identity.content_hash,
                        identity.modified_at,
                        identity.size,
                        written_at,
                    ),
                )
                names = ["path", *columns.keys(), "last_write_at"]
                values = [identity.path, *columns.values(), written_at]
                placeholders = ", ".join("?" for _ in names)
                updates = ", ".join(f"{name} = excluded.{name}" for name in names[1:])
                conn.execute(
                    f"""
                    INSERT INTO {table} ({", ".join(names)}) VALUES ({placeholders})
                    ON CONFLICT(path) DO UPDATE SET {updates}
                    """,
                    values,
                )
        finally:
            conn.close()

    # ------------------------------------------------------------ maintenance

    def invalidate(self, paths: Iterable[Path | str]) -> int:
        """Forget every cached artifact for *paths*; returns records removed."""

        keys = sorted({normalize_path(path) for path in paths})
        if not keys:
            return 0
        removed = 0
        try:
            with self._lock:
                conn = _connect(self.db_path)
                try:
                    with conn:
                        conn.execute("BEGIN IMMEDIATE;")
                        for chunk in _chunk_values(keys, _SQLITE_MAX_VARS):
                            placeholders = ", ".join("?" for _ in chunk)
                            cursor = conn.execute(
                                f"DELETE FROM file_record WHERE path IN ({placeholders})",
                                tuple(chunk),
                            )
                            removed += max(cursor.rowcount, 0)
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            logger.warning("Cache invalidation failed: %s", exc)
            return 0
        logger.debug("Invalidated %d of %d requested paths", removed, len(keys))
        return removed

    def sweep(self) -> SweepReport:
        """Delete expired records, expired artifacts and orphaned blobs.

        Raises ``sqlite3.Error`` or ``OSError``; periodic callers go through
        :func:`repocache.services.cache_service.run_sweep`.
        """

        now = self._clock()
        with self._lock:
            conn = _connect(self.db_path)
            try:
                with conn:
                    conn.execute("BEGIN IMMEDIATE;")
                    expired_artifacts = 0
                    for kind, table in _ARTIFACT_TABLES.items():
                        cutoff = format_timestamp(now - self.ttl.for_kind(kind))
                        expired_artifacts += conn.execute(
                            f"DELETE FROM {table} WHERE last_write_at < ?",
                            (cutoff,),
                        ).rowcount
                        flag = _FLAG_COLUMNS[kind]
                        conn.execute(
                            f"""
                            UPDATE file_record SET {flag} = 0
                            WHERE {flag} = 1 AND path NOT IN (SELECT path FROM {table})
                            """
                        )
                    # records only age out once no artifact references them
                    expired_records = conn.execute(
                        """
                        DELETE FROM file_record
                        WHERE last_write_at < ?
                          AND path NOT IN (
                            SELECT path FROM ast_artifact
                            UNION SELECT path FROM metadata_artifact
                            UNION SELECT path FROM embedding_artifact
                          )
                        """,
                        (format_timestamp(now - self.ttl.file_identity),),
                    ).rowcount
                    expired_patterns = conn.execute(
                        "DELETE FROM pattern_record WHERE last_write_at < ?",
                        (format_timestamp(now - self.ttl.pattern),),
                    ).rowcount
            finally:
                conn.close()
            orphaned = self.blobs.sweep(
                self.live_blob_hashes(), min_age_seconds=self.blob_grace_seconds
            )
        report = SweepReport(
            expired_records=max(expired_records, 0),
            expired_artifacts=max(expired_artifacts, 0),
            expired_patterns=max(expired_patterns, 0),
            orphaned_blobs=orphaned,
        )
        return report

    def live_blob_hashes(self) -> set[str]:
        """Blob hashes still referenced by an AST artifact row."""

        conn = _connect(self.db_path)
        try:
            return {
                row["ast_hash"] for row in conn.execute("SELECT DISTINCT ast_hash FROM ast_artifact")
            }
        finally:
            conn.close()

    def stats(self) -> CacheStats:
        now = self._clock()
        try:
            conn = _connect(self.db_path)
            try:
                counts = {
                    table: int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
                    for table in (
                        "file_record",
                        "ast_artifact",
                        "metadata_artifact",
                        "embedding_artifact",
                        "pattern_record",
                    )
                }
                recent = int(
                    conn.execute(
                        "SELECT COUNT(*) FROM file_record WHERE last_write_at >= ?",
                        (format_timestamp(now - timedelta(hours=1)),),
                    ).fetchone()[0]
                )
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.warning("Unable to read cache stats: %s", exc)
            return CacheStats()
        total = counts["file_record"]
        return CacheStats(
            file_records=total,
            ast_artifacts=counts["ast_artifact"],
            metadata_artifacts=counts["metadata_artifact"],
            embedding_artifacts=counts["embedding_artifact"],
            pattern_records=counts["pattern_record"],
            blobs=len(self.blobs.hashes()),
            recent_write_rate=(recent / total) if total else 0.0,
        )

    def clear(self) -> bool:
        """Remove every record, pattern and blob. Returns False on failure."""

        try:
            with self._lock:
                conn = _connect(self.db_path)
                try:
                    with conn:
                        conn.execute("BEGIN IMMEDIATE;")
                        conn.execute("DELETE FROM file_record")
                        for table in _ARTIFACT_TABLES.values():
                            conn.execute(f"DELETE FROM {table}")
                        conn.execute("DELETE FROM pattern_record")
                finally:
                    conn.close()
                self.blobs.clear()
        except (sqlite3.Error, OSError) as exc:
            logger.error("Failed to clear cache ledger: %s", exc)
            return False
        return True


def _record_changed(record: sqlite3.Row | None, identity: FileIdentity) -> bool:
    if record is None:
        return True
    if record["content_hash"] != identity.content_hash:
        return True
    return float(record["modified_at"]) < identity.modified_at


def _metadata_from_row(row: sqlite3.Row) -> FileMetadata | None:
    try:
        return FileMetadata.from_dict(
            {
                "class_name": row["class_name"],
                "package_name": row["package_name"],
                "file_type": row["file_type"],
                "is_page_object": bool(row["is_page_object"]),
                "is_test": bool(row["is_test"]),
                "methods": json.loads(row["methods"] or "[]"),
                "imports": json.loads(row["imports"] or "[]"),
                "annotations": json.loads(row["annotations"] or "[]"),
                "elements": json.loads(row["elements"] or "[]"),
            }
        )
    except (ValueError, TypeError, AttributeError) as exc:
        logger.warning("Discarding cached metadata for %s: %s", row["path"], exc)
        return None


__all__ = [
    "CacheLedger",
    "Clock",
    "TTLPolicy",
    "count_tree_nodes",
    "serialize_tree",
]
