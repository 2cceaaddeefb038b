"""Vector collection boundary plus a local SQLite/numpy implementation."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Mapping, Protocol, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from .cache import _chunk_values, _connect, format_timestamp, utc_now
from .errors import UpstreamError
from .text import Messages

MetadataValue = str | int | float | bool | None


@dataclass(slots=True)
class VectorRecord:
    id: str
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    document: str | None = None


@dataclass(slots=True)
class QueryResult:
    id: str
    distance: float | None
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    document: str | None = None


class VectorCollection(Protocol):
    """Named set of ``{id, embedding, metadata, document}`` entries."""

    name: str

    @property
    def metadata(self) -> dict[str, MetadataValue]:
        raise NotImplementedError  # pragma: no cover

    def add(
        self,
        ids: Sequence[str],
        embeddings: np.ndarray,
        metadatas: Sequence[Mapping[str, MetadataValue]],
        documents: Sequence[str],
    ) -> None:
        raise NotImplementedError  # pragma: no cover

    def delete(self, ids: Sequence[str]) -> None:
        raise NotImplementedError  # pragma: no cover

    def query(
        self,
        embedding: np.ndarray,
        *,
        limit: int,
        where: Mapping[str, MetadataValue] | None = None,
    ) -> list[QueryResult]:
        raise NotImplementedError  # pragma: no cover

    def get(self, where: Mapping[str, MetadataValue] | None = None) -> list[VectorRecord]:
        raise NotImplementedError  # pragma: no cover

    def ids(self) -> set[str]:
        raise NotImplementedError  # pragma: no cover

    def modify(self, metadata: Mapping[str, MetadataValue]) -> None:
        raise NotImplementedError  # pragma: no cover

    def count(self) -> int:
        raise NotImplementedError  # pragma: no cover


class VectorStore(Protocol):
    def get_collection(self, name: str) -> VectorCollection | None:
        raise NotImplementedError  # pragma: no cover

    def get_or_create(
        self,
        name: str,
        metadata: Mapping[str, MetadataValue] | None = None,
    ) -> VectorCollection:
        raise NotImplementedError  # pragma: no cover

    def delete_collection(self, name: str) -> bool:
        raise NotImplementedError  # pragma: no cover


def _ensure_vector_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS vector_collection (
            name TEXT PRIMARY KEY,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS vector_entry (
            collection TEXT NOT NULL REFERENCES vector_collection(name) ON DELETE CASCADE,
            id TEXT NOT NULL,
            dimension INTEGER NOT NULL,
            vector_blob BLOB NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            document TEXT,
            PRIMARY KEY(collection, id)
        );
        """
    )


def _matches(metadata: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
    if not where:
        return True
    return all(metadata.get(key) == value for key, value in where.items())


def _store_error(operation: str, exc: Exception) -> UpstreamError:
    return UpstreamError(Messages.ERROR_VECTOR_STORE.format(operation=operation, reason=exc))


class SQLiteCollection:
    """Exact-cosine collection persisted in a shared SQLite file."""

    def __init__(self, store: "SQLiteVectorStore", name: str) -> None:
        self._store = store
        self.name = name

    @property
    def metadata(self) -> dict[str, MetadataValue]:
        try:
            conn = self._store._open()
            try:
                row = conn.execute(
                    "SELECT metadata FROM vector_collection WHERE name = ?",
                    (self.name,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise _store_error("metadata", exc) from exc
        if row is None:
            return {}
        return dict(json.loads(row["metadata"] or "{}"))

    def add(
        self,
        ids: Sequence[str],
        embeddings: np.ndarray,
        metadatas: Sequence[Mapping[str, MetadataValue]],
        documents: Sequence[str],
    ) -> None:
        """Insert or replace entries; existing ids are overwritten."""

        vectors = np.asarray(embeddings, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != len(ids):
            raise ValueError("Embeddings must be a 2D array with one row per id")
        if not (len(ids) == len(metadatas) == len(documents)):
            raise ValueError("ids, metadatas and documents must have the same length")
        rows = [
            (
                self.name,
                entry_id,
                int(vector.shape[0]),
                vector.tobytes(),
                json.dumps(dict(meta), sort_keys=True),
                document,
            )
            for entry_id, vector, meta, document in zip(ids, vectors, metadatas, documents)
        ]
        try:
            with self._store._lock:
                conn = self._store._open()
                try:
                    with conn:
                        conn.executemany(
                            """
                            INSERT INTO vector_entry (
                                collection, id, dimension, vector_blob, metadata, document
                            ) VALUES (?, ?, ?, ?, ?, ?)
                            ON CONFLICT(collection, id) DO UPDATE SET
                                dimension = excluded.dimension,
                                vector_blob = excluded.vector_blob,
                                metadata = excluded.metadata,
                                document = excluded.document
                            """,
                            rows,
                        )
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise _store_error("add", exc) from exc

    def delete(self, ids: Sequence[str]) -> None:
        unique = sorted(set(ids))
        if not unique:
            return
        try:
            with self._store._lock:
                conn = self._store._open()
                try:
                    with conn:
                        for chunk in _chunk_values(unique, 500):
                            placeholders = ", ".join("?" for _ in chunk)
                            conn.execute(
                                f"DELETE FROM vector_entry WHERE collection = ? AND id IN ({placeholders})",
                                (self.name, *chunk),
                            )
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise _store_error("delete", exc) from exc

    def _rows(self, where: Mapping[str, MetadataValue] | None) -> list[sqlite3.Row]:
        try:
            conn = self._store._open()
            try:
                rows = conn.execute(
                    """
                    SELECT id, dimension, vector_blob, metadata, document
                    FROM vector_entry
                    WHERE collection = ?
                    ORDER BY id
                    """,
                    (self.name,),
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise _store_error("read", exc) from exc
        return [row for row in rows if _matches(json.loads(row["metadata"] or "{}"), where)]

    def query(
        self,
        embedding: np.ndarray,
        *,
        limit: int,
        where: Mapping[str, MetadataValue] | None = None,
    ) -> list[QueryResult]:
        """Return up to *limit* entries ordered by ascending cosine distance."""

        if limit <= 0:
            return []
        rows = self._rows(where)
        if not rows:
            return []
        query_vector = np.asarray(embedding, dtype=np.float32).reshape(1, -1)
        dimension = query_vector.shape[1]
        if any(int(row["dimension"]) != dimension for row in rows):
            raise UpstreamError(
                Messages.ERROR_VECTOR_STORE.format(
                    operation="query",
                    reason=f"query dimension {dimension} does not match stored vectors",
                )
            )
        matrix = np.vstack([np.frombuffer(row["vector_blob"], dtype=np.float32) for row in rows])
        similarities = cosine_similarity(query_vector, matrix)[0]
        order = np.argsort(-similarities, kind="stable")[:limit]
        return [
            QueryResult(
                id=rows[idx]["id"],
                distance=float(1.0 - similarities[idx]),
                metadata=json.loads(rows[idx]["metadata"] or "{}"),
                document=rows[idx]["document"],
            )
            for idx in order
        ]

    def get(self, where: Mapping[str, MetadataValue] | None = None) -> list[VectorRecord]:
        return [
            VectorRecord(
                id=row["id"],
                metadata=json.loads(row["metadata"] or "{}"),
                document=row["document"],
            )
            for row in self._rows(where)
        ]

    def ids(self) -> set[str]:
        return {record.id for record in self.get()}

    def modify(self, metadata: Mapping[str, MetadataValue]) -> None:
        """Merge *metadata* into the collection metadata."""

        try:
            with self._store._lock:
                conn = self._store._open()
                try:
                    with conn:
                        conn.execute("BEGIN IMMEDIATE;")
                        row = conn.execute(
                            "SELECT metadata FROM vector_collection WHERE name = ?",
                            (self.name,),
                        ).fetchone()
                        if row is None:
                            raise _store_error("modify", LookupError(self.name))
                        merged = dict(json.loads(row["metadata"] or "{}"))
                        merged.update(metadata)
                        conn.execute(
                            "UPDATE vector_collection SET metadata = ? WHERE name = ?",
                            (json.dumps(merged, sort_keys=True), self.name),
                        )
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise _store_error("modify", exc) from exc

    def count(self) -> int:
        try:
            conn = self._store._open()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) FROM vector_entry WHERE collection = ?",
                    (self.name,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise _store_error("count", exc) from exc
        return int(row[0])


class SQLiteVectorStore:
    """Collections persisted to one SQLite file (``vectors.db``)."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = _connect(self.db_path)
            try:
                _ensure_vector_schema(conn)
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as exc:
            raise _store_error("open", exc) from exc

    def _open(self) -> sqlite3.Connection:
        return _connect(self.db_path)

    def get_collection(self, name: str) -> SQLiteCollection | None:
        try:
            conn = self._open()
            try:
                row = conn.execute(
                    "SELECT name FROM vector_collection WHERE name = ?",
                    (name,),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise _store_error("get_collection", exc) from exc
        if row is None:
            return None
        return SQLiteCollection(self, name)

    def get_or_create(
        self,
        name: str,
        metadata: Mapping[str, MetadataValue] | None = None,
    ) -> SQLiteCollection:
        try:
            with self._lock:
                conn = self._open()
                try:
                    with conn:
                        conn.execute(
                            """
                            INSERT INTO vector_collection (name, metadata, created_at)
                            VALUES (?, ?, ?)
                            ON CONFLICT(name) DO NOTHING
                            """,
                            (
                                name,
                                json.dumps(dict(metadata or {}), sort_keys=True),
                                format_timestamp(utc_now()),
                            ),
                        )
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise _store_error("get_or_create", exc) from exc
        return SQLiteCollection(self, name)

    def delete_collection(self, name: str) -> bool:
        try:
            with self._lock:
                conn = self._open()
                try:
                    with conn:
                        cursor = conn.execute(
                            "DELETE FROM vector_collection WHERE name = ?",
                            (name,),
                        )
                finally:
                    conn.close()
        except sqlite3.Error as exc:
            raise _store_error("delete_collection", exc) from exc
        return cursor.rowcount > 0
