"""SQLite plumbing and data-directory resolution shared by the ledgers."""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from .errors import LedgerInitError
from .text import Messages

DEFAULT_CACHE_DIR = Path(os.path.expanduser("~")) / ".repocache"
CACHE_DIR = DEFAULT_CACHE_DIR
_CACHE_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "repocache_cache_dir_override",
    default=None,
)
ENV_HOME = "REPOCACHE_HOME"
LEDGER_DB_FILENAME = "ledger.db"
VECTOR_DB_FILENAME = "vectors.db"
BLOB_DIRNAME = "blobs"
SCHEMA_VERSION = 1

LEDGER_TABLES = (
    "file_record",
    "ast_artifact",
    "metadata_artifact",
    "embedding_artifact",
    "pattern_record",
)


def _chunk_values(values: Sequence[object], size: int) -> Iterable[Sequence[object]]:
    for idx in range(0, len(values), size):
        yield values[idx : idx + size]


def _resolve_cache_dir() -> Path:
    override = _CACHE_DIR_OVERRIDE.get()
    if override is not None:
        return override
    env_home = os.getenv(ENV_HOME)
    if env_home and CACHE_DIR == DEFAULT_CACHE_DIR:
        return Path(env_home).expanduser().resolve()
    return CACHE_DIR


@contextmanager
def cache_dir_context(path: Path | str | None):
    """Temporarily override the data directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _CACHE_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _CACHE_DIR_OVERRIDE.reset(token)


def ensure_cache_dir() -> Path:
    cache_dir = _resolve_cache_dir()
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def set_cache_dir(path: Path | str | None) -> None:
    global CACHE_DIR
    if path is None:
        CACHE_DIR = DEFAULT_CACHE_DIR
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    CACHE_DIR = dir_path


def ledger_db_path(data_dir: Path | None = None) -> Path:
    """Return the absolute path to the cache ledger database."""

    base = data_dir if data_dir is not None else ensure_cache_dir()
    return base / LEDGER_DB_FILENAME


def vector_db_path(data_dir: Path | None = None) -> Path:
    base = data_dir if data_dir is not None else ensure_cache_dir()
    return base / VECTOR_DB_FILENAME


def blob_dir(data_dir: Path | None = None) -> Path:
    base = data_dir if data_dir is not None else ensure_cache_dir()
    return base / BLOB_DIRNAME


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Serialize *moment* the way every ledger table stores time."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _connect(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA temp_store = MEMORY;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _schema_needs_reset(conn: sqlite3.Connection) -> bool:
    version = conn.execute("PRAGMA user_version;").fetchone()[0]
    if version == SCHEMA_VERSION:
        return False
    return any(_table_exists(conn, table) for table in LEDGER_TABLES)


def _reset_ledger_schema(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = OFF;")
    conn.executescript(
        """
        DROP TABLE IF EXISTS embedding_artifact;
        DROP TABLE IF EXISTS metadata_artifact;
        DROP TABLE IF EXISTS ast_artifact;
        DROP TABLE IF EXISTS file_record;
        DROP TABLE IF EXISTS pattern_record;
        """
    )
    conn.execute("PRAGMA foreign_keys = ON;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    if _schema_needs_reset(conn):
        _reset_ledger_schema(conn)
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS file_record (
            path TEXT PRIMARY KEY,
            content_hash TEXT NOT NULL,
            modified_at REAL NOT NULL,
            size INTEGER NOT NULL,
            ast_cached INTEGER NOT NULL DEFAULT 0,
            metadata_cached INTEGER NOT NULL DEFAULT 0,
            embedding_cached INTEGER NOT NULL DEFAULT 0,
            last_write_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS ast_artifact (
            path TEXT PRIMARY KEY REFERENCES file_record(path) ON DELETE CASCADE,
            ast_hash TEXT NOT NULL,
            node_count INTEGER NOT NULL DEFAULT 0,
            last_write_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS metadata_artifact (
            path TEXT PRIMARY KEY REFERENCES file_record(path) ON DELETE CASCADE,
            class_name TEXT,
            package_name TEXT,
            file_type TEXT NOT NULL DEFAULT 'other',
            is_page_object INTEGER NOT NULL DEFAULT 0,
            is_test INTEGER NOT NULL DEFAULT 0,
            methods TEXT NOT NULL DEFAULT '[]',
            imports TEXT NOT NULL DEFAULT '[]',
            annotations TEXT NOT NULL DEFAULT '[]',
            elements TEXT NOT NULL DEFAULT '[]',
            last_write_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS embedding_artifact (
            path TEXT PRIMARY KEY REFERENCES file_record(path) ON DELETE CASCADE,
            embedding_id TEXT NOT NULL,
            dimension INTEGER NOT NULL,
            model_version TEXT NOT NULL,
            last_write_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pattern_record (
            directory_path TEXT PRIMARY KEY,
            patterns TEXT NOT NULL,
            file_count INTEGER NOT NULL DEFAULT 0,
            last_write_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_file_record_written
            ON file_record(last_write_at);

        CREATE INDEX IF NOT EXISTS idx_ast_artifact_hash
            ON ast_artifact(ast_hash);

        CREATE INDEX IF NOT EXISTS idx_pattern_record_written
            ON pattern_record(last_write_at);
        """
    )
    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION};")


def open_ledger_db(db_path: Path) -> None:
    """Create the ledger database and schema, raising ``LedgerInitError`` on failure."""

    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = _connect(db_path)
        try:
            _ensure_schema(conn)
        finally:
            conn.close()
    except (OSError, sqlite3.Error) as exc:
        raise LedgerInitError(
            Messages.ERROR_LEDGER_INIT.format(path=db_path, reason=exc)
        ) from exc

