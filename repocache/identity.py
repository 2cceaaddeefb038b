"""File fingerprints used as the freshness oracle for every cached artifact."""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from .errors import TransientIOError


@dataclass(frozen=True, slots=True)
class FileIdentity:
    path: str
    content_hash: str
    size: int
    modified_at: float


def content_hash(data: bytes) -> str:
    """Return the sha256 hex digest used for files and blobs alike."""

    return hashlib.sha256(data).hexdigest()


def normalize_path(path: Path | str) -> str:
    """Return the absolute path string used as the ledger key."""

    return str(Path(path).expanduser().resolve())


def read_with_identity(path: Path | str) -> tuple[bytes, FileIdentity]:
    """Read *path* and return its bytes together with their fingerprint."""

    key = normalize_path(path)
    try:
        stat = os.stat(key)
        with open(key, "rb") as handle:
            data = handle.read()
    except OSError as exc:
        raise TransientIOError(exc.errno, f"Unable to read {key}: {exc.strerror or exc}") from exc
    identity = FileIdentity(
        path=key,
        content_hash=content_hash(data),
        size=stat.st_size,
        modified_at=stat.st_mtime,
    )
    return data, identity


def fingerprint(path: Path | str) -> FileIdentity:
    """Return the current :class:`FileIdentity` of *path*."""

    _, identity = read_with_identity(path)
    return identity
