"""Content-addressed blob storage for cached syntax trees."""

from __future__ import annotations

import logging
import os
import re
import tempfile
import time
from pathlib import Path
from threading import Lock
from typing import Iterable

from .errors import CorruptionError
from .identity import content_hash

logger = logging.getLogger(__name__)

BLOB_SUFFIX = ".blob"
_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def _validate_hash(value: str) -> str:
    if not isinstance(value, str) or not _HASH_PATTERN.match(value):
        raise ValueError(f"Not a sha256 hex digest: {value!r}")
    return value


class ArtifactStore:
    """Immutable blobs stored as ``<root>/<sha256>.blob``.

    ``put`` is idempotent and atomic: bytes are written to a temp file in the
    same directory and renamed into place, so readers never observe a partial
    blob. ``put`` and ``sweep`` share one lock so an in-process sweep cannot
    delete a blob between its write and the ledger row that references it.
    Writers in other processes are covered by ``sweep(min_age_seconds=...)``.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = Lock()

    def _path_for(self, blob_hash: str) -> Path:
        return self.root / f"{_validate_hash(blob_hash)}{BLOB_SUFFIX}"

    def put(self, data: bytes) -> str:
        digest = content_hash(data)
        target = self._path_for(digest)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            if target.exists():
                # refresh age so a concurrent sweep's grace window covers the reuse
                os.utime(target, None)
                return digest
            fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=BLOB_SUFFIX)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        return digest

    def get(self, blob_hash: str) -> bytes | None:
        """Return the bytes stored under *blob_hash* or None if absent.

        Raises :class:`CorruptionError` when the stored bytes no longer hash
        to their name.
        """

        path = self._path_for(blob_hash)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None
        if content_hash(data) != blob_hash:
            raise CorruptionError(f"Blob {blob_hash} does not match its content digest")
        return data

    def contains(self, blob_hash: str) -> bool:
        return self._path_for(blob_hash).exists()

    def hashes(self) -> set[str]:
        if not self.root.exists():
            return set()
        found: set[str] = set()
        for entry in self.root.iterdir():
            if not entry.name.endswith(BLOB_SUFFIX):
                continue
            stem = entry.name[: -len(BLOB_SUFFIX)]
            if _HASH_PATTERN.match(stem):
                found.add(stem)
        return found

    def sweep(self, live_hashes: Iterable[str], min_age_seconds: float = 0.0) -> int:
        """Delete every blob not in *live_hashes*, returning how many went.

        Blobs modified within the last *min_age_seconds* are kept.
        """

        live = set(live_hashes)
        removed = 0
        with self._lock:
            if not self.root.exists():
                return 0
            cutoff = time.time() - max(0.0, float(min_age_seconds))
            for blob_hash in self.hashes():
                if blob_hash in live:
                    continue
                path = self._path_for(blob_hash)
                try:
                    if min_age_seconds > 0 and path.stat().st_mtime > cutoff:
                        continue
                    path.unlink()
                except FileNotFoundError:
                    continue
                removed += 1
        if removed:
            logger.info("Removed %d orphaned blobs from %s", removed, self.root)
        return removed

    def clear(self) -> int:
        return self.sweep(())
