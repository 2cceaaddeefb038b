"""repocache package initialization."""

from __future__ import annotations

from .api import RepoCache, RepoCacheConfigError, set_data_dir
from .errors import (
    CorruptionError,
    LedgerInitError,
    NotIndexedError,
    RepoCacheError,
    TransientIOError,
    UpstreamError,
)

__all__ = [
    "__version__",
    "CorruptionError",
    "LedgerInitError",
    "NotIndexedError",
    "RepoCache",
    "RepoCacheConfigError",
    "RepoCacheError",
    "TransientIOError",
    "UpstreamError",
    "get_version",
    "set_data_dir",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
