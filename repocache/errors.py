"""Error taxonomy shared by the cache ledger and the index reconciler.

Missing cache entries and missing collections are not errors: lookups return
``None``/``False`` for them. The classes here cover the remaining cases:

* :class:`TransientIOError` - file, git or network I/O that a caller may retry.
* :class:`CorruptionError` - a stored artifact cannot be read back; callers
  degrade it to a cache miss.
* :class:`UpstreamError` - parser, embedding provider or vector store failed;
  the current operation is aborted and ledger state is left as it was.
* :class:`LedgerInitError` - the ledger storage cannot be opened at all.
"""

from __future__ import annotations


class RepoCacheError(Exception):
    """Base class for every error raised by repocache."""


class TransientIOError(RepoCacheError, OSError):
    """Raised when reading files, running git or reaching a service fails."""


class CorruptionError(RepoCacheError):
    """Raised when a stored artifact does not match its recorded identity."""


class UpstreamError(RepoCacheError, RuntimeError):
    """Raised when an external collaborator returns a failure."""


class LedgerInitError(RepoCacheError):
    """Raised when the cache ledger storage cannot be initialized."""


class NotIndexedError(RepoCacheError, LookupError):
    """Raised when searching a repository that has no collection yet."""
