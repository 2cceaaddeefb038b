"""Public Python API for repocache."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Callable, Iterable

from .blobs import ArtifactStore
from .cache import blob_dir, ensure_cache_dir, ledger_db_path, set_cache_dir, vector_db_path
from .config import Config, config_from_json, load_config, resolve_data_dir, set_config_dir
from .ledger import CacheLedger, TTLPolicy
from .models import ArtifactKind, CacheStats, SweepReport
from .patterns import PatternLedger
from .search import Embedder, EmbeddingBackend, SimilarHit
from .services.cache_service import run_sweep
from .services.java_parser import JavaSourceParser, SourceParser
from .services.pattern_service import DirectoryPatterns, PatternService
from .services.reconcile_service import IndexReconciler, IndexStats, ReconcileResult
from .vcs import GitClient, GitRepository
from .vectorstore import MetadataValue, SQLiteVectorStore, VectorStore


class RepoCacheConfigError(ValueError):
    """Raised when a config payload passed to the public API is invalid."""


def set_data_dir(path: Path | str | None) -> None:
    """Set the base directory for config and cache data."""
    set_config_dir(path)
    set_cache_dir(path)


def _resolve_config(
    config: Config | Mapping[str, object] | str | None, use_config: bool
) -> Config:
    if isinstance(config, Config):
        return config
    base = load_config() if use_config else Config()
    if config is None:
        return base
    try:
        return config_from_json(config, base=base)
    except ValueError as exc:
        raise RepoCacheConfigError(str(exc)) from exc


class RepoCache:
    """Session object wiring the ledgers, vector store and reconciler together.

    Everything is built from one :class:`Config`; collaborators can be
    injected for tests or embedding in other tools. The embedder and parser
    are created lazily so read-only operations work without credentials.
    """

    def __init__(
        self,
        config: Config | Mapping[str, object] | str | None = None,
        *,
        data_dir: Path | str | None = None,
        use_config: bool = True,
        embedder: EmbeddingBackend | None = None,
        parser: SourceParser | None = None,
        vector_store: VectorStore | None = None,
        git_factory: Callable[[Path], GitClient] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = _resolve_config(config, use_config)
        base = (
            Path(data_dir).expanduser().resolve()
            if data_dir is not None
            else resolve_data_dir(self.config)
        )
        if base is None:
            base = ensure_cache_dir()
        else:
            base.mkdir(parents=True, exist_ok=True)
        self.data_dir = base

        ttl = TTLPolicy.from_days(self.config.ttl_days)
        self.blobs = ArtifactStore(blob_dir(base))
        self.ledger = CacheLedger(
            ledger_db_path(base),
            self.blobs,
            ttl=ttl,
            clock=clock,
            blob_grace_seconds=self.config.blob_grace_seconds,
        )
        self.pattern_ledger = PatternLedger(ledger_db_path(base), ttl=ttl, clock=clock)
        self.patterns = PatternService(self.pattern_ledger)
        self.vector_store = vector_store or SQLiteVectorStore(vector_db_path(base))

        self._embedder = embedder
        self._parser = parser
        self._git_factory = git_factory or GitRepository
        self._clock = clock
        self._reconciler: IndexReconciler | None = None
        self._reconciler_lock = Lock()

        if self.config.sweep_on_start:
            run_sweep(self.ledger)

    def _create_embedder(self) -> EmbeddingBackend:
        config = self.config
        return Embedder(
            config.model,
            batch_size=config.batch_size,
            embed_concurrency=config.embed_concurrency,
            provider=config.provider,
            base_url=config.base_url,
            api_key=config.api_key,
        )

    @property
    def reconciler(self) -> IndexReconciler:
        with self._reconciler_lock:
            if self._reconciler is None:
                self._reconciler = IndexReconciler(
                    self.vector_store,
                    self._embedder,
                    self._parser or JavaSourceParser(),
                    embedder_factory=self._create_embedder,
                    ledger=self.ledger,
                    patterns=self.patterns,
                    git_factory=self._git_factory,
                    batch_size=self.config.batch_size,
                    extract_concurrency=self.config.extract_concurrency,
                    extensions=self.config.extensions,
                    skip_dirs=self.config.skip_dirs,
                    clock=self._clock,
                )
            return self._reconciler

    # index -----------------------------------------------------------------

    def reconcile(self, repo_path: Path | str, *, force_full: bool = False) -> ReconcileResult:
        """Synchronize the repository's collection with its git HEAD."""
        return self.reconciler.reconcile(repo_path, force_full=force_full)

    def index_stats(self, repo_path: Path | str) -> IndexStats | None:
        return self.reconciler.index_stats(repo_path)

    def directory_patterns(
        self, repo_path: Path | str, rel_dir: str = "", *, refresh: bool = False
    ) -> DirectoryPatterns:
        return self.reconciler.directory_patterns(repo_path, rel_dir, refresh=refresh)

    # search ----------------------------------------------------------------

    def find_similar(
        self, query: str, repo_path: Path | str, limit: int = 5
    ) -> list[SimilarHit]:
        return self.reconciler.find_similar(query, repo_path, limit)

    def find_similar_filtered(
        self,
        query: str,
        repo_path: Path | str,
        limit: int = 5,
        where: Mapping[str, MetadataValue] | None = None,
    ) -> list[SimilarHit]:
        return self.reconciler.find_similar_filtered(query, repo_path, limit, where)

    def find_similar_tests(
        self, scenario: str, repo_path: Path | str, limit: int = 5
    ) -> list[SimilarHit]:
        return self.reconciler.find_similar_tests(scenario, repo_path, limit)

    def find_page_objects(
        self, repo_path: Path | str, term: str | None = None
    ) -> list[SimilarHit]:
        return self.reconciler.find_page_objects(repo_path, term)

    # cache -----------------------------------------------------------------

    def has_changed(self, path: Path | str) -> bool:
        return self.ledger.has_changed(path)

    def is_valid(self, path: Path | str, kind: ArtifactKind) -> bool:
        return self.ledger.is_valid(path, kind)

    def sweep(self) -> SweepReport:
        return run_sweep(self.ledger)

    def stats(self) -> CacheStats:
        return self.ledger.stats()

    def invalidate(self, paths: Iterable[Path | str]) -> int:
        return self.ledger.invalidate(paths)

    def clear(self) -> bool:
        """Drop every cached record, pattern and blob (vector collections are kept)."""
        return self.ledger.clear()
