"""Keep a repository's vector collection in sync with its git HEAD."""

from __future__ import annotations

import hashlib
import json
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable, Mapping, Sequence, TypeVar

import numpy as np

from ..cache import format_timestamp, utc_now
from ..config import DEFAULT_BATCH_SIZE, DEFAULT_EXTRACT_CONCURRENCY
from ..errors import NotIndexedError, RepoCacheError, TransientIOError, UpstreamError
from ..ledger import CacheLedger
from ..models import ArtifactKind, EmbeddingRef, FileMetadata
from ..search import EmbeddingBackend, SimilarHit, similarity_from_distance
from ..text import Messages
from ..utils import SourceFilter, ensure_positive, resolve_directory
from ..vcs import GitClient, GitRepository
from ..vectorstore import MetadataValue, VectorCollection, VectorStore
from .analysis_service import FileAnalysis, FileAnalyzer
from .java_parser import SourceParser
from .pattern_service import DirectoryPatterns, PatternService, aggregate_patterns

logger = logging.getLogger(__name__)

COMMIT_KEY = "last_indexed_commit"
INDEXED_AT_KEY = "last_indexed_at"
REPO_PATH_KEY = "repo_path"
COLLECTION_PREFIX = "repo_"
SIMILAR_TEST_THRESHOLD = 0.5
PAGE_OBJECT_QUERY_LIMIT = 20
_JSON_FIELDS = ("methods", "imports")

T = TypeVar("T")


class ReconcileMode(str, Enum):
    NOOP = "noop"
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(slots=True)
class ReconcileResult:
    repo_path: str
    collection: str
    mode: ReconcileMode
    commit: str
    previous_commit: str | None = None
    indexed: int = 0
    removed: int = 0
    parsed: int = 0
    changed_paths: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class IndexStats:
    total_files: int
    last_indexed_at: str | None
    last_indexed_commit: str | None


def collection_name(repo_path: Path | str) -> str:
    """Return the stable collection name for a repository path."""

    resolved = str(Path(repo_path).expanduser().resolve())
    digest = hashlib.sha1(resolved.encode("utf-8")).hexdigest()
    return f"{COLLECTION_PREFIX}{digest}"


def _chunk(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for idx in range(0, len(items), size):
        yield items[idx : idx + size]


def _directory_of(rel_path: str) -> str:
    return rel_path.rsplit("/", 1)[0] if "/" in rel_path else ""


def _directory_key(root: Path, rel_dir: str) -> str:
    return (root / rel_dir).as_posix() if rel_dir else root.as_posix()


def vector_metadata(rel_path: str, metadata: FileMetadata) -> dict[str, MetadataValue]:
    """Flatten file metadata into scalar values a vector collection can filter on."""

    return {
        "file_path": rel_path,
        "class_name": metadata.class_name or "",
        "package_name": metadata.package_name or "",
        "file_type": metadata.file_type.value,
        "is_page_object": bool(metadata.is_page_object),
        "is_test": bool(metadata.is_test),
        "methods": json.dumps(metadata.method_names),
        "imports": json.dumps(list(metadata.imports)),
    }


def _decode_metadata(metadata: Mapping[str, MetadataValue]) -> dict[str, Any]:
    decoded: dict[str, Any] = dict(metadata)
    for key in _JSON_FIELDS:
        raw = decoded.get(key)
        if isinstance(raw, str):
            try:
                decoded[key] = json.loads(raw)
            except json.JSONDecodeError:
                decoded[key] = []
    return decoded


class IndexReconciler:
    """Incrementally reconcile per-repository vector collections with git.

    A collection's id-space is the set of eligible root-relative posix paths
    at the commit recorded in its ``last_indexed_commit`` metadata. The
    commit only advances after every batch of a build or diff has been
    upserted, so an interrupted run is simply repeated.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingBackend | None,
        parser: SourceParser,
        *,
        embedder_factory: Callable[[], EmbeddingBackend] | None = None,
        ledger: CacheLedger | None = None,
        patterns: PatternService | None = None,
        git_factory: Callable[[Path], GitClient] = GitRepository,
        batch_size: int = DEFAULT_BATCH_SIZE,
        extract_concurrency: int = DEFAULT_EXTRACT_CONCURRENCY,
        extensions: Sequence[str] | None = None,
        skip_dirs: Iterable[str] = (),
        respect_gitignore: bool = True,
        model_version: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self._embedder = embedder
        self._embedder_factory = embedder_factory
        self._embedder_lock = Lock()
        self.ledger = ledger
        self.patterns = patterns
        self.analyzer = FileAnalyzer(parser, ledger)
        self.git_factory = git_factory
        self.batch_size = ensure_positive(batch_size, "batch_size")
        self.extract_concurrency = ensure_positive(extract_concurrency, "extract_concurrency")
        self.extensions = tuple(extensions) if extensions else None
        self.skip_dirs = tuple(skip_dirs)
        self.respect_gitignore = respect_gitignore
        self._model_version = model_version
        self._clock = clock or utc_now
        self._locks: dict[str, Lock] = {}
        self._locks_guard = Lock()

    @property
    def embedder(self) -> EmbeddingBackend:
        """Return the embedding backend, creating it on first use."""

        with self._embedder_lock:
            if self._embedder is None:
                if self._embedder_factory is None:
                    raise UpstreamError(Messages.ERROR_EMBEDDER_MISSING)
                self._embedder = self._embedder_factory()
            return self._embedder

    @property
    def model_version(self) -> str:
        if self._model_version:
            return self._model_version
        return getattr(self.embedder, "model_name", None) or "unknown"

    def _repo_lock(self, key: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    def source_filter(self, root: Path) -> SourceFilter:
        return SourceFilter(
            root,
            extensions=self.extensions,
            skip_dirs=self.skip_dirs,
            respect_gitignore=self.respect_gitignore,
        )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def reconcile(self, repo_path: Path | str, force_full: bool = False) -> ReconcileResult:
        """Bring the repository's collection up to date with git HEAD.

        Calls for the same repository serialize on a per-repository lock. A
        failed step raises and leaves the recorded commit where it was; this
        method never retries. Embedding providers do retry rate limits and
        5xx responses internally (see
        :func:`repocache.providers.base.call_with_retries`) before an error
        surfaces here.
        """

        root = resolve_directory(repo_path)
        with self._repo_lock(str(root)):
            return self._reconcile_locked(root, force_full)

    def _reconcile_locked(self, root: Path, force_full: bool) -> ReconcileResult:
        name = collection_name(root)
        git = self.git_factory(root)
        head = git.current_head()
        source_filter = self.source_filter(root)

        collection = self._step("get_collection", root, lambda: self.store.get_collection(name))
        if collection is not None and force_full:
            logger.info("Forced full rebuild of %s", root)
            self._drop(root, name)
            collection = None

        previous: str | None = None
        if collection is not None:
            previous = collection.metadata.get(COMMIT_KEY) or None
            if previous is None:
                logger.warning("Collection %s has no recorded commit; rebuilding", name)
                self._drop(root, name)
            elif previous == head:
                logger.info("Collection %s already at %s", name, head)
                return ReconcileResult(
                    repo_path=str(root),
                    collection=name,
                    mode=ReconcileMode.NOOP,
                    commit=head,
                    previous_commit=previous,
                )
            elif not git.has_commit(previous):
                logger.warning(
                    "Recorded commit %s is unknown to %s; rebuilding", previous, root
                )
                self._drop(root, name)
            else:
                return self._incremental(root, collection, git, source_filter, previous, head)

        return self._full_build(root, name, source_filter, head, previous)

    def _drop(self, root: Path, name: str) -> None:
        self._step("delete_collection", root, lambda: self.store.delete_collection(name))

    def _full_build(
        self,
        root: Path,
        name: str,
        source_filter: SourceFilter,
        head: str,
        previous: str | None,
    ) -> ReconcileResult:
        collection = self._step(
            "create_collection",
            root,
            lambda: self.store.get_or_create(name, {REPO_PATH_KEY: str(root)}),
        )
        try:
            rel_paths = list(source_filter.walk())
        except OSError as exc:
            raise TransientIOError(
                Messages.ERROR_RECONCILE_STEP.format(step="walk", path=root, reason=exc)
            ) from exc
        logger.info("Full build of %s: %d eligible files", root, len(rel_paths))
        result = ReconcileResult(
            repo_path=str(root),
            collection=name,
            mode=ReconcileMode.FULL,
            commit=head,
            previous_commit=previous,
            changed_paths=rel_paths,
        )
        analyses = self._index_paths(root, collection, rel_paths, result)
        self._mark_synced(root, collection, head)

        by_directory: dict[str, list[FileMetadata]] = defaultdict(list)
        for analysis in analyses:
            by_directory[_directory_of(analysis.rel_path)].append(analysis.metadata)
        if self.patterns is not None:
            for rel_dir, files in sorted(by_directory.items()):
                self.patterns.refresh(_directory_key(root, rel_dir), files)
        return result

    def _incremental(
        self,
        root: Path,
        collection: VectorCollection,
        git: GitClient,
        source_filter: SourceFilter,
        previous: str,
        head: str,
    ) -> ReconcileResult:
        changed = set(git.diff_names_only(previous, head))
        eligible = sorted(path for path in changed if source_filter.accepts(path))
        # paths that became ineligible in this diff must still leave the index
        indexed = self._step("ids", root, collection.ids) & changed
        touched = sorted(indexed.union(eligible))
        result = ReconcileResult(
            repo_path=str(root),
            collection=collection.name,
            mode=ReconcileMode.INCREMENTAL,
            commit=head,
            previous_commit=previous,
            changed_paths=touched,
        )
        if not touched:
            logger.info("No eligible changes between %s and %s", previous, head)
            self._mark_synced(root, collection, head)
            return result

        self._step("delete", root, lambda: collection.delete(touched))
        existing = [path for path in eligible if (root / path).is_file()]
        result.removed = len(touched) - len(existing)
        logger.info(
            "Incremental update of %s: %d changed, %d removed",
            root,
            len(existing),
            result.removed,
        )
        self._index_paths(root, collection, existing, result)
        self._mark_synced(root, collection, head)

        for rel_dir in sorted({_directory_of(path) for path in touched}):
            if not (root / rel_dir).is_dir():
                continue
            try:
                self.directory_patterns(root, rel_dir, refresh=True)
            except RepoCacheError as exc:
                logger.warning("Pattern refresh failed for %s/%s: %s", root, rel_dir, exc)
        return result

    def _index_paths(
        self,
        root: Path,
        collection: VectorCollection,
        rel_paths: Sequence[str],
        result: ReconcileResult,
    ) -> list[FileAnalysis]:
        processed: list[FileAnalysis] = []
        for batch in _chunk(rel_paths, self.batch_size):
            analyses = self._analyze_batch(root, batch)
            documents = [analysis.document for analysis in analyses]
            vectors = self._embed_documents(root, documents)
            ids = [analysis.rel_path for analysis in analyses]
            metadatas = [vector_metadata(a.rel_path, a.metadata) for a in analyses]
            self._step(
                "upsert",
                root,
                lambda: collection.add(ids, vectors, metadatas, documents),
            )
            self._record_embeddings(collection.name, analyses, vectors)
            result.indexed += len(analyses)
            result.parsed += sum(1 for analysis in analyses if analysis.parsed)
            processed.extend(analyses)
        return processed

    def _analyze_batch(self, root: Path, batch: Sequence[str]) -> list[FileAnalysis]:
        def _analyze_one(rel_path: str) -> FileAnalysis:
            try:
                return self.analyzer.analyze(root / rel_path, rel_path)
            except RepoCacheError:
                raise
            except Exception as exc:
                raise UpstreamError(
                    Messages.ERROR_PARSE_FAILED.format(path=rel_path, reason=exc)
                ) from exc

        max_workers = min(self.extract_concurrency, len(batch))
        if max_workers <= 1:
            return [_analyze_one(rel_path) for rel_path in batch]
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(_analyze_one, batch))

    def _embed_documents(self, root: Path, documents: Sequence[str]) -> np.ndarray:
        vectors = self._step(
            "embed",
            root,
            lambda: self.embedder.embed(list(documents), input_type="document"),
        )
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2 or vectors.shape[0] != len(documents):
            raise UpstreamError(
                Messages.ERROR_EMBEDDING_COUNT.format(
                    got=vectors.shape[0] if vectors.ndim else 0, expected=len(documents)
                )
            )
        return vectors

    def _record_embeddings(
        self, name: str, analyses: Sequence[FileAnalysis], vectors: np.ndarray
    ) -> None:
        if self.ledger is None:
            return
        dimension = int(vectors.shape[1])
        for analysis in analyses:
            ref = EmbeddingRef(
                embedding_id=f"{name}:{analysis.rel_path}",
                dimension=dimension,
                model_version=self.model_version,
            )
            self.ledger.put(
                analysis.identity.path,
                ArtifactKind.EMBEDDING,
                ref,
                identity=analysis.identity,
            )

    def _mark_synced(self, root: Path, collection: VectorCollection, head: str) -> None:
        stamp = format_timestamp(self._clock())
        self._step(
            "record_commit",
            root,
            lambda: collection.modify({COMMIT_KEY: head, INDEXED_AT_KEY: stamp}),
        )

    def _step(self, step: str, root: Path, func: Callable[[], T]) -> T:
        try:
            return func()
        except RepoCacheError:
            raise
        except OSError as exc:
            raise TransientIOError(
                Messages.ERROR_RECONCILE_STEP.format(step=step, path=root, reason=exc)
            ) from exc
        except Exception as exc:
            raise UpstreamError(
                Messages.ERROR_RECONCILE_STEP.format(step=step, path=root, reason=exc)
            ) from exc

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def directory_patterns(
        self, repo_path: Path | str, rel_dir: str = "", *, refresh: bool = False
    ) -> DirectoryPatterns:
        """Return cached patterns for *rel_dir*, recomputing them when missing."""

        root = resolve_directory(repo_path)
        clean = rel_dir.strip().strip("/")
        key = _directory_key(root, clean)
        if not refresh and self.patterns is not None:
            cached = self.patterns.cached(key)
            if cached is not None:
                return cached
        directory = resolve_directory(root / clean) if clean else root
        source_filter = self.source_filter(root)
        files = sorted(
            f"{clean}/{entry.name}" if clean else entry.name
            for entry in directory.iterdir()
            if entry.is_file()
        )
        metadata = [
            self.analyzer.analyze(root / rel_path, rel_path).metadata
            for rel_path in files
            if source_filter.accepts(rel_path)
        ]
        if self.patterns is None:
            return aggregate_patterns(key, metadata)
        return self.patterns.refresh(key, metadata)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _require_collection(self, repo_path: Path | str) -> VectorCollection:
        root = Path(repo_path).expanduser().resolve()
        name = collection_name(root)
        collection = self._step("get_collection", root, lambda: self.store.get_collection(name))
        if collection is None:
            raise NotIndexedError(Messages.ERROR_NOT_INDEXED.format(path=root))
        return collection

    def _embed_query(self, query: str) -> np.ndarray:
        clean = (query or "").strip()
        if not clean:
            raise ValueError(Messages.ERROR_EMPTY_QUERY)
        try:
            vectors = self.embedder.embed([clean], input_type="query")
        except RepoCacheError:
            raise
        except Exception as exc:
            raise UpstreamError(str(exc)) from exc
        return np.asarray(vectors, dtype=np.float32)[0]

    def find_similar(
        self, query: str, repo_path: Path | str, limit: int = 5
    ) -> list[SimilarHit]:
        return self.find_similar_filtered(query, repo_path, limit, None)

    def find_similar_filtered(
        self,
        query: str,
        repo_path: Path | str,
        limit: int = 5,
        where: Mapping[str, MetadataValue] | None = None,
    ) -> list[SimilarHit]:
        """Embed *query* once and return the nearest files, best first."""

        collection = self._require_collection(repo_path)
        vector = self._embed_query(query)
        root = Path(repo_path).expanduser().resolve()
        results = self._step(
            "query",
            root,
            lambda: collection.query(vector, limit=limit, where=where),
        )
        return [
            SimilarHit(
                file_path=item.id,
                similarity=similarity_from_distance(item.distance),
                metadata=_decode_metadata(item.metadata),
                document=item.document,
            )
            for item in results
        ]

    def find_similar_tests(
        self, scenario: str, repo_path: Path | str, limit: int = 5
    ) -> list[SimilarHit]:
        hits = self.find_similar_filtered(scenario, repo_path, limit * 2, {"is_test": True})
        return [
            hit
            for hit in hits
            if hit.similarity is not None and hit.similarity > SIMILAR_TEST_THRESHOLD
        ][:limit]

    def find_page_objects(
        self, repo_path: Path | str, term: str | None = None
    ) -> list[SimilarHit]:
        """List page objects, ranked by *term* when one is given."""

        where = {"is_page_object": True}
        if term and term.strip():
            return self.find_similar_filtered(term, repo_path, PAGE_OBJECT_QUERY_LIMIT, where)
        collection = self._require_collection(repo_path)
        root = Path(repo_path).expanduser().resolve()
        records = self._step("get", root, lambda: collection.get(where=where))
        return [
            SimilarHit(
                file_path=record.id,
                similarity=None,
                metadata=_decode_metadata(record.metadata),
                document=record.document,
            )
            for record in sorted(records, key=lambda item: item.id)
        ]

    def index_stats(self, repo_path: Path | str) -> IndexStats | None:
        root = Path(repo_path).expanduser().resolve()
        name = collection_name(root)
        collection = self._step("get_collection", root, lambda: self.store.get_collection(name))
        if collection is None:
            return None
        metadata = collection.metadata
        total = self._step("count", root, collection.count)
        indexed_at = metadata.get(INDEXED_AT_KEY)
        commit = metadata.get(COMMIT_KEY)
        return IndexStats(
            total_files=total,
            last_indexed_at=str(indexed_at) if indexed_at else None,
            last_indexed_commit=str(commit) if commit else None,
        )
