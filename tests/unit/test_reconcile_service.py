import re
import threading
import time

import numpy as np
import pytest

from repocache.blobs import ArtifactStore
from repocache.errors import NotIndexedError, UpstreamError
from repocache.ledger import CacheLedger
from repocache.models import ArtifactKind, FileMetadata, FileType, MethodSignature
from repocache.patterns import PatternLedger
from repocache.services.pattern_service import PatternService
from repocache.services.reconcile_service import (
    COMMIT_KEY,
    IndexReconciler,
    ReconcileMode,
    collection_name,
)
from repocache.vectorstore import SQLiteVectorStore

VOCAB = ("login", "cart", "search", "checkout")


class KeywordEmbedder:
    """Counts vocabulary words; a small bias keeps vectors non-zero."""

    model_name = "keyword-test"

    def __init__(self):
        self.calls = []
        self.fail = False

    def embed(self, texts, input_type="document"):
        if self.fail:
            raise RuntimeError("embedding service unavailable")
        self.calls.append((list(texts), input_type))
        return np.asarray(
            [[text.lower().count(word) for word in VOCAB] + [0.1] for text in texts],
            dtype=np.float32,
        )

    @property
    def documents(self):
        return [text for texts, kind in self.calls if kind == "document" for text in texts]


class FakeParser:
    def __init__(self):
        self.parsed = []
        self._lock = threading.Lock()

    def parse(self, source):
        with self._lock:
            self.parsed.append(source)
        return {"type": "program", "start_byte": 0, "end_byte": len(source), "children": []}

    def analyze(self, tree, source, rel_path):
        name = rel_path.rsplit("/", 1)[-1].removesuffix(".java")
        is_test = "Test" in name
        is_page = "Page" in name
        if is_test:
            file_type = FileType.TEST
        elif is_page:
            file_type = FileType.PAGE_OBJECT
        else:
            file_type = FileType.OTHER
        methods = [
            MethodSignature(name=method, signature=f"void {method}()")
            for method in re.findall(r"void (\w+)", source.decode("utf-8"))
        ]
        return FileMetadata(
            class_name=name,
            file_type=file_type,
            is_test=is_test,
            is_page_object=is_page,
            methods=methods,
        )


class FakeGit:
    def __init__(self):
        self.head = "c1"
        self.known = {"c1"}
        self.diffs = {}
        self.diff_calls = []

    def __call__(self, root):
        return self

    def current_head(self):
        return self.head

    def has_commit(self, commit):
        return commit in self.known

    def diff_names_only(self, from_commit, to_commit):
        self.diff_calls.append((from_commit, to_commit))
        return list(self.diffs.get((from_commit, to_commit), ()))

    def commit(self, sha, changed):
        self.diffs[(self.head, sha)] = list(changed)
        self.known.add(sha)
        self.head = sha


FILES = {
    "pages/LoginPage.java": "class LoginPage { void login() {} }",
    "pages/CartPage.java": "class CartPage { void openCart() {} }",
    "tests/LoginTest.java": "class LoginTest { void loginWorks() {} }",
    "tests/CartTest.java": "class CartTest { void cartTotals() {} }",
    "README.md": "# demo",
}


def _write(root, rel, content):
    target = root / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")


@pytest.fixture()
def repo(tmp_path):
    root = tmp_path / "repo"
    for rel, content in FILES.items():
        _write(root, rel, content)
    return root.resolve()


@pytest.fixture()
def env(tmp_path):
    git = FakeGit()
    embedder = KeywordEmbedder()
    parser = FakeParser()
    ledger = CacheLedger(tmp_path / "ledger.db", ArtifactStore(tmp_path / "blobs"))
    patterns = PatternService(PatternLedger(tmp_path / "ledger.db"))
    store = SQLiteVectorStore(tmp_path / "vectors.db")
    reconciler = IndexReconciler(
        store,
        embedder,
        parser,
        ledger=ledger,
        patterns=patterns,
        git_factory=git,
        batch_size=2,
        extract_concurrency=1,
    )
    return reconciler, git, embedder, parser, store


def test_first_reconcile_builds_everything(env, repo):
    reconciler, _git, embedder, parser, store = env

    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.FULL
    assert result.commit == "c1"
    assert result.indexed == 4
    assert result.parsed == 4
    assert len(parser.parsed) == 4
    assert len(embedder.calls) == 2
    assert all(kind == "document" for _texts, kind in embedder.calls)
    collection = store.get_collection(collection_name(repo))
    assert collection.ids() == {
        "pages/CartPage.java",
        "pages/LoginPage.java",
        "tests/CartTest.java",
        "tests/LoginTest.java",
    }
    assert collection.metadata[COMMIT_KEY] == "c1"
    assert reconciler.ledger.is_valid(repo / "pages/LoginPage.java", ArtifactKind.EMBEDDING)


def test_same_commit_is_a_noop(env, repo):
    reconciler, git, embedder, parser, _store = env
    reconciler.reconcile(repo)
    embed_calls = len(embedder.calls)
    parse_calls = len(parser.parsed)

    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.NOOP
    assert result.indexed == 0
    assert len(embedder.calls) == embed_calls
    assert len(parser.parsed) == parse_calls
    assert git.diff_calls == []


def test_incremental_reindexes_only_changed_file(env, repo):
    reconciler, git, embedder, parser, store = env
    reconciler.reconcile(repo)
    embedder.calls.clear()
    parser.parsed.clear()

    _write(repo, "tests/CartTest.java", "class CartTest { void checkoutCart() {} }")
    git.commit("c2", ["tests/CartTest.java", "README.md"])
    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.INCREMENTAL
    assert result.previous_commit == "c1"
    assert result.commit == "c2"
    assert result.changed_paths == ["tests/CartTest.java"]
    assert result.indexed == 1
    assert result.removed == 0
    assert embedder.documents == ["class CartTest test void checkoutCart()"]
    assert len(parser.parsed) == 1
    collection = store.get_collection(collection_name(repo))
    assert collection.count() == 4
    assert collection.metadata[COMMIT_KEY] == "c2"


def test_incremental_removes_deleted_and_renamed_files(env, repo):
    reconciler, git, embedder, _parser, store = env
    reconciler.reconcile(repo)
    embedder.calls.clear()

    (repo / "pages/CartPage.java").unlink()
    (repo / "tests/LoginTest.java").rename(repo / "tests/SignInTest.java")
    git.commit(
        "c2",
        ["pages/CartPage.java", "tests/LoginTest.java", "tests/SignInTest.java"],
    )
    result = reconciler.reconcile(repo)

    assert result.removed == 2
    assert result.indexed == 1
    assert store.get_collection(collection_name(repo)).ids() == {
        "pages/LoginPage.java",
        "tests/CartTest.java",
        "tests/SignInTest.java",
    }


def test_irrelevant_changes_only_advance_commit(env, repo):
    reconciler, git, embedder, _parser, store = env
    reconciler.reconcile(repo)
    embedder.calls.clear()

    git.commit("c2", ["README.md"])
    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.INCREMENTAL
    assert result.indexed == 0
    assert embedder.calls == []
    assert store.get_collection(collection_name(repo)).metadata[COMMIT_KEY] == "c2"


def test_force_full_rebuild_reuses_cached_metadata(env, repo):
    reconciler, _git, embedder, parser, _store = env
    reconciler.reconcile(repo)
    parser.parsed.clear()
    embedder.calls.clear()

    result = reconciler.reconcile(repo, force_full=True)

    assert result.mode is ReconcileMode.FULL
    assert result.indexed == 4
    assert result.parsed == 0
    assert parser.parsed == []
    assert len(embedder.documents) == 4


def test_collection_without_commit_is_rebuilt(env, repo):
    reconciler, _git, _embedder, _parser, store = env
    stale = store.get_or_create(collection_name(repo), {"repo_path": str(repo)})
    stale.add(
        ["gone/Old.java"],
        np.ones((1, 5), dtype=np.float32),
        [{"file_path": "gone/Old.java"}],
        ["old"],
    )

    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.FULL
    assert "gone/Old.java" not in store.get_collection(collection_name(repo)).ids()


def test_unknown_recorded_commit_triggers_rebuild(env, repo):
    reconciler, git, _embedder, _parser, _store = env
    reconciler.reconcile(repo)

    git.head = "rewritten"
    git.known = {"rewritten"}
    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.FULL
    assert result.previous_commit == "c1"
    assert git.diff_calls == []


def test_failed_embedding_does_not_advance_commit(env, repo):
    reconciler, git, embedder, _parser, store = env
    reconciler.reconcile(repo)

    _write(repo, "pages/LoginPage.java", "class LoginPage { void loginAgain() {} }")
    git.commit("c2", ["pages/LoginPage.java"])
    embedder.fail = True
    with pytest.raises(UpstreamError):
        reconciler.reconcile(repo)
    assert store.get_collection(collection_name(repo)).metadata[COMMIT_KEY] == "c1"

    embedder.fail = False
    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.INCREMENTAL
    assert result.changed_paths == ["pages/LoginPage.java"]
    assert store.get_collection(collection_name(repo)).metadata[COMMIT_KEY] == "c2"


def test_parallel_extraction(tmp_path, repo):
    parser = FakeParser()
    reconciler = IndexReconciler(
        SQLiteVectorStore(tmp_path / "vectors.db"),
        KeywordEmbedder(),
        parser,
        git_factory=FakeGit(),
        batch_size=10,
        extract_concurrency=4,
    )

    result = reconciler.reconcile(repo)

    assert result.indexed == 4
    assert len(parser.parsed) == 4


def test_find_similar_ranks_by_query(env, repo):
    reconciler, _git, embedder, _parser, _store = env
    reconciler.reconcile(repo)

    hits = reconciler.find_similar("login", repo, limit=2)

    assert {hit.file_path for hit in hits} == {"pages/LoginPage.java", "tests/LoginTest.java"}
    assert all(hit.similarity > 0.9 for hit in hits)
    assert embedder.calls[-1] == (["login"], "query")
    assert isinstance(hits[0].metadata["methods"], list)


def test_find_similar_filtered_applies_where(env, repo):
    reconciler, *_ = env
    reconciler.reconcile(repo)

    hits = reconciler.find_similar_filtered("cart", repo, 5, {"file_type": "pageObject"})

    assert [hit.file_path for hit in hits][0] == "pages/CartPage.java"
    assert all(hit.metadata["is_page_object"] for hit in hits)


def test_find_similar_tests_applies_threshold(env, repo):
    reconciler, *_ = env
    reconciler.reconcile(repo)

    hits = reconciler.find_similar_tests("login", repo)

    assert [hit.file_path for hit in hits] == ["tests/LoginTest.java"]


def test_find_page_objects_lists_or_ranks(env, repo):
    reconciler, *_ = env
    reconciler.reconcile(repo)

    listed = reconciler.find_page_objects(repo)
    ranked = reconciler.find_page_objects(repo, "cart")

    assert [hit.file_path for hit in listed] == ["pages/CartPage.java", "pages/LoginPage.java"]
    assert all(hit.similarity is None for hit in listed)
    assert listed[0].metadata["methods"] == ["openCart"]
    assert ranked[0].file_path == "pages/CartPage.java"
    assert ranked[0].similarity is not None


def test_reads_require_an_index(env, repo):
    reconciler, *_ = env

    with pytest.raises(NotIndexedError):
        reconciler.find_similar("login", repo)
    assert reconciler.index_stats(repo) is None


def test_empty_query_rejected(env, repo):
    reconciler, *_ = env
    reconciler.reconcile(repo)

    with pytest.raises(ValueError):
        reconciler.find_similar("   ", repo)


def test_index_stats(env, repo):
    reconciler, *_ = env
    reconciler.reconcile(repo)

    stats = reconciler.index_stats(repo)

    assert stats.total_files == 4
    assert stats.last_indexed_commit == "c1"
    assert stats.last_indexed_at


def test_patterns_cached_after_build(env, repo):
    reconciler, *_ = env
    reconciler.reconcile(repo)

    cached = reconciler.patterns.cached((repo / "pages").as_posix())
    patterns = reconciler.directory_patterns(repo, "pages")

    assert cached is not None
    assert patterns.page_objects == ["CartPage", "LoginPage"]
    assert patterns.file_count == 2


def test_directory_patterns_computed_on_miss(env, repo):
    reconciler, *_ = env

    patterns = reconciler.directory_patterns(repo, "tests")

    assert patterns.tests == ["CartTest", "LoginTest"]
    assert reconciler.patterns.cached((repo / "tests").as_posix()) == patterns


def test_missing_embedder_only_fails_on_use(tmp_path, repo):
    reconciler = IndexReconciler(
        SQLiteVectorStore(tmp_path / "vectors.db"),
        None,
        FakeParser(),
        git_factory=FakeGit(),
    )

    assert reconciler.index_stats(repo) is None
    with pytest.raises(UpstreamError):
        reconciler.reconcile(repo)


def test_embedder_factory_is_lazy(tmp_path, repo):
    created = []

    def factory():
        created.append(True)
        return KeywordEmbedder()

    reconciler = IndexReconciler(
        SQLiteVectorStore(tmp_path / "vectors.db"),
        None,
        FakeParser(),
        embedder_factory=factory,
        git_factory=FakeGit(),
    )
    assert created == []

    reconciler.reconcile(repo)
    reconciler.reconcile(repo, force_full=True)

    assert created == [True]

def test_incremental_drops_paths_that_became_ignored(env, repo):
    reconciler, git, embedder, _parser, store = env
    _write(repo, "generated/GenPage.java", "class GenPage { void login() {} }")
    reconciler.reconcile(repo)
    assert "generated/GenPage.java" in store.get_collection(collection_name(repo)).ids()
    embedder.calls.clear()

    _write(repo, ".gitignore", "generated/\n")
    git.commit("c2", [".gitignore", "generated/GenPage.java"])
    result = reconciler.reconcile(repo)

    assert result.mode is ReconcileMode.INCREMENTAL
    assert result.changed_paths == ["generated/GenPage.java"]
    assert result.removed == 1
    assert result.indexed == 0
    assert embedder.calls == []
    collection = store.get_collection(collection_name(repo))
    assert "generated/GenPage.java" not in collection.ids()
    assert collection.metadata[COMMIT_KEY] == "c2"


def test_incremental_drops_file_moved_into_hidden_dir(env, repo):
    reconciler, git, _embedder, _parser, store = env
    reconciler.reconcile(repo)

    archived = repo / ".archive"
    archived.mkdir()
    (repo / "pages/CartPage.java").rename(archived / "CartPage.java")
    git.commit("c2", ["pages/CartPage.java", ".archive/CartPage.java"])
    result = reconciler.reconcile(repo)

    assert result.removed == 1
    assert store.get_collection(collection_name(repo)).ids() == {
        "pages/LoginPage.java",
        "tests/CartTest.java",
        "tests/LoginTest.java",
    }


class GatedEmbedder(KeywordEmbedder):
    """Records how many embed calls run at the same time."""

    def __init__(self):
        super().__init__()
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def embed(self, texts, input_type="document"):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(0.02)
            return super().embed(texts, input_type)
        finally:
            with self._guard:
                self.active -= 1


def test_concurrent_reconciles_of_one_repo_serialize(tmp_path, repo):
    git = FakeGit()
    embedder = GatedEmbedder()
    reconciler = IndexReconciler(
        SQLiteVectorStore(tmp_path / "vectors.db"),
        embedder,
        FakeParser(),
        ledger=CacheLedger(tmp_path / "ledger.db", ArtifactStore(tmp_path / "blobs")),
        git_factory=git,
        batch_size=1,
        extract_concurrency=1,
    )
    barrier = threading.Barrier(2)
    results = []
    errors = []

    def run():
        barrier.wait()
        try:
            results.append(reconciler.reconcile(repo))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    assert embedder.max_active == 1
    assert sorted(result.mode.value for result in results) == ["full", "noop"]
    assert len(embedder.documents) == 4
