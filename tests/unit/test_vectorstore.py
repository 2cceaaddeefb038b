import numpy as np
import pytest

from repocache.errors import UpstreamError
from repocache.vectorstore import SQLiteVectorStore


def _store(tmp_path) -> SQLiteVectorStore:
    return SQLiteVectorStore(tmp_path / "vectors.db")


def test_get_or_create_and_metadata(tmp_path):
    store = _store(tmp_path)

    assert store.get_collection("repo_a") is None
    collection = store.get_or_create("repo_a", {"repo_path": "/a"})
    again = store.get_or_create("repo_a", {"repo_path": "/ignored"})

    assert collection.metadata == {"repo_path": "/a"}
    assert again.metadata == {"repo_path": "/a"}


def test_modify_merges_metadata(tmp_path):
    collection = _store(tmp_path).get_or_create("repo_a", {"repo_path": "/a"})

    collection.modify({"last_indexed_commit": "abc"})

    assert collection.metadata == {"repo_path": "/a", "last_indexed_commit": "abc"}


def test_add_upserts_and_query_orders_by_distance(tmp_path):
    collection = _store(tmp_path).get_or_create("repo_a")
    collection.add(
        ["a.java", "b.java"],
        np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32),
        [{"is_test": True}, {"is_test": False}],
        ["doc a", "doc b"],
    )
    collection.add(
        ["b.java"],
        np.array([[0.6, 0.8]], dtype=np.float32),
        [{"is_test": False}],
        ["doc b2"],
    )

    results = collection.query(np.array([1.0, 0.0], dtype=np.float32), limit=5)

    assert collection.count() == 2
    assert [item.id for item in results] == ["a.java", "b.java"]
    assert results[0].distance == pytest.approx(0.0, abs=1e-6)
    assert results[1].distance == pytest.approx(0.4, abs=1e-6)
    assert results[1].document == "doc b2"


def test_query_and_get_apply_where_filter(tmp_path):
    collection = _store(tmp_path).get_or_create("repo_a")
    collection.add(
        ["a.java", "b.java"],
        np.eye(2, dtype=np.float32),
        [{"is_test": True}, {"is_test": False}],
        ["a", "b"],
    )

    hits = collection.query(np.array([0.0, 1.0]), limit=5, where={"is_test": True})
    records = collection.get(where={"is_test": False})

    assert [item.id for item in hits] == ["a.java"]
    assert [record.id for record in records] == ["b.java"]
    assert collection.ids() == {"a.java", "b.java"}


def test_delete_removes_ids(tmp_path):
    collection = _store(tmp_path).get_or_create("repo_a")
    collection.add(["a.java", "b.java"], np.eye(2), [{}, {}], ["a", "b"])

    collection.delete(["a.java", "missing.java"])
    collection.delete([])

    assert collection.ids() == {"b.java"}


def test_add_rejects_shape_mismatch(tmp_path):
    collection = _store(tmp_path).get_or_create("repo_a")

    with pytest.raises(ValueError):
        collection.add(["a.java"], np.eye(2), [{}], ["a"])


def test_query_dimension_mismatch_is_upstream_error(tmp_path):
    collection = _store(tmp_path).get_or_create("repo_a")
    collection.add(["a.java"], np.ones((1, 3)), [{}], ["a"])

    with pytest.raises(UpstreamError):
        collection.query(np.ones(2), limit=1)


def test_delete_collection_drops_entries(tmp_path):
    store = _store(tmp_path)
    collection = store.get_or_create("repo_a")
    collection.add(["a.java"], np.ones((1, 2)), [{}], ["a"])

    assert store.delete_collection("repo_a") is True
    assert store.delete_collection("repo_a") is False
    assert store.get_collection("repo_a") is None
    assert store.get_or_create("repo_a").count() == 0
