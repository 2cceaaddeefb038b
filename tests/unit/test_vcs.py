import os
import shutil
import subprocess

import pytest

from repocache.errors import UpstreamError
from repocache.vcs import GitRepository

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _git(root, *args):
    subprocess.run(
        ["git", "-C", str(root), *args],
        check=True,
        capture_output=True,
        text=True,
    )


def _commit(root, message):
    _git(root, "add", "-A")
    _git(
        root,
        "-c",
        "user.name=Test",
        "-c",
        "user.email=test@example.com",
        "commit",
        "-q",
        "-m",
        message,
    )


@pytest.fixture
def repo(tmp_path):
    _git(tmp_path, "init", "-q")
    (tmp_path / "A.java").write_text("class A {}", encoding="utf-8")
    (tmp_path / "B.java").write_text("class B {}", encoding="utf-8")
    _commit(tmp_path, "first")
    return tmp_path


def test_head_and_diff(repo):
    git = GitRepository(repo)
    first = git.current_head()

    (repo / "A.java").write_text("class A { void x() {} }", encoding="utf-8")
    (repo / "B.java").unlink()
    (repo / "C.java").write_text("class C {}", encoding="utf-8")
    _commit(repo, "second")
    second = git.current_head()

    assert first != second
    assert len(second) == 40
    assert sorted(git.diff_names_only(first, second)) == ["A.java", "B.java", "C.java"]


def test_rename_reports_both_sides(repo):
    git = GitRepository(repo)
    first = git.current_head()
    _git(repo, "mv", "B.java", "Renamed.java")
    _commit(repo, "rename")

    assert sorted(git.diff_names_only(first, git.current_head())) == ["B.java", "Renamed.java"]


def test_has_commit(repo):
    git = GitRepository(repo)

    assert git.has_commit(git.current_head())
    assert not git.has_commit("0" * 40)
    assert not git.has_commit("")


def test_not_a_repository(tmp_path):
    with pytest.raises(UpstreamError):
        GitRepository(tmp_path).current_head()


def test_diff_keeps_non_utf8_filenames(repo):
    git = GitRepository(repo)
    first = git.current_head()
    name = os.fsdecode(b"Caf\xe9Page.java")
    try:
        (repo / name).write_text("class CafePage {}", encoding="utf-8")
    except (OSError, UnicodeEncodeError):
        pytest.skip("filesystem rejects non-UTF-8 names")
    _commit(repo, "latin-1 name")

    assert git.diff_names_only(first, git.current_head()) == [name]
