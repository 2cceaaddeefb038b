"""Utility helpers for filesystem access and source file selection."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from pathspec.gitignore import GitIgnoreSpec

from .config import DEFAULT_EXTENSIONS

DEFAULT_SKIP_DIRS: frozenset[str] = frozenset(
    {"node_modules", ".git", "target", "build", ".idea"}
)


def resolve_directory(path: Path | str) -> Path:
    """Resolve and validate a user supplied directory path."""
    dir_path = Path(path).expanduser().resolve()
    if not dir_path.exists():
        raise FileNotFoundError(f"Directory does not exist: {dir_path}")
    if not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    return dir_path


def normalize_extensions(values: Iterable[str] | None) -> tuple[str, ...]:
    """Return a sorted, deduplicated tuple of normalized file extensions."""

    if not values:
        return ()

    normalized: list[str] = []
    seen: set[str] = set()
    for raw in values:
        if raw is None:
            continue
        token = raw.strip().lower()
        if not token:
            continue
        if not token.startswith("."):
            token = f".{token}"
        if token == ".":
            continue
        if token not in seen:
            seen.add(token)
            normalized.append(token)
    return tuple(sorted(normalized))


def relative_posix(path: Path, root: Path) -> str:
    rel = path.relative_to(root)
    if rel == Path("."):
        return ""
    return rel.as_posix()


def _find_git_root(path: Path) -> Path | None:
    for candidate in (path,) + tuple(path.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def _resolve_git_dir(git_root: Path) -> Path | None:
    git_entry = git_root / ".git"
    if git_entry.is_dir():
        return git_entry
    if not git_entry.is_file():
        return None
    try:
        content = git_entry.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return None
    prefix = "gitdir:"
    if not content.lower().startswith(prefix):
        return None
    target = content[len(prefix) :].strip()
    if not target:
        return None
    git_dir = Path(target)
    if not git_dir.is_absolute():
        git_dir = (git_root / git_dir).resolve()
    return git_dir


def _read_gitignore_lines(path: Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []


def _scope_gitignore_line(line: str, base_dir: str) -> str | None:
    if line == "":
        return None
    if line.startswith("#") and not line.startswith(r"\#"):
        return None
    if not base_dir:
        return line

    negated = line.startswith("!") and not line.startswith(r"\!")
    prefix = "!" if negated else ""
    body = line[1:] if negated else line

    if body.startswith("/") and not body.startswith(r"\/"):
        body = body[1:]
        scoped = f"{base_dir}/{body}" if body else f"{base_dir}/"
        return f"{prefix}{scoped}"

    directory_only = body.endswith("/") and not body.endswith(r"\/")
    body_check = body[:-1] if directory_only else body
    if "/" in body_check:
        scoped = f"{base_dir}/{body}"
    else:
        scoped = f"{base_dir}/**/{body}"
    return f"{prefix}{scoped}"


def _gitignore_spec_from_lines(lines: Iterable[str], base_dir: str) -> GitIgnoreSpec:
    scoped: list[str] = []
    for line in lines:
        scoped_line = _scope_gitignore_line(line, base_dir)
        if scoped_line is not None:
            scoped.append(scoped_line)
    return GitIgnoreSpec.from_lines(scoped)


def _is_ignored(spec: GitIgnoreSpec, rel_path: str, *, is_dir: bool) -> bool:
    if not rel_path:
        return False
    candidate = f"{rel_path}/" if is_dir and not rel_path.endswith("/") else rel_path
    return spec.check_file(candidate).include is True


def _join(prefix: str, rel: str) -> str:
    if not prefix:
        return rel
    if not rel:
        return prefix
    return f"{prefix}/{rel}"


class SourceFilter:
    """Decides which files under a repository root are eligible for indexing.

    The same predicate backs :meth:`walk` (full builds) and :meth:`accepts`
    (filtering ``git diff`` output), so both views agree on the id-space.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        extensions: Sequence[str] | None = None,
        skip_dirs: Iterable[str] = (),
        include_hidden: bool = False,
        respect_gitignore: bool = True,
    ) -> None:
        self.root = resolve_directory(root)
        self.extensions = normalize_extensions(extensions) or DEFAULT_EXTENSIONS
        self.skip_dirs = DEFAULT_SKIP_DIRS | frozenset(
            name.strip().strip("/") for name in skip_dirs if name and name.strip()
        )
        self.include_hidden = include_hidden
        self.respect_gitignore = respect_gitignore
        self._ignore_root: Path | None = None
        self._ignore_prefix = ""
        self._specs: dict[str, GitIgnoreSpec] = {}
        if respect_gitignore:
            self._ignore_root = _find_git_root(self.root) or self.root
            self._ignore_prefix = relative_posix(self.root, self._ignore_root)
            self._base_spec = self._build_base_spec(self._ignore_root)

    def _build_base_spec(self, ignore_root: Path) -> GitIgnoreSpec:
        spec = GitIgnoreSpec.from_lines([])
        git_dir = _resolve_git_dir(ignore_root)
        if git_dir is not None:
            exclude_file = git_dir / "info" / "exclude"
            if exclude_file.is_file():
                spec += _gitignore_spec_from_lines(_read_gitignore_lines(exclude_file), "")
        parts = Path(self._ignore_prefix).parts if self._ignore_prefix else ()
        for depth in range(len(parts)):
            ancestor = ignore_root.joinpath(*parts[:depth])
            gitignore_file = ancestor / ".gitignore"
            if gitignore_file.is_file():
                spec += _gitignore_spec_from_lines(
                    _read_gitignore_lines(gitignore_file),
                    relative_posix(ancestor, ignore_root),
                )
        return spec

    def _spec_for(self, rel_dir: str) -> GitIgnoreSpec:
        """Return the ignore rules in force inside *rel_dir* (root-relative)."""

        cached = self._specs.get(rel_dir)
        if cached is not None:
            return cached
        if rel_dir:
            parent = rel_dir.rsplit("/", 1)[0] if "/" in rel_dir else ""
            spec = self._spec_for(parent)
        else:
            spec = self._base_spec
        gitignore_file = self.root / rel_dir / ".gitignore"
        if gitignore_file.is_file():
            spec = spec + _gitignore_spec_from_lines(
                _read_gitignore_lines(gitignore_file),
                _join(self._ignore_prefix, rel_dir),
            )
        self._specs[rel_dir] = spec
        return spec

    def _dir_allowed(self, rel_dir: str) -> bool:
        parent, _, name = rel_dir.rpartition("/")
        if name in self.skip_dirs:
            return False
        if not self.include_hidden and name.startswith("."):
            return False
        if self.respect_gitignore and _is_ignored(
            self._spec_for(parent), _join(self._ignore_prefix, rel_dir), is_dir=True
        ):
            return False
        return True

    def _file_allowed(self, rel_file: str) -> bool:
        parent, _, name = rel_file.rpartition("/")
        if not self.include_hidden and name.startswith("."):
            return False
        if not any(name.lower().endswith(ext) for ext in self.extensions):
            return False
        if self.respect_gitignore and _is_ignored(
            self._spec_for(parent), _join(self._ignore_prefix, rel_file), is_dir=False
        ):
            return False
        return True

    def accepts(self, rel_path: str) -> bool:
        """Return True if the root-relative posix *rel_path* is eligible."""

        clean = rel_path.strip().strip("/")
        if not clean:
            return False
        parts = clean.split("/")
        if any(part in ("", ".", "..") for part in parts):
            return False
        for depth in range(1, len(parts)):
            if not self._dir_allowed("/".join(parts[:depth])):
                return False
        return self._file_allowed(clean)

    def walk(self) -> Iterator[str]:
        """Yield eligible root-relative posix paths, depth first, sorted per directory."""

        for dirpath, dirnames, filenames in os.walk(self.root, topdown=True):
            rel_dir = relative_posix(Path(dirpath), self.root)
            dirnames[:] = sorted(
                name for name in dirnames if self._dir_allowed(_join(rel_dir, name))
            )
            for filename in sorted(filenames):
                rel_file = _join(rel_dir, filename)
                if self._file_allowed(rel_file):
                    yield rel_file


def ensure_positive(value: int, name: str) -> int:
    """Validate that *value* is positive."""
    if value <= 0:
        raise ValueError(f"{name} must be greater than 0")
    return value
