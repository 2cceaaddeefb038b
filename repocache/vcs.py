"""Git boundary implemented with the ``git`` executable."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Protocol, Sequence

from .errors import TransientIOError, UpstreamError
from .text import Messages

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT = 30.0


class GitClient(Protocol):
    def current_head(self) -> str:
        raise NotImplementedError  # pragma: no cover

    def diff_names_only(self, from_commit: str, to_commit: str) -> list[str]:
        raise NotImplementedError  # pragma: no cover

    def has_commit(self, commit: str) -> bool:
        raise NotImplementedError  # pragma: no cover


class GitRepository:
    """Read-only view of a working tree through ``git -C <root> ...``."""

    def __init__(self, root: Path, *, timeout: float = DEFAULT_GIT_TIMEOUT) -> None:
        self.root = Path(root)
        self.timeout = timeout

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = " ".join(args[:1])
        try:
            completed = subprocess.run(
                ["git", "-C", str(self.root), *args],
                check=False,
                capture_output=True,
                encoding="utf-8",
                errors="surrogateescape",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientIOError(
                Messages.ERROR_GIT_TIMEOUT.format(
                    command=command, timeout=self.timeout, path=self.root
                )
            ) from exc
        except OSError as exc:
            raise TransientIOError(
                Messages.ERROR_GIT_FAILED.format(command=command, path=self.root, reason=exc)
            ) from exc
        return completed

    def _check(self, args: Sequence[str]) -> str:
        completed = self._run(args)
        if completed.returncode != 0:
            reason = (completed.stderr or completed.stdout or "").strip() or (
                f"exit status {completed.returncode}"
            )
            raise UpstreamError(
                Messages.ERROR_GIT_FAILED.format(command=args[0], path=self.root, reason=reason)
            )
        return completed.stdout

    def current_head(self) -> str:
        return self._check(["rev-parse", "HEAD"]).strip()

    def has_commit(self, commit: str) -> bool:
        if not commit:
            return False
        completed = self._run(["cat-file", "-e", f"{commit}^{{commit}}"])
        return completed.returncode == 0

    def diff_names_only(self, from_commit: str, to_commit: str) -> list[str]:
        """Return repo-root-relative posix paths touched between two commits.

        Renames are reported as a deletion plus an addition so both sides show
        up in the list.
        """

        output = self._check(
            [
                "diff",
                "--name-only",
                "--no-renames",
                "--relative",
                "-z",
                from_commit,
                to_commit,
            ]
        )
        names = [name for name in output.split("\0") if name]
        logger.debug("git diff %s..%s touched %d paths", from_commit[:12], to_commit[:12], len(names))
        return names
