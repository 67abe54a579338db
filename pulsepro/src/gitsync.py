from __future__ import annotations

import logging
import re
import threading
from hashlib import sha256
from pathlib import Path

from pulsepro.src.commands import command_output, run_command
from pulsepro.src.errors import CommandError, NotARepositoryError, SyncError

LOGGER = logging.getLogger(__name__)


class RepositorySync:
    """Keep a local working copy of a GitOps repository current.

    One lock per working-copy path guards clone and pull, so concurrent
    reconciles of deployments that share a repository never run git against
    the same directory at once.  Reads of the synced tree happen outside the
    lock.
    """

    def __init__(self, repo_root: Path, timeout_seconds: float = 600) -> None:
        self.repo_root = repo_root
        self.timeout_seconds = timeout_seconds
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def working_copy_path(self, url: str) -> Path:
        """Return the stable working-copy directory for *url*.

        The directory name keeps a readable suffix of the URL plus a short
        digest, e.g. ``gitops-config-3f2a9c1b7e0d``.
        """
        stem = url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
        readable = re.sub(r"[^A-Za-z0-9_.-]+", "-", stem).strip("-.")[:40] or "repo"
        digest = sha256(url.encode("utf-8")).hexdigest()[:12]
        return self.repo_root / f"{readable}-{digest}"

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._locks[path] = lock
            return lock

    def sync(self, url: str, local_path: Path) -> None:
        """Clone *url* into *local_path*, or pull when a working copy exists.

        Raises :class:`NotARepositoryError` when the path exists without git
        metadata and :class:`SyncError` when git fails.
        """
        if not url:
            raise SyncError("deployment has no gitRepoURL")

        with self._lock_for(local_path):
            if not local_path.exists():
                self._clone(url, local_path)
                return

            if not (local_path / ".git").exists():
                raise NotARepositoryError(
                    f"{local_path} exists but does not have a .git directory"
                )
            self._pull(url, local_path)

    def _git(self, *args: str, cwd: Path | None = None) -> str:
        try:
            result = run_command(["git", *args], timeout=self.timeout_seconds, cwd=cwd)
        except CommandError as exc:
            raise SyncError(str(exc)) from exc
        output = command_output(result)
        if result.returncode != 0:
            raise SyncError(f"git {args[0]} failed (exit {result.returncode}): {output}")
        return output

    def _clone(self, url: str, local_path: Path) -> None:
        LOGGER.info("Cloning repository %s into %s", url, local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        self._git("clone", url, str(local_path))

    def _pull(self, url: str, local_path: Path) -> None:
        LOGGER.info("Pulling latest changes from %s in %s", url, local_path)
        output = self._git("pull", "--ff-only", "origin", cwd=local_path)
        if "Already up to date" in output:
            LOGGER.info("Repository %s is already up to date", local_path)
